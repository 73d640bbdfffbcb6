"""Authenticated Reddit listings."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

import requests

from .exceptions import AuthFailure, ConfigurationError
from .models import RawItem, RedditFeed, RedditSource
from .oauth import TokenManager

logger = logging.getLogger(__name__)

API_BASE = "https://oauth.reddit.com"
PERMALINK_BASE = "https://www.reddit.com"
SUMMARY_LIMIT = 300
DEFAULT_SORT = "best"


class RedditClient:
    def __init__(
        self,
        tokens: TokenManager,
        http: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self._tokens = tokens
        self._http = http or requests.Session()
        self._timeout = timeout

    def _get(self, path: str, token: str, params: Optional[dict] = None) -> dict:
        response = self._http.get(
            f"{API_BASE}{path}",
            params=params,
            headers={
                "Authorization": f"bearer {token}",
                "User-Agent": self._tokens.settings.user_agent,
            },
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    def resolve_username(self, token: str) -> str:
        """Return the authenticated user's name, cached after the first lookup."""
        cached = self._tokens.cached_username()
        if cached:
            return cached
        payload = self._get("/api/v1/me", token)
        username = payload.get("name")
        if not username:
            raise AuthFailure("Reddit did not return a username.")
        self._tokens.remember_username(username)
        logger.info("Resolved Reddit username %s", username)
        return username

    def listing_path(self, feed: RedditFeed, token: str) -> str:
        sort = feed.sort or DEFAULT_SORT
        if feed.source is RedditSource.HOME:
            return f"/{sort}"
        if feed.source is RedditSource.SAVED:
            return f"/user/{self.resolve_username(token)}/saved"
        return f"/r/{feed.target}/{sort}"

    def fetch_items(self, feed: RedditFeed, limit: int) -> List[RawItem]:
        """Fetch a listing; missing credentials or HTTP errors give an empty list."""
        logger.info("Fetching Reddit feed '%s' (%s)", feed.name, feed.description)
        try:
            token = self._tokens.get_valid_access_token()
        except (AuthFailure, ConfigurationError) as exc:
            logger.warning("Skipping Reddit feed '%s': %s", feed.name, exc)
            return []

        try:
            path = self.listing_path(feed, token)
            payload = self._get(path, token, params={"limit": limit, "raw_json": 1})
        except AuthFailure as exc:
            logger.warning("Skipping Reddit feed '%s': %s", feed.name, exc)
            return []
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Failed to fetch Reddit feed '%s': %s", feed.name, exc)
            return []

        children = (payload.get("data") or {}).get("children") or []
        items = [item for item in (to_raw_item(child) for child in children) if item]
        logger.info("Collected %d items from Reddit feed '%s'", len(items), feed.name)
        return items[:limit]


def to_raw_item(child: dict) -> Optional[RawItem]:
    """Map a listing child (post or comment) to a RawItem."""
    data = child.get("data") or {}
    fullname = data.get("name")
    if not fullname:
        return None

    is_comment = child.get("kind") == "t1"
    title = data.get("link_title") if is_comment else data.get("title")
    body = data.get("body") if is_comment else data.get("selftext")
    if body and len(body) > SUMMARY_LIMIT:
        body = body[:SUMMARY_LIMIT].rstrip() + "..."

    permalink = data.get("permalink")
    link = f"{PERMALINK_BASE}{permalink}" if permalink else data.get("url")

    created = data.get("created_utc")
    published = (
        datetime.fromtimestamp(float(created), tz=timezone.utc) if created else None
    )

    return RawItem(
        title=(title or "").strip() or "No title",
        guid=f"reddit:{fullname}",
        link=link,
        published=published,
        summary=body or None,
    )
