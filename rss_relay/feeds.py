"""Feed fetching: the RSS adapter and per-variant dispatch."""

from __future__ import annotations

import calendar
import logging
import re
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from .exceptions import FetchFailure
from .models import FeedConfig, RawItem, RedditFeed, RssFeed

if TYPE_CHECKING:
    from .reddit import RedditClient

logger = logging.getLogger(__name__)


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert feedparser timestamps to timezone-aware datetimes."""
    if value is None:
        return None
    return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)


def download_feed(feed: RssFeed, timeout: float = 10.0):
    """Download and parse a feed document, raising FetchFailure on error."""
    try:
        response = requests.get(feed.url, timeout=timeout)
        response.raise_for_status()
        content = response.content
    except requests.RequestException as e:
        raise FetchFailure(f"Failed to fetch {feed.url}: {e}") from e

    try:
        parsed = feedparser.parse(content)
    except Exception as e:  # noqa: BLE001 - feedparser internals
        raise FetchFailure(f"Failed to parse {feed.url}: {e}") from e

    if getattr(parsed, "bozo", 0) and not parsed.entries:
        error = getattr(parsed, "bozo_exception", None) or "unknown error"
        raise FetchFailure(f"Invalid RSS/Atom feed {feed.url}: {error}")
    return parsed


def fetch_rss_items(feed: RssFeed, limit: int, timeout: float = 10.0) -> List[RawItem]:
    """Fetch up to ``limit`` items from an RSS or Atom feed.

    Network and parse failures are logged and produce an empty list.
    """
    logger.info("Fetching feed '%s' (%s)", feed.name, feed.url)
    try:
        parsed = download_feed(feed, timeout)
    except FetchFailure as e:
        logger.warning("Skipping feed '%s': %s", feed.name, e)
        return []

    items: List[RawItem] = []
    for entry in parsed.entries[:limit]:
        title = (getattr(entry, "title", None) or "").strip()
        link = getattr(entry, "link", None)
        guid = getattr(entry, "id", None) or getattr(entry, "guid", None)

        summary = getattr(entry, "summary", None)
        if not summary:
            content = getattr(entry, "content", None)
            if content:
                try:
                    summary = content[0].get("value")
                except (TypeError, KeyError, IndexError, AttributeError):
                    summary = None
        if summary:
            summary = _strip_html(summary)

        published = None
        for attr in ("published_parsed", "updated_parsed", "created_parsed"):
            published = getattr(entry, attr, None)
            if published:
                break

        items.append(
            RawItem(
                title=title or "No title",
                guid=guid,
                link=link,
                published=to_datetime(published),
                summary=summary,
            )
        )

    logger.info("Collected %d items from feed '%s'", len(items), feed.name)
    return items


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def fetch_items(
    feed: FeedConfig, limit: int, reddit: Optional["RedditClient"] = None
) -> List[RawItem]:
    """Fetch items for any configured feed variant, most recent first."""
    if isinstance(feed, RssFeed):
        return fetch_rss_items(feed, limit)
    if isinstance(feed, RedditFeed):
        if reddit is None:
            logger.warning("Skipping Reddit feed '%s': Reddit is not configured", feed.name)
            return []
        return reddit.fetch_items(feed, limit)
    raise TypeError(f"Unsupported feed type: {type(feed).__name__}")
