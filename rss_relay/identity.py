"""Identity resolution for fetched items.

Feeds are inconsistent about unique identifiers, so an item is matched
against the ledger by three keys in order of precedence: the canonical guid,
the normalized link and, for titles long enough to be distinctive, the
normalized title.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit

from .models import RawItem

UNKNOWN_ITEM_ID = "urn:rss-relay:unknown-item"

# Titles at or below this length collide too often to identify an item.
MIN_TITLE_KEY_LENGTH = 10


def _strip_link(link: str) -> Optional[str]:
    value = link.strip()
    if not value:
        return None
    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        return value
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"


def canonical_id(item: RawItem) -> str:
    """Return the key under which a fetched item is stored."""
    if item.link:
        stripped = _strip_link(item.link)
        if stripped:
            return stripped
    if item.guid and item.guid.strip():
        return item.guid.strip()
    if item.title and item.title.strip():
        return item.title.strip()
    return UNKNOWN_ITEM_ID


def normalized_link(link: Optional[str]) -> Optional[str]:
    """Scheme, host and path of a link, lower-cased."""
    if not link:
        return None
    stripped = _strip_link(link)
    return stripped.lower() if stripped else None


def normalized_title(title: Optional[str]) -> Optional[str]:
    """Trimmed lower-cased title, or None when too short to match on."""
    if not title:
        return None
    value = title.strip().lower()
    if len(value) <= MIN_TITLE_KEY_LENGTH:
        return None
    return value
