"""Shared data models for rss_relay."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass
class RawItem:
    """An item as produced by a feed adapter, before identity resolution."""

    title: str
    guid: Optional[str] = None
    link: Optional[str] = None
    published: Optional[datetime] = None
    summary: Optional[str] = None


@dataclass(frozen=True)
class NewsItem:
    """A ledger record."""

    id: int
    guid: str
    title: str
    link: Optional[str]
    feed: Optional[str]
    sent: bool
    created_at: datetime


class RedditSource(enum.Enum):
    HOME = "home"
    SAVED = "saved"
    SUBREDDIT = "subreddit"


@dataclass(frozen=True)
class RssFeed:
    """An unauthenticated feed addressed by URL."""

    name: str
    url: str

    @property
    def key(self) -> str:
        return normalize_feed_name(self.name)


@dataclass(frozen=True)
class RedditFeed:
    """A listing read through the authenticated Reddit API."""

    name: str
    source: RedditSource
    sort: Optional[str] = None
    target: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_feed_name(self.name)

    @property
    def description(self) -> str:
        if self.source is RedditSource.SUBREDDIT:
            return f"reddit r/{self.target}"
        return f"reddit {self.source.value}"


FeedConfig = Union[RssFeed, RedditFeed]


def normalize_feed_name(name: str) -> str:
    return name.strip().lower()
