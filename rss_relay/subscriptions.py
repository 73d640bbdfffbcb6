"""Global and per-feed subscriber sets."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Set

from .models import normalize_feed_name

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Thread-safe registry of which chats receive which feeds.

    Chats in the global set receive every feed; chats that follow a feed
    receive only that feed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._global: Set[str] = set()
        self._by_feed: Dict[str, Set[str]] = {}

    def add_global(self, chat_id: str) -> bool:
        """Subscribe to all feeds. Returns False when already subscribed."""
        with self._lock:
            if chat_id in self._global:
                return False
            self._global.add(chat_id)
            logger.info("Chat %s subscribed. Total subscribers: %d", chat_id, len(self._global))
            return True

    def remove_global(self, chat_id: str) -> bool:
        with self._lock:
            if chat_id not in self._global:
                return False
            self._global.discard(chat_id)
            logger.info("Chat %s unsubscribed", chat_id)
            return True

    def is_global(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._global

    def follow(self, feed_name: str, chat_id: str) -> bool:
        key = normalize_feed_name(feed_name)
        with self._lock:
            followers = self._by_feed.setdefault(key, set())
            if chat_id in followers:
                return False
            followers.add(chat_id)
            logger.info("Chat %s follows feed '%s'", chat_id, key)
            return True

    def unfollow(self, feed_name: str, chat_id: str) -> bool:
        key = normalize_feed_name(feed_name)
        with self._lock:
            followers = self._by_feed.get(key)
            if not followers or chat_id not in followers:
                return False
            followers.discard(chat_id)
            if not followers:
                del self._by_feed[key]
            return True

    def resolve_subscribers(self, feed_name: str) -> Set[str]:
        """Chats that should receive items from the given feed."""
        key = normalize_feed_name(feed_name)
        with self._lock:
            return set(self._global) | set(self._by_feed.get(key, ()))

    def resolve_feeds(self, chat_id: str, feed_names: Iterable[str]) -> List[str]:
        """Names among ``feed_names`` that the chat effectively receives."""
        names = list(feed_names)
        with self._lock:
            if chat_id in self._global:
                return names
            return [
                name
                for name in names
                if chat_id in self._by_feed.get(normalize_feed_name(name), ())
            ]

    def evict(self, chat_id: str) -> None:
        """Remove a chat from every subscription set."""
        with self._lock:
            self._global.discard(chat_id)
            for key in list(self._by_feed):
                self._by_feed[key].discard(chat_id)
                if not self._by_feed[key]:
                    del self._by_feed[key]
        logger.info("Removed invalid chat ID: %s", chat_id)

    def subscriber_count(self) -> int:
        with self._lock:
            chats = set(self._global)
            for followers in self._by_feed.values():
                chats |= followers
            return len(chats)
