"""Periodic and on-demand delivery sweeps."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set

from . import db
from .exceptions import SendFailure
from .feeds import fetch_items
from .identity import canonical_id
from .models import FeedConfig, RawItem
from .renderers import build_message
from .subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

Fetcher = Callable[[FeedConfig, int], List[RawItem]]
Sender = Callable[[str, str], None]


@dataclass
class SchedulerConfig:
    """Runtime options for delivery sweeps."""

    interval_seconds: float = 300.0
    periodic_limit: int = 10
    manual_limit: int = 5
    send_delay: float = 0.3
    concurrency: int = 4


@dataclass
class SweepReport:
    """Counters collected while processing one or more feeds."""

    feeds: int = 0
    items_seen: int = 0
    delivered: int = 0
    claimed: int = 0
    failed_feeds: List[str] = field(default_factory=list)

    def merge(self, other: "SweepReport") -> None:
        self.feeds += other.feeds
        self.items_seen += other.items_seen
        self.delivered += other.delivered
        self.claimed += other.claimed
        self.failed_feeds.extend(other.failed_feeds)


class DeliveryScheduler:
    """Runs sweeps over the configured feeds and fans new items out to chats.

    The periodic sweep runs on a background thread owned by this object;
    manual checks run on the caller's thread. Both paths go through
    ``_process_feed`` and rely on ``db.claim_for_sending`` to make sure an
    item is delivered by at most one of them.
    """

    def __init__(
        self,
        feeds: Sequence[FeedConfig],
        session_factory,
        registry: SubscriptionRegistry,
        fetch: Fetcher,
        send: Sender,
        config: Optional[SchedulerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.feeds = list(feeds)
        self._session_factory = session_factory
        self._registry = registry
        self._fetch = fetch
        self._send = send
        self.config = config or SchedulerConfig()
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the periodic sweep; the first sweep runs immediately."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Scheduler is already running.")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_periodic, name="rss-relay-sweep", daemon=True
        )
        self._thread.start()
        logger.info(
            "Checking %d feed(s) every %.0f seconds",
            len(self.feeds),
            self.config.interval_seconds,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the periodic sweep, waiting for a running sweep to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Periodic sweep stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_periodic(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:  # noqa: BLE001 - keep the loop alive
                logger.exception("Unexpected error during periodic sweep")
            self._stop_event.wait(self.config.interval_seconds)

    def run_sweep(self) -> SweepReport:
        """Check every feed and deliver new items to their subscribers."""
        logger.info("Checking for new news in %d feed(s)", len(self.feeds))
        report = SweepReport()

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self.config.concurrency)
        ) as executor:
            futures = [
                executor.submit(self._safe_process_feed, feed, self.config.periodic_limit)
                for feed in self.feeds
            ]
            for future in concurrent.futures.as_completed(futures):
                report.merge(future.result())

        logger.info(
            "Sweep finished: %d item(s) seen, %d claimed, %d message(s) delivered",
            report.items_seen,
            report.claimed,
            report.delivered,
        )
        return report

    def run_manual_check(self, chat_id: str) -> int:
        """Deliver unsent items from every feed to a single chat.

        Returns the number of messages delivered.
        """
        logger.info("Chat %s requested manual news check", chat_id)
        report = SweepReport()
        for feed in self.feeds:
            report.merge(
                self._safe_process_feed(
                    feed, self.config.manual_limit, recipients={chat_id}
                )
            )
        return report.delivered

    def _safe_process_feed(
        self,
        feed: FeedConfig,
        limit: int,
        recipients: Optional[Set[str]] = None,
    ) -> SweepReport:
        try:
            return self._process_feed(feed, limit, recipients)
        except Exception:  # noqa: BLE001 - one feed must not stop the sweep
            logger.exception("Failed to process feed '%s'", feed.name)
            return SweepReport(feeds=1, failed_feeds=[feed.name])

    def _process_feed(
        self,
        feed: FeedConfig,
        limit: int,
        recipients: Optional[Set[str]] = None,
    ) -> SweepReport:
        report = SweepReport(feeds=1)
        items = self._fetch(feed, limit)[:limit]
        if not items:
            logger.info("No items retrieved for feed '%s'", feed.name)
            return report

        first_send = True
        for raw in items:
            report.items_seen += 1
            with self._session_factory() as session:
                record = db.insert_or_get(
                    session, canonical_id(raw), raw.title, raw.link, feed.name
                )
                if record.sent:
                    continue

                targets = (
                    set(recipients)
                    if recipients is not None
                    else self._registry.resolve_subscribers(feed.name)
                )
                if not targets:
                    logger.info(
                        "No subscribers for feed '%s'; leaving '%s' unsent",
                        feed.name,
                        record.title[:50],
                    )
                    continue

                if not db.claim_for_sending(session, record.id):
                    logger.debug("Item %s already claimed or sent as a duplicate", record.id)
                    continue
                report.claimed += 1

                try:
                    db.mark_duplicates_sent(session, record)
                except Exception:  # noqa: BLE001 - cleanup only
                    logger.warning(
                        "Could not mark duplicates of item %s", record.id, exc_info=True
                    )

            message = build_message(feed.name, raw)
            sent_count = 0
            for chat_id in sorted(targets):
                if not first_send:
                    self._sleep(self.config.send_delay)
                first_send = False
                if self._deliver(chat_id, message):
                    sent_count += 1

            report.delivered += sent_count
            logger.info(
                "Sent \"%s...\" to %d subscriber(s)", record.title[:50], sent_count
            )

        return report

    def _deliver(self, chat_id: str, message: str) -> bool:
        try:
            self._send(chat_id, message)
        except SendFailure as exc:
            logger.error("Error sending message to chat %s: %s", chat_id, exc)
            if exc.should_evict:
                self._registry.evict(chat_id)
            return False
        except Exception as exc:  # noqa: BLE001 - transport errors are per-recipient
            logger.error("Error sending message to chat %s: %s", chat_id, exc)
            return False
        return True


def make_fetcher(reddit=None) -> Fetcher:
    """Bind the feed dispatcher to an optional Reddit client."""

    def fetch(feed: FeedConfig, limit: int) -> List[RawItem]:
        return fetch_items(feed, limit, reddit=reddit)

    return fetch
