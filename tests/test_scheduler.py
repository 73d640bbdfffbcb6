import threading

import pytest

from rss_relay import db
from rss_relay.exceptions import SendFailure, SendFailureKind
from rss_relay.models import RawItem, RssFeed
from rss_relay.scheduler import DeliveryScheduler, SchedulerConfig

FEED = RssFeed(name="F", url="https://x.example/rss")


class FakeFeeds:
    """Returns configured items per feed name; raises for names in ``broken``."""

    def __init__(self, items=None, broken=()):
        self.items = items or {}
        self.broken = set(broken)
        self.calls = []

    def __call__(self, feed, limit):
        self.calls.append((feed.name, limit))
        if feed.name in self.broken:
            raise RuntimeError("adapter exploded")
        return list(self.items.get(feed.name, []))[:limit]


class FakeSender:
    def __init__(self, failures=None):
        self.failures = failures or {}
        self.sent = []
        self._lock = threading.Lock()

    def __call__(self, chat_id, message):
        if chat_id in self.failures:
            raise SendFailure(self.failures[chat_id])
        with self._lock:
            self.sent.append((chat_id, message))


def _scheduler(session_factory, registry, fetch, send, feeds=(FEED,), **config):
    return DeliveryScheduler(
        list(feeds),
        session_factory,
        registry,
        fetch=fetch,
        send=send,
        config=SchedulerConfig(**config),
        sleep=lambda _seconds: None,
    )


def _item(link="https://x.example/a?x=1", title="Breaking story happened today"):
    return RawItem(title=title, guid="g1", link=link)


def test_end_to_end_dedup_and_delivery(session_factory, registry):
    fetch = FakeFeeds({"F": [_item()]})
    send = FakeSender()
    scheduler = _scheduler(session_factory, registry, fetch, send)

    first = scheduler.run_sweep()
    assert first.delivered == 0
    assert send.sent == []
    with session_factory() as session:
        stored = db.find_existing(session, "https://x.example/a", None, None)
    assert stored is not None and stored.sent is False

    registry.follow("F", "S")
    second = scheduler.run_sweep()
    assert second.delivered == 1
    assert [chat for chat, _ in send.sent] == ["S"]
    assert "Breaking story happened today" in send.sent[0][1]

    fetch.items["F"] = [_item(link="https://x.example/a?x=2")]
    third = scheduler.run_sweep()
    assert third.delivered == 0
    assert len(send.sent) == 1


def test_failing_feed_does_not_block_others(session_factory, registry):
    feeds = [RssFeed("Broken", "u1"), RssFeed("Healthy", "u2")]
    fetch = FakeFeeds(
        {"Healthy": [RawItem(title="Healthy feed headline", link="https://h.example/1")]},
        broken={"Broken"},
    )
    send = FakeSender()
    registry.add_global("S")
    scheduler = _scheduler(session_factory, registry, fetch, send, feeds=feeds)

    report = scheduler.run_sweep()

    assert report.failed_feeds == ["Broken"]
    assert report.delivered == 1
    assert send.sent[0][0] == "S"


@pytest.mark.parametrize("kind", [SendFailureKind.FORBIDDEN, SendFailureKind.BAD_REQUEST])
def test_forbidden_recipient_is_evicted(session_factory, registry, kind):
    registry.add_global("blocked")
    registry.follow("F", "blocked")
    registry.follow("Other", "blocked")
    registry.add_global("ok")
    send = FakeSender(failures={"blocked": kind})
    scheduler = _scheduler(session_factory, registry, FakeFeeds({"F": [_item()]}), send)

    report = scheduler.run_sweep()

    assert report.delivered == 1
    assert registry.resolve_subscribers("F") == {"ok"}
    assert registry.resolve_subscribers("Other") == {"ok"}


def test_transient_failure_keeps_subscriber_and_item_stays_sent(session_factory, registry):
    registry.add_global("flaky")
    send = FakeSender(failures={"flaky": SendFailureKind.TRANSIENT})
    fetch = FakeFeeds({"F": [_item()]})
    scheduler = _scheduler(session_factory, registry, fetch, send)

    assert scheduler.run_sweep().delivered == 0
    assert registry.resolve_subscribers("F") == {"flaky"}

    send.failures.clear()
    assert scheduler.run_sweep().delivered == 0
    assert send.sent == []


def test_fan_out_delay_between_sends(session_factory, registry):
    for chat in ("a", "b", "c"):
        registry.add_global(chat)
    delays = []
    scheduler = DeliveryScheduler(
        [FEED],
        session_factory,
        registry,
        fetch=FakeFeeds({"F": [_item()]}),
        send=FakeSender(),
        config=SchedulerConfig(send_delay=0.25),
        sleep=delays.append,
    )

    scheduler.run_sweep()

    assert delays == [0.25, 0.25]


def test_limits_per_sweep_path(session_factory, registry):
    fetch = FakeFeeds({"F": []})
    scheduler = _scheduler(
        session_factory, registry, fetch, FakeSender(), periodic_limit=10, manual_limit=5
    )

    scheduler.run_sweep()
    scheduler.run_manual_check("S")

    assert fetch.calls == [("F", 10), ("F", 5)]


def test_manual_check_targets_only_requester(session_factory, registry):
    registry.add_global("someone-else")
    items = [
        RawItem(title="First headline of the day", link="https://x.example/1"),
        RawItem(title="Second headline of the day", link="https://x.example/2"),
    ]
    send = FakeSender()
    scheduler = _scheduler(session_factory, registry, FakeFeeds({"F": items}), send)

    delivered = scheduler.run_manual_check("requester")

    assert delivered == 2
    assert {chat for chat, _ in send.sent} == {"requester"}
    assert scheduler.run_manual_check("requester") == 0
    assert scheduler.run_sweep().delivered == 0


def test_duplicate_link_within_sweep_delivers_once(session_factory, registry):
    registry.add_global("S")
    items = [
        RawItem(title="Headline with a tracking link", guid="a", link="https://x.example/p?utm=1"),
        RawItem(title="Headline with another link", guid="b", link="https://X.example/p?utm=2"),
    ]
    send = FakeSender()
    scheduler = _scheduler(session_factory, registry, FakeFeeds({"F": items}), send)

    assert scheduler.run_sweep().delivered == 1


def test_same_story_on_two_feeds_is_delivered_once(session_factory, registry, monkeypatch):
    monkeypatch.setattr(db, "find_existing", lambda *args: None)
    registry.add_global("S")
    feeds = [RssFeed("A", "u1"), RssFeed("B", "u2")]
    fetch = FakeFeeds(
        {
            "A": [RawItem(title="Wire story syndicated everywhere", link="https://a.example/1")],
            "B": [RawItem(title="Wire story syndicated everywhere", link="https://b.example/7")],
        }
    )
    send = FakeSender()
    scheduler = _scheduler(session_factory, registry, fetch, send, feeds=feeds)

    report = scheduler.run_sweep()

    assert report.claimed == 1
    assert len(send.sent) == 1


def test_concurrent_sweeps_deliver_each_item_once(session_factory, registry):
    registry.add_global("S")
    items = [
        RawItem(title=f"Concurrent headline number {n}", link=f"https://x.example/{n}")
        for n in range(5)
    ]
    send = FakeSender()
    scheduler = _scheduler(session_factory, registry, FakeFeeds({"F": items}), send)
    barrier = threading.Barrier(4)
    errors = []

    def sweep(manual):
        barrier.wait()
        try:
            if manual:
                scheduler.run_manual_check("S")
            else:
                scheduler.run_sweep()
        except Exception as exc:  # pragma: no cover - surfaced by the assertion
            errors.append(exc)

    threads = [threading.Thread(target=sweep, args=(n % 2 == 0,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    messages = [message for _, message in send.sent]
    assert len(messages) == 5
    assert len(set(messages)) == 5


def test_start_and_stop_runs_initial_sweep(session_factory, registry):
    swept = threading.Event()

    def fetch(feed, limit):
        swept.set()
        return []

    scheduler = _scheduler(
        session_factory, registry, fetch, FakeSender(), interval_seconds=3600
    )

    scheduler.start()
    try:
        assert swept.wait(5)
        assert scheduler.running
        with pytest.raises(RuntimeError):
            scheduler.start()
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.running
