from __future__ import annotations

from datetime import timedelta

from auralynk.cache import AvailabilityCache
from auralynk.feed import BookingEvent, BookingFeed, EventKind


def test_entries_are_reused_until_invalidated() -> None:
    cache = AvailabilityCache()
    calls: list[int] = []

    def loader() -> list[str]:
        calls.append(1)
        return ["2030-05-02T10:00:00.000Z"]

    assert cache.get(1, loader) == ["2030-05-02T10:00:00.000Z"]
    assert cache.get(1, loader) == ["2030-05-02T10:00:00.000Z"]
    assert len(calls) == 1
    assert 1 in cache

    cache.invalidate(1)
    assert 1 not in cache
    cache.get(1, loader)
    assert len(calls) == 2


def test_zero_ttl_disables_caching() -> None:
    cache = AvailabilityCache(ttl=timedelta(0))
    calls: list[int] = []

    def loader() -> list[str]:
        calls.append(1)
        return []

    cache.get(1, loader)
    cache.get(1, loader)

    assert len(calls) == 2
    assert 1 not in cache


def test_invalidation_during_load_is_not_overwritten() -> None:
    cache = AvailabilityCache()

    def loader() -> list[str]:
        cache.invalidate(1)
        return ["stale"]

    assert cache.get(1, loader) == ["stale"]
    assert 1 not in cache


def test_feed_events_invalidate_the_reader() -> None:
    feed = BookingFeed()
    cache = AvailabilityCache()
    cache.attach(feed)
    cache.get(1, lambda: ["a"])
    cache.get(2, lambda: ["b"])

    feed.publish(BookingEvent(kind=EventKind.AVAILABILITY, reader_id=1))

    assert 1 not in cache
    assert 2 in cache

    cache.detach()
    feed.publish(BookingEvent(kind=EventKind.AVAILABILITY, reader_id=2))
    assert 2 in cache
