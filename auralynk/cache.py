"""Query cache for reconciled reader availability."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .feed import BookingEvent, BookingFeed, Subscription


@dataclass
class _CacheRecord:
    slots: Tuple[str, ...]
    expires_at: datetime


class AvailabilityCache:
    """Cache reconciled slot lists per reader until a change invalidates them."""

    def __init__(self, *, ttl: timedelta = timedelta(seconds=30)) -> None:
        self._ttl = ttl
        self._entries: Dict[int, _CacheRecord] = {}
        self._generations: Dict[int, int] = {}
        self._lock = threading.Lock()
        self._subscription: Optional[Subscription] = None

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, reader_id: int, loader: Callable[[], List[str]]) -> List[str]:
        now = self._now()
        with self._lock:
            record = self._entries.get(reader_id)
            if record is not None and record.expires_at > now:
                return list(record.slots)
            generation = self._generations.get(reader_id, 0)

        slots = loader()
        if self._ttl > timedelta(0):
            with self._lock:
                if self._generations.get(reader_id, 0) != generation:
                    return list(slots)
                self._entries[reader_id] = _CacheRecord(
                    slots=tuple(slots),
                    expires_at=now + self._ttl,
                )
        return list(slots)

    def invalidate(self, reader_id: int) -> None:
        with self._lock:
            self._entries.pop(reader_id, None)
            # Loads that started before this call must not repopulate the entry.
            self._generations[reader_id] = self._generations.get(reader_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def attach(self, feed: BookingFeed) -> Subscription:
        """Drop a reader's entry whenever the feed reports a change for them."""

        if self._subscription is not None and self._subscription.active:
            return self._subscription
        self._subscription = feed.subscribe(self._on_event)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _on_event(self, event: BookingEvent) -> None:
        self.invalidate(event.reader_id)

    def __contains__(self, reader_id: object) -> bool:
        with self._lock:
            record = self._entries.get(reader_id)  # type: ignore[arg-type]
            return record is not None and record.expires_at > self._now()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["AvailabilityCache"]
