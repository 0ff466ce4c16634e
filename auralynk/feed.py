"""In-process publish/subscribe for booking and availability changes."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from .models import Booking

logger = logging.getLogger("auralynk.feed")


class EventKind(str, Enum):
    CREATED = "booking.created"
    ACCEPTED = "booking.accepted"
    REJECTED = "booking.rejected"
    CANCELLED = "booking.cancelled"
    ROOM_READY = "booking.room_ready"
    AVAILABILITY = "availability.changed"


@dataclass(frozen=True)
class BookingEvent:
    """A change to a booking, or to the declared slots of a reader."""

    kind: EventKind
    reader_id: int
    client_id: Optional[int] = None
    booking: Optional[Booking] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "type": self.kind.value,
            "reader_id": self.reader_id,
            "client_id": self.client_id,
            "occurred_at": self.occurred_at.isoformat(),
        }
        if self.booking is not None:
            payload["booking"] = {
                "id": self.booking.id,
                "client_id": self.booking.client_id,
                "reader_id": self.booking.reader_id,
                "selected_time": self.booking.selected_time,
                "status": self.booking.status.value,
                "room_url": self.booking.room_url,
            }
        return payload


Handler = Callable[[BookingEvent], None]


class Subscription:
    """Handle returned by :meth:`BookingFeed.subscribe`."""

    def __init__(
        self,
        feed: "BookingFeed",
        subscription_id: int,
        handler: Handler,
        *,
        reader_id: Optional[int] = None,
        client_id: Optional[int] = None,
    ) -> None:
        self._feed = feed
        self._id = subscription_id
        self._handler = handler
        self._reader_id = reader_id
        self._client_id = client_id
        self._active = True
        self._lock = threading.RLock()

    @property
    def id(self) -> int:
        return self._id

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: BookingEvent) -> bool:
        if self._reader_id is None and self._client_id is None:
            return True
        if self._reader_id is not None and event.reader_id == self._reader_id:
            return True
        return self._client_id is not None and event.client_id == self._client_id

    def deliver(self, event: BookingEvent) -> bool:
        """Invoke the handler unless the subscription was cancelled meanwhile."""

        with self._lock:
            if not self._active:
                return False
            self._handler(event)
            return True

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._feed._remove(self._id)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class BookingFeed:
    """Fan booking events out to interested subscribers."""

    def __init__(self) -> None:
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: Handler,
        *,
        reader_id: Optional[int] = None,
        client_id: Optional[int] = None,
    ) -> Subscription:
        """Register ``handler``; without filters it receives every event."""

        with self._lock:
            subscription = Subscription(
                self,
                next(self._ids),
                handler,
                reader_id=reader_id,
                client_id=client_id,
            )
            self._subscriptions[subscription.id] = subscription
        return subscription

    def publish(self, event: BookingEvent) -> int:
        """Deliver ``event`` and return the number of handlers that saw it."""

        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(event)]

        delivered = 0
        for subscription in targets:
            try:
                if subscription.deliver(event):
                    delivered += 1
            except Exception:
                logger.exception(
                    "Subscriber %s failed to handle %s", subscription.id, event.kind.value
                )
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription_id: int) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)


__all__ = ["BookingEvent", "BookingFeed", "EventKind", "Subscription"]
