"""Pure helpers for reconciling reader availability against bookings.

Slots are ISO-8601 timestamps kept in the canonical form produced by
:func:`format_timestamp` (UTC with millisecond precision and a ``Z`` suffix)
so that two slots denote the same instant exactly when their strings match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Booking, BookingStatus

JOIN_WINDOW_BEFORE = timedelta(minutes=15)
JOIN_WINDOW_AFTER = timedelta(minutes=60)

JOIN_OK = "ok"
JOIN_NO_ROOM = "no_room"
JOIN_OUTSIDE_WINDOW = "outside_window"

_JOIN_MESSAGES = {
    JOIN_OK: "Join video session",
    JOIN_NO_ROOM: "No room link yet",
    JOIN_OUTSIDE_WINDOW: "Not time to join yet",
}


class PastSlotError(ValueError):
    """Raised when a booking is requested for a slot that has already started."""


@dataclass(frozen=True)
class JoinStatus:
    joinable: bool
    reason: str

    @property
    def message(self) -> str:
        return _JOIN_MESSAGES[self.reason]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""

    text = str(value).strip()
    if not text:
        raise ValueError("Timestamp must not be empty")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render ``value`` the way ``Date.prototype.toISOString`` does."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    millis = utc.microsecond // 1000
    return utc.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def normalise_slot(value: str) -> str:
    return format_timestamp(parse_timestamp(value))


def normalise_slots(slots: Iterable[str]) -> List[str]:
    """Canonicalise slots and drop duplicates, keeping first occurrences."""

    seen: set[str] = set()
    normalised: List[str] = []
    for slot in slots:
        canonical = normalise_slot(slot)
        if canonical in seen:
            continue
        seen.add(canonical)
        normalised.append(canonical)
    return normalised


def reconcile(
    slots: Sequence[str],
    bookings: Iterable[Booking],
    *,
    pending_blocks: bool = True,
) -> List[str]:
    """Return the slots that no active booking has claimed, in their original order."""

    claimed = {
        booking.selected_time
        for booking in bookings
        if booking.status.is_active
        and (pending_blocks or booking.status is not BookingStatus.PENDING)
    }
    return [slot for slot in slots if slot not in claimed]


def remove_slot(slots: Sequence[str], slot: str) -> List[str]:
    return [entry for entry in slots if entry != slot]


def restore_slot(slots: Sequence[str], slot: str) -> List[str]:
    """Put ``slot`` back into ``slots`` unless it is already present.

    The slot goes in front of the first later entry, so a chronologically
    ordered list stays ordered.
    """

    restored = list(slots)
    if slot in restored:
        return restored
    instant = parse_timestamp(slot)
    for index, entry in enumerate(restored):
        try:
            later = parse_timestamp(entry) > instant
        except ValueError:
            continue
        if later:
            restored.insert(index, slot)
            return restored
    restored.append(slot)
    return restored


def ensure_bookable(selected_time: str, *, now: Optional[datetime] = None) -> str:
    """Return the canonical slot or raise :class:`PastSlotError`."""

    instant = parse_timestamp(selected_time)
    current = now or _utcnow()
    if instant <= current:
        raise PastSlotError("Can't book a past time.")
    return format_timestamp(instant)


def join_status(
    selected_time: str,
    room_url: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> JoinStatus:
    if not room_url:
        return JoinStatus(joinable=False, reason=JOIN_NO_ROOM)
    scheduled = parse_timestamp(selected_time)
    current = now or _utcnow()
    if scheduled - JOIN_WINDOW_BEFORE <= current <= scheduled + JOIN_WINDOW_AFTER:
        return JoinStatus(joinable=True, reason=JOIN_OK)
    return JoinStatus(joinable=False, reason=JOIN_OUTSIDE_WINDOW)


def is_joinable(
    selected_time: str,
    room_url: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> bool:
    """A session can be entered from 15 minutes before until 60 minutes after it starts."""

    return join_status(selected_time, room_url, now=now).joinable


def upcoming(bookings: Iterable[Booking], *, now: Optional[datetime] = None) -> List[Booking]:
    """Accepted bookings that have not started yet, soonest first."""

    current = now or _utcnow()
    future = [
        booking
        for booking in bookings
        if booking.status is BookingStatus.ACCEPTED
        and parse_timestamp(booking.selected_time) > current
    ]
    return sorted(future, key=lambda booking: parse_timestamp(booking.selected_time))


def group_slots_by_day(
    slots: Iterable[str],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, List[str]]:
    """Group future slots by UTC calendar day (``YYYY-MM-DD``), sorted within each day."""

    current = now or _utcnow()
    future = sorted(
        (parse_timestamp(slot), slot) for slot in slots if parse_timestamp(slot) > current
    )
    grouped: Dict[str, List[str]] = {}
    for instant, slot in future:
        grouped.setdefault(instant.date().isoformat(), []).append(slot)
    return grouped


__all__ = [
    "JOIN_NO_ROOM",
    "JOIN_OK",
    "JOIN_OUTSIDE_WINDOW",
    "JOIN_WINDOW_AFTER",
    "JOIN_WINDOW_BEFORE",
    "JoinStatus",
    "PastSlotError",
    "ensure_bookable",
    "format_timestamp",
    "group_slots_by_day",
    "is_joinable",
    "join_status",
    "normalise_slot",
    "normalise_slots",
    "parse_timestamp",
    "reconcile",
    "remove_slot",
    "restore_slot",
    "upcoming",
]
