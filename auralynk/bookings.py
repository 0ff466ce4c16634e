"""Booking workflow: requests, reader decisions, cancellations and rooms.

Every operation follows the same shape: validate against the current
store state, perform the store mutation (atomic where it touches both the
booking and the reader's profile), then run derived side effects such as
notifications, confirmation emails and feed events. Side effects after the
mutation are best-effort and never undo it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .availability import (
    JoinStatus,
    ensure_bookable,
    join_status,
    reconcile,
    upcoming,
)
from .cache import AvailabilityCache
from .database import Database
from .feed import BookingEvent, BookingFeed, EventKind
from .models import (
    Booking,
    BookingConflictError,
    BookingStatus,
    Notification,
    Role,
    SlotUnavailableError,
    User,
)
from .notifier import ConfirmationMailer, NotificationError, format_session_time
from .rooms import RoomProvisioner, RoomProvisioningError

logger = logging.getLogger("auralynk.bookings")


@dataclass(frozen=True)
class ReaderListing:
    reader: User
    available_slots: Tuple[str, ...]


@dataclass(frozen=True)
class BookingView:
    """A booking together with the display names of both parties."""

    booking: Booking
    client_name: str
    reader_name: str


@dataclass(frozen=True)
class AcceptResult:
    booking: Booking
    notification_sent: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    """Coordinate the store, the change feed and the external integrations."""

    def __init__(
        self,
        database: Database,
        *,
        feed: Optional[BookingFeed] = None,
        cache: Optional[AvailabilityCache] = None,
        mailer: Optional[ConfirmationMailer] = None,
        rooms: Optional[RoomProvisioner] = None,
        pending_blocks_slot: bool = True,
    ) -> None:
        self._database = database
        self._feed = feed or BookingFeed()
        self._cache = cache
        self._mailer = mailer
        self._rooms = rooms
        self._pending_blocks_slot = pending_blocks_slot
        if self._cache is not None:
            self._cache.attach(self._feed)

    @property
    def database(self) -> Database:
        return self._database

    @property
    def feed(self) -> BookingFeed:
        return self._feed

    @property
    def pending_blocks_slot(self) -> bool:
        return self._pending_blocks_slot

    # ------------------------------------------------------------------
    # Profiles and declared availability
    # ------------------------------------------------------------------
    def get_profile(self, user_id: int) -> User:
        user = self._database.get_user(user_id)
        if user is None:
            raise KeyError(f"User {user_id} not found")
        return user

    def update_profile(
        self,
        user: User,
        *,
        display_name: str,
        bio: str,
        services: Optional[Sequence[str]] = None,
    ) -> User:
        if services is not None and not user.is_reader:
            raise PermissionError("Only readers can list services")
        return self._database.update_user_profile(
            user.id,
            display_name=display_name,
            bio=bio,
            services=services,
        )

    def set_slots(
        self,
        user: User,
        slots: Sequence[str],
        *,
        now: Optional[datetime] = None,
    ) -> User:
        """Replace the declared slots. Every slot must lie in the future, as for :meth:`add_slot`."""

        self._require_role(user, Role.READER, "Only readers can declare availability")
        current = now or _utcnow()
        canonical = [ensure_bookable(slot, now=current) for slot in slots]
        updated = self._database.set_available_slots(user.id, canonical)
        self._publish(EventKind.AVAILABILITY, reader_id=user.id)
        return updated

    def add_slot(self, user: User, slot: str, *, now: Optional[datetime] = None) -> User:
        self._require_role(user, Role.READER, "Only readers can declare availability")
        canonical = ensure_bookable(slot, now=now)
        updated = self._database.add_available_slot(user.id, canonical)
        self._publish(EventKind.AVAILABILITY, reader_id=user.id)
        return updated

    def remove_slot(self, user: User, slot: str) -> User:
        self._require_role(user, Role.READER, "Only readers can declare availability")
        updated = self._database.remove_available_slot(user.id, slot)
        self._publish(EventKind.AVAILABILITY, reader_id=user.id)
        return updated

    # ------------------------------------------------------------------
    # Reconciled availability
    # ------------------------------------------------------------------
    def reader_availability(self, reader_id: int) -> List[str]:
        reader = self._database.get_user(reader_id)
        if reader is None or not reader.is_reader:
            raise KeyError(f"Reader {reader_id} not found")
        return self._available_slots(reader)

    def list_readers(self) -> List[ReaderListing]:
        """Readers that declared at least one slot, with their bookable slots."""

        listings: List[ReaderListing] = []
        for reader in self._database.list_users(role=Role.READER):
            if not reader.available_slots:
                continue
            listings.append(
                ReaderListing(reader=reader, available_slots=tuple(self._available_slots(reader)))
            )
        return listings

    def _available_slots(self, reader: User) -> List[str]:
        def load() -> List[str]:
            bookings = self._database.list_bookings(reader_id=reader.id)
            return reconcile(
                reader.available_slots,
                bookings,
                pending_blocks=self._pending_blocks_slot,
            )

        if self._cache is None:
            return load()
        return self._cache.get(reader.id, load)

    # ------------------------------------------------------------------
    # Booking workflow
    # ------------------------------------------------------------------
    def request_booking(
        self,
        client: User,
        reader_id: int,
        selected_time: str,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Create a pending booking after checking the slot is still on offer."""

        self._require_role(client, Role.CLIENT, "Only clients can request bookings")
        slot = ensure_bookable(selected_time, now=now)

        reader = self._database.get_user(reader_id)
        if reader is None or not reader.is_reader:
            raise KeyError(f"Reader {reader_id} not found")

        if slot not in self._available_slots(reader):
            raise SlotUnavailableError("That time is no longer available.")

        booking = self._database.create_booking_if_available(
            client.id,
            reader.id,
            slot,
            pending_blocks=self._pending_blocks_slot,
        )
        logger.info(
            "Client %s requested reader %s for %s (booking %s)",
            client.id,
            reader.id,
            slot,
            booking.id,
        )
        self._publish(EventKind.CREATED, booking=booking)
        return booking

    def accept(self, reader: User, booking_id: int) -> AcceptResult:
        """Accept a pending booking, take the slot off sale and email the client."""

        booking = self._require_booking(booking_id)
        self._require_reader_of(reader, booking)

        accepted = self._database.transition_booking(booking.id, BookingStatus.ACCEPTED)
        logger.info("Reader %s accepted booking %s", reader.id, accepted.id)

        self._database.add_notification(
            accepted.client_id,
            f"{reader.display_name} accepted your session on "
            f"{format_session_time(accepted.selected_time)}.",
        )
        self._publish(EventKind.ACCEPTED, booking=accepted)

        sent = self._send_confirmation(accepted)
        return AcceptResult(booking=accepted, notification_sent=sent)

    def reject(self, reader: User, booking_id: int) -> Booking:
        booking = self._require_booking(booking_id)
        self._require_reader_of(reader, booking)

        rejected = self._database.transition_booking(booking.id, BookingStatus.REJECTED)
        logger.info("Reader %s rejected booking %s", reader.id, rejected.id)

        self._database.add_notification(
            rejected.client_id,
            f"{reader.display_name} declined your request for "
            f"{format_session_time(rejected.selected_time)}.",
        )
        self._publish(EventKind.REJECTED, booking=rejected)
        return rejected

    def cancel(self, user: User, booking_id: int) -> Booking:
        """Delete a booking on behalf of either party and restore the slot."""

        booking = self._require_booking(booking_id)
        if not booking.involves(user.id):
            raise PermissionError("You are not a party to this booking")

        deleted = self._database.delete_booking(booking.id)
        logger.info(
            "User %s cancelled booking %s (%s, was %s)",
            user.id,
            deleted.id,
            deleted.selected_time,
            deleted.status.value,
        )

        counterpart = deleted.reader_id if user.id == deleted.client_id else deleted.client_id
        self._database.add_notification(
            counterpart,
            f"{user.display_name} cancelled the session on "
            f"{format_session_time(deleted.selected_time)}.",
        )
        self._publish(EventKind.CANCELLED, booking=deleted)
        return deleted

    def ensure_room(self, user: User, booking_id: int) -> Booking:
        """Return the booking with a room URL, provisioning one on first use."""

        booking = self._require_booking(booking_id)
        if not booking.involves(user.id):
            raise PermissionError("You are not a party to this booking")
        if booking.room_url:
            return booking
        if booking.status is not BookingStatus.ACCEPTED:
            raise BookingConflictError("Rooms are only available for accepted bookings")
        if self._rooms is None:
            raise RoomProvisioningError("Room provisioning is not configured")

        room = self._rooms.create_room()
        updated = self._database.set_booking_room(booking.id, room.url)
        logger.info("Attached room %s to booking %s", updated.room_url, updated.id)
        self._publish(EventKind.ROOM_READY, booking=updated)
        return updated

    def session_status(
        self,
        user: User,
        booking_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, JoinStatus]:
        booking = self._require_booking(booking_id)
        if not booking.involves(user.id):
            raise PermissionError("You are not a party to this booking")
        return booking, join_status(booking.selected_time, booking.room_url, now=now)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_bookings(
        self,
        user: User,
        *,
        status: Optional[BookingStatus] = None,
        upcoming_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[BookingView]:
        """Bookings where ``user`` is the reader (for readers) or the client."""

        if user.is_reader:
            bookings = self._database.list_bookings(reader_id=user.id, status=status)
        else:
            bookings = self._database.list_bookings(client_id=user.id, status=status)
        if upcoming_only:
            bookings = upcoming(bookings, now=now or _utcnow())

        names: Dict[int, str] = {user.id: user.display_name}
        return [
            BookingView(
                booking=booking,
                client_name=self._display_name(booking.client_id, names),
                reader_name=self._display_name(booking.reader_id, names),
            )
            for booking in bookings
        ]

    def pending_count(self, user: User) -> int:
        if not user.is_reader:
            return 0
        return len(self._database.list_bookings(reader_id=user.id, status=BookingStatus.PENDING))

    def notifications(self, user: User) -> List[Notification]:
        return self._database.list_notifications(user.id)

    def find_booking(self, booking_id: int) -> Booking:
        return self._require_booking(booking_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _send_confirmation(self, booking: Booking) -> bool:
        if self._mailer is None:
            logger.debug("No mailer configured; skipping confirmation for booking %s", booking.id)
            return False

        client = self._database.get_user(booking.client_id)
        if client is None or not client.email:
            logger.info("Client of booking %s has no email address; skipping confirmation", booking.id)
            return False

        try:
            self._mailer.send_confirmation(client.email, booking.selected_time)
        except NotificationError as exc:
            logger.warning("Failed to send confirmation email for booking %s: %s", booking.id, exc)
            return False
        return True

    def _publish(
        self,
        kind: EventKind,
        *,
        booking: Optional[Booking] = None,
        reader_id: Optional[int] = None,
    ) -> None:
        if booking is not None:
            event = BookingEvent(
                kind=kind,
                reader_id=booking.reader_id,
                client_id=booking.client_id,
                booking=booking,
            )
        elif reader_id is not None:
            event = BookingEvent(kind=kind, reader_id=reader_id)
        else:  # pragma: no cover - programming error
            raise ValueError("An event needs a booking or a reader")
        self._feed.publish(event)

    def _require_booking(self, booking_id: int) -> Booking:
        booking = self._database.get_booking(booking_id)
        if booking is None:
            raise KeyError(f"Booking {booking_id} not found")
        return booking

    @staticmethod
    def _require_role(user: User, role: Role, message: str) -> None:
        if user.role is not role:
            raise PermissionError(message)

    @staticmethod
    def _require_reader_of(reader: User, booking: Booking) -> None:
        if booking.reader_id != reader.id:
            raise PermissionError("Only the booked reader can respond to this request")

    def _display_name(self, user_id: int, names: Dict[int, str]) -> str:
        if user_id not in names:
            other = self._database.get_user(user_id)
            names[user_id] = other.display_name if other and other.display_name else str(user_id)
        return names[user_id]


__all__ = [
    "AcceptResult",
    "BookingConflictError",
    "BookingService",
    "BookingView",
    "ReaderListing",
    "SlotUnavailableError",
]
