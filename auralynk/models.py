"""Domain models for readers, clients and their bookings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """The side of the marketplace a user account belongs to."""

    CLIENT = "client"
    READER = "reader"


class BookingStatus(str, Enum):
    """Lifecycle state of a booking request."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def is_active(self) -> bool:
        """Active bookings hold on to their slot."""

        return self is not BookingStatus.REJECTED

    @property
    def is_terminal(self) -> bool:
        return self is not BookingStatus.PENDING

    def can_transition_to(self, target: "BookingStatus") -> bool:
        return self is BookingStatus.PENDING and target in (
            BookingStatus.ACCEPTED,
            BookingStatus.REJECTED,
        )


class BookingConflictError(ValueError):
    """Raised when a request conflicts with the current state of a booking."""


class SlotUnavailableError(BookingConflictError):
    """Raised when a slot is no longer on offer or already taken."""


class InvalidTransitionError(BookingConflictError):
    """Raised when a booking is moved out of a terminal state."""

    def __init__(self, booking_id: int, current: BookingStatus, target: BookingStatus) -> None:
        super().__init__(
            f"Booking {booking_id} is already {current.value} and cannot be {target.value}"
        )
        self.booking_id = booking_id
        self.current = current
        self.target = target


@dataclass(frozen=True)
class User:
    """Represents a client or reader profile stored in the database."""

    id: int
    role: Role
    display_name: str
    bio: str
    email: Optional[str]
    available_slots: tuple[str, ...]
    services: tuple[str, ...]
    created_at: datetime

    @property
    def is_reader(self) -> bool:
        return self.role is Role.READER


@dataclass(frozen=True)
class Booking:
    """A client's request for a session in one of a reader's slots."""

    id: int
    client_id: int
    reader_id: int
    selected_time: str
    status: BookingStatus
    created_at: datetime
    updated_at: datetime
    room_url: Optional[str] = None

    def involves(self, user_id: int) -> bool:
        return user_id in (self.client_id, self.reader_id)


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: int
    message: str
    timestamp: datetime


__all__ = [
    "Booking",
    "BookingConflictError",
    "BookingStatus",
    "InvalidTransitionError",
    "Notification",
    "Role",
    "SlotUnavailableError",
    "User",
]
