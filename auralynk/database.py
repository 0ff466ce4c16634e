"""SQLite-backed persistence for profiles, bookings and notifications."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

from passlib.context import CryptContext

from .availability import normalise_slot, normalise_slots, remove_slot, restore_slot
from .models import (
    Booking,
    BookingStatus,
    InvalidTransitionError,
    Notification,
    Role,
    SlotUnavailableError,
    User,
)


_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "auralynk.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _normalise_services(services: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for service in services:
        value = str(service).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class Database:
    """Simple wrapper around SQLite for persisting users, bookings and notifications."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a read-modify-write sequence under a write lock."""

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    role TEXT NOT NULL CHECK (role IN ('client', 'reader')),
                    display_name TEXT NOT NULL,
                    bio TEXT NOT NULL DEFAULT '',
                    email TEXT UNIQUE,
                    password_hash TEXT,
                    available_slots TEXT NOT NULL DEFAULT '[]',
                    services TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS bookings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    client_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    reader_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    selected_time TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    room_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    message TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_bookings_reader_status ON bookings(reader_id, status);
                CREATE INDEX IF NOT EXISTS idx_bookings_client_status ON bookings(client_id, status);
                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, timestamp);
                """
            )

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------
    def create_user(
        self,
        role: Role | str,
        display_name: str,
        email: Optional[str],
        password: str,
        *,
        bio: str = "",
        services: Sequence[str] = (),
        available_slots: Sequence[str] = (),
    ) -> User:
        """Create a new client or reader profile."""

        if not password:
            raise ValueError("Password must not be empty")
        normalized_name = display_name.strip()
        if not normalized_name:
            raise ValueError("Display name must not be empty")

        resolved_role = Role(role)
        normalized_email = email.strip().lower() if email else None
        slots = normalise_slots(available_slots)
        created_at = _current_timestamp()

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        role,
                        display_name,
                        bio,
                        email,
                        password_hash,
                        available_slots,
                        services,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        resolved_role.value,
                        normalized_name,
                        bio.strip(),
                        normalized_email,
                        _hash_password(password),
                        json.dumps(slots),
                        json.dumps(_normalise_services(services)),
                        _serialize_datetime(created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that email already exists") from exc
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self, *, role: Role | str | None = None) -> List[User]:
        with self._connect() as conn:
            if role is None:
                rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM users WHERE role = ? ORDER BY id",
                    (Role(role).value,),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        stored_hash = row["password_hash"]
        if not stored_hash or not _verify_password(password, stored_hash):
            return None
        return self._row_to_user(row)

    def update_user_profile(
        self,
        user_id: int,
        *,
        display_name: str,
        bio: str,
        services: Optional[Sequence[str]] = None,
    ) -> User:
        """Update the public profile fields of an existing user."""

        normalized_name = display_name.strip()
        if not normalized_name:
            raise ValueError("Display name must not be empty")

        with self._connect() as conn:
            if services is None:
                cursor = conn.execute(
                    "UPDATE users SET display_name = ?, bio = ? WHERE id = ?",
                    (normalized_name, bio.strip(), user_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE users SET display_name = ?, bio = ?, services = ? WHERE id = ?",
                    (
                        normalized_name,
                        bio.strip(),
                        json.dumps(_normalise_services(services)),
                        user_id,
                    ),
                )
            if cursor.rowcount == 0:
                raise KeyError(f"User {user_id} not found")

        return self._require_user(user_id)

    def set_available_slots(self, user_id: int, slots: Sequence[str]) -> User:
        """Replace the declared slots of a reader."""

        normalized = normalise_slots(slots)
        with self._transaction() as conn:
            self._apply_slot_change(conn, user_id, lambda _: normalized)
        return self._require_user(user_id)

    def add_available_slot(self, user_id: int, slot: str) -> User:
        canonical = normalise_slot(slot)
        with self._transaction() as conn:
            self._apply_slot_change(conn, user_id, lambda current: restore_slot(current, canonical))
        return self._require_user(user_id)

    def remove_available_slot(self, user_id: int, slot: str) -> User:
        canonical = normalise_slot(slot)
        with self._transaction() as conn:
            self._apply_slot_change(conn, user_id, lambda current: remove_slot(current, canonical))
        return self._require_user(user_id)

    # ------------------------------------------------------------------
    # Booking management
    # ------------------------------------------------------------------
    def create_booking(self, client_id: int, reader_id: int, selected_time: str) -> Booking:
        with self._connect() as conn:
            booking_id = self._insert_booking(conn, client_id, reader_id, normalise_slot(selected_time))
        return self._load_created_booking(booking_id)

    def create_booking_if_available(
        self,
        client_id: int,
        reader_id: int,
        selected_time: str,
        *,
        pending_blocks: bool = True,
    ) -> Booking:
        """Insert a pending booking only while the reader still offers the slot.

        The declared slots and the competing bookings are read under the same
        write lock as the insert, so two requests cannot both claim a slot.
        """

        slot = normalise_slot(selected_time)
        blocking = [BookingStatus.ACCEPTED.value]
        if pending_blocks:
            blocking.append(BookingStatus.PENDING.value)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT available_slots FROM users WHERE id = ? AND role = ?",
                (reader_id, Role.READER.value),
            ).fetchone()
            if row is None:
                raise KeyError(f"Reader {reader_id} not found")
            if slot not in json.loads(row["available_slots"] or "[]"):
                raise SlotUnavailableError("That time is no longer available.")

            placeholders = ", ".join("?" for _ in blocking)
            taken = conn.execute(
                f"""
                SELECT 1 FROM bookings
                 WHERE reader_id = ? AND selected_time = ? AND status IN ({placeholders})
                """,
                (reader_id, slot, *blocking),
            ).fetchone()
            if taken is not None:
                raise SlotUnavailableError("That time is no longer available.")

            booking_id = self._insert_booking(conn, client_id, reader_id, slot)

        return self._load_created_booking(booking_id)

    def _insert_booking(
        self,
        conn: sqlite3.Connection,
        client_id: int,
        reader_id: int,
        slot: str,
    ) -> int:
        created_at = _serialize_datetime(_current_timestamp())
        cursor = conn.execute(
            """
            INSERT INTO bookings (client_id, reader_id, selected_time, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (client_id, reader_id, slot, BookingStatus.PENDING.value, created_at, created_at),
        )
        return int(cursor.lastrowid)

    def _load_created_booking(self, booking_id: int) -> Booking:
        booking = self.get_booking(booking_id)
        if booking is None:
            raise RuntimeError("Failed to load booking after creation")
        return booking

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_booking(row)

    def list_bookings(
        self,
        *,
        client_id: Optional[int] = None,
        reader_id: Optional[int] = None,
        status: BookingStatus | str | None = None,
    ) -> List[Booking]:
        clauses: List[str] = []
        values: List[object] = []
        if client_id is not None:
            clauses.append("client_id = ?")
            values.append(client_id)
        if reader_id is not None:
            clauses.append("reader_id = ?")
            values.append(reader_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(BookingStatus(status).value)

        query = "SELECT * FROM bookings"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY selected_time, id"

        with self._connect() as conn:
            rows = conn.execute(query, values).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def transition_booking(self, booking_id: int, target: BookingStatus | str) -> Booking:
        """Move a pending booking to a terminal state.

        Accepting also removes the booked slot from the reader's declared
        availability inside the same transaction.
        """

        target_status = BookingStatus(target)
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
            if row is None:
                raise KeyError(f"Booking {booking_id} not found")
            current = BookingStatus(row["status"])
            if not current.can_transition_to(target_status):
                raise InvalidTransitionError(booking_id, current, target_status)
            if target_status is BookingStatus.ACCEPTED:
                taken = conn.execute(
                    """
                    SELECT 1 FROM bookings
                     WHERE reader_id = ? AND selected_time = ? AND status = ? AND id != ?
                    """,
                    (
                        row["reader_id"],
                        row["selected_time"],
                        BookingStatus.ACCEPTED.value,
                        booking_id,
                    ),
                ).fetchone()
                if taken is not None:
                    raise SlotUnavailableError("That time is already booked.")

            conn.execute(
                "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ?",
                (target_status.value, _serialize_datetime(_current_timestamp()), booking_id),
            )
            if target_status is BookingStatus.ACCEPTED:
                slot = str(row["selected_time"])
                self._apply_slot_change(
                    conn,
                    int(row["reader_id"]),
                    lambda slots: remove_slot(slots, slot),
                )

        booking = self.get_booking(booking_id)
        if booking is None:
            raise KeyError(f"Booking {booking_id} not found")
        return booking

    def delete_booking(self, booking_id: int, *, restore: bool = True) -> Booking:
        """Delete a booking in any state and hand its slot back to the reader."""

        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
            if row is None:
                raise KeyError(f"Booking {booking_id} not found")
            booking = self._row_to_booking(row)
            conn.execute("DELETE FROM bookings WHERE id = ?", (booking_id,))
            if restore:
                self._apply_slot_change(
                    conn,
                    booking.reader_id,
                    lambda slots: restore_slot(slots, booking.selected_time),
                    missing_ok=True,
                )
        return booking

    def set_booking_room(self, booking_id: int, room_url: str) -> Booking:
        """Attach a room URL unless another request already stored one."""

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE bookings
                   SET room_url = ?, updated_at = ?
                 WHERE id = ? AND room_url IS NULL
                """,
                (room_url, _serialize_datetime(_current_timestamp()), booking_id),
            )

        booking = self.get_booking(booking_id)
        if booking is None:
            raise KeyError(f"Booking {booking_id} not found")
        return booking

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def add_notification(
        self,
        user_id: int,
        message: str,
        *,
        timestamp: Optional[datetime] = None,
    ) -> Notification:
        created = timestamp or _current_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO notifications (user_id, message, timestamp) VALUES (?, ?, ?)",
                (user_id, message, _serialize_datetime(created)),
            )
            notification_id = cursor.lastrowid
        return Notification(id=notification_id, user_id=user_id, message=message, timestamp=created)

    def list_notifications(self, user_id: int) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY timestamp DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_user(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise KeyError(f"User {user_id} not found")
        return user

    def _apply_slot_change(
        self,
        conn: sqlite3.Connection,
        user_id: int,
        change: Callable[[List[str]], List[str]],
        *,
        missing_ok: bool = False,
    ) -> None:
        row = conn.execute(
            "SELECT available_slots FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            if missing_ok:
                return
            raise KeyError(f"User {user_id} not found")
        current = json.loads(row["available_slots"] or "[]")
        updated = change(list(current))
        conn.execute(
            "UPDATE users SET available_slots = ? WHERE id = ?",
            (json.dumps(updated), user_id),
        )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            role=Role(row["role"]),
            display_name=str(row["display_name"]),
            bio=str(row["bio"] or ""),
            email=row["email"],
            available_slots=tuple(json.loads(row["available_slots"] or "[]")),
            services=tuple(json.loads(row["services"] or "[]")),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=int(row["id"]),
            client_id=int(row["client_id"]),
            reader_id=int(row["reader_id"]),
            selected_time=str(row["selected_time"]),
            status=BookingStatus(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            room_url=row["room_url"],
        )

    def _row_to_notification(self, row: sqlite3.Row) -> Notification:
        return Notification(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            message=str(row["message"]),
            timestamp=_parse_datetime(str(row["timestamp"])),
        )


__all__ = ["Database", "resolve_database_path"]
