from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

import httpx
import pytest

from auralynk.availability import PastSlotError, parse_timestamp
from auralynk.bookings import BookingService
from auralynk.cache import AvailabilityCache
from auralynk.database import Database
from auralynk.feed import BookingEvent, BookingFeed, EventKind
from auralynk.models import (
    BookingConflictError,
    BookingStatus,
    InvalidTransitionError,
    Role,
    SlotUnavailableError,
)
from auralynk.notifier import NotificationError
from auralynk.rooms import RoomProvisioner, RoomProvisioningError

SLOT_A = "2030-05-02T10:00:00.000Z"
SLOT_B = "2030-05-02T14:00:00.000Z"


class RecordingMailer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    def send_confirmation(self, email: str, time: str) -> None:
        if self.fail:
            raise NotificationError("relay unavailable")
        self.sent.append((email, time))


def _rooms(calls: List[httpx.Request]) -> RoomProvisioner:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"name": "room-1", "url": "https://auralynk.daily.co/room-1"})

    return RoomProvisioner("daily-key", client=httpx.Client(transport=httpx.MockTransport(handler)))


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "auralynk.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def reader(database: Database):
    return database.create_user(
        Role.READER,
        "Madame Iris",
        "iris@example.com",
        "CrystalBall123",
        available_slots=[SLOT_A, SLOT_B],
    )


@pytest.fixture()
def client(database: Database):
    return database.create_user(Role.CLIENT, "Casey", "casey@example.com", "ClientSecret123")


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def room_calls() -> List[httpx.Request]:
    return []


@pytest.fixture()
def service(database: Database, mailer: RecordingMailer, room_calls: List[httpx.Request]) -> BookingService:
    return BookingService(
        database,
        feed=BookingFeed(),
        cache=AvailabilityCache(),
        mailer=mailer,  # type: ignore[arg-type]
        rooms=_rooms(room_calls),
    )


def test_request_booking_creates_pending_booking_and_hides_slot(service, reader, client) -> None:
    booking = service.request_booking(client, reader.id, "2030-05-02T10:00:00Z")

    assert booking.status is BookingStatus.PENDING
    assert booking.selected_time == SLOT_A
    assert service.reader_availability(reader.id) == [SLOT_B]
    assert service.pending_count(reader) == 1


def test_pending_bookings_can_leave_slot_open(database, mailer, reader, client) -> None:
    service = BookingService(database, mailer=mailer, pending_blocks_slot=False)
    service.request_booking(client, reader.id, SLOT_A)

    assert service.reader_availability(reader.id) == [SLOT_A, SLOT_B]


def test_past_slot_request_makes_no_write(service, database, reader, client) -> None:
    with pytest.raises(PastSlotError):
        service.request_booking(client, reader.id, "2020-01-01T00:00:00.000Z")

    assert database.list_bookings() == []


def test_request_checks_reader_and_slot(service, reader, client) -> None:
    with pytest.raises(KeyError):
        service.request_booking(client, 999, SLOT_A)
    with pytest.raises(KeyError):
        service.request_booking(client, client.id, SLOT_A)
    with pytest.raises(SlotUnavailableError):
        service.request_booking(client, reader.id, "2030-06-01T10:00:00.000Z")

    service.request_booking(client, reader.id, SLOT_A)
    with pytest.raises(SlotUnavailableError):
        service.request_booking(client, reader.id, SLOT_A)


def test_only_clients_can_request(service, reader) -> None:
    with pytest.raises(PermissionError):
        service.request_booking(reader, reader.id, SLOT_A)


def test_accept_removes_slot_notifies_and_emails(service, database, mailer, reader, client) -> None:
    booking = service.request_booking(client, reader.id, SLOT_A)

    result = service.accept(reader, booking.id)

    assert result.booking.status is BookingStatus.ACCEPTED
    assert result.notification_sent is True
    assert mailer.sent == [("casey@example.com", SLOT_A)]
    assert database.get_user(reader.id).available_slots == (SLOT_B,)
    messages = [item.message for item in service.notifications(client)]
    assert len(messages) == 1
    assert "accepted" in messages[0]


def test_mail_failure_leaves_booking_accepted(database, reader, client) -> None:
    service = BookingService(database, mailer=RecordingMailer(fail=True))  # type: ignore[arg-type]
    booking = service.request_booking(client, reader.id, SLOT_A)

    result = service.accept(reader, booking.id)

    assert result.notification_sent is False
    assert database.get_booking(booking.id).status is BookingStatus.ACCEPTED


def test_only_the_booked_reader_can_respond(service, database, reader, client) -> None:
    other = database.create_user(Role.READER, "Other", "other@example.com", "OtherSecret123")
    booking = service.request_booking(client, reader.id, SLOT_A)

    with pytest.raises(PermissionError):
        service.accept(other, booking.id)
    with pytest.raises(PermissionError):
        service.reject(client, booking.id)
    with pytest.raises(KeyError):
        service.accept(reader, 999)


def test_reject_keeps_slot_and_blocks_further_transitions(service, database, reader, client) -> None:
    booking = service.request_booking(client, reader.id, SLOT_A)

    rejected = service.reject(reader, booking.id)

    assert rejected.status is BookingStatus.REJECTED
    assert service.reader_availability(reader.id) == [SLOT_A, SLOT_B]
    with pytest.raises(InvalidTransitionError):
        service.accept(reader, booking.id)


def test_accept_then_cancel_restores_slot_once(service, database, reader, client) -> None:
    booking = service.request_booking(client, reader.id, SLOT_A)
    service.accept(reader, booking.id)

    deleted = service.cancel(client, booking.id)

    assert deleted.id == booking.id
    assert database.get_booking(booking.id) is None
    assert database.get_user(reader.id).available_slots == (SLOT_A, SLOT_B)
    assert service.reader_availability(reader.id) == [SLOT_A, SLOT_B]
    reader_messages = [item.message for item in service.notifications(reader)]
    assert any("cancelled" in message for message in reader_messages)


def test_cancel_requires_a_party(service, database, reader, client) -> None:
    stranger = database.create_user(Role.CLIENT, "Stranger", "stranger@example.com", "Stranger123")
    booking = service.request_booking(client, reader.id, SLOT_A)

    with pytest.raises(PermissionError):
        service.cancel(stranger, booking.id)
    service.cancel(reader, booking.id)
    with pytest.raises(KeyError):
        service.cancel(reader, booking.id)


def test_ensure_room_provisions_once(service, reader, client, room_calls) -> None:
    booking = service.request_booking(client, reader.id, SLOT_A)
    with pytest.raises(BookingConflictError):
        service.ensure_room(client, booking.id)

    service.accept(reader, booking.id)
    first = service.ensure_room(client, booking.id)
    second = service.ensure_room(reader, booking.id)

    assert first.room_url == "https://auralynk.daily.co/room-1"
    assert second.room_url == first.room_url
    assert len(room_calls) == 1


def test_ensure_room_without_provisioner(database, reader, client) -> None:
    service = BookingService(database)
    booking = service.request_booking(client, reader.id, SLOT_A)
    service.accept(reader, booking.id)

    with pytest.raises(RoomProvisioningError):
        service.ensure_room(client, booking.id)


def test_session_status_follows_join_window(service, reader, client) -> None:
    booking = service.request_booking(client, reader.id, SLOT_A)
    service.accept(reader, booking.id)
    service.ensure_room(client, booking.id)
    start = parse_timestamp(SLOT_A)

    _, early = service.session_status(client, booking.id, now=start - timedelta(minutes=20))
    _, ready = service.session_status(reader, booking.id, now=start - timedelta(minutes=10))

    assert early.joinable is False
    assert ready.joinable is True


def test_list_bookings_for_each_side(service, reader, client) -> None:
    pending = service.request_booking(client, reader.id, SLOT_B)
    accepted = service.request_booking(client, reader.id, SLOT_A)
    service.accept(reader, accepted.id)

    reader_views = service.list_bookings(reader)
    assert [view.booking.id for view in reader_views] == [accepted.id, pending.id]
    assert reader_views[0].client_name == "Casey"
    assert reader_views[0].reader_name == "Madame Iris"

    pending_only = service.list_bookings(client, status=BookingStatus.PENDING)
    assert [view.booking.id for view in pending_only] == [pending.id]

    now = datetime(2030, 5, 1, tzinfo=timezone.utc)
    soon = service.list_bookings(client, upcoming_only=True, now=now)
    assert [view.booking.id for view in soon] == [accepted.id]
    assert service.pending_count(client) == 0


def test_reader_slot_management(service, reader, client) -> None:
    updated = service.add_slot(reader, "2030-05-04T08:00:00Z")
    assert updated.available_slots[-1] == "2030-05-04T08:00:00.000Z"

    with pytest.raises(PastSlotError):
        service.add_slot(reader, "2020-01-01T00:00:00Z")
    with pytest.raises(PermissionError):
        service.add_slot(client, SLOT_A)
    with pytest.raises(PermissionError):
        service.update_profile(client, display_name="Casey", bio="", services=["Tarot"])

    assert service.remove_slot(reader, SLOT_A).available_slots == (SLOT_B, "2030-05-04T08:00:00.000Z")
    assert service.set_slots(reader, []).available_slots == ()
    assert [listing.reader.id for listing in service.list_readers()] == []


def test_list_readers_only_includes_readers_with_declared_slots(service, database, reader) -> None:
    database.create_user(Role.READER, "Quiet", "quiet@example.com", "QuietSecret123")

    listings = service.list_readers()

    assert [listing.reader.id for listing in listings] == [reader.id]
    assert listings[0].available_slots == (SLOT_A, SLOT_B)


def test_workflow_publishes_events(service, reader, client) -> None:
    events: List[BookingEvent] = []
    service.feed.subscribe(events.append, reader_id=reader.id)

    booking = service.request_booking(client, reader.id, SLOT_A)
    service.accept(reader, booking.id)
    service.cancel(client, booking.id)
    service.add_slot(reader, SLOT_A)

    assert [event.kind for event in events] == [
        EventKind.CREATED,
        EventKind.ACCEPTED,
        EventKind.CANCELLED,
        EventKind.AVAILABILITY,
    ]


def test_cached_availability_is_invalidated_by_bookings(service, reader, client) -> None:
    assert service.reader_availability(reader.id) == [SLOT_A, SLOT_B]

    service.request_booking(client, reader.id, SLOT_A)

    assert service.reader_availability(reader.id) == [SLOT_B]


def test_concurrent_requests_cannot_share_a_slot(service, database, reader, client, monkeypatch) -> None:
    other = database.create_user(Role.CLIENT, "Robin", "robin@example.com", "RobinSecret123")
    barrier = threading.Barrier(2, timeout=5)
    guarded_insert = database.create_booking_if_available

    def insert_after_both_checked(*args, **kwargs):
        barrier.wait()
        return guarded_insert(*args, **kwargs)

    monkeypatch.setattr(database, "create_booking_if_available", insert_after_both_checked)

    created: List[int] = []
    refused: List[Exception] = []

    def request(user) -> None:
        try:
            created.append(service.request_booking(user, reader.id, SLOT_A).id)
        except SlotUnavailableError as exc:
            refused.append(exc)

    threads = [threading.Thread(target=request, args=(user,)) for user in (client, other)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(created) == 1
    assert len(refused) == 1
    assert [b.id for b in database.list_bookings(reader_id=reader.id)] == created


def test_set_slots_rejects_past_times(service, database, reader) -> None:
    with pytest.raises(PastSlotError):
        service.set_slots(reader, [SLOT_B, "2020-01-01T00:00:00Z"])

    assert database.get_user(reader.id).available_slots == (SLOT_A, SLOT_B)

    now = datetime(2030, 5, 2, 12, 0, tzinfo=timezone.utc)
    with pytest.raises(PastSlotError):
        service.set_slots(reader, [SLOT_A], now=now)
    assert service.set_slots(reader, [SLOT_B], now=now).available_slots == (SLOT_B,)
