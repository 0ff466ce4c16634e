from __future__ import annotations

from pathlib import Path

import pytest

from auralynk.database import Database
from auralynk.models import BookingStatus, InvalidTransitionError, Role, SlotUnavailableError

SLOT_A = "2030-05-02T10:00:00.000Z"
SLOT_B = "2030-05-02T14:00:00.000Z"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db_path = tmp_path / "auralynk.sqlite3"
    db = Database(db_path)
    db.initialize()
    return db


def _reader(database: Database, *slots: str):
    return database.create_user(
        Role.READER,
        "Madame Iris",
        "iris@example.com",
        "CrystalBall123",
        bio="Tarot and palmistry",
        services=["Tarot", "Palmistry", "Tarot"],
        available_slots=slots,
    )


def _client(database: Database, email: str = "client@example.com"):
    return database.create_user(Role.CLIENT, "Casey", email, "ClientSecret123")


def test_create_and_authenticate_user(database: Database) -> None:
    reader = _reader(database, SLOT_B, SLOT_A)

    assert reader.is_reader
    assert reader.services == ("Tarot", "Palmistry")
    assert reader.available_slots == (SLOT_B, SLOT_A)

    assert database.authenticate_user("IRIS@example.com", "CrystalBall123") == reader
    assert database.authenticate_user("iris@example.com", "wrong") is None
    assert database.authenticate_user("nobody@example.com", "CrystalBall123") is None


def test_create_user_rejects_duplicates_and_empty_fields(database: Database) -> None:
    _client(database)
    with pytest.raises(ValueError):
        _client(database)
    with pytest.raises(ValueError):
        database.create_user(Role.CLIENT, "  ", "blank@example.com", "secret")
    with pytest.raises(ValueError):
        database.create_user(Role.CLIENT, "Nobody", "nopass@example.com", "")


def test_list_users_filters_by_role(database: Database) -> None:
    reader = _reader(database)
    client = _client(database)

    assert database.list_users() == [reader, client]
    assert database.list_users(role=Role.READER) == [reader]
    assert database.list_users(role="client") == [client]


def test_update_profile_keeps_services_unless_given(database: Database) -> None:
    reader = _reader(database)

    updated = database.update_user_profile(reader.id, display_name=" Iris ", bio="New bio")
    assert updated.display_name == "Iris"
    assert updated.services == reader.services

    updated = database.update_user_profile(
        reader.id, display_name="Iris", bio="New bio", services=["Astrology"]
    )
    assert updated.services == ("Astrology",)

    with pytest.raises(KeyError):
        database.update_user_profile(999, display_name="Ghost", bio="")


def test_slot_changes_are_canonical_and_idempotent(database: Database) -> None:
    reader = _reader(database, SLOT_B)

    updated = database.add_available_slot(reader.id, "2030-05-02T10:00:00Z")
    assert updated.available_slots == (SLOT_A, SLOT_B)
    assert database.add_available_slot(reader.id, SLOT_A).available_slots == (SLOT_A, SLOT_B)

    assert database.remove_available_slot(reader.id, SLOT_B).available_slots == (SLOT_A,)
    assert database.set_available_slots(reader.id, [SLOT_B, SLOT_B]).available_slots == (SLOT_B,)


def test_accepting_removes_the_slot_in_the_same_step(database: Database) -> None:
    reader = _reader(database, SLOT_A, SLOT_B)
    client = _client(database)
    booking = database.create_booking(client.id, reader.id, SLOT_A)
    assert booking.status is BookingStatus.PENDING

    accepted = database.transition_booking(booking.id, BookingStatus.ACCEPTED)

    assert accepted.status is BookingStatus.ACCEPTED
    assert database.get_user(reader.id).available_slots == (SLOT_B,)


def test_rejecting_leaves_the_slot_declared(database: Database) -> None:
    reader = _reader(database, SLOT_A)
    client = _client(database)
    booking = database.create_booking(client.id, reader.id, SLOT_A)

    rejected = database.transition_booking(booking.id, "rejected")

    assert rejected.status is BookingStatus.REJECTED
    assert database.get_user(reader.id).available_slots == (SLOT_A,)


def test_terminal_bookings_cannot_transition(database: Database) -> None:
    reader = _reader(database, SLOT_A)
    client = _client(database)
    booking = database.create_booking(client.id, reader.id, SLOT_A)
    database.transition_booking(booking.id, BookingStatus.REJECTED)

    with pytest.raises(InvalidTransitionError):
        database.transition_booking(booking.id, BookingStatus.ACCEPTED)
    with pytest.raises(KeyError):
        database.transition_booking(999, BookingStatus.ACCEPTED)
    assert database.get_booking(booking.id).status is BookingStatus.REJECTED


def test_second_acceptance_for_the_same_slot_is_refused(database: Database) -> None:
    reader = _reader(database, SLOT_A)
    first = database.create_booking(_client(database).id, reader.id, SLOT_A)
    second = database.create_booking(_client(database, "other@example.com").id, reader.id, SLOT_A)
    database.transition_booking(first.id, BookingStatus.ACCEPTED)

    with pytest.raises(SlotUnavailableError):
        database.transition_booking(second.id, BookingStatus.ACCEPTED)
    assert database.get_booking(second.id).status is BookingStatus.PENDING


def test_delete_restores_the_slot_exactly_once(database: Database) -> None:
    reader = _reader(database, SLOT_A, SLOT_B)
    client = _client(database)
    booking = database.create_booking(client.id, reader.id, SLOT_A)
    database.transition_booking(booking.id, BookingStatus.ACCEPTED)

    deleted = database.delete_booking(booking.id)

    assert deleted.id == booking.id
    assert database.get_booking(booking.id) is None
    assert database.get_user(reader.id).available_slots == (SLOT_A, SLOT_B)

    pending = database.create_booking(client.id, reader.id, SLOT_A)
    database.delete_booking(pending.id)
    assert database.get_user(reader.id).available_slots == (SLOT_A, SLOT_B)

    with pytest.raises(KeyError):
        database.delete_booking(booking.id)


def test_list_bookings_filters_and_orders(database: Database) -> None:
    reader = _reader(database, SLOT_A, SLOT_B)
    client = _client(database)
    later = database.create_booking(client.id, reader.id, SLOT_B)
    earlier = database.create_booking(client.id, reader.id, SLOT_A)
    database.transition_booking(later.id, BookingStatus.ACCEPTED)

    assert [b.id for b in database.list_bookings(reader_id=reader.id)] == [earlier.id, later.id]
    assert [b.id for b in database.list_bookings(client_id=client.id, status="accepted")] == [later.id]
    assert database.list_bookings(client_id=reader.id) == []


def test_room_url_is_only_set_once(database: Database) -> None:
    reader = _reader(database, SLOT_A)
    client = _client(database)
    booking = database.create_booking(client.id, reader.id, SLOT_A)

    first = database.set_booking_room(booking.id, "https://rooms.example/one")
    second = database.set_booking_room(booking.id, "https://rooms.example/two")

    assert first.room_url == "https://rooms.example/one"
    assert second.room_url == "https://rooms.example/one"


def test_notifications_are_listed_newest_first(database: Database) -> None:
    client = _client(database)
    first = database.add_notification(client.id, "first")
    second = database.add_notification(client.id, "second")

    assert [item.id for item in database.list_notifications(client.id)] == [second.id, first.id]
    assert database.list_notifications(999) == []


def test_guarded_insert_checks_declared_slots_and_competing_bookings(database: Database) -> None:
    reader = _reader(database, SLOT_A)
    client = _client(database)
    other = _client(database, "other@example.com")

    with pytest.raises(SlotUnavailableError):
        database.create_booking_if_available(client.id, reader.id, SLOT_B)
    with pytest.raises(KeyError):
        database.create_booking_if_available(client.id, other.id, SLOT_A)

    first = database.create_booking_if_available(client.id, reader.id, "2030-05-02T10:00:00Z")
    assert first.selected_time == SLOT_A
    with pytest.raises(SlotUnavailableError):
        database.create_booking_if_available(other.id, reader.id, SLOT_A)

    second = database.create_booking_if_available(other.id, reader.id, SLOT_A, pending_blocks=False)
    assert second.status is BookingStatus.PENDING
    assert len(database.list_bookings(reader_id=reader.id)) == 2
