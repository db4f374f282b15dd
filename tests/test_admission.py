"""Booking admission: status decision and seat reservation"""
import pytest

import booking_engine
from booking_engine import (
    decide_admission_status, available_seats, check_availability, submit_booking,
    reserve_seats, TripNotFoundError, StaleCounterError
)
from database import AuditLog, Booking
from models import BookingRequest, BookingStatus as S


def booking_request(trip_id, guests=2, **extra):
    return BookingRequest(
        trip_id=trip_id,
        full_name="Asha Verma",
        whatsapp_number="98765 43210",
        travel_date="2026-11-20",
        guests=guests,
        **extra
    )


@pytest.mark.parametrize("available,guests,auto_approve,threshold,expected", [
    (5, 2, True, 2, S.APPROVED),
    (5, 2, False, 2, S.PENDING_REVIEW),
    (2, 2, False, 2, S.PENDING_REVIEW),
    (3, 4, False, 2, S.WAITLISTED),
    (3, 4, True, 2, S.WAITLISTED),
    (1, 2, False, 2, S.REJECTED),
    (0, 1, False, 0, S.WAITLISTED),
    (-1, 1, False, 0, S.REJECTED),
    (None, 500, True, 2, S.APPROVED),
    (None, 500, False, 2, S.PENDING_REVIEW),
])
def test_decide_admission_status(available, guests, auto_approve, threshold, expected):
    assert decide_admission_status(available, guests, auto_approve, threshold) == expected


def test_available_seats_unlimited():
    assert available_seats(None, 40) is None
    assert available_seats(10, 8) == 2


def test_check_availability_reports_would_be_status(make_trip):
    trip = make_trip(total_seats=10, booked_seats=8)
    summary = check_availability(trip, 3)
    assert summary["available"] is False
    assert summary["available_seats"] == 2
    assert summary["status_if_booked"] == S.WAITLISTED.value


def test_auto_approve_reserves_exactly_guests(db, make_trip):
    trip = make_trip(total_seats=10, booked_seats=3, auto_approve=True)

    booking = submit_booking(db, booking_request(trip.id, guests=2))

    assert booking.status == S.APPROVED.value
    db.refresh(trip)
    assert trip.booked_seats == 5


def test_manual_review_leaves_counter(db, make_trip):
    trip = make_trip(total_seats=10, booked_seats=3)

    booking = submit_booking(db, booking_request(trip.id, guests=2))

    assert booking.status == S.PENDING_REVIEW.value
    db.refresh(trip)
    assert trip.booked_seats == 3


def test_waitlisted_when_short_but_above_threshold(db, make_trip):
    trip = make_trip(total_seats=10, booked_seats=7, auto_approve=True)

    booking = submit_booking(db, booking_request(trip.id, guests=4))

    assert booking.status == S.WAITLISTED.value
    db.refresh(trip)
    assert trip.booked_seats == 7


def test_rejected_below_threshold(db, make_trip):
    trip = make_trip(total_seats=10, booked_seats=9)

    booking = submit_booking(db, booking_request(trip.id, guests=2))

    assert booking.status == S.REJECTED.value


def test_unlimited_trip_always_admits(db, make_trip):
    trip = make_trip(total_seats=None, booked_seats=120, auto_approve=True)

    booking = submit_booking(db, booking_request(trip.id, guests=500))

    assert booking.status == S.APPROVED.value
    db.refresh(trip)
    assert trip.booked_seats == 620


def test_booking_snapshots_trip_and_normalises_phone(db, make_trip):
    trip = make_trip(price=15999)

    booking = submit_booking(db, booking_request(trip.id, guests=3, notes="Vegetarian meals"))

    assert booking.trip_name == "Spiti Valley Expedition"
    assert booking.trip_price == 15999
    assert booking.total_amount == 47997
    assert booking.whatsapp_number == "+919876543210"
    assert booking.user_id == "guest"
    assert booking.notes == "Vegetarian meals"


def test_priceless_trip_has_no_total(db, make_trip):
    trip = make_trip(price=None)
    booking = submit_booking(db, booking_request(trip.id))
    assert booking.total_amount is None


def test_booking_creation_is_audited(db, make_trip):
    trip = make_trip()
    booking = submit_booking(db, booking_request(trip.id, guests=2))

    entries = db.query(AuditLog).filter(AuditLog.booking_id == booking.id).all()
    assert len(entries) == 1
    assert entries[0].action == "booking_created"
    assert entries[0].new_status == S.PENDING_REVIEW.value
    assert entries[0].guests == 2


def test_unknown_trip(db):
    with pytest.raises(TripNotFoundError):
        submit_booking(db, booking_request("missing"))
    assert db.query(Booking).count() == 0


def test_reserve_seats_compare_and_swap(db, make_trip):
    trip = make_trip(booked_seats=4)

    assert reserve_seats(db, trip.id, 2, expected_booked=3) is False
    assert reserve_seats(db, trip.id, 2, expected_booked=4) is True
    db.commit()

    db.refresh(trip)
    assert trip.booked_seats == 6


def test_admission_rechecks_after_concurrent_change(db, make_trip, monkeypatch):
    trip = make_trip(total_seats=10, booked_seats=6, auto_approve=True)
    real_reserve = booking_engine.reserve_seats
    calls = []

    def racing_reserve(session, trip_id, guests, expected_booked):
        calls.append(expected_booked)
        if len(calls) == 1:
            # Another booking takes three seats between the read and the write
            session.query(booking_engine.Trip).filter(booking_engine.Trip.id == trip_id).update(
                {booking_engine.Trip.booked_seats: 9}, synchronize_session=False
            )
            return False
        return real_reserve(session, trip_id, guests, expected_booked)

    monkeypatch.setattr(booking_engine, "reserve_seats", racing_reserve)

    booking = submit_booking(db, booking_request(trip.id, guests=2))

    # Re-read shows one seat left: below the threshold, so no reservation
    assert calls == [6]
    assert booking.status == S.REJECTED.value
    db.refresh(trip)
    assert trip.booked_seats == 9


def test_admission_retries_then_reserves(db, make_trip, monkeypatch):
    trip = make_trip(total_seats=10, booked_seats=2, auto_approve=True)
    real_reserve = booking_engine.reserve_seats
    calls = []

    def flaky_reserve(session, trip_id, guests, expected_booked):
        calls.append(expected_booked)
        if len(calls) == 1:
            return False
        return real_reserve(session, trip_id, guests, expected_booked)

    monkeypatch.setattr(booking_engine, "reserve_seats", flaky_reserve)

    booking = submit_booking(db, booking_request(trip.id, guests=2))

    assert calls == [2, 2]
    assert booking.status == S.APPROVED.value
    db.refresh(trip)
    assert trip.booked_seats == 4


def test_admission_gives_up_when_counter_keeps_moving(db, make_trip, monkeypatch):
    trip = make_trip(total_seats=10, booked_seats=2, auto_approve=True)
    monkeypatch.setattr(booking_engine, "reserve_seats", lambda *args, **kwargs: False)

    with pytest.raises(StaleCounterError):
        submit_booking(db, booking_request(trip.id, guests=2))

    assert db.query(Booking).count() == 0
    db.refresh(trip)
    assert trip.booked_seats == 2
