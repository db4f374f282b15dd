"""
Booking Admission Engine and Lead Status Management

Admission: decides a new booking's status from seat availability and
reserves seats for auto-approved bookings.
Lead management: moves a booking through its status lifecycle, keeping
the trip's booked_seats counter in step with every crossing of the
Approved boundary.

All seat changes are conditional UPDATEs committed in the same
transaction as the booking row and its audit entry.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from sqlalchemy import or_, func

from database import Trip, Booking, AuditLog, User, get_trip, get_booking
from models import BookingStatus, BookingRequest
from whatsapp import format_phone_number

# Re-reads of the seat counter before giving up on an admission
MAX_ADMISSION_ATTEMPTS = 3


class BookingError(Exception):
    """Base class for admission and transition failures"""


class TripNotFoundError(BookingError):
    pass


class BookingNotFoundError(BookingError):
    pass


class InvalidTransitionError(BookingError):
    pass


class CapacityExceededError(BookingError):
    """Approving would push booked seats past the trip's capacity"""


class StaleCounterError(BookingError):
    """The seat counter did not hold the value the change was based on"""


S = BookingStatus

ALLOWED_TRANSITIONS = {
    S.PENDING_REVIEW: {S.IN_DISCUSSION, S.APPROVED, S.WAITLISTED, S.REJECTED, S.CANCELLED},
    S.IN_DISCUSSION: {S.PENDING_REVIEW, S.APPROVED, S.WAITLISTED, S.REJECTED, S.CANCELLED},
    S.WAITLISTED: {S.PENDING_REVIEW, S.IN_DISCUSSION, S.APPROVED, S.REJECTED, S.CANCELLED},
    S.APPROVED: {S.PENDING_REVIEW, S.IN_DISCUSSION, S.WAITLISTED, S.REJECTED, S.CANCELLED},
    # Closed leads can only be reopened for review
    S.REJECTED: {S.PENDING_REVIEW},
    S.CANCELLED: {S.PENDING_REVIEW},
}


# ============== Pure Rules ==============

def available_seats(total_seats: Optional[int], booked_seats: int) -> Optional[int]:
    """Seats left on a trip, None when the trip has no capacity limit"""
    if total_seats is None:
        return None
    return total_seats - (booked_seats or 0)


def decide_admission_status(available: Optional[int], guests: int, auto_approve: bool,
                            waitlist_threshold: int) -> BookingStatus:
    """
    Decide the initial status of a booking. First match wins:

    1. enough seats for every guest -> Approved (auto-approve) or Pending Review
    2. at least waitlist_threshold seats left -> Waitlisted
    3. otherwise -> Rejected
    """
    if available is None or available >= guests:
        return S.APPROVED if auto_approve else S.PENDING_REVIEW
    if available >= waitlist_threshold:
        return S.WAITLISTED
    return S.REJECTED


def seat_delta(old_status: BookingStatus, new_status: BookingStatus, guests: int) -> int:
    """Change to a trip's booked_seats caused by a status transition"""
    old_status, new_status = S(old_status), S(new_status)
    if new_status == S.APPROVED and old_status != S.APPROVED:
        return guests
    if old_status == S.APPROVED and new_status != S.APPROVED:
        return -guests
    return 0


def can_transition(old_status: BookingStatus, new_status: BookingStatus) -> bool:
    return S(new_status) in ALLOWED_TRANSITIONS[S(old_status)]


def check_availability(trip: Trip, guests: int) -> Dict[str, Any]:
    """Live availability summary shown on the booking form"""
    available = available_seats(trip.total_seats, trip.booked_seats)
    return {
        "trip_id": trip.id,
        "available": available is None or available >= guests,
        "available_seats": available,
        "total_seats": trip.total_seats,
        "booked_seats": trip.booked_seats,
        "guests_requested": guests,
        "status_if_booked": decide_admission_status(
            available, guests, trip.auto_approve, trip.waitlist_threshold
        ).value
    }


# ============== Seat Counter ==============

def reserve_seats(db, trip_id: str, guests: int, expected_booked: int) -> bool:
    """
    Compare-and-swap increment of booked_seats.
    Returns False when the counter no longer holds expected_booked.
    """
    updated = db.query(Trip).filter(
        Trip.id == trip_id,
        Trip.booked_seats == expected_booked
    ).update({Trip.booked_seats: Trip.booked_seats + guests}, synchronize_session=False)
    return updated == 1


def adjust_seats(db, trip_id: str, delta: int) -> None:
    """
    Apply a transition's seat delta.
    Increments must fit within capacity, decrements must not go below zero.
    """
    query = db.query(Trip).filter(Trip.id == trip_id)
    if delta > 0:
        query = query.filter(or_(
            Trip.total_seats.is_(None),
            Trip.booked_seats + delta <= Trip.total_seats
        ))
    else:
        query = query.filter(Trip.booked_seats >= -delta)

    updated = query.update({Trip.booked_seats: Trip.booked_seats + delta}, synchronize_session=False)
    if updated == 1:
        return

    trip = get_trip(db, trip_id)
    if trip is None:
        # Trip was deleted; the booking keeps its snapshot
        print(f"[Booking] Trip {trip_id} not found, skipping seat adjustment")
        return
    if delta > 0:
        raise CapacityExceededError(
            f"Approving {delta} guest(s) exceeds capacity for '{trip.title}' "
            f"({trip.booked_seats}/{trip.total_seats} seats booked)"
        )
    raise StaleCounterError(
        f"Cannot release {-delta} seat(s) on '{trip.title}': only {trip.booked_seats} booked"
    )


# ============== Admission ==============

def submit_booking(db, request: BookingRequest, user: Optional[User] = None) -> Booking:
    """
    Admit a booking request: decide its status, persist it and, when
    approved, reserve the seats in the same transaction.
    """
    trip = get_trip(db, request.trip_id)
    if trip is None:
        raise TripNotFoundError(f"Trip '{request.trip_id}' not found")

    guests = request.guests
    for attempt in range(1, MAX_ADMISSION_ATTEMPTS + 1):
        booked = trip.booked_seats or 0
        available = available_seats(trip.total_seats, booked)
        status = decide_admission_status(available, guests, trip.auto_approve, trip.waitlist_threshold)

        if status == S.APPROVED and not reserve_seats(db, trip.id, guests, expected_booked=booked):
            print(f"[Booking] Seat counter moved on trip {trip.id}, re-checking ({attempt}/{MAX_ADMISSION_ATTEMPTS})")
            db.refresh(trip)
            continue

        booking = Booking(
            trip_id=trip.id,
            trip_name=trip.title,
            trip_price=trip.price,
            user_id=user.id if user else "guest",
            user_email=user.email if user else "",
            user_name=request.full_name,
            whatsapp_number=format_phone_number(request.whatsapp_number),
            travel_date=request.travel_date,
            guests=guests,
            notes=request.notes,
            total_amount=trip.price * guests if trip.price else None,
            status=status.value
        )
        db.add(booking)
        db.flush()
        db.add(AuditLog(
            action="booking_created",
            booking_id=booking.id,
            new_status=status.value,
            trip_name=trip.title,
            guests=guests,
            actor_id=booking.user_id
        ))
        db.commit()
        db.refresh(booking)
        print(f"[Booking] {booking.id} for '{trip.title}' ({guests} guests) -> {status.value}")
        return booking

    raise StaleCounterError(f"Seat counter for trip '{trip.id}' kept changing, please retry")


# ============== Lead Management ==============

def transition_booking(db, booking_id: str, new_status: BookingStatus, actor_id: Optional[str] = None) -> Booking:
    """
    Move a booking to new_status. The status update, the seat adjustment
    and the audit entry commit together or not at all.
    """
    booking = get_booking(db, booking_id)
    if booking is None:
        raise BookingNotFoundError(f"Booking '{booking_id}' not found")

    old_status = S(booking.status)
    new_status = S(new_status)
    if old_status == new_status:
        return booking
    if not can_transition(old_status, new_status):
        raise InvalidTransitionError(f"Cannot move a booking from '{old_status.value}' to '{new_status.value}'")

    guests = booking.guests or 1
    delta = seat_delta(old_status, new_status, guests)
    try:
        booking.status = new_status.value
        booking.updated_at = datetime.utcnow()
        if delta and booking.trip_id:
            adjust_seats(db, booking.trip_id, delta)
        db.add(AuditLog(
            action="status_changed",
            booking_id=booking.id,
            old_status=old_status.value,
            new_status=new_status.value,
            trip_name=booking.trip_name,
            guests=booking.guests,
            actor_id=actor_id
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    print(f"[Booking] {booking.id}: {old_status.value} -> {new_status.value} (seats {delta:+d})")
    return booking


# ============== Reconciliation ==============

def reconcile_seats(db, fix: bool = False) -> List[Dict[str, Any]]:
    """
    Compare every trip's booked_seats with the guests on its Approved
    bookings. Returns the drifted trips; with fix=True the counters are
    reset to the expected values.
    """
    approved = dict(
        db.query(Booking.trip_id, func.sum(Booking.guests))
        .filter(Booking.status == S.APPROVED.value)
        .group_by(Booking.trip_id)
        .all()
    )

    drift = []
    for trip in db.query(Trip).order_by(Trip.created_at).all():
        expected = int(approved.get(trip.id) or 0)
        if trip.booked_seats != expected:
            drift.append({
                "trip_id": trip.id,
                "title": trip.title,
                "booked_seats": trip.booked_seats,
                "expected": expected,
                "difference": trip.booked_seats - expected
            })
            if fix:
                trip.booked_seats = expected

    if fix and drift:
        db.commit()
    for item in drift:
        print(f"[Reconcile] {item['title']}: booked_seats={item['booked_seats']} expected={item['expected']}"
              f"{' (fixed)' if fix else ''}")
    return drift
