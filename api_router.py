"""
API Router for the Booking and Admin Panel
Provides REST endpoints for trips, bookings, lead management and dashboards
"""
import httpx
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy import desc, func

from auth import get_current_user, get_optional_user, require_admin
from booking_engine import (
    submit_booking, transition_booking, check_availability, reconcile_seats,
    TripNotFoundError, BookingNotFoundError, InvalidTransitionError,
    CapacityExceededError, StaleCounterError
)
from database import get_db, Trip, Booking, AuditLog, User, WhatsAppMessage, get_trip, get_booking
from functions_router import local_function_invoker
from message_templates import UnknownTemplateError
from models import (
    TripCreate, TripUpdate, BookingRequest, StatusUpdate, NotifyRequest,
    BookingStatus, UserRole, UserStatus
)
from notifier import NotificationRelay, FunctionTransport, DeliveryError
from whatsapp import get_http_client

router = APIRouter(prefix="/api", tags=["admin"])


def paginate(query, page: int, per_page: int, order_by):
    total = query.count()
    items = query.order_by(order_by).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "data": [item.to_dict() for item in items],
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": (total + per_page - 1) // per_page
    }


# ============== Dashboard Endpoints ==============

@router.get("/dashboard/stats")
def get_dashboard_stats(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Get dashboard KPI statistics"""
    status_counts = dict(
        db.query(Booking.status, func.count(Booking.id)).group_by(Booking.status).all()
    )

    # Revenue counts approved bookings only
    revenue = db.query(func.coalesce(func.sum(Booking.total_amount), 0)).filter(
        Booking.status == BookingStatus.APPROVED.value
    ).scalar()

    pending_admins = db.query(User).filter(
        User.role == UserRole.ADMIN.value,
        User.status == UserStatus.PENDING.value
    ).count()

    today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    bookings_today = db.query(Booking).filter(Booking.created_at >= today_start).count()

    return {
        "total_trips": db.query(Trip).count(),
        "total_bookings": sum(status_counts.values()),
        "bookings_by_status": {s.value: status_counts.get(s.value, 0) for s in BookingStatus},
        "approved_bookings": status_counts.get(BookingStatus.APPROVED.value, 0),
        "total_revenue": int(revenue or 0),
        "total_users": db.query(User).count(),
        "pending_admins": pending_admins,
        "bookings_today": bookings_today
    }


# ============== Trip Endpoints ==============

@router.get("/trips")
def list_trips(category: Optional[str] = None, db: Session = Depends(get_db)):
    """List trips, optionally filtered by category tag"""
    trips = db.query(Trip).order_by(desc(Trip.created_at)).all()
    if category:
        trips = [t for t in trips if category in (t.categories or [])]
    return [t.to_dict() for t in trips]


@router.get("/trips/{trip_id}")
def get_trip_details(trip_id: str, db: Session = Depends(get_db)):
    trip = get_trip(db, trip_id)
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    return trip.to_dict()


@router.get("/trips/{trip_id}/availability")
def get_trip_availability(trip_id: str, guests: int = Query(1, ge=1), db: Session = Depends(get_db)):
    """Seats left and the status a booking for `guests` would get right now"""
    trip = get_trip(db, trip_id)
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    return check_availability(trip, guests)


@router.post("/trips", status_code=201)
def create_trip(trip_data: TripCreate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Create a new trip"""
    trip = Trip(**trip_data.model_dump(mode="json"))
    db.add(trip)
    db.commit()
    db.refresh(trip)
    print(f"[Trips] {admin.email} created '{trip.title}'")
    return trip.to_dict()


@router.patch("/trips/{trip_id}")
def update_trip(trip_id: str, trip_data: TripUpdate, db: Session = Depends(get_db),
                admin: User = Depends(require_admin)):
    """Update trip details"""
    trip = get_trip(db, trip_id)
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")

    update_data = trip_data.model_dump(mode="json", exclude_unset=True)
    for field, value in update_data.items():
        setattr(trip, field, value)

    trip.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(trip)
    return trip.to_dict()


@router.delete("/trips/{trip_id}")
def delete_trip(trip_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Delete a trip; existing bookings keep their trip snapshot"""
    trip = get_trip(db, trip_id)
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")

    db.delete(trip)
    db.commit()
    return {"message": "Trip deleted successfully"}


# ============== Booking Endpoints ==============

@router.post("/bookings", status_code=201)
def create_booking(request: BookingRequest, db: Session = Depends(get_db),
                   user: Optional[User] = Depends(get_optional_user)):
    """Submit a booking request; guests may book without signing in"""
    try:
        booking = submit_booking(db, request, user)
    except TripNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StaleCounterError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"bookingId": booking.id, "status": booking.status, "booking": booking.to_dict()}


@router.get("/bookings/mine")
def list_my_bookings(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    bookings = db.query(Booking).filter(Booking.user_id == user.id).order_by(desc(Booking.created_at)).all()
    return [b.to_dict() for b in bookings]


@router.get("/bookings")
def list_bookings(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    status: Optional[BookingStatus] = None,
    trip_id: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    """List leads with pagination and filtering, newest first"""
    query = db.query(Booking)
    if status:
        query = query.filter(Booking.status == status.value)
    if trip_id:
        query = query.filter(Booking.trip_id == trip_id)
    if search:
        query = query.filter(
            (Booking.user_name.ilike(f"%{search}%")) |
            (Booking.whatsapp_number.ilike(f"%{search}%"))
        )
    return paginate(query, page, per_page, desc(Booking.created_at))


@router.get("/bookings/{booking_id}")
def get_booking_details(booking_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    booking = get_booking(db, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking.to_dict()


@router.patch("/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, update: StatusUpdate, db: Session = Depends(get_db),
                          admin: User = Depends(require_admin)):
    """Move a lead to a new status, adjusting the trip's seat count"""
    try:
        booking = transition_booking(db, booking_id, update.status, actor_id=admin.id)
    except BookingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (CapacityExceededError, StaleCounterError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return booking.to_dict()


@router.post("/bookings/{booking_id}/notify")
async def notify_booking(
    booking_id: str,
    request: NotifyRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    client: httpx.AsyncClient = Depends(get_http_client)
):
    """
    Send a templated WhatsApp message to the lead behind a booking.
    Booking details fill the template unless overridden in substitutions.
    """
    booking = get_booking(db, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    trip = get_trip(db, booking.trip_id)
    substitutions = {
        "name": booking.user_name,
        "tripName": booking.trip_name,
        "date": booking.travel_date,
        "guests": booking.guests,
        "amount": f"₹{booking.total_amount:,}" if booking.total_amount else None,
        "location": trip.location if trip else None,
    }
    substitutions.update(request.substitutions)

    relay = NotificationRelay.from_env(
        client=client,
        functions=FunctionTransport(local_function_invoker(db, admin, client))
    )
    try:
        result = await relay.send_lead_message(booking.to_dict(), request.template_key, substitutions)
    except UnknownTemplateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DeliveryError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return result


# ============== Audit & Message Logs ==============

@router.get("/audit-logs")
def list_audit_logs(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    booking_id: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    query = db.query(AuditLog)
    if booking_id:
        query = query.filter(AuditLog.booking_id == booking_id)
    return paginate(query, page, per_page, desc(AuditLog.id))


@router.get("/whatsapp-messages")
def list_whatsapp_messages(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    query = db.query(WhatsAppMessage)
    if status:
        query = query.filter(WhatsAppMessage.status == status)
    return paginate(query, page, per_page, desc(WhatsAppMessage.id))


# ============== Maintenance Endpoints ==============

@router.post("/maintenance/reconcile-seats")
def reconcile_trip_seats(fix: bool = False, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """
    Compare booked_seats with approved bookings for every trip.
    Pass fix=true to reset drifted counters.
    """
    drift = reconcile_seats(db, fix=fix)
    return {"drifted": len(drift), "fixed": fix, "trips": drift}
