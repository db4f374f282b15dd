"""
Database Models and Configuration for the TripNezt Booking API
Uses SQLAlchemy with SQLite (local) or PostgreSQL (production)
"""
import os
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import create_engine, Column, Integer, String, Boolean, DateTime, Text, Float, JSON
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

load_dotenv()

# Database URL - Use PostgreSQL in production, SQLite locally
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tripnezt.db")

# Handle Railway's postgres:// vs postgresql:// URL format
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Create engine with appropriate settings
if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
    # In-memory database shared by every session
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
elif DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def new_id() -> str:
    """Opaque document id"""
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Trip(Base):
    """
    Trip model - a bookable travel package with seat capacity
    """
    __tablename__ = "trips"

    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    location = Column(String(200), nullable=True)
    state = Column(String(100), nullable=True)
    price = Column(Integer, nullable=True)
    duration = Column(Integer, default=0)
    duration_type = Column(String(10), default="Nights")
    categories = Column(JSON, default=list)
    description = Column(Text, nullable=True)
    highlights = Column(JSON, default=list)
    image_url = Column(Text, nullable=True)
    images = Column(JSON, default=list)
    itinerary = Column(JSON, default=list)
    # NULL means no capacity limit
    total_seats = Column(Integer, nullable=True)
    booked_seats = Column(Integer, nullable=False, default=0)
    auto_approve = Column(Boolean, nullable=False, default=False)
    waitlist_threshold = Column(Integer, nullable=False, default=2)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "location": self.location,
            "state": self.state,
            "price": self.price,
            "duration": self.duration,
            "duration_type": self.duration_type,
            "categories": self.categories or [],
            "description": self.description,
            "highlights": self.highlights or [],
            "image_url": self.image_url,
            "images": self.images or [],
            "itinerary": self.itinerary or [],
            "total_seats": self.total_seats,
            "booked_seats": self.booked_seats,
            "auto_approve": self.auto_approve,
            "waitlist_threshold": self.waitlist_threshold,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at)
        }


class Booking(Base):
    """
    Booking model - a reservation request against a trip
    Trip name and price are snapshotted at booking time
    """
    __tablename__ = "bookings"

    id = Column(String(32), primary_key=True, default=new_id)
    trip_id = Column(String(32), nullable=False, index=True)
    trip_name = Column(String(200), nullable=True)
    trip_price = Column(Integer, nullable=True)
    user_id = Column(String(32), nullable=False, default="guest", index=True)
    user_email = Column(String(200), nullable=True)
    user_name = Column(String(100), nullable=False)
    whatsapp_number = Column(String(20), nullable=False)
    travel_date = Column(String(20), nullable=False)
    guests = Column(Integer, nullable=False, default=1)
    notes = Column(Text, nullable=True)
    total_amount = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "trip_name": self.trip_name,
            "trip_price": self.trip_price,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "user_name": self.user_name,
            "whatsapp_number": self.whatsapp_number,
            "travel_date": self.travel_date,
            "guests": self.guests,
            "notes": self.notes,
            "total_amount": self.total_amount,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at)
        }


class AuditLog(Base):
    """
    Audit log model - append-only record of booking lifecycle events
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(50), nullable=False)
    booking_id = Column(String(32), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    trip_name = Column(String(200), nullable=True)
    guests = Column(Integer, nullable=True)
    actor_id = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "booking_id": self.booking_id,
            "details": {
                "old_status": self.old_status,
                "new_status": self.new_status,
                "trip_name": self.trip_name,
                "guests": self.guests
            },
            "actor_id": self.actor_id,
            "created_at": _iso(self.created_at)
        }


class User(Base):
    """
    User profile model - authentication identity plus role and approval status
    """
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(100), nullable=True)
    email = Column(String(200), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(64), nullable=False)
    role = Column(String(10), nullable=False, default="user")
    status = Column(String(10), nullable=False, default="active")
    phone_number = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "phone_number": self.phone_number,
            "created_at": _iso(self.created_at),
            "last_login": _iso(self.last_login)
        }


class AuthSession(Base):
    """
    Bearer token sessions issued at sign-in
    """
    __tablename__ = "sessions"

    token = Column(String(64), primary_key=True)
    user_id = Column(String(32), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)


class WhatsAppMessage(Base):
    """
    WhatsApp message log - one row per send attempt through the functions
    """
    __tablename__ = "whatsapp_messages"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    template_name = Column(String(100), nullable=True)
    message_type = Column(String(10), default="text")
    message_id = Column(String(100), nullable=True, index=True)
    sent_by = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, index=True)
    error = Column(Text, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_updated = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "message": self.message,
            "template_name": self.template_name,
            "type": self.message_type,
            "message_id": self.message_id,
            "sent_by": self.sent_by,
            "status": self.status,
            "error": self.error,
            "sent_at": _iso(self.sent_at),
            "last_updated": _iso(self.last_updated)
        }


class RateLimitWindow(Base):
    """
    Fixed-window request counters shared across server instances
    """
    __tablename__ = "rate_limit_windows"

    key = Column(String(100), primary_key=True)
    window_start = Column(Float, nullable=False)
    count = Column(Integer, nullable=False, default=0)


# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Create all tables
def init_db():
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)
    print("[Database] Tables created successfully")


# Utility functions
def get_trip(db, trip_id: str) -> Optional[Trip]:
    """Get a trip by id"""
    return db.query(Trip).filter(Trip.id == trip_id).first()


def get_booking(db, booking_id: str) -> Optional[Booking]:
    """Get a booking by id"""
    return db.query(Booking).filter(Booking.id == booking_id).first()


def log_whatsapp_message(db, phone: str, status: str, message: Optional[str] = None,
                         template_name: Optional[str] = None, message_type: str = "text",
                         message_id: Optional[str] = None, sent_by: Optional[str] = None,
                         error: Optional[str] = None) -> WhatsAppMessage:
    """Save a WhatsApp send attempt to the message log"""
    entry = WhatsAppMessage(
        phone_number=phone,
        message=message,
        template_name=template_name,
        message_type=message_type,
        message_id=message_id,
        sent_by=sent_by,
        status=status,
        error=error
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


if __name__ == "__main__":
    # Initialize database when run directly
    init_db()
    print("Database initialized!")
