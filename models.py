"""
Pydantic models for the TripNezt Booking API
Entities: Trips, Bookings, Status updates, Users, Notifications
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional, Dict, Any, Union
from enum import Enum

from whatsapp import validate_phone_number


class BookingStatus(str, Enum):
    """Booking lifecycle states"""
    PENDING_REVIEW = "Pending Review"
    IN_DISCUSSION = "In Discussion"
    APPROVED = "Approved"
    WAITLISTED = "Waitlisted"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class DurationType(str, Enum):
    """Unit of a trip's duration"""
    DAYS = "Days"
    NIGHTS = "Nights"
    HOURS = "Hours"


class UserRole(str, Enum):
    """User roles"""
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    """Account status"""
    ACTIVE = "active"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BLOCKED = "blocked"


MAX_GALLERY_IMAGES = 6


class ItineraryDay(BaseModel):
    """Single day of a trip itinerary"""
    day: int = Field(ge=1, description="Day number (1, 2, 3...)")
    title: str = ""
    description: str = ""


class TripBase(BaseModel):
    location: Optional[str] = None
    state: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0, description="Price per guest in rupees")
    duration: int = Field(default=0, ge=0)
    duration_type: DurationType = DurationType.NIGHTS
    description: Optional[str] = None
    image_url: Optional[str] = Field(default=None, description="Cover image URI or base64 data")
    images: List[str] = Field(default_factory=list, max_length=MAX_GALLERY_IMAGES)
    itinerary: List[ItineraryDay] = Field(default_factory=list)
    total_seats: Optional[int] = Field(default=None, ge=0, description="Seat capacity, unlimited when unset")
    auto_approve: bool = False
    waitlist_threshold: int = Field(default=2, ge=0)

    @field_validator("itinerary")
    @classmethod
    def drop_incomplete_days(cls, days: List[ItineraryDay]) -> List[ItineraryDay]:
        return [d for d in days if d.title and d.description]


def _split_highlights(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [h.strip() for h in value if h and h.strip()]


class TripCreate(TripBase):
    """Trip as submitted by an operator"""
    title: str = Field(min_length=1, max_length=200)
    categories: List[str] = Field(min_length=1, description="mountains, beaches, heritage...")
    highlights: List[str] = Field(default_factory=list)

    @field_validator("highlights", mode="before")
    @classmethod
    def split_highlights(cls, value):
        return _split_highlights(value)


# total_seats, price and the free-text fields may be cleared with null; these may not
TRIP_NOT_NULLABLE = (
    "title", "duration", "duration_type", "categories", "highlights",
    "images", "itinerary", "auto_approve", "waitlist_threshold",
)


class TripUpdate(BaseModel):
    """Partial trip update; booked seats are not writable here"""
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    location: Optional[str] = None
    state: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=0)
    duration_type: Optional[DurationType] = None
    categories: Optional[List[str]] = Field(default=None, min_length=1)
    description: Optional[str] = None
    highlights: Optional[List[str]] = None
    image_url: Optional[str] = None
    images: Optional[List[str]] = Field(default=None, max_length=MAX_GALLERY_IMAGES)
    itinerary: Optional[List[ItineraryDay]] = None
    total_seats: Optional[int] = Field(default=None, ge=0)
    auto_approve: Optional[bool] = None
    waitlist_threshold: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def reject_nulls(cls, data):
        if isinstance(data, dict):
            nulls = [key for key in TRIP_NOT_NULLABLE if key in data and data[key] is None]
            if nulls:
                raise ValueError(f"Fields cannot be null: {', '.join(nulls)}")
        return data

    @field_validator("highlights", mode="before")
    @classmethod
    def split_highlights(cls, value):
        if value is None:
            return None
        return _split_highlights(value)

    @field_validator("itinerary")
    @classmethod
    def drop_incomplete_days(cls, days):
        if days is None:
            return None
        return [d for d in days if d.title and d.description]


class BookingRequest(BaseModel):
    """Booking form submission"""
    trip_id: str
    full_name: str = Field(min_length=1, max_length=100)
    whatsapp_number: str = Field(min_length=10, max_length=20)
    travel_date: str = Field(min_length=1, max_length=20)
    guests: int = Field(default=1, ge=1)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("whatsapp_number")
    @classmethod
    def check_phone(cls, value: str) -> str:
        _, error = validate_phone_number(value)
        if error:
            raise ValueError(error)
        return value.strip()


class StatusUpdate(BaseModel):
    """Operator status change for a booking"""
    status: BookingStatus


class NotifyRequest(BaseModel):
    """Operator-triggered WhatsApp notification for a booking"""
    template_key: str = "booking_confirmed"
    substitutions: Dict[str, Any] = Field(default_factory=dict)


class SignUpRequest(BaseModel):
    email: str = Field(min_length=3, max_length=200)
    password: str = Field(min_length=6)
    name: Optional[str] = None
    phone_number: Optional[str] = None
    apply_as_admin: bool = False


class LoginRequest(BaseModel):
    email: str
    password: str


class RoleUpdate(BaseModel):
    role: UserRole


class BulkUserAction(BaseModel):
    user_ids: List[str] = Field(min_length=1)
