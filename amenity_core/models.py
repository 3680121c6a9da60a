"""SQLAlchemy models shared across all services."""
from __future__ import annotations

import secrets
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class RoleEnum(str, Enum):
    ADMIN = "admin"
    FACILITY_MANAGER = "facility_manager"
    RESIDENT = "resident"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    WAITLIST = "waitlist"
    PENDING_CONFIRMATION = "pending_confirmation"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    NO_SHOW = "no_show"
    COMPLETED = "completed"


# Statuses that hold a seat in the slot.
OCCUPYING_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.PENDING_CONFIRMATION.value)
ACTIVE_STATUSES = OCCUPYING_STATUSES + (BookingStatus.WAITLIST.value,)
TERMINAL_STATUSES = (
    BookingStatus.CANCELLED.value,
    BookingStatus.DECLINED.value,
    BookingStatus.EXPIRED.value,
    BookingStatus.NO_SHOW.value,
    BookingStatus.COMPLETED.value,
)


def _new_qr_id() -> str:
    return secrets.token_urlsafe(12)


class Amenity(Base):
    __tablename__ = "amenities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    community_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100))
    category: Mapped[str] = mapped_column(String(50), default="general")
    capacity: Mapped[Optional[int]] = mapped_column(Integer, default=1)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    open_hour: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    close_hour: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="amenity")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_slot_status", "amenity_id", "start_time", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    qr_id: Mapped[str] = mapped_column(String(32), unique=True, default=_new_qr_id)
    amenity_id: Mapped[int] = mapped_column(ForeignKey("amenities.id", ondelete="CASCADE"), index=True)
    community_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    user_email: Mapped[str] = mapped_column(String(255))
    user_name: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    attendees: Mapped[list[str]] = mapped_column(JSON, default=list)

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(30), default=BookingStatus.CONFIRMED.value, index=True)

    waitlist_position: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    priority_score: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    deposit_required: Mapped[bool] = mapped_column(Boolean, default=False)
    deposit_amount: Mapped[int] = mapped_column(Integer, default=0)

    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    confirmation_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None, index=True)
    promotion_reason: Mapped[Optional[str]] = mapped_column(String(30), default=None)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)

    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    qr_used: Mapped[bool] = mapped_column(Boolean, default=False)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)

    amenity: Mapped[Amenity] = relationship(back_populates="bookings")


class UserBookingStats(Base):
    __tablename__ = "user_booking_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)
    cancellation_count: Mapped[int] = mapped_column(Integer, default=0)
    average_usage: Mapped[int] = mapped_column(Integer, default=100)
    priority_score: Mapped[int] = mapped_column(Integer, default=50)
    deposit_required: Mapped[bool] = mapped_column(Boolean, default=False)
    suspended_until: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    suspension_reason: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    last_booking_date: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
