"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import RoleEnum


def to_naive_utc(value: datetime) -> datetime:
    """Store instants as naive UTC, matching the DateTime columns."""

    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Identity(BaseModel):
    user_id: str
    email: EmailStr
    community_id: str
    role: RoleEnum = RoleEnum.RESIDENT
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in {RoleEnum.ADMIN, RoleEnum.FACILITY_MANAGER}


class AmenityBase(BaseModel):
    name: str = Field(..., max_length=100)
    category: str = Field(default="general", max_length=50)
    capacity: int = Field(default=1, ge=1)
    slot_duration_minutes: int = Field(default=60, ge=5, le=24 * 60)
    open_hour: Optional[int] = Field(default=None, ge=0, le=24)
    close_hour: Optional[int] = Field(default=None, ge=0, le=24)
    is_active: bool = True


class AmenityCreate(AmenityBase):
    pass


class AmenityUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, max_length=50)
    capacity: Optional[int] = Field(None, ge=1)
    slot_duration_minutes: Optional[int] = Field(None, ge=5, le=24 * 60)
    open_hour: Optional[int] = Field(None, ge=0, le=24)
    close_hour: Optional[int] = Field(None, ge=0, le=24)
    is_active: Optional[bool] = None


class AmenityRead(AmenityBase):
    id: int
    community_id: str

    model_config = {"from_attributes": True}


class BookingCreate(BaseModel):
    amenity_id: int
    start_time: datetime
    end_time: datetime
    attendees: List[str] = Field(default_factory=list, max_length=50)
    user_name: Optional[str] = Field(None, max_length=100)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingRead(BaseModel):
    id: int
    amenity_id: int
    community_id: str
    user_id: str
    user_email: str
    user_name: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    status: str
    waitlist_position: Optional[int] = None
    priority_score: Optional[int] = None
    deposit_required: bool = False
    deposit_amount: int = 0
    promoted_at: Optional[datetime] = None
    confirmation_deadline: Optional[datetime] = None
    promotion_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    check_in_time: Optional[datetime] = None
    qr_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


class EligibilityRead(BaseModel):
    can_book: bool
    requires_deposit: bool
    deposit_amount: int
    priority_score: int
    is_suspended: bool
    suspended_until: Optional[datetime] = None
    reason: Optional[str] = None


class AdmissionResponse(BaseModel):
    status: str
    booking_id: int
    position: Optional[int] = None
    capacity: int
    message: str
    booking: BookingRead
    eligibility: EligibilityRead


class ConfirmActionRequest(BaseModel):
    action: Literal["confirm", "decline"] = "confirm"


class ConfirmationStatusResponse(BaseModel):
    booking: BookingRead
    time_remaining_seconds: Optional[int] = None
    deadline_passed: bool = False
    already_confirmed: bool = False
    message: Optional[str] = None


class CancelResponse(BaseModel):
    booking: BookingRead
    waitlist_promoted: bool
    promoted_booking_id: Optional[int] = None
    message: str


class PromoteWaitlistRequest(BaseModel):
    amenity_id: int
    start_time: datetime
    reason: Literal["cancellation", "no_show", "declined", "expiry", "manual"] = "manual"
    window_minutes: Optional[int] = Field(None, ge=1, le=7 * 24 * 60)

    @field_validator("start_time")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class PromotionResponse(BaseModel):
    promoted: bool
    reason: str
    booking: Optional[BookingRead] = None
    promoted_bookings: List[BookingRead] = Field(default_factory=list)


class WaitlistEntry(BaseModel):
    id: int
    user_email: str
    user_name: Optional[str] = None
    amenity_id: int
    start_time: datetime
    end_time: datetime
    waitlist_position: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WaitlistResponse(BaseModel):
    count: int
    waitlist: List[WaitlistEntry]


class AdminWaitlistResponse(WaitlistResponse):
    by_amenity: Dict[str, int]
    recent_promotions: int


class CheckInRequest(BaseModel):
    qr_id: str = Field(..., min_length=4, max_length=32)


class SweepReportRead(BaseModel):
    sweep: str
    checked: int
    transitioned: int
    promoted: int
    errors: List[str] = Field(default_factory=list)


class SweepRunResponse(BaseModel):
    ran_at: datetime
    reports: List[SweepReportRead]
