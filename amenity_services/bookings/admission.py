"""Booking admission: confirm while the slot has room, otherwise waitlist."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from amenity_core.errors import Forbidden, InvalidState, NotFound, ValidationFailed
from amenity_core.models import ACTIVE_STATUSES, Amenity, Booking, BookingStatus
from amenity_core.schemas import BookingCreate, Identity

from .capacity import count_occupying, max_waitlist_position, occupancy, run_locked
from .eligibility import Eligibility, check_eligibility
from .notifications import NotificationSender, NotificationTemplate, booking_data, notify

logger = logging.getLogger(__name__)


@dataclass
class AdmissionResult:
    status: str
    booking: Booking
    capacity: int
    eligibility: Eligibility
    position: Optional[int] = None

    @property
    def message(self) -> str:
        if self.status == BookingStatus.CONFIRMED.value:
            return "Booking confirmed"
        return f"Added to waitlist (position #{self.position})"


def _load_amenity(db: Session, identity: Identity, amenity_id: int) -> Amenity:
    amenity = db.get(Amenity, amenity_id)
    # Amenities of other communities are indistinguishable from missing ones.
    if amenity is None or not amenity.is_active or amenity.community_id != identity.community_id:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    return amenity


def validate_slot(amenity: Amenity, start: datetime, end: datetime, now: datetime) -> None:
    if end <= start:
        raise ValidationFailed("End time must be after start time", reason="invalid_time_range")
    if start <= now:
        raise ValidationFailed("Cannot book past or started slots", reason="slot_in_past")
    if end - start != timedelta(minutes=amenity.slot_duration_minutes):
        raise ValidationFailed(
            f"Slots for this amenity last {amenity.slot_duration_minutes} minutes",
            reason="invalid_slot_length",
        )
    if amenity.open_hour is not None and amenity.close_hour is not None:
        opens = start.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(hours=amenity.open_hour)
        closes = start.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(hours=amenity.close_hour)
        if start < opens or end > closes:
            raise ValidationFailed("Slot is outside operating hours", reason="outside_operating_hours")


def _holds_active_booking(db: Session, user_id: str, amenity_id: int, start: datetime) -> bool:
    stmt = select(Booking.id).where(
        Booking.user_id == user_id,
        Booking.amenity_id == amenity_id,
        Booking.start_time == start,
        Booking.status.in_(ACTIVE_STATUSES),
    )
    return db.scalar(stmt) is not None


def admit(
    db: Session,
    identity: Identity,
    request: BookingCreate,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> AdmissionResult:
    now = now or datetime.utcnow()
    amenity = _load_amenity(db, identity, request.amenity_id)
    validate_slot(amenity, request.start_time, request.end_time, now)
    amenity_id, category = amenity.id, amenity.category

    eligibility = check_eligibility(db, identity.user_id, category, now)
    if not eligibility.can_book:
        raise Forbidden(
            eligibility.reason or "Account suspended",
            reason="account_suspended",
            suspended_until=eligibility.suspended_until.isoformat() if eligibility.suspended_until else None,
        )

    # Pre-read outside the lock. Only logged; the decision uses the re-read below.
    pre_count = count_occupying(db, amenity_id, request.start_time)
    pre_position = max_waitlist_position(db, amenity_id, request.start_time)
    db.rollback()
    logger.info(
        "admission pre-read amenity=%s start=%s occupied=%s waitlist_max=%s",
        amenity_id,
        request.start_time.isoformat(),
        pre_count,
        pre_position,
    )

    def _decide(locked: Amenity) -> AdmissionResult:
        if _holds_active_booking(db, identity.user_id, amenity_id, request.start_time):
            raise InvalidState("You already hold a booking for this slot", reason="duplicate_booking")

        slot = occupancy(db, amenity_id, request.start_time, locked)
        booking = Booking(
            amenity_id=amenity_id,
            community_id=identity.community_id,
            user_id=identity.user_id,
            user_email=identity.email,
            user_name=request.user_name or identity.name,
            attendees=list(request.attendees),
            start_time=request.start_time,
            end_time=request.end_time,
            priority_score=eligibility.priority_score,
            deposit_required=eligibility.requires_deposit,
            deposit_amount=eligibility.deposit_amount,
            created_at=now,
        )
        if slot.has_room:
            booking.status = BookingStatus.CONFIRMED.value
            booking.confirmed_at = now
            position = slot.confirmed_count + 1
        else:
            position = max_waitlist_position(db, amenity_id, request.start_time) + 1
            booking.status = BookingStatus.WAITLIST.value
            booking.waitlist_position = position
        db.add(booking)
        db.flush()
        return AdmissionResult(
            status=booking.status,
            booking=booking,
            capacity=slot.capacity,
            eligibility=eligibility,
            position=position,
        )

    result = run_locked(db, amenity_id, _decide)
    logger.info(
        "booking %s id=%s amenity=%s start=%s user=%s position=%s/%s",
        result.status,
        result.booking.id,
        amenity_id,
        request.start_time.isoformat(),
        identity.user_id,
        result.position,
        result.capacity,
    )

    if result.status == BookingStatus.CONFIRMED.value:
        notify(
            NotificationTemplate.BOOKING_CONFIRMED,
            identity.email,
            booking_data(result.booking, qr_id=result.booking.qr_id),
            sender,
        )
    else:
        notify(
            NotificationTemplate.BOOKING_WAITLISTED,
            identity.email,
            booking_data(result.booking, waitlist_position=result.position),
            sender,
        )
    return result
