"""User-facing booking transitions: confirm, decline, cancel and check-in."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.errors import DeadlinePassed, Forbidden, InvalidState, NotFound
from amenity_core.models import OCCUPYING_STATUSES, TERMINAL_STATUSES, Booking, BookingStatus
from amenity_core.schemas import Identity

from .eligibility import record_cancellation
from .notifications import NotificationSender, NotificationTemplate, booking_data, notify
from .promotion import PromotionReason, PromotionResult, announce_promotion, release_and_promote
from .transitions import transition

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class ConfirmationView:
    booking: Booking
    time_remaining_seconds: Optional[int] = None
    deadline_passed: bool = False
    already_confirmed: bool = False


@dataclass
class DeclineOutcome:
    booking: Booking
    promotion: PromotionResult


@dataclass
class CancelOutcome:
    booking: Booking
    promotion: Optional[PromotionResult] = None


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", reason="booking_not_found")
    return booking


def load_owned_booking(db: Session, identity: Identity, booking_id: int, allow_admin: bool = False) -> Booking:
    booking = _get_booking(db, booking_id)
    if booking.community_id != identity.community_id:
        raise Forbidden("This booking belongs to a different community", reason="wrong_community")
    if booking.user_id != identity.user_id and not (allow_admin and identity.is_admin):
        raise Forbidden("You can only act on your own bookings", reason="not_owner")
    return booking


def _remaining(booking: Booking, now: datetime) -> Optional[int]:
    if booking.confirmation_deadline is None:
        return None
    return max(0, int((booking.confirmation_deadline - now).total_seconds()))


def confirmation_status(db: Session, identity: Identity, booking_id: int, now: Optional[datetime] = None) -> ConfirmationView:
    now = now or datetime.utcnow()
    booking = load_owned_booking(db, identity, booking_id)
    deadline_passed = (
        booking.status == BookingStatus.PENDING_CONFIRMATION.value
        and booking.confirmation_deadline is not None
        and now > booking.confirmation_deadline
    )
    return ConfirmationView(
        booking=booking,
        time_remaining_seconds=_remaining(booking, now),
        deadline_passed=deadline_passed,
    )


def _expire_past_deadline(db: Session, booking: Booking, now: datetime, sender: Optional[NotificationSender]) -> None:
    """Expire a promotion whose deadline passed before the sweep saw it, then hand the seat on."""

    def release() -> bool:
        return transition(
            db,
            booking.id,
            BookingStatus.PENDING_CONFIRMATION,
            status=BookingStatus.EXPIRED.value,
            expired_at=now,
            updated_at=now,
        )

    expired, promotion = release_and_promote(
        db, booking.amenity_id, booking.start_time, PromotionReason.EXPIRY, release, now=now
    )
    if expired:
        logger.info("booking=%s expired on late action", booking.id)
        notify(NotificationTemplate.PROMOTION_EXPIRED, booking.user_email, booking_data(booking), sender)
        announce_promotion(promotion, booking.amenity_id, booking.start_time, PromotionReason.EXPIRY, sender=sender)
    raise DeadlinePassed(
        "Confirmation deadline has passed. The spot has been offered to the next person in line.",
        booking_id=booking.id,
    )


def _require_pending(booking: Booking, action: str) -> None:
    if booking.status != BookingStatus.PENDING_CONFIRMATION.value:
        raise InvalidState(
            f"Cannot {action} a booking with status {booking.status}; only pending confirmations can be {action}d",
            reason="not_pending_confirmation",
            status=booking.status,
        )
    if booking.confirmation_deadline is None:
        raise InvalidState("Booking promotion data is incomplete", reason="incomplete_promotion")


def confirm(
    db: Session,
    identity: Identity,
    booking_id: int,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> ConfirmationView:
    now = now or datetime.utcnow()
    booking = load_owned_booking(db, identity, booking_id)
    if booking.status == BookingStatus.CONFIRMED.value:
        return ConfirmationView(booking=booking, already_confirmed=True)
    _require_pending(booking, "confirm")
    if now > booking.confirmation_deadline:
        _expire_past_deadline(db, booking, now, sender)

    confirmed = transition(
        db,
        booking.id,
        BookingStatus.PENDING_CONFIRMATION,
        status=BookingStatus.CONFIRMED.value,
        confirmed_at=now,
        updated_at=now,
    )
    db.commit()
    db.refresh(booking)
    if not confirmed:
        # Lost a race: a parallel confirm is fine, anything else is not.
        if booking.status == BookingStatus.CONFIRMED.value:
            return ConfirmationView(booking=booking, already_confirmed=True)
        raise InvalidState(
            f"Cannot confirm a booking with status {booking.status}",
            reason="not_pending_confirmation",
            status=booking.status,
        )

    logger.info("booking=%s confirmed by user=%s", booking.id, identity.user_id)
    notify(
        NotificationTemplate.PROMOTION_CONFIRMED,
        booking.user_email,
        booking_data(booking, qr_id=booking.qr_id),
        sender,
    )
    return ConfirmationView(booking=booking)


def decline(
    db: Session,
    identity: Identity,
    booking_id: int,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> DeclineOutcome:
    now = now or datetime.utcnow()
    booking = load_owned_booking(db, identity, booking_id)
    _require_pending(booking, "decline")
    if now > booking.confirmation_deadline:
        _expire_past_deadline(db, booking, now, sender)

    def release() -> bool:
        return transition(
            db,
            booking.id,
            BookingStatus.PENDING_CONFIRMATION,
            status=BookingStatus.DECLINED.value,
            declined_at=now,
            updated_at=now,
        )

    declined, promotion = release_and_promote(
        db, booking.amenity_id, booking.start_time, PromotionReason.DECLINED, release, now=now
    )
    db.refresh(booking)
    if not declined:
        raise InvalidState(
            f"Cannot decline a booking with status {booking.status}",
            reason="not_pending_confirmation",
            status=booking.status,
        )

    logger.info("booking=%s declined by user=%s", booking.id, identity.user_id)
    announce_promotion(promotion, booking.amenity_id, booking.start_time, PromotionReason.DECLINED, sender=sender)
    return DeclineOutcome(booking=booking, promotion=promotion)


def cancel(
    db: Session,
    identity: Identity,
    booking_id: int,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> CancelOutcome:
    now = now or datetime.utcnow()
    booking = load_owned_booking(db, identity, booking_id, allow_admin=True)
    if booking.status == BookingStatus.CANCELLED.value:
        raise InvalidState("Booking is already cancelled", reason="already_cancelled")
    if booking.status in TERMINAL_STATUSES:
        raise InvalidState(
            f"Cannot cancel a booking with status {booking.status}",
            reason="not_cancellable",
            status=booking.status,
        )

    previous = BookingStatus(booking.status)
    by_owner = booking.user_id == identity.user_id

    def release() -> bool:
        cancelled = transition(
            db,
            booking.id,
            previous,
            status=BookingStatus.CANCELLED.value,
            cancelled_at=now,
            cancelled_by=identity.email,
            updated_at=now,
        )
        if cancelled and by_owner:
            record_cancellation(db, booking.user_id, now)
        return cancelled

    promotion: Optional[PromotionResult] = None
    if previous.value in OCCUPYING_STATUSES:
        cancelled, promotion = release_and_promote(
            db, booking.amenity_id, booking.start_time, PromotionReason.CANCELLATION, release, now=now
        )
    else:
        cancelled = release()
        if cancelled:
            db.commit()
        else:
            db.rollback()
    if not cancelled:
        raise InvalidState("Booking changed while cancelling, please retry", reason="stale_state")
    db.refresh(booking)

    logger.info("booking=%s cancelled (was %s) by %s", booking.id, previous.value, identity.email)
    notify(
        NotificationTemplate.BOOKING_CANCELLED,
        booking.user_email,
        booking_data(booking, cancelled_by="You" if by_owner else "Administration"),
        sender,
    )
    if promotion is not None:
        announce_promotion(promotion, booking.amenity_id, booking.start_time, PromotionReason.CANCELLATION, sender=sender)
    return CancelOutcome(booking=booking, promotion=promotion)


def check_in(db: Session, identity: Identity, qr_id: str, now: Optional[datetime] = None) -> Booking:
    now = now or datetime.utcnow()
    booking = db.scalar(select(Booking).where(Booking.qr_id == qr_id))
    if booking is None:
        raise NotFound("Invalid QR code", reason="invalid_qr")
    booking = load_owned_booking(db, identity, booking.id, allow_admin=True)
    if booking.qr_used:
        raise InvalidState("QR code already used", reason="qr_already_used")
    if booking.status != BookingStatus.CONFIRMED.value:
        raise InvalidState(
            f"Cannot check in a booking with status {booking.status}",
            reason="not_confirmed",
            status=booking.status,
        )
    if now < booking.start_time - timedelta(minutes=settings.check_in_early_minutes):
        raise InvalidState("Too early, the booking has not started yet", reason="too_early")
    if now > booking.end_time:
        raise InvalidState("Booking time has ended", reason="booking_ended")

    checked_in = transition(
        db,
        booking.id,
        BookingStatus.CONFIRMED,
        Booking.qr_used.is_(False),
        qr_used=True,
        check_in_time=now,
        updated_at=now,
    )
    db.commit()
    db.refresh(booking)
    if not checked_in:
        raise InvalidState("QR code already used", reason="qr_already_used")
    logger.info("booking=%s checked in by %s", booking.id, identity.email)
    return booking
