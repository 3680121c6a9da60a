"""Waitlist promotion engine.

When a seat frees up, the waiting entry with the lowest waitlist position
moves to ``pending_confirmation`` with a confirmation deadline. Promotion
runs under the same amenity lock as admission so the two can never both
hand out the last seat. Positions are ordering keys, not dense ranks: they
are never renumbered, gaps are expected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.models import Amenity, Booking, BookingStatus

from .capacity import occupancy, run_locked
from .notifications import (
    NotificationSender,
    NotificationTemplate,
    booking_data,
    confirmation_links,
    notify,
)
from .transitions import transition

logger = logging.getLogger(__name__)
settings = get_settings()


class PromotionReason(str, Enum):
    CANCELLATION = "cancellation"
    NO_SHOW = "no_show"
    DECLINED = "declined"
    EXPIRY = "expiry"
    MANUAL = "manual"
    BACKFILL = "backfill"


@dataclass
class PromotionResult:
    promoted: bool
    reason: str
    booking: Optional[Booking] = None


@dataclass
class BatchPromotion:
    results: List[PromotionResult] = field(default_factory=list)

    @property
    def promoted(self) -> List[Booking]:
        return [r.booking for r in self.results if r.promoted and r.booking is not None]


def default_window(reason: PromotionReason) -> timedelta:
    """Confirmation window per trigger.

    No-show promotions happen after the slot has started, so the entrant gets
    a short window. Expiry chains use their own configurable window; all
    other triggers get the long window.
    """

    if reason is PromotionReason.NO_SHOW:
        return timedelta(minutes=settings.no_show_promotion_window_minutes)
    if reason is PromotionReason.EXPIRY:
        return timedelta(minutes=settings.expiry_promotion_window_minutes)
    return timedelta(hours=settings.promotion_window_hours)


def _next_in_line(db: Session, amenity_id: int, start_time: datetime) -> Optional[Booking]:
    stmt = (
        select(Booking)
        .where(
            Booking.amenity_id == amenity_id,
            Booking.start_time == start_time,
            Booking.status == BookingStatus.WAITLIST.value,
        )
        .order_by(Booking.waitlist_position.asc(), Booking.id.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _promote_next(
    db: Session,
    amenity: Amenity,
    start_time: datetime,
    reason: PromotionReason,
    window: timedelta,
    now: datetime,
) -> PromotionResult:
    """Hand one free seat to the head of the waitlist. Runs under the amenity lock; the caller commits."""

    if not occupancy(db, amenity.id, start_time, amenity).has_room:
        return PromotionResult(promoted=False, reason="capacity_full")
    candidate = _next_in_line(db, amenity.id, start_time)
    if candidate is None:
        return PromotionResult(promoted=False, reason="waitlist_empty")
    if candidate.end_time <= now:
        return PromotionResult(promoted=False, reason="slot_passed")

    moved = transition(
        db,
        candidate.id,
        BookingStatus.WAITLIST,
        status=BookingStatus.PENDING_CONFIRMATION.value,
        promoted_at=now,
        confirmation_deadline=now + window,
        promotion_reason=reason.value,
        updated_at=now,
    )
    if not moved:
        return PromotionResult(promoted=False, reason="waitlist_empty")
    db.refresh(candidate)
    return PromotionResult(promoted=True, reason="promoted", booking=candidate)


def announce_promotion(
    result: PromotionResult,
    amenity_id: int,
    start_time: datetime,
    reason: PromotionReason,
    window: Optional[timedelta] = None,
    sender: Optional[NotificationSender] = None,
) -> None:
    """Log a committed promotion attempt and tell the promoted entrant."""

    window = window or default_window(reason)
    if not result.promoted or result.booking is None:
        logger.info(
            "no promotion amenity=%s start=%s trigger=%s: %s",
            amenity_id,
            start_time.isoformat(),
            reason.value,
            result.reason,
        )
        return

    booking = result.booking
    deadline = booking.confirmation_deadline.isoformat() if booking.confirmation_deadline else None
    logger.info(
        "promoted booking=%s position=%s amenity=%s start=%s trigger=%s deadline=%s",
        booking.id,
        booking.waitlist_position,
        amenity_id,
        start_time.isoformat(),
        reason.value,
        deadline,
    )
    notify(
        NotificationTemplate.WAITLIST_PROMOTED,
        booking.user_email,
        booking_data(
            booking,
            confirmation_deadline=deadline,
            window_minutes=int(window.total_seconds() // 60),
            **confirmation_links(booking.id),
        ),
        sender,
    )


def promote(
    db: Session,
    amenity_id: int,
    start_time: datetime,
    reason: PromotionReason,
    window: Optional[timedelta] = None,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> PromotionResult:
    """Promote at most one waiting entrant for the slot. Safe to call repeatedly."""

    now = now or datetime.utcnow()
    window = window or default_window(reason)
    result = run_locked(db, amenity_id, lambda amenity: _promote_next(db, amenity, start_time, reason, window, now))
    announce_promotion(result, amenity_id, start_time, reason, window, sender)
    return result


def release_and_promote(
    db: Session,
    amenity_id: int,
    start_time: datetime,
    reason: PromotionReason,
    release: Callable[[], bool],
    window: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, PromotionResult]:
    """Free a seat and hand it on in one locked transaction.

    ``release`` performs the freeing transition and returns whether the row
    moved. Both changes commit together or not at all, so a failure never
    leaves a freed seat with nobody promoted into it. It may run more than
    once when the lock is contended. Nothing is announced here; the caller
    sends its own notice first, then calls :func:`announce_promotion`.
    """

    now = now or datetime.utcnow()
    window = window or default_window(reason)

    def _release_then_promote(amenity: Amenity) -> Tuple[bool, PromotionResult]:
        if not release():
            return False, PromotionResult(promoted=False, reason="not_released")
        return True, _promote_next(db, amenity, start_time, reason, window, now)

    return run_locked(db, amenity_id, _release_then_promote)


def promote_open_seats(
    db: Session,
    amenity_id: int,
    start_time: datetime,
    reason: PromotionReason,
    window: Optional[timedelta] = None,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> BatchPromotion:
    """Promote one entrant per free seat, as a loop of single promotions."""

    batch = BatchPromotion()
    while True:
        result = promote(db, amenity_id, start_time, reason, window=window, now=now, sender=sender)
        batch.results.append(result)
        if not result.promoted:
            return batch


def waitlist_for_slot(db: Session, community_id: str, amenity_id: int, start_time: datetime) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(
            Booking.community_id == community_id,
            Booking.amenity_id == amenity_id,
            Booking.start_time == start_time,
            Booking.status == BookingStatus.WAITLIST.value,
        )
        .order_by(Booking.waitlist_position.asc(), Booking.id.asc())
    )
    return list(db.scalars(stmt))


def slots_with_waiters(db: Session, now: datetime) -> List[Tuple[int, datetime]]:
    """(amenity_id, start_time) of every unfinished slot that still has someone waiting."""

    stmt = (
        select(Booking.amenity_id, Booking.start_time)
        .where(Booking.status == BookingStatus.WAITLIST.value, Booking.end_time > now)
        .group_by(Booking.amenity_id, Booking.start_time)
        .order_by(Booking.start_time.asc(), Booking.amenity_id.asc())
    )
    return [(amenity_id, start_time) for amenity_id, start_time in db.execute(stmt)]
