"""Scheduled sweeps over the booking table.

Each sweep reads its candidate ids once, then processes every booking in its
own transaction through a conditional transition. A row that another run or
a user action already moved is skipped, so overlapping runs are harmless. A
failing booking is logged and reported; the rest of the sweep carries on.
A booking that frees a seat is released together with the promotion into
that seat, so a failure rolls both back and the next run retries them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.models import Booking, BookingStatus, UserBookingStats
from amenity_core.schemas import SweepReportRead
from amenity_services.bookings.eligibility import record_completion, record_no_show
from amenity_services.bookings.notifications import (
    NotificationSender,
    NotificationTemplate,
    booking_data,
    notify,
)
from amenity_services.bookings.promotion import (
    PromotionReason,
    announce_promotion,
    promote_open_seats,
    release_and_promote,
    slots_with_waiters,
)
from amenity_services.bookings.transitions import transition

logger = logging.getLogger(__name__)
settings = get_settings()

# (transitioned, promoted)
Outcome = Tuple[bool, bool]


@dataclass
class SweepReport:
    sweep: str
    checked: int = 0
    transitioned: int = 0
    promoted: int = 0
    errors: List[str] = field(default_factory=list)

    def to_schema(self) -> SweepReportRead:
        return SweepReportRead(**self.__dict__)


def _candidate_ids(db: Session, stmt) -> List[int]:  # type: ignore[no-untyped-def]
    ids = list(db.scalars(stmt))
    db.rollback()
    return ids


def _run(name: str, db: Session, ids: List[int], handle: Callable[[Booking], Outcome]) -> SweepReport:
    report = SweepReport(sweep=name, checked=len(ids))
    for booking_id in ids:
        try:
            booking = db.get(Booking, booking_id)
            if booking is None:
                continue
            transitioned, promoted = handle(booking)
        except Exception as exc:  # one bad booking never stops the sweep
            db.rollback()
            logger.exception("%s sweep failed for booking=%s", name, booking_id)
            report.errors.append(f"booking {booking_id}: {exc}")
            continue
        report.transitioned += int(transitioned)
        report.promoted += int(promoted)
    logger.info(
        "%s sweep checked=%s transitioned=%s promoted=%s errors=%s",
        name,
        report.checked,
        report.transitioned,
        report.promoted,
        len(report.errors),
    )
    return report


def sweep_no_shows(db: Session, now: Optional[datetime] = None, sender: Optional[NotificationSender] = None) -> SweepReport:
    """Confirmed bookings nobody checked into within the grace period become no-shows."""

    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=settings.no_show_grace_minutes)
    ids = _candidate_ids(
        db,
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.start_time < cutoff,
            Booking.check_in_time.is_(None),
            Booking.qr_used.is_(False),
        )
        .order_by(Booking.start_time.asc(), Booking.id.asc()),
    )

    def handle(booking: Booking) -> Outcome:
        marked: List[UserBookingStats] = []

        def release() -> bool:
            marked.clear()
            moved = transition(
                db,
                booking.id,
                BookingStatus.CONFIRMED,
                Booking.check_in_time.is_(None),
                Booking.qr_used.is_(False),
                status=BookingStatus.NO_SHOW.value,
                no_show_at=now,
                updated_at=now,
            )
            if moved:
                marked.append(record_no_show(db, booking.user_id, now))
            return moved

        released, result = release_and_promote(
            db, booking.amenity_id, booking.start_time, PromotionReason.NO_SHOW, release, now=now
        )
        if not released:
            return False, False
        stats = marked[0]
        logger.info("booking=%s marked no_show user=%s no_shows=%s", booking.id, booking.user_id, stats.no_show_count)
        notify(
            NotificationTemplate.BOOKING_NO_SHOW,
            booking.user_email,
            booking_data(booking, no_show_count=stats.no_show_count, suspended_until=stats.suspended_until),
            sender,
        )
        announce_promotion(result, booking.amenity_id, booking.start_time, PromotionReason.NO_SHOW, sender=sender)
        return True, result.promoted

    return _run("no_show", db, ids, handle)


def sweep_expired_confirmations(
    db: Session, now: Optional[datetime] = None, sender: Optional[NotificationSender] = None
) -> SweepReport:
    """Promotions whose deadline passed expire and the seat moves down the waitlist."""

    now = now or datetime.utcnow()
    ids = _candidate_ids(
        db,
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.PENDING_CONFIRMATION.value,
            Booking.confirmation_deadline < now,
        )
        .order_by(Booking.confirmation_deadline.asc(), Booking.id.asc()),
    )

    def handle(booking: Booking) -> Outcome:
        def release() -> bool:
            return transition(
                db,
                booking.id,
                BookingStatus.PENDING_CONFIRMATION,
                Booking.confirmation_deadline < now,
                status=BookingStatus.EXPIRED.value,
                expired_at=now,
                updated_at=now,
            )

        released, result = release_and_promote(
            db, booking.amenity_id, booking.start_time, PromotionReason.EXPIRY, release, now=now
        )
        if not released:
            return False, False
        logger.info("booking=%s promotion expired", booking.id)
        notify(NotificationTemplate.PROMOTION_EXPIRED, booking.user_email, booking_data(booking), sender)
        announce_promotion(result, booking.amenity_id, booking.start_time, PromotionReason.EXPIRY, sender=sender)
        return True, result.promoted

    return _run("pending_expiry", db, ids, handle)


def sweep_reminders(db: Session, now: Optional[datetime] = None, sender: Optional[NotificationSender] = None) -> SweepReport:
    """Remind confirmed bookings starting soon. The claim is committed before sending."""

    now = now or datetime.utcnow()
    window_start = now + timedelta(minutes=settings.reminder_window_start_minutes)
    window_end = now + timedelta(minutes=settings.reminder_window_end_minutes)
    ids = _candidate_ids(
        db,
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.reminder_sent.is_(False),
            Booking.start_time >= window_start,
            Booking.start_time <= window_end,
        )
        .order_by(Booking.start_time.asc(), Booking.id.asc()),
    )

    def handle(booking: Booking) -> Outcome:
        claimed = transition(
            db,
            booking.id,
            BookingStatus.CONFIRMED,
            Booking.reminder_sent.is_(False),
            reminder_sent=True,
            reminder_sent_at=now,
            updated_at=now,
        )
        db.commit()
        if not claimed:
            return False, False
        minutes_until = int((booking.start_time - now).total_seconds() // 60)
        notify(
            NotificationTemplate.BOOKING_REMINDER,
            booking.user_email,
            booking_data(booking, qr_id=booking.qr_id, minutes_until_start=minutes_until),
            sender,
        )
        return True, False

    return _run("reminder", db, ids, handle)


def usage_percent(booking: Booking) -> int:
    """Share of the slot that was actually used, counted from check-in."""

    if booking.check_in_time is None:
        return 0
    slot_seconds = (booking.end_time - booking.start_time).total_seconds()
    if slot_seconds <= 0:
        return 100
    used_from = max(booking.check_in_time, booking.start_time)
    used_seconds = max(0.0, (booking.end_time - used_from).total_seconds())
    return max(0, min(100, round(used_seconds * 100 / slot_seconds)))


def sweep_completions(db: Session, now: Optional[datetime] = None) -> SweepReport:
    """Checked-in bookings whose slot has ended become completed."""

    now = now or datetime.utcnow()
    ids = _candidate_ids(
        db,
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.check_in_time.is_not(None),
            Booking.end_time <= now,
        )
        .order_by(Booking.end_time.asc(), Booking.id.asc()),
    )

    def handle(booking: Booking) -> Outcome:
        moved = transition(
            db,
            booking.id,
            BookingStatus.CONFIRMED,
            Booking.check_in_time.is_not(None),
            status=BookingStatus.COMPLETED.value,
            completed_at=now,
            updated_at=now,
        )
        if not moved:
            db.rollback()
            return False, False
        record_completion(db, booking.user_id, usage_percent(booking), now)
        db.commit()
        logger.info("booking=%s completed", booking.id)
        return True, False

    return _run("completion", db, ids, handle)


def sweep_stale_waitlist(db: Session, now: Optional[datetime] = None) -> SweepReport:
    """Waiting and pending entries for slots that already ended are expired without promotion."""

    now = now or datetime.utcnow()
    ids = _candidate_ids(
        db,
        select(Booking.id)
        .where(
            Booking.status.in_((BookingStatus.WAITLIST.value, BookingStatus.PENDING_CONFIRMATION.value)),
            Booking.end_time <= now,
        )
        .order_by(Booking.end_time.asc(), Booking.id.asc()),
    )

    def handle(booking: Booking) -> Outcome:
        moved = transition(
            db,
            booking.id,
            BookingStatus(booking.status),
            Booking.end_time <= now,
            status=BookingStatus.EXPIRED.value,
            expired_at=now,
            updated_at=now,
        )
        db.commit()
        return moved, False

    return _run("stale_waitlist", db, ids, handle)


def sweep_open_seats(db: Session, now: Optional[datetime] = None, sender: Optional[NotificationSender] = None) -> SweepReport:
    """Fill free seats of slots that still have a waitlist.

    Freeing a seat and promoting into it commit together, so this normally
    finds nothing. It catches seats freed some other way, such as an admin
    raising an amenity's capacity.
    """

    now = now or datetime.utcnow()
    slots = slots_with_waiters(db, now)
    db.rollback()
    report = SweepReport(sweep="open_seats", checked=len(slots))
    for amenity_id, start_time in slots:
        try:
            batch = promote_open_seats(db, amenity_id, start_time, PromotionReason.BACKFILL, now=now, sender=sender)
        except Exception as exc:  # one bad slot never stops the sweep
            db.rollback()
            logger.exception("open_seats sweep failed for amenity=%s start=%s", amenity_id, start_time.isoformat())
            report.errors.append(f"amenity {amenity_id} at {start_time.isoformat()}: {exc}")
            continue
        report.promoted += len(batch.promoted)
        report.transitioned += len(batch.promoted)
    logger.info(
        "open_seats sweep checked=%s promoted=%s errors=%s", report.checked, report.promoted, len(report.errors)
    )
    return report


def run_auto_cancel(db: Session, now: Optional[datetime] = None, sender: Optional[NotificationSender] = None) -> List[SweepReport]:
    now = now or datetime.utcnow()
    return [
        sweep_no_shows(db, now, sender),
        sweep_expired_confirmations(db, now, sender),
        sweep_completions(db, now),
        sweep_open_seats(db, now, sender),
    ]
