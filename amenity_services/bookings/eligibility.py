"""Eligibility gate: suspension, deposit and priority from a user's history."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.models import UserBookingStats
from amenity_core.schemas import EligibilityRead

logger = logging.getLogger(__name__)
settings = get_settings()

BASE_PRIORITY = 50
DEPOSIT_BY_CATEGORY = {
    "pool": 50,
    "gym": 30,
    "tennis": 40,
    "clubhouse": 100,
    "bbq": 60,
}
DEFAULT_DEPOSIT = 30


@dataclass
class Eligibility:
    can_book: bool
    requires_deposit: bool
    deposit_amount: int
    priority_score: int
    is_suspended: bool = False
    suspended_until: Optional[datetime] = None
    reason: Optional[str] = None

    def to_schema(self) -> EligibilityRead:
        return EligibilityRead(**self.__dict__)


def calculate_priority_score(
    total_bookings: int = 0,
    no_show_count: int = 0,
    cancellation_count: int = 0,
    average_usage: int = 100,
) -> int:
    """Lower is better. Frequent bookers, no-shows, cancellations and idle bookings all push it up."""

    score = BASE_PRIORITY
    if total_bookings > 20:
        score += 20
    elif total_bookings > 10:
        score += 10
    elif total_bookings < 3:
        score -= 10
    score += no_show_count * 15
    score += cancellation_count * 5
    if average_usage < 50:
        score += 10
    return max(0, min(100, score))


def requires_deposit(no_show_count: int) -> bool:
    return no_show_count >= settings.deposit_threshold


def calculate_deposit_amount(category: Optional[str]) -> int:
    return DEPOSIT_BY_CATEGORY.get((category or "").strip().lower(), DEFAULT_DEPOSIT)


def _find_stats(db: Session, user_id: str) -> Optional[UserBookingStats]:
    return db.scalar(select(UserBookingStats).where(UserBookingStats.user_id == user_id))


def get_or_create_stats(db: Session, user_id: str) -> UserBookingStats:
    """Load a user's stats, creating the row on first use.

    Two first requests from one user can both miss the row; the loser's
    insert hits the unique constraint inside a savepoint and re-reads the
    winner's row instead of failing the outer transaction.
    """

    stats = _find_stats(db, user_id)
    if stats is not None:
        return stats
    stats = UserBookingStats(
        user_id=user_id,
        total_bookings=0,
        completed_bookings=0,
        no_show_count=0,
        cancellation_count=0,
        average_usage=100,
        priority_score=BASE_PRIORITY,
        deposit_required=False,
    )
    try:
        with db.begin_nested():
            db.add(stats)
            db.flush()
    except IntegrityError:
        logger.info("stats row for user=%s created concurrently, reloading", user_id)
        stats = _find_stats(db, user_id)
        if stats is None:
            raise
    return stats


def _refresh_derived(stats: UserBookingStats, now: datetime) -> None:
    stats.priority_score = calculate_priority_score(
        stats.total_bookings, stats.no_show_count, stats.cancellation_count, stats.average_usage
    )
    stats.deposit_required = requires_deposit(stats.no_show_count)
    stats.updated_at = now


def check_eligibility(
    db: Session, user_id: str, amenity_type: Optional[str], now: Optional[datetime] = None
) -> Eligibility:
    now = now or datetime.utcnow()
    stats = get_or_create_stats(db, user_id)
    db.commit()

    if stats.suspended_until and stats.suspended_until > now:
        return Eligibility(
            can_book=False,
            requires_deposit=False,
            deposit_amount=0,
            priority_score=0,
            is_suspended=True,
            suspended_until=stats.suspended_until,
            reason=(
                f"Account suspended until {stats.suspended_until:%Y-%m-%d} "
                f"due to {stats.no_show_count} no-shows"
            ),
        )

    needs_deposit = requires_deposit(stats.no_show_count)
    return Eligibility(
        can_book=True,
        requires_deposit=needs_deposit,
        deposit_amount=calculate_deposit_amount(amenity_type) if needs_deposit else 0,
        priority_score=calculate_priority_score(
            stats.total_bookings, stats.no_show_count, stats.cancellation_count, stats.average_usage
        ),
        reason=f"Deposit required due to {stats.no_show_count} no-shows" if needs_deposit else None,
    )


def apply_suspension(stats: UserBookingStats, now: datetime) -> bool:
    if stats.no_show_count < settings.suspension_threshold:
        return False
    stats.suspended_until = now + timedelta(days=settings.suspension_days)
    stats.suspension_reason = f"{stats.no_show_count} no-shows"
    logger.info("suspended user=%s until=%s", stats.user_id, stats.suspended_until.isoformat())
    return True


def record_no_show(db: Session, user_id: str, now: datetime) -> UserBookingStats:
    """Caller commits."""

    stats = get_or_create_stats(db, user_id)
    stats.no_show_count += 1
    apply_suspension(stats, now)
    _refresh_derived(stats, now)
    return stats


def record_cancellation(db: Session, user_id: str, now: datetime) -> UserBookingStats:
    stats = get_or_create_stats(db, user_id)
    stats.cancellation_count += 1
    _refresh_derived(stats, now)
    return stats


def record_completion(db: Session, user_id: str, usage_percent: int, now: datetime) -> UserBookingStats:
    stats = get_or_create_stats(db, user_id)
    usage_percent = max(0, min(100, usage_percent))
    completed = stats.completed_bookings + 1
    stats.average_usage = round((stats.average_usage * stats.completed_bookings + usage_percent) / completed)
    stats.completed_bookings = completed
    stats.total_bookings += 1
    stats.last_booking_date = now
    _refresh_derived(stats, now)
    return stats
