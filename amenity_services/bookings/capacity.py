"""Slot occupancy queries and the slot lock shared by admission and promotion.

A slot is the ``(amenity_id, start_time)`` pair; callers always pass the
canonical slot start. Occupancy is derived from the booking rows on every
call, there is no stored counter to drift.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from amenity_core.cache import AmenityConfigCache
from amenity_core.config import get_settings
from amenity_core.errors import NotFound, SlotContention
from amenity_core.models import OCCUPYING_STATUSES, Amenity, Booking, BookingStatus
from amenity_core.schemas import AmenityRead

logger = logging.getLogger(__name__)
settings = get_settings()
amenity_cache = AmenityConfigCache(ttl=settings.amenity_cache_ttl)

T = TypeVar("T")

DEFAULT_CAPACITY = 1
# Postgres deadlock, lock_not_available, serialization_failure.
_CONTENTION_PGCODES = {"40P01", "55P03", "40001"}


@dataclass(frozen=True)
class Occupancy:
    confirmed_count: int
    capacity: int

    @property
    def has_room(self) -> bool:
        return self.confirmed_count < self.capacity


def capacity_of(amenity: Amenity) -> int:
    return amenity.capacity or DEFAULT_CAPACITY


def get_amenity(db: Session, amenity_id: int) -> AmenityRead:
    """Cached amenity configuration. Never use this for the capacity decision."""

    cached = amenity_cache.get(amenity_id)
    if cached is not None:
        return cached
    amenity = db.get(Amenity, amenity_id)
    if amenity is None:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    return amenity_cache.put(AmenityRead.model_validate(amenity))


def count_occupying(db: Session, amenity_id: int, start_time: datetime) -> int:
    stmt = select(func.count(Booking.id)).where(
        Booking.amenity_id == amenity_id,
        Booking.start_time == start_time,
        Booking.status.in_(OCCUPYING_STATUSES),
    )
    return db.scalar(stmt) or 0


def max_waitlist_position(db: Session, amenity_id: int, start_time: datetime) -> int:
    stmt = select(func.max(Booking.waitlist_position)).where(
        Booking.amenity_id == amenity_id,
        Booking.start_time == start_time,
        Booking.status == BookingStatus.WAITLIST.value,
    )
    return db.scalar(stmt) or 0


def occupancy(db: Session, amenity_id: int, start_time: datetime, amenity: Optional[Amenity] = None) -> Occupancy:
    if amenity is None:
        amenity = db.get(Amenity, amenity_id)
        if amenity is None:
            raise NotFound("Amenity not found", reason="amenity_not_found")
    return Occupancy(
        confirmed_count=count_occupying(db, amenity_id, start_time),
        capacity=capacity_of(amenity),
    )


def lock_amenity(db: Session, amenity_id: int) -> Amenity:
    """SELECT ... FOR UPDATE on the amenity row guarding all of its slots."""

    amenity = db.execute(
        select(Amenity).where(Amenity.id == amenity_id).with_for_update()
    ).scalar_one_or_none()
    if amenity is None:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    return amenity


def _is_lock_contention(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in _CONTENTION_PGCODES:
        return True
    message = str(exc).lower()
    return "deadlock" in message or "database is locked" in message or "could not obtain lock" in message


def run_locked(db: Session, amenity_id: int, work: Callable[[Amenity], T]) -> T:
    """Run ``work`` while holding the amenity lock, then commit.

    Contended attempts are rolled back and retried; anything ``work`` read
    in a failed attempt is discarded with the rollback.
    """

    attempts = max(1, settings.slot_lock_attempts)
    for attempt in range(1, attempts + 1):
        try:
            amenity = lock_amenity(db, amenity_id)
            result = work(amenity)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if not _is_lock_contention(exc):
                raise
            logger.warning(
                "slot lock contended amenity=%s attempt=%s/%s", amenity_id, attempt, attempts
            )
        except Exception:
            db.rollback()
            raise
    raise SlotContention(
        "The slot is busy, please retry",
        amenity_id=amenity_id,
    )
