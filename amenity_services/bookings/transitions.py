"""Conditional status transitions.

Every transition names the status it expects to move from. A row that was
already moved by someone else is left alone and the caller gets ``False``,
which is what makes overlapping sweeps and double-clicks harmless.
"""
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from amenity_core.models import Booking, BookingStatus


def transition(db: Session, booking_id: int, expected: BookingStatus, *criteria: Any, **values: Any) -> bool:
    """Move one booking out of ``expected``; the caller commits."""

    stmt = (
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == expected.value, *criteria)
        .values(**values)
    )
    return db.execute(stmt).rowcount == 1
