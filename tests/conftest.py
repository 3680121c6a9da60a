import os
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("LOG_DIR", "./logs")

from amenity_core.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from sqlalchemy import select  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from amenity_core.auth import create_identity_token  # noqa: E402
from amenity_core.database import Base, SessionLocal, engine  # noqa: E402
from amenity_core.models import Amenity, Booking, BookingStatus, RoleEnum, UserBookingStats  # noqa: E402
from amenity_core.schemas import Identity  # noqa: E402
from amenity_services.amenities.app import app as amenities_app  # noqa: E402
from amenity_services.bookings.app import app as bookings_app  # noqa: E402
from amenity_services.bookings.capacity import amenity_cache  # noqa: E402
from amenity_services.bookings.notifications import NotificationResult, NotificationTemplate, set_sender  # noqa: E402
from amenity_services.cron.app import app as cron_app  # noqa: E402

COMMUNITY = "sunny-meadows"
CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


class RecordingSender:
    """Notification sender that keeps every message in memory."""

    def __init__(self) -> None:
        self.sent: List[Tuple[NotificationTemplate, str, Dict[str, Any]]] = []
        self.fail = False

    def send(self, template: NotificationTemplate, recipient: str, data: Dict[str, Any]) -> NotificationResult:
        self.sent.append((template, recipient, data))
        if self.fail:
            raise ConnectionError("broker unavailable")
        return NotificationResult(success=True)

    def templates(self, recipient: Optional[str] = None) -> List[str]:
        return [t.value for t, to, _ in self.sent if recipient is None or to == recipient]

    def last(self, template: NotificationTemplate) -> Dict[str, Any]:
        return [data for t, _, data in self.sent if t is template][-1]


class Seeder:
    """Inserts and reads rows.

    Without ``db`` each call uses its own short-lived session, so nothing
    keeps the SQLite write lock between HTTP requests.
    """

    def _run(self, db: Optional[Session], work):  # type: ignore[no-untyped-def]
        if db is not None:
            result = work(db)
            db.commit()
            return result
        with SessionLocal() as own:
            result = work(own)
            own.commit()
            return result

    def amenity(self, db: Optional[Session] = None, **fields: Any) -> Amenity:
        values: Dict[str, Any] = {
            "community_id": COMMUNITY,
            "name": "Pool",
            "category": "pool",
            "capacity": 1,
            "slot_duration_minutes": 60,
            "is_active": True,
        }
        values.update(fields)

        def work(session: Session) -> Amenity:
            amenity = Amenity(**values)
            session.add(amenity)
            session.flush()
            return amenity

        return self._run(db, work)

    def booking(
        self,
        amenity: Amenity,
        user_id: str,
        start_time: datetime,
        status: BookingStatus = BookingStatus.CONFIRMED,
        db: Optional[Session] = None,
        **fields: Any,
    ) -> Booking:
        values: Dict[str, Any] = {
            "amenity_id": amenity.id,
            "community_id": amenity.community_id,
            "user_id": user_id,
            "user_email": f"{user_id}@example.com",
            "start_time": start_time,
            "end_time": start_time + timedelta(minutes=amenity.slot_duration_minutes),
            "status": status.value,
            "created_at": datetime.utcnow(),
        }
        values.update(fields)

        def work(session: Session) -> Booking:
            booking = Booking(**values)
            session.add(booking)
            session.flush()
            return booking

        return self._run(db, work)

    def stats(self, user_id: str, db: Optional[Session] = None, **fields: Any) -> UserBookingStats:
        def work(session: Session) -> UserBookingStats:
            stats = UserBookingStats(user_id=user_id, **fields)
            session.add(stats)
            session.flush()
            return stats

        return self._run(db, work)

    def load(self, booking_id: int) -> Booking:
        with SessionLocal() as session:
            return session.get(Booking, booking_id)

    def load_stats(self, user_id: str) -> Optional[UserBookingStats]:
        with SessionLocal() as session:
            return session.scalar(select(UserBookingStats).where(UserBookingStats.user_id == user_id))

    def slot_bookings(self, amenity_id: int, start_time: datetime) -> List[Booking]:
        with SessionLocal() as session:
            stmt = (
                select(Booking)
                .where(Booking.amenity_id == amenity_id, Booking.start_time == start_time)
                .order_by(Booking.id.asc())
            )
            return list(session.scalars(stmt))


def make_identity(
    user_id: str,
    role: RoleEnum = RoleEnum.RESIDENT,
    community_id: str = COMMUNITY,
) -> Identity:
    return Identity(
        user_id=user_id,
        email=f"{user_id}@example.com",
        community_id=community_id,
        role=role,
        name=user_id.title(),
    )


def future_slot(days: int = 2, hour: int = 10) -> datetime:
    base = datetime.utcnow() + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    amenity_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def sent() -> Generator[RecordingSender, None, None]:
    sender = RecordingSender()
    set_sender(sender)
    yield sender
    set_sender(None)


@pytest.fixture()
def seed() -> Seeder:
    return Seeder()


@pytest.fixture()
def identity():
    return make_identity


@pytest.fixture()
def slot():
    return future_slot


@pytest.fixture()
def auth_header():
    def _header(user: Identity) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_identity_token(user)}"}

    return _header


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def amenities_client() -> Generator[TestClient, None, None]:
    with TestClient(amenities_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def cron_client() -> Generator[TestClient, None, None]:
    with TestClient(cron_app) as client:
        yield client


@pytest.fixture()
def cron_headers() -> Dict[str, str]:
    return dict(CRON_HEADERS)
