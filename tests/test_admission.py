"""Admission: confirm while the slot has room, otherwise waitlist."""
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from amenity_core.database import SessionLocal
from amenity_core.errors import Forbidden, InvalidState, NotFound, ValidationFailed
from amenity_core.models import BookingStatus, UserBookingStats
from amenity_core.schemas import BookingCreate
from amenity_services.bookings import eligibility
from amenity_services.bookings.admission import admit
from amenity_services.bookings.notifications import NotificationTemplate

NOW = datetime(2030, 6, 1, 8, 0)
START = datetime(2030, 6, 2, 10, 0)


def request_for(amenity, start=START, minutes=60):
    return BookingCreate(amenity_id=amenity.id, start_time=start, end_time=start + timedelta(minutes=minutes))


class TestAdmission:
    """Test the admission decision."""

    def test_confirms_until_capacity_then_waitlists(self, db_session, seed, identity, sent):
        """Test capacity two confirms two and queues the rest in order."""
        amenity = seed.amenity(capacity=2)

        results = [admit(db_session, identity(f"user{i}"), request_for(amenity), now=NOW) for i in range(4)]

        assert [r.status for r in results] == ["confirmed", "confirmed", "waitlist", "waitlist"]
        assert [r.booking.waitlist_position for r in results] == [None, None, 1, 2]
        assert results[2].message == "Added to waitlist (position #1)"
        assert results[0].capacity == 2
        assert sent.templates() == ["booking_confirmed", "booking_confirmed", "booking_waitlisted", "booking_waitlisted"]
        assert sent.last(NotificationTemplate.BOOKING_CONFIRMED)["qr_id"] == results[1].booking.qr_id

    def test_capacity_defaults_to_one(self, db_session, seed, identity):
        """Test an amenity without capacity takes a single booking."""
        amenity = seed.amenity(capacity=None)

        first = admit(db_session, identity("alice"), request_for(amenity), now=NOW)
        second = admit(db_session, identity("bob"), request_for(amenity), now=NOW)

        assert first.status == BookingStatus.CONFIRMED.value
        assert second.status == BookingStatus.WAITLIST.value

    def test_pending_confirmation_holds_a_seat(self, db_session, seed, identity):
        """Test a promoted entrant still counts against capacity."""
        amenity = seed.amenity(capacity=1)
        seed.booking(
            amenity,
            "alice",
            START,
            status=BookingStatus.PENDING_CONFIRMATION,
            confirmation_deadline=NOW + timedelta(hours=48),
        )

        result = admit(db_session, identity("bob"), request_for(amenity), now=NOW)

        assert result.status == BookingStatus.WAITLIST.value

    def test_waitlist_position_follows_highest_active(self, db_session, seed, identity):
        """Test positions keep increasing past gaps left by promotions."""
        amenity = seed.amenity(capacity=1)
        seed.booking(amenity, "alice", START)
        seed.booking(amenity, "bob", START, status=BookingStatus.WAITLIST, waitlist_position=1)
        seed.booking(amenity, "carol", START, status=BookingStatus.WAITLIST, waitlist_position=3)

        result = admit(db_session, identity("dave"), request_for(amenity), now=NOW)

        assert result.position == 4

    def test_duplicate_booking_rejected(self, db_session, seed, identity):
        """Test one user cannot hold two active bookings for a slot."""
        amenity = seed.amenity(capacity=3)
        admit(db_session, identity("alice"), request_for(amenity), now=NOW)

        with pytest.raises(InvalidState) as exc_info:
            admit(db_session, identity("alice"), request_for(amenity), now=NOW)

        assert exc_info.value.reason == "duplicate_booking"

    def test_suspended_user_rejected(self, db_session, seed, identity):
        """Test suspended users never reach the slot."""
        amenity = seed.amenity()
        seed.stats("alice", no_show_count=3, suspended_until=NOW + timedelta(days=10))

        with pytest.raises(Forbidden) as exc_info:
            admit(db_session, identity("alice"), request_for(amenity), now=NOW)

        assert exc_info.value.reason == "account_suspended"
        assert "Account suspended until 2030-06-11 due to 3 no-shows" in exc_info.value.message

    def test_deposit_snapshot_taken(self, db_session, seed, identity):
        """Test users with many no-shows book with a deposit."""
        amenity = seed.amenity(category="clubhouse")
        seed.stats("alice", no_show_count=3, suspended_until=NOW - timedelta(days=1))

        result = admit(db_session, identity("alice"), request_for(amenity), now=NOW)

        assert result.booking.deposit_required is True
        assert result.booking.deposit_amount == 100
        assert result.eligibility.requires_deposit is True

    def test_notification_failure_does_not_undo_booking(self, db_session, seed, identity, sent):
        """Test a broken notifier still leaves the booking in place."""
        amenity = seed.amenity()
        sent.fail = True

        result = admit(db_session, identity("alice"), request_for(amenity), now=NOW)
        db_session.close()

        assert sent.templates() == ["booking_confirmed"]
        assert seed.load(result.booking.id).status == BookingStatus.CONFIRMED.value


class TestAdmissionValidation:
    """Test requests that never reach the slot."""

    def test_end_before_start(self, db_session, seed, identity):
        amenity = seed.amenity()
        request = BookingCreate(amenity_id=amenity.id, start_time=START, end_time=START - timedelta(hours=1))

        with pytest.raises(ValidationFailed) as exc_info:
            admit(db_session, identity("alice"), request, now=NOW)

        assert exc_info.value.reason == "invalid_time_range"

    def test_past_slot(self, db_session, seed, identity):
        amenity = seed.amenity()

        with pytest.raises(ValidationFailed) as exc_info:
            admit(db_session, identity("alice"), request_for(amenity, start=NOW - timedelta(hours=1)), now=NOW)

        assert exc_info.value.reason == "slot_in_past"

    def test_slot_width_must_match(self, db_session, seed, identity):
        amenity = seed.amenity(slot_duration_minutes=60)

        with pytest.raises(ValidationFailed) as exc_info:
            admit(db_session, identity("alice"), request_for(amenity, minutes=90), now=NOW)

        assert exc_info.value.reason == "invalid_slot_length"

    def test_outside_operating_hours(self, db_session, seed, identity):
        amenity = seed.amenity(open_hour=8, close_hour=10)

        with pytest.raises(ValidationFailed) as exc_info:
            admit(db_session, identity("alice"), request_for(amenity), now=NOW)

        assert exc_info.value.reason == "outside_operating_hours"

    def test_amenity_of_other_community_is_not_found(self, db_session, seed, identity):
        amenity = seed.amenity(community_id="elsewhere")

        with pytest.raises(NotFound):
            admit(db_session, identity("alice"), request_for(amenity), now=NOW)

    def test_inactive_amenity_is_not_found(self, db_session, seed, identity):
        amenity = seed.amenity(is_active=False)

        with pytest.raises(NotFound):
            admit(db_session, identity("alice"), request_for(amenity), now=NOW)


class TestConcurrentAdmission:
    """Test parallel requests for the last seats."""

    def test_parallel_requests_never_overbook(self, seed, identity):
        """Test eight simultaneous requests for two seats."""
        amenity = seed.amenity(capacity=2)
        results, errors = [], []
        barrier = threading.Barrier(8)

        def book(user_id):
            db = SessionLocal()
            try:
                barrier.wait()
                results.append(admit(db, identity(user_id), request_for(amenity), now=NOW))
            except Exception as exc:  # collected and asserted below
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=book, args=(f"user{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        bookings = seed.slot_bookings(amenity.id, START)
        confirmed = [b for b in bookings if b.status == BookingStatus.CONFIRMED.value]
        waiting = [b for b in bookings if b.status == BookingStatus.WAITLIST.value]
        assert len(confirmed) == 2
        assert len(waiting) == 6
        assert sorted(b.waitlist_position for b in waiting) == [1, 2, 3, 4, 5, 6]

    def test_first_requests_from_one_user_share_a_stats_row(self, seed, identity):
        """Test two first-time requests from one user for different slots."""
        pool = seed.amenity(capacity=1)
        gym = seed.amenity(name="Gym", category="gym", capacity=1)
        results, errors = [], []
        barrier = threading.Barrier(2)

        def book(amenity):
            db = SessionLocal()
            try:
                barrier.wait()
                results.append(admit(db, identity("newcomer"), request_for(amenity), now=NOW))
            except Exception as exc:  # collected and asserted below
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=book, args=(amenity,)) for amenity in (pool, gym)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert [r.status for r in results] == [BookingStatus.CONFIRMED.value] * 2
        with SessionLocal() as db:
            rows = db.scalars(select(UserBookingStats).where(UserBookingStats.user_id == "newcomer")).all()
        assert len(rows) == 1

    def test_stats_row_created_by_a_racing_request_is_reused(self, db_session, seed, identity, monkeypatch):
        """Test a user whose stats row appears between lookup and insert is admitted."""
        amenity = seed.amenity(capacity=1)
        existing = seed.stats("newcomer", cancellation_count=2)
        real_find = eligibility._find_stats
        lookups = []

        def misses_first_lookup(db, user_id):
            lookups.append(user_id)
            if len(lookups) == 1:
                return None
            return real_find(db, user_id)

        monkeypatch.setattr(eligibility, "_find_stats", misses_first_lookup)

        result = admit(db_session, identity("newcomer"), request_for(amenity), now=NOW)

        assert result.status == BookingStatus.CONFIRMED.value
        assert len(lookups) == 2
        db_session.close()
        stats = seed.load_stats("newcomer")
        assert stats.id == existing.id
        assert stats.cancellation_count == 2
