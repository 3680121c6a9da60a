"""End-to-end booking lifecycles through the HTTP services."""
from datetime import datetime, timedelta

from amenity_core.models import BookingStatus, RoleEnum
from amenity_services.cron.sweeps import sweep_expired_confirmations


def create_amenity(client, headers, **overrides):
    payload = {"name": "Tennis Court", "category": "tennis", "capacity": 1, "slot_duration_minutes": 60}
    payload.update(overrides)
    response = client.post("/amenities", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def book(client, headers, amenity_id, start):
    return client.post(
        "/bookings",
        json={
            "amenity_id": amenity_id,
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=1)).isoformat(),
        },
        headers=headers,
    )


def test_cancellation_promotes_and_promoted_user_confirms(
    amenities_client, bookings_client, identity, auth_header, slot, seed, sent
):
    admin = auth_header(identity("manager", role=RoleEnum.ADMIN))
    alice, bob = auth_header(identity("alice")), auth_header(identity("bob"))
    amenity_id = create_amenity(amenities_client, admin)
    start = slot(days=3)

    first = book(bookings_client, alice, amenity_id, start)
    assert first.status_code == 201
    assert first.json()["status"] == "confirmed"
    second = book(bookings_client, bob, amenity_id, start)
    assert second.json()["status"] == "waitlist"
    assert second.json()["position"] == 1
    bob_id = second.json()["booking_id"]

    cancelled = bookings_client.post(f"/bookings/{first.json()['booking_id']}/cancel", headers=alice)
    assert cancelled.status_code == 200
    assert cancelled.json()["waitlist_promoted"] is True
    assert cancelled.json()["promoted_booking_id"] == bob_id

    status = bookings_client.get(f"/bookings/{bob_id}/confirm", headers=bob)
    assert status.json()["booking"]["status"] == "pending_confirmation"
    assert 47 * 3600 < status.json()["time_remaining_seconds"] <= 48 * 3600

    confirmed = bookings_client.post(f"/bookings/{bob_id}/confirm", json={"action": "confirm"}, headers=bob)
    assert confirmed.status_code == 200
    assert confirmed.json()["booking"]["status"] == "confirmed"

    again = bookings_client.post(f"/bookings/{bob_id}/confirm", json={"action": "confirm"}, headers=bob)
    assert again.json()["already_confirmed"] is True

    states = {b.user_id: b.status for b in seed.slot_bookings(amenity_id, start)}
    assert states == {"alice": "cancelled", "bob": "confirmed"}
    assert sent.templates("bob@example.com") == ["booking_waitlisted", "waitlist_promoted", "promotion_confirmed"]


def test_unanswered_promotion_expires_and_next_in_line_is_promoted(
    amenities_client, bookings_client, identity, auth_header, slot, seed, db_session
):
    admin = auth_header(identity("manager", role=RoleEnum.ADMIN))
    alice, bob, carol = (auth_header(identity(name)) for name in ("alice", "bob", "carol"))
    amenity_id = create_amenity(amenities_client, admin)
    start = slot(days=3)

    first = book(bookings_client, alice, amenity_id, start)
    bob_id = book(bookings_client, bob, amenity_id, start).json()["booking_id"]
    carol_booking = book(bookings_client, carol, amenity_id, start).json()
    assert carol_booking["position"] == 2
    bookings_client.post(f"/bookings/{first.json()['booking_id']}/cancel", headers=alice)

    deadline = seed.load(bob_id).confirmation_deadline
    report = sweep_expired_confirmations(db_session, now=deadline + timedelta(minutes=1))
    db_session.close()

    assert (report.transitioned, report.promoted) == (1, 1)
    assert seed.load(bob_id).status == BookingStatus.EXPIRED.value
    carol_row = seed.load(carol_booking["booking_id"])
    assert carol_row.status == BookingStatus.PENDING_CONFIRMATION.value
    assert carol_row.promotion_reason == "expiry"

    late = bookings_client.post(f"/bookings/{bob_id}/confirm", json={"action": "confirm"}, headers=bob)
    assert late.status_code == 409
    assert late.json()["reason"] == "not_pending_confirmation"


def test_late_confirm_over_http_is_gone(bookings_client, identity, auth_header, seed, sent):
    start = datetime.utcnow().replace(microsecond=0) + timedelta(days=3)
    amenity = seed.amenity(capacity=1)
    stale = seed.booking(
        amenity,
        "bob",
        start,
        status=BookingStatus.PENDING_CONFIRMATION,
        waitlist_position=1,
        promoted_at=datetime.utcnow() - timedelta(hours=49),
        confirmation_deadline=datetime.utcnow() - timedelta(hours=1),
    )
    carol = seed.booking(amenity, "carol", start, status=BookingStatus.WAITLIST, waitlist_position=2)

    response = bookings_client.post(
        f"/bookings/{stale.id}/confirm", json={"action": "confirm"}, headers=auth_header(identity("bob"))
    )

    assert response.status_code == 410
    assert response.json()["reason"] == "deadline_passed"
    assert seed.load(stale.id).status == BookingStatus.EXPIRED.value
    assert seed.load(carol.id).status == BookingStatus.PENDING_CONFIRMATION.value
