from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.database import Base, engine, get_db
from amenity_core.dependencies import get_current_identity, require_admin
from amenity_core.errors import NotFound, apply_error_handlers
from amenity_core.logging_middleware import add_audit_middleware
from amenity_core.models import Booking, BookingStatus
from amenity_core.rate_limit import apply_rate_limiter, limiter
from amenity_core.schemas import (
    AdminWaitlistResponse,
    AdmissionResponse,
    BookingCreate,
    BookingRead,
    CancelResponse,
    CheckInRequest,
    ConfirmActionRequest,
    ConfirmationStatusResponse,
    EligibilityRead,
    Identity,
    PromoteWaitlistRequest,
    PromotionResponse,
    WaitlistEntry,
    WaitlistResponse,
    to_naive_utc,
)

from . import confirmation
from .admission import admit
from .capacity import get_amenity
from .eligibility import check_eligibility
from .promotion import PromotionReason, promote_open_seats, waitlist_for_slot

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    apply_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.post("/bookings", response_model=AdmissionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> AdmissionResponse:
    result = admit(db, identity, booking_in)
    return AdmissionResponse(
        status=result.status,
        booking_id=result.booking.id,
        position=result.position,
        capacity=result.capacity,
        message=result.message,
        booking=BookingRead.model_validate(result.booking),
        eligibility=result.eligibility.to_schema(),
    )


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("60/minute")
def my_bookings(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(Booking.user_id == identity.user_id, Booking.community_id == identity.community_id)
        .order_by(Booking.start_time.desc())
    )
    return list(db.scalars(stmt))


@app.get("/bookings/eligibility", response_model=EligibilityRead)
@limiter.limit("60/minute")
def eligibility(
    request: Request,
    amenity_id: int = Query(...),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> EligibilityRead:
    amenity = get_amenity(db, amenity_id)
    if amenity.community_id != identity.community_id:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    return check_eligibility(db, identity.user_id, amenity.category).to_schema()


@app.get("/bookings/waitlist", response_model=WaitlistResponse)
@limiter.limit("60/minute")
def slot_waitlist(
    request: Request,
    amenity_id: int = Query(...),
    start_time: datetime = Query(...),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> WaitlistResponse:
    entries = waitlist_for_slot(db, identity.community_id, amenity_id, to_naive_utc(start_time))
    return WaitlistResponse(
        count=len(entries),
        waitlist=[WaitlistEntry.model_validate(entry) for entry in entries],
    )


@app.post("/bookings/promote-waitlist", response_model=PromotionResponse)
@limiter.limit("10/minute")
def promote_waitlist(
    request: Request,
    payload: PromoteWaitlistRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> PromotionResponse:
    amenity = get_amenity(db, payload.amenity_id)
    if amenity.community_id != identity.community_id:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    window = timedelta(minutes=payload.window_minutes) if payload.window_minutes else None
    batch = promote_open_seats(db, payload.amenity_id, payload.start_time, PromotionReason(payload.reason), window=window)
    promoted = [BookingRead.model_validate(booking) for booking in batch.promoted]
    return PromotionResponse(
        promoted=bool(promoted),
        reason="promoted" if promoted else batch.results[-1].reason,
        booking=promoted[0] if promoted else None,
        promoted_bookings=promoted,
    )


@app.post("/bookings/check-in", response_model=BookingRead)
@limiter.limit("30/minute")
def check_in(
    request: Request,
    payload: CheckInRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Booking:
    return confirmation.check_in(db, identity, payload.qr_id)


@app.post("/bookings/{booking_id}/cancel", response_model=CancelResponse)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> CancelResponse:
    outcome = confirmation.cancel(db, identity, booking_id)
    promoted = outcome.promotion.booking if outcome.promotion and outcome.promotion.promoted else None
    message = "Booking cancelled"
    if promoted is not None:
        message += "; the next person on the waitlist has been offered the spot"
    return CancelResponse(
        booking=BookingRead.model_validate(outcome.booking),
        waitlist_promoted=promoted is not None,
        promoted_booking_id=promoted.id if promoted is not None else None,
        message=message,
    )


@app.get("/bookings/{booking_id}/confirm", response_model=ConfirmationStatusResponse)
@limiter.limit("60/minute")
def confirmation_status(
    request: Request,
    booking_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ConfirmationStatusResponse:
    view = confirmation.confirmation_status(db, identity, booking_id)
    return ConfirmationStatusResponse(
        booking=BookingRead.model_validate(view.booking),
        time_remaining_seconds=view.time_remaining_seconds,
        deadline_passed=view.deadline_passed,
    )


@app.post("/bookings/{booking_id}/confirm", response_model=ConfirmationStatusResponse)
@limiter.limit("20/minute")
def confirm_or_decline(
    request: Request,
    booking_id: int,
    payload: ConfirmActionRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ConfirmationStatusResponse:
    if payload.action == "decline":
        outcome = confirmation.decline(db, identity, booking_id)
        return ConfirmationStatusResponse(
            booking=BookingRead.model_validate(outcome.booking),
            message="Booking declined. The spot has been offered to the next person in line.",
        )

    view = confirmation.confirm(db, identity, booking_id)
    return ConfirmationStatusResponse(
        booking=BookingRead.model_validate(view.booking),
        already_confirmed=view.already_confirmed,
        message="Booking already confirmed" if view.already_confirmed else "Booking confirmed",
    )


@app.get("/admin/waitlist", response_model=AdminWaitlistResponse)
@limiter.limit("30/minute")
def admin_waitlist(
    request: Request,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AdminWaitlistResponse:
    now = datetime.utcnow()
    entries = list(
        db.scalars(
            select(Booking)
            .where(
                Booking.community_id == identity.community_id,
                Booking.status == BookingStatus.WAITLIST.value,
                Booking.end_time > now,
            )
            .order_by(Booking.start_time.asc(), Booking.waitlist_position.asc(), Booking.id.asc())
        )
    )
    by_amenity: dict[str, int] = {}
    for entry in entries:
        key = str(entry.amenity_id)
        by_amenity[key] = by_amenity.get(key, 0) + 1

    recent_promotions = db.scalar(
        select(func.count(Booking.id)).where(
            Booking.community_id == identity.community_id,
            Booking.promoted_at.is_not(None),
            Booking.promoted_at >= now - timedelta(days=1),
        )
    )
    return AdminWaitlistResponse(
        count=len(entries),
        waitlist=[WaitlistEntry.model_validate(entry) for entry in entries],
        by_amenity=by_amenity,
        recent_promotions=recent_promotions or 0,
    )
