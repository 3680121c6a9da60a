import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import select
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.database import Base, engine, get_db
from amenity_core.dependencies import get_current_identity, require_admin
from amenity_core.errors import NotFound, ValidationFailed, apply_error_handlers
from amenity_core.logging_middleware import add_audit_middleware
from amenity_core.models import Amenity
from amenity_core.rate_limit import apply_rate_limiter, limiter
from amenity_core.schemas import AmenityCreate, AmenityRead, AmenityUpdate, Identity
from amenity_services.bookings.capacity import amenity_cache

logger = logging.getLogger(__name__)
settings = get_settings()


def _invalidate_amenity_cache(amenity_id: int) -> None:
    if amenity_cache.invalidate(amenity_id):
        logger.info("amenity=%s configuration evicted from cache", amenity_id)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Amenities Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    apply_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "amenities")
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _check_hours(open_hour: Optional[int], close_hour: Optional[int]) -> None:
    if (open_hour is None) != (close_hour is None):
        raise ValidationFailed("Set both opening and closing hours, or neither", reason="invalid_operating_hours")
    if open_hour is not None and close_hour is not None and close_hour <= open_hour:
        raise ValidationFailed("Closing hour must be after opening hour", reason="invalid_operating_hours")


def _community_amenity(db: Session, identity: Identity, amenity_id: int) -> Amenity:
    amenity = db.get(Amenity, amenity_id)
    if amenity is None or amenity.community_id != identity.community_id:
        raise NotFound("Amenity not found", reason="amenity_not_found")
    return amenity


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "amenities"}


@app.post("/amenities", response_model=AmenityRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def add_amenity(
    request: Request,
    amenity_in: AmenityCreate,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Amenity:
    _check_hours(amenity_in.open_hour, amenity_in.close_hour)
    amenity = Amenity(community_id=identity.community_id, **amenity_in.model_dump())
    db.add(amenity)
    db.commit()
    db.refresh(amenity)
    return amenity


@app.get("/amenities", response_model=List[AmenityRead])
@limiter.limit("60/minute")
def list_amenities(
    request: Request,
    category: Optional[str] = None,
    include_inactive: bool = False,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> List[Amenity]:
    stmt = select(Amenity).where(Amenity.community_id == identity.community_id)
    if not include_inactive:
        stmt = stmt.where(Amenity.is_active.is_(True))
    if category:
        stmt = stmt.where(Amenity.category == category)
    return list(db.scalars(stmt.order_by(Amenity.name.asc())))


@app.get("/amenities/{amenity_id}", response_model=AmenityRead)
@limiter.limit("60/minute")
def get_amenity(
    request: Request,
    amenity_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Amenity:
    return _community_amenity(db, identity, amenity_id)


@app.put("/amenities/{amenity_id}", response_model=AmenityRead)
@limiter.limit("15/minute")
def update_amenity(
    request: Request,
    amenity_id: int,
    amenity_update: AmenityUpdate,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Amenity:
    amenity = _community_amenity(db, identity, amenity_id)
    update_data = amenity_update.model_dump(exclude_unset=True)
    _check_hours(update_data.get("open_hour", amenity.open_hour), update_data.get("close_hour", amenity.close_hour))
    for key, value in update_data.items():
        setattr(amenity, key, value)
    db.commit()
    db.refresh(amenity)
    _invalidate_amenity_cache(amenity.id)
    return amenity
