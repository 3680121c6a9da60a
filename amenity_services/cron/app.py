from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session

from amenity_core.config import get_settings
from amenity_core.database import Base, engine, get_db
from amenity_core.dependencies import require_cron_secret
from amenity_core.errors import apply_error_handlers
from amenity_core.logging_middleware import add_audit_middleware
from amenity_core.rate_limit import apply_rate_limiter, limiter
from amenity_core.schemas import SweepRunResponse

from .sweeps import run_auto_cancel, sweep_reminders, sweep_stale_waitlist

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Cron Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    apply_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "cron")
    Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "cron"}


@app.post("/cron/auto-cancel", response_model=SweepRunResponse, dependencies=[Depends(require_cron_secret)])
@limiter.limit("12/minute")
def auto_cancel(request: Request, db: Session = Depends(get_db)) -> SweepRunResponse:
    now = datetime.utcnow()
    reports = run_auto_cancel(db, now)
    return SweepRunResponse(ran_at=now, reports=[report.to_schema() for report in reports])


@app.post("/cron/send-reminders", response_model=SweepRunResponse, dependencies=[Depends(require_cron_secret)])
@limiter.limit("12/minute")
def send_reminders(request: Request, db: Session = Depends(get_db)) -> SweepRunResponse:
    now = datetime.utcnow()
    return SweepRunResponse(ran_at=now, reports=[sweep_reminders(db, now).to_schema()])


@app.post("/cron/expire-waitlist", response_model=SweepRunResponse, dependencies=[Depends(require_cron_secret)])
@limiter.limit("12/minute")
def expire_waitlist(request: Request, db: Session = Depends(get_db)) -> SweepRunResponse:
    now = datetime.utcnow()
    return SweepRunResponse(ran_at=now, reports=[sweep_stale_waitlist(db, now).to_schema()])
