"""Per-service audit trail of HTTP requests.

Each service writes to ``<log_dir>/<service>.log``. Every response carries an
``X-Request-ID`` so a booking action can be matched with its audit line and
the engine's own log records.
"""
from __future__ import annotations

import logging
import secrets
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request

from .config import get_settings

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"
# Probe traffic would drown out booking activity.
_UNAUDITED_PATHS = {"/health", "/metrics"}


def audit_logger(service_name: str) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / f"{service_name}.log")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = audit_logger(service_name)

    @app.middleware("http")
    async def audit_request(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8)
        started = perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        if request.url.path in _UNAUDITED_PATHS:
            return response

        elapsed_ms = (perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            "rid=%s %s %s -> %s client=%s %.1fms",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            request.client.host if request.client else "-",
            elapsed_ms,
        )
        return response
