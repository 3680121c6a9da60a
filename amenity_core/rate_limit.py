"""SlowAPI limiter shared by the amenity services.

Authenticated callers are limited per user so residents behind one gateway
address do not share a budget; anonymous and scheduler calls fall back to
the client address.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .auth import identity_from_token
from .config import get_settings
from .errors import Unauthorized

settings = get_settings()


def caller_key(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            identity = identity_from_token(token)
        except Unauthorized:
            return get_remote_address(request)
        return f"user:{identity.community_id}:{identity.user_id}"
    return get_remote_address(request)


limiter = Limiter(
    key_func=caller_key,
    default_limits=[settings.default_rate_limit],
    enabled=settings.rate_limiting_enabled,
)


def _too_many_requests(_: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": f"Too many requests: {exc.detail}", "reason": "rate_limited"},
    )


def apply_rate_limiter(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _too_many_requests)
