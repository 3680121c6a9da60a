"""Reusable FastAPI dependencies for identity, roles and scheduler access."""
import secrets
from typing import Callable

from fastapi import Depends, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .auth import identity_from_token
from .config import get_settings
from .errors import Forbidden, Unauthorized
from .models import RoleEnum
from .schemas import Identity

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)
cron_secret_header = APIKeyHeader(name="X-Cron-Secret", auto_error=False)


def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Authentication required")
    return identity_from_token(credentials.credentials)


def allow_roles(*roles: RoleEnum) -> Callable[[Identity], Identity]:
    def dependency(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.role not in roles:
            raise Forbidden("Insufficient permissions")
        return identity

    return dependency


require_admin = allow_roles(RoleEnum.ADMIN, RoleEnum.FACILITY_MANAGER)


def require_cron_secret(secret: str | None = Security(cron_secret_header)) -> None:
    if not secret:
        raise Unauthorized("Missing scheduler secret", reason="missing_cron_secret")
    if not secrets.compare_digest(secret, settings.cron_secret):
        raise Unauthorized("Invalid scheduler secret", reason="invalid_cron_secret")
