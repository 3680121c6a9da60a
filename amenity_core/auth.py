"""JWT handling for the identity claims issued by the auth provider."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .errors import Unauthorized
from .models import RoleEnum
from .schemas import Identity

settings = get_settings()


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_identity_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(
        {
            "sub": identity.user_id,
            "email": identity.email,
            "community_id": identity.community_id,
            "role": identity.role.value,
            "name": identity.name,
        },
        expires_delta,
    )


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise Unauthorized("Invalid token", reason="invalid_token") from exc


def identity_from_token(token: str) -> Identity:
    payload = decode_token(token)
    user_id = payload.get("sub")
    email = payload.get("email")
    community_id = payload.get("community_id")
    if not user_id or not email:
        raise Unauthorized("Token is missing the user identity", reason="invalid_token")
    if not community_id:
        raise Unauthorized("Token is missing the community", reason="missing_community")
    try:
        role = RoleEnum(payload.get("role") or RoleEnum.RESIDENT.value)
    except ValueError as exc:
        raise Unauthorized("Unknown role in token", reason="invalid_token") from exc
    return Identity(
        user_id=str(user_id),
        email=email,
        community_id=str(community_id),
        role=role,
        name=payload.get("name"),
    )
