"""
Bearer token handling.

Tokens are issued by the identity service. This module only decodes them
into an ``Actor``; the claims used are ``sub`` (user id), ``role`` and, for
providers, ``provider_id``.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
import jwt
from jwt import PyJWTError

from .core.config import settings
from .core.enums import ActorRole
from .principal import Actor

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

_USER_ROLES = {ActorRole.CUSTOMER, ActorRole.PROVIDER, ActorRole.ADMIN}


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a JWT access token."""
    payload_raw = jwt.decode(
        token,
        settings.secret_key.get_secret_value(),
        algorithms=[settings.algorithm],
        options={"verify_aud": False},
    )
    return cast(Dict[str, Any], payload_raw)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Used by tests and local tooling; production tokens come from the
    identity service with the same claims.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=12))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key.get_secret_value(), algorithm=settings.algorithm)


def actor_from_claims(claims: Dict[str, Any]) -> Actor:
    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("token is missing a subject")
    try:
        role = ActorRole(str(claims.get("role", "")).lower())
    except ValueError as exc:
        raise ValueError("token carries an unknown role") from exc
    # System identities never authenticate over HTTP.
    if role not in _USER_ROLES:
        raise ValueError("token role is not allowed")
    provider_id = claims.get("provider_id")
    return Actor(id=user_id, role=role, provider_id=provider_id if provider_id else None)


async def get_current_actor(token: Optional[str] = Depends(oauth2_scheme)) -> Actor:
    """
    Dependency resolving the bearer token into an ``Actor``.

    Raises:
        HTTPException: 401 if the token is missing, invalid, or expired
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return actor_from_claims(decode_access_token(token))
    except (PyJWTError, ValueError) as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
