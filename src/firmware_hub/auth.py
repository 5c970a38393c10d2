"""Authentication for the firmware hub API.

Publishers and operators present a bearer JWT whose ``scope`` claim is either
``publish`` (may upload firmware) or ``admin`` (may also retract releases and
read fleet telemetry). Device-facing endpoints are anonymous.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from firmware_hub.config import Settings

logger = logging.getLogger(__name__)

SCOPE_PUBLISH = "publish"
SCOPE_ADMIN = "admin"

# Scopes each token scope satisfies.
SCOPE_GRANTS = {
    SCOPE_PUBLISH: {SCOPE_PUBLISH},
    SCOPE_ADMIN: {SCOPE_PUBLISH, SCOPE_ADMIN},
}

bearer_scheme = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Token payload data."""

    sub: str
    scope: str
    exp: datetime


def create_access_token(
    subject: str,
    scope: str,
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token.

    Args:
        subject: Who the token is for (user or CI pipeline name)
        scope: "publish" or "admin"
        settings: Provides the signing secret and default lifetime
        expires_delta: Custom lifetime

    Returns:
        Encoded JWT
    """
    if scope not in SCOPE_GRANTS:
        raise ValueError(f"Unknown scope: {scope}")

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "scope": scope,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> TokenData:
    """Decode and validate an access token.

    Raises:
        HTTPException: 401 if the token is expired or invalid
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return TokenData(**payload)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except (jwt.InvalidTokenError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_scope(scope: str) -> Callable:
    """Build a dependency that requires a token granting ``scope``.

    When authentication is disabled in settings every caller is let through.
    """

    async def dependency(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ) -> Optional[TokenData]:
        settings: Settings = request.app.state.settings
        if not settings.auth_enabled:
            return None

        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Bearer"},
            )

        token = decode_token(credentials.credentials, settings)

        if scope not in SCOPE_GRANTS.get(token.scope, set()):
            logger.warning(f"Token for {token.sub} lacks scope {scope}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires {scope} scope",
            )

        request.state.user = token.sub
        return token

    return dependency


require_publisher = require_scope(SCOPE_PUBLISH)
require_admin = require_scope(SCOPE_ADMIN)
