"""Bearer-token authentication for the payments API.

Tokens are issued elsewhere; planpay only checks the signature and reads
the user id claim.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from planpay.config import AuthSettings

_logger = logging.getLogger("planpay.api.auth")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, settings: AuthSettings) -> Principal:
    if not settings.jwt_secret:
        raise _unauthenticated("Authentication is not configured")
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        _logger.info("Rejected bearer token: %s", e)
        raise _unauthenticated("Could not validate credentials")
    user_id = claims.get(settings.user_claim)
    if not user_id:
        raise _unauthenticated("Token has no subject")
    return Principal(user_id=str(user_id), claims=claims)


async def require_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise _unauthenticated("Missing bearer token")
    return decode_token(credentials.credentials, request.app.state.settings.auth)


def issue_token(user_id: str, settings: AuthSettings, **claims: Any) -> str:
    """Mint a token for local tooling and tests."""
    payload = {settings.user_claim: user_id, **claims}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
