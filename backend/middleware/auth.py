"""
Caller authentication.

Two kinds of caller reach the gateway:
  - Merchant backends: X-API-Key header, matched against API_KEYS
    (merchant_id:key pairs) → Principal(kind=api_key)
  - Merchant dashboard users: Authorization: Bearer <jwt>, HS256, issued by
    the merchant's identity service with our JWT_SECRET → Principal(kind=user)

A Bearer token wins when both are present. Tokens are only verified here;
issue_access_token() exists for tooling and tests.
"""
import hmac
import logging
from datetime import datetime, timezone, timedelta
from typing import Iterable, Optional

import jwt
from fastapi import Depends, Header

from config import settings
from domain.constants import MERCHANT_PERMISSIONS
from domain.enums import PrincipalKind
from domain.errors import InternalError, PermissionDeniedError, UnauthorizedError
from domain.principal import Principal

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise InternalError("Server auth misconfigured (JWT secret missing).")
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub", "merchant_id"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Access token expired.")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid access token.")


def issue_access_token(
    *,
    user_id: str,
    merchant_id: str,
    permissions: Iterable[str] = MERCHANT_PERMISSIONS,
) -> str:
    if not settings.jwt_secret:
        raise InternalError("Server auth misconfigured (JWT secret missing).")
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": user_id,
        "merchant_id": merchant_id,
        "permissions": sorted(permissions),
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def _principal_for_api_key(api_key: str) -> Optional[Principal]:
    for key, merchant_id in settings.api_key_map.items():
        if hmac.compare_digest(key, api_key):
            return Principal(
                kind=PrincipalKind.API_KEY,
                id=f"key:{merchant_id}",
                merchant_id=merchant_id,
                permissions=MERCHANT_PERMISSIONS,
            )
    return None


async def get_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Principal:
    """Resolve the caller once per request; 401 without valid credentials."""
    token = _parse_bearer_token(authorization)
    if token:
        payload = decode_access_token(token)
        return Principal(
            kind=PrincipalKind.USER,
            id=payload["sub"],
            merchant_id=payload["merchant_id"],
            permissions=frozenset(payload.get("permissions") or ()),
        )

    if x_api_key:
        principal = _principal_for_api_key(x_api_key)
        if principal is None:
            logger.warning("Rejected request with unknown API key")
            raise UnauthorizedError("Invalid API key.")
        return principal

    raise UnauthorizedError(
        "Authentication required. Provide Authorization: Bearer <token> or X-API-Key."
    )


def require_permission(permission: str):
    """
    FastAPI dependency factory: resolve the principal and demand a permission.

    Usage:
        @router.post("/control-numbers")
        async def create(principal: Principal = Depends(require_permission(PERM_CONTROL_NUMBERS_WRITE))):
            ...
    """
    async def _require(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has(permission):
            logger.warning(f"{principal.kind.value} {principal.id} lacks {permission}")
            raise PermissionDeniedError(f"Missing permission: {permission}")
        return principal

    return _require
