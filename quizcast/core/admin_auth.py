"""
Admin authentication for billing and entitlement operations.

Supports:
- Bearer ID token carrying an admin role (preferred)
- X-Admin-Key shared secret (blocked in production)

All admin actions are audited with the resolved actor identity.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Literal, Optional

import jwt
from fastapi import Request

from quizcast.core.config import settings
from quizcast.core.errors import AppError, PermissionError, UnauthenticatedError
from quizcast.core.identity import is_admin_user, verify_jwt_token


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["token", "admin_key"]
    actor_id: str  # user ID or "key:<hash>"
    actor_email: Optional[str] = None


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Returns AdminActor if the X-Admin-Key header matches ADMIN_KEY, else None."""
    expected_key = settings.ADMIN_KEY
    if not expected_key or settings.ENV.lower() in {"prod", "production"}:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="admin_key", actor_id=f"key:{key_hash}")


def verify_admin_token(request: Request) -> Optional[AdminActor]:
    """
    Returns AdminActor for a valid bearer token with the admin role.

    Raises:
        PermissionError: Valid token without the admin role
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    if not token:
        return None

    try:
        claims = verify_jwt_token(token)
    except jwt.PyJWTError:
        return None

    if not is_admin_user(claims):
        raise PermissionError("Admin role required")
    return AdminActor(
        actor_type="token",
        actor_id=claims.get("sub", "unknown"),
        actor_email=claims.get("email"),
    )


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_key(request) or verify_admin_token(request)
    if actor:
        return actor

    if not (settings.ADMIN_KEY or settings.AUTH_JWT_SECRET or settings.AUTH_JWKS_URL or settings.AUTH_ISSUER):
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )
    raise UnauthenticatedError("Invalid or missing admin credentials", code="admin_unauthorized")
