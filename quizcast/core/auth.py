"""
Auth utilities for the QuizCast API.

Verifies the bearer ID token on every metered route and yields the caller identity.
No entitlement store access happens before this succeeds.
"""
import logging

import jwt
from fastapi import Request

from quizcast.core.errors import UnauthenticatedError
from quizcast.core.identity import IdentityClaims, verify_id_token

logger = logging.getLogger(__name__)


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthenticatedError("Missing Authorization bearer token")
    return token.strip()


def get_current_user(request: Request) -> IdentityClaims:
    """
    FastAPI dependency: the verified caller.

    Raises:
        UnauthenticatedError: Missing, expired or invalid token
    """
    token = bearer_token(request)
    try:
        identity = verify_id_token(token)
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.PyJWTError as e:
        logger.debug("Invalid token: %s", e)
        raise UnauthenticatedError("Invalid token")

    request.state.user_id = identity.user_id
    return identity
