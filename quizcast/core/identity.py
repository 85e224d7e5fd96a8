"""
ID token verification.

Handles:
- JWT signature verification (HS256 shared secret in dev/tests, RS256 via JWKS in production)
- Issuer/audience validation
- Role extraction for admin access
- Test helpers for deterministic testing (no network)

Testing:
- Use create_test_jwt() to create test tokens
- Override JWKS fetch with set_jwks_provider_for_tests()
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from quizcast.core.config import settings

JWKS_TTL_SECONDS = 3600

# JWKS override (tests) and cache keyed by issuer/jwks_url
_jwks_provider_override: Optional[Callable[[str, str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, tuple] = {}


@dataclass(frozen=True)
class IdentityClaims:
    user_id: str
    email: Optional[str] = None
    claims: Optional[Dict[str, Any]] = None


def set_jwks_provider_for_tests(provider: Optional[Callable[[str, str], Dict[str, Any]]]) -> None:
    """Set or clear JWKS provider override for deterministic testing (no network)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _default_fetch_jwks(issuer: str, jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=settings.STORE_TIMEOUT_SECONDS)
    response.raise_for_status()
    return response.json()


def get_jwks(issuer: str, jwks_url: Optional[str] = None) -> Dict[str, Any]:
    """Fetch JWKS using override (tests) or default fetcher. Cached per issuer/url."""
    resolved_url = jwks_url or f"{issuer.rstrip('/')}/.well-known/jwks.json"
    cache_key = f"{issuer}|{resolved_url}"

    cached = _jwks_cache.get(cache_key)
    if cached and time.time() - cached[0] < JWKS_TTL_SECONDS:
        return cached[1]

    if _jwks_provider_override:
        jwks = _jwks_provider_override(issuer, resolved_url)
    else:
        try:
            jwks = _default_fetch_jwks(issuer, resolved_url)
        except httpx.HTTPError as e:
            raise jwt.PyJWTError(f"JWKS fetch failed: {e}") from e

    _jwks_cache[cache_key] = (time.time(), jwks)
    return jwks


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify an ID token and return its claims.

    Raises jwt.PyJWTError on invalid token.

    Args:
        token: Raw JWT string (without "Bearer " prefix)
    """
    secret = settings.AUTH_JWT_SECRET
    if secret:
        # Symmetric verification (HS256) for development and tests
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    issuer = settings.AUTH_ISSUER
    jwks_url = settings.AUTH_JWKS_URL
    if not issuer and not jwks_url:
        raise jwt.PyJWTError("AUTH_ISSUER or AUTH_JWKS_URL must be configured for RS256 verification")

    jwks = get_jwks(issuer or "https://securetoken.test", jwks_url)

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.AUTH_AUDIENCE,
        issuer=issuer,
        options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.AUTH_AUDIENCE)},
    )


def verify_id_token(token: str) -> IdentityClaims:
    """Verify a token and extract the caller identity. Raises jwt.PyJWTError."""
    claims = verify_jwt_token(token)
    user_id = claims.get("sub") or claims.get("user_id")
    if not user_id:
        raise jwt.InvalidTokenError("No 'sub' claim in token")
    return IdentityClaims(user_id=str(user_id), email=claims.get("email"), claims=claims)


def is_admin_user(claims: Dict[str, Any]) -> bool:
    """
    Check if token claims represent an admin user.

    Accepts a top-level ``role``/``admin`` custom claim or ``public_metadata.role``.
    """
    if claims.get("admin") is True or claims.get("role") == "admin":
        return True
    public_metadata = claims.get("public_metadata", {})
    return isinstance(public_metadata, dict) and public_metadata.get("role") == "admin"


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    sub: str = "test_user_123",
    email: Optional[str] = "test@example.com",
    role: Optional[str] = None,
    exp_minutes: int = 60,
    secret: str = "test-secret-key",
    algorithm: str = "HS256",
    private_key: Optional[str] = None,
    kid: Optional[str] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """
    Create a signed test JWT.
    Supports HS256 (default) and RS256 (for JWKS-based tests).
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": sub,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "iss": issuer or settings.AUTH_ISSUER or "https://securetoken.test",
        "aud": audience or settings.AUTH_AUDIENCE or "test-audience",
    }
    if email:
        payload["email"] = email
    if role:
        payload["role"] = role

    headers = {"kid": kid} if kid else None
    key = private_key if algorithm == "RS256" and private_key else secret
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)
