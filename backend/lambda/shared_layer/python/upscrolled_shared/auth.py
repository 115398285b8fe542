"""upscrolled_shared.auth — Caller identity resolution for upscrolled-lite Lambdas.

Routes are deployed behind the API Gateway HTTP API Cognito JWT authorizer, so
the normal path reads the already-validated claims from
`requestContext.authorizer.jwt.claims`. When a request reaches the function
without authorizer claims (direct invoke, local runs) a
`Authorization: Bearer <id token>` header is validated against the Cognito
User Pool JWKS (RS256).

Unauthenticated traffic is an expected outcome, not an exception:
`_authenticate` returns `(claims, None)` or `(None, error_response)`.

Requires environment variables:
    COGNITO_USER_POOL_ID   — e.g. us-east-1_AbCdEf123
    COGNITO_CLIENT_ID      — app client id used as the token audience
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.request
from typing import Any, Callable, Dict, Optional, Tuple

import jwt
from jwt.algorithms import RSAAlgorithm

from upscrolled_shared.http_utils import _error, _header

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cognito user pool
# ---------------------------------------------------------------------------

COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")

# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _authorizer_claims(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Claims placed on the event by the API Gateway JWT authorizer."""
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = (authorizer.get("jwt") or {}).get("claims")
    if isinstance(claims, dict) and claims:
        return claims
    return None


def _extract_bearer(event: Dict[str, Any]) -> Optional[str]:
    value = _header(event, "authorization").strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _issuer() -> str:
    region = COGNITO_USER_POOL_ID.split("_", 1)[0]
    return f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}"


def _get_jwks() -> Dict[str, Any]:
    """kid -> RSA public key for the user pool, refreshed every _JWKS_TTL seconds."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and now - _jwks_fetched_at < _JWKS_TTL:
        return _jwks_cache
    if not COGNITO_USER_POOL_ID:
        raise ValueError("Sign-in is not configured for this API.")

    with urllib.request.urlopen(f"{_issuer()}/.well-known/jwks.json", timeout=5) as resp:
        document = json.loads(resp.read())

    _jwks_cache = {
        jwk["kid"]: RSAAlgorithm.from_jwk(json.dumps(jwk))
        for jwk in document.get("keys", [])
        if jwk.get("kid")
    }
    _jwks_fetched_at = now
    return _jwks_cache


def _signing_key(token: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.PyJWTError as exc:
        raise ValueError("Malformed token.") from exc
    try:
        keys = _get_jwks()
    except OSError as exc:
        logger.error("Cognito JWKS fetch failed: %s", exc)
        raise ValueError("Unable to validate token at this time.") from exc
    key = keys.get(kid)
    if key is None:
        raise ValueError("Token was not issued by this user pool.")
    return key


def _verify_token(token: str) -> Dict[str, Any]:
    """Validate a Cognito id token and return its claims.

    Raises ValueError with a caller-safe message on any failure.
    """
    key = _signing_key(token)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID or None,
            issuer=_issuer(),
            options={"require": ["exp", "sub"], "verify_aud": bool(COGNITO_CLIENT_ID)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Token has expired. Please sign in again.") from exc
    except (jwt.InvalidAudienceError, jwt.InvalidIssuerError) as exc:
        raise ValueError("Token was not issued for this application.") from exc
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token: {exc}") from exc
    if claims.get("token_use", "id") != "id":
        raise ValueError("An id token is required.")
    return claims


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[Callable[..., Dict[str, Any]]] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Resolve the caller identity.

    Returns (claims, None) on success or (None, error_response) on failure.
    Successful claims always carry a non-empty ``sub``.

    Args:
        event: API Gateway event dict.
        error_fn: Optional callable(status_code, message) -> response dict.
    """
    if error_fn is None:
        error_fn = _error

    claims = _authorizer_claims(event)
    if claims is None:
        token = _extract_bearer(event)
        if not token:
            return None, error_fn(401, "Authentication required. Please sign in.")
        try:
            claims = _verify_token(token)
        except ValueError as exc:
            return None, error_fn(401, str(exc))

    if not str(claims.get("sub") or "").strip():
        return None, error_fn(401, "Token is missing a subject claim.")
    return claims, None


def _subject(claims: Dict[str, Any]) -> str:
    """Stable caller identity (Cognito ``sub``)."""
    return str(claims["sub"]).strip()
