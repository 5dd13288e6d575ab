"""docintake_shared.auth — Resolve the uploader behind an intake request.

Browser calls carry the Cognito ID token in the ``docintake_id_token`` cookie
(Cookie header or the API Gateway v2 ``cookies`` array). Trusted tooling sends
one of ``DOCINTAKE_INTERNAL_API_KEYS`` in ``X-Docintake-Internal-Key`` and names
the uploader it acts for in the request body.

Environment variables:
    COGNITO_USER_POOL_ID        e.g. eu-west-1_AbCdEf123
    COGNITO_CLIENT_ID           app client id of the intake web app
    DOCINTAKE_INTERNAL_API_KEYS comma-separated keys (active + rollover)
"""

from __future__ import annotations

import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote

import jwt

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "docintake_id_token"
INTERNAL_KEY_HEADER = "x-docintake-internal-key"
INTERNAL_IDENTITY = "internal-key"

COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")
INTERNAL_API_KEYS: Tuple[str, ...] = tuple(
    key.strip()
    for key in os.environ.get("DOCINTAKE_INTERNAL_API_KEYS", "").split(",")
    if key.strip()
)
JWKS_TTL_SECONDS = 3600

_jwk_clients: Dict[str, jwt.PyJWKClient] = {}

ErrorFn = Callable[[int, str], Dict[str, Any]]


@dataclass(frozen=True)
class Caller:
    """Authenticated principal of one request.

    ``identity`` is the Cognito email, else the subject; it becomes the
    ``tmail`` tag and the concat person tag.
    """

    identity: str
    internal: bool = False
    claims: Mapping[str, Any] = field(default_factory=dict)

    def uploader_for(self, body: Mapping[str, Any]) -> str:
        # Internal tooling uploads on behalf of the user named in the body.
        if self.internal:
            return str(body.get("uploader") or "").strip()
        return self.identity


def _issuer() -> str:
    region = COGNITO_USER_POOL_ID.split("_")[0]
    return f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}"


def _jwk_client() -> jwt.PyJWKClient:
    if not COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")
    issuer = _issuer()
    client = _jwk_clients.get(issuer)
    if client is None:
        client = jwt.PyJWKClient(
            f"{issuer}/.well-known/jwks.json",
            cache_jwk_set=True,
            lifespan=JWKS_TTL_SECONDS,
        )
        _jwk_clients[issuer] = client
    return client


def _cookies(event: Dict[str, Any]) -> Dict[str, str]:
    headers = event.get("headers") or {}
    parts = (headers.get("cookie") or headers.get("Cookie") or "").split(";")
    extra = event.get("cookies") or []
    if isinstance(extra, str):
        extra = [extra]
    parts.extend(p for p in extra if isinstance(p, str))

    out: Dict[str, str] = {}
    for part in parts:
        name, sep, value = part.strip().partition("=")
        if sep and name and name not in out:
            out[name] = unquote(value)
    return out


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    return _cookies(event).get(TOKEN_COOKIE) or None


def _decode_id_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito ID token (RS256 signature, audience, issuer, expiry).

    Raises ValueError with a user-facing message on any failure.
    """
    try:
        signing_key = _jwk_client().get_signing_key_from_jwt(token)
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID,
            issuer=_issuer(),
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Token has expired. Please sign in again.") from exc
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc
    if claims.get("token_use") != "id":
        raise ValueError("An ID token is required.")
    return claims


def _internal_caller(event: Dict[str, Any]) -> Optional[Caller]:
    if not INTERNAL_API_KEYS:
        return None
    headers = event.get("headers") or {}
    presented = headers.get(INTERNAL_KEY_HEADER) or headers.get("X-Docintake-Internal-Key") or ""
    if not presented:
        return None
    presented_bytes = presented.encode("utf-8")
    if any(hmac.compare_digest(presented_bytes, key.encode("utf-8")) for key in INTERNAL_API_KEYS):
        return Caller(identity=INTERNAL_IDENTITY, internal=True)
    return None


def _authenticate(event: Dict[str, Any], *, error_fn: ErrorFn) -> Tuple[Optional[Caller], Optional[Dict[str, Any]]]:
    """Return ``(caller, None)`` or ``(None, error_fn(401, message))``."""
    caller = _internal_caller(event)
    if caller is not None:
        return caller, None

    token = _extract_token(event)
    if not token:
        logger.warning("auth: no %s cookie found", TOKEN_COOKIE)
        return None, error_fn(401, "Authentication required. Please sign in.")

    try:
        claims = _decode_id_token(token)
    except ValueError as exc:
        logger.warning("auth failed: %s", exc)
        return None, error_fn(401, str(exc))

    identity = str(claims.get("email") or claims.get("sub") or "").strip()
    return Caller(identity=identity, claims=claims), None
