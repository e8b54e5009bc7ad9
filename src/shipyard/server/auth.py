"""API token issuance and request authentication.

A single shared admin password is exchanged for an HS256-signed token;
every other API route requires ``Authorization: Bearer <token>``.
Server-sent-event routes also accept ``?token=`` because browser
EventSource cannot set headers.
"""

import hmac
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from starlette.authentication import AuthCredentials, AuthenticationBackend, SimpleUser
from starlette.authentication import AuthenticationError as StarletteAuthError
from starlette.requests import HTTPConnection

from shipyard.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ADMIN_SUBJECT = "admin"

# Paths reachable without a token
PUBLIC_PATHS = frozenset({"/api/auth/token"})


class TokenService:
    """Signs and verifies API tokens.

    Attributes:
        secret: HMAC secret.
        ttl_seconds: Lifetime of issued tokens.

    """

    def __init__(self, secret: str, ttl_seconds: int) -> None:
        self.secret = secret
        self.ttl_seconds = ttl_seconds

    def issue(self, subject: str = ADMIN_SUBJECT) -> str:
        """Create a signed token for ``subject``."""
        now = datetime.now(UTC)
        claims = {
            "sub": subject,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        """Decode a token.

        Raises:
            AuthenticationError: If the token is expired, malformed or
                signed with another secret.

        """
        try:
            return jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e


def check_password(expected: str | None, supplied: Any) -> None:
    """Compare a supplied password against the configured one.

    Raises:
        AuthenticationError: If no password is configured or it does not match.

    """
    if not expected:
        raise AuthenticationError("Token issuance is disabled (no admin password configured)")
    if not isinstance(supplied, str) or not hmac.compare_digest(
        supplied.encode("utf-8"), expected.encode("utf-8")
    ):
        raise AuthenticationError("Invalid password")


def _is_stream_path(path: str) -> bool:
    return path == "/api/events" or path.endswith("/logs/stream")


class TokenAuthBackend(AuthenticationBackend):
    """Starlette authentication backend for bearer tokens."""

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def authenticate(self, conn: HTTPConnection) -> tuple[AuthCredentials, SimpleUser] | None:
        path = conn.url.path
        if path in PUBLIC_PATHS or not path.startswith("/api/"):
            return None

        token: str | None = None
        header = conn.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            token = value.strip()
        elif _is_stream_path(path):
            token = conn.query_params.get("token")

        if not token:
            raise StarletteAuthError("Missing bearer token")

        try:
            claims = self.tokens.verify(token)
        except AuthenticationError as e:
            logger.debug("Rejected token for %s: %s", path, e)
            raise StarletteAuthError(str(e)) from e

        return AuthCredentials(["authenticated"]), SimpleUser(str(claims.get("sub", ADMIN_SUBJECT)))
