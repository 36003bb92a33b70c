"""Bearer-token identity verification.

The identity provider lives outside the messaging core; it issues HS256 JWTs
carrying ``userId`` and ``role`` claims. This module only verifies them and
extracts an :class:`Identity`. The same verifier backs the HTTP dependency
and the WebSocket handshake, so both surfaces accept exactly the same
credentials.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from jose import JWTError, jwt

from paperchat.config import get_config
from paperchat.errors import AuthenticationFailure

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles allowed to take part in paper conversations.

    Attributes:
        TEACHER: Owner of a paper; sees every message in its room.
        STUDENT: Has attempted a paper; sees own messages and replies to them.
    """
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller extracted from a verified token."""
    user_id: str
    role: Role
    email: Optional[str] = None


class TokenVerifier:
    """Verifies bearer tokens and turns their claims into an Identity."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        """Decode and validate a token.

        Raises:
            AuthenticationFailure: If the token is missing, has a bad
                signature, is expired, or lacks a usable userId/role.
        """
        if not token:
            raise AuthenticationFailure("Authentication error: No token provided")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise AuthenticationFailure("Authentication error: Invalid token") from exc

        user_id = payload.get("userId")
        if not user_id:
            raise AuthenticationFailure("Authentication error: Token has no userId")

        try:
            role = Role(str(payload.get("role", "")).upper())
        except ValueError as exc:
            raise AuthenticationFailure(
                f"Authentication error: Unsupported role {payload.get('role')!r}"
            ) from exc

        return Identity(user_id=str(user_id), role=role, email=payload.get("email"))


def get_token_verifier() -> TokenVerifier:
    """Build a verifier from the configured JWT secrets."""
    jwt_secrets = get_config().secrets.jwt
    return TokenVerifier(jwt_secrets.secret_key, jwt_secrets.algorithm)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
