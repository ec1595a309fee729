"""Connect-time authentication for relay sockets."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from .events import Role

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """The handshake was rejected; the socket must not join any room."""


@dataclass
class Handshake:
    """Connect-time credentials sent by a terminal or display."""

    token: str | None
    store_id: str | None
    terminal_id: str | None
    role: str = Role.POS.value


def create_relay_token(
    secret: str,
    *,
    store_id: str,
    terminal_id: str,
    user_id: str | None = None,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed token a terminal or display presents at connect time.

    Defaults to a 12 hour lifetime, one trading day.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=12))
    claims: dict[str, Any] = {
        "storeId": store_id,
        "terminalId": terminal_id,
        "exp": expire,
        "type": "relay",
    }
    if user_id:
        claims["sub"] = user_id
    return jwt.encode(claims, secret, algorithm=algorithm)


class RelayAuthenticator:
    """Verifies relay handshakes against a shared JWT secret."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def authenticate(self, handshake: Handshake) -> dict[str, Any]:
        """Validate a handshake.

        Args:
            handshake: Credentials from the connecting socket.

        Returns:
            Decoded token claims.

        Raises:
            AuthenticationError: If any credential is missing or invalid.
        """
        if not handshake.token:
            raise AuthenticationError("Authentication token required")
        if not handshake.store_id:
            raise AuthenticationError("Store ID required")
        if not handshake.terminal_id:
            raise AuthenticationError("Terminal ID required")
        if handshake.role not in {role.value for role in Role}:
            raise AuthenticationError(f"Unknown role: {handshake.role}")

        try:
            claims = jwt.decode(
                handshake.token, self._secret, algorithms=[self._algorithm]
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.PyJWTError as e:
            logger.warning(f"Relay token rejected: {e}")
            raise AuthenticationError("Authentication failed")

        token_store = claims.get("storeId")
        if token_store and token_store != handshake.store_id:
            raise AuthenticationError("Token not valid for this store")

        token_terminal = claims.get("terminalId")
        if token_terminal and token_terminal != handshake.terminal_id:
            raise AuthenticationError("Token not valid for this terminal")

        return claims
