"""Realtime relay pairing point-of-sale terminals with customer displays."""

from .auth import AuthenticationError, Handshake, RelayAuthenticator, create_relay_token
from .hub import RelayHub
from .registry import TerminalRegistry, TerminalSession

__all__ = [
    "AuthenticationError",
    "Handshake",
    "RelayAuthenticator",
    "RelayHub",
    "TerminalRegistry",
    "TerminalSession",
    "create_relay_token",
]
