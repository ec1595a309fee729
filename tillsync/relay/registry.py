"""Terminal/display registry owned by the relay hub.

Tracks which sockets belong to which terminal and store, and which
display socket is bound to each terminal. Every read-modify-write goes
through the methods here under one asyncio lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..time_utils import utcnow
from .events import Role

logger = logging.getLogger(__name__)


@dataclass
class TerminalSession:
    """An authenticated, joined socket."""

    socket_id: str
    terminal_id: str
    store_id: str
    role: Role
    connection: Any = field(default=None, repr=False, compare=False)
    user_id: str | None = None
    connected_at: datetime = field(default_factory=utcnow)


@dataclass
class CartRoute:
    """Recipients of one cart event, resolved atomically."""

    display: TerminalSession | None
    peers: list[TerminalSession]


class TerminalRegistry:
    """In-memory connection registry.

    - socket id -> session
    - terminal id -> socket ids (the terminal room)
    - store id -> socket ids (the store room)
    - terminal id -> bound display socket id (at most one)
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, TerminalSession] = {}
        self._terminals: dict[str, set[str]] = {}
        self._stores: dict[str, set[str]] = {}
        self._displays: dict[str, str] = {}

    async def register(self, session: TerminalSession) -> None:
        """Join a session to its store room and terminal room."""
        async with self._lock:
            self._sessions[session.socket_id] = session
            self._terminals.setdefault(session.terminal_id, set()).add(session.socket_id)
            self._stores.setdefault(session.store_id, set()).add(session.socket_id)

    async def unregister(self, socket_id: str) -> TerminalSession | None:
        """Remove a socket everywhere it appears.

        Clears any display binding held by this socket (found by socket
        identity, since a display need not say which terminal it served),
        and prunes a terminal left with no sockets. The terminal's own
        display binding survives the prune so a reconnecting terminal
        finds its display still attached.

        Returns:
            The removed session, or None if the socket was unknown.
        """
        async with self._lock:
            session = self._sessions.pop(socket_id, None)
            if session is None:
                return None

            sockets = self._terminals.get(session.terminal_id)
            if sockets is not None:
                sockets.discard(socket_id)
                if not sockets:
                    del self._terminals[session.terminal_id]
                    logger.debug(f"Pruned terminal {session.terminal_id}")

            store_sockets = self._stores.get(session.store_id)
            if store_sockets is not None:
                store_sockets.discard(socket_id)
                if not store_sockets:
                    del self._stores[session.store_id]

            for terminal_id, display_socket in list(self._displays.items()):
                if display_socket == socket_id:
                    del self._displays[terminal_id]
                    logger.info(f"Display {socket_id} unbound from terminal {terminal_id}")

            return session

    async def bind_display(self, terminal_id: str, socket_id: str) -> str | None:
        """Make a socket the sole display for a terminal.

        Unconditionally replaces any previous binding.

        Returns:
            The previously bound socket id, if any.
        """
        async with self._lock:
            previous = self._displays.get(terminal_id)
            self._displays[terminal_id] = socket_id
            return previous

    async def route_cart(self, terminal_id: str, sender_socket_id: str | None) -> CartRoute:
        """Resolve the bound display and peer POS sockets for a terminal.

        Never creates an entry for an unknown terminal.
        """
        async with self._lock:
            display_socket = self._displays.get(terminal_id)
            display = self._sessions.get(display_socket) if display_socket else None

            peers = [
                self._sessions[sid]
                for sid in self._terminals.get(terminal_id, ())
                if sid != sender_socket_id
                and sid in self._sessions
                and self._sessions[sid].role is Role.POS
            ]
            return CartRoute(display=display, peers=peers)

    async def bound_display(self, terminal_id: str) -> TerminalSession | None:
        async with self._lock:
            display_socket = self._displays.get(terminal_id)
            return self._sessions.get(display_socket) if display_socket else None

    async def terminal_sessions(self, terminal_id: str) -> list[TerminalSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._terminals.get(terminal_id, ())]

    async def store_sessions(self, store_id: str) -> list[TerminalSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._stores.get(store_id, ())]

    def get_session(self, socket_id: str) -> TerminalSession | None:
        return self._sessions.get(socket_id)

    def has_terminal(self, terminal_id: str) -> bool:
        return terminal_id in self._terminals

    def list_terminals(self, store_id: str | None = None) -> list[str]:
        """Connected terminal ids, optionally limited to one store."""
        if store_id is None:
            return sorted(self._terminals)
        return sorted(
            {self._sessions[sid].terminal_id for sid in self._stores.get(store_id, ())}
        )

    def get_stats(self) -> dict[str, int]:
        return {
            "connected_clients": len(self._sessions),
            "terminals": len(self._terminals),
            "displays": len(self._displays),
            "stores": len(self._stores),
        }
