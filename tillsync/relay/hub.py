"""Realtime relay between point-of-sale terminals and customer displays.

Delivery is at-most-once and fire-and-forget: no acknowledgments, no
retries, no buffering for displays that join late. The durable copy of
every sale travels through the sync gateway; the relay only shortens the
time until the customer sees the cart.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Protocol

from ..time_utils import now_timestamp
from .auth import AuthenticationError, Handshake, RelayAuthenticator
from .events import (
    CartUpdate,
    ClientEvent,
    DisplaySubscribe,
    EventRejected,
    Role,
    ServerEvent,
    TransactionComplete,
    frame,
    parse_client_event,
)
from .registry import TerminalRegistry, TerminalSession

logger = logging.getLogger(__name__)


class RelayConnection(Protocol):
    """Transport for one socket. The FastAPI adapter wraps a WebSocket."""

    async def send_json(self, data: dict[str, Any]) -> None: ...


class RelayHub:
    """Routes cart and transaction events between terminals and displays."""

    def __init__(
        self,
        authenticator: RelayAuthenticator,
        registry: TerminalRegistry | None = None,
        send_timeout: float = 5.0,
    ):
        """Initialize the hub.

        Args:
            authenticator: Verifies connect-time handshakes.
            registry: Connection registry; a fresh one is created if omitted.
            send_timeout: Seconds a single outbound frame may take before it
                is dropped.
        """
        self.authenticator = authenticator
        self.registry = registry or TerminalRegistry()
        self.send_timeout = send_timeout

    # ==================== Connection Lifecycle ====================

    def authenticate(self, handshake: Handshake) -> dict[str, Any]:
        """Check a handshake before the socket joins any room.

        Raises:
            AuthenticationError: If the handshake is rejected.
        """
        try:
            return self.authenticator.authenticate(handshake)
        except AuthenticationError as e:
            logger.warning(
                f"Relay handshake rejected for terminal {handshake.terminal_id} "
                f"store {handshake.store_id}: {e}"
            )
            raise

    async def join(
        self,
        connection: RelayConnection,
        handshake: Handshake,
        claims: dict[str, Any] | None = None,
    ) -> TerminalSession:
        """Register an authenticated socket in its store and terminal rooms."""
        session = TerminalSession(
            socket_id=uuid.uuid4().hex,
            terminal_id=handshake.terminal_id,
            store_id=handshake.store_id,
            role=Role(handshake.role),
            connection=connection,
            user_id=(claims or {}).get("sub"),
        )
        await self.registry.register(session)

        logger.info(
            f"Client connected: {session.socket_id} "
            f"(role={session.role.value}, terminal={session.terminal_id}, store={session.store_id})"
        )
        return session

    async def connect(self, connection: RelayConnection, handshake: Handshake) -> TerminalSession:
        """Authenticate and join in one step."""
        claims = self.authenticate(handshake)
        return await self.join(connection, handshake, claims)

    async def disconnect(self, socket_id: str) -> None:
        session = await self.registry.unregister(socket_id)
        if session:
            logger.info(f"Client disconnected: {socket_id} (terminal={session.terminal_id})")

    # ==================== Inbound Events ====================

    async def handle_message(self, session: TerminalSession, message: Any) -> None:
        """Dispatch one inbound frame from a joined socket.

        Frames outside the accepted union are answered with system:error
        to the sender. Handler failures are logged and contained to this
        connection.
        """
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except ValueError:
                await self._reject(session, EventRejected(None, "Frame is not valid JSON"))
                return

        try:
            event, body = parse_client_event(message, session.role)
        except EventRejected as e:
            await self._reject(session, e)
            return

        try:
            if event is ClientEvent.CART_UPDATE:
                await self._handle_cart_update(session, body)
            elif event is ClientEvent.TRANSACTION_COMPLETE:
                await self._handle_transaction_complete(session, body)
            elif event is ClientEvent.DISPLAY_SUBSCRIBE:
                await self._handle_display_subscribe(session, body)
            elif event is ClientEvent.SYSTEM_PING:
                await self._send(session, ServerEvent.SYSTEM_PONG, {
                    "timestamp": now_timestamp(),
                    "terminalId": session.terminal_id,
                })
        except Exception as e:
            logger.error(
                f"Error handling {event.value} from {session.socket_id}: {e}",
                exc_info=True,
            )

    async def _handle_cart_update(self, session: TerminalSession, cart: CartUpdate) -> None:
        terminal_id = cart.terminal_id or session.terminal_id
        payload = cart.model_dump(mode="json", by_alias=True)
        payload["terminalId"] = terminal_id

        route = await self.registry.route_cart(terminal_id, session.socket_id)

        if route.display is None and not route.peers:
            logger.debug(f"Cart update for terminal {terminal_id} has no recipients, dropped")
            return

        logger.debug(f"Cart update from terminal {terminal_id}")

        if route.display is not None:
            await self._send(
                route.display,
                ServerEvent.CART_UPDATED,
                {**payload, "timestamp": now_timestamp()},
            )

        for peer in route.peers:
            await self._send(peer, ServerEvent.CART_UPDATED, payload)

    async def _handle_transaction_complete(
        self,
        session: TerminalSession,
        transaction: TransactionComplete,
    ) -> None:
        terminal_id = transaction.terminal_id or session.terminal_id
        display = await self.registry.bound_display(terminal_id)

        if display is None:
            logger.debug(f"Transaction complete for terminal {terminal_id} has no display, dropped")
            return

        logger.info(f"Transaction complete from terminal {terminal_id}")
        payload = transaction.model_dump(mode="json", by_alias=True)
        payload["terminalId"] = terminal_id
        await self._send(
            display,
            ServerEvent.TRANSACTION_COMPLETE,
            {**payload, "timestamp": now_timestamp()},
        )

    async def _handle_display_subscribe(
        self,
        session: TerminalSession,
        subscribe: DisplaySubscribe,
    ) -> None:
        previous = await self.registry.bind_display(subscribe.terminal_id, session.socket_id)

        if previous and previous != session.socket_id:
            logger.info(
                f"Display {session.socket_id} replaced {previous} on terminal {subscribe.terminal_id}"
            )
        else:
            logger.info(f"Display {session.socket_id} subscribed to terminal {subscribe.terminal_id}")

        await self._send(session, ServerEvent.DISPLAY_SUBSCRIBED, {
            "terminalId": subscribe.terminal_id,
            "message": "Successfully subscribed to terminal",
        })

    async def _reject(self, session: TerminalSession, rejection: EventRejected) -> None:
        logger.warning(
            f"Rejected frame from {session.socket_id} ({session.role.value}): {rejection.error}"
        )
        await self._send(session, ServerEvent.SYSTEM_ERROR, {
            "event": rejection.event,
            "error": rejection.error,
        })

    # ==================== Outbound ====================

    async def _send(
        self,
        session: TerminalSession,
        event: ServerEvent,
        data: dict[str, Any],
    ) -> bool:
        """Send one frame, swallowing transport errors for that socket only.

        A socket that does not accept the frame within ``send_timeout``
        loses it; the sender is never held up by a stalled receiver.

        Returns:
            True if the frame was handed to the transport.
        """
        if session.connection is None:
            return False
        try:
            await asyncio.wait_for(
                session.connection.send_json(frame(event, data)),
                timeout=self.send_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Dropped {event.value} to {session.socket_id}: "
                f"send timed out after {self.send_timeout}s"
            )
            return False
        except Exception as e:
            logger.debug(f"Dropped {event.value} to {session.socket_id}: {e}")
            return False

    async def broadcast_to_store(self, store_id: str, event: ServerEvent, data: dict[str, Any]) -> int:
        """Send an event to every socket in a store room.

        Returns:
            Number of sockets the frame was handed to.
        """
        sent = 0
        for session in await self.registry.store_sessions(store_id):
            if await self._send(session, event, data):
                sent += 1
        logger.debug(f"Broadcasted {event.value} to store {store_id} ({sent} sockets)")
        return sent

    async def send_to_terminal(self, terminal_id: str, event: ServerEvent, data: dict[str, Any]) -> int:
        """Send an event to every socket in a terminal room."""
        sent = 0
        for session in await self.registry.terminal_sessions(terminal_id):
            if await self._send(session, event, data):
                sent += 1
        logger.debug(f"Sent {event.value} to terminal {terminal_id} ({sent} sockets)")
        return sent

    def get_stats(self) -> dict[str, int]:
        return self.registry.get_stats()
