"""FastAPI application exposing the sync gateway and the realtime relay."""

import logging
import secrets
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ..config import Config
from ..relay.auth import AuthenticationError, Handshake, RelayAuthenticator
from ..relay.hub import RelayHub
from ..sync.schemas import PullRequest, PullResponse, PushRequest, PushResponse
from ..time_utils import now_timestamp
from .gateway import SyncGateway
from .shared_store import SharedStore

logger = logging.getLogger(__name__)

# WebSocket close code for a rejected handshake (policy violation)
WS_POLICY_VIOLATION = 1008


def create_app(
    config: Config,
    store: SharedStore | None = None,
    hub: RelayHub | None = None,
) -> FastAPI:
    """Create the FastAPI gateway application.

    Args:
        config: Application configuration.
        store: Optional SharedStore; opened from config.server.db_path if omitted.
        hub: Optional RelayHub; built from config.relay if omitted.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="tillsync",
        description="Sync gateway and terminal/display relay for point-of-sale terminals",
        version="0.1.0",
    )

    if store is None:
        store = SharedStore(config.server.db_path)
        store.connect()

    if hub is None:
        hub = RelayHub(
            RelayAuthenticator(config.relay.jwt_secret, config.relay.jwt_algorithm),
            send_timeout=config.relay.send_timeout_seconds,
        )

    gateway = SyncGateway(store)

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.gateway = gateway
    app.state.hub = hub

    def require_api_key(
        x_api_key: str | None = Header(default=None),
        authorization: str | None = Header(default=None),
    ) -> None:
        """Authorization gate for the HTTP sync endpoints."""
        expected = config.server.api_key
        if not expected:
            return

        presented = x_api_key
        if not presented and authorization and authorization.lower().startswith("bearer "):
            presented = authorization[7:].strip()

        if not presented:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not secrets.compare_digest(presented, expected):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key",
            )

    # ==================== Sync Routes ====================

    @app.post(
        "/api/sync/push",
        response_model=PushResponse,
        response_model_by_alias=True,
        dependencies=[Depends(require_api_key)],
    )
    def sync_push(request: PushRequest) -> PushResponse:
        """Apply a batch of local changes from a terminal."""
        return gateway.push(request)

    @app.post(
        "/api/sync/pull",
        response_model=PullResponse,
        response_model_by_alias=True,
        dependencies=[Depends(require_api_key)],
    )
    def sync_pull(request: PullRequest) -> PullResponse:
        """Return rows changed since the terminal's watermark."""
        return gateway.pull(request)

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check used by terminals to detect connectivity.

        Always returns 200 OK while the process is serving.
        """
        return {
            "status": "ok",
            "timestamp": now_timestamp(),
        }

    @app.get("/api/ws/stats", dependencies=[Depends(require_api_key)])
    async def ws_stats() -> dict[str, Any]:
        """Relay connection counts."""
        return {
            "timestamp": now_timestamp(),
            **hub.get_stats(),
        }

    # ==================== Relay ====================

    @app.websocket("/ws")
    async def relay_socket(
        websocket: WebSocket,
        token: str | None = Query(default=None),
        store_id: str | None = Query(default=None, alias="storeId"),
        terminal_id: str | None = Query(default=None, alias="terminalId"),
        role: str = Query(default="pos"),
    ):
        handshake = Handshake(
            token=token,
            store_id=store_id,
            terminal_id=terminal_id,
            role=role,
        )

        try:
            claims = hub.authenticate(handshake)
        except AuthenticationError as e:
            await websocket.close(code=WS_POLICY_VIOLATION, reason=str(e))
            return

        await websocket.accept()
        session = await hub.join(websocket, handshake, claims)

        try:
            while True:
                message = await websocket.receive_text()
                await hub.handle_message(session, message)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Relay socket {session.socket_id} failed: {e}", exc_info=True)
        finally:
            await hub.disconnect(session.socket_id)

    return app
