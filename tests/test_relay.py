"""Tests for the realtime relay: auth, event parsing, registry and hub routing."""

import asyncio
import json
from datetime import timedelta

import jwt
import pytest

from tillsync.relay.auth import (
    AuthenticationError,
    Handshake,
    RelayAuthenticator,
    create_relay_token,
)
from tillsync.relay.events import (
    CartUpdate,
    ClientEvent,
    EventRejected,
    Role,
    ServerEvent,
    frame,
    parse_client_event,
)
from tillsync.relay.hub import RelayHub
from tillsync.relay.registry import TerminalRegistry, TerminalSession

SECRET = "test-secret"
STORE_ID = "store-1"

CART = {
    "items": [{"productId": "p1", "productName": "Latte", "quantity": 2, "unitPrice": 4.5}],
    "subtotal": 9.0,
    "tax": 0.9,
    "discount": 0,
    "total": 9.9,
}


class FakeConnection:
    """Records frames sent to one socket."""

    def __init__(self, fail: bool = False, stall: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self.stall = stall

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        if self.stall:
            await asyncio.Event().wait()
        self.sent.append(data)

    def events(self) -> list[str]:
        return [message["event"] for message in self.sent]


@pytest.fixture
def hub():
    return RelayHub(RelayAuthenticator(SECRET))


def handshake(terminal_id: str, role: str = "pos", store_id: str = STORE_ID) -> Handshake:
    token = create_relay_token(SECRET, store_id=store_id, terminal_id=terminal_id)
    return Handshake(token=token, store_id=store_id, terminal_id=terminal_id, role=role)


async def join(
    hub: RelayHub, terminal_id: str, role: str = "pos", fail: bool = False, stall: bool = False
):
    connection = FakeConnection(fail=fail, stall=stall)
    session = await hub.connect(connection, handshake(terminal_id, role))
    return session, connection


class TestRelayAuth:
    """Tests for handshake validation."""

    def test_valid_handshake(self):
        claims = RelayAuthenticator(SECRET).authenticate(handshake("T1"))

        assert claims["storeId"] == STORE_ID
        assert claims["terminalId"] == "T1"
        assert claims["type"] == "relay"

    def test_missing_token(self):
        with pytest.raises(AuthenticationError, match="token required"):
            RelayAuthenticator(SECRET).authenticate(Handshake(None, STORE_ID, "T1"))

    def test_missing_store(self):
        shake = handshake("T1")
        shake.store_id = None

        with pytest.raises(AuthenticationError, match="Store ID"):
            RelayAuthenticator(SECRET).authenticate(shake)

    def test_missing_terminal(self):
        shake = handshake("T1")
        shake.terminal_id = ""

        with pytest.raises(AuthenticationError, match="Terminal ID"):
            RelayAuthenticator(SECRET).authenticate(shake)

    def test_wrong_secret(self):
        token = create_relay_token("other-secret", store_id=STORE_ID, terminal_id="T1")

        with pytest.raises(AuthenticationError, match="Authentication failed"):
            RelayAuthenticator(SECRET).authenticate(Handshake(token, STORE_ID, "T1"))

    def test_expired_token(self):
        token = create_relay_token(
            SECRET, store_id=STORE_ID, terminal_id="T1", expires_delta=timedelta(seconds=-5)
        )

        with pytest.raises(AuthenticationError, match="expired"):
            RelayAuthenticator(SECRET).authenticate(Handshake(token, STORE_ID, "T1"))

    def test_store_claim_must_match(self):
        token = create_relay_token(SECRET, store_id="store-2", terminal_id="T1")

        with pytest.raises(AuthenticationError, match="not valid for this store"):
            RelayAuthenticator(SECRET).authenticate(Handshake(token, STORE_ID, "T1"))

    def test_terminal_claim_must_match(self):
        token = create_relay_token(SECRET, store_id=STORE_ID, terminal_id="T1")

        with pytest.raises(AuthenticationError, match="not valid for this terminal"):
            RelayAuthenticator(SECRET).authenticate(Handshake(token, STORE_ID, "T2"))

    def test_unknown_role(self):
        with pytest.raises(AuthenticationError, match="Unknown role"):
            RelayAuthenticator(SECRET).authenticate(handshake("T1", role="kitchen"))

    def test_token_carries_user(self):
        token = create_relay_token(SECRET, store_id=STORE_ID, terminal_id="T1", user_id="u1")

        assert jwt.decode(token, SECRET, algorithms=["HS256"])["sub"] == "u1"


class TestEventParsing:
    """Tests for the closed client event union."""

    def test_cart_update(self):
        event, body = parse_client_event({"event": "cart:update", "data": CART}, Role.POS)

        assert event is ClientEvent.CART_UPDATE
        assert isinstance(body, CartUpdate)
        assert body.items[0].product_name == "Latte"
        assert body.total == 9.9

    def test_cart_item_extra_fields_pass_through(self):
        data = {**CART, "items": [{**CART["items"][0], "modifiers": ["oat milk"]}]}

        _, body = parse_client_event({"event": "cart:update", "data": data}, Role.POS)

        dumped = body.model_dump(mode="json", by_alias=True)
        assert dumped["items"][0]["modifiers"] == ["oat milk"]

    def test_unknown_event_rejected(self):
        with pytest.raises(EventRejected) as exc_info:
            parse_client_event({"event": "cart:explode", "data": {}}, Role.POS)

        assert exc_info.value.event == "cart:explode"

    def test_wrong_role_rejected(self):
        with pytest.raises(EventRejected, match="not allowed"):
            parse_client_event({"event": "cart:update", "data": CART}, Role.DISPLAY)

        with pytest.raises(EventRejected, match="not allowed"):
            parse_client_event({"event": "display:subscribe", "data": {"terminalId": "T1"}}, Role.POS)

    def test_invalid_body_rejected(self):
        with pytest.raises(EventRejected, match="total"):
            parse_client_event({"event": "cart:update", "data": {"subtotal": 1}}, Role.POS)

    def test_non_object_frame_rejected(self):
        with pytest.raises(EventRejected):
            parse_client_event(["cart:update"], Role.POS)

    def test_ping_allowed_for_both_roles(self):
        assert parse_client_event({"event": "system:ping"}, Role.POS)[0] is ClientEvent.SYSTEM_PING
        assert parse_client_event({"event": "system:ping"}, Role.DISPLAY)[0] is ClientEvent.SYSTEM_PING

    def test_frame(self):
        assert frame(ServerEvent.SYSTEM_PONG, {"x": 1}) == {"event": "system:pong", "data": {"x": 1}}


class TestTerminalRegistry:
    """Tests for registry bookkeeping."""

    @staticmethod
    def session(socket_id: str, terminal_id: str = "T1", role: Role = Role.POS) -> TerminalSession:
        return TerminalSession(socket_id=socket_id, terminal_id=terminal_id, store_id=STORE_ID, role=role)

    @pytest.mark.asyncio
    async def test_register_and_unregister_prunes_terminal(self):
        registry = TerminalRegistry()
        await registry.register(self.session("a"))

        assert registry.has_terminal("T1")

        removed = await registry.unregister("a")

        assert removed.socket_id == "a"
        assert registry.has_terminal("T1") is False
        assert registry.get_stats() == {"connected_clients": 0, "terminals": 0, "displays": 0, "stores": 0}

    @pytest.mark.asyncio
    async def test_unregister_unknown_socket(self):
        assert await TerminalRegistry().unregister("nope") is None

    @pytest.mark.asyncio
    async def test_bind_display_last_wins(self):
        registry = TerminalRegistry()
        await registry.register(self.session("pos"))
        await registry.register(self.session("d1", "D1", Role.DISPLAY))
        await registry.register(self.session("d2", "D2", Role.DISPLAY))

        assert await registry.bind_display("T1", "d1") is None
        assert await registry.bind_display("T1", "d2") == "d1"

        display = await registry.bound_display("T1")
        assert display.socket_id == "d2"

    @pytest.mark.asyncio
    async def test_display_disconnect_clears_binding_by_socket(self):
        registry = TerminalRegistry()
        await registry.register(self.session("pos"))
        await registry.register(self.session("d1", "D1", Role.DISPLAY))
        await registry.bind_display("T1", "d1")

        await registry.unregister("d1")

        assert await registry.bound_display("T1") is None
        assert registry.has_terminal("T1")

    @pytest.mark.asyncio
    async def test_route_cart_never_creates_terminal(self):
        registry = TerminalRegistry()

        route = await registry.route_cart("ghost", None)

        assert route.display is None
        assert route.peers == []
        assert registry.has_terminal("ghost") is False

    @pytest.mark.asyncio
    async def test_route_cart_excludes_sender_and_displays(self):
        registry = TerminalRegistry()
        await registry.register(self.session("a"))
        await registry.register(self.session("b"))
        await registry.register(self.session("d", "T1", Role.DISPLAY))

        route = await registry.route_cart("T1", "a")

        assert [peer.socket_id for peer in route.peers] == ["b"]

    @pytest.mark.asyncio
    async def test_list_terminals(self):
        registry = TerminalRegistry()
        await registry.register(self.session("a", "T2"))
        await registry.register(self.session("b", "T1"))

        assert registry.list_terminals() == ["T1", "T2"]
        assert registry.list_terminals(STORE_ID) == ["T1", "T2"]
        assert registry.list_terminals("other") == []


class TestRelayHub:
    """Tests for hub routing."""

    @pytest.mark.asyncio
    async def test_connect_rejects_bad_handshake(self, hub):
        with pytest.raises(AuthenticationError):
            await hub.connect(FakeConnection(), Handshake("garbage", STORE_ID, "T1"))

        assert hub.get_stats()["connected_clients"] == 0

    @pytest.mark.asyncio
    async def test_cart_update_reaches_bound_display(self, hub):
        pos, pos_conn = await join(hub, "T1")
        display, display_conn = await join(hub, "D1", role="display")
        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        await hub.handle_message(pos, {"event": "cart:update", "data": CART})

        assert display_conn.events() == ["display:subscribed", "cart:updated"]
        payload = display_conn.sent[-1]["data"]
        assert payload["terminalId"] == "T1"
        assert payload["total"] == 9.9
        assert payload["items"][0]["productName"] == "Latte"
        assert "timestamp" in payload
        assert pos_conn.sent == []

    @pytest.mark.asyncio
    async def test_subscribe_reply(self, hub):
        display, display_conn = await join(hub, "D1", role="display")

        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        assert display_conn.sent == [
            {
                "event": "display:subscribed",
                "data": {"terminalId": "T1", "message": "Successfully subscribed to terminal"},
            }
        ]

    @pytest.mark.asyncio
    async def test_second_display_replaces_first(self, hub):
        pos, _ = await join(hub, "T1")
        d1, d1_conn = await join(hub, "D1", role="display")
        d2, d2_conn = await join(hub, "D2", role="display")
        await hub.handle_message(d1, {"event": "display:subscribe", "data": {"terminalId": "T1"}})
        await hub.handle_message(d2, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        await hub.handle_message(pos, {"event": "cart:update", "data": CART})

        assert "cart:updated" not in d1_conn.events()
        assert d2_conn.events()[-1] == "cart:updated"

    @pytest.mark.asyncio
    async def test_cart_update_reaches_peer_pos_sockets(self, hub):
        a, a_conn = await join(hub, "T1")
        b, b_conn = await join(hub, "T1")

        await hub.handle_message(a, {"event": "cart:update", "data": CART})

        assert b_conn.events() == ["cart:updated"]
        assert a_conn.sent == []

    @pytest.mark.asyncio
    async def test_transaction_complete_only_to_display(self, hub):
        a, _ = await join(hub, "T1")
        b, b_conn = await join(hub, "T1")
        display, display_conn = await join(hub, "D1", role="display")
        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        await hub.handle_message(a, {"event": "transaction:complete", "data": {"total": 9.9, "paid": 10, "change": 0.1}})

        assert display_conn.events()[-1] == "transaction:complete"
        assert display_conn.sent[-1]["data"]["paid"] == 10
        assert b_conn.sent == []

    @pytest.mark.asyncio
    async def test_cart_for_unknown_terminal_dropped(self, hub):
        pos, pos_conn = await join(hub, "T1")
        data = {**CART, "terminalId": "T9"}

        await hub.handle_message(pos, {"event": "cart:update", "data": data})

        assert pos_conn.sent == []
        assert hub.registry.has_terminal("T9") is False

    @pytest.mark.asyncio
    async def test_display_disconnect_stops_delivery(self, hub):
        pos, _ = await join(hub, "T1")
        display, display_conn = await join(hub, "D1", role="display")
        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        await hub.disconnect(display.socket_id)
        await hub.handle_message(pos, {"event": "cart:update", "data": CART})

        assert display_conn.events() == ["display:subscribed"]
        assert hub.get_stats()["displays"] == 0

    @pytest.mark.asyncio
    async def test_binding_survives_terminal_reconnect(self, hub):
        pos, _ = await join(hub, "T1")
        display, display_conn = await join(hub, "D1", role="display")
        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        await hub.disconnect(pos.socket_id)

        assert hub.registry.has_terminal("T1") is False
        assert (await hub.registry.bound_display("T1")).socket_id == display.socket_id

        pos, _ = await join(hub, "T1")
        await hub.handle_message(pos, {"event": "cart:update", "data": CART})

        assert display_conn.events() == ["display:subscribed", "cart:updated"]

    @pytest.mark.asyncio
    async def test_ping_pong(self, hub):
        pos, pos_conn = await join(hub, "T1")

        await hub.handle_message(pos, json.dumps({"event": "system:ping"}))

        assert pos_conn.sent[0]["event"] == "system:pong"
        assert pos_conn.sent[0]["data"]["terminalId"] == "T1"
        assert "timestamp" in pos_conn.sent[0]["data"]

    @pytest.mark.asyncio
    async def test_rejected_frame_gets_error_to_sender_only(self, hub):
        pos, pos_conn = await join(hub, "T1")
        peer, peer_conn = await join(hub, "T1")

        await hub.handle_message(pos, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        assert pos_conn.events() == ["system:error"]
        assert pos_conn.sent[0]["data"]["event"] == "display:subscribe"
        assert peer_conn.sent == []

    @pytest.mark.asyncio
    async def test_invalid_json(self, hub):
        pos, pos_conn = await join(hub, "T1")

        await hub.handle_message(pos, "{not json")

        assert pos_conn.sent[0]["event"] == "system:error"
        assert pos_conn.sent[0]["data"]["event"] is None

    @pytest.mark.asyncio
    async def test_failed_send_does_not_affect_others(self, hub):
        a, _ = await join(hub, "T1")
        broken, _ = await join(hub, "T1", fail=True)
        healthy, healthy_conn = await join(hub, "T1")

        await hub.handle_message(a, {"event": "cart:update", "data": CART})

        assert healthy_conn.events() == ["cart:updated"]

    @pytest.mark.asyncio
    async def test_stalled_display_does_not_block_sender(self):
        hub = RelayHub(RelayAuthenticator(SECRET), send_timeout=0.05)
        pos, _ = await join(hub, "T1")
        peer, peer_conn = await join(hub, "T1")
        display, _ = await join(hub, "D1", role="display", stall=True)
        await hub.registry.bind_display("T1", display.socket_id)

        await asyncio.wait_for(
            hub.handle_message(pos, {"event": "cart:update", "data": CART}), timeout=2
        )

        assert peer_conn.events() == ["cart:updated"]

    @pytest.mark.asyncio
    async def test_broadcast_to_store_and_send_to_terminal(self, hub):
        _, t1_conn = await join(hub, "T1")
        _, t2_conn = await join(hub, "T2")
        _, other_conn = await join(hub, "T3", fail=False)
        other_store = FakeConnection()
        await hub.connect(other_store, handshake("T4", store_id="store-2"))

        sent = await hub.broadcast_to_store(STORE_ID, ServerEvent.SYSTEM_PONG, {"hello": True})
        assert sent == 3
        assert other_store.sent == []

        sent = await hub.send_to_terminal("T2", ServerEvent.SYSTEM_PONG, {"only": "T2"})
        assert sent == 1
        assert t2_conn.sent[-1]["data"] == {"only": "T2"}
        assert t1_conn.sent[-1]["data"] == {"hello": True}

    @pytest.mark.asyncio
    async def test_stats(self, hub):
        await join(hub, "T1")
        display, _ = await join(hub, "D1", role="display")
        await hub.handle_message(display, {"event": "display:subscribe", "data": {"terminalId": "T1"}})

        stats = hub.get_stats()

        assert stats["connected_clients"] == 2
        assert stats["terminals"] == 2
        assert stats["displays"] == 1
        assert stats["stores"] == 1
