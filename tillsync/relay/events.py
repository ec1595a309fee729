"""Closed event surface of the relay, one union per direction.

A frame is ``{"event": <name>, "data": {...}}``. Client frames are parsed
into one of the models below or rejected with :class:`EventRejected`;
nothing outside the known set is ever dispatched.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    POS = "pos"
    DISPLAY = "display"


class ClientEvent(str, Enum):
    """Events a connected socket may send."""

    CART_UPDATE = "cart:update"
    TRANSACTION_COMPLETE = "transaction:complete"
    DISPLAY_SUBSCRIBE = "display:subscribe"
    SYSTEM_PING = "system:ping"


class ServerEvent(str, Enum):
    """Events the relay emits."""

    CART_UPDATED = "cart:updated"
    TRANSACTION_COMPLETE = "transaction:complete"
    DISPLAY_SUBSCRIBED = "display:subscribed"
    SYSTEM_PONG = "system:pong"
    SYSTEM_ERROR = "system:error"


class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(EventModel):
    """A cart line. Extra display fields (modifiers, notes) pass through."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    product_id: str | None = None
    product_name: str
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)


class CartUpdate(EventModel):
    """Cart snapshot. Owned by the terminal that last emitted it."""

    items: list[CartItem] = Field(default_factory=list)
    subtotal: float = Field(ge=0)
    tax: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    total: float = Field(ge=0)
    terminal_id: str | None = None


class TransactionComplete(EventModel):
    total: float = Field(ge=0)
    paid: float = Field(ge=0)
    change: float = Field(default=0, ge=0)
    terminal_id: str | None = None


class DisplaySubscribe(EventModel):
    terminal_id: str = Field(min_length=1)


class SystemPing(EventModel):
    pass


EVENT_MODELS: dict[ClientEvent, type[EventModel]] = {
    ClientEvent.CART_UPDATE: CartUpdate,
    ClientEvent.TRANSACTION_COMPLETE: TransactionComplete,
    ClientEvent.DISPLAY_SUBSCRIBE: DisplaySubscribe,
    ClientEvent.SYSTEM_PING: SystemPing,
}

ROLE_EVENTS: dict[Role, frozenset[ClientEvent]] = {
    Role.POS: frozenset(
        {ClientEvent.CART_UPDATE, ClientEvent.TRANSACTION_COMPLETE, ClientEvent.SYSTEM_PING}
    ),
    Role.DISPLAY: frozenset({ClientEvent.DISPLAY_SUBSCRIBE, ClientEvent.SYSTEM_PING}),
}


class EventRejected(Exception):
    """A client frame outside the accepted union for the sender's role."""

    def __init__(self, event: str | None, error: str):
        super().__init__(error)
        self.event = event
        self.error = error


def parse_client_event(message: Any, role: Role) -> tuple[ClientEvent, EventModel]:
    """Parse a decoded client frame.

    Args:
        message: Decoded JSON frame.
        role: Role of the sending socket.

    Returns:
        Tuple of (event, validated body).

    Raises:
        EventRejected: Unknown event, wrong role, or invalid body.
    """
    if not isinstance(message, dict):
        raise EventRejected(None, "Frame must be a JSON object")

    name = message.get("event")
    try:
        event = ClientEvent(name)
    except ValueError:
        raise EventRejected(name if isinstance(name, str) else None, f"Unknown event: {name}")

    if event not in ROLE_EVENTS[role]:
        raise EventRejected(event.value, f"Event {event.value} not allowed for role {role.value}")

    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise EventRejected(event.value, "Event data must be a JSON object")

    try:
        body = EVENT_MODELS[event].model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
            for err in e.errors()
        )
        raise EventRejected(event.value, f"Invalid {event.value} data: {problems}")

    return event, body


def frame(event: ServerEvent, data: dict[str, Any]) -> dict[str, Any]:
    """Build an outgoing frame."""
    return {"event": event.value, "data": data}
