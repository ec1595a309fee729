"""Wire schemas for the push/pull sync protocol.

Every tracked entity type has its own payload model; a change is only
applied after its payload validates against the model for its type.
Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class EntityType(str, Enum):
    """Entity tables tracked by the sync engine."""

    PRODUCT = "Product"
    CATEGORY = "Category"
    SALE = "Sale"
    CUSTOMER = "Customer"
    USER = "User"
    SETTING = "Setting"
    STOCK_MOVEMENT = "StockMovement"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class WireModel(BaseModel):
    """Base model: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PayloadModel(WireModel):
    """Base for entity payloads. Unknown fields are dropped."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


# ==================== Entity Payloads ====================


class ProductPayload(PayloadModel):
    sku: str = Field(min_length=1)
    barcode: str | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    category_id: str = Field(min_length=1)
    cost_price: float = Field(ge=0)
    selling_price: float = Field(gt=0)
    tax_rate: float = Field(ge=0, le=100)
    track_stock: bool = True
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_alert: int = Field(default=10, ge=0)
    unit: str = "pcs"
    image_url: str | None = None
    sort_order: int = Field(default=0, ge=0)
    is_active: bool = True


class CategoryPayload(PayloadModel):
    name: str = Field(min_length=1)
    description: str | None = None
    color: str = Field(default="#8B4513", pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: str | None = None
    sort_order: int = Field(default=0, ge=0)
    is_active: bool = True


class CustomerPayload(PayloadModel):
    name: str = Field(min_length=1)
    phone: str | None = None
    email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    address: str | None = None
    loyalty_points: int = Field(default=0, ge=0)
    total_spent: float = Field(default=0, ge=0)
    visit_count: int = Field(default=0, ge=0)


class SaleItemPayload(PayloadModel):
    product_id: str = Field(min_length=1)
    product_name: str | None = None
    sku: str | None = None
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)
    tax_rate: float = Field(default=0, ge=0, le=100)
    discount: float = Field(default=0, ge=0)
    total: float = Field(ge=0)


class SalePaymentPayload(PayloadModel):
    method: str = Field(min_length=1)
    amount: float = Field(ge=0)
    reference: str | None = None


class SalePayload(PayloadModel):
    receipt_no: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    customer_id: str | None = None
    subtotal: float = Field(ge=0)
    tax_amount: float = Field(default=0, ge=0)
    discount_amount: float = Field(default=0, ge=0)
    discount_type: str | None = None
    total_amount: float = Field(ge=0)
    payment_method: str = Field(min_length=1)
    amount_paid: float = Field(ge=0)
    change_given: float = Field(default=0, ge=0)
    status: str = "completed"
    notes: str | None = None
    items: list[SaleItemPayload] = Field(default_factory=list)
    payments: list[SalePaymentPayload] = Field(default_factory=list)


class UserPayload(PayloadModel):
    username: str = Field(min_length=3)
    pin: str = Field(min_length=4, max_length=4)
    password: str = Field(min_length=6)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    role: Literal["admin", "manager", "cashier"] = "cashier"
    is_active: bool = True


class SettingPayload(PayloadModel):
    key: str = Field(min_length=1)
    value: str
    type: Literal["string", "number", "boolean", "json"] = "string"
    category: Literal["general", "receipt", "payment", "tax", "hardware"] = "general"


class StockMovementPayload(PayloadModel):
    product_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    type: Literal["adjustment", "sale", "return", "transfer", "initial"]
    quantity: int
    previous_qty: int = Field(ge=0)
    new_qty: int = Field(ge=0)
    reason: str | None = None
    reference: str | None = None


PAYLOAD_SCHEMAS: dict[EntityType, type[PayloadModel]] = {
    EntityType.PRODUCT: ProductPayload,
    EntityType.CATEGORY: CategoryPayload,
    EntityType.SALE: SalePayload,
    EntityType.CUSTOMER: CustomerPayload,
    EntityType.USER: UserPayload,
    EntityType.SETTING: SettingPayload,
    EntityType.STOCK_MOVEMENT: StockMovementPayload,
}

ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.PRODUCT: "products",
    EntityType.CATEGORY: "categories",
    EntityType.SALE: "sales",
    EntityType.CUSTOMER: "customers",
    EntityType.USER: "users",
    EntityType.SETTING: "settings",
    EntityType.STOCK_MOVEMENT: "stock_movements",
}

# Row metadata carried next to the payload fields on the wire
ROW_METADATA_FIELDS = ("id", "storeId", "isActive", "createdAt", "updatedAt")

# Entity tables returned by pull, keyed by their response group name.
# Stock movements are append-only history and are not pulled.
PULL_GROUPS: dict[str, EntityType] = {
    "products": EntityType.PRODUCT,
    "categories": EntityType.CATEGORY,
    "sales": EntityType.SALE,
    "customers": EntityType.CUSTOMER,
    "users": EntityType.USER,
    "settings": EntityType.SETTING,
}

# Operations each entity accepts; anything else is a per-change failure.
ALLOWED_OPERATIONS: dict[EntityType, frozenset[Operation]] = {
    entity_type: frozenset(Operation) for entity_type in EntityType
}
ALLOWED_OPERATIONS[EntityType.STOCK_MOVEMENT] = frozenset({Operation.CREATE})


def document_to_wire(
    record_id: str,
    store_id: str | None,
    data: dict[str, Any],
    is_active: bool,
    created_at: str,
    updated_at: str,
) -> dict[str, Any]:
    """Flatten a stored entity document into its wire representation."""
    return {
        **data,
        "id": record_id,
        "storeId": store_id,
        "isActive": bool(is_active),
        "createdAt": created_at,
        "updatedAt": updated_at,
    }


def split_wire_row(row: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a wire row into (metadata, payload data)."""
    meta = {key: row.get(key) for key in ROW_METADATA_FIELDS}
    data = {key: value for key, value in row.items() if key not in ROW_METADATA_FIELDS}
    return meta, data


class PayloadValidationError(ValueError):
    """A change payload does not match the schema for its entity type."""


def validate_payload(entity_type: EntityType, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a payload against its entity schema.

    Args:
        entity_type: Entity the payload belongs to.
        payload: Raw payload (camelCase or snake_case keys).

    Returns:
        Normalized payload as a camelCase JSON-compatible dict.

    Raises:
        PayloadValidationError: If the payload is invalid.
    """
    schema = PAYLOAD_SCHEMAS[entity_type]
    try:
        model = schema.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise PayloadValidationError(f"Invalid {entity_type.value} payload: {problems}") from e

    return model.model_dump(mode="json", by_alias=True)


def to_wire_keys(entity_type: EntityType, payload: dict[str, Any]) -> dict[str, Any]:
    """Rename snake_case field names in a partial payload to their camelCase aliases."""
    fields = PAYLOAD_SCHEMAS[entity_type].model_fields
    return {
        (fields[key].alias or key) if key in fields else key: value
        for key, value in payload.items()
    }


# ==================== Push ====================


class ChangeIn(WireModel):
    """One change as submitted by a terminal."""

    entity_type: EntityType
    record_id: str = Field(min_length=1)
    operation: Operation
    change_id: UUID
    payload: dict[str, Any] | None = None


class PushRequest(WireModel):
    """Push envelope.

    ``changes`` stays untyped here so that a single malformed change,
    even one that is not an object, is rejected by the gateway on its
    own instead of failing the whole request.
    """

    store_id: UUID
    changes: list[Any] = Field(default_factory=list)


class PushError(BaseModel):
    change: Any
    error: str


class PushResults(WireModel):
    success: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: list[PushError] = Field(default_factory=list)


class PushResponse(WireModel):
    status: Literal["completed"] = "completed"
    results: PushResults


# ==================== Pull ====================


class PullRequest(WireModel):
    store_id: UUID
    last_sync_time: datetime | None = None


class PullChanges(WireModel):
    products: list[dict[str, Any]] = Field(default_factory=list)
    categories: list[dict[str, Any]] = Field(default_factory=list)
    sales: list[dict[str, Any]] = Field(default_factory=list)
    customers: list[dict[str, Any]] = Field(default_factory=list)
    users: list[dict[str, Any]] = Field(default_factory=list)
    settings: list[dict[str, Any]] = Field(default_factory=list)

    def total(self) -> int:
        return sum(len(getattr(self, group)) for group in PULL_GROUPS)


class PullResponse(WireModel):
    status: Literal["ok"] = "ok"
    timestamp: str
    changes: PullChanges = Field(default_factory=PullChanges)
