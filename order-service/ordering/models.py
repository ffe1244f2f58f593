"""Pydantic models for order-service.

Three groups live here:

- Replicated entities (`ReplicatedItem`, `ReplicatedAccount`) and the inbound
  `ReplicaEvent` that carries them. These are owned by the catalog/account
  services; we only keep a local copy.
- Client input (`DraftOrder`, `DraftOrderLine`, `CallerIdentity`). Unvalidated.
- The order aggregate (`Order`, `OrderLineSnapshot`). Built only from
  validated input.

Field names are camelCase because they are also the wire/document format.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# --- Events ------------------------------------------------------------------


class EntityType(str, Enum):
    ITEM = "item"
    ACCOUNT = "account"


class EventType(str, Enum):
    """Closed set of replica event kinds.

    Anything the upstream sends that we do not recognise parses to UNKNOWN,
    which the consumer logs and discards.
    """

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    INITIAL_LOAD = "INITIAL_LOAD"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "EventType":
        """Map a raw tag to a member.

        The upstream services prefix their tags with the entity name
        (`PRODUCT_CREATED`, `USER_DELETED`), so the prefix is dropped first.
        """
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return cls.UNKNOWN
        tag = raw.strip().upper()
        for prefix in ("PRODUCT_", "ITEM_", "USER_", "ACCOUNT_"):
            if tag.startswith(prefix):
                tag = tag[len(prefix):]
                break
        try:
            member = cls(tag)
        except ValueError:
            return cls.UNKNOWN
        return member

    @property
    def is_upsert(self) -> bool:
        return self in (EventType.CREATED, EventType.UPDATED, EventType.INITIAL_LOAD)


class ReplicaEvent(BaseModel):
    """Inbound event on an entity topic.

    CREATED/UPDATED/INITIAL_LOAD carry the full entity in `payload`.
    DELETED only needs `id`.
    """

    id: int
    eventType: EventType
    payload: dict[str, Any] | None = None

    @field_validator("eventType", mode="before")
    @classmethod
    def _parse_event_type(cls, value: Any) -> EventType:
        return EventType.parse(value)

    @model_validator(mode="after")
    def _check_payload(self) -> "ReplicaEvent":
        if self.eventType.is_upsert and self.payload is None:
            raise ValueError(f"{self.eventType.value} event {self.id} has no payload")
        if self.payload is not None and "id" in self.payload:
            if self.payload["id"] != self.id:
                raise ValueError(
                    f"payload id {self.payload['id']!r} does not match event id {self.id}"
                )
        return self

    def entity_fields(self) -> dict[str, Any]:
        """Payload with the event id filled in."""
        return {**(self.payload or {}), "id": self.id}


# --- Replicated entities -----------------------------------------------------


class ReplicatedItem(BaseModel):
    """Local copy of a catalog item.

    `price`/`stock` are accepted as aliases because that is how the catalog
    service names them on its topic.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    name: str
    unitPrice: Decimal = Field(
        default=Decimal("0"), validation_alias=AliasChoices("unitPrice", "price")
    )
    stockLevel: int = Field(default=0, validation_alias=AliasChoices("stockLevel", "stock"))
    category: str | None = None
    brand: str | None = None
    imageUrl: str | None = None


class ReplicatedAccount(BaseModel):
    """Local copy of an account (user) record."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    firstName: str | None = None
    lastName: str | None = None
    address: str | None = None

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, value: str) -> str:
        return value.strip().lower()


# --- Client input ------------------------------------------------------------


class DraftOrderLine(BaseModel):
    """One requested line. `quantity` is checked by validation, not here."""

    itemId: int
    quantity: int


class DraftOrder(BaseModel):
    lines: list[DraftOrderLine] = Field(default_factory=list)

    def distinct_item_ids(self) -> list[int]:
        """Referenced item ids, first-seen order, no duplicates."""
        return list(dict.fromkeys(line.itemId for line in self.lines))


class CallerIdentity(BaseModel):
    """Who is calling, as resolved by the (external) auth layer.

    Exactly one of `email` / `accountId` is used for the account lookup;
    email wins if both are present.
    """

    email: str | None = None
    accountId: int | None = None

    @model_validator(mode="after")
    def _require_one(self) -> "CallerIdentity":
        if self.email is None and self.accountId is None:
            raise ValueError("caller identity needs an email or an account id")
        if self.email is not None:
            self.email = self.email.strip().lower()
        return self

    @classmethod
    def of(cls, token: str | int) -> "CallerIdentity":
        """Build from an opaque identifier: all digits means account id."""
        if isinstance(token, int):
            return cls(accountId=token)
        token = token.strip()
        if token.isdigit():
            return cls(accountId=int(token))
        return cls(email=token)

    def describe(self) -> str:
        return self.email if self.email is not None else str(self.accountId)


# --- Order aggregate ---------------------------------------------------------


class OrderLineSnapshot(BaseModel):
    """An order line with the item's catalog data pinned at validation time."""

    model_config = ConfigDict(frozen=True)

    lineId: str = Field(default_factory=new_id)
    itemId: int
    name: str
    unitPriceAtValidation: Decimal
    category: str | None = None
    imageUrl: str | None = None
    quantity: int
    lineSubtotal: Decimal

    @classmethod
    def capture(cls, item: ReplicatedItem, quantity: int) -> "OrderLineSnapshot":
        return cls(
            itemId=item.id,
            name=item.name,
            unitPriceAtValidation=item.unitPrice,
            category=item.category,
            imageUrl=item.imageUrl,
            quantity=quantity,
            lineSubtotal=item.unitPrice * quantity,
        )


class Order(BaseModel):
    """The assembled order.

    `total` is derived from the lines on every read; a stored `total` field is
    ignored when a document is loaded back.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    ownerAccountId: int
    createdAt: datetime = Field(default_factory=utc_now)
    updatedAt: datetime | None = None
    lines: tuple[OrderLineSnapshot, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> Decimal:
        return sum((line.lineSubtotal for line in self.lines), Decimal("0.00"))
