"""Core domain models.

These dataclasses are shared across the core and adapters so that untyped
store rows never travel past the store adapter. Each entity knows how to
build itself from a row mapping (a realtime payload uses the same shape).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Tuple


class RequestStatus(str, Enum):
    PENDING = "pending"
    ON_PROGRESS = "on_progress"
    RECEIPT_UPLOADED = "receipt_uploaded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    ONLINE = "online"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    SUPERSEDED = "superseded"


class Category(str, Enum):
    GROCERIES = "groceries"
    PHARMACY = "pharmacy"
    FOOD = "food"
    OTHER = "other"


class DiscoveryMode(str, Enum):
    NEAR_ME = "near_me"
    NEAR_HOME = "near_home"
    LATEST = "latest"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class LineItem:
    """One thing the buyer wants bought."""

    name: str
    quantity: int = 1
    unit: str = "pcs"
    image: Optional[str] = None

    def as_dict(self) -> dict:
        return {"name": self.name, "quantity": self.quantity, "unit": self.unit, "image": self.image}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LineItem":
        return cls(
            name=str(raw.get("name") or ""),
            quantity=int(raw.get("quantity") or 1),
            unit=str(raw.get("unit") or "pcs"),
            image=raw.get("image") or None,
        )


@dataclass(frozen=True)
class Request:
    """A buyer's ask.

    ``legacy_helper_id`` mirrors a denormalized column kept for older rows;
    it is read for role resolution only and never written.
    """

    request_id: str
    buyer_id: str
    items: Tuple[LineItem, ...]
    delivery_address: str
    location: Optional[GeoPoint]
    tip: Decimal
    estimated_price: Optional[Decimal]
    payment_method: PaymentMethod
    purchase_location: Optional[str]
    category: Category
    status: RequestStatus
    created_at: datetime
    legacy_helper_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Request":
        raw_items = row.get("item_list") or "[]"
        if isinstance(raw_items, str):
            try:
                raw_items = json.loads(raw_items)
            except ValueError:
                raw_items = []
        location = None
        if row.get("latitude") is not None and row.get("longitude") is not None:
            location = GeoPoint(float(row["latitude"]), float(row["longitude"]))
        return cls(
            request_id=str(row["request_id"]),
            buyer_id=str(row["buyer_id"]),
            items=tuple(LineItem.from_dict(item) for item in raw_items),
            delivery_address=row.get("delivery_address") or "",
            location=location,
            tip=_decimal(row.get("tip")) or Decimal("0"),
            estimated_price=_decimal(row.get("estimated_price")),
            payment_method=PaymentMethod(row.get("payment_method") or PaymentMethod.CASH_ON_DELIVERY.value),
            purchase_location=row.get("purchase_location") or None,
            category=Category(row.get("category") or Category.OTHER.value),
            status=RequestStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            legacy_helper_id=row.get("helper_id") or None,
        )


@dataclass(frozen=True)
class Match:
    """A helper's claim on a request. Never mutated, never deleted."""

    match_id: int
    request_id: str
    helper_id: str
    buyer_id: str
    accepted_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Match":
        return cls(
            match_id=int(row["match_id"]),
            request_id=str(row["request_id"]),
            helper_id=str(row["helper_id"]),
            buyer_id=str(row["buyer_id"]),
            accepted_at=parse_timestamp(row["accepted_at"]),
        )


@dataclass(frozen=True)
class Payment:
    """Receipt-side financial record for a fulfilled purchase."""

    payment_id: int
    request_id: str
    helper_id: str
    final_price: Decimal
    amount_total: Decimal
    receipt_url: str
    status: PaymentStatus
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Payment":
        return cls(
            payment_id=int(row["payment_id"]),
            request_id=str(row["request_id"]),
            helper_id=str(row["helper_id"]),
            final_price=_decimal(row["final_price"]),
            amount_total=_decimal(row["amount_total"]),
            receipt_url=row.get("receipt_url") or "",
            status=PaymentStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass(frozen=True)
class Message:
    """One chat line inside a request. ``seen_at`` is set iff ``seen``."""

    id: str
    request_id: str
    sender_id: str
    content: str
    created_at: datetime
    seen: bool = False
    seen_at: Optional[datetime] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        seen = bool(row.get("seen"))
        return cls(
            id=str(row["id"]),
            request_id=str(row["request_id"]),
            sender_id=str(row["sender_id"]),
            content=row.get("content") or "",
            created_at=parse_timestamp(row["created_at"]),
            seen=seen,
            seen_at=parse_timestamp(row.get("seen_at")) if seen else None,
        )


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    profile_pic: Optional[str] = None
    home: Optional[GeoPoint] = None
    address: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        home = None
        if row.get("latitude") is not None and row.get("longitude") is not None:
            home = GeoPoint(float(row["latitude"]), float(row["longitude"]))
        phone = row.get("phone")
        return cls(
            user_id=str(row["user_id"]),
            name=row.get("name") or "",
            email=row.get("email") or None,
            phone=str(phone) if phone else None,
            profile_pic=row.get("profile_pic") or None,
            home=home,
            address=row.get("address") or None,
        )


@dataclass(frozen=True)
class AuthUser:
    """Opaque identity handed out by the auth collaborator."""

    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class RealtimeEvent:
    """Change notification delivered by the realtime collaborator."""

    event_type: str  # "insert" | "update"
    table: str
    row: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestDraft:
    """Buyer input for a new request, validated by the request desk."""

    buyer_id: str
    items: Tuple[LineItem, ...]
    delivery_address: str
    tip: Any = "0"
    location: Optional[GeoPoint] = None
    estimated_price: Any = None
    payment_method: str = PaymentMethod.CASH_ON_DELIVERY.value
    purchase_location: Optional[str] = None
    category: str = Category.OTHER.value


@dataclass(frozen=True)
class AcceptOutcome:
    request: Request
    match: Match


@dataclass(frozen=True)
class ReceiptSubmission:
    """Helper input for MarkReceiptUploaded."""

    request_id: str
    helper_id: str
    final_price: Any
    image: bytes
    filename: str = "receipt.jpg"


@dataclass(frozen=True)
class ReceiptOutcome:
    request: Request
    payment: Payment


@dataclass(frozen=True)
class LifecycleEvent:
    """Something worth telling the other party about."""

    kind: str  # accepted | receipt_uploaded | completed | rejected | message
    request_id: str
    actor_id: str
    recipient_id: Optional[str]
    occurred_at: datetime
    detail: str = ""


@dataclass(frozen=True)
class RequestChanges:
    """Buyer edits to a pending request. ``None`` leaves a field untouched."""

    items: Optional[Tuple[LineItem, ...]] = None
    delivery_address: Optional[str] = None
    tip: Any = None
    location: Optional[GeoPoint] = None
    estimated_price: Any = None
    purchase_location: Optional[str] = None
    payment_method: Optional[str] = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)
