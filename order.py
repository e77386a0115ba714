"""
Order Module
============
Order entity and its value objects.

- PackagingEntry, HistoryEntry and OrderItem are frozen (write-once)
- Order is mutable; only the store mutates it
- total_units is derived from packaging entries, never stored
- to_record()/from_record() define the row shape shared by the
  Supabase table and the local snapshot file
"""

import logging
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from enum import Enum
import uuid


logger = logging.getLogger(__name__)


SOURCES = ("Manual", "Correo", "WhatsApp")


# ============================================================================
# ORDER STATUS
# ============================================================================

class OrderStatus(Enum):
    """
    Order pipeline stages.

    State flow:
        PENDING -> COMPLETED -> DISPATCHED
    """
    PENDING = "PENDIENTE"      # Entered, waiting for preparation
    COMPLETED = "COMPLETADO"   # Packed in the warehouse
    DISPATCHED = "DESPACHO"    # Handed to a carrier

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        """Accept an OrderStatus, its wire value or its name."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for status in cls:
            if text == status.value or text.upper() == status.name:
                return status
        raise ValueError(f"Unknown order status: {value}")


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class PackagingEntry:
    """One (deposit, package type, quantity) line."""
    deposit: str
    package_type: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackagingEntry":
        return cls(
            deposit=str(data.get("deposit", "")),
            package_type=str(data.get("package_type", data.get("type", ""))),
            quantity=int(data.get("quantity", 0)),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """Audit record of one status change."""
    status: OrderStatus
    label: str
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "label": self.label,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            status=OrderStatus.parse(data["status"]),
            label=str(data.get("label", "")),
            timestamp=str(data.get("timestamp") or utc_now()),
        )


@dataclass(frozen=True)
class OrderItem:
    """Free-text line item as typed by the operator or extracted from text."""
    name: str
    quantity: float = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderItem":
        return cls(name=str(data.get("name", "")), quantity=data.get("quantity", 1))


# ============================================================================
# ORDER
# ============================================================================

@dataclass
class Order:
    """A customer order tracked through packing and dispatch."""
    customer_name: str
    locality: Optional[str]
    order_number: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OrderStatus = OrderStatus.PENDING
    packaging_entries: List[PackagingEntry] = field(default_factory=list)
    reviewer: Optional[str] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    locked_by: Optional[str] = None
    history: List[HistoryEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    items: List[OrderItem] = field(default_factory=list)
    source: str = "Manual"
    source_detail: Optional[str] = None

    @property
    def total_units(self) -> int:
        """Sum of packaging quantities (recomputed on every read)."""
        return sum(entry.quantity for entry in self.packaging_entries)

    def to_record(self) -> Dict[str, Any]:
        """Export as a flat row (table and snapshot shape)."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "locality": self.locality,
            "status": self.status.value,
            "packaging_entries": [e.to_dict() for e in self.packaging_entries],
            "reviewer": self.reviewer,
            "carrier": self.carrier,
            "notes": self.notes,
            "location": self.location,
            "locked_by": self.locked_by,
            "history": [h.to_dict() for h in self.history],
            "created_at": self.created_at,
            "items": [i.to_dict() for i in self.items],
            "source": self.source,
            "source_detail": self.source_detail,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Export for API responses (record plus derived fields)."""
        data = self.to_record()
        data["total_units"] = self.total_units
        return data

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Order":
        """
        Build an order from a stored row.

        Raises:
            KeyError/ValueError: If the row is missing required columns
        """
        return cls(
            id=str(record["id"]),
            order_number=str(record.get("order_number") or ""),
            customer_name=str(record.get("customer_name") or ""),
            locality=record.get("locality"),
            status=OrderStatus.parse(record.get("status", OrderStatus.PENDING.value)),
            packaging_entries=[
                PackagingEntry.from_dict(e) for e in record.get("packaging_entries") or []
            ],
            reviewer=record.get("reviewer"),
            carrier=record.get("carrier"),
            notes=record.get("notes"),
            location=record.get("location"),
            locked_by=record.get("locked_by"),
            history=[HistoryEntry.from_dict(h) for h in record.get("history") or []],
            created_at=str(record.get("created_at") or utc_now()),
            items=[OrderItem.from_dict(i) for i in record.get("items") or []],
            source=record.get("source") or "Manual",
            source_detail=record.get("source_detail"),
        )


def orders_from_records(records: List[Dict[str, Any]]) -> List[Order]:
    """Decode rows, skipping (and logging) any that are malformed."""
    orders = []
    for record in records:
        try:
            orders.append(Order.from_record(record))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed order record: {str(e)}")
    return orders
