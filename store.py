"""
Order Store
===========
Repository owning the order collection.

Mutations:
- create / patch / transition (plus revert_dispatch)
- advisory edit lock (acquire_lock / release_lock)
- packaging entry append and delete
- remote change application (realtime feed)

Reads return deep copies; the store is the only writer of its records.
Every local mutation is written to the local snapshot and queued for
the backend. Persistence failures are logged, never raised.
"""

import logging
import random
import threading
from typing import Dict, List, Any, Iterable, Optional, Set, Union
from copy import deepcopy
from dataclasses import dataclass, field

from exceptions import (
    BackendUnavailableError,
    LockConflictError,
    NotFoundError,
    ValidationError,
)
from order import (
    SOURCES,
    Order,
    OrderItem,
    OrderStatus,
    PackagingEntry,
    orders_from_records,
)
from order_state import OrderStateMachine, initial_history

try:
    from prometheus_client import Counter
    METRICS_ENABLED = True
except ImportError:
    METRICS_ENABLED = False


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

if METRICS_ENABLED:
    orders_created_total = Counter(
        'orders_created_total',
        'Orders entered',
        ['source']
    )
    order_transitions_total = Counter(
        'order_transitions_total',
        'Applied status transitions',
        ['from_status', 'to_status']
    )
    order_lock_conflicts_total = Counter(
        'order_lock_conflicts_total',
        'Refused lock acquisitions and locked writes'
    )
    order_validation_failures_total = Counter(
        'order_validation_failures_total',
        'Rejected store inputs',
        ['field']
    )
    order_backend_fallbacks_total = Counter(
        'order_backend_fallbacks_total',
        'Loads served from the local snapshot'
    )
    order_remote_changes_total = Counter(
        'order_remote_changes_total',
        'Applied realtime change events',
        ['event']
    )


# ============================================================================
# POLICY
# ============================================================================

@dataclass
class StorePolicy:
    """Store behaviour switches."""
    order_number_prefix: str = "P"
    allow_dispatch_revert: bool = False
    enforce_unique_order_number: bool = False
    elevated_users: Set[str] = field(default_factory=set)
    recommended_deposits: List[str] = field(default_factory=list)
    recommended_package_types: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, store_config) -> "StorePolicy":
        """Build from a config.StoreConfig section."""
        return cls(
            order_number_prefix=store_config.order_number_prefix,
            allow_dispatch_revert=store_config.allow_dispatch_revert,
            enforce_unique_order_number=store_config.enforce_unique_order_number,
            elevated_users=set(store_config.elevated_users),
            recommended_deposits=list(store_config.recommended_deposits),
            recommended_package_types=list(store_config.recommended_package_types),
        )


# ============================================================================
# PURE VIEWS
# ============================================================================

def filter_by_status(orders: Iterable[Order], status: Union[OrderStatus, str]) -> List[Order]:
    """Orders with the given status, original order preserved."""
    wanted = OrderStatus.parse(status)
    return [o for o in orders if o.status == wanted]


def search(orders: Iterable[Order], text: Optional[str]) -> List[Order]:
    """
    Case-insensitive substring match on customer name, order number
    and locality. A blank query matches every order.
    """
    if text is None or not text.strip():
        return list(orders)
    needle = text.lower()
    return [
        o for o in orders
        if needle in o.customer_name.lower()
        or needle in o.order_number.lower()
        or needle in (o.locality or "").lower()
    ]


def consolidate_packaging(entries: Iterable[PackagingEntry]) -> Dict[str, int]:
    """Total quantity per deposit (display only)."""
    totals: Dict[str, int] = {}
    for entry in entries:
        totals[entry.deposit] = totals.get(entry.deposit, 0) + entry.quantity
    return totals


def packaging_breakdown(entries: Iterable[PackagingEntry]) -> Dict[str, Dict[str, int]]:
    """Total quantity per deposit and package type."""
    totals: Dict[str, Dict[str, int]] = {}
    for entry in entries:
        by_type = totals.setdefault(entry.deposit, {})
        by_type[entry.package_type] = by_type.get(entry.package_type, 0) + entry.quantity
    return totals


# ============================================================================
# ORDER STORE
# ============================================================================

class OrderStore:
    """
    In-memory order collection mirrored to a local snapshot and,
    optionally, to the Supabase orders table.
    """

    PATCHABLE_FIELDS = {
        "customer_name", "locality", "order_number", "packaging_entries",
        "reviewer", "carrier", "notes", "location", "items",
        "source", "source_detail",
    }

    # Only changed through transition / lock operations
    IMMUTABLE_FIELDS = {"id", "created_at", "status", "history", "locked_by"}

    OPTIONAL_TEXT_FIELDS = {"reviewer", "carrier", "notes", "location", "source_detail"}

    MAX_NUMBER_ATTEMPTS = 50

    def __init__(
        self,
        cache=None,
        database=None,
        policy: Optional[StorePolicy] = None
    ):
        self.cache = cache
        self.database = database
        self.policy = policy or StorePolicy()
        self.state_machine = OrderStateMachine(
            allow_dispatch_revert=self.policy.allow_dispatch_revert
        )
        self.mode = "local"

        self._orders: List[Order] = []
        self._lock = threading.RLock()

        logger.info(
            "OrderStore initialized",
            extra={
                "cache": getattr(cache, "path", None) is not None,
                "database": database is not None,
                "allow_dispatch_revert": self.policy.allow_dispatch_revert
            }
        )

    # ========================================================================
    # LOADING
    # ========================================================================

    async def load(self) -> str:
        """
        Load the collection from the backend, falling back to the local
        snapshot when the backend is absent or unreachable.

        Returns:
            "remote" or "local"
        """
        records = None

        if self.database is not None and self.database.is_configured():
            try:
                records = await self.database.fetch_orders()
                mode = "remote"
            except BackendUnavailableError as e:
                logger.warning(f"Backend unavailable, using local snapshot: {str(e)}")
                if METRICS_ENABLED:
                    order_backend_fallbacks_total.inc()

        if records is None:
            records = self.cache.read() if self.cache is not None else []
            mode = "local"

        orders = orders_from_records(records)
        orders.sort(key=lambda o: o.created_at, reverse=True)

        with self._lock:
            self._orders = orders
            self.mode = mode
            if mode == "remote":
                self._write_cache()

        logger.info(f"Loaded {len(orders)} orders ({mode} mode)")
        return mode

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, order_id: str) -> Order:
        """
        Get a copy of one order.

        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            return deepcopy(self._require(order_id))

    def list_orders(self) -> List[Order]:
        """All orders, newest first."""
        with self._lock:
            return deepcopy(self._orders)

    def find_by_order_number(self, order_number: str) -> Optional[Order]:
        """Newest order carrying the given human-facing number."""
        wanted = (order_number or "").strip().lower()
        with self._lock:
            for order in self._orders:
                if order.order_number.lower() == wanted:
                    return deepcopy(order)
        return None

    def filter_by_status(self, status: Union[OrderStatus, str]) -> List[Order]:
        return filter_by_status(self.list_orders(), status)

    def search(self, text: Optional[str]) -> List[Order]:
        return search(self.list_orders(), text)

    def query(
        self,
        status: Optional[Union[OrderStatus, str]] = None,
        text: Optional[str] = None
    ) -> List[Order]:
        """Status filter followed by text search."""
        orders = self.list_orders()
        if status is not None:
            orders = filter_by_status(orders, self._parse_status(status))
        return search(orders, text)

    def packaging_summary(self, order_id: str) -> Dict[str, Any]:
        order = self.get(order_id)
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "by_deposit": consolidate_packaging(order.packaging_entries),
            "by_deposit_and_type": packaging_breakdown(order.packaging_entries),
            "total_units": order.total_units,
        }

    def stats(self) -> Dict[str, int]:
        """Order counts per status."""
        with self._lock:
            counts = {status.name.lower(): 0 for status in OrderStatus}
            for order in self._orders:
                counts[order.status.name.lower()] += 1
            counts["total"] = len(self._orders)
        return counts

    def recommended_labels(self) -> Dict[str, List[str]]:
        return {
            "deposits": list(self.policy.recommended_deposits),
            "package_types": list(self.policy.recommended_package_types),
        }

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def create(
        self,
        customer_name: str,
        locality: str,
        order_number: Optional[str] = None,
        reviewer: Optional[str] = None,
        *,
        items: Optional[List[Any]] = None,
        source: str = "Manual",
        source_detail: Optional[str] = None
    ) -> Order:
        """
        Enter a new order at the front of the collection.

        Raises:
            ValidationError: If a field is invalid
        """
        with self._lock:
            fields = self._validate_fields({
                "customer_name": customer_name,
                "locality": locality if locality is not None else "",
                "reviewer": reviewer,
                "items": items or [],
                "source": source,
                "source_detail": source_detail,
            })

            if order_number is None or not str(order_number).strip():
                fields["order_number"] = self._generate_order_number()
            else:
                fields.update(self._validate_fields({"order_number": order_number}))

            order = Order(history=initial_history(), **fields)
            self._orders.insert(0, order)
            self._persist(order)

            if METRICS_ENABLED:
                orders_created_total.labels(source=order.source).inc()

            logger.info(
                f"Order entered: {order.order_number} ({order.customer_name})",
                extra={"order_id": order.id, "source": order.source}
            )
            return deepcopy(order)

    def patch(
        self,
        order_id: str,
        fields: Dict[str, Any],
        actor: Optional[str] = None
    ) -> Order:
        """
        Overwrite the given fields; no history entry.

        Raises:
            NotFoundError: If the id is unknown
            ValidationError: If a field is unknown, immutable or invalid
            LockConflictError: If actor is given and another user holds the lock
        """
        with self._lock:
            order = self._require(order_id)
            self._check_lock(order, actor)
            changes = self._validate_fields(fields, order_id=order_id)

            for name, value in changes.items():
                setattr(order, name, value)

            self._persist(order)
            logger.info(
                f"Order {order.order_number} updated: {', '.join(sorted(changes))}",
                extra={"order_id": order.id, "actor": actor}
            )
            return deepcopy(order)

    def transition(
        self,
        order_id: str,
        new_status: Union[OrderStatus, str],
        fields: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Order:
        """
        Apply fields, move to new_status, release the lock and append
        history. Nothing is changed if any check fails.

        Raises:
            NotFoundError: If the id is unknown
            ValidationError: If a field is invalid
            StateTransitionError: If the edge is not allowed
            LockConflictError: If actor is given and another user holds the lock
        """
        target = self._parse_status(new_status)

        with self._lock:
            order = self._require(order_id)
            self._check_lock(order, actor)
            changes = self._validate_fields(fields or {}, order_id=order_id)

            try:
                self.state_machine.check(order.status, target)
            except ValidationError:
                self._count_validation_failure("status")
                raise

            from_status = order.status
            for name, value in changes.items():
                setattr(order, name, value)
            self.state_machine.apply(order, target)

            self._persist(order)

            if METRICS_ENABLED:
                order_transitions_total.labels(
                    from_status=from_status.value,
                    to_status=target.value
                ).inc()

            return deepcopy(order)

    def revert_dispatch(self, order_id: str, actor: Optional[str] = None) -> Order:
        """Administrative DISPATCHED -> COMPLETED (clears the carrier)."""
        return self.transition(order_id, OrderStatus.COMPLETED, actor=actor)

    def acquire_lock(
        self,
        order_id: str,
        holder: str,
        elevated: Optional[bool] = None
    ) -> Order:
        """
        Mark the order as being edited by holder.

        Re-acquiring by the current holder succeeds; elevated users take
        over any lock.

        Raises:
            NotFoundError: If the id is unknown
            ValidationError: If holder is blank
            LockConflictError: If another, non-elevated holder is refused
        """
        name = (holder or "").strip()
        if not name:
            self._count_validation_failure("locked_by")
            raise ValidationError("Lock holder is required", field="locked_by")

        with self._lock:
            order = self._require(order_id)
            is_elevated = self._is_elevated(name) if elevated is None else elevated

            if order.locked_by and order.locked_by != name and not is_elevated:
                if METRICS_ENABLED:
                    order_lock_conflicts_total.inc()
                logger.warning(
                    f"Lock refused on {order.order_number}: held by {order.locked_by}",
                    extra={"order_id": order.id, "requested_by": name}
                )
                raise LockConflictError(order.id, order.locked_by, requested_by=name)

            if order.locked_by != name:
                previous = order.locked_by
                order.locked_by = name
                self._persist(order)
                logger.info(
                    f"Order {order.order_number} locked by {name}",
                    extra={"order_id": order.id, "previous_holder": previous}
                )

            return deepcopy(order)

    def release_lock(self, order_id: str) -> Order:
        """
        Clear the edit lock unconditionally.

        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            order = self._require(order_id)

            if order.locked_by is not None:
                logger.info(
                    f"Order {order.order_number} released by {order.locked_by}",
                    extra={"order_id": order.id}
                )
                order.locked_by = None
                self._persist(order)

            return deepcopy(order)

    def add_packaging_entry(
        self,
        order_id: str,
        entry: Union[PackagingEntry, Dict[str, Any]],
        actor: Optional[str] = None
    ) -> Order:
        """Append one packaging line."""
        with self._lock:
            order = self._require(order_id)
            entries = list(order.packaging_entries) + [self._coerce_packaging_entry(entry)]
            return self.patch(order_id, {"packaging_entries": entries}, actor=actor)

    def remove_packaging_entry(
        self,
        order_id: str,
        index: int,
        actor: Optional[str] = None
    ) -> Order:
        """
        Delete one packaging line by position.

        Raises:
            ValidationError: If index is out of range
        """
        with self._lock:
            order = self._require(order_id)
            entries = list(order.packaging_entries)

            if not 0 <= index < len(entries):
                self._count_validation_failure("packaging_entries")
                raise ValidationError(
                    f"Packaging entry {index} does not exist",
                    field="packaging_entries"
                )

            del entries[index]
            return self.patch(order_id, {"packaging_entries": entries}, actor=actor)

    def reset(self) -> int:
        """
        Drop the whole collection (local, snapshot and backend).

        Returns:
            Number of orders removed
        """
        with self._lock:
            count = len(self._orders)
            self._orders = []
            self._write_cache()

            if self.database is not None:
                self.database.delete_all_orders()

        logger.warning(f"Order collection reset ({count} orders removed)")
        return count

    # ========================================================================
    # REMOTE CHANGES
    # ========================================================================

    def apply_remote_change(
        self,
        event: str,
        payload: Union[Order, Dict[str, Any], str]
    ) -> bool:
        """
        Apply a whole-record change pushed by the backend.

        insert/update replace by id (unknown ids go to the front);
        delete removes by id. Idempotent. Written to the snapshot but
        never echoed back to the backend.

        Returns:
            True if the collection changed
        """
        kind = (event or "").lower()

        if kind in ("insert", "update"):
            if isinstance(payload, Order):
                incoming = deepcopy(payload)
            else:
                try:
                    incoming = Order.from_record(payload)
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Ignoring malformed remote {kind}: {str(e)}")
                    return False

            with self._lock:
                index = self._index_of(incoming.id)
                if index is None:
                    self._orders.insert(0, incoming)
                elif self._orders[index] == incoming:
                    return False
                else:
                    self._orders[index] = incoming
                self._write_cache()

        elif kind == "delete":
            order_id = payload if isinstance(payload, str) else (
                payload.id if isinstance(payload, Order) else (payload or {}).get("id")
            )

            with self._lock:
                index = self._index_of(order_id) if order_id else None
                if index is None:
                    return False
                del self._orders[index]
                self._write_cache()

        else:
            logger.warning(f"Ignoring unknown remote event: {event}")
            return False

        if METRICS_ENABLED:
            order_remote_changes_total.labels(event=kind).inc()

        logger.debug(f"Applied remote {kind}")
        return True

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _index_of(self, order_id: str) -> Optional[int]:
        for index, order in enumerate(self._orders):
            if order.id == order_id:
                return index
        return None

    def _require(self, order_id: str) -> Order:
        index = self._index_of(order_id)
        if index is None:
            raise NotFoundError(order_id)
        return self._orders[index]

    def _is_elevated(self, name: Optional[str]) -> bool:
        return bool(name) and name in self.policy.elevated_users

    def _check_lock(self, order: Order, actor: Optional[str]):
        """Writes with an actor must respect another user's lock."""
        if actor is None or order.locked_by is None:
            return
        if order.locked_by != actor and not self._is_elevated(actor):
            if METRICS_ENABLED:
                order_lock_conflicts_total.inc()
            raise LockConflictError(order.id, order.locked_by, requested_by=actor)

    def _parse_status(self, value: Union[OrderStatus, str]) -> OrderStatus:
        try:
            return OrderStatus.parse(value)
        except ValueError as e:
            self._count_validation_failure("status")
            raise ValidationError(str(e), field="status")

    def _count_validation_failure(self, field_name: str):
        if METRICS_ENABLED:
            order_validation_failures_total.labels(field=field_name).inc()

    def _fail(self, message: str, field_name: str):
        self._count_validation_failure(field_name)
        logger.warning(f"Validation failed ({field_name}): {message}")
        raise ValidationError(message, field=field_name)

    def _validate_fields(
        self,
        fields: Dict[str, Any],
        order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Check a field mapping. Text values are kept exactly as given.

        Returns:
            New mapping safe to assign onto an order
        """
        if not isinstance(fields, dict):
            self._fail("Fields must be a mapping", "fields")

        changes: Dict[str, Any] = {}

        for name, value in fields.items():
            if name in self.IMMUTABLE_FIELDS:
                self._fail(f"Field '{name}' cannot be patched", name)
            if name not in self.PATCHABLE_FIELDS:
                self._fail(f"Unknown field '{name}'", name)

            if name == "customer_name":
                if not isinstance(value, str) or not value.strip():
                    self._fail("Customer name is required", name)
                changes[name] = value

            elif name == "order_number":
                if not isinstance(value, str) or not value.strip():
                    self._fail("Order number cannot be blank", name)
                if self.policy.enforce_unique_order_number and self._number_taken(value, order_id):
                    self._fail(f"Order number {value} already exists", name)
                changes[name] = value

            elif name == "locality":
                if value is not None and not isinstance(value, str):
                    self._fail("Locality must be text", name)
                changes[name] = value

            elif name in self.OPTIONAL_TEXT_FIELDS:
                if value is not None and not isinstance(value, str):
                    self._fail(f"Field '{name}' must be text", name)
                changes[name] = value

            elif name == "source":
                if value not in SOURCES:
                    self._fail(f"Source must be one of {', '.join(SOURCES)}", name)
                changes[name] = value

            elif name == "packaging_entries":
                if not isinstance(value, (list, tuple)):
                    self._fail("Packaging entries must be a list", name)
                changes[name] = [self._coerce_packaging_entry(e) for e in value]

            elif name == "items":
                if not isinstance(value, (list, tuple)):
                    self._fail("Items must be a list", name)
                changes[name] = [self._coerce_item(i) for i in value]

        return changes

    def _coerce_packaging_entry(self, value: Any) -> PackagingEntry:
        if isinstance(value, PackagingEntry):
            deposit, package_type, quantity = value.deposit, value.package_type, value.quantity
        elif isinstance(value, dict):
            deposit = value.get("deposit")
            package_type = value.get("package_type", value.get("type"))
            quantity = value.get("quantity")
        else:
            self._fail("Invalid packaging entry", "packaging_entries")

        # Checked on the raw values; no int()/str() coercion
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            self._fail("Packaging quantity must be a whole number", "packaging_entries")
        if quantity <= 0:
            self._fail("Packaging quantity must be positive", "packaging_entries")
        if not isinstance(deposit, str) or not isinstance(package_type, str):
            self._fail("Packaging deposit and type must be text", "packaging_entries")
        if not deposit.strip() or not package_type.strip():
            self._fail("Packaging deposit and type are required", "packaging_entries")

        return PackagingEntry(deposit=deposit, package_type=package_type, quantity=quantity)

    def _coerce_item(self, value: Any) -> OrderItem:
        if isinstance(value, OrderItem):
            item = value
        elif isinstance(value, dict):
            if not isinstance(value.get("name"), str):
                self._fail("Item name must be text", "items")
            item = OrderItem.from_dict(value)
        elif isinstance(value, str):
            item = OrderItem(name=value, quantity=1)
        else:
            self._fail("Invalid order item", "items")

        if not item.name.strip():
            self._fail("Item name is required", "items")
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, (int, float)):
            self._fail("Item quantity must be a number", "items")
        if item.quantity <= 0:
            self._fail("Item quantity must be positive", "items")

        return OrderItem(name=item.name.strip(), quantity=item.quantity)

    def _number_taken(self, number: str, exclude_id: Optional[str] = None) -> bool:
        wanted = number.strip().lower()
        return any(
            o.order_number.strip().lower() == wanted and o.id != exclude_id
            for o in self._orders
        )

    def _generate_order_number(self) -> str:
        """Random PREFIX-### number, avoiding existing ones when possible."""
        prefix = self.policy.order_number_prefix
        candidate = f"{prefix}-{random.randint(100, 999)}"

        for _ in range(self.MAX_NUMBER_ATTEMPTS):
            if not self._number_taken(candidate):
                return candidate
            candidate = f"{prefix}-{random.randint(100, 999)}"

        if self.policy.enforce_unique_order_number:
            self._fail("No free order number available", "order_number")

        logger.warning(f"Generated order number {candidate} is already in use")
        return candidate

    def _write_cache(self):
        if self.cache is not None:
            self.cache.write([o.to_record() for o in self._orders])

    def _persist(self, order: Order):
        """Snapshot locally and queue the row for the backend."""
        self._write_cache()

        if self.database is not None:
            if not self.database.upsert_order(order.to_record()):
                logger.debug(f"Backend write not queued for {order.order_number}")
