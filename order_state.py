"""
Order State Machine
===================
Formal status transitions for the order pipeline.

State invariants:
- Status only changes through an edge listed in the transition table
- Every applied transition appends exactly one history entry
- The last history entry always carries the current status
"""

import logging
from typing import Dict, Optional, Set, Tuple

from exceptions import ValidationError
from order import HistoryEntry, Order, OrderStatus, utc_now

logger = logging.getLogger(__name__)


CREATED_LABEL = "order entered"
GENERIC_LABEL = "status updated"


class StateTransitionError(ValidationError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, from_status: OrderStatus, to_status: OrderStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition: {from_status.name} -> {to_status.name}",
            field="status"
        )


class OrderStateMachine:
    """
    Transition table for order status.

    Forward flow:
        PENDING -> COMPLETED -> DISPATCHED

    Administrative revert (policy flag):
        DISPATCHED -> COMPLETED
    """

    FORWARD_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
        OrderStatus.PENDING: {OrderStatus.COMPLETED},
        OrderStatus.COMPLETED: {OrderStatus.DISPATCHED},
        OrderStatus.DISPATCHED: set(),
    }

    REVERT_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
        OrderStatus.DISPATCHED: {OrderStatus.COMPLETED},
    }

    LABELS: Dict[Tuple[OrderStatus, OrderStatus], str] = {
        (OrderStatus.PENDING, OrderStatus.COMPLETED): "preparation finished in warehouse",
        (OrderStatus.COMPLETED, OrderStatus.DISPATCHED): "handed to carrier",
        (OrderStatus.DISPATCHED, OrderStatus.COMPLETED): "returned from dispatch",
    }

    # Fields cleared when an edge is taken
    CLEARED_FIELDS: Dict[Tuple[OrderStatus, OrderStatus], Tuple[str, ...]] = {
        (OrderStatus.DISPATCHED, OrderStatus.COMPLETED): ("carrier",),
    }

    def __init__(self, allow_dispatch_revert: bool = False):
        self.allow_dispatch_revert = allow_dispatch_revert

    def allowed_targets(self, current: OrderStatus) -> Set[OrderStatus]:
        """Statuses reachable from current under the active policy."""
        targets = set(self.FORWARD_TRANSITIONS.get(current, set()))
        if self.allow_dispatch_revert:
            targets |= self.REVERT_TRANSITIONS.get(current, set())
        return targets

    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        return target in self.allowed_targets(current)

    def check(self, current: OrderStatus, target: OrderStatus) -> None:
        """
        Validate an edge without applying it.

        Raises:
            StateTransitionError: If the edge is not in the table
        """
        if not self.can_transition(current, target):
            logger.warning(
                f"Rejected transition: {current.name} -> {target.name}",
                extra={
                    "from_status": current.value,
                    "to_status": target.value,
                    "revert_allowed": self.allow_dispatch_revert
                }
            )
            raise StateTransitionError(current, target)

    @classmethod
    def label_for(cls, current: OrderStatus, target: OrderStatus) -> str:
        return cls.LABELS.get((current, target), GENERIC_LABEL)

    def apply(self, order: Order, target: OrderStatus) -> HistoryEntry:
        """
        Move an order along a validated edge.

        Sets the status, clears the soft lock and any edge-specific
        fields, and appends the history entry.

        Returns:
            The appended history entry
        """
        current = order.status
        self.check(current, target)

        for field_name in self.CLEARED_FIELDS.get((current, target), ()):
            setattr(order, field_name, None)

        entry = HistoryEntry(
            status=target,
            label=self.label_for(current, target),
            timestamp=utc_now()
        )
        order.status = target
        order.locked_by = None
        order.history.append(entry)

        logger.info(
            f"Order {order.order_number}: {current.name} -> {target.name}",
            extra={
                "order_id": order.id,
                "from_status": current.value,
                "to_status": target.value,
                "history_length": len(order.history)
            }
        )
        return entry


def initial_history() -> list:
    """History of a freshly entered order."""
    return [HistoryEntry(status=OrderStatus.PENDING, label=CREATED_LABEL)]


def history_is_consistent(order: Order) -> bool:
    """True if the history ends on the order's current status."""
    return bool(order.history) and order.history[-1].status == order.status


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    """Next forward stage, or None at the end of the pipeline."""
    targets = OrderStateMachine.FORWARD_TRANSITIONS.get(current, set())
    return next(iter(targets), None)
