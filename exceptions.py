"""
Order Store Exceptions
======================
Typed errors raised by the order store and its collaborators.

Exception Hierarchy:
    OrderStoreError
    ├── ValidationError
    │   └── StateTransitionError (order_state.py)
    ├── LockConflictError
    ├── NotFoundError
    └── BackendUnavailableError
"""

from typing import Optional


class OrderStoreError(Exception):
    """Base exception for all order store errors."""
    pass


class ValidationError(OrderStoreError):
    """Raised when input is rejected before any mutation happens."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class LockConflictError(OrderStoreError):
    """Raised when an order is locked by another, non-elevated holder."""

    def __init__(self, order_id: str, holder: str, requested_by: Optional[str] = None):
        self.order_id = order_id
        self.holder = holder
        self.requested_by = requested_by
        super().__init__(f"Order {order_id} is being edited by {holder}")


class NotFoundError(OrderStoreError):
    """Raised when an order identifier is not in the collection."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class BackendUnavailableError(OrderStoreError):
    """Raised when the persistent store cannot be reached."""
    pass
