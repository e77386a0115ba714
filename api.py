"""
HTTP API
========
FastAPI surface over the order store.

The acting user is a plain name sent in the X-User header; lock checks
use it, nothing else is authenticated.

Error mapping:
- ValidationError -> 422
- LockConflictError -> 409
- NotFoundError -> 404
- BackendUnavailableError -> 503
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Union

import structlog
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict
from starlette.concurrency import run_in_threadpool

from exceptions import (
    BackendUnavailableError,
    LockConflictError,
    NotFoundError,
    OrderStoreError,
    ValidationError,
)
from store import OrderStore

try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
    METRICS_ENABLED = True
except ImportError:
    METRICS_ENABLED = False


logger = structlog.get_logger(__name__)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class PackagingEntryIn(BaseModel):
    deposit: str
    package_type: str
    quantity: int


class OrderItemIn(BaseModel):
    name: str
    quantity: Union[int, float] = 1


class OrderCreate(BaseModel):
    customer_name: str
    locality: str = ""
    order_number: Optional[str] = None
    reviewer: Optional[str] = None
    items: List[OrderItemIn] = []
    source: str = "Manual"
    source_detail: Optional[str] = None


class OrderPatch(BaseModel):
    """Any subset of the editable fields."""
    model_config = ConfigDict(extra="forbid")

    customer_name: Optional[str] = None
    locality: Optional[str] = None
    order_number: Optional[str] = None
    packaging_entries: Optional[List[PackagingEntryIn]] = None
    reviewer: Optional[str] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    items: Optional[List[OrderItemIn]] = None
    source: Optional[str] = None
    source_detail: Optional[str] = None


class TransitionRequest(BaseModel):
    status: str
    fields: Optional[OrderPatch] = None


class OrderText(BaseModel):
    text: str
    locality: str = ""
    source: str = "Correo"
    source_detail: Optional[str] = None


# ============================================================================
# ERROR HANDLERS
# ============================================================================

ERROR_STATUS = {
    ValidationError: 422,
    LockConflictError: 409,
    NotFoundError: 404,
    BackendUnavailableError: 503,
}


def _error_response(exc: OrderStoreError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    body: Dict[str, Any] = {
        "error": type(exc).__name__,
        "detail": str(exc),
    }
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, LockConflictError):
        body["holder"] = exc.holder
    if isinstance(exc, NotFoundError):
        body["order_id"] = exc.order_id

    return JSONResponse(status_code=status_code, content=body)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    store: OrderStore,
    database=None,
    feed=None,
    extractor=None,
    cors_origins: Optional[List[str]] = None
) -> FastAPI:
    """
    Build the API around an injected store and its collaborators.
    The database defaults to the one the store persists through.

    On startup the store is loaded (remote or local), the backend write
    processor and the realtime feed are started; on shutdown they are
    stopped and pending writes flushed.
    """
    if database is None:
        database = store.database

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mode = await store.load()

        if database is not None:
            await database.start()
        if feed is not None and mode == "remote":
            await feed.start()

        logger.info("api_started", mode=mode, orders=len(store.list_orders()))
        yield

        if feed is not None:
            await feed.stop()
        if database is not None:
            await database.stop()
        logger.info("api_stopped")

    app = FastAPI(title="Order Tracker", lifespan=lifespan)
    app.state.store = store

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(OrderStoreError)
    async def handle_store_error(request: Request, exc: OrderStoreError):
        logger.warning(
            "request_rejected",
            path=request.url.path,
            error=type(exc).__name__,
            detail=str(exc)
        )
        return _error_response(exc)

    # ------------------------------------------------------------------------
    # Health & monitoring
    # ------------------------------------------------------------------------

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "mode": store.mode,
            "cache": store.cache.get_stats() if store.cache is not None else None,
            "orders": store.stats()["total"],
            "database": database.get_stats() if database is not None else None,
            "realtime": feed.get_stats() if feed is not None else None,
            "extraction": extractor.get_stats() if extractor is not None else None,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/metrics")
    def metrics():
        if not METRICS_ENABLED:
            return JSONResponse(status_code=404, content={"detail": "Metrics disabled"})
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------------

    @app.get("/orders")
    def list_orders(status: Optional[str] = None, q: Optional[str] = None):
        return [order.to_dict() for order in store.query(status=status, text=q)]

    @app.get("/orders/stats")
    def order_stats():
        return store.stats()

    @app.get("/orders/packaging/options")
    def packaging_options():
        return store.recommended_labels()

    @app.post("/orders", status_code=201)
    def create_order(body: OrderCreate, x_user: Optional[str] = Header(default=None)):
        order = store.create(
            body.customer_name,
            body.locality,
            order_number=body.order_number,
            reviewer=body.reviewer,
            items=[item.model_dump() for item in body.items],
            source=body.source,
            source_detail=body.source_detail
        )
        logger.info("order_created", order_id=order.id, order_number=order.order_number, user=x_user)
        return order.to_dict()

    @app.delete("/orders")
    def reset_orders(x_user: Optional[str] = Header(default=None)):
        removed = store.reset()
        logger.warning("orders_reset", removed=removed, user=x_user)
        return {"removed": removed}

    # ------------------------------------------------------------------------
    # Text extraction
    # ------------------------------------------------------------------------

    async def _extract(text: str):
        if extractor is None:
            raise BackendUnavailableError("Text extraction is not configured")

        extracted = await extractor.extract(text)
        if extracted is None:
            raise ValidationError("No order data could be extracted from the text", field="text")
        return extracted

    @app.post("/orders/extract")
    async def extract_order(body: OrderText):
        extracted = await _extract(body.text)
        return extracted.to_dict()

    @app.post("/orders/from-text", status_code=201)
    async def create_order_from_text(body: OrderText, x_user: Optional[str] = Header(default=None)):
        extracted = await _extract(body.text)
        order = await run_in_threadpool(
            store.create,
            extracted.customer_name,
            body.locality,
            items=extracted.items,
            source=body.source,
            source_detail=body.source_detail
        )
        logger.info("order_created_from_text", order_id=order.id, items=len(order.items), user=x_user)
        return order.to_dict()

    # ------------------------------------------------------------------------
    # Single order
    # ------------------------------------------------------------------------

    @app.get("/orders/{order_id}")
    def get_order(order_id: str):
        return store.get(order_id).to_dict()

    @app.patch("/orders/{order_id}")
    def patch_order(order_id: str, body: OrderPatch, x_user: Optional[str] = Header(default=None)):
        order = store.patch(order_id, body.model_dump(exclude_unset=True), actor=x_user)
        return order.to_dict()

    @app.post("/orders/{order_id}/transition")
    def transition_order(
        order_id: str,
        body: TransitionRequest,
        x_user: Optional[str] = Header(default=None)
    ):
        fields = body.fields.model_dump(exclude_unset=True) if body.fields else None
        order = store.transition(order_id, body.status, fields=fields, actor=x_user)
        logger.info("order_transitioned", order_id=order_id, status=order.status.value, user=x_user)
        return order.to_dict()

    @app.post("/orders/{order_id}/revert")
    def revert_order(order_id: str, x_user: Optional[str] = Header(default=None)):
        order = store.revert_dispatch(order_id, actor=x_user)
        logger.info("order_reverted", order_id=order_id, user=x_user)
        return order.to_dict()

    @app.post("/orders/{order_id}/lock")
    def lock_order(order_id: str, x_user: Optional[str] = Header(default=None)):
        if not x_user:
            raise ValidationError("X-User header is required", field="locked_by")
        return store.acquire_lock(order_id, x_user).to_dict()

    @app.delete("/orders/{order_id}/lock")
    def unlock_order(order_id: str):
        return store.release_lock(order_id).to_dict()

    @app.post("/orders/{order_id}/packaging")
    def add_packaging(
        order_id: str,
        body: PackagingEntryIn,
        x_user: Optional[str] = Header(default=None)
    ):
        return store.add_packaging_entry(order_id, body.model_dump(), actor=x_user).to_dict()

    @app.delete("/orders/{order_id}/packaging/{index}")
    def remove_packaging(order_id: str, index: int, x_user: Optional[str] = Header(default=None)):
        return store.remove_packaging_entry(order_id, index, actor=x_user).to_dict()

    @app.get("/orders/{order_id}/packaging/summary")
    def packaging_summary(order_id: str):
        return store.packaging_summary(order_id)

    # ------------------------------------------------------------------------
    # Customer tracking
    # ------------------------------------------------------------------------

    @app.get("/tracking/{order_number}")
    def track_order(order_number: str):
        order = store.find_by_order_number(order_number)
        if order is None:
            raise NotFoundError(order_number)

        return {
            "order_number": order.order_number,
            "customer_name": order.customer_name,
            "status": order.status.value,
            "history": [entry.to_dict() for entry in order.history],
        }

    return app
