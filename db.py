"""
Database Module
===============
Async Supabase adapter for the orders table.

- Reads: awaited with a timeout, retried with linear backoff
- Writes: queued and drained by a background task (fire-and-forget)
- A circuit breaker stops hammering the table while it is failing

Never fatal: callers fall back to the local snapshot.
"""

import time
import asyncio
import logging
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
from collections import deque
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError

from exceptions import BackendUnavailableError


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
READ_TIMEOUT = 10.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
MAX_WRITE_QUEUE_SIZE = 1000
BATCH_WRITE_SIZE = 10
BATCH_WRITE_INTERVAL = 2.0  # seconds


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calls to the orders table after repeated failures.

    CLOSED -> OPEN after `threshold` consecutive failures.
    OPEN -> HALF_OPEN once `timeout` seconds have passed.
    HALF_OPEN -> CLOSED after two successes, back to OPEN on any failure.
    """

    RECOVERY_SUCCESSES = 2

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: float = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.recovery_successes = 0
        self.opened_at: Optional[float] = None

    def _trip(self):
        self.state = CircuitState.OPEN
        self.opened_at = time.monotonic()
        self.recovery_successes = 0
        logger.error(f"Orders backend circuit opened after {self.failure_count} failures")

    def record_failure(self):
        self.failure_count += 1

        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self._trip()

    def record_success(self):
        self.failure_count = 0

        if self.state is not CircuitState.HALF_OPEN:
            return

        self.recovery_successes += 1
        if self.recovery_successes >= self.RECOVERY_SUCCESSES:
            self.state = CircuitState.CLOSED
            logger.info("Orders backend circuit closed")

    def can_execute(self) -> bool:
        """False while open and still cooling down."""
        if self.state is CircuitState.OPEN:
            if self.opened_at is None or time.monotonic() - self.opened_at < self.timeout:
                return False

            self.state = CircuitState.HALF_OPEN
            self.recovery_successes = 0
            logger.info("Orders backend circuit half-open, probing")

        return True

    def get_state(self) -> str:
        return self.state.value


class WriteQueue:
    """Bounded FIFO of pending table writes."""

    def __init__(self, max_size: int = MAX_WRITE_QUEUE_SIZE):
        self.max_size = max_size
        self.dropped_count = 0
        self._pending: deque = deque()

    def enqueue(self, operation: Dict[str, Any]) -> bool:
        """
        Returns:
            False if the queue is at capacity (the write is dropped)
        """
        if len(self._pending) < self.max_size:
            self._pending.append(operation)
            return True

        self.dropped_count += 1
        logger.warning(
            f"Order write dropped, queue at capacity {self.max_size} "
            f"({self.dropped_count} dropped so far)"
        )
        return False

    def dequeue_batch(self, size: int) -> List[Dict[str, Any]]:
        count = min(size, len(self._pending))
        return [self._pending.popleft() for _ in range(count)]

    def requeue_front(self, operations: List[Dict[str, Any]]):
        """Put unprocessed operations back at the head, preserving order."""
        self._pending.extendleft(reversed(operations))

    def clear(self) -> int:
        discarded = len(self._pending)
        self._pending.clear()
        return discarded

    def size(self) -> int:
        return len(self._pending)

    def is_empty(self) -> bool:
        return not self._pending


class DatabaseClient:
    """
    Supabase client for the orders table.

    The supabase-py client is synchronous, so every call runs in the
    default executor.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        table: str = "orders",
        client: Optional[Any] = None,
        read_timeout: float = READ_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.client: Optional[Client] = client
        self.table = table
        self.read_timeout = read_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.write_queue = WriteQueue()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        self.is_running = False
        self._processor: Optional[asyncio.Task] = None

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

        if self.client is None and url and key:
            try:
                self.client = create_client(url, key)
            except Exception as e:
                logger.error(f"Could not create Supabase client for {table}: {str(e)}")

        logger.info(
            f"DatabaseClient ready (table: {table}, "
            f"{'connected' if self.client else 'no client'})"
        )

    @classmethod
    def from_config(cls, supabase_config) -> "DatabaseClient":
        """Build from a config.SupabaseConfig section."""
        return cls(
            url=supabase_config.url,
            key=supabase_config.key,
            table=supabase_config.table,
            read_timeout=float(supabase_config.connection_timeout),
            max_retries=supabase_config.max_retries,
            retry_delay=supabase_config.retry_delay
        )

    # ========================================================================
    # BACKGROUND WRITER
    # ========================================================================

    async def start(self):
        """Start draining the write queue in the background."""
        if self.is_running:
            return

        self.is_running = True
        self._processor = asyncio.create_task(self._drain_forever())
        logger.info(f"Order write processor started ({self.table})")

    async def stop(self):
        """Stop the background task, then flush what is still queued."""
        if not self.is_running:
            return

        self.is_running = False

        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
            try:
                await self._processor
            except asyncio.CancelledError:
                pass

        await self.flush_writes()
        logger.info(f"Order write processor stopped ({self.table})")

    async def _drain_forever(self):
        try:
            while self.is_running:
                await asyncio.sleep(BATCH_WRITE_INTERVAL)
                if not self.write_queue.is_empty():
                    await self._process_write_batch()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Order write processor crashed: {str(e)}")

    async def _process_write_batch(self) -> int:
        """
        Send one batch of queued writes.

        Returns:
            Number of operations attempted (0 while the breaker is open)
        """
        if not self.circuit_breaker.can_execute():
            logger.debug(f"Holding {self.write_queue.size()} writes, circuit open")
            return 0

        batch = self.write_queue.dequeue_batch(BATCH_WRITE_SIZE)

        for done, operation in enumerate(batch, start=1):
            await self._execute_write(operation)

            if self.circuit_breaker.state is CircuitState.OPEN:
                self.write_queue.requeue_front(batch[done:])
                return done

        return len(batch)

    def _run_write(self, operation: Dict[str, Any]):
        """Blocking Supabase call for one queued operation."""
        query = self.client.table(self.table)
        kind = operation.get("type")

        if kind == "upsert":
            return query.upsert(operation["data"]).execute()
        if kind == "delete_all":
            # PostgREST refuses an unfiltered delete
            return query.delete().neq("id", "").execute()

        raise ValueError(f"Unknown write operation: {kind}")

    async def _execute_write(self, operation: Dict[str, Any]) -> bool:
        """Run one write, retrying before counting a breaker failure."""
        if self.client is None:
            return False

        loop = asyncio.get_running_loop()
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                await loop.run_in_executor(None, self._run_write, operation)
            except ValueError as e:
                logger.error(f"Discarding order write: {str(e)}")
                return False
            except Exception as e:
                self.error_count += 1
                logger.error(f"Order write failed ({attempt}/{attempts}): {str(e)}")

                if attempt < attempts:
                    self.retry_count += 1
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            self.write_count += 1
            self.circuit_breaker.record_success()
            return True

        self.circuit_breaker.record_failure()
        return False

    async def flush_writes(self):
        """Drain the write queue (stops early if the breaker opens)."""
        if not self.write_queue.is_empty():
            logger.info(f"Flushing {self.write_queue.size()} pending order writes")

        while not self.write_queue.is_empty():
            if await self._process_write_batch() == 0:
                break

    # ========================================================================
    # READS
    # ========================================================================

    def _select_all(self):
        return (
            self.client
            .table(self.table)
            .select("*")
            .order("created_at", desc=True)
            .execute()
        )

    async def fetch_orders(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Fetch every order row, newest first.

        Args:
            timeout: Per-attempt timeout (defaults to read_timeout)

        Raises:
            BackendUnavailableError: If the backend cannot be read
        """
        if self.client is None:
            raise BackendUnavailableError("Database client not initialized")

        if not self.circuit_breaker.can_execute():
            raise BackendUnavailableError("Circuit breaker open, skipping read")

        timeout = timeout or self.read_timeout
        loop = asyncio.get_running_loop()
        attempts = self.max_retries + 1
        last_error = "unknown error"

        for attempt in range(1, attempts + 1):
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, self._select_all),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                last_error = f"timeout after {timeout}s"
            except APIError as e:
                last_error = f"API error: {e.message}"
            except Exception as e:
                last_error = str(e)
            else:
                self.read_count += 1
                self.circuit_breaker.record_success()
                return list(result.data or [])

            self.error_count += 1
            logger.error(f"Order fetch failed ({attempt}/{attempts}): {last_error}")

            if attempt < attempts:
                self.retry_count += 1
                await asyncio.sleep(self.retry_delay * attempt)

        self.circuit_breaker.record_failure()
        raise BackendUnavailableError(f"Could not fetch orders: {last_error}")

    # ========================================================================
    # WRITES (fire-and-forget)
    # ========================================================================

    def upsert_order(self, record: Dict[str, Any]) -> bool:
        """
        Queue an insert-or-replace of one order row.

        Returns:
            True if queued
        """
        if self.client is None:
            return False

        stamped = dict(record, updated_at=datetime.now(timezone.utc).isoformat())
        return self.write_queue.enqueue({"type": "upsert", "data": stamped})

    def delete_all_orders(self) -> bool:
        """
        Queue removal of every order row.

        Returns:
            True if queued
        """
        if self.client is None:
            return False

        # Pending upserts would resurrect deleted rows
        discarded = self.write_queue.clear()
        if discarded:
            logger.info(f"Discarded {discarded} pending writes before delete")

        return self.write_queue.enqueue({"type": "delete_all"})

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "queue_size": self.write_queue.size(),
            "queue_dropped": self.write_queue.dropped_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_configured(self) -> bool:
        return self.client is not None

    def is_healthy(self) -> bool:
        return (
            self.client is not None
            and self.circuit_breaker.state is not CircuitState.OPEN
        )
