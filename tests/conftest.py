"""Pytest configuration and fixtures for the order tracker tests."""

from types import SimpleNamespace

import pytest

from cache import LocalCache
from exceptions import BackendUnavailableError
from store import OrderStore, StorePolicy


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakeDatabase:
    """In-memory stand-in for db.DatabaseClient."""

    def __init__(self, records=None, fail=False):
        self.records = list(records or [])
        self.fail = fail
        self.upserts = []
        self.delete_all_calls = 0
        self.started = False
        self.stopped = False

    def is_configured(self):
        return True

    async def fetch_orders(self, timeout=None):
        if self.fail:
            raise BackendUnavailableError("backend down")
        return list(self.records)

    def upsert_order(self, record):
        self.upserts.append(record)
        return True

    def delete_all_orders(self):
        self.delete_all_calls += 1
        return True

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    def get_stats(self):
        return {"queue_size": 0, "circuit_breaker": "closed"}


class FakeQuery:
    """Chainable stand-in for a postgrest request builder."""

    def __init__(self, client, table):
        self.client = client
        self.table_name = table
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return method

    def execute(self):
        self.client.executed.append((self.table_name, self.calls))
        if self.client.failures_left > 0:
            self.client.failures_left -= 1
            raise ConnectionError("connection refused")
        return SimpleNamespace(data=list(self.client.rows))


class FakeSupabaseClient:
    """Records every executed query; fails the first `failures` calls."""

    def __init__(self, rows=None, failures=0):
        self.rows = list(rows or [])
        self.failures_left = failures
        self.executed = []

    def table(self, name):
        return FakeQuery(self, name)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def cache(tmp_path):
    """Local snapshot in a temporary directory."""
    return LocalCache(str(tmp_path / "orders_cache.json"))


@pytest.fixture
def policy():
    return StorePolicy(
        elevated_users={"Administrador"},
        recommended_deposits=["A", "B", "C", "D", "E"],
        recommended_package_types=["BOLSA", "BULTO", "CAJA", "OTRO"],
    )


@pytest.fixture
def store(cache, policy):
    """Empty store persisting to the temporary snapshot."""
    return OrderStore(cache=cache, policy=policy)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def sample_order(store):
    """A freshly entered order."""
    return store.create("Test Co", "Rosario", order_number="P-100")
