"""Tests for the order store: operations, invariants and views."""

import asyncio
import itertools

import pytest

from conftest import FakeDatabase
from exceptions import LockConflictError, NotFoundError, ValidationError
from order import Order, OrderStatus, PackagingEntry
from order_state import CREATED_LABEL, StateTransitionError, history_is_consistent
from store import (
    OrderStore,
    StorePolicy,
    consolidate_packaging,
    filter_by_status,
    packaging_breakdown,
    search,
)


# ============================================================================
# CREATE
# ============================================================================

class TestCreate:
    def test_create_order(self, store):
        order = store.create("Test Co", "Rosario", order_number="P-100")

        assert order.status == OrderStatus.PENDING
        assert order.order_number == "P-100"
        assert len(order.history) == 1
        assert order.history[0].status == OrderStatus.PENDING
        assert order.history[0].label == CREATED_LABEL
        assert order.locked_by is None
        assert order.packaging_entries == []

    def test_newest_first(self, store):
        first = store.create("First", "X")
        second = store.create("Second", "Y")

        assert [o.id for o in store.list_orders()] == [second.id, first.id]

    def test_generated_order_number(self, store):
        order = store.create("Test Co", "Rosario")

        prefix, number = order.order_number.split("-")
        assert prefix == "P"
        assert 100 <= int(number) <= 999

    def test_blank_customer_name_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create("   ", "Rosario")

        assert exc_info.value.field == "customer_name"
        assert store.list_orders() == []

    def test_unknown_source_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create("Test Co", "Rosario", source="Fax")

    def test_items_and_source(self, store):
        order = store.create(
            "Test Co",
            "Rosario",
            items=[{"name": "Harina", "quantity": 2}, "Azucar"],
            source="WhatsApp",
            source_detail="+54 341 555 0000",
        )

        assert [(i.name, i.quantity) for i in order.items] == [("Harina", 2), ("Azucar", 1)]
        assert order.source == "WhatsApp"

    def test_duplicate_order_number_allowed_by_default(self, store):
        store.create("A", "X", order_number="P-100")
        store.create("B", "Y", order_number="P-100")

        assert len(store.list_orders()) == 2

    def test_duplicate_order_number_rejected_when_enforced(self, cache):
        store = OrderStore(cache=cache, policy=StorePolicy(enforce_unique_order_number=True))
        store.create("A", "X", order_number="P-100")

        with pytest.raises(ValidationError) as exc_info:
            store.create("B", "Y", order_number="p-100")

        assert exc_info.value.field == "order_number"
        assert len(store.list_orders()) == 1


# ============================================================================
# READS
# ============================================================================

class TestReads:
    def test_get_unknown_id(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.get("missing")

        assert exc_info.value.order_id == "missing"

    def test_reads_return_copies(self, store, sample_order):
        copy = store.get(sample_order.id)
        copy.customer_name = "Changed"
        copy.history.clear()

        stored = store.get(sample_order.id)
        assert stored.customer_name == "Test Co"
        assert len(stored.history) == 1

    def test_find_by_order_number(self, store, sample_order):
        found = store.find_by_order_number("p-100")

        assert found.id == sample_order.id
        assert store.find_by_order_number("P-999") is None

    def test_stats(self, store):
        first = store.create("A", "X")
        store.create("B", "Y")
        store.transition(first.id, OrderStatus.COMPLETED)

        assert store.stats() == {"pending": 1, "completed": 1, "dispatched": 0, "total": 2}


# ============================================================================
# PATCH
# ============================================================================

class TestPatch:
    def test_patch_overwrites_only_given_fields(self, store, sample_order):
        before = store.get(sample_order.id).to_record()

        store.patch(sample_order.id, {"notes": "fragile", "location": "Shelf 3"})
        after = store.get(sample_order.id).to_record()

        expected = dict(before, notes="fragile", location="Shelf 3")
        assert after == expected

    def test_patched_fields_read_back_as_written(self, store, sample_order):
        fields = {
            "customer_name": "  Test Co SA  ",
            "order_number": " P-100b",
            "locality": None,
            "reviewer": "Ana",
        }

        order = store.patch(sample_order.id, fields)
        stored = store.get(sample_order.id)

        for name, value in fields.items():
            assert getattr(order, name) == value
            assert getattr(stored, name) == value

    def test_patch_does_not_touch_history(self, store, sample_order):
        store.patch(sample_order.id, {"reviewer": "Ana"})

        assert len(store.get(sample_order.id).history) == 1

    @pytest.mark.parametrize("field_name", ["id", "created_at", "status", "history", "locked_by"])
    def test_immutable_fields_rejected(self, store, sample_order, field_name):
        with pytest.raises(ValidationError) as exc_info:
            store.patch(sample_order.id, {field_name: "x"})

        assert exc_info.value.field == field_name

    def test_unknown_field_rejected(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.patch(sample_order.id, {"colour": "red"})

    def test_invalid_values_leave_order_untouched(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.patch(sample_order.id, {
                "notes": "should not stick",
                "packaging_entries": [{"deposit": "A", "package_type": "CAJA", "quantity": 0}],
            })

        assert store.get(sample_order.id).notes is None

    def test_patch_unknown_order(self, store):
        with pytest.raises(NotFoundError):
            store.patch("missing", {"notes": "x"})

    def test_patch_by_other_user_blocked_by_lock(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")

        with pytest.raises(LockConflictError):
            store.patch(sample_order.id, {"notes": "x"}, actor="B")

    def test_patch_without_actor_bypasses_lock(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")

        order = store.patch(sample_order.id, {"notes": "x"})

        assert order.notes == "x"
        assert order.locked_by == "A"


# ============================================================================
# TRANSITION
# ============================================================================

class TestTransition:
    def test_complete_with_packaging(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")

        order = store.transition(
            sample_order.id,
            OrderStatus.COMPLETED,
            {"packaging_entries": [{"deposit": "E", "type": "CAJA", "quantity": 3}]},
        )

        assert order.status == OrderStatus.COMPLETED
        assert order.locked_by is None
        assert len(order.history) == 2
        assert order.history[-1].status == OrderStatus.COMPLETED
        assert order.packaging_entries == [PackagingEntry("E", "CAJA", 3)]
        assert order.total_units == 3

    def test_full_chain_keeps_history_consistent(self, store, sample_order):
        applied = 0
        for target in (OrderStatus.COMPLETED, OrderStatus.DISPATCHED):
            order = store.transition(sample_order.id, target)
            applied += 1
            assert len(order.history) == applied + 1
            assert history_is_consistent(order)

    def test_status_accepts_wire_value(self, store, sample_order):
        order = store.transition(sample_order.id, "COMPLETADO")

        assert order.status == OrderStatus.COMPLETED

    def test_unknown_status(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.transition(sample_order.id, "LOST")

    def test_illegal_transition_changes_nothing(self, store, sample_order):
        with pytest.raises(StateTransitionError):
            store.transition(sample_order.id, OrderStatus.DISPATCHED, {"carrier": "Andreani"})

        order = store.get(sample_order.id)
        assert order.status == OrderStatus.PENDING
        assert order.carrier is None
        assert len(order.history) == 1

    def test_revert_disabled_by_default(self, store, sample_order):
        store.transition(sample_order.id, OrderStatus.COMPLETED)
        store.transition(sample_order.id, OrderStatus.DISPATCHED, {"carrier": "Andreani"})

        with pytest.raises(StateTransitionError):
            store.revert_dispatch(sample_order.id)

    def test_revert_when_allowed(self, cache):
        store = OrderStore(cache=cache, policy=StorePolicy(allow_dispatch_revert=True))
        order = store.create("Test Co", "Rosario")
        store.transition(order.id, OrderStatus.COMPLETED)
        store.transition(order.id, OrderStatus.DISPATCHED, {"carrier": "Andreani"})

        reverted = store.revert_dispatch(order.id)

        assert reverted.status == OrderStatus.COMPLETED
        assert reverted.carrier is None
        assert len(reverted.history) == 4
        assert history_is_consistent(reverted)

    def test_transition_by_other_user_blocked_by_lock(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")

        with pytest.raises(LockConflictError):
            store.transition(sample_order.id, OrderStatus.COMPLETED, actor="B")

        assert store.get(sample_order.id).status == OrderStatus.PENDING


# ============================================================================
# LOCKING
# ============================================================================

class TestLocking:
    def test_second_holder_refused_until_release(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")

        with pytest.raises(LockConflictError) as exc_info:
            store.acquire_lock(sample_order.id, "B")
        assert exc_info.value.holder == "A"

        store.release_lock(sample_order.id)
        order = store.acquire_lock(sample_order.id, "B")

        assert order.locked_by == "B"

    def test_reacquire_by_holder_is_idempotent(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")
        order = store.acquire_lock(sample_order.id, "A")

        assert order.locked_by == "A"

    def test_elevated_user_takes_over(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")
        order = store.acquire_lock(sample_order.id, "Administrador")

        assert order.locked_by == "Administrador"

    def test_explicit_elevated_flag(self, store, sample_order):
        store.acquire_lock(sample_order.id, "A")
        order = store.acquire_lock(sample_order.id, "B", elevated=True)

        assert order.locked_by == "B"

    def test_blank_holder_rejected(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.acquire_lock(sample_order.id, " ")

    def test_release_unlocked_order(self, store, sample_order):
        assert store.release_lock(sample_order.id).locked_by is None

    def test_lock_unknown_order(self, store):
        with pytest.raises(NotFoundError):
            store.acquire_lock("missing", "A")


# ============================================================================
# PACKAGING
# ============================================================================

class TestPackaging:
    def test_add_and_remove_entries(self, store, sample_order):
        store.add_packaging_entry(sample_order.id, {"deposit": "A", "package_type": "CAJA", "quantity": 2})
        store.add_packaging_entry(sample_order.id, PackagingEntry("B", "BOLSA", 5))

        order = store.remove_packaging_entry(sample_order.id, 0)

        assert order.packaging_entries == [PackagingEntry("B", "BOLSA", 5)]
        assert order.total_units == 5

    def test_remove_out_of_range(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.remove_packaging_entry(sample_order.id, 3)

    def test_custom_labels_accepted(self, store, sample_order):
        order = store.add_packaging_entry(
            sample_order.id,
            {"deposit": "Galpon Norte", "package_type": "PALLET", "quantity": 1},
        )

        assert order.packaging_entries[0].deposit == "Galpon Norte"

    def test_non_numeric_quantity_rejected(self, store, sample_order):
        with pytest.raises(ValidationError):
            store.add_packaging_entry(sample_order.id, {"deposit": "A", "package_type": "CAJA", "quantity": "many"})

    @pytest.mark.parametrize("quantity", [2.7, 2.0, True, "3", None])
    def test_quantity_must_be_an_int(self, store, sample_order, quantity):
        with pytest.raises(ValidationError):
            store.add_packaging_entry(
                sample_order.id,
                {"deposit": "A", "package_type": "CAJA", "quantity": quantity},
            )

        assert store.get(sample_order.id).packaging_entries == []

    @pytest.mark.parametrize("entry", [
        {"deposit": None, "package_type": "CAJA", "quantity": 1},
        {"deposit": "A", "package_type": None, "quantity": 1},
        {"deposit": 7, "package_type": "CAJA", "quantity": 1},
        {"package_type": "CAJA", "quantity": 1},
    ])
    def test_deposit_and_type_must_be_text(self, store, sample_order, entry):
        with pytest.raises(ValidationError):
            store.add_packaging_entry(sample_order.id, entry)

        assert store.get(sample_order.id).packaging_entries == []

    def test_item_name_must_be_text(self, store):
        with pytest.raises(ValidationError):
            store.create("Test Co", "Rosario", items=[{"name": None, "quantity": 1}])

    def test_packaging_summary(self, store, sample_order):
        store.patch(sample_order.id, {"packaging_entries": [
            {"deposit": "A", "package_type": "CAJA", "quantity": 2},
            {"deposit": "A", "package_type": "BOLSA", "quantity": 1},
            {"deposit": "C", "package_type": "CAJA", "quantity": 4},
        ]})

        summary = store.packaging_summary(sample_order.id)

        assert summary["by_deposit"] == {"A": 3, "C": 4}
        assert summary["by_deposit_and_type"] == {"A": {"CAJA": 2, "BOLSA": 1}, "C": {"CAJA": 4}}
        assert summary["total_units"] == 7

    def test_recommended_labels(self, store):
        labels = store.recommended_labels()

        assert labels["deposits"] == ["A", "B", "C", "D", "E"]
        assert "CAJA" in labels["package_types"]


# ============================================================================
# PURE VIEWS
# ============================================================================

def _orders():
    return [
        Order(customer_name="Distribuidora Sur", locality="Rosario", order_number="P-101"),
        Order(customer_name="Almacen Norte", locality="Cordoba", order_number="P-102",
              status=OrderStatus.COMPLETED),
        Order(customer_name="Kiosco Centro", locality="Santa Fe", order_number="P-203",
              status=OrderStatus.DISPATCHED),
    ]


class TestViews:
    def test_consolidate_is_permutation_invariant(self):
        entries = [
            PackagingEntry("A", "CAJA", 2),
            PackagingEntry("B", "BOLSA", 3),
            PackagingEntry("A", "BULTO", 4),
        ]

        expected = consolidate_packaging(entries)
        for permutation in itertools.permutations(entries):
            assert consolidate_packaging(permutation) == expected

        assert expected == {"A": 6, "B": 3}

    def test_consolidate_is_split_invariant(self):
        whole = [PackagingEntry("E", "CAJA", 6)]
        split = [PackagingEntry("E", "CAJA", 3), PackagingEntry("E", "CAJA", 3)]

        assert consolidate_packaging(whole) == consolidate_packaging(split)
        assert packaging_breakdown(whole) == packaging_breakdown(split)

    def test_consolidate_empty(self):
        assert consolidate_packaging([]) == {}

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_blank_search_returns_everything(self, text):
        orders = _orders()

        assert search(orders, text) == orders

    def test_search_fields(self):
        orders = _orders()

        assert [o.order_number for o in search(orders, "norte")] == ["P-102"]
        assert [o.order_number for o in search(orders, "p-10")] == ["P-101", "P-102"]
        assert [o.order_number for o in search(orders, "SANTA")] == ["P-203"]
        assert search(orders, "zzz") == []

    def test_search_matches_query_as_typed(self):
        orders = _orders()

        assert search(orders, "P-1 ") == []
        assert [o.order_number for o in search(orders, "P-101")] == ["P-101"]

    def test_filter_by_status_is_idempotent(self):
        orders = _orders()

        once = filter_by_status(orders, OrderStatus.COMPLETED)
        twice = filter_by_status(once, OrderStatus.COMPLETED)

        assert once == twice
        assert [o.order_number for o in once] == ["P-102"]

    def test_query_combines_filter_and_search(self, store):
        store.create("Almacen Norte", "Cordoba", order_number="P-1")
        target = store.create("Almacen Sur", "Cordoba", order_number="P-2")
        store.transition(target.id, OrderStatus.COMPLETED)

        result = store.query(status="COMPLETADO", text="almacen")

        assert [o.id for o in result] == [target.id]


# ============================================================================
# PERSISTENCE
# ============================================================================

class TestPersistence:
    def test_mutations_write_snapshot(self, store, cache, sample_order):
        store.patch(sample_order.id, {"notes": "fragile"})

        records = cache.read()
        assert len(records) == 1
        assert records[0]["notes"] == "fragile"

    def test_mutations_queue_backend_upserts(self, cache, fake_db):
        store = OrderStore(cache=cache, database=fake_db)
        order = store.create("Test Co", "Rosario")
        store.acquire_lock(order.id, "A")

        assert [r["id"] for r in fake_db.upserts] == [order.id, order.id]
        assert fake_db.upserts[-1]["locked_by"] == "A"

    def test_rejected_mutation_persists_nothing(self, cache, fake_db):
        store = OrderStore(cache=cache, database=fake_db)

        with pytest.raises(ValidationError):
            store.create("", "Rosario")

        assert fake_db.upserts == []

    def test_reset(self, cache, fake_db):
        store = OrderStore(cache=cache, database=fake_db)
        store.create("A", "X")
        store.create("B", "Y")

        assert store.reset() == 2
        assert store.list_orders() == []
        assert cache.read() == []
        assert fake_db.delete_all_calls == 1

    def test_load_from_backend(self, cache):
        remote = Order(customer_name="Remote", locality="X", order_number="P-1")
        store = OrderStore(cache=cache, database=FakeDatabase(records=[remote.to_record()]))

        mode = asyncio.run(store.load())

        assert mode == "remote"
        assert store.mode == "remote"
        assert [o.id for o in store.list_orders()] == [remote.id]
        assert cache.read()[0]["id"] == remote.id

    def test_load_falls_back_to_snapshot(self, cache):
        local = Order(customer_name="Cached", locality="X", order_number="P-2")
        cache.write([local.to_record()])
        store = OrderStore(cache=cache, database=FakeDatabase(fail=True))

        mode = asyncio.run(store.load())

        assert mode == "local"
        assert [o.customer_name for o in store.list_orders()] == ["Cached"]

    def test_load_without_backend(self, store, cache):
        cache.write([
            Order(customer_name="Old", locality="X", order_number="P-1",
                  created_at="2024-01-01T00:00:00+00:00").to_record(),
            Order(customer_name="New", locality="X", order_number="P-2",
                  created_at="2024-02-01T00:00:00+00:00").to_record(),
            {"order_number": "no id"},
        ])

        assert asyncio.run(store.load()) == "local"
        assert [o.customer_name for o in store.list_orders()] == ["New", "Old"]


# ============================================================================
# REMOTE CHANGES
# ============================================================================

class TestRemoteChanges:
    def test_insert_is_idempotent(self, store):
        record = Order(customer_name="Remote", locality="X", order_number="P-9").to_record()

        assert store.apply_remote_change("INSERT", record) is True
        assert store.apply_remote_change("INSERT", record) is False
        assert len(store.list_orders()) == 1

    def test_update_replaces_whole_record(self, store, sample_order):
        record = store.get(sample_order.id).to_record()
        record["notes"] = "from another tab"
        record["locked_by"] = "B"

        store.apply_remote_change("update", record)

        order = store.get(sample_order.id)
        assert order.notes == "from another tab"
        assert order.locked_by == "B"

    def test_delete(self, store, sample_order):
        assert store.apply_remote_change("delete", sample_order.id) is True
        assert store.apply_remote_change("delete", sample_order.id) is False
        assert store.list_orders() == []

    def test_remote_changes_are_not_echoed(self, cache, fake_db):
        store = OrderStore(cache=cache, database=fake_db)
        record = Order(customer_name="Remote", locality="X", order_number="P-9").to_record()

        store.apply_remote_change("insert", record)

        assert fake_db.upserts == []
        assert cache.read()[0]["id"] == record["id"]

    def test_malformed_and_unknown_events_ignored(self, store):
        assert store.apply_remote_change("insert", {"customer_name": "no id"}) is False
        assert store.apply_remote_change("truncate", {}) is False
        assert store.list_orders() == []
