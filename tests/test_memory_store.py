"""Tests for the in-memory row-store."""

import pytest

from typed_orm import Context, op
from typed_orm.errors import ContextCancelledError
from typed_orm.memory_store import MemoryRowStore
from typed_orm.parsing import SchemaParser
from typed_orm.rowstore import (
    QueryPlan,
    RowStore,
    TransactionalRowStore,
    UniqueConstraintViolation,
)


@pytest.fixture
def ctx():
    return Context.background()


@pytest.fixture
def registry():
    return SchemaParser().parse("""
        table item {
            id: int auto primary
            code: string unique
            label: string nullable
            price: float nullable
        }
        table tag {
            id: string auto primary
            name: string
        }
        table item_lock lock {
            id: int primary
            note: string
        }
    """)


@pytest.fixture
def store(registry, ctx):
    store = MemoryRowStore(registry)
    store.insert(ctx, "item", {"code": "a1", "label": "Apple", "price": 1.5})
    store.insert(ctx, "item", {"code": "b2", "label": "Banana", "price": None})
    store.insert(ctx, "item", {"code": "c3", "label": None, "price": 3.0})
    return store


def item_plan(*columns, where=None):
    return QueryPlan(
        table="item",
        db_key="default",
        columns=[("item", c) for c in columns],
        where=where,
    )


class TestWrites:
    """Tests for insert, update and delete."""

    def test_protocols(self, store):
        """Test that the store satisfies the row-store contract."""
        assert isinstance(store, RowStore)
        assert isinstance(store, TransactionalRowStore)

    def test_insert_generates_keys(self, store):
        """Test that auto keys count up per table."""
        assert [r["id"] for r in store.rows("item")] == [1, 2, 3]

    def test_insert_fills_missing_columns(self, registry, ctx):
        """Test that columns not given are stored as None."""
        store = MemoryRowStore(registry)

        store.insert(ctx, "item", {"code": "x"})

        assert store.rows("item") == [{"id": 1, "code": "x", "label": None, "price": None}]

    def test_string_auto_key(self, registry, ctx):
        """Test that a string auto key is generated as text."""
        store = MemoryRowStore(registry)

        assert store.insert(ctx, "tag", {"name": "red"}) == "1"
        assert store.insert(ctx, "tag", {"name": "blue"}) == "2"

    def test_manual_key_returns_none(self, registry, ctx):
        """Test that inserting a manual key generates nothing."""
        store = MemoryRowStore(registry)

        assert store.insert(ctx, "item_lock", {"id": 7, "note": "n"}) is None

    def test_insert_unique_violation(self, store, ctx):
        """Test that a duplicate unique value is rejected on insert."""
        with pytest.raises(UniqueConstraintViolation) as exc_info:
            store.insert(ctx, "item", {"code": "a1"})

        assert exc_info.value.table == "item"
        assert exc_info.value.columns == ("code",)
        assert len(store.rows("item")) == 3

    def test_duplicate_primary_key(self, registry, ctx):
        """Test that a duplicate primary key is rejected."""
        store = MemoryRowStore(registry)
        store.insert(ctx, "item_lock", {"id": 1, "note": "a"})

        with pytest.raises(UniqueConstraintViolation) as exc_info:
            store.insert(ctx, "item_lock", {"id": 1, "note": "b"})

        assert exc_info.value.columns == ("id",)

    def test_unique_ignores_null(self, registry, ctx):
        """Test that NULLs never collide."""
        store = MemoryRowStore(registry)

        store.insert(ctx, "item", {"code": None})
        store.insert(ctx, "item", {"code": None})

        assert len(store.rows("item")) == 2

    def test_update(self, store, ctx):
        """Test updating the rows matching a key."""
        count = store.update(ctx, "item", {"label": "Avocado"}, {"id": 1})

        assert count == 1
        assert store.find("item", id=1)[0]["label"] == "Avocado"

    def test_update_unique_violation(self, store, ctx):
        """Test that an update cannot duplicate a unique value."""
        with pytest.raises(UniqueConstraintViolation):
            store.update(ctx, "item", {"code": "a1"}, {"id": 2})

        assert store.find("item", id=2)[0]["code"] == "b2"

    def test_update_lock_filter(self, registry, ctx):
        """Test that a lock filter must match for the update to happen."""
        store = MemoryRowStore(registry)
        store.insert(ctx, "item_lock", {"id": 1, "note": "a", "lock_token": "t1"})

        assert store.update(ctx, "item_lock", {"note": "b"}, {"id": 1}, {"lock_token": "t0"}) == 0
        assert store.update(ctx, "item_lock", {"note": "b"}, {"id": 1}, {"lock_token": "t1"}) == 1
        assert store.rows("item_lock")[0]["note"] == "b"

    def test_delete(self, store, ctx):
        """Test deleting the rows matching a key."""
        assert store.delete(ctx, "item", {"id": 2}) == 1
        assert store.delete(ctx, "item", {"id": 2}) == 0
        assert [r["code"] for r in store.rows("item")] == ["a1", "c3"]

    def test_delete_lock_filter(self, registry, ctx):
        """Test that a lock filter must match for the delete to happen."""
        store = MemoryRowStore(registry)
        store.insert(ctx, "item_lock", {"id": 1, "note": "a", "lock_token": "t1"})

        assert store.delete(ctx, "item_lock", {"id": 1}, {"lock_token": "t0"}) == 0
        assert store.delete(ctx, "item_lock", {"id": 1}, {"lock_token": "t1"}) == 1

    def test_rows_are_copies(self, store):
        """Test that changing an inspected row does not change the store."""
        store.rows("item")[0]["code"] = "zz"

        assert store.rows("item")[0]["code"] == "a1"

    def test_cancelled_context(self, store):
        """Test that writes check the context first."""
        ctx = Context.background()
        ctx.cancel()

        with pytest.raises(ContextCancelledError):
            store.insert(ctx, "item", {"code": "d4"})
        with pytest.raises(ContextCancelledError):
            store.delete(ctx, "item", {"id": 1})
        assert len(store.rows("item")) == 3


class TestTransaction:
    """Tests for store transactions."""

    def test_rollback_on_error(self, store, ctx):
        """Test that an error restores every table and key counter."""
        with pytest.raises(RuntimeError):
            with store.transaction(ctx):
                store.insert(ctx, "item", {"code": "d4"})
                store.delete(ctx, "item", {"id": 1})
                raise RuntimeError("boom")

        assert [r["code"] for r in store.rows("item")] == ["a1", "b2", "c3"]
        assert store.insert(ctx, "item", {"code": "d4"}) == 4

    def test_commit(self, store, ctx):
        """Test that a transaction without errors keeps its writes."""
        with store.transaction(ctx):
            store.insert(ctx, "item", {"code": "d4"})

        assert len(store.rows("item")) == 4

    def test_nested_transaction_joins_outer(self, store, ctx):
        """Test that an error in the outer transaction undoes the inner one."""
        with pytest.raises(RuntimeError):
            with store.transaction(ctx):
                with store.transaction(ctx):
                    store.insert(ctx, "item", {"code": "d4"})
                raise RuntimeError("boom")

        assert len(store.rows("item")) == 3


class TestSelect:
    """Tests for running query plans."""

    def test_project_columns(self, store, ctx):
        """Test that rows carry the requested columns keyed by path."""
        rows = store.select(ctx, item_plan("id", "code"))

        assert rows[0] == {("item", "id"): 1, ("item", "code"): "a1"}
        assert len(rows) == 3

    def test_where(self, store, registry, ctx):
        """Test filtering with a condition."""
        item = registry.node("item")
        plan = item_plan("code", where=op.greater(item["price"], 2))

        assert store.select(ctx, plan) == [{("item", "code"): "c3"}]

    def test_null_comparison_does_not_match(self, store, registry, ctx):
        """Test that comparing with NULL matches neither way."""
        item = registry.node("item")
        less = item_plan("code", where=op.less(item["price"], 100))
        not_less = item_plan("code", where=op.not_(op.less(item["price"], 100)))

        assert [r[("item", "code")] for r in store.select(ctx, less)] == ["a1", "c3"]
        assert store.select(ctx, not_less) == []

    def test_is_null(self, store, registry, ctx):
        """Test matching NULL values."""
        item = registry.node("item")
        plan = item_plan("code", where=op.is_null(item["label"]))

        assert store.select(ctx, plan) == [{("item", "code"): "c3"}]

    def test_like(self, store, registry, ctx):
        """Test LIKE patterns with both wildcards."""
        item = registry.node("item")
        plan = item_plan("code", where=op.like(item["label"], "_an%"))

        assert store.select(ctx, plan) == [{("item", "code"): "b2"}]

    def test_order_and_limit(self, store, registry, ctx):
        """Test sorting with NULLs first and paging."""
        item = registry.node("item")
        plan = item_plan("code")
        plan.order_by = [(item["label"], False)]
        plan.offset = 1
        plan.limit = 1

        assert store.select(ctx, plan) == [{("item", "code"): "a1"}]

    def test_count(self, store, registry, ctx):
        """Test counting the rows of a plan."""
        item = registry.node("item")
        plan = item_plan("id", where=op.is_not_null(item["price"]))

        assert store.count(ctx, plan) == 2

    def test_cursor(self, store, ctx):
        """Test iterating and closing a cursor."""
        cursor = store.select_cursor(ctx, item_plan("id"))

        assert next(cursor) == {("item", "id"): 1}
        cursor.close()

        assert cursor.closed
        assert list(cursor) == []

    def test_cursor_checks_context(self, store):
        """Test that a cursor stops when its context is cancelled."""
        ctx = Context.background()
        cursor = store.select_cursor(ctx, item_plan("id"))
        next(cursor)

        ctx.cancel()

        with pytest.raises(ContextCancelledError):
            next(cursor)
