"""Tests for the terminal local store."""

from unittest.mock import MagicMock, patch

import pytest

from tillsync.sync.change_log import ChangeLog, ChangeLogError
from tillsync.sync.schemas import EntityType, Operation
from tillsync.terminal.local_store import LocalStore

STORE_ID = "7f1c9a52-3d1e-4b7a-9a57-2c1f0e6b8d40"


@pytest.fixture
def change_log():
    log = ChangeLog(":memory:")
    log.connect()
    yield log
    log.close()


@pytest.fixture
def store(change_log):
    """Create an in-memory LocalStore for testing."""
    store = LocalStore(":memory:", STORE_ID, change_log)
    store.connect()
    yield store
    store.close()


def remote_row(record_id: str, updated_at: str, **data) -> dict:
    return {
        "id": record_id,
        "storeId": STORE_ID,
        "isActive": True,
        "createdAt": "2026-01-01T00:00:00.000000Z",
        "updatedAt": updated_at,
        **data,
    }


class TestLocalMutations:
    """Tests for save/delete and change capture."""

    def test_save_creates_record_and_change(self, store, change_log):
        change = store.save(EntityType.PRODUCT, "p1", {"name": "Latte", "sellingPrice": 4.5})

        assert change.operation is Operation.CREATE
        assert change.payload == {"name": "Latte", "sellingPrice": 4.5}

        record = store.get("Product", "p1")
        assert record["name"] == "Latte"
        assert record["isActive"] is True
        assert record["storeId"] == STORE_ID
        assert change_log.count_pending() == 1

    def test_save_existing_is_update_with_merged_data(self, store, change_log):
        store.save("Product", "p1", {"name": "Latte", "sellingPrice": 4.5})
        change = store.save("Product", "p1", {"sellingPrice": 5.0})

        assert change.operation is Operation.UPDATE
        assert change.payload == {"sellingPrice": 5.0}
        assert store.get("Product", "p1")["name"] == "Latte"
        assert store.get("Product", "p1")["sellingPrice"] == 5.0
        assert change_log.count_pending() == 2

    def test_save_rolls_back_when_change_cannot_be_recorded(self, store, change_log):
        with patch.object(change_log, "record", side_effect=ChangeLogError("disk I/O error")):
            with pytest.raises(ChangeLogError):
                store.save("Product", "p1", {"name": "Latte"})

        assert store.get("Product", "p1") is None

    def test_delete_is_soft(self, store):
        store.save("Category", "c1", {"name": "Coffee"})

        change = store.delete("Category", "c1")

        assert change.operation is Operation.DELETE
        assert store.list_records("Category") == []
        assert store.list_records("Category", include_inactive=True)[0]["isActive"] is False

    def test_delete_missing_record(self, store, change_log):
        assert store.delete("Category", "missing") is None
        assert change_log.count_pending() == 0

    def test_change_listener_called(self, store):
        listener = MagicMock()
        store.add_change_listener(listener)

        change = store.save("Customer", "c1", {"name": "Ana"})

        listener.assert_called_once_with(change)

    def test_failing_listener_does_not_break_save(self, store):
        store.add_change_listener(MagicMock(side_effect=RuntimeError("boom")))

        store.save("Customer", "c1", {"name": "Ana"})

        assert store.get("Customer", "c1") is not None


class TestRemoteMerge:
    """Tests for last-write-wins merge of pulled rows."""

    def test_apply_remote_inserts_new_row(self, store, change_log):
        applied = store.apply_remote("Product", remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Mocha"))

        assert applied is True
        assert store.get("Product", "p1")["name"] == "Mocha"
        assert change_log.count_pending() == 0

    def test_newer_remote_wins(self, store):
        store.apply_remote("Product", remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Mocha"))

        applied = store.apply_remote("Product", remote_row("p1", "2026-03-01T11:00:00Z", name="Dark Mocha"))

        assert applied is True
        assert store.get("Product", "p1")["name"] == "Dark Mocha"

    def test_older_or_equal_remote_skipped(self, store):
        store.apply_remote("Product", remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Mocha"))

        assert store.apply_remote("Product", remote_row("p1", "2026-03-01T09:00:00.000000Z", name="Old")) is False
        assert store.apply_remote("Product", remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Same")) is False
        assert store.get("Product", "p1")["name"] == "Mocha"

    def test_remote_soft_delete(self, store):
        store.apply_remote("Category", remote_row("c1", "2026-03-01T10:00:00.000000Z", name="Tea"))
        deleted = remote_row("c1", "2026-03-01T12:00:00.000000Z", name="Tea")
        deleted["isActive"] = False

        store.apply_remote("Category", deleted)

        assert store.list_records("Category") == []

    def test_row_without_timestamp_skipped(self, store):
        row = remote_row("p1", "", name="Mocha")

        assert store.apply_remote("Product", row) is False
        assert store.get("Product", "p1") is None

    def test_merge_pull_counts_written_rows(self, store):
        changes = {
            "products": [remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Mocha")],
            "categories": [remote_row("c1", "2026-03-01T10:00:00.000000Z", name="Coffee")],
            "sales": [],
        }

        assert store.merge_pull(changes) == 2
        assert store.merge_pull(changes) == 0

    def test_merge_pull_skips_malformed_rows(self, store):
        changes = {
            "products": [
                remote_row("bad", "not-a-time", name="Broken"),
                remote_row("num", 12345, name="Numeric"),
                "garbage",
                remote_row("p1", "2026-03-01T10:00:00.000000Z", name="Mocha"),
            ],
        }

        assert store.merge_pull(changes) == 1
        assert store.get("Product", "p1")["name"] == "Mocha"
        assert store.get("Product", "bad") is None


class TestWatermark:
    """Tests for the pull watermark."""

    def test_initially_none(self, store):
        assert store.get_watermark() is None

    def test_set_and_get(self, store):
        value = store.set_watermark("2026-03-01T10:00:00Z")

        assert value == "2026-03-01T10:00:00.000000Z"
        assert store.get_watermark() == value

    def test_never_moves_backwards(self, store):
        store.set_watermark("2026-03-01T10:00:00.000000Z")

        value = store.set_watermark("2026-02-01T10:00:00.000000Z")

        assert value == "2026-03-01T10:00:00.000000Z"

    def test_per_store(self, store):
        store.set_watermark("2026-03-01T10:00:00.000000Z")
        store.set_watermark("2026-01-01T10:00:00.000000Z", store_id="other-store")

        assert store.get_watermark("other-store") == "2026-01-01T10:00:00.000000Z"
        assert store.get_watermark() == "2026-03-01T10:00:00.000000Z"

    def test_stats(self, store):
        store.save("Product", "p1", {"name": "Latte"})
        store.set_watermark("2026-03-01T10:00:00.000000Z")

        stats = store.get_stats()

        assert stats["products_count"] == 1
        assert stats["watermark"] == "2026-03-01T10:00:00.000000Z"
