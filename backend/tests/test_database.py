"""Tests for models/database.py -- aiosqlite-backed Store.

Each test gets its own database file under pytest's tmp_path.
"""

from pathlib import Path

import pytest

from models.database import Store


@pytest.fixture()
async def store(tmp_path: Path) -> Store:
    s = Store(str(tmp_path / "nested" / "imagine.db"))
    await s.init()
    return s


# =========================================================================
# Metrics
# =========================================================================


class TestMetricsTable:
    """Snapshots are appended and listed newest first."""

    async def test_insert_and_list(self, store: Store) -> None:
        ok = await store.insert_metrics([
            {"type": "chat", "time": "2026-01-01T00:00:00+00:00", "data": {"models": {"a": 2}}},
            {"type": "image", "time": "2026-01-01T00:00:00+00:00", "data": {"upscale": 1}},
        ])
        assert ok is True

        rows = await store.list_metrics()
        assert [r["type"] for r in rows] == ["image", "chat"]
        assert rows[1]["data"] == {"models": {"a": 2}}

    async def test_entries_are_appended(self, store: Store) -> None:
        entry = {"type": "chat", "time": "t1", "data": {"n": 1}}
        await store.insert_metrics([entry])
        await store.insert_metrics([{**entry, "time": "t2", "data": {"n": 5}}])

        rows = await store.list_metrics(category="chat")
        assert [r["time"] for r in rows] == ["t2", "t1"]

    async def test_filter_and_limit(self, store: Store) -> None:
        await store.insert_metrics(
            [{"type": "users", "time": f"t{i}", "data": {}} for i in range(5)]
            + [{"type": "guilds", "time": "g", "data": {}}]
        )
        assert len(await store.list_metrics(category="users", limit=3)) == 3
        assert len(await store.list_metrics(category="guilds")) == 1

    async def test_empty_insert(self, store: Store) -> None:
        assert await store.insert_metrics([]) is True

    async def test_insert_failure_returns_false(self, tmp_path: Path) -> None:
        uninitialized = Store(str(tmp_path / "no_tables.db"))
        ok = await uninitialized.insert_metrics([{"type": "chat", "time": "t", "data": {}}])
        assert ok is False


# =========================================================================
# Dataset records
# =========================================================================


class TestDatasetTable:
    async def test_save_and_get(self, store: Store) -> None:
        await store.save_dataset_entry("job_1", {"prompt": "a cat"})
        assert await store.get_dataset_entry("job_1") == {"id": "job_1", "data": {"prompt": "a cat"}}

    async def test_get_missing(self, store: Store) -> None:
        assert await store.get_dataset_entry("nope") is None

    async def test_update_replaces_payload(self, store: Store) -> None:
        await store.save_dataset_entry("job_1", {"prompt": "a cat"})
        assert await store.update_dataset_entry("job_1", {"prompt": "a cat", "rating": "love"})
        entry = await store.get_dataset_entry("job_1")
        assert entry["data"] == {"prompt": "a cat", "rating": "love"}  # type: ignore[index]

    async def test_update_missing_returns_false(self, store: Store) -> None:
        assert await store.update_dataset_entry("nope", {"rating": "love"}) is False

    async def test_save_is_upsert(self, store: Store) -> None:
        await store.save_dataset_entry("job_1", {"v": 1})
        await store.save_dataset_entry("job_1", {"v": 2})
        entry = await store.get_dataset_entry("job_1")
        assert entry["data"] == {"v": 2}  # type: ignore[index]


# =========================================================================
# Expenses
# =========================================================================


class TestExpensesTable:
    async def test_charge_once_per_job(self, store: Store) -> None:
        assert await store.record_expense("job_1", "42", 0.1) is True
        assert await store.record_expense("job_1", "42", 0.1) is False
        assert await store.total_expenses("42") == pytest.approx(0.1)

    async def test_total_across_jobs(self, store: Store) -> None:
        await store.record_expense("job_1", "42", 0.1)
        await store.record_expense("job_2", "42", 0.2)
        await store.record_expense("job_3", "77", 1.0)
        assert await store.total_expenses("42") == pytest.approx(0.3)
        assert await store.total_expenses("nobody") == 0.0
