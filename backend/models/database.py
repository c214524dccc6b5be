"""SQLite-based persistence using aiosqlite.

This module provides the Store class that persists metrics snapshots,
dataset (rating) records and billing expenses. All operations are async and
designed to fail gracefully -- a database error should never abort a user
interaction.

Tables:
    metrics: Append-only metric snapshots ({type, time, data}).
    dataset: Generated image records keyed by job id, payload stored as JSON.
    expenses: One charge per job id.

Usage:
    >>> from models.database import Store
    >>> store = Store("./data/imagine.db")
    >>> await store.init()
    >>> await store.insert_metrics([
    ...     {"type": "image", "time": "2026-01-01T00:00:00+00:00", "data": {"upscale": 2}},
    ... ])
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class Store:
    """Async SQLite store for metrics, dataset records and expenses.

    Writes catch exceptions internally and report success as a boolean;
    reads return None (or an empty list) on failure. Errors are logged
    rather than propagated.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS metrics (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        type TEXT NOT NULL,
                        time TEXT NOT NULL,
                        data TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS dataset (
                        id TEXT PRIMARY KEY,
                        data TEXT NOT NULL,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS expenses (
                        job_id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        amount REAL NOT NULL,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_metrics_type_time
                    ON metrics(type, time DESC)
                """)
                await db.commit()
            logger.info("store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------

    async def insert_metrics(self, entries: list[dict[str, Any]]) -> bool:
        """Append metric snapshots to the collection.

        Entries are never updated in place.

        Args:
            entries: Dicts with keys ``type``, ``time`` and ``data``.

        Returns:
            True if every entry was written.
        """
        if not entries:
            return True

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(
                    "INSERT INTO metrics (type, time, data) VALUES (?, ?, ?)",
                    [
                        (entry["type"], entry["time"], json.dumps(entry["data"]))
                        for entry in entries
                    ],
                )
                await db.commit()
            logger.debug("metrics_inserted", count=len(entries))
            return True
        except Exception as e:
            logger.error(
                "metrics_insert_failed",
                count=len(entries),
                error=str(e),
            )
            return False

    async def list_metrics(
        self,
        category: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """List persisted snapshots, newest first.

        Args:
            category: Only return snapshots of this type, if given.
            limit: Maximum number of snapshots to return.

        Returns:
            List of ``{type, time, data}`` dicts.
        """
        query = "SELECT type, time, data FROM metrics"
        params: tuple[Any, ...] = ()
        if category is not None:
            query += " WHERE type = ?"
            params = (category,)
        query += " ORDER BY id DESC LIMIT ?"
        params = (*params, limit)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [
                    {"type": row["type"], "time": row["time"], "data": json.loads(row["data"])}
                    for row in rows
                ]
        except Exception as e:
            logger.error("metrics_list_failed", category=category, error=str(e))
            return []

    # -----------------------------------------------------------------
    # Dataset records
    # -----------------------------------------------------------------

    async def save_dataset_entry(self, job_id: str, data: dict[str, Any]) -> bool:
        """Insert or replace the dataset record of a job.

        Args:
            job_id: The job the record belongs to.
            data: Full JSON payload of the record.

        Returns:
            True on success.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO dataset (id, data, created_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET data = excluded.data
                    """,
                    (job_id, json.dumps(data), time.time()),
                )
                await db.commit()
            logger.debug("dataset_entry_saved", job_id=job_id)
            return True
        except Exception as e:
            logger.error("dataset_entry_save_failed", job_id=job_id, error=str(e))
            return False

    async def get_dataset_entry(self, job_id: str) -> dict[str, Any] | None:
        """Retrieve a dataset record.

        Args:
            job_id: The job to look up.

        Returns:
            ``{"id": ..., "data": {...}}`` or None if not found.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT id, data FROM dataset WHERE id = ?",
                    (job_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return {"id": row["id"], "data": json.loads(row["data"])}
        except Exception as e:
            logger.error("dataset_entry_get_failed", job_id=job_id, error=str(e))
            return None

    async def update_dataset_entry(self, job_id: str, data: dict[str, Any]) -> bool:
        """Replace the full payload of an existing dataset record.

        Last writer wins; there is no optimistic concurrency check.

        Args:
            job_id: The record to update.
            data: The complete new payload.

        Returns:
            True if a row was updated.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "UPDATE dataset SET data = ? WHERE id = ?",
                    (json.dumps(data), job_id),
                )
                await db.commit()
                updated = cursor.rowcount > 0
            logger.debug("dataset_entry_updated", job_id=job_id, updated=updated)
            return updated
        except Exception as e:
            logger.error("dataset_entry_update_failed", job_id=job_id, error=str(e))
            return False

    # -----------------------------------------------------------------
    # Expenses
    # -----------------------------------------------------------------

    async def record_expense(self, job_id: str, user_id: str, amount: float) -> bool:
        """Record the charge for a job, at most once per job id.

        Args:
            job_id: The job being charged.
            user_id: The account charged.
            amount: Amount charged.

        Returns:
            True if a new expense row was written, False if the job was
            already charged or the write failed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO expenses (job_id, user_id, amount, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (job_id, user_id, amount, time.time()),
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            logger.error(
                "expense_record_failed",
                job_id=job_id,
                user_id=user_id,
                error=str(e),
            )
            return False

    async def total_expenses(self, user_id: str) -> float:
        """Sum of all charges for an account."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT COALESCE(SUM(amount), 0) FROM expenses WHERE user_id = ?",
                    (user_id,),
                )
                row = await cursor.fetchone()
                return float(row[0]) if row else 0.0
        except Exception as e:
            logger.error("expense_total_failed", user_id=user_id, error=str(e))
            return 0.0
