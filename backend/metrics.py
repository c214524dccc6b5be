"""In-memory metrics aggregation with periodic snapshot flushing.

This module provides the MetricsAggregator class that buffers categorized
counter updates between flushes. Each category has one pending bucket; a
flush turns every non-empty bucket into a timestamped MetricsSnapshot,
appends the snapshots to the store and clears the buffer.

Update values follow three rules:

- a literal string or number replaces the field,
- a signed delta (``"+1"``, ``"-2.5"``) is added to the pending value
  (baseline 0),
- a nested mapping is merged recursively with the same rules.

Usage:
    >>> from metrics import MetricsAggregator
    >>> aggregator = MetricsAggregator(store)
    >>> await aggregator.change("chat", {"models": {"modelA": "+1"}})
    {'models': {'modelA': 1}}
    >>> snapshots = await aggregator.flush()
"""

import asyncio
import copy
import re
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from config import settings
from models.database import Store
from models.schemas import MetricsCategory

logger = structlog.get_logger(__name__)

MetricValue = str | int | float | Mapping[str, Any]

_DELTA_PATTERN = re.compile(r"^([+-])(\d+(?:\.\d+)?)$")


class MetricsUpdateError(Exception):
    """Raised when one or more fields of a metrics update could not be applied.

    Attributes:
        category: The bucket the update targeted.
        fields: Mapping from dotted field path to the reason it failed.
    """

    def __init__(self, category: str, fields: dict[str, str]) -> None:
        self.category = category
        self.fields = fields
        details = ", ".join(f"{path}: {reason}" for path, reason in fields.items())
        super().__init__(f"Invalid metrics update for '{category}' ({details})")


class InvalidMetricDelta(MetricsUpdateError):
    """A signed delta was not a sign followed by a numeric literal."""


class MetricTypeConflict(MetricsUpdateError):
    """An update would change the kind of a pending field."""


def parse_delta(value: str) -> int | float:
    """Parse a signed delta such as ``"+1"`` or ``"-0.5"``.

    Args:
        value: A string starting with ``+`` or ``-``.

    Returns:
        The signed numeric delta.

    Raises:
        ValueError: If the remainder is not a plain numeric literal.
    """
    match = _DELTA_PATTERN.match(value)
    if match is None:
        raise ValueError(f"malformed delta {value!r}")

    sign, literal = match.groups()
    number: int | float = float(literal) if "." in literal else int(literal)
    return -number if sign == "-" else number


def is_delta(value: object) -> bool:
    """Whether an update value is meant as a signed delta."""
    return isinstance(value, str) and value[:1] in ("+", "-")


def _value_kind(value: object) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "mapping"
    return type(value).__name__


@dataclass(frozen=True)
class MetricsSnapshot:
    """One persisted view of a bucket, produced by a flush.

    Attributes:
        category: Which bucket the data came from.
        time: ISO-8601 timestamp of the flush.
        data: The bucket's pending data at flush time.
    """

    category: MetricsCategory
    time: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted ``{type, time, data}`` format."""
        return {
            "type": self.category.value,
            "time": self.time,
            "data": copy.deepcopy(self.data),
        }


class MetricsAggregator:
    """Buffers metric updates per category and flushes them as snapshots.

    Updates to the same category are serialized through a per-category
    asyncio.Lock so that concurrent dispatches never lose increments.
    A flush detaches the whole buffer in one step, so each snapshot only
    reflects updates made since the previous flush.

    Attributes:
        store: Destination for flushed snapshots (optional).
        enabled: Whether flushes persist anything at all.
    """

    def __init__(
        self,
        store: Store | None = None,
        enabled: bool | None = None,
    ) -> None:
        """Initialize an empty aggregator.

        Args:
            store: Store used to append snapshots on flush.
            enabled: Overrides ``settings.metrics_enabled`` when given.
        """
        self.store = store
        self.enabled = settings.metrics_enabled if enabled is None else enabled
        self._pending: dict[MetricsCategory, dict[str, Any]] = {}
        self._locks: dict[MetricsCategory, asyncio.Lock] = defaultdict(asyncio.Lock)
        logger.info("metrics_aggregator_initialized", enabled=self.enabled)

    # -----------------------------------------------------------------
    # Updates
    # -----------------------------------------------------------------

    async def change(
        self,
        category: MetricsCategory | str,
        updates: Mapping[str, MetricValue],
    ) -> dict[str, Any]:
        """Merge updates into the pending bucket of a category.

        Fields that fail keep their previous value; the remaining fields of
        the batch are still applied before the error is raised.

        Args:
            category: The bucket to update.
            updates: Field name to literal, signed delta or nested mapping.

        Returns:
            A copy of the pending data for the category.

        Raises:
            InvalidMetricDelta: If any delta in the batch was malformed.
            MetricTypeConflict: If any value conflicted with a pending field's kind.
        """
        category = MetricsCategory(category)

        async with self._locks[category]:
            bucket = self._pending.setdefault(category, {})
            bad_deltas: dict[str, str] = {}
            conflicts: dict[str, str] = {}
            self._merge(bucket, updates, "", bad_deltas, conflicts)
            if not bucket:
                del self._pending[category]
            result = copy.deepcopy(bucket)

        if bad_deltas:
            logger.warning(
                "metrics_invalid_delta",
                category=category.value,
                fields=bad_deltas,
            )
            raise InvalidMetricDelta(category.value, {**bad_deltas, **conflicts})
        if conflicts:
            logger.warning(
                "metrics_type_conflict",
                category=category.value,
                fields=conflicts,
            )
            raise MetricTypeConflict(category.value, conflicts)

        logger.debug("metrics_changed", category=category.value, fields=list(updates))
        return result

    def _merge(
        self,
        target: dict[str, Any],
        updates: Mapping[str, MetricValue],
        prefix: str,
        bad_deltas: dict[str, str],
        conflicts: dict[str, str],
    ) -> None:
        """Apply updates to target in place, recording per-field failures."""
        for key, value in updates.items():
            path = f"{prefix}{key}"
            current = target.get(key)

            if isinstance(value, Mapping):
                if current is None:
                    nested: dict[str, Any] = {}
                    self._merge(nested, value, f"{path}.", bad_deltas, conflicts)
                    # Only attach a new mapping once something landed in it
                    if nested:
                        target[key] = nested
                    continue
                if not isinstance(current, dict):
                    conflicts[path] = f"cannot merge a mapping into a {_value_kind(current)}"
                    continue
                self._merge(current, value, f"{path}.", bad_deltas, conflicts)

            elif is_delta(value):
                try:
                    delta = parse_delta(value)  # type: ignore[arg-type]
                except ValueError as e:
                    bad_deltas[path] = str(e)
                    continue
                if current is None:
                    current = 0
                if _value_kind(current) != "number":
                    conflicts[path] = f"cannot apply a delta to a {_value_kind(current)}"
                    continue
                target[key] = current + delta

            elif _value_kind(value) in ("number", "string"):
                if current is not None and _value_kind(current) != _value_kind(value):
                    conflicts[path] = (
                        f"cannot replace a {_value_kind(current)} with a {_value_kind(value)}"
                    )
                    continue
                target[key] = value

            else:
                conflicts[path] = f"unsupported value type {_value_kind(value)}"

    async def change_cooldown_metric(self, updates: Mapping[str, MetricValue]) -> dict[str, Any]:
        return await self.change(MetricsCategory.COOLDOWN, updates)

    async def change_guilds_metric(self, updates: Mapping[str, MetricValue]) -> dict[str, Any]:
        return await self.change(MetricsCategory.GUILDS, updates)

    async def change_users_metric(self, updates: Mapping[str, MetricValue]) -> dict[str, Any]:
        return await self.change(MetricsCategory.USERS, updates)

    async def change_chat_metric(self, updates: Mapping[str, MetricValue]) -> dict[str, Any]:
        return await self.change(MetricsCategory.CHAT, updates)

    async def change_image_metric(self, updates: Mapping[str, MetricValue]) -> dict[str, Any]:
        return await self.change(MetricsCategory.IMAGE, updates)

    def pending(self, category: MetricsCategory | str) -> dict[str, Any]:
        """Get a copy of the pending data for a category (empty if none)."""
        return copy.deepcopy(self._pending.get(MetricsCategory(category), {}))

    def pending_categories(self) -> list[MetricsCategory]:
        """Categories that have updates since the last flush."""
        return [category for category, data in self._pending.items() if data]

    # -----------------------------------------------------------------
    # Flushing
    # -----------------------------------------------------------------

    async def flush(self) -> list[MetricsSnapshot]:
        """Snapshot and persist every non-empty bucket, then clear the buffer.

        Does nothing while metrics are disabled. The buffer is cleared even
        if persisting the snapshots fails.

        Returns:
            The snapshots produced by this flush.
        """
        if not self.enabled:
            logger.debug("metrics_flush_skipped", reason="disabled")
            return []

        # Detach the buffer without suspending so no update lands in between.
        buckets, self._pending = self._pending, {}

        now = datetime.now(UTC).isoformat()
        snapshots = [
            MetricsSnapshot(category=category, time=now, data=data)
            for category, data in buckets.items()
            if data
        ]

        if not snapshots:
            logger.debug("metrics_flush_empty")
            return []

        if self.store is not None:
            persisted = await self.store.insert_metrics(
                [snapshot.to_dict() for snapshot in snapshots]
            )
            if not persisted:
                logger.error(
                    "metrics_flush_persist_failed",
                    categories=[s.category.value for s in snapshots],
                )
        else:
            logger.warning("metrics_flush_no_store", count=len(snapshots))

        logger.info(
            "metrics_flushed",
            categories=[s.category.value for s in snapshots],
            time=now,
        )
        return snapshots

    def start_flush_loop(self, interval_seconds: float | None = None) -> asyncio.Task[None]:
        """Start a background task that flushes the buffer periodically.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between flushes (defaults to config).

        Returns:
            The background asyncio.Task.
        """
        interval = interval_seconds or settings.metrics_flush_interval_seconds

        async def _loop() -> None:
            logger.info("metrics_flush_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.flush()
                except asyncio.CancelledError:
                    logger.info("metrics_flush_loop_stopped")
                    return
                except Exception as e:
                    logger.error("metrics_flush_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="metrics_flush")
