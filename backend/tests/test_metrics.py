"""Tests for metrics.py -- buffered metric aggregation and flushing."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from metrics import (
    InvalidMetricDelta,
    MetricsAggregator,
    MetricsSnapshot,
    MetricTypeConflict,
    is_delta,
    parse_delta,
)
from models.schemas import MetricsCategory

# =========================================================================
# Delta parsing
# =========================================================================


class TestParseDelta:
    """Signed deltas are a sign followed by a plain numeric literal."""

    def test_positive_integer(self) -> None:
        assert parse_delta("+1") == 1

    def test_negative_integer(self) -> None:
        assert parse_delta("-3") == -3

    def test_decimal(self) -> None:
        assert parse_delta("+2.5") == 2.5
        assert parse_delta("-0.5") == -0.5

    @pytest.mark.parametrize("raw", ["+five", "+", "-", "+1e3", "+1+1", "+ 1", "+(1)"])
    def test_malformed_deltas_rejected(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_delta(raw)

    def test_is_delta(self) -> None:
        assert is_delta("+1")
        assert is_delta("-x")
        assert not is_delta("5")
        assert not is_delta(5)
        assert not is_delta("")


# =========================================================================
# change()
# =========================================================================


class TestChange:
    """Updates are merged into the pending bucket of their category."""

    async def test_delta_increments_from_zero(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_chat_metric({"models": {"modelA": "+1"}})
        result = await aggregator.change_chat_metric({"models": {"modelA": "+1"}})
        assert result["models"]["modelA"] == 2
        assert aggregator.pending(MetricsCategory.CHAT) == {"models": {"modelA": 2}}

    async def test_positive_then_negative_delta(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change("users", {"active": "+5"})
        result = await aggregator.change("users", {"active": "-2"})
        assert result == {"active": 3}

    async def test_literal_replaces(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_guilds_metric({"count": 10, "name": "a"})
        result = await aggregator.change_guilds_metric({"count": 12, "name": "b"})
        assert result == {"count": 12, "name": "b"}

    async def test_delta_applies_to_literal_number(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_cooldown_metric({"seconds": 10})
        result = await aggregator.change_cooldown_metric({"seconds": "+5"})
        assert result == {"seconds": 15}

    async def test_nested_mappings_merge(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_image_metric({"rate": {"love": "+1"}})
        result = await aggregator.change_image_metric({"rate": {"hate": "+1"}, "generation": "+1"})
        assert result == {"rate": {"love": 1, "hate": 1}, "generation": 1}

    async def test_returned_data_is_a_copy(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.change_image_metric({"rate": {"love": "+1"}})
        result["rate"]["love"] = 100
        assert aggregator.pending("image") == {"rate": {"love": 1}}

    async def test_unknown_category_rejected(self, aggregator: MetricsAggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.change("weather", {"x": "+1"})


class TestChangeErrors:
    """Malformed deltas and kind conflicts leave the field untouched."""

    async def test_invalid_delta_raises_and_keeps_value(
        self, aggregator: MetricsAggregator
    ) -> None:
        await aggregator.change_chat_metric({"count": "+2"})
        with pytest.raises(InvalidMetricDelta) as exc_info:
            await aggregator.change_chat_metric({"count": "+five"})
        assert exc_info.value.category == "chat"
        assert "count" in exc_info.value.fields
        assert aggregator.pending("chat") == {"count": 2}

    async def test_invalid_delta_on_absent_field_creates_nothing(
        self, aggregator: MetricsAggregator
    ) -> None:
        with pytest.raises(InvalidMetricDelta):
            await aggregator.change_chat_metric({"count": "+five"})
        assert aggregator.pending("chat") == {}
        assert aggregator.pending_categories() == []

    async def test_invalid_nested_delta_creates_nothing(
        self, aggregator: MetricsAggregator, mock_store: AsyncMock
    ) -> None:
        with pytest.raises(InvalidMetricDelta):
            await aggregator.change_chat_metric({"models": {"modelA": "+five"}})
        assert aggregator.pending("chat") == {}
        assert aggregator.pending_categories() == []

        assert await aggregator.flush() == []
        mock_store.insert_metrics.assert_not_awaited()

    async def test_invalid_nested_delta_keeps_existing_mapping(
        self, aggregator: MetricsAggregator
    ) -> None:
        await aggregator.change_chat_metric({"models": {"modelA": "+1"}})
        with pytest.raises(InvalidMetricDelta):
            await aggregator.change_chat_metric({"models": {"modelA": "+five", "modelB": "+x"}})
        assert aggregator.pending("chat") == {"models": {"modelA": 1}}

    async def test_valid_siblings_still_applied(self, aggregator: MetricsAggregator) -> None:
        with pytest.raises(InvalidMetricDelta):
            await aggregator.change_chat_metric({"bad": "+five", "good": "+1"})
        assert aggregator.pending("chat") == {"good": 1}

    async def test_nested_path_reported(self, aggregator: MetricsAggregator) -> None:
        with pytest.raises(InvalidMetricDelta) as exc_info:
            await aggregator.change_chat_metric({"models": {"modelA": "+1x"}})
        assert "models.modelA" in exc_info.value.fields

    async def test_delta_on_string_conflicts(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_users_metric({"tier": "pro"})
        with pytest.raises(MetricTypeConflict):
            await aggregator.change_users_metric({"tier": "+1"})
        assert aggregator.pending("users") == {"tier": "pro"}

    async def test_mapping_over_number_conflicts(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_users_metric({"total": 3})
        with pytest.raises(MetricTypeConflict):
            await aggregator.change_users_metric({"total": {"a": "+1"}})
        assert aggregator.pending("users") == {"total": 3}

    async def test_literal_kind_change_conflicts(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_users_metric({"total": 3})
        with pytest.raises(MetricTypeConflict):
            await aggregator.change_users_metric({"total": "three"})


# =========================================================================
# Concurrency
# =========================================================================


class TestConcurrentUpdates:
    """Concurrent updates to one category never lose increments."""

    async def test_concurrent_increments(self, aggregator: MetricsAggregator) -> None:
        await asyncio.gather(
            *(aggregator.change_image_metric({"generation": "+1"}) for _ in range(50))
        )
        assert aggregator.pending("image") == {"generation": 50}


# =========================================================================
# flush()
# =========================================================================


class TestFlush:
    """flush() snapshots every non-empty bucket and clears the buffer."""

    async def test_flush_persists_snapshots(
        self, aggregator: MetricsAggregator, mock_store: AsyncMock
    ) -> None:
        await aggregator.change_chat_metric({"messages": "+1"})
        await aggregator.change_image_metric({"generation": "+2"})

        snapshots = await aggregator.flush()

        assert {s.category for s in snapshots} == {MetricsCategory.CHAT, MetricsCategory.IMAGE}
        assert len({s.time for s in snapshots}) == 1
        mock_store.insert_metrics.assert_awaited_once()
        entries = mock_store.insert_metrics.call_args.args[0]
        assert {"type": "image", "time": snapshots[0].time, "data": {"generation": 2}} in entries

    async def test_flush_clears_buffer(self, aggregator: MetricsAggregator) -> None:
        await aggregator.change_chat_metric({"messages": "+1"})
        await aggregator.flush()
        assert aggregator.pending_categories() == []
        assert await aggregator.flush() == []

    async def test_update_after_flush_starts_from_zero(
        self, aggregator: MetricsAggregator
    ) -> None:
        await aggregator.change_chat_metric({"messages": "+3"})
        await aggregator.flush()
        result = await aggregator.change_chat_metric({"messages": "+1"})
        assert result == {"messages": 1}

    async def test_empty_flush_writes_nothing(
        self, aggregator: MetricsAggregator, mock_store: AsyncMock
    ) -> None:
        assert await aggregator.flush() == []
        mock_store.insert_metrics.assert_not_awaited()

    async def test_flush_while_disabled_is_noop(self, mock_store: AsyncMock) -> None:
        aggregator = MetricsAggregator(store=mock_store, enabled=False)
        await aggregator.change_chat_metric({"messages": "+1"})

        assert await aggregator.flush() == []
        mock_store.insert_metrics.assert_not_awaited()
        assert aggregator.pending("chat") == {"messages": 1}

    async def test_persist_failure_still_clears_buffer(
        self, aggregator: MetricsAggregator, mock_store: AsyncMock
    ) -> None:
        mock_store.insert_metrics.return_value = False
        await aggregator.change_chat_metric({"messages": "+1"})

        snapshots = await aggregator.flush()

        assert len(snapshots) == 1
        assert aggregator.pending_categories() == []

    async def test_flush_without_store(self) -> None:
        aggregator = MetricsAggregator(store=None, enabled=True)
        await aggregator.change_chat_metric({"messages": "+1"})
        snapshots = await aggregator.flush()
        assert snapshots[0].data == {"messages": 1}


class TestSnapshot:
    def test_to_dict(self) -> None:
        snapshot = MetricsSnapshot(
            category=MetricsCategory.GUILDS,
            time="2024-01-01T00:00:00+00:00",
            data={"count": 1},
        )
        assert snapshot.to_dict() == {
            "type": "guilds",
            "time": "2024-01-01T00:00:00+00:00",
            "data": {"count": 1},
        }


class TestFlushLoop:
    """The background loop flushes periodically until cancelled."""

    async def test_loop_flushes_and_stops(
        self, aggregator: MetricsAggregator, mock_store: AsyncMock
    ) -> None:
        await aggregator.change_chat_metric({"messages": "+1"})
        task = aggregator.start_flush_loop(interval_seconds=0.01)

        for _ in range(100):
            if mock_store.insert_metrics.await_count:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        await task
        assert mock_store.insert_metrics.await_count >= 1
        assert task.done()
