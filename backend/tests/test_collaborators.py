"""Tests for messages.py, moderation.py and billing.py."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from billing import BillingLedger
from controls import Control, ControlLayout
from events.bus import EventBus
from events.types import EventType
from generation.client import FilterResult, GenerationAPIError, MockGenerationClient
from messages import MessageRegistry
from models.jobs import GenerationJob, JobResult
from models.schemas import ActionKind, JobErrorKind
from moderation import ModerationService
from tests.conftest import collect_events

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(job_id: str = "job_1", done: bool = True) -> JobResult:
    job = GenerationJob(id=job_id, action=ActionKind.GENERATE)
    if done:
        return JobResult(job=job.completed(("https://x/1.png",)), done=True, images=("https://x/1.png",))
    return JobResult(
        job=job.failed(JobErrorKind.GENERIC, "boom"),
        done=False,
        error="**boom**",
        error_kind=JobErrorKind.GENERIC,
    )


# =========================================================================
# MessageRegistry
# =========================================================================


class TestMessageRegistry:
    """Messages are stored by id and their layouts replaced whole."""

    def test_create_and_get(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42", content="a cat")
        assert message.message_id.startswith("msg_")
        assert registry.get(message.message_id) is message
        assert registry.get("msg_missing") is None
        assert len(registry) == 1

    def test_ids_unique(self, registry: MessageRegistry) -> None:
        ids = {registry.create(owner_id="42").message_id for _ in range(20)}
        assert len(ids) == 20

    def test_edit_layout_replaces(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        layout = ControlLayout.from_rows([[Control(id="a")]])
        registry.edit_layout(message.message_id, layout)
        assert registry.get(message.message_id).layout is layout  # type: ignore[union-attr]

    def test_edit_unknown_message_raises(self, registry: MessageRegistry) -> None:
        with pytest.raises(KeyError):
            registry.edit_layout("msg_missing", ControlLayout())

    def test_attach_result(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        result = _result()
        registry.attach_result(message.message_id, result.job)
        assert message.image == "https://x/1.png"
        assert message.error is None

    async def test_publish_layout(self, registry: MessageRegistry, event_bus: EventBus) -> None:
        message = registry.create(owner_id="42")
        registry.edit_layout(
            message.message_id, ControlLayout.from_rows([[Control(id="a", label="A")]])
        )

        await registry.publish_layout(message.message_id, reply_message_id="msg_x")

        events = await collect_events(event_bus, message.message_id)
        assert len(events) == 1
        assert events[0].type == EventType.LAYOUT_UPDATED
        assert events[0].data["layout"][0][0]["id"] == "a"
        assert events[0].data["reply_message_id"] == "msg_x"

    async def test_publish_without_bus(self) -> None:
        registry = MessageRegistry()
        message = registry.create(owner_id="42")
        await registry.publish_layout(message.message_id)


class TestMessageEviction:
    """Settled messages past their age are dropped with their channels."""

    async def test_expired_settled_message_evicted(
        self, registry: MessageRegistry, event_bus: EventBus
    ) -> None:
        message = registry.create(owner_id="42")
        registry.attach_result(message.message_id, _result().job)
        await registry.publish_layout(message.message_id)
        queue = event_bus.subscribe(message.message_id)

        evicted = await registry.evict_expired(60, now=message.created_at + 61)

        assert evicted == [message.message_id]
        assert registry.get(message.message_id) is None
        assert event_bus.get_event_history(message.message_id) == []
        assert message.message_id not in event_bus.get_active_channels()
        # The buffered layout event arrives first, then the close sentinel
        events = [queue.get_nowait() for _ in range(queue.qsize())]
        assert events[-1].type == EventType.CHANNEL_CLOSED

    async def test_failed_message_evicted(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        message.error = "**blocked**"
        assert await registry.evict_expired(60, now=message.created_at + 61) == [
            message.message_id
        ]

    async def test_young_message_kept(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        registry.attach_result(message.message_id, _result().job)
        assert await registry.evict_expired(60, now=message.created_at + 10) == []
        assert len(registry) == 1

    async def test_pending_message_kept(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        assert await registry.evict_expired(60, now=message.created_at + 3600) == []
        assert registry.get(message.message_id) is message

    async def test_cleanup_loop_evicts(self, registry: MessageRegistry) -> None:
        message = registry.create(owner_id="42")
        registry.attach_result(message.message_id, _result().job)
        message.created_at -= 3600

        task = registry.start_cleanup_loop(interval_seconds=0.01, max_age_seconds=60)
        try:
            for _ in range(100):
                if len(registry) == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            await task

        assert len(registry) == 0
        assert task.done()


# =========================================================================
# ModerationService
# =========================================================================


class TestModerationService:
    async def test_flagged_prompt_blocked(self) -> None:
        client = MockGenerationClient(filter_result=FilterResult(is_young=True, is_cp=True))
        result = await ModerationService(client, enabled=True).check_image_prompt("42", "p", "5.1")
        assert result.blocked
        assert result.flags == ("young", "cp")

    async def test_clean_prompt_allowed(self) -> None:
        client = MockGenerationClient()
        result = await ModerationService(client, enabled=True).check_image_prompt("42", "p", "5.1")
        assert not result.blocked

    async def test_disabled_skips_call(self) -> None:
        client = MockGenerationClient(filter_result=FilterResult(is_nsfw=True))
        result = await ModerationService(client, enabled=False).check_image_prompt("42", "p", "5.1")
        assert not result.blocked
        assert client.call_history == []

    async def test_filter_outage_allows_prompt(self) -> None:
        client = MockGenerationClient()
        client.filter_prompt = AsyncMock(  # type: ignore[method-assign]
            side_effect=GenerationAPIError(code=503, endpoint="/imgs/filter")
        )
        result = await ModerationService(client, enabled=True).check_image_prompt("42", "p", "5.1")
        assert not result.blocked


# =========================================================================
# BillingLedger
# =========================================================================


class TestBillingLedger:
    async def test_charges_successful_job(self, mock_store: AsyncMock) -> None:
        ledger = BillingLedger(mock_store, cost_per_image=0.25)
        assert await ledger.charge("42", _result()) is True
        mock_store.record_expense.assert_awaited_once_with("job_1", "42", 0.25)

    async def test_failed_job_not_charged(self, mock_store: AsyncMock) -> None:
        ledger = BillingLedger(mock_store, cost_per_image=0.25)
        assert await ledger.charge("42", _result(done=False)) is False
        mock_store.record_expense.assert_not_awaited()

    async def test_idempotent_per_job(self, mock_store: AsyncMock) -> None:
        ledger = BillingLedger(mock_store, cost_per_image=0.25)
        await ledger.charge("42", _result())
        assert await ledger.charge("42", _result()) is False
        assert mock_store.record_expense.await_count == 1

    async def test_without_store(self) -> None:
        ledger = BillingLedger(None, cost_per_image=0.25)
        assert await ledger.charge("42", _result("job_9")) is True
        assert await ledger.charge("42", _result("job_9")) is False

    async def test_unwritten_charge_logged_and_retried(self, mock_store: AsyncMock) -> None:
        mock_store.record_expense.return_value = False
        ledger = BillingLedger(mock_store, cost_per_image=0.25)

        with patch("billing.logger") as log:
            assert await ledger.charge("42", _result()) is False

        log.warning.assert_called_once()
        assert log.warning.call_args.args == ("billing_charge_failed",)
        assert log.warning.call_args.kwargs["job_id"] == "job_1"

        mock_store.record_expense.return_value = True
        assert await ledger.charge("42", _result()) is True
        assert mock_store.record_expense.await_count == 2
