"""Prompt moderation before a new generation is submitted.

Only initial generations are checked; follow-up actions reuse an image
whose prompt already passed. A blocked prompt short-circuits before any
job is created.
"""

from dataclasses import dataclass

import structlog

from config import settings
from generation.client import GenerationAPIError, GenerationClient

logger = structlog.get_logger(__name__)

BLOCKED_PROMPT_MESSAGE = (
    "**Your image prompt was blocked by our filters.**\n\n"
    "*If you violate the usage policies, we may have to take moderative actions; "
    "otherwise, you can ignore this notice*."
)


@dataclass(frozen=True)
class ModerationResult:
    """Outcome of a prompt check."""

    blocked: bool = False
    flags: tuple[str, ...] = ()


class ModerationService:
    """Checks image prompts with the generation service's filter.

    A filter outage never blocks users: failures are logged and the
    prompt is allowed through.

    Attributes:
        client: The generation service client.
        enabled: Whether prompts are checked at all.
    """

    def __init__(self, client: GenerationClient, enabled: bool | None = None) -> None:
        self.client = client
        self.enabled = settings.moderation_enabled if enabled is None else enabled

    async def check_image_prompt(self, user_id: str, prompt: str, model: str) -> ModerationResult:
        """Decide whether a prompt may be submitted.

        Args:
            user_id: The requesting user (for logging).
            prompt: The image prompt.
            model: The model the prompt is for.

        Returns:
            ModerationResult with ``blocked`` set if the prompt was flagged.
        """
        if not self.enabled:
            return ModerationResult()

        try:
            result = await self.client.filter_prompt(prompt, model)
        except GenerationAPIError as e:
            logger.error("moderation_check_failed", user_id=user_id, code=e.code, error=str(e))
            return ModerationResult()
        except Exception as e:
            logger.error("moderation_check_failed", user_id=user_id, error=str(e))
            return ModerationResult()

        flags = tuple(
            name
            for name, flagged in (
                ("nsfw", result.is_nsfw),
                ("young", result.is_young),
                ("cp", result.is_cp),
            )
            if flagged
        )
        if flags:
            logger.warning("prompt_blocked", user_id=user_id, model=model, flags=flags)
        return ModerationResult(blocked=bool(flags), flags=flags)
