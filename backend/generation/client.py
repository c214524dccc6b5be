"""HTTP client for the external image generation service.

The service streams newline-delimited JSON updates for a job until it
reaches a terminal state. Each line is parsed into a ServiceUpdate.

Usage:
    >>> client = GenerationClient()
    >>> async for update in client.stream_imagine({"prompt": "a cat", "model": "5.1"}):
    ...     print(update.status, update.done)
"""

import json
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from config import settings
from models.schemas import ServiceUpdate

logger = structlog.get_logger(__name__)

IMAGINE_PATH = "imgs/mj"
FILTER_PATH = "imgs/filter"


class GenerationAPIError(Exception):
    """Raised when the generation service answers with a non-2xx status.

    Attributes:
        code: HTTP status code.
        endpoint: The path that was requested.
        message: The ``error`` field of the response body, if any.
    """

    def __init__(self, code: int, endpoint: str, message: str | None = None) -> None:
        self.code = code
        self.endpoint = endpoint
        self.message = message
        super().__init__(message or f"Generation service returned HTTP {code} for {endpoint}")


@dataclass(frozen=True)
class FilterResult:
    """Result of the service's prompt filter."""

    is_nsfw: bool = False
    is_young: bool = False
    is_cp: bool = False

    @property
    def flagged(self) -> bool:
        return self.is_nsfw or self.is_young or self.is_cp


class GenerationClient:
    """Async client for the generation service.

    A fresh httpx.AsyncClient is opened per request, so concurrent jobs
    never share connection state.

    Attributes:
        base_url: Service root URL.
        timeout: Read timeout for streamed jobs, in seconds.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        captcha_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service root URL (defaults to config).
            api_key: Bearer key (defaults to config).
            captcha_token: Captcha token header value (defaults to config).
            timeout: Read timeout in seconds (defaults to config).
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = (base_url or settings.generation_api_base).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.generation_api_key
        self._captcha_token = (
            captcha_token if captcha_token is not None else settings.generation_captcha_token
        )
        self.timeout = timeout or settings.generation_timeout_seconds
        self._transport = transport

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "x-captcha-token": self._captcha_token,
            "Content-Type": "application/json",
        }

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    @staticmethod
    def _error(response: httpx.Response, path: str) -> GenerationAPIError:
        message: str | None = None
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("error"):
                message = str(body["error"])
        except (json.JSONDecodeError, UnicodeDecodeError):
            pass
        return GenerationAPIError(code=response.status_code, endpoint=f"/{path}", message=message)

    async def stream_imagine(self, payload: dict[str, Any]) -> AsyncIterator[ServiceUpdate]:
        """Submit a job and yield every update the service streams back.

        Args:
            payload: Either ``{prompt, model}`` or ``{action, id, number}``.

        Yields:
            Parsed ServiceUpdate objects in arrival order.

        Raises:
            GenerationAPIError: If the service rejects the request.
            httpx.HTTPError: On transport failures.
        """
        async with self._http_client() as client:
            async with client.stream(
                "POST",
                self._url(IMAGINE_PATH),
                json=payload,
                headers=self._headers(),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise self._error(response, IMAGINE_PATH)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if line.startswith("data:"):
                        line = line[len("data:"):].strip()
                    if not line:
                        continue

                    try:
                        yield ServiceUpdate.model_validate(json.loads(line))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning(
                            "generation_update_unparseable",
                            line_preview=line[:120],
                            error=str(e),
                        )

    async def filter_prompt(self, prompt: str, model: str) -> FilterResult:
        """Run the service's prompt filter.

        Raises:
            GenerationAPIError: If the service rejects the request.
        """
        body = await self._request(FILTER_PATH, {"prompt": prompt, "model": model})
        return FilterResult(
            is_nsfw=bool(body.get("isNsfw", False)),
            is_young=bool(body.get("isYoung", False)),
            is_cp=bool(body.get("isCP", False)),
        )

    async def _request(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        async with self._http_client() as client:
            response = await client.post(self._url(path), json=data, headers=self._headers())
        if not response.is_success:
            raise self._error(response, path)
        return response.json()


def default_mock_script(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """A plausible queued → running → done sequence for the mock client."""
    action = payload.get("action")
    job_id = f"mock_{uuid.uuid4().hex[:12]}"
    return [
        {"id": job_id, "queued": 0, "prompt": payload.get("prompt"), "action": action},
        {"id": job_id, "status": 0.1, "prompt": payload.get("prompt"), "action": action},
        {"id": job_id, "status": 0.5, "prompt": payload.get("prompt"), "action": action},
        {
            "id": job_id,
            "done": True,
            "status": 1.0,
            "image": f"https://example.com/mock/{job_id}.png",
            "prompt": payload.get("prompt"),
            "action": action,
            "jobId": payload.get("id"),
            "number": payload.get("number"),
        },
    ]


class MockGenerationClient(GenerationClient):
    """Mock generation client for testing without network calls.

    Each ``stream_imagine`` call consumes the next scripted list of
    updates; when no scripts are left the default script is used.

    Usage:
        >>> client = MockGenerationClient(scripts=[[
        ...     {"id": "job_1", "status": 0.1},
        ...     {"id": "job_1", "done": True, "image": "https://x/1.png"},
        ... ]])
    """

    def __init__(
        self,
        scripts: list[list[dict[str, Any] | Exception]] | None = None,
        filter_result: FilterResult | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.scripts = [list(script) for script in scripts] if scripts else []
        self.filter_result = filter_result or FilterResult()
        self.call_history: list[dict[str, Any]] = []

    async def stream_imagine(self, payload: dict[str, Any]) -> AsyncIterator[ServiceUpdate]:
        self.call_history.append(payload)
        script = self.scripts.pop(0) if self.scripts else default_mock_script(payload)

        logger.debug("mock_generation_stream", updates=len(script))
        for raw in script:
            if isinstance(raw, Exception):
                raise raw
            yield ServiceUpdate.model_validate(raw)

    async def filter_prompt(self, prompt: str, model: str) -> FilterResult:
        self.call_history.append({"filter": prompt, "model": model})
        return self.filter_result
