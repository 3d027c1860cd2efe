"""LLM client: the generation capability the engine delegates to.

Engine components receive an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str, *, max_tokens: int | None = None) -> str: ...

`stage` identifies the caller ("arbiter", "talk_control"). `max_tokens`
bounds the response length; implementations that cannot honour it may
ignore it.

Two implementations are provided:

    HttpLLM   - real HTTP client, supports KoboldCpp and OpenAI-compatible
                 backends. Selected by provider_format.
    EchoLLM   - returns the prompt back unchanged. Useful for smoke-testing
                 the session wiring without a running model.

Callers never let an LLMError escape: the arbiter turns it into a
"continue" verdict and talk-control skips the reply.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal, Protocol

import httpx

if TYPE_CHECKING:
    from story_orchestrator.config import LLMConnection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str, *, max_tokens: int | None = None) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-completion backends.

    Supported formats:
      "koboldcpp"  - POST /api/v1/generate  {"prompt": ..., "max_length": ...}
                     Response: {"results": [{"text": "..."}]}
      "openai"     - POST /v1/completions   {"model": ..., "prompt": ..., "max_tokens": ...}
                     Response: {"choices": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str, max_tokens: int | None) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt}
            if self._model:
                body["model"] = self._model
            if max_tokens:
                body["max_tokens"] = max_tokens
            return url, body

        url = f"{self._base_url}/api/v1/generate"
        body = {"prompt": prompt}
        if max_tokens:
            body["max_length"] = max_tokens
        return url, body

    def _parse_response(self, data: dict) -> str:
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, stage: str, prompt: str, *, max_tokens: int | None = None) -> str:
        url, body = self._build_request(prompt, max_tokens)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


def llm_from_connection(connection: LLMConnection) -> HttpLLM:
    """Build an HttpLLM from a configured connection."""
    return HttpLLM(
        provider_url=connection.provider_url,
        api_key=connection.api_key,
        provider_format=connection.provider_format,
        model=connection.model,
        timeout=connection.timeout,
    )


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    The arbiter cannot parse a verdict out of an echoed prompt, so every
    evaluation resolves to "continue"; talk-control LLM replies echo their
    instruction prompt.
    """

    async def __call__(self, stage: str, prompt: str, *, max_tokens: int | None = None) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


# ---------------------------------------------------------------------------
# LLMError
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
