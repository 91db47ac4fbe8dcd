"""LLM client: sends an assembled prompt to a chat-completion backend.

The turn runner injects an LLM callable matching the protocol:

    async def __call__(self, messages: list[PromptMessage]) -> str: ...

Two implementations are provided:

    ChatLLM   - real HTTP client for OpenAI-compatible /chat/completions
                endpoints (OpenRouter by default).
    EchoLLM   - returns the last prompt message unchanged. Useful for
                checking prompt assembly without a running model.

tests/test_chat.py uses a recording StubLLM instead.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from chara_prompt.models import PromptMessage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, messages: list[PromptMessage]) -> str: ...


# ---------------------------------------------------------------------------
# ChatLLM: connects to a real backend
# ---------------------------------------------------------------------------

class ChatLLM:
    """Async HTTP client for OpenAI-compatible chat-completion backends.

    POST {base_url}/chat/completions
        {"model": ..., "messages": [{"role", "content"}, ...], "stream": false}
    Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        base_url:   Base URL of the API, e.g. "https://openrouter.ai/api/v1".
        api_key:    Bearer token, or empty string if not required.
        model:      Model identifier.
        max_tokens: Optional completion limit, omitted when None.
        timeout:    HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        max_tokens: int | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_body(self, messages: list[PromptMessage]) -> dict:
        body: dict = {
            "model": self._model,
            "messages": [m.model_dump(mode="json") for m in messages],
            "stream": False,
        }
        if self._max_tokens is not None:
            body["max_tokens"] = self._max_tokens
        return body

    def _parse_response(self, data: dict) -> str:
        choices = data.get("choices")
        if not choices or not isinstance(choices[0].get("message"), dict):
            raise LLMError("Unexpected response format from chat-completion backend")
        return choices[0]["message"].get("content") or ""

    async def __call__(self, messages: list[PromptMessage]) -> str:
        url = f"{self._base_url}/chat/completions"
        logger.debug("llm call url=%s model=%s messages=%d", url, self._model, len(messages))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=self._build_body(messages), headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        text = self._parse_response(resp.json())
        logger.debug("llm response len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM: returns the last message; useful for prompt smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the content of the last prompt message. No network calls."""

    async def __call__(self, messages: list[PromptMessage]) -> str:
        logger.debug("EchoLLM messages=%d", len(messages))
        return messages[-1].content if messages else ""


# ---------------------------------------------------------------------------
# LLMError: raised by ChatLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
