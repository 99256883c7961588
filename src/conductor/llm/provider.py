"""LLM provider abstraction: unified via litellm.

litellm handles all provider-specific details (Anthropic, OpenAI, Gemini,
etc.) and normalizes streaming to OpenAI-format chunks. We convert those to
a small internal chunk dict format consumed by ``streaming.generate``:

    {
        "finish_reason": str | None,
        "delta": {
            "content": str | None,
            "tool_calls": [...] | None,   # OpenAI-style tool call deltas
        },
        "usage": {
            "prompt_tokens": int,
            "completion_tokens": int,
            "total_tokens": int,
        } | None,
    }

Provider errors are translated into ``TransientModelError`` or
``FatalModelError`` here so callers never have to know about litellm's
exception zoo. Retrying is the agent loop's job, not the provider's.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from conductor.errors import FatalModelError, ModelError, TransientModelError

if TYPE_CHECKING:
    from litellm import ModelResponseStream

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    context_window: int = 200_000


@runtime_checkable
class ChatProvider(Protocol):
    """Protocol for LLM providers."""

    @property
    def config(self) -> ProviderConfig: ...

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream a chat completion. Yields normalized chunk dicts."""
        ...


# ---------------------------------------------------------------------------
# litellm provider
# ---------------------------------------------------------------------------


@dataclass
class LiteLLMProvider:
    """Unified LLM provider using litellm.

    litellm detects the provider from the model string prefix
    (e.g. "anthropic/claude-...", "openai/gpt-...") and reads API keys
    from environment variables.
    """

    _config: ProviderConfig

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream from litellm, yielding normalized chunk dicts."""
        import litellm

        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        if self._config.max_tokens is not None:
            kwargs["max_tokens"] = self._config.max_tokens

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:  # type: ignore[union-attr]
                yield _chunk_to_dict(chunk)
        except ModelError:
            raise
        except Exception as e:
            raise translate_error(e) from e


def translate_error(exc: BaseException) -> ModelError:
    """Map a provider exception onto the transient/fatal split."""
    import litellm

    fatal_types = (
        litellm.AuthenticationError,
        litellm.PermissionDeniedError,
        litellm.BudgetExceededError,
    )
    transient_types = (
        litellm.RateLimitError,
        litellm.APIConnectionError,
        litellm.Timeout,
        litellm.ServiceUnavailableError,
        litellm.InternalServerError,
    )

    if isinstance(exc, fatal_types):
        return FatalModelError(str(exc))
    if isinstance(exc, transient_types):
        message = str(exc)
        # Providers report exhausted quotas as 429s; those will not recover.
        if "quota" in message.lower() or "insufficient_quota" in message.lower():
            return FatalModelError(message)
        return TransientModelError(message)
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
        return TransientModelError(str(exc) or type(exc).__name__)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status in (401, 402, 403):
            return FatalModelError(str(exc))
        if status == 429 or status >= 500:
            return TransientModelError(str(exc))
    return FatalModelError(str(exc) or type(exc).__name__)


def _chunk_to_dict(chunk: ModelResponseStream) -> dict[str, Any]:
    """Convert a litellm ModelResponseStream chunk to our normalized dict."""
    result: dict[str, Any] = {"finish_reason": None, "delta": {}}

    choices = getattr(chunk, "choices", None)
    if choices:
        choice = choices[0]
        delta = choice.delta
        result["finish_reason"] = choice.finish_reason

        if delta.content is not None:
            result["delta"]["content"] = delta.content

        if delta.tool_calls:
            result["delta"]["tool_calls"] = [
                {
                    "index": tc.index,
                    "id": tc.id,
                    "function": {
                        "name": tc.function.name if tc.function else None,
                        "arguments": tc.function.arguments if tc.function else None,
                    },
                }
                for tc in delta.tool_calls
            ]

    usage = getattr(chunk, "usage", None)
    if usage:
        result["usage"] = {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    return result


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(
    model: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    context_window: int = 200_000,
) -> ChatProvider:
    """Create a LiteLLM provider.

    Args:
        model: Model name with provider prefix (e.g.
            "anthropic/claude-sonnet-4-5-20250929", "openai/gpt-4o").
        temperature: Sampling temperature.
        max_tokens: Max output tokens.
        context_window: Context window size, used for compaction budgeting.
    """
    config = ProviderConfig(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        context_window=context_window,
    )
    return LiteLLMProvider(_config=config)
