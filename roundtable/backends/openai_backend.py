"""
Completion backend for OpenAI-compatible chat endpoints.

``CompletionBackend`` holds an ordered list of ``AsyncOpenAI`` clients (one
per configured inference backend) and exposes a single non-streaming
``complete()`` operation that returns :class:`LLMResponse`.  Rate-limit
errors are retried with exponential backoff; other errors fail over to the
next backend.  Each request carries its own deadline.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

from openai import AsyncOpenAI

from roundtable.core.types import (
    ContextTooLargeError,
    LLMResponse,
    LLMToolCall,
    RateLimitError,
    classify_api_error,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    name: str               # unique backend name from inference_backends
    model: str              # default model when the caller does not name one
    max_tokens: int = 4096  # maximum tokens in a single response
    provider: str = "openai"
    api_key: str = ""
    base_url: str = ""      # e.g. https://openrouter.ai/api/v1


def openai_response_to_llm_response(raw: Any) -> LLMResponse:
    """Convert an OpenAI ``ChatCompletion`` object to :class:`LLMResponse`."""
    if not raw.choices:
        return LLMResponse(content=None, tool_calls=None, finish_reason="stop")

    choice = raw.choices[0]
    message = choice.message

    tool_calls: list[LLMToolCall] | None = None
    if message.tool_calls:
        tool_calls = [
            LLMToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            )
            for tc in message.tool_calls
        ]

    return LLMResponse(
        content=message.content,
        tool_calls=tool_calls,
        finish_reason=choice.finish_reason or "stop",
    )


class CompletionBackend:
    """Ordered list of completion backends with automatic failover."""

    RATE_LIMIT_MAX_RETRIES = 5
    RATE_LIMIT_INITIAL_BACKOFF = 2.0   # seconds
    RATE_LIMIT_MAX_BACKOFF = 60.0      # seconds

    def __init__(self, backends: "list[tuple[ProviderConfig, Any]]",
                 timeout: float = 120.0) -> None:
        self._backends = backends
        self._timeout = timeout
        self.last_used: str = backends[0][0].name if backends else ""

    @classmethod
    def from_configs(cls, configs: list[ProviderConfig],
                     timeout: float = 120.0) -> "CompletionBackend":
        """Build clients for *configs*, sharing instances when (base_url, api_key) match."""
        cache: dict[tuple[str, str], AsyncOpenAI] = {}
        backends = []
        for cfg in configs:
            key = (cfg.base_url, cfg.api_key)
            if key not in cache:
                cache[key] = AsyncOpenAI(api_key=cfg.api_key, base_url=cfg.base_url or None)
            backends.append((cfg, cache[key]))
        return cls(backends, timeout=timeout)

    @property
    def primary(self) -> ProviderConfig:
        return self._backends[0][0]

    @property
    def enabled(self) -> bool:
        return len(self._backends) > 0

    def __len__(self) -> int:
        return len(self._backends)

    async def complete(self, *, messages: list[dict],
                       model: Optional[str] = None,
                       tools: "list[dict] | None" = None,
                       max_tokens: "int | None" = None,
                       **extra_kwargs: Any) -> LLMResponse:
        """Run one chat completion, with backoff and failover.

        *model* overrides the backend's configured model (agents carry
        their own model identifiers).  When *tools* is given, tool use is
        enabled with ``tool_choice="auto"``.
        """
        last_error: Exception | None = None
        for cfg, client in self._backends:
            call_kwargs: dict = {"model": model or cfg.model, "messages": messages}
            if tools:
                call_kwargs["tools"] = tools
                call_kwargs["tool_choice"] = "auto"
            call_kwargs["max_tokens"] = max_tokens if max_tokens is not None else cfg.max_tokens
            call_kwargs.update(extra_kwargs)

            backoff = self.RATE_LIMIT_INITIAL_BACKOFF
            for attempt in range(self.RATE_LIMIT_MAX_RETRIES + 1):
                try:
                    raw = await asyncio.wait_for(
                        client.chat.completions.create(**call_kwargs),
                        timeout=self._timeout,
                    )
                    self.last_used = cfg.name
                    return openai_response_to_llm_response(raw)
                except Exception as exc:  # noqa: BLE001
                    error_cls = classify_api_error(exc)
                    backend_desc = f"'{cfg.name}' ({call_kwargs['model']})"

                    if error_cls is RateLimitError and attempt < self.RATE_LIMIT_MAX_RETRIES:
                        jitter = random.uniform(0, backoff * 0.5)
                        wait = min(backoff + jitter, self.RATE_LIMIT_MAX_BACKOFF)
                        logger.warning(
                            "Backend %s rate-limited, retrying in %.1fs (attempt %d/%d)",
                            backend_desc, wait, attempt + 1, self.RATE_LIMIT_MAX_RETRIES,
                        )
                        await asyncio.sleep(wait)
                        backoff = min(backoff * 2, self.RATE_LIMIT_MAX_BACKOFF)
                        continue

                    if error_cls is ContextTooLargeError:
                        raise ContextTooLargeError(str(exc)) from exc

                    if isinstance(exc, asyncio.TimeoutError):
                        exc = TimeoutError(
                            f"Completion call to {backend_desc} timed out after {self._timeout:.0f}s"
                        )

                    last_error = exc
                    if len(self._backends) > 1:
                        logger.warning("Backend %s failed: %s, trying next", backend_desc, exc)
                    else:
                        raise exc
                    break

        if last_error is None:
            last_error = RuntimeError("No completion backends configured")
        raise last_error
