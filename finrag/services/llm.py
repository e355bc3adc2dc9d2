# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Chat Backend
# =============================================================================
#
# The answer generator talks to one LLMProvider. Two adapters cover the
# chat APIs in use: Anthropic Messages and anything speaking the OpenAI
# chat-completions wire format (xAI Grok, DeepSeek, Qwen, OpenAI).
#
# DESIGN DECISION: Structural Protocol, no base class.
# Same shape as the VectorIndex and EmbeddingProvider protocols. Any class with
# the right `complete()` method works, which is how tests inject fakes.
#
# DESIGN DECISION: Vendor SDKs called directly.
# Their exception classes are what is_transient_*_error() classifies, so a
# wrapper layer would hide exactly the information retries depend on.
#
# DESIGN DECISION: Explicit configuration, no singleton.
# Providers take api_key/model/base_url in the constructor and
# create_llm_provider(settings) builds one for build_rag_service(). The
# SDK clients are created with max_retries=0: transient errors are retried
# by RetryPolicy and then surface as ProviderError.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   │   └── complete()           — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — any OpenAI-compatible API
#   │   └── complete()           — system prompt as message role
#   └── create_llm_provider()    — factory, reads Settings
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import anthropic
import openai

from finrag.config import Settings
from finrag.errors import ConfigurationError, ProviderError
from finrag.services.embedder import is_transient_openai_error
from finrag.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """One completion, with token usage, independent of the vendor."""

    content: str
    model: str  # as reported by the API, e.g. "grok-beta"
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Chat-completion backend used by AnswerGenerator."""

    @property
    def model(self) -> str: ...

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Run one completion.

        Args:
            messages: "user"/"assistant" turns as {"role", "content"} dicts.
                The system prompt is passed separately.
            system: System prompt; each adapter places it where its API
                expects it.
            temperature: Per-call override; None keeps the configured value.
            max_tokens: Per-call override; None keeps the configured value.

        Raises:
            ProviderError: The call failed (after retries for transient errors).
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


def is_transient_anthropic_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (
            anthropic.APIConnectionError,  # includes APITimeoutError
            anthropic.RateLimitError,
            anthropic.InternalServerError,
        ),
    )


class AnthropicProvider:
    """
    Claude via `anthropic.AsyncAnthropic`.

    The Messages API rejects a "system" role inside `messages`; the system
    prompt goes in the top-level `system=` argument instead.
    """

    provider_name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        retry_policy: RetryPolicy | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "No Anthropic API key configured. Set LLM_API_KEY or "
                    "ANTHROPIC_API_KEY in .env",
                    provider_name=self.provider_name,
                )
            client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._retry = retry_policy or RetryPolicy()

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }

        if system:
            kwargs["system"] = system

        async def _create():
            return await self._client.messages.create(**kwargs)

        try:
            response = await self._retry.call(_create, is_transient_anthropic_error)
        except anthropic.AnthropicError as exc:
            raise ProviderError(
                f"Completion request failed: {exc}",
                provider_name=self.provider_name,
                transient=is_transient_anthropic_error(exc),
            ) from exc

        # First text block only; tool-use blocks are never requested.
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (Grok, DeepSeek, Qwen, OpenAI)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Chat completions through `openai.AsyncOpenAI` with a configurable
    base_url, which covers Grok, DeepSeek, Qwen and OpenAI itself.

    Example .env:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    provider_name = "openai_compatible"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        retry_policy: RetryPolicy | None = None,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "No API key configured for OpenAI-compatible provider. "
                    "Set LLM_API_KEY in .env",
                    provider_name=self.provider_name,
                )
            client_kwargs: dict = {"api_key": api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = openai.AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._retry = retry_policy or RetryPolicy()

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            base_url or "https://api.openai.com/v1",
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        # The system prompt travels as the leading message here.
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        async def _create():
            return await self._client.chat.completions.create(
                model=self._model,
                messages=all_messages,
                max_tokens=max_tokens if max_tokens is not None else self._max_tokens,
                temperature=temperature if temperature is not None else self._temperature,
            )

        try:
            response = await self._retry.call(_create, is_transient_openai_error)
        except openai.OpenAIError as exc:
            raise ProviderError(
                f"Completion request failed: {exc}",
                provider_name=self.provider_name,
                transient=is_transient_openai_error(exc),
            ) from exc

        content = response.choices[0].message.content or ""

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_llm_provider(settings: Settings) -> LLMProvider:
    """
    Build the configured LLM provider.

    settings.llm_provider selects the adapter ("openai_compatible" or
    "anthropic"); anything else is a ConfigurationError.
    """
    retry_policy = RetryPolicy.from_settings(settings)

    if settings.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(
            api_key=settings.llm_api_key or settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            retry_policy=retry_policy,
        )
    if settings.llm_provider == "anthropic":
        return AnthropicProvider(
            api_key=settings.llm_api_key or settings.anthropic_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            retry_policy=retry_policy,
        )

    raise ConfigurationError(
        f"Unknown llm_provider '{settings.llm_provider}'. "
        "Expected 'openai_compatible' or 'anthropic'."
    )
