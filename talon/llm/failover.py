"""Model client with a priority-ordered fallback chain and per-model cooldowns."""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from talon.config import Config, CooldownConfig, ModelSpec, get_config
from talon.exceptions import (
    AllModelsExhaustedError,
    ContextTooLongError,
    FatalProviderError,
    InvalidResponseError,
    LLMAPIError,
    ProviderUnavailableError,
)
from talon.llm import LLMProvider, LLMResponse, Message, ToolDefinition, create_provider
from talon.llm.text_calls import (
    build_instructions,
    extract_tool_calls,
    render_history,
)
from talon.logging import get_logger

log = get_logger(__name__)

_SERVER_ERROR_CODES = {500, 502, 503, 504}
_CONTEXT_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "prompt is too long",
)


class FailureClass(str, Enum):
    """How a failed completion affects the fallback chain."""

    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CONTEXT_TOO_LONG = "context_too_long"
    INVALID_RESPONSE = "invalid_response"
    FATAL = "fatal"


def classify_error(error: BaseException) -> FailureClass:
    """Map a provider exception onto a failure class."""
    if isinstance(error, InvalidResponseError):
        return FailureClass.INVALID_RESPONSE
    if isinstance(error, (ProviderUnavailableError, asyncio.TimeoutError, TimeoutError)):
        return FailureClass.SERVICE_UNAVAILABLE
    if isinstance(error, LLMAPIError):
        code = error.status_code
        if code == 429:
            return FailureClass.RATE_LIMITED
        text = f"{error.body} {error}".lower()
        if code == 413 or any(marker in text for marker in _CONTEXT_MARKERS):
            return FailureClass.CONTEXT_TOO_LONG
        if code in _SERVER_ERROR_CODES:
            return FailureClass.SERVICE_UNAVAILABLE
    return FailureClass.FATAL


@dataclass
class ChainEntry:
    """A model spec paired with the provider that serves it."""

    spec: ModelSpec
    provider: LLMProvider


class FailoverClient:
    """Ask the language model for a completion, walking the fallback chain.

    Retryable failures (rate limit, unavailable service, context too long) put
    the failing model on cooldown and move to the next model. An invalid
    response is retried once on the same model before moving on. Any other
    failure aborts the chain. The cooldown table belongs to this instance and
    is safe to share between concurrent requests.
    """

    def __init__(
        self,
        chain: list[ChainEntry],
        cooldowns: CooldownConfig | None = None,
        request_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not chain:
            raise ValueError("Fallback chain must contain at least one model")
        # sorted() is stable, so equal priorities keep configuration order
        self._chain = sorted(chain, key=lambda entry: entry.spec.priority)
        self._cooldown_config = cooldowns or CooldownConfig()
        self.request_timeout = request_timeout
        self._clock = clock
        self._cooldowns: dict[str, float] = {}
        self._lock = threading.Lock()
        self.last_model_used: str | None = None

    @classmethod
    def from_config(cls, config: Config | None = None) -> "FailoverClient":
        """Build providers for every configured chain entry."""
        cfg = config or get_config()
        chain = [
            ChainEntry(
                spec=spec,
                provider=create_provider(
                    provider=spec.provider,
                    model=spec.identifier,
                    api_key=cfg.model.api_key or None,
                    base_url=spec.base_url or None,
                    temperature=cfg.model.temperature,
                    max_tokens=cfg.model.max_tokens,
                    timeout=cfg.model.request_timeout,
                ),
            )
            for spec in cfg.ordered_chain()
        ]
        return cls(
            chain,
            cooldowns=cfg.model.cooldowns,
            request_timeout=cfg.model.request_timeout,
        )

    @property
    def chain(self) -> list[ModelSpec]:
        return [entry.spec for entry in self._chain]

    def _cooldown_seconds(self, failure: FailureClass) -> float:
        if failure is FailureClass.RATE_LIMITED:
            return self._cooldown_config.rate_limited
        if failure is FailureClass.CONTEXT_TOO_LONG:
            return self._cooldown_config.context_too_long
        return self._cooldown_config.service_unavailable

    def set_cooldown(self, identifier: str, failure: FailureClass) -> float:
        """Put a model on cooldown; returns the expiry timestamp."""
        expires_at = self._clock() + self._cooldown_seconds(failure)
        with self._lock:
            self._cooldowns[identifier] = expires_at
        log.info(
            "Model placed in cooldown",
            model=identifier,
            failure=failure.value,
            seconds=self._cooldown_seconds(failure),
        )
        return expires_at

    def cooldown_remaining(self, identifier: str) -> float:
        """Seconds left on a model's cooldown (0 when eligible)."""
        now = self._clock()
        with self._lock:
            expires_at = self._cooldowns.get(identifier)
            if expires_at is None:
                return 0.0
            if expires_at <= now:
                del self._cooldowns[identifier]
                return 0.0
            return expires_at - now

    def is_cooling_down(self, identifier: str) -> bool:
        return self.cooldown_remaining(identifier) > 0

    def reset_cooldowns(self) -> None:
        with self._lock:
            self._cooldowns.clear()

    async def _call_model(
        self,
        entry: ChainEntry,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> LLMResponse:
        if tools and not entry.spec.supports_tools:
            return await self._call_text_mode(entry, messages, tools, temperature, max_tokens)
        return await asyncio.wait_for(
            entry.provider.complete(
                messages,
                tools=tools or None,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            timeout=self.request_timeout,
        )

    async def _call_text_mode(
        self,
        entry: ChainEntry,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None,
        max_tokens: int | None,
    ) -> LLMResponse:
        """Degraded mode: describe tools in the prompt and parse calls out of the reply."""
        instructions = build_instructions(tools)
        request_messages = render_history(messages)
        if request_messages and request_messages[0].role == "system":
            first = request_messages[0]
            request_messages[0] = Message(role="system", content=f"{first.content}\n\n{instructions}")
        else:
            request_messages.insert(0, Message(role="system", content=instructions))

        response = await asyncio.wait_for(
            entry.provider.complete(
                request_messages,
                tools=None,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            timeout=self.request_timeout,
        )
        calls, remaining = extract_tool_calls(response.content, known_tools={tool.name for tool in tools})
        if calls:
            response.tool_calls = calls
            response.content = remaining
        response.text_mode = True
        log.debug("Text-mode completion", model=entry.spec.identifier, tool_calls=len(calls))
        return response

    async def _attempt(
        self,
        entry: ChainEntry,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> LLMResponse:
        """Call one model, retrying a single time on an invalid response."""
        try:
            return await self._call_model(entry, messages, tools, temperature, max_tokens)
        except InvalidResponseError as e:
            log.warning("Invalid model response, retrying", model=entry.spec.identifier, error=str(e))
        return await self._call_model(entry, messages, tools, temperature, max_tokens)

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the first successful completion along the fallback chain.

        Raises:
            FatalProviderError: a model failed with a non-retryable error
            ContextTooLongError: every attempted model rejected the context size
            AllModelsExhaustedError: no model produced a response
        """
        attempts: dict[str, Exception] = {}
        # largest known context window that already rejected this conversation
        context_floor = 0
        for entry in self._chain:
            identifier = entry.spec.identifier
            if self.is_cooling_down(identifier):
                log.debug("Skipping model in cooldown", model=identifier)
                continue
            window = entry.spec.context_window
            if context_floor and window is not None and window <= context_floor:
                log.debug("Skipping model with too small a context window", model=identifier, context_window=window)
                continue

            try:
                response = await self._attempt(entry, messages, tools, temperature, max_tokens)
            except Exception as e:
                failure = classify_error(e)
                attempts[identifier] = e
                if failure is FailureClass.FATAL:
                    log.error("Model failed with fatal error", model=identifier, error=str(e))
                    raise FatalProviderError(identifier, e) from e
                if failure is not FailureClass.INVALID_RESPONSE:
                    self.set_cooldown(identifier, failure)
                if failure is FailureClass.CONTEXT_TOO_LONG and window is not None:
                    context_floor = max(context_floor, window)
                log.warning(
                    "Model failed, falling back",
                    model=identifier,
                    failure=failure.value,
                    error=str(e),
                )
                continue

            response.model = identifier
            self.last_model_used = identifier
            log.info(
                "Model served request",
                model=identifier,
                tool_calls=len(response.tool_calls),
                text_mode=response.text_mode,
            )
            return response

        if attempts and all(
            classify_error(error) is FailureClass.CONTEXT_TOO_LONG for error in attempts.values()
        ):
            raise ContextTooLongError(attempts)
        raise AllModelsExhaustedError(attempts)

    async def close(self) -> None:
        for entry in self._chain:
            await entry.provider.close()
