"""LLM message types and HTTP providers (OpenAI-compatible and Ollama)."""

import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from talon.exceptions import (
    InvalidResponseError,
    LLMAPIError,
    LLMError,
    ProviderUnavailableError,
)
from talon.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

KNOWN_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}

PROVIDER_ALIASES = {
    "chatgpt": "openai",
}

API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass
class LLMResponse:
    """One model turn: final text, or one or more tool calls."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    text_mode: bool = False

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def new_call_id(prefix: str = "call") -> str:
    """Generate a tool call id for providers that do not supply one."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _decode_arguments(raw: Any, tool_name: str) -> dict[str, Any]:
    """Decode tool-call arguments that may arrive as a JSON string."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidResponseError(f"Malformed arguments for tool '{tool_name}': {e}") from e
        if isinstance(value, dict):
            return value
    raise InvalidResponseError(f"Arguments for tool '{tool_name}' are not an object")


def _expect_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidResponseError(f"Expected {what} to be an object, got {type(value).__name__}")
    return value


def _token_count(value: Any) -> int:
    """Usage counter as int; providers send null or omit fields freely."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return 0


def _parse_tool_calls(raw: Any, id_prefix: str = "", fallback_prefix: str = "call") -> list[ToolCall]:
    """Parse ``[{"id": ..., "function": {"name": ..., "arguments": ...}}]``."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidResponseError("Expected tool_calls to be a list")
    tool_calls: list[ToolCall] = []
    for tc in raw:
        tc = _expect_dict(tc, "tool call")
        function = _expect_dict(tc.get("function") or {}, "tool call function")
        name = str(function.get("name") or "").strip()
        if not name:
            raise InvalidResponseError("Tool call without a function name")
        call_id = str(tc.get("id") or "").strip()
        tool_calls.append(ToolCall(
            id=f"{id_prefix}{call_id}" if call_id else new_call_id(fallback_prefix),
            name=name,
            arguments=_decode_arguments(function.get("arguments"), name),
        ))
    return tool_calls


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        return None


class _HTTPProvider(LLMProvider):
    """Shared httpx plumbing for JSON chat endpoints."""

    endpoint = ""

    def __init__(
        self,
        model: str,
        base_url: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST body and return decoded JSON, mapping failures onto the LLM taxonomy."""
        url = f"{self.base_url}{self.endpoint}"
        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(body.get("messages", [])))
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Request to {self.model} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"HTTP error calling {self.model}: {e}") from e

        log.debug("Model response status", model=self.model, status=response.status_code)
        if not response.is_success:
            error_text = response.text
            raise LLMAPIError(
                f"API error (status {response.status_code}): {error_text}",
                status_code=response.status_code,
                body=error_text,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise InvalidResponseError(f"Response decode error: {e}") from e
        if not isinstance(data, dict):
            raise InvalidResponseError("Response payload is not an object")
        return data

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OpenAICompatibleProvider(_HTTPProvider):
    """Provider for OpenAI-style `/chat/completions` APIs (OpenAI, OpenRouter, ...)."""

    endpoint = "/chat/completions"

    def __init__(self, *args: Any, provider: str = "openai", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.provider = provider

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.provider == "openrouter":
            headers["X-Title"] = "talon"
        return headers

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to OpenAI chat format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments, ensure_ascii=False),
                        },
                    }
                    for call in msg.tool_calls
                ]
            elif msg.role == "tool":
                entry["tool_call_id"] = msg.tool_call_id or ""
                if msg.tool_name:
                    entry["name"] = msg.tool_name
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
        ]

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)

        data = await self._post(body)

        error = data.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise LLMAPIError(f"API error: {message}", body=json.dumps(error))

        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices:
            raise InvalidResponseError("No choices in model response")
        message = _expect_dict(_expect_dict(choices[0], "choice").get("message") or {}, "message")
        tool_calls = _parse_tool_calls(message.get("tool_calls"))

        usage_raw = data.get("usage") or {}
        if not isinstance(usage_raw, dict):
            usage_raw = {}
        prompt_tokens = _token_count(usage_raw.get("prompt_tokens"))
        completion_tokens = _token_count(usage_raw.get("completion_tokens"))
        usage = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": _token_count(usage_raw.get("total_tokens")) or prompt_tokens + completion_tokens,
        }

        return LLMResponse(
            content=str(message.get("content") or ""),
            tool_calls=tool_calls,
            model=self.model,
            usage=usage,
        )


class OllamaProvider(_HTTPProvider):
    """Direct Ollama API provider."""

    endpoint = "/api/chat"
    provider = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        num_ctx: int = 65536,
        **kwargs: Any,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            num_ctx: Context window requested from the server
        """
        super().__init__(model, base_url, **kwargs)
        self.num_ctx = num_ctx

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}}
                    for call in msg.tool_calls
                ]
            elif msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        options: dict[str, Any] = {
            "num_ctx": self.num_ctx,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": options,
        }
        if tools:
            body["tools"] = OpenAICompatibleProvider._convert_tools(tools)

        data = await self._post(body)

        message = data.get("message")
        if not isinstance(message, dict):
            raise InvalidResponseError("Ollama response has no message")

        tool_calls = _parse_tool_calls(
            message.get("tool_calls"),
            id_prefix="ollama_call_",
            fallback_prefix="ollama_call",
        )

        prompt_tokens = _token_count(data.get("prompt_eval_count"))
        completion_tokens = _token_count(data.get("eval_count"))
        return LLMResponse(
            content=str(message.get("content") or ""),
            tool_calls=tool_calls,
            model=self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
    client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (ollama, openai, openrouter, or any OpenAI-compatible name with base_url)
        model: Model name
        api_key: Optional API key (falls back to the provider's env var)
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: HTTP client timeout
        client: Optional preconfigured httpx client

    Returns:
        Configured LLMProvider instance
    """
    name = str(provider or "").strip().lower()
    name = PROVIDER_ALIASES.get(name, name)
    common: dict[str, Any] = {
        "temperature": temperature,
        "max_tokens": max_tokens,
        "timeout": timeout,
        "client": client,
    }

    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            api_key=api_key,
            **common,
        )

    resolved_base = base_url or KNOWN_BASE_URLS.get(name)
    if not resolved_base:
        raise ValueError(f"Provider '{provider}' not supported without a base_url")
    env_var = API_KEY_ENV_VARS.get(name)
    resolved_key = api_key or (os.environ.get(env_var) if env_var else None)
    return OpenAICompatibleProvider(
        model,
        resolved_base,
        api_key=resolved_key,
        provider=name,
        **common,
    )


__all__ = [
    "LLMError",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "ToolCall",
    "ToolDefinition",
    "create_provider",
    "new_call_id",
]
