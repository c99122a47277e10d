"""Custom exceptions for Talon."""

from typing import Any


class TalonError(Exception):
    """Base exception for Talon."""

    pass


class ConfigurationError(TalonError):
    """Configuration-related errors."""

    pass


class LLMError(TalonError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderUnavailableError(LLMError):
    """Provider could not be reached (transport failure or timeout)."""

    pass


class InvalidResponseError(LLMError):
    """Provider answered with a payload that could not be parsed."""

    pass


class FatalProviderError(LLMError):
    """Non-recoverable provider failure; the fallback chain is aborted."""

    def __init__(self, model: str, cause: Exception):
        super().__init__(f"Model '{model}' failed fatally: {cause}")
        self.model = model
        self.cause = cause


class AllModelsExhaustedError(LLMError):
    """Every model in the fallback chain failed or was cooling down."""

    def __init__(self, attempts: dict[str, Exception] | None = None, message: str | None = None):
        self.attempts: dict[str, Exception] = dict(attempts or {})
        if message is None:
            if self.attempts:
                detail = "; ".join(f"{model}: {error}" for model, error in self.attempts.items())
                message = f"All models failed: {detail}"
            else:
                message = "All models are in cooldown"
        super().__init__(message)


class ContextTooLongError(AllModelsExhaustedError):
    """Conversation does not fit the context window of any available model."""

    def __init__(self, attempts: dict[str, Exception] | None = None):
        super().__init__(
            attempts,
            message=f"Context too long for all models: {', '.join(attempts or {}) or 'none'}",
        )


class ToolError(TalonError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class DuplicateToolError(ToolError):
    """A tool with the same name is already registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool already registered: {tool_name}")
        self.tool_name = tool_name


class RegistryFrozenError(ToolError):
    """Registration attempted after the registry was frozen."""

    def __init__(self, tool_name: str):
        super().__init__(f"Registry is frozen, cannot register: {tool_name}")
        self.tool_name = tool_name


class SchemaValidationError(ToolError):
    """Tool arguments do not match the declared parameter schema."""

    def __init__(self, tool_name: str, path: str, message: str):
        location = f" at '{path}'" if path else ""
        super().__init__(f"Invalid arguments for '{tool_name}'{location}: {message}")
        self.tool_name = tool_name
        self.path = path


class ApprovalError(TalonError):
    """Approval gate errors."""

    pass


class AlreadyPendingError(ApprovalError):
    """An approval for this tool call is already pending."""

    def __init__(self, tool_call_id: str):
        super().__init__(f"Approval already pending for tool call: {tool_call_id}")
        self.tool_call_id = tool_call_id


class ApprovalDeniedError(ApprovalError):
    """A flagged tool call was denied or timed out."""

    def __init__(self, tool_name: str, state: Any):
        label = getattr(state, "value", state)
        super().__init__(f"Tool '{tool_name}' was not approved ({label})")
        self.tool_name = tool_name
        self.state = state


class AgentError(TalonError):
    """Agent loop errors."""

    pass


class IterationLimitExceededError(AgentError):
    """The model kept requesting tools past the iteration cap."""

    def __init__(self, max_iterations: int):
        super().__init__(f"Iteration limit exceeded: {max_iterations}")
        self.max_iterations = max_iterations


class SessionError(TalonError):
    """Session-related errors."""

    pass
