"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from jsonschema import Draft202012Validator
from pydantic import BaseModel, model_validator

from talon.exceptions import (
    DuplicateToolError,
    RegistryFrozenError,
    ToolExecutionError,
    ToolNotFoundError,
)
from talon.llm import ToolDefinition
from talon.logging import get_logger
from talon.tools.schema import build_validator, validate_arguments

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for all tools.

    Concrete tools set ``name``, ``description`` and ``parameters`` (a JSON
    schema object) and implement ``execute``. ``execute`` receives the
    validated arguments as keyword arguments plus ``_abort_event``, an
    ``asyncio.Event`` set when the call is aborted or times out.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition sent to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=dict(self.parameters),
        )


class ToolRegistry:
    """Registry of available tools.

    Tools are registered once at startup; ``freeze`` closes registration.
    After that the registry is read-only and safe to share across sessions.
    """

    def __init__(self, default_timeout: float = 30.0):
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        self._frozen = False
        self.default_timeout = default_timeout

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Raises:
            ValueError: tool has no name or an invalid schema
            DuplicateToolError: name already registered
            RegistryFrozenError: registration phase is over
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if self._frozen:
            raise RegistryFrozenError(tool.name)
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)

        log.debug("Registering tool", tool=tool.name)
        self._validators[tool.name] = build_validator(tool.name, tool.parameters)
        self._tools[tool.name] = tool

    def freeze(self) -> None:
        """End the registration phase."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List registered tool names in registration order."""
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Tool definitions for the model, in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    def validate(self, name: str, arguments: Any) -> dict[str, Any]:
        """Validate arguments for a registered tool.

        Raises:
            ToolNotFoundError if not found
            SchemaValidationError if arguments do not match the schema
        """
        self.get(name)
        return validate_arguments(name, self._validators[name], arguments)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    def _resolve_timeout(self, tool: Tool, arguments: dict[str, Any]) -> float:
        """Tool timeout, optionally lowered (never raised) by a ``timeout`` argument."""
        timeout_seconds = float(getattr(tool, "timeout_seconds", 0) or self.default_timeout)
        timeout_override = arguments.get("timeout")
        if isinstance(timeout_override, (int, float)) and not isinstance(timeout_override, bool):
            timeout_seconds = min(timeout_seconds, float(timeout_override))
        return max(1.0, timeout_seconds)

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            abort_event: Optional event that aborts the running tool when set

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            SchemaValidationError if arguments are invalid
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        self.validate(name, arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = self._resolve_timeout(tool, arguments)

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(**arguments, _abort_event=tool_abort_event)
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
