"""Tool-calling agent loop."""

import asyncio
import platform
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from talon.approval import ApprovalGate, ApprovalNotifier, ApprovalState, DangerClassifier
from talon.config import Config, get_config
from talon.exceptions import (
    ApprovalDeniedError,
    ApprovalError,
    IterationLimitExceededError,
    ToolError,
)
from talon.execution_queue import CommandQueueManager, resolve_session_lane
from talon.llm import Message, ToolCall, new_call_id
from talon.llm.failover import FailoverClient
from talon.logging import configure_logging, get_logger
from talon.session import SessionStore, create_session_store
from talon.tools import ToolRegistry, create_default_registry

log = get_logger(__name__)

EMPTY_FINAL_TEXT = "I've completed the requested actions."


class AgentState(str, Enum):
    """Agent loop states."""

    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ToolUse:
    """One executed (or refused) tool call."""

    name: str
    arguments: dict[str, Any]
    result: str
    is_error: bool = False
    tool_call_id: str = ""


@dataclass(frozen=True)
class AgentResponse:
    """Final outcome of one ``process_request`` call."""

    final_text: str
    tools_used: tuple[ToolUse, ...] = ()
    iteration_count: int = 0
    model_used: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class _ToolOutcome:
    call: ToolCall
    content: str
    is_error: bool

    def to_message(self) -> Message:
        return Message(
            role="tool",
            content=self.content,
            tool_call_id=self.call.id,
            tool_name=self.call.name,
        )


class ToolCallingAgent:
    """Drive a conversation until the model answers without tool calls.

    Requests for the same session are serialized; different sessions run
    concurrently and share the registry and the model client.
    """

    def __init__(
        self,
        model_client: FailoverClient,
        tools: ToolRegistry,
        session_store: SessionStore,
        approval_gate: ApprovalGate | None = None,
        classifier: DangerClassifier | None = None,
        config: Config | None = None,
        queue: CommandQueueManager | None = None,
    ):
        cfg = config or get_config()
        self.model_client = model_client
        self.tools = tools
        self.session_store = session_store
        self.approval_gate = approval_gate
        self.classifier = classifier or DangerClassifier.from_config(cfg)
        self.max_iterations = max(1, int(cfg.agent.max_iterations))
        self.history_limit = max(0, int(cfg.agent.history_limit))
        self.system_prompt = cfg.agent.system_prompt
        self._queue = queue or CommandQueueManager()

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @staticmethod
    def _accumulate_usage(target: dict[str, int], usage: dict[str, int] | None) -> None:
        """Add usage values into target totals."""
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0))
        completion = int(usage.get("completion_tokens", 0))
        total = int(usage.get("total_tokens", prompt + completion))
        target["prompt_tokens"] += prompt
        target["completion_tokens"] += completion
        target["total_tokens"] += total

    def _build_system_prompt(self) -> str:
        lines = [self.system_prompt.strip(), "", "You have access to the following tools:", ""]
        for definition in self.tools.get_definitions():
            lines.append(f"Tool: {definition.name}")
            lines.append(f"Description: {definition.description}")
            lines.append("")
        lines.append(
            f"Runtime: os={platform.system().lower()} arch={platform.machine()} "
            f"date={datetime.now(UTC).date().isoformat()}"
        )
        return "\n".join(lines)

    async def process_request(self, session_id: str, user_text: str) -> AgentResponse:
        """Answer one user message for a session.

        Raises:
            AllModelsExhaustedError: no model could produce a turn
            FatalProviderError: a provider failed non-recoverably
            IterationLimitExceededError: the model kept calling tools
        """
        lane = resolve_session_lane(session_id)
        return await self._queue.enqueue_in_lane(
            lane,
            lambda: self._run(session_id, user_text),
        )

    async def _run(self, session_id: str, user_text: str) -> AgentResponse:
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            history = await self.session_store.load_history(session_id, self.history_limit)
            user_message = Message(role="user", content=user_text)
            conversation: list[Message] = [
                Message(role="system", content=self._build_system_prompt()),
                *history,
                user_message,
            ]
            unsaved: list[Message] = [user_message]
            definitions = self.tools.get_definitions()
            tools_used: list[ToolUse] = []
            usage = self._empty_usage()
            iteration = 0
            state = AgentState.AWAITING_MODEL
            log.debug("Processing request", history=len(history), message_len=len(user_text))

            while True:
                if iteration >= self.max_iterations:
                    state = AgentState.FAILED
                    log.warning("Iteration limit exceeded", max_iterations=self.max_iterations, state=state.value)
                    raise IterationLimitExceededError(self.max_iterations)
                iteration += 1

                try:
                    response = await self.model_client.complete(conversation, tools=definitions or None)
                except Exception as e:
                    state = AgentState.FAILED
                    log.error("Model turn failed", iteration=iteration, error=str(e), state=state.value)
                    raise
                self._accumulate_usage(usage, response.usage)

                if response.is_final:
                    state = AgentState.DONE
                    final_text = response.content.strip() or EMPTY_FINAL_TEXT
                    final_message = Message(role="assistant", content=final_text)
                    conversation.append(final_message)
                    unsaved.append(final_message)
                    await self._persist(session_id, unsaved)
                    log.info(
                        "Request complete",
                        iterations=iteration,
                        tools=len(tools_used),
                        model=response.model,
                        state=state.value,
                    )
                    return AgentResponse(
                        final_text=final_text,
                        tools_used=tuple(tools_used),
                        iteration_count=iteration,
                        model_used=response.model,
                        usage=usage,
                    )

                state = AgentState.DISPATCHING_TOOLS
                calls = self._normalize_call_ids(response.tool_calls)
                log.debug("Dispatching tool calls", iteration=iteration, calls=[c.name for c in calls])
                outcomes = await self._dispatch(session_id, calls)

                exchange = [
                    Message(role="assistant", content=response.content, tool_calls=calls),
                    *(outcome.to_message() for outcome in outcomes),
                ]
                conversation.extend(exchange)
                unsaved.extend(exchange)
                await self._persist(session_id, unsaved)
                tools_used.extend(
                    ToolUse(
                        name=outcome.call.name,
                        arguments=outcome.call.arguments,
                        result=outcome.content,
                        is_error=outcome.is_error,
                        tool_call_id=outcome.call.id,
                    )
                    for outcome in outcomes
                )
                state = AgentState.AWAITING_MODEL

    async def _persist(self, session_id: str, unsaved: list[Message]) -> None:
        while unsaved:
            await self.session_store.append_history(session_id, unsaved[0])
            unsaved.pop(0)

    @staticmethod
    def _normalize_call_ids(calls: list[ToolCall]) -> list[ToolCall]:
        """Give every call in a turn a unique, non-empty id."""
        seen: set[str] = set()
        normalized: list[ToolCall] = []
        for call in calls:
            call_id = call.id
            if not call_id or call_id in seen:
                call_id = new_call_id()
            seen.add(call_id)
            normalized.append(ToolCall(id=call_id, name=call.name, arguments=call.arguments))
        return normalized

    async def _dispatch(self, session_id: str, calls: list[ToolCall]) -> list[_ToolOutcome]:
        """Run all calls of a turn concurrently; outcomes keep the call order."""
        return list(await asyncio.gather(*(self._run_tool_call(session_id, call) for call in calls)))

    async def _run_tool_call(self, session_id: str, call: ToolCall) -> _ToolOutcome:
        try:
            self.tools.validate(call.name, call.arguments)
            reason = self.classifier.classify(call)
            if reason:
                await self._require_approval(session_id, call, reason)
            result = await self.tools.execute(call.name, call.arguments)
        except (ToolError, ApprovalError) as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.id, error=str(e))
            return _ToolOutcome(call=call, content=f"Error: {e}", is_error=True)
        except Exception as e:
            log.error("Unexpected tool failure", tool=call.name, call_id=call.id, error=str(e))
            return _ToolOutcome(call=call, content=f"Error: {e}", is_error=True)

        if result.success:
            return _ToolOutcome(call=call, content=result.content, is_error=False)
        return _ToolOutcome(call=call, content=f"Error: {result.error}", is_error=True)

    async def _require_approval(self, session_id: str, call: ToolCall, reason: str) -> None:
        if self.approval_gate is None:
            raise ApprovalDeniedError(call.name, ApprovalState.DENIED)
        state = await self.approval_gate.request_and_wait(call, reason=reason, scope=session_id)
        if state is not ApprovalState.APPROVED:
            raise ApprovalDeniedError(call.name, state)

    async def close(self) -> None:
        await self.model_client.close()
        close = getattr(self.session_store, "close", None)
        if close is not None:
            await close()


def create_agent(
    config: Config | None = None,
    notifier: ApprovalNotifier | None = None,
    tools: ToolRegistry | None = None,
) -> ToolCallingAgent:
    """Wire an agent from configuration."""
    cfg = config or get_config()
    configure_logging(cfg)
    return ToolCallingAgent(
        model_client=FailoverClient.from_config(cfg),
        tools=tools or create_default_registry(cfg),
        session_store=create_session_store(cfg),
        approval_gate=ApprovalGate(notifier=notifier, timeout=cfg.approval.timeout),
        classifier=DangerClassifier.from_config(cfg),
        config=cfg,
    )
