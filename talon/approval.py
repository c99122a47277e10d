"""Human approval gate for dangerous tool calls."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterator, Protocol

from talon.config import Config, get_config
from talon.exceptions import AlreadyPendingError
from talon.llm import ToolCall
from talon.logging import get_logger

log = get_logger(__name__)


class ApprovalState(str, Enum):
    """Lifecycle of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self is not ApprovalState.PENDING


@dataclass
class PendingApproval:
    """A tool call waiting for a human decision."""

    id: str
    tool_call: ToolCall
    reason: str = ""
    scope: str = ""
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: ApprovalState = ApprovalState.PENDING
    resolved_at: datetime | None = None
    _future: asyncio.Future[ApprovalState] | None = field(default=None, repr=False, compare=False)


class ApprovalNotifier(Protocol):
    """Transport side of the gate: shows the approve/deny prompt to a human.

    The transport delivers the human's choice back by calling
    ``ApprovalGate.resolve(approval.id, approved)``.
    """

    async def send_approval_prompt(self, approval: PendingApproval) -> None: ...

    async def send_approval_timeout(self, approval: PendingApproval) -> None: ...


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


class DangerClassifier:
    """Flag tool calls that need human approval.

    A call is dangerous when its tool name is listed in ``dangerous_tools`` or
    any string in its arguments contains one of ``dangerous_patterns``
    (case-insensitive substring match).
    """

    def __init__(self, dangerous_tools: list[str] | None = None, dangerous_patterns: list[str] | None = None):
        self.dangerous_tools = {str(name).strip().lower() for name in dangerous_tools or [] if str(name).strip()}
        self.dangerous_patterns = [str(p).lower() for p in dangerous_patterns or [] if str(p).strip()]

    @classmethod
    def from_config(cls, config: Config | None = None) -> "DangerClassifier":
        cfg = config or get_config()
        return cls(
            dangerous_tools=cfg.approval.dangerous_tools,
            dangerous_patterns=cfg.approval.dangerous_patterns,
        )

    def classify(self, tool_call: ToolCall) -> str | None:
        """Return why the call is dangerous, or None when it is safe."""
        name = tool_call.name.strip().lower()
        if name in self.dangerous_tools:
            return f"tool '{tool_call.name}' requires approval"
        for text in _iter_strings(tool_call.arguments):
            lowered = text.lower()
            for pattern in self.dangerous_patterns:
                if pattern in lowered:
                    return f"arguments match dangerous pattern '{pattern.strip()}'"
        return None

    def is_dangerous(self, tool_call: ToolCall) -> bool:
        return self.classify(tool_call) is not None


class ApprovalGate:
    """Suspend flagged tool calls until a human approves, denies, or time runs out.

    ``request`` publishes a prompt through the notifier and ``wait`` awaits a
    future that ``resolve`` completes from the transport's callback. A timeout
    counts as a denial, and so does cancellation of the waiting task. Must be
    used from a single event loop.
    """

    def __init__(self, notifier: ApprovalNotifier | None = None, timeout: float | None = None):
        self.notifier = notifier
        self.timeout = float(timeout if timeout is not None else get_config().approval.timeout)
        self._pending: dict[str, PendingApproval] = {}
        self._by_tool_call: dict[str, str] = {}

    @property
    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def get(self, approval_id: str) -> PendingApproval | None:
        return self._pending.get(approval_id)

    @staticmethod
    def _key(scope: str, tool_call_id: str) -> str:
        return f"{scope}:{tool_call_id}"

    async def request(self, tool_call: ToolCall, reason: str = "", scope: str = "") -> PendingApproval:
        """Register a pending approval and publish the prompt.

        ``scope`` namespaces tool-call ids, usually by session, since providers
        may reuse ids across conversations.

        Raises:
            AlreadyPendingError: the tool call already has a pending approval
        """
        key = self._key(scope, tool_call.id)
        if key in self._by_tool_call:
            raise AlreadyPendingError(tool_call.id)

        approval = PendingApproval(
            id=uuid.uuid4().hex,
            tool_call=tool_call,
            reason=reason,
            scope=scope,
            _future=asyncio.get_running_loop().create_future(),
        )
        self._pending[approval.id] = approval
        self._by_tool_call[key] = approval.id
        log.info("Approval requested", approval_id=approval.id, tool=tool_call.name, reason=reason)

        if self.notifier is None:
            log.warning("No approval notifier configured; denying", tool=tool_call.name)
            self._finish(approval, ApprovalState.DENIED)
            return approval
        try:
            await self.notifier.send_approval_prompt(approval)
        except asyncio.CancelledError:
            self._finish(approval, ApprovalState.DENIED)
            raise
        except Exception as e:
            log.error("Failed to publish approval prompt", approval_id=approval.id, error=str(e))
            self._finish(approval, ApprovalState.DENIED)
        return approval

    async def wait(self, approval: PendingApproval, timeout: float | None = None) -> ApprovalState:
        """Block until the approval is resolved or times out."""
        if approval.state.terminal or approval._future is None:
            return approval.state
        limit = self.timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(asyncio.shield(approval._future), timeout=limit)
        except (asyncio.TimeoutError, TimeoutError):
            if self._finish(approval, ApprovalState.TIMED_OUT):
                await self._notify_timeout(approval)
        except asyncio.CancelledError:
            self._finish(approval, ApprovalState.DENIED)
            raise
        return approval.state

    async def request_and_wait(self, tool_call: ToolCall, reason: str = "", scope: str = "") -> ApprovalState:
        approval = await self.request(tool_call, reason=reason, scope=scope)
        return await self.wait(approval)

    def resolve(self, approval_id: str, approved: bool) -> bool:
        """Record a human decision.

        Returns False (and does nothing) when the approval is unknown or
        already resolved.
        """
        approval = self._pending.get(approval_id)
        if approval is None:
            log.debug("Ignoring resolution for unknown or finished approval", approval_id=approval_id)
            return False
        return self._finish(approval, ApprovalState.APPROVED if approved else ApprovalState.DENIED)

    def deny_all_pending(self) -> int:
        """Deny every outstanding approval; returns how many were denied."""
        denied = 0
        for approval in list(self._pending.values()):
            if self._finish(approval, ApprovalState.DENIED):
                denied += 1
        return denied

    def _finish(self, approval: PendingApproval, state: ApprovalState) -> bool:
        if approval.state.terminal:
            return False
        approval.state = state
        approval.resolved_at = datetime.now(UTC)
        self._pending.pop(approval.id, None)
        key = self._key(approval.scope, approval.tool_call.id)
        if self._by_tool_call.get(key) == approval.id:
            del self._by_tool_call[key]
        if approval._future is not None and not approval._future.done():
            approval._future.set_result(state)
        log.info("Approval resolved", approval_id=approval.id, tool=approval.tool_call.name, state=state.value)
        return True

    async def _notify_timeout(self, approval: PendingApproval) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_approval_timeout(approval)
        except Exception as e:
            log.warning("Failed to send approval timeout notice", approval_id=approval.id, error=str(e))
