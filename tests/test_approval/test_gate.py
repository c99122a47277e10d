import asyncio

import pytest

from talon.approval import ApprovalGate, ApprovalState, DangerClassifier, PendingApproval
from talon.config import Config
from talon.exceptions import AlreadyPendingError
from talon.llm import ToolCall


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.prompts: list[PendingApproval] = []
        self.timeouts: list[PendingApproval] = []
        self.prompted = asyncio.Event()

    async def send_approval_prompt(self, approval: PendingApproval) -> None:
        if self.fail:
            raise ConnectionError("chat is down")
        self.prompts.append(approval)
        self.prompted.set()

    async def send_approval_timeout(self, approval: PendingApproval) -> None:
        self.timeouts.append(approval)


class StallingNotifier(RecordingNotifier):
    """Accepts the prompt, then never finishes sending it."""

    async def send_approval_prompt(self, approval: PendingApproval) -> None:
        self.prompts.append(approval)
        self.prompted.set()
        await asyncio.Event().wait()


def _call(call_id: str = "call_1", name: str = "shell", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments or {"command": "rm -rf /tmp/x"})


def test_classifier_flags_configured_tools():
    classifier = DangerClassifier(dangerous_tools=["rm_file"], dangerous_patterns=[])

    assert classifier.classify(_call(name="rm_file", path="notes.txt")) == "tool 'rm_file' requires approval"
    assert classifier.is_dangerous(_call(name="read", path="notes.txt")) is False


def test_classifier_matches_patterns_case_insensitively_in_nested_arguments():
    classifier = DangerClassifier(dangerous_patterns=["rm -rf", "drop table"])

    nested = _call(name="batch", steps=[{"sql": "DROP TABLE users"}])

    assert classifier.classify(nested) == "arguments match dangerous pattern 'drop table'"
    assert classifier.is_dangerous(_call(command="RM -RF build/")) is True
    assert classifier.is_dangerous(_call(command="ls -la")) is False


def test_classifier_defaults_come_from_config():
    classifier = DangerClassifier.from_config(Config())

    assert classifier.is_dangerous(_call(command="sudo shutdown -h now")) is True
    assert classifier.is_dangerous(_call(command="echo hello")) is False


@pytest.mark.asyncio
async def test_approved_request_resumes_waiter():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)

    waiter = asyncio.create_task(gate.request_and_wait(_call(), reason="dangerous"))
    await notifier.prompted.wait()
    approval = notifier.prompts[0]
    assert approval.state is ApprovalState.PENDING
    assert approval.reason == "dangerous"
    assert gate.pending == [approval]

    assert gate.resolve(approval.id, approved=True) is True
    assert await waiter is ApprovalState.APPROVED
    assert gate.pending == []
    assert approval.resolved_at is not None


@pytest.mark.asyncio
async def test_denied_request_resumes_waiter():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)

    waiter = asyncio.create_task(gate.request_and_wait(_call()))
    await notifier.prompted.wait()
    gate.resolve(notifier.prompts[0].id, approved=False)

    assert await waiter is ApprovalState.DENIED


@pytest.mark.asyncio
async def test_unanswered_request_times_out_and_notifies():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=0.05)

    state = await gate.request_and_wait(_call())

    assert state is ApprovalState.TIMED_OUT
    assert [a.state for a in notifier.timeouts] == [ApprovalState.TIMED_OUT]
    assert gate.pending == []


@pytest.mark.asyncio
async def test_second_request_for_same_call_is_rejected():
    gate = ApprovalGate(notifier=RecordingNotifier(), timeout=5)
    await gate.request(_call("call_dup"))

    with pytest.raises(AlreadyPendingError, match="call_dup"):
        await gate.request(_call("call_dup"))


@pytest.mark.asyncio
async def test_resolve_is_idempotent():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)
    approval = await gate.request(_call())

    assert gate.resolve(approval.id, approved=False) is True
    assert gate.resolve(approval.id, approved=True) is False
    assert gate.resolve("no-such-approval", approved=True) is False
    assert approval.state is ApprovalState.DENIED
    assert await gate.wait(approval) is ApprovalState.DENIED


@pytest.mark.asyncio
async def test_late_resolution_after_timeout_is_ignored():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=0.05)

    state = await gate.request_and_wait(_call())

    assert state is ApprovalState.TIMED_OUT
    assert gate.resolve(notifier.prompts[0].id, approved=True) is False
    assert notifier.prompts[0].state is ApprovalState.TIMED_OUT


@pytest.mark.asyncio
async def test_cancelled_waiter_denies_the_approval():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)

    waiter = asyncio.create_task(gate.request_and_wait(_call()))
    await notifier.prompted.wait()
    waiter.cancel()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert notifier.prompts[0].state is ApprovalState.DENIED
    assert gate.pending == []


@pytest.mark.asyncio
async def test_cancel_while_publishing_prompt_denies_and_releases_call_id():
    notifier = StallingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)

    waiter = asyncio.create_task(gate.request_and_wait(_call("call_stuck")))
    await notifier.prompted.wait()
    waiter.cancel()

    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert notifier.prompts[0].state is ApprovalState.DENIED
    assert gate.pending == []
    assert gate.resolve(notifier.prompts[0].id, approved=True) is False

    retry_notifier = RecordingNotifier()
    gate.notifier = retry_notifier
    retry = await gate.request(_call("call_stuck"))
    assert retry.state is ApprovalState.PENDING
    assert gate.pending == [retry]


@pytest.mark.asyncio
async def test_same_call_id_in_different_scopes_pends_separately():
    notifier = RecordingNotifier()
    gate = ApprovalGate(notifier=notifier, timeout=5)

    first = await gate.request(_call("call_0"), scope="session-a")
    second = await gate.request(_call("call_0"), scope="session-b")

    assert first.state is ApprovalState.PENDING
    assert second.state is ApprovalState.PENDING
    assert {approval.scope for approval in gate.pending} == {"session-a", "session-b"}
    with pytest.raises(AlreadyPendingError):
        await gate.request(_call("call_0"), scope="session-a")

    assert gate.resolve(first.id, approved=True) is True
    assert second.state is ApprovalState.PENDING


@pytest.mark.asyncio
async def test_without_notifier_requests_are_denied():
    gate = ApprovalGate(notifier=None, timeout=5)

    assert await gate.request_and_wait(_call()) is ApprovalState.DENIED


@pytest.mark.asyncio
async def test_notifier_failure_denies_request():
    gate = ApprovalGate(notifier=RecordingNotifier(fail=True), timeout=5)

    assert await gate.request_and_wait(_call()) is ApprovalState.DENIED
    assert gate.pending == []


@pytest.mark.asyncio
async def test_deny_all_pending():
    gate = ApprovalGate(notifier=RecordingNotifier(), timeout=5)
    first = await gate.request(_call("call_a"))
    second = await gate.request(_call("call_b"))

    assert gate.deny_all_pending() == 2
    assert first.state is ApprovalState.DENIED
    assert second.state is ApprovalState.DENIED
    assert gate.deny_all_pending() == 0
