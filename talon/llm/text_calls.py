"""Text-based tool calling for models without native function calling.

The model is asked to wrap each call in boundary markers::

    <<<TOOL_CALL>>>
    {"tool": "tool_name", "arguments": {...}}
    <<<END_TOOL_CALL>>>

Parsing is best-effort. When no marked block is present, a single JSON object
spanning the first ``{`` to the last ``}`` of the reply is tried as a
``{"tool": ..., "args": ...}`` payload; that looser form is only accepted for
names in ``known_tools``. Marked blocks are taken as stated, and the agent loop
turns unknown names into error results.
"""

import json
import re
from typing import Any

from talon.llm import Message, ToolCall, ToolDefinition, new_call_id
from talon.logging import get_logger

log = get_logger(__name__)

TOOL_CALL_START = "<<<TOOL_CALL>>>"
TOOL_CALL_END = "<<<END_TOOL_CALL>>>"

_BLOCK_RE = re.compile(
    re.escape(TOOL_CALL_START) + r"\s*([\s\S]*?)\s*" + re.escape(TOOL_CALL_END),
    re.MULTILINE,
)


def build_instructions(tools: list[ToolDefinition]) -> str:
    """Render the system instruction describing the text protocol and tools."""
    lines = [
        "You can call tools. To call a tool, reply with one block per call:",
        TOOL_CALL_START,
        '{"tool": "<tool name>", "arguments": {<arguments object>}}',
        TOOL_CALL_END,
        "Emit only tool blocks when calling tools. Reply with plain text when you are done.",
        "",
        "Available tools:",
    ]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        lines.append(f"  parameters: {json.dumps(tool.parameters, ensure_ascii=False)}")
    return "\n".join(lines)


def render_history(messages: list[Message]) -> list[Message]:
    """Flatten native tool-call history into plain text turns.

    Models without function calling usually reject ``tool`` roles and
    ``tool_calls`` fields, so earlier calls are rewritten as marked blocks and
    their results as user-visible text.
    """
    rendered: list[Message] = []
    for msg in messages:
        if msg.role == "assistant" and msg.tool_calls:
            blocks = [
                f"{TOOL_CALL_START}\n"
                + json.dumps({"tool": call.name, "arguments": call.arguments}, ensure_ascii=False)
                + f"\n{TOOL_CALL_END}"
                for call in msg.tool_calls
            ]
            text = "\n".join(([msg.content] if msg.content else []) + blocks)
            rendered.append(Message(role="assistant", content=text))
        elif msg.role == "tool":
            rendered.append(Message(
                role="user",
                content=f"Tool {msg.tool_name or 'unknown'} returned:\n{msg.content}",
            ))
        else:
            rendered.append(Message(role=msg.role, content=msg.content))
    return rendered


def _coerce_call(payload: Any, known_tools: set[str] | None) -> ToolCall | None:
    if not isinstance(payload, dict):
        return None
    name = payload.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None
    name = name.strip()
    if known_tools is not None and name not in known_tools:
        log.debug("Ignoring text tool call for unknown tool", tool=name)
        return None
    arguments = payload.get("arguments", payload.get("args", payload.get("parameters", {})))
    if not isinstance(arguments, dict):
        return None
    return ToolCall(id=new_call_id("text_call"), name=name, arguments=arguments)


def extract_tool_calls(text: str, known_tools: set[str] | None = None) -> tuple[list[ToolCall], str]:
    """Split free-form model output into tool calls and the remaining prose.

    The returned text has every marked block removed, or the matched JSON
    object when the brace fallback produced the call.
    """
    if not text:
        return [], ""

    calls: list[ToolCall] = []
    blocks = _BLOCK_RE.findall(text)
    for block in blocks:
        try:
            payload = json.loads(block.strip())
        except json.JSONDecodeError as e:
            log.warning("Failed to parse text tool call block", error=str(e))
            continue
        call = _coerce_call(payload, None)
        if call is not None:
            calls.append(call)
    if blocks:
        return calls, strip_tool_calls(text)

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return [], text
    try:
        payload = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return [], text
    call = _coerce_call(payload, known_tools)
    if call is None:
        return [], text
    return [call], (text[:start] + text[end + 1:]).strip()


def parse_tool_calls(text: str, known_tools: set[str] | None = None) -> list[ToolCall]:
    """Extract tool calls from free-form model output."""
    calls, _ = extract_tool_calls(text, known_tools)
    return calls


def strip_tool_calls(text: str) -> str:
    """Remove marked tool-call blocks from text."""
    return _BLOCK_RE.sub("", text or "").strip()
