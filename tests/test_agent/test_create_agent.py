import pytest
import structlog

from talon import create_agent
from talon.approval import ApprovalGate
from talon.config import Config, ModelSpec
from talon.llm import OllamaProvider, OpenAICompatibleProvider
from talon.logging import configure_logging, get_logger, set_log_sink
from talon.session import InMemorySessionStore


@pytest.mark.asyncio
async def test_create_agent_wires_components_from_config():
    cfg = Config()
    cfg.session.storage = "memory"
    cfg.agent.max_iterations = 4
    cfg.approval.timeout = 12
    cfg.model.chain = [
        ModelSpec(identifier="backup", provider="openrouter", priority=2),
        ModelSpec(identifier="llama3.2", provider="ollama", priority=1),
    ]

    agent = create_agent(cfg)
    try:
        assert agent.max_iterations == 4
        assert isinstance(agent.session_store, InMemorySessionStore)
        assert isinstance(agent.approval_gate, ApprovalGate)
        assert agent.approval_gate.timeout == 12
        assert agent.tools.frozen is True
        assert agent.tools.list_tools() == ["shell", "read"]
        assert [spec.identifier for spec in agent.model_client.chain] == ["llama3.2", "backup"]
        providers = [entry.provider for entry in agent.model_client._chain]
        assert isinstance(providers[0], OllamaProvider)
        assert isinstance(providers[1], OpenAICompatibleProvider)
    finally:
        await agent.close()
        structlog.reset_defaults()


def test_log_sink_receives_rendered_lines():
    lines: list[str] = []
    cfg = Config()
    cfg.logging.format = "json"
    set_log_sink(lines.append)
    try:
        configure_logging(cfg)
        get_logger("talon.test").info("Sink check", tool="echo")
    finally:
        set_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 1
    assert '"event": "Sink check"' in lines[0]
    assert '"tool": "echo"' in lines[0]
