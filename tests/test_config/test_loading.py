from pathlib import Path

import talon.config as config_module
from talon.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("agent:\n  max_iterations: 3\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  chain:\n"
            "    - identifier: gpt-4o-mini\n"
            "      provider: openai\n"
            "      priority: 2\n"
            "    - identifier: llama3.2\n"
            "      provider: ollama\n"
            "      priority: 1\n"
            "      supports_tools: false\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert [spec.identifier for spec in cfg.model.chain] == ["gpt-4o-mini", "llama3.2"]
    assert [spec.identifier for spec in cfg.ordered_chain()] == ["llama3.2", "gpt-4o-mini"]
    assert cfg.model.chain[1].supports_tools is False
    assert cfg.agent.max_iterations == 10


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "approval:\n"
            "  timeout: 15\n"
            "  dangerous_tools:\n"
            "    - rm_file\n"
            "model:\n"
            "  cooldowns:\n"
            "    rate_limited: 30\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.approval.timeout == 15
    assert cfg.approval.dangerous_tools == ["rm_file"]
    assert cfg.model.cooldowns.rate_limited == 30
    assert cfg.model.cooldowns.service_unavailable == 60


def test_defaults_when_no_config_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 10
    assert cfg.agent.history_limit == 50
    assert cfg.approval.timeout == 60
    assert "rm -rf" in cfg.approval.dangerous_patterns
    assert [spec.identifier for spec in cfg.model.chain] == ["llama3.2"]
    assert cfg.session.storage == "sqlite"


def test_env_overrides_nested_settings(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("TALON_AGENT__MAX_ITERATIONS", "4")
    monkeypatch.setenv("TALON_SESSION__STORAGE", "memory")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 4
    assert cfg.session.storage == "memory"


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.agent.max_iterations = 7
    target = tmp_path / "saved" / "config.yaml"

    cfg.save(target)
    loaded = Config.from_yaml(target)

    assert loaded.agent.max_iterations == 7
    assert loaded.model.chain[0].identifier == "llama3.2"
