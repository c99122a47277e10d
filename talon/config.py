"""Configuration management for Talon."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.talon/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.talon/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant running on the user's computer with real access "
    "to the listed tools. Use a tool whenever it helps to answer the request; the "
    "system executes tool calls and returns their results to you."
)


class ModelSpec(BaseModel):
    """One entry of the model fallback chain."""

    identifier: str
    priority: int = 0
    provider: str = "ollama"
    base_url: str = ""
    supports_tools: bool = True
    context_window: int | None = None


class CooldownConfig(BaseModel):
    """Cooldown durations in seconds per failure class."""

    rate_limited: float = 120.0
    service_unavailable: float = 60.0
    context_too_long: float = 300.0


class ModelConfig(BaseModel):
    """Model configuration."""

    chain: list[ModelSpec] = Field(
        default_factory=lambda: [ModelSpec(identifier="llama3.2", provider="ollama")]
    )
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    request_timeout: float = 120.0
    cooldowns: CooldownConfig = Field(default_factory=CooldownConfig)


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_iterations: int = 10
    history_limit: int = 50
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ReadToolConfig(BaseModel):
    """Read tool configuration."""

    max_bytes: int = 100_000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    default_timeout: float = 30.0
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    read: ReadToolConfig = Field(default_factory=ReadToolConfig)


class ApprovalConfig(BaseModel):
    """Human approval gate configuration."""

    timeout: float = 60.0
    dangerous_tools: list[str] = []
    dangerous_patterns: list[str] = [
        "rm -rf",
        "rm -r",
        "rm -f",
        "kill ",
        "killall",
        "pkill",
        "shutdown",
        "reboot",
        "halt",
        "poweroff",
        "init 0",
        "init 6",
        "dd ",
        "mkfs",
        "fdisk",
        "parted",
        "wipefs",
        "format ",
        "passwd",
        "chmod 777",
        "chown",
        "iptables",
        "systemctl stop",
        "systemctl disable",
        "docker rm",
        "drop table",
        "delete from",
        "truncate ",
        "> /dev/",
    ]


class SessionConfig(BaseModel):
    """Session configuration."""

    storage: Literal["memory", "sqlite"] = "sqlite"
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Talon."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TALON_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars fill settings the file leaves unset."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def ordered_chain(self) -> list[ModelSpec]:
        """Return the fallback chain sorted by priority (stable for ties)."""
        return sorted(self.model.chain, key=lambda spec: spec.priority)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
