"""Tools package for Talon."""

from talon.config import Config, get_config
from talon.tools.registry import Tool, ToolRegistry, ToolResult
from talon.tools.read import ReadTool
from talon.tools.shell import ShellTool


def create_default_registry(config: Config | None = None) -> ToolRegistry:
    """Registry with the built-in tools, frozen and ready to share."""
    cfg = config or get_config()
    registry = ToolRegistry(default_timeout=cfg.tools.default_timeout)
    registry.register(ShellTool(config=cfg))
    registry.register(ReadTool(max_bytes=cfg.tools.read.max_bytes))
    registry.freeze()
    return registry


__all__ = [
    "create_default_registry",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "ReadTool",
    "ShellTool",
]
