"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from talon.config import get_config
from talon.logging import get_logger
from talon.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class ReadTool(Tool):
    """Read file contents."""

    name = "read"
    description = "Read the contents of a text file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "integer",
                "minimum": 1,
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }
    timeout_seconds = 10.0

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes or get_config().tools.read.max_bytes

    def _read(self, path: str, limit: int | None, offset: int | None) -> ToolResult:
        file_path = Path(path).expanduser().resolve()

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        file_size = file_path.stat().st_size
        if file_size > self.max_bytes:
            return ToolResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {self.max_bytes})",
            )

        lines = file_path.read_text(encoding="utf-8").splitlines()
        start = (offset or 1) - 1
        end = start + limit if limit else len(lines)
        selected = lines[start:end]
        content = "\n".join(selected)

        info = f"[{file_path} {len(content)} chars]"
        if offset or limit:
            info += f" [lines {start + 1}-{start + len(selected)}]"
        return ToolResult(success=True, content=f"{info}\n{content}")

    async def execute(self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional line offset
        """
        try:
            return await asyncio.to_thread(self._read, path, limit, offset)
        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
