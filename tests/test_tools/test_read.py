from pathlib import Path

import pytest

from talon.tools.read import ReadTool


@pytest.mark.asyncio
async def test_read_tool_limit_without_offset_returns_first_lines(tmp_path: Path):
    target = tmp_path / "sample.txt"
    target.write_text("line1\nline2\nline3\n", encoding="utf-8")

    tool = ReadTool(max_bytes=1_000)
    result = await tool.execute(path=str(target), limit=2)

    assert result.success is True
    assert "[lines 1-2]" in result.content
    assert "line1\nline2" in result.content
    assert "line3" not in result.content


@pytest.mark.asyncio
async def test_read_tool_offset_is_one_indexed(tmp_path: Path):
    target = tmp_path / "sample.txt"
    target.write_text("line1\nline2\nline3\n", encoding="utf-8")

    result = await ReadTool(max_bytes=1_000).execute(path=str(target), offset=2, limit=1)

    assert result.success is True
    assert "[lines 2-2]" in result.content
    assert result.content.endswith("\nline2")


@pytest.mark.asyncio
async def test_read_tool_reports_missing_file(tmp_path: Path):
    result = await ReadTool(max_bytes=1_000).execute(path=str(tmp_path / "nope.txt"))

    assert result.success is False
    assert "File not found" in result.error


@pytest.mark.asyncio
async def test_read_tool_refuses_large_files(tmp_path: Path):
    target = tmp_path / "big.txt"
    target.write_text("x" * 200, encoding="utf-8")

    result = await ReadTool(max_bytes=100).execute(path=str(target))

    assert result.success is False
    assert "File too large: 200 bytes" in result.error


@pytest.mark.asyncio
async def test_read_tool_refuses_directories(tmp_path: Path):
    result = await ReadTool(max_bytes=1_000).execute(path=str(tmp_path))

    assert result.success is False
    assert "Not a file" in result.error
