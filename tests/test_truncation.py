"""Tests for tool output truncation."""

from pathlib import Path

from motor_cortex.tools.truncation import (
    TRUNCATION_DIR,
    TRUNCATION_MAX_BYTES,
    TRUNCATION_MAX_LINES,
    truncate_tool_output,
)


def test_small_output_unchanged(workspace: Path) -> None:
    result = truncate_tool_output("short", "read", "call_1", workspace)
    assert result.truncated is False
    assert result.content == "short"
    assert not (workspace / TRUNCATION_DIR).exists()


def test_too_many_lines_spills_full_output(workspace: Path) -> None:
    output = "\n".join(str(i) for i in range(TRUNCATION_MAX_LINES + 50))
    result = truncate_tool_output(output, "bash", "call_abcdefgh12345678", workspace)
    assert result.truncated is True
    assert result.saved_path == f"{TRUNCATION_DIR}/bash-12345678.txt"
    assert (workspace / result.saved_path).read_text(encoding="utf-8") == output
    assert "...50 lines truncated..." in result.content
    assert "Use read with offset/limit or grep" in result.content


def test_too_many_bytes_counts_bytes(workspace: Path) -> None:
    output = "x" * 100 + "\n" + "y" * (TRUNCATION_MAX_BYTES + 10)
    result = truncate_tool_output(output, "fetch", "c1", workspace)
    assert result.truncated is True
    assert result.content.startswith("x" * 100 + "\n\n...")
    assert "bytes truncated" in result.content


def test_unsafe_call_id_sanitized(workspace: Path) -> None:
    output = "z\n" * (TRUNCATION_MAX_LINES + 1)
    result = truncate_tool_output(output, "grep", "../../etc", workspace)
    assert result.saved_path is not None
    assert "/" not in result.saved_path[len(TRUNCATION_DIR) + 1 :]
    assert (workspace / result.saved_path).is_file()
