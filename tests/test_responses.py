from __future__ import annotations

from taskloop.engine import responses
from taskloop.engine.errors import ToolCallParseError


def test_truncate_lines_keeps_head_and_tail() -> None:
    text = "\n".join(f"line {i}" for i in range(1, 101))
    out = responses.truncate_lines(text, 10).split("\n")
    assert out[:2] == ["line 1", "line 2"]
    assert out[2] == "... (90 lines omitted) ..."
    assert out[3:] == [f"line {i}" for i in range(93, 101)]


def test_truncate_lines_within_limit_is_unchanged() -> None:
    assert responses.truncate_lines("a\nb", 10) == "a\nb"
    assert responses.truncate_lines("a\nb\nc", 0) == "a\nb\nc"


def test_add_line_numbers_right_justifies() -> None:
    content = "\n".join(str(i) for i in range(1, 11))
    lines = responses.add_line_numbers(content).split("\n")
    assert lines[0] == " 1 | 1"
    assert lines[9] == "10 | 10"


def test_format_elapsed() -> None:
    assert responses.format_elapsed(2) == "just now"
    assert responses.format_elapsed(42) == "42 seconds"
    assert responses.format_elapsed(60) == "1 minute"
    assert responses.format_elapsed(3 * 3600) == "3 hours"
    assert responses.format_elapsed(2 * 86400 + 5) == "2 days"


def test_parse_error_text_names_the_tool() -> None:
    unknown = ToolCallParseError("unknown_tool", "delete_file", "not a tool")
    unterminated = ToolCallParseError("unterminated", "read_file", "stream ended")
    assert "'delete_file' is not a tool" in responses.parse_error(unknown)
    assert "read_file tool could not be parsed (stream ended)" in responses.parse_error(unterminated)


def test_task_resumption_mentions_completion_state() -> None:
    done = responses.task_resumption("5 minutes", "/work", True)
    interrupted = responses.task_resumption("just now", "/work", False)
    assert "completed 5 minutes ago" in done
    assert "interrupted just now." in interrupted
    assert "'/work'" in interrupted


def test_feedback_wrappers() -> None:
    assert responses.tool_denied_with_feedback("use pnpm").endswith("<feedback>\nuse pnpm\n</feedback>")
    assert "approved" in responses.tool_approved_with_feedback("ok")
    assert responses.too_many_mistakes() == "You seem to be having trouble proceeding."
    assert "<feedback>\ntry again\n</feedback>" in responses.too_many_mistakes("try again")
