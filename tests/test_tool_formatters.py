"""Tests for taskloop.shared.formatters.tool_call."""

from __future__ import annotations

from taskloop.shared.formatters.tool_call import (
    FormattedToolCall,
    Section,
    format_tool_call,
    render_collapsed_rich,
    render_expanded_rich,
)


class TestFormatToolCall:
    def test_execute_command(self) -> None:
        fmt = format_tool_call("execute_command", {"command": "npm test"}, result="ok")
        assert fmt.label == "Command"
        assert fmt.summary == "npm test"
        assert fmt.sections[0].kind == "terminal"
        assert fmt.sections[0].content == {"command": "npm test", "output": "ok"}

    def test_read_file_uses_short_path(self) -> None:
        fmt = format_tool_call("read_file", {"path": "src/pkg/deep/module.py"})
        assert fmt.summary == "deep/module.py"
        assert fmt.file_path == "src/pkg/deep/module.py"
        assert fmt.sections == [Section(kind="path", content="src/pkg/deep/module.py")]

    def test_write_to_file_counts_lines(self) -> None:
        fmt = format_tool_call("write_to_file", {"path": "a.py", "content": "x = 1\ny = 2\n"})
        assert fmt.summary == "a.py (2 lines)"
        assert [s.kind for s in fmt.sections] == ["path", "code"]

    def test_apply_diff_splits_search_and_replace(self) -> None:
        diff = "<<<<<<< SEARCH\nold one\nold two\n=======\nnew one\n>>>>>>> REPLACE\n"
        fmt = format_tool_call("apply_diff", {"path": "app.py", "diff": diff}, result="applied")
        diff_section = fmt.sections[1]
        assert diff_section.kind == "diff"
        assert diff_section.content == {"old_lines": ["old one", "old two"], "new_lines": ["new one"]}
        assert fmt.sections[-1].title == "Result"

    def test_list_files_recursive_flag(self) -> None:
        assert format_tool_call("list_files", {"path": "src", "recursive": "true"}).summary == "src (recursive)"
        assert format_tool_call("list_files", {"path": "src", "recursive": "false"}).summary == "src"

    def test_search_files_includes_pattern_only_when_given(self) -> None:
        fmt = format_tool_call("search_files", {"regex": "TODO", "path": ""})
        assert fmt.summary == "/TODO/ in ."
        assert fmt.sections[0].content == {"regex": "TODO", "path": ""}
        fmt = format_tool_call("search_files", {"regex": "x", "path": "src", "file_pattern": "*.py"})
        assert fmt.sections[0].content["file_pattern"] == "*.py"

    def test_long_summary_is_truncated(self) -> None:
        fmt = format_tool_call("execute_command", {"command": "echo " + "a" * 200})
        assert len(fmt.summary) == 60
        assert fmt.summary.endswith("...")

    def test_attempt_completion_with_demo_command(self) -> None:
        fmt = format_tool_call("attempt_completion", {"result": "Done", "command": "open index.html"})
        assert fmt.sections[0].content == {"text": "Done", "status": "success"}
        assert fmt.sections[1].kind == "terminal"

    def test_unknown_tool_uses_default(self) -> None:
        fmt = format_tool_call("mystery", {"a": "1", "b": "two"}, result="out")
        assert fmt.label == "mystery"
        assert fmt.summary == "a=1, b=two"
        assert [s.kind for s in fmt.sections] == ["kv", "plain"]

    def test_none_params(self) -> None:
        fmt = format_tool_call("mystery", None)
        assert fmt.sections == []
        assert fmt.summary == ""


class TestRichRendering:
    def test_collapsed_line(self) -> None:
        fmt = FormattedToolCall(icon="$", label="Command", summary="ls [x]")
        line = render_collapsed_rich(fmt, "done")
        assert "[cyan]Command[/cyan]" in line
        assert "ls \\[x]" in line
        assert "[green]done[/green]" in line

    def test_collapsed_unknown_status(self) -> None:
        line = render_collapsed_rich(FormattedToolCall(label="X"), "weird")
        assert line.endswith("[dim]weird[/dim]")

    def test_expanded_diff_and_clipping(self) -> None:
        fmt = FormattedToolCall(label="Edit", sections=[
            Section(kind="diff", content={"old_lines": ["a"], "new_lines": ["b"]}),
            Section(kind="plain", title="Output", content="\n".join(str(i) for i in range(30))),
        ])
        text = render_expanded_rich(fmt, "error", max_lines=5)
        lines = text.splitlines()
        assert "[red]error[/red]" in lines[0]
        assert "  [red]- a[/red]" in lines
        assert "  [green]+ b[/green]" in lines
        assert "  [bold dim]Output[/bold dim]" in lines
        assert lines[-1] == "  [dim]... 25 more lines[/dim]"

    def test_expanded_terminal_and_result_block(self) -> None:
        fmt = format_tool_call("execute_command", {"command": "make"}, result="built")
        text = render_expanded_rich(fmt, "done")
        assert "[bold green]$[/bold green] make" in text
        assert "  built" in text.splitlines()

        fmt = format_tool_call("ask_followup_question", {"question": "Which one?"})
        text = render_expanded_rich(fmt, "pending")
        assert "[yellow]┃[/yellow] Which one?" in text
