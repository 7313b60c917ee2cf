"""Tool call formatting with per-tool rendering.

Formatters turn a tool name, its parameters and an optional result
into a FormattedToolCall; the Rich renderers below turn that into
markup for the console host.

Adding a new tool format requires only a single decorated function:

    @tool_formatter("my_tool")
    def _format_my_tool(name, params, result, success):
        return FormattedToolCall(icon="🔧", label=name, summary=..., sections=[...])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable


# ── Intermediate Representation ──


@dataclass
class Section:
    """A typed content section in the expanded tool call view.

    Supported kinds:
        "diff"         → content: {"old_lines": list[str], "new_lines": list[str]}
        "code"         → content: {"language": str, "text": str}
        "terminal"     → content: {"command": str, "output": str}
        "path"         → content: str (file path)
        "kv"           → content: dict[str, str]
        "plain"        → content: str
        "result_block" → content: {"text": str, "status": str}
    """

    kind: str
    title: str = ""
    content: Any = None


@dataclass
class FormattedToolCall:
    """Structured representation of a formatted tool call."""

    icon: str = ""
    label: str = ""
    summary: str = ""
    file_path: str = ""
    sections: list[Section] = field(default_factory=list)


# ── Formatter Registry ──

_FORMATTERS: dict[str, Callable[..., FormattedToolCall]] = {}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[..., FormattedToolCall]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def format_tool_call(
    name: str,
    params: dict[str, str],
    result: str | None = None,
    success: bool = True,
) -> FormattedToolCall:
    """Dispatch to a registered formatter or the default."""
    formatter = _FORMATTERS.get(name, _format_default)
    return formatter(name, dict(params or {}), result, success)


# ── Helpers ──


def _basename(path: str) -> str:
    """Short display path (last 2 components)."""
    if not path:
        return ""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


def _trunc(text: str, length: int = 60) -> str:
    if not text:
        return ""
    text = text.replace("\n", " ")
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def _result_section(result: str | None, title: str = "Output") -> list[Section]:
    if result:
        return [Section(kind="plain", title=title, content=result)]
    return []


def _diff_section(diff: str) -> Section:
    old_lines: list[str] = []
    new_lines: list[str] = []
    target = None
    for line in diff.splitlines():
        if line.startswith("<<<<<<< SEARCH"):
            target = old_lines
        elif line.startswith("======="):
            target = new_lines
        elif line.startswith(">>>>>>> REPLACE"):
            target = None
        elif target is not None:
            target.append(line)
    return Section(kind="diff", content={"old_lines": old_lines, "new_lines": new_lines})


# ── Per-tool formatters ──


@tool_formatter("execute_command")
def _format_execute_command(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    command = params.get("command", "")
    return FormattedToolCall(
        icon="$",
        label="Command",
        summary=_trunc(command),
        sections=[Section(
            kind="terminal",
            title="Terminal",
            content={"command": command, "output": result or ""},
        )],
    )


@tool_formatter("read_file")
def _format_read_file(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    path = params.get("path", "")
    return FormattedToolCall(
        icon="\U0001f4c4",
        label="Read",
        summary=_basename(path),
        file_path=path,
        sections=[Section(kind="path", content=path)],
    )


@tool_formatter("write_to_file")
def _format_write_to_file(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    path = params.get("path", "")
    content = params.get("content", "")
    sections = [
        Section(kind="path", content=path),
        Section(kind="code", title="Content", content={"language": "", "text": content}),
    ]
    sections.extend(_result_section(result, "Result"))
    return FormattedToolCall(
        icon="\U0001f4dd",
        label="Write",
        summary=f"{_basename(path)} ({len(content.splitlines())} lines)",
        file_path=path,
        sections=sections,
    )


@tool_formatter("apply_diff")
def _format_apply_diff(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    path = params.get("path", "")
    sections = [Section(kind="path", content=path), _diff_section(params.get("diff", ""))]
    sections.extend(_result_section(result, "Result"))
    return FormattedToolCall(
        icon="✏",
        label="Edit",
        summary=_basename(path),
        file_path=path,
        sections=sections,
    )


@tool_formatter("list_files")
def _format_list_files(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    path = params.get("path", "")
    recursive = str(params.get("recursive", "")).lower() == "true"
    return FormattedToolCall(
        icon="\U0001f4c1",
        label="List",
        summary=_basename(path) + (" (recursive)" if recursive else ""),
        file_path=path,
        sections=_result_section(result, "Files"),
    )


@tool_formatter("search_files")
def _format_search_files(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    regex = params.get("regex", "")
    path = params.get("path", "")
    pattern = params.get("file_pattern", "")
    kv = {"regex": regex, "path": path}
    if pattern:
        kv["file_pattern"] = pattern
    return FormattedToolCall(
        icon="\U0001f50d",
        label="Search",
        summary=f"/{_trunc(regex, 40)}/ in {_basename(path) or '.'}",
        sections=[Section(kind="kv", content=kv), *_result_section(result, "Matches")],
    )


@tool_formatter("browser_action")
def _format_browser_action(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    action = params.get("action", "")
    detail = params.get("url") or params.get("coordinate") or params.get("text") or ""
    return FormattedToolCall(
        icon="\U0001f310",
        label="Browser",
        summary=f"{action} {_trunc(detail, 50)}".strip(),
        sections=_result_section(result, "Console"),
    )


@tool_formatter("use_mcp_tool")
def _format_use_mcp_tool(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    server = params.get("server_name", "")
    tool = params.get("tool_name", "")
    sections = []
    if params.get("arguments"):
        sections.append(Section(kind="code", title="Arguments", content={
            "language": "json", "text": params["arguments"],
        }))
    sections.extend(_result_section(result))
    return FormattedToolCall(icon="\U0001f50c", label="MCP", summary=f"{server}/{tool}", sections=sections)


@tool_formatter("access_mcp_resource")
def _format_access_mcp_resource(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    return FormattedToolCall(
        icon="\U0001f50c",
        label="MCP Resource",
        summary=f"{params.get('server_name', '')} {_trunc(params.get('uri', ''), 50)}",
        sections=_result_section(result),
    )


@tool_formatter("ask_followup_question")
def _format_ask_followup_question(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    question = params.get("question", "")
    return FormattedToolCall(
        icon="?",
        label="Question",
        summary=_trunc(question),
        sections=[Section(kind="result_block", content={"text": question, "status": "question"})],
    )


@tool_formatter("attempt_completion")
def _format_attempt_completion(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    text = params.get("result", "")
    sections = [Section(kind="result_block", content={
        "text": text, "status": "success" if success else "error",
    })]
    if params.get("command"):
        sections.append(Section(kind="terminal", title="Demo", content={
            "command": params["command"], "output": "",
        }))
    return FormattedToolCall(icon="✓", label="Completed", summary=_trunc(text), sections=sections)


def _format_default(name: str, params: dict, result: str | None, success: bool) -> FormattedToolCall:
    """Fallback formatter for unrecognised tool names."""
    display = {k: _trunc(str(v), 80) for k, v in params.items()}
    summary = _trunc(", ".join(f"{k}={v}" for k, v in display.items()), 50)
    sections = [Section(kind="kv", content=display)] if display else []
    sections.extend(_result_section(result))
    return FormattedToolCall(icon="\U0001f527", label=name, summary=summary, sections=sections)


# ── Rich Markup Renderer ──


def _esc(text: str) -> str:
    """Escape Rich markup characters."""
    return text.replace("[", "\\[")


_STATUS_MARKUP = {
    "pending": "[yellow]\\[pending][/yellow]",
    "done": "[green]done[/green]",
    "error": "[red]error[/red]",
    "denied": "[red]denied[/red]",
}


def render_collapsed_rich(fmt: FormattedToolCall, status: str) -> str:
    """Render a collapsed one-liner as a Rich markup string.

    status is one of "pending", "done", "error", "denied".
    """
    parts = ["[dim]▶[/dim]"]
    if fmt.icon:
        parts.append(fmt.icon)
    parts.append(f"[cyan]{_esc(fmt.label)}[/cyan]")
    if fmt.summary:
        parts.append(f"[dim]{_esc(fmt.summary)}[/dim]")
    parts.append(_STATUS_MARKUP.get(status, f"[dim]{_esc(status)}[/dim]"))
    return "  ".join(parts)


def render_expanded_rich(fmt: FormattedToolCall, status: str, max_lines: int = 20) -> str:
    """Render the full view: header line plus every section."""
    header = ["[dim]▼[/dim]"]
    if fmt.icon:
        header.append(fmt.icon)
    header.append(f"[bold cyan]{_esc(fmt.label)}[/bold cyan]")
    header.append(_STATUS_MARKUP.get(status, ""))
    lines = ["  ".join(header)]
    for section in fmt.sections:
        if section.title:
            lines.append(f"  [bold dim]{_esc(section.title)}[/bold dim]")
        lines.extend(_render_section_rich(section, max_lines))
    return "\n".join(lines)


def _clip(text: str, max_lines: int, prefix: str = "  ") -> list[str]:
    text_lines = str(text).splitlines()
    lines = [f"{prefix}{_esc(line)}" for line in text_lines[:max_lines]]
    remaining = len(text_lines) - max_lines
    if remaining > 0:
        lines.append(f"{prefix}[dim]... {remaining} more lines[/dim]")
    return lines


def _render_section_rich(section: Section, max_lines: int) -> list[str]:
    lines: list[str] = []

    if section.kind == "diff":
        content = section.content or {}
        for line in content.get("old_lines", [])[:max_lines]:
            lines.append(f"  [red]- {_esc(line)}[/red]")
        for line in content.get("new_lines", [])[:max_lines]:
            lines.append(f"  [green]+ {_esc(line)}[/green]")

    elif section.kind == "code":
        content = section.content or {}
        lines.extend(_clip(content.get("text", ""), max_lines))

    elif section.kind == "terminal":
        content = section.content or {}
        for command_line in str(content.get("command", "")).splitlines() or [""]:
            lines.append(f"  [bold green]$[/bold green] {_esc(command_line)}")
        output = str(content.get("output", "") or "")
        if output:
            lines.append("  [dim]────────────────────────────[/dim]")
            lines.extend(_clip(output, max_lines))

    elif section.kind == "path":
        lines.append(f"  [underline]{_esc(section.content or '')}[/underline]")

    elif section.kind == "kv":
        for key, value in (section.content or {}).items():
            lines.append(f"  [bold]{_esc(key)}:[/bold] {_esc(str(value))}")

    elif section.kind == "result_block":
        content = section.content or {}
        color = {"success": "green", "error": "red", "question": "yellow"}.get(
            content.get("status", ""), "dim",
        )
        lines.extend(_clip(content.get("text", ""), max_lines * 2, f"  [{color}]┃[/{color}] "))

    elif section.kind == "plain":
        lines.extend(_clip(section.content or "", max_lines))

    return lines
