"""Text the engine feeds back to the model as tool results and notices."""
from __future__ import annotations

from .errors import ToolCallParseError

TOOL_INTERRUPTED_NOTICE = (
    "[Response interrupted by a tool use result. Only one tool may be used "
    "at a time and should be placed at the end of the message.]"
)
API_ERROR_NOTICE = "[Response interrupted by API Error]"
USER_ABORT_NOTICE = "[Response interrupted by user]"

_TOOL_USE_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in
opening and closing tags, and each parameter is similarly enclosed within
its own set of tags:

<tool_name>
<parameter1_name>value1</parameter1_name>
</tool_name>

For example:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always adhere to this format for all tool uses."""


def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str) -> str:
    return (
        "The user denied this operation and provided the following feedback:\n"
        f"<feedback>\n{feedback}\n</feedback>"
    )


def tool_approved_with_feedback(feedback: str) -> str:
    return (
        "The user approved this operation and provided the following context:\n"
        f"<feedback>\n{feedback}\n</feedback>"
    )


def tool_error(error: str) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def no_tools_used() -> str:
    return (
        "[ERROR] You did not use a tool in your previous response! "
        "Please retry with a tool use.\n\n"
        f"{_TOOL_USE_REMINDER}\n\n"
        "# Next Steps\n\n"
        "If you have completed the user's task, use the attempt_completion tool.\n"
        "If you require additional information from the user, use the "
        "ask_followup_question tool.\n"
        "Otherwise, if you have not completed the task and do not need "
        "additional information, then proceed with the next step of the task.\n"
        "(This is an automated message, so do not respond to it conversationally.)"
    )


def missing_tool_parameter(tool_name: str, param_name: str) -> str:
    return (
        f"Missing value for required parameter '{param_name}' in {tool_name}. "
        "Please retry with complete response.\n\n"
        f"{_TOOL_USE_REMINDER}"
    )


def parse_error(error: ToolCallParseError) -> str:
    if error.kind == "unknown_tool":
        return (
            f"[ERROR] '{error.tool_name}' is not a tool you can use. "
            "Use only the tools described in the system prompt.\n\n"
            f"{_TOOL_USE_REMINDER}"
        )
    return (
        f"[ERROR] Your use of the {error.tool_name} tool could not be parsed "
        f"({error.detail}). Please retry with a complete tool use.\n\n"
        f"{_TOOL_USE_REMINDER}"
    )


def too_many_mistakes(feedback: str | None = None) -> str:
    text = "You seem to be having trouble proceeding."
    if feedback:
        text += f" The user has provided the following feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>"
    return text


def interrupted_tool(tool_name: str) -> str:
    return (
        f"The {tool_name} tool was interrupted and not executed because the "
        "task was stopped before it could run. Re-issue it if it is still needed."
    )


def task_resumption(elapsed: str, cwd: str, was_completed: bool) -> str:
    when = elapsed if elapsed == "just now" else f"{elapsed} ago"
    if was_completed:
        lead = (
            f"[TASK RESUMPTION] This task was completed {when}. "
            "It is now being resumed at the user's request."
        )
    else:
        lead = (
            f"[TASK RESUMPTION] This task was interrupted {when}. "
            "It may or may not be complete, so please reassess the task context."
        )
    return (
        f"{lead} Be aware that the project state may have changed since then. "
        f"The current working directory is now '{cwd}'. If the task has not "
        "been completed, retry the last step before interruption and proceed "
        "with completing the task."
    )


def format_elapsed(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return "just now" if seconds < 5 else f"{seconds} seconds"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


def truncate_lines(text: str, limit: int) -> str:
    """Keep the first and last lines of text when it exceeds limit lines."""
    lines = text.split("\n")
    if limit <= 0 or len(lines) <= limit:
        return text
    head = limit // 5
    tail = limit - head
    omitted = len(lines) - limit
    return "\n".join(
        lines[:head]
        + [f"... ({omitted} lines omitted) ..."]
        + lines[len(lines) - tail:]
    )


def add_line_numbers(content: str, start_line: int = 1) -> str:
    lines = content.split("\n")
    width = len(str(start_line + len(lines) - 1))
    return "\n".join(
        f"{str(start_line + i).rjust(width)} | {line}" for i, line in enumerate(lines)
    )


def user_edits_summary(path: str, user_edits: str, final_content: str | None) -> str:
    text = (
        "The user made the following updates to your content:\n\n"
        f"{user_edits}\n\n"
        f"The updated content, which includes both your original modifications "
        f"and the user's edits, has been successfully saved to {path}."
    )
    if final_content is not None:
        text += f" Here is the full, updated content of the file:\n\n<final_file_content path=\"{path}\">\n{final_content}\n</final_file_content>"
    return text
