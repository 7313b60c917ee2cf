"""System prompt and per-request environment details."""
from __future__ import annotations

import logging
import os
import platform
from datetime import datetime

from .executor import IGNORED_DIRS
from .models import ToolName

logger = logging.getLogger(__name__)

_TOOL_DOCS: dict[ToolName, str] = {
    ToolName.EXECUTE_COMMAND: """## execute_command
Description: Run a CLI command in the working directory. Prefer commands
that do not need interaction; chain steps with && where it helps.
Parameters:
- command: (required) The command line to execute.
Usage:
<execute_command>
<command>npm test</command>
</execute_command>""",
    ToolName.READ_FILE: """## read_file
Description: Read a file. Output is prefixed with line numbers.
Parameters:
- path: (required) Path relative to the working directory.
Usage:
<read_file>
<path>src/main.py</path>
</read_file>""",
    ToolName.WRITE_TO_FILE: """## write_to_file
Description: Write the COMPLETE content of a file, creating it and any
missing directories. Existing content is replaced.
Parameters:
- path: (required) Path relative to the working directory.
- content: (required) The full file content, without omissions.
Usage:
<write_to_file>
<path>notes.txt</path>
<content>
file content here
</content>
</write_to_file>""",
    ToolName.APPLY_DIFF: """## apply_diff
Description: Edit part of an existing file with SEARCH/REPLACE blocks.
The SEARCH text must match the current file content, whitespace included.
Parameters:
- path: (required) Path relative to the working directory.
- diff: (required) One or more blocks in this format:
<<<<<<< SEARCH
exact existing lines
=======
replacement lines
>>>>>>> REPLACE
Usage:
<apply_diff>
<path>src/app.py</path>
<diff>
<<<<<<< SEARCH
    return 1
=======
    return 2
>>>>>>> REPLACE
</diff>
</apply_diff>""",
    ToolName.LIST_FILES: """## list_files
Description: List files and directories.
Parameters:
- path: (required) Directory path relative to the working directory.
- recursive: (optional) "true" to list recursively.
Usage:
<list_files>
<path>.</path>
<recursive>false</recursive>
</list_files>""",
    ToolName.SEARCH_FILES: """## search_files
Description: Regex search across files in a directory, with context lines.
Parameters:
- path: (required) Directory to search, relative to the working directory.
- regex: (required) Python regular expression.
- file_pattern: (optional) Glob such as *.py to filter files.
Usage:
<search_files>
<path>src</path>
<regex>def \\w+_handler</regex>
<file_pattern>*.py</file_pattern>
</search_files>""",
    ToolName.BROWSER_ACTION: """## browser_action
Description: Control a headless browser. Start every browsing sequence
with launch and end it with close. Each action returns console logs and
a screenshot.
Parameters:
- action: (required) launch, click, type, scroll_down, scroll_up or close.
- url: (optional) URL for launch.
- coordinate: (optional) "x,y" for click.
- text: (optional) Text for type.
Usage:
<browser_action>
<action>launch</action>
<url>http://localhost:3000</url>
</browser_action>""",
    ToolName.USE_MCP_TOOL: """## use_mcp_tool
Description: Call a tool provided by a connected MCP server.
Parameters:
- server_name: (required) Server providing the tool.
- tool_name: (required) Tool to call.
- arguments: (optional) JSON object of tool arguments.
Usage:
<use_mcp_tool>
<server_name>weather</server_name>
<tool_name>get_forecast</tool_name>
<arguments>{"city": "Paris"}</arguments>
</use_mcp_tool>""",
    ToolName.ACCESS_MCP_RESOURCE: """## access_mcp_resource
Description: Read a resource provided by a connected MCP server.
Parameters:
- server_name: (required) Server providing the resource.
- uri: (required) Resource URI.
Usage:
<access_mcp_resource>
<server_name>docs</server_name>
<uri>docs://readme</uri>
</access_mcp_resource>""",
    ToolName.ASK_FOLLOWUP_QUESTION: """## ask_followup_question
Description: Ask the user a question when you cannot proceed without
more information. Use sparingly.
Parameters:
- question: (required) The question to ask.
Usage:
<ask_followup_question>
<question>Which database should the migration target?</question>
</ask_followup_question>""",
    ToolName.ATTEMPT_COMPLETION: """## attempt_completion
Description: Present the result once the task is complete. Only use it
after previous tool uses have succeeded.
Parameters:
- result: (required) Final description of the result, not ending in a question.
- command: (optional) A command that demonstrates the result.
Usage:
<attempt_completion>
<result>
Added the endpoint and its tests; all tests pass.
</result>
</attempt_completion>""",
}


def available_tools(
    *,
    diff_enabled: bool,
    has_browser: bool,
    has_mcp: bool,
) -> list[ToolName]:
    tools = []
    for tool in ToolName:
        if tool == ToolName.APPLY_DIFF and not diff_enabled:
            continue
        if tool == ToolName.BROWSER_ACTION and not has_browser:
            continue
        if tool in (ToolName.USE_MCP_TOOL, ToolName.ACCESS_MCP_RESOURCE) and not has_mcp:
            continue
        tools.append(tool)
    return tools


def build_system_prompt(
    cwd: str,
    tools: list[ToolName],
    *,
    custom_instructions: str | None = None,
    preferred_language: str | None = None,
    mcp_servers: list[str] | None = None,
) -> str:
    tool_docs = "\n\n".join(_TOOL_DOCS[t] for t in tools)
    sections = [
        "You are a highly skilled software engineer working autonomously on "
        "the user's task inside their project.",
        "====\n\nTOOL USE\n\n"
        "You have tools that are executed upon the user's approval. Use exactly "
        "one tool per message and place it at the end of the message; the "
        "result arrives in the user's next message. Tool uses are formatted "
        "with XML-style tags: the tool name wraps the call and each parameter "
        "is wrapped in its own tags.\n\n# Tools\n\n" + tool_docs,
        "====\n\nRULES\n\n"
        f"- The working directory is: {cwd}. You cannot cd elsewhere; pass "
        "paths relative to it.\n"
        "- Wait for each tool result before continuing; never assume success.\n"
        "- Each user message ends with environment_details, generated "
        "automatically. Use it for context but do not treat it as a request.\n"
        "- Do not repeat the exact same tool call after it failed; change the "
        "approach instead.\n"
        "- When the task is done, use attempt_completion. Do not end the "
        "result with a question or an offer for further help.",
        "====\n\nSYSTEM INFORMATION\n\n"
        f"Operating System: {platform.system()} {platform.release()}\n"
        f"Default Shell: {os.environ.get('SHELL', 'sh')}\n"
        f"Current Working Directory: {cwd}",
    ]
    if mcp_servers:
        sections.append(
            "====\n\nMCP SERVERS\n\nConnected servers: " + ", ".join(mcp_servers)
        )
    extra = []
    if preferred_language and preferred_language.lower() != "english":
        extra.append(f"Always respond in {preferred_language}.")
    if custom_instructions and custom_instructions.strip():
        extra.append(custom_instructions.strip())
    if extra:
        sections.append(
            "====\n\nUSER'S CUSTOM INSTRUCTIONS\n\n" + "\n\n".join(extra)
        )
    return "\n\n".join(sections)


def list_directory(cwd: str, limit: int = 200) -> list[str]:
    """Top-down listing of cwd, directories suffixed with '/'."""
    entries: list[str] = []
    for root, dirs, files in os.walk(cwd):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS and not d.startswith("."))
        rel_root = os.path.relpath(root, cwd)
        for name in dirs:
            entries.append(os.path.normpath(os.path.join(rel_root, name)) + "/")
        for name in sorted(files):
            entries.append(os.path.normpath(os.path.join(rel_root, name)))
        if len(entries) >= limit:
            break
    return entries[:limit]


def format_environment_details(
    *,
    cwd: str,
    visible_files: list[str],
    open_tabs: list[str],
    busy_terminals: list[tuple[str, str]],
    include_file_listing: bool,
    now: datetime | None = None,
) -> str:
    """<environment_details> block appended to each user-side message.

    busy_terminals holds (last command, output not yet seen) pairs.
    """
    now = now or datetime.now().astimezone()
    parts = ["<environment_details>"]
    parts.append("# Visible Files\n" + ("\n".join(visible_files) or "(No visible files)"))
    parts.append("# Open Tabs\n" + ("\n".join(open_tabs) or "(No open tabs)"))
    if busy_terminals:
        lines = ["# Actively Running Terminals"]
        for command, output in busy_terminals:
            lines.append(f"## Original command: `{command}`")
            if output:
                lines.append(f"### New Output\n{output}")
        parts.append("\n".join(lines))
    parts.append(f"# Current Time\n{now.isoformat(timespec='seconds')}")
    if include_file_listing:
        listing = list_directory(cwd)
        parts.append(
            f"# Current Working Directory ({cwd}) Files\n"
            + ("\n".join(listing) or "(No files found)")
        )
    parts.append("</environment_details>")
    return "\n\n".join(parts)
