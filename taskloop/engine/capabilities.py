"""Capability contracts the engine consumes but never owns.

Each host (headless CLI, editor extension, test harness) injects
concrete implementations at session construction:

- TerminalManager: shell processes with streamed output
- BrowserSession / UrlContentFetcher: headless browser control
- DiffViewProvider: staged file edits with save / revert
- PlatformProvider: editor surface (visible files, tabs, cwd)
- TaskHost: settings, task history persistence, presentation
- McpHub: optional bridge to external MCP servers
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, AsyncIterator

from .models import HistoryItem, HostSettings, StoredTask


@dataclass
class TerminalInfo:
    id: int
    cwd: str
    last_command: str = ""
    busy: bool = False


@dataclass
class TerminalEvent:
    """kind: "line", "completed" or "no_shell_integration"."""
    kind: str
    line: str = ""
    exit_code: int | None = None


@dataclass
class BrowserActionResult:
    logs: str = ""
    screenshot: str | None = None
    current_url: str | None = None
    current_mouse_position: str | None = None


@dataclass
class DiffSaveResult:
    new_problems_message: str | None = None
    user_edits: str | None = None
    final_content: str | None = None


class TerminalManager(abc.ABC):

    @abc.abstractmethod
    async def get_or_create_terminal(self, cwd: str) -> TerminalInfo:
        """Return an idle terminal for cwd, creating one if needed."""

    @abc.abstractmethod
    def run_command(
        self, terminal: TerminalInfo, command: str,
    ) -> AsyncIterator[TerminalEvent]:
        """Start command and yield its output events.

        Lines the consumer does not pull stay available through
        get_unretrieved_output().
        """

    @abc.abstractmethod
    def get_terminals(self, busy: bool) -> list[TerminalInfo]:
        """Terminals currently running (busy=True) or idle commands."""

    @abc.abstractmethod
    def get_unretrieved_output(self, terminal_id: int) -> str:
        """Drain output produced since it was last read."""

    @abc.abstractmethod
    def is_process_hot(self, terminal_id: int) -> bool:
        """Whether the terminal's process is still actively producing output."""

    @abc.abstractmethod
    async def dispose_all(self) -> None:
        """Terminate every terminal owned by this manager."""


class BrowserSession(abc.ABC):

    @abc.abstractmethod
    async def launch_browser(self) -> None: ...

    @abc.abstractmethod
    async def close_browser(self) -> BrowserActionResult: ...

    @abc.abstractmethod
    async def navigate_to_url(self, url: str) -> BrowserActionResult: ...

    @abc.abstractmethod
    async def click(self, coordinate: str) -> BrowserActionResult: ...

    @abc.abstractmethod
    async def type(self, text: str) -> BrowserActionResult: ...

    @abc.abstractmethod
    async def scroll_down(self) -> BrowserActionResult: ...

    @abc.abstractmethod
    async def scroll_up(self) -> BrowserActionResult: ...


class UrlContentFetcher(abc.ABC):

    async def launch_browser(self) -> None:
        """Prepare any resources; optional."""

    async def close_browser(self) -> None:
        """Release resources; optional."""

    @abc.abstractmethod
    async def url_to_markdown(self, url: str) -> str:
        """Fetch url and return its main content as markdown text."""


class DiffViewProvider(abc.ABC):
    """Stages an edit, shows it, then saves or reverts it.

    Lifecycle: open(path) -> update(content, complete) ->
    save_changes() | revert_changes() -> reset().
    """

    is_editing: bool = False
    edit_type: str | None = None  # "create" or "modify"
    original_content: str | None = None

    @abc.abstractmethod
    async def open(self, rel_path: str) -> None: ...

    @abc.abstractmethod
    async def update(self, content: str, is_complete: bool) -> None: ...

    @abc.abstractmethod
    async def save_changes(self) -> DiffSaveResult: ...

    @abc.abstractmethod
    async def revert_changes(self) -> None: ...

    def scroll_to_first_diff(self) -> None:
        """Bring the first change into view; optional."""

    @abc.abstractmethod
    async def reset(self) -> None: ...


class PlatformProvider(abc.ABC):

    async def show_warning_message(self, message: str, *items: str) -> str | None:
        return None

    async def open_external(self, url: str) -> bool:
        return False

    @abc.abstractmethod
    async def get_visible_files(self) -> list[str]: ...

    @abc.abstractmethod
    async def get_open_tabs(self) -> list[str]: ...

    @abc.abstractmethod
    def get_working_directory(self) -> str: ...


class McpHub(abc.ABC):

    @abc.abstractmethod
    def list_servers(self) -> list[str]: ...

    @abc.abstractmethod
    async def call_tool(
        self, server_name: str, tool_name: str, arguments: dict[str, Any],
    ) -> str: ...

    @abc.abstractmethod
    async def read_resource(self, server_name: str, uri: str) -> str: ...


class TaskHost(abc.ABC):
    """Settings, persistence and presentation for task sessions."""

    mcp_hub: McpHub | None = None

    @abc.abstractmethod
    async def post_state_to_webview(self) -> None: ...

    @abc.abstractmethod
    async def post_message_to_webview(self, message: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def get_state(self) -> HostSettings: ...

    @abc.abstractmethod
    async def update_task_history(self, item: HistoryItem) -> list[HistoryItem]: ...

    @abc.abstractmethod
    async def get_task_with_id(self, task_id: str) -> StoredTask: ...

    async def init_task_with_history_item(self, item: HistoryItem) -> None:
        """Hook for hosts that track the active task; optional."""

    @abc.abstractmethod
    def get_global_storage_path(self) -> str | None: ...


@dataclass
class Capabilities:
    """The capability set injected into one TaskSession."""
    host: TaskHost
    platform: PlatformProvider
    terminal: TerminalManager
    diff_view: DiffViewProvider
    url_fetcher: UrlContentFetcher | None = None
    browser: BrowserSession | None = None
