"""In-memory fakes for every capability a TaskSession consumes."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest

from taskloop.engine.capabilities import (
    BrowserActionResult,
    BrowserSession,
    Capabilities,
    DiffSaveResult,
    DiffViewProvider,
    McpHub,
    PlatformProvider,
    TaskHost,
    TerminalEvent,
    TerminalInfo,
    TerminalManager,
)
from taskloop.engine.config import EngineConfig
from taskloop.engine.models import AskResponse, HistoryItem, HostSettings, Message, StoredTask
from taskloop.engine.providers.base import ApiChunk, ApiClient, ChunkKind
from taskloop.shared.services.task_storage import TaskStorage


# ── model transport ──


def response_chunks(*fragments: str, input_tokens: int = 100, output_tokens: int = 20) -> list[ApiChunk]:
    """A complete streamed response made of the given text fragments."""
    chunks = [ApiChunk.text_delta(f) for f in fragments]
    chunks.append(ApiChunk(ChunkKind.USAGE, input_tokens=input_tokens, output_tokens=output_tokens))
    chunks.append(ApiChunk.end_of_turn("end_turn"))
    return chunks


class FakeApiClient(ApiClient):
    """Replays scripted responses; an Exception entry is raised instead."""

    def __init__(self, responses: list[list[ApiChunk] | Exception]) -> None:
        self._responses = list(responses)
        self.requests: list[tuple[str, list[Message]]] = []
        self.closed_early = 0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model_id(self) -> str:
        return "fake-model"

    async def send(self, system_prompt: str, messages: list[Message]) -> AsyncIterator[ApiChunk]:
        self.requests.append((system_prompt, list(messages)))
        if not self._responses:
            raise AssertionError("FakeApiClient ran out of scripted responses")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        delivered = 0
        try:
            for chunk in response:
                delivered += 1
                yield chunk
        finally:
            if delivered < len(response):
                self.closed_early += 1


# ── host ──


class FakeHost(TaskHost):
    """Records posted messages; answers asks through `responder`."""

    def __init__(
        self,
        settings: HostSettings | None = None,
        storage_path: Path | None = None,
        log: list | None = None,
    ) -> None:
        self.settings = settings or HostSettings()
        self.storage_path = storage_path
        self.messages: list[dict[str, Any]] = []
        self.history: dict[str, HistoryItem] = {}
        self.stored: dict[str, StoredTask] = {}
        self.responder: Callable[[dict[str, Any]], AskResponse | None] | None = None
        self.session: Any = None
        self.log = log if log is not None else []
        self.state_posts = 0

    def says(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == "say" and m.get("say") == kind]

    def phases(self) -> list[str]:
        return [m["phase"] for m in self.messages if m.get("type") == "state"]

    async def post_state_to_webview(self) -> None:
        self.state_posts += 1

    async def post_message_to_webview(self, message: dict[str, Any]) -> None:
        self.messages.append(message)
        if message.get("type") == "state":
            self.log.append(("state", message["phase"]))
        if message.get("type") == "ask" and self.responder is not None:
            response = self.responder(message)
            if response is not None:
                asyncio.get_running_loop().call_soon(self.session.handle_ask_response, response)

    async def get_state(self) -> HostSettings:
        return self.settings

    async def update_task_history(self, item: HistoryItem) -> list[HistoryItem]:
        self.history[item.id] = item
        if self.storage_path is not None:
            return TaskStorage(self.storage_path).upsert_history_item(item)
        return list(self.history.values())

    async def get_task_with_id(self, task_id: str) -> StoredTask:
        if task_id in self.stored:
            return self.stored[task_id]
        if self.storage_path is None:
            raise KeyError(task_id)
        return TaskStorage(self.storage_path).load_task(task_id)

    def get_global_storage_path(self) -> str | None:
        return str(self.storage_path) if self.storage_path is not None else None


class FakePlatform(PlatformProvider):

    def __init__(self, cwd: str) -> None:
        self._cwd = cwd
        self.visible_files: list[str] = []
        self.open_tabs: list[str] = []

    async def get_visible_files(self) -> list[str]:
        return list(self.visible_files)

    async def get_open_tabs(self) -> list[str]:
        return list(self.open_tabs)

    def get_working_directory(self) -> str:
        return self._cwd


# ── terminal ──


class FakeTerminal(TerminalManager):
    """Scripted command output: command -> (lines, exit_code)."""

    def __init__(self, outputs: dict[str, tuple[list[str], int]] | None = None) -> None:
        self.outputs = outputs or {}
        self.commands: list[str] = []
        self.disposed = False
        self._info = TerminalInfo(id=1, cwd=".")

    async def get_or_create_terminal(self, cwd: str) -> TerminalInfo:
        self._info.cwd = cwd
        return self._info

    async def run_command(self, terminal: TerminalInfo, command: str) -> AsyncIterator[TerminalEvent]:
        self.commands.append(command)
        terminal.last_command = command
        lines, exit_code = self.outputs.get(command, ([], 0))
        for line in lines:
            yield TerminalEvent("line", line=line)
        yield TerminalEvent("completed", exit_code=exit_code)

    def get_terminals(self, busy: bool) -> list[TerminalInfo]:
        return []

    def get_unretrieved_output(self, terminal_id: int) -> str:
        return ""

    def is_process_hot(self, terminal_id: int) -> bool:
        return False

    async def dispose_all(self) -> None:
        self.disposed = True


# ── diff view ──


class FakeDiffView(DiffViewProvider):
    """Stages edits in memory; writes on save; `block_save` makes save hang."""

    def __init__(self, cwd: Path, log: list | None = None) -> None:
        self._cwd = Path(cwd)
        self.log = log if log is not None else []
        self.block_save = False
        self.save_started = asyncio.Event()
        self.rel_path: str | None = None
        self.staged: str | None = None

    async def open(self, rel_path: str) -> None:
        self.rel_path = rel_path
        path = self._cwd / rel_path
        self.original_content = path.read_text(encoding="utf-8") if path.exists() else None
        self.is_editing = True
        self.log.append(("open", rel_path))

    async def update(self, content: str, is_complete: bool) -> None:
        self.staged = content

    async def save_changes(self) -> DiffSaveResult:
        self.log.append(("save", self.rel_path))
        self.save_started.set()
        if self.block_save:
            await asyncio.Event().wait()
        assert self.rel_path is not None and self.staged is not None
        path = self._cwd / self.rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.staged, encoding="utf-8")
        return DiffSaveResult(final_content=self.staged)

    async def revert_changes(self) -> None:
        self.log.append(("revert", self.rel_path))
        self.is_editing = False

    async def reset(self) -> None:
        self.is_editing = False
        self.rel_path = None
        self.staged = None


# ── browser / mcp ──


class FakeBrowser(BrowserSession):

    def __init__(self) -> None:
        self.actions: list[tuple[str, str]] = []

    async def launch_browser(self) -> None:
        self.actions.append(("launch", ""))

    async def close_browser(self) -> BrowserActionResult:
        self.actions.append(("close", ""))
        return BrowserActionResult()

    async def navigate_to_url(self, url: str) -> BrowserActionResult:
        self.actions.append(("navigate", url))
        return BrowserActionResult(logs="loaded", screenshot="data:image/png;base64,AAAA", current_url=url)

    async def click(self, coordinate: str) -> BrowserActionResult:
        self.actions.append(("click", coordinate))
        return BrowserActionResult(logs="clicked")

    async def type(self, text: str) -> BrowserActionResult:
        self.actions.append(("type", text))
        return BrowserActionResult()

    async def scroll_down(self) -> BrowserActionResult:
        self.actions.append(("scroll_down", ""))
        return BrowserActionResult()

    async def scroll_up(self) -> BrowserActionResult:
        self.actions.append(("scroll_up", ""))
        return BrowserActionResult()


class FakeMcpHub(McpHub):

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []

    def list_servers(self) -> list[str]:
        return ["weather"]

    async def call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any]) -> str:
        self.calls.append((server_name, tool_name, arguments))
        return f"{tool_name} ok"

    async def read_resource(self, server_name: str, uri: str) -> str:
        return f"resource {uri}"


# ── fixtures ──


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "app.py").write_text("def greet():\n    return 'hi'\n", encoding="utf-8")
    return root


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        retry_attempts=3,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        command_idle_timeout_seconds=2.0,
    )


@pytest.fixture
def make_capabilities(workspace: Path):
    """Factory for a Capabilities set over `workspace` built from fakes."""

    def _make(
        *,
        settings: HostSettings | None = None,
        outputs: dict[str, tuple[list[str], int]] | None = None,
        storage_path: Path | None = None,
        log: list | None = None,
        browser: BrowserSession | None = None,
    ) -> Capabilities:
        log = log if log is not None else []
        return Capabilities(
            host=FakeHost(settings, storage_path=storage_path, log=log),
            platform=FakePlatform(str(workspace)),
            terminal=FakeTerminal(outputs),
            diff_view=FakeDiffView(workspace, log=log),
            browser=browser,
        )

    return _make


@pytest.fixture
def make_api():
    """Factory: make_api(response, ...) -> FakeApiClient."""

    def _make(*responses: list[ApiChunk] | Exception) -> FakeApiClient:
        return FakeApiClient(list(responses))

    return _make


@pytest.fixture
def reply():
    """Factory: reply(*fragments) -> a complete scripted response."""
    return response_chunks


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def fake_mcp_hub() -> FakeMcpHub:
    return FakeMcpHub()
