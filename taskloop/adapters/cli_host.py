"""TaskHost for the command line: rich console output and prompts.

Session messages ("say", "ask", "approval", "state") are rendered on a
rich Console. Asks are answered from stdin on a worker thread and
delivered back through TaskSession.handle_ask_response(), so the event
loop keeps running (and abort still works) while the user types.

Task history lives in a TaskStorage under <cwd>/.taskloop.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt

from taskloop.engine.capabilities import TaskHost
from taskloop.engine.models import AskResponse, HistoryItem, HostSettings, StoredTask
from taskloop.shared.formatters.tool_call import (
    format_tool_call,
    render_collapsed_rich,
    render_expanded_rich,
)
from taskloop.shared.services.command_policy_store import CommandPolicyStore
from taskloop.shared.services.task_storage import TaskStorage

logger = logging.getLogger(__name__)

STORAGE_DIRNAME = ".taskloop"
_APPROVAL_ASKS = frozenset({"tool", "command", "browser_action_launch", "use_mcp_server"})


class CliTaskHost(TaskHost):
    """Presents one task session on a terminal."""

    def __init__(
        self,
        cwd: str,
        settings: HostSettings | None = None,
        *,
        console: Console | None = None,
        storage_dir: str | Path | None = None,
        policy_store: CommandPolicyStore | None = None,
    ) -> None:
        self._cwd = cwd
        self._settings = settings or HostSettings()
        self._console = console or Console()
        self._storage = TaskStorage(storage_dir or Path(cwd) / STORAGE_DIRNAME)
        self._policy_store = policy_store or CommandPolicyStore(cwd)
        self._session: Any = None
        self._answer_task: asyncio.Task | None = None
        self._calls: dict[str, dict[str, Any]] = {}
        self._streaming = False
        self.active_task: HistoryItem | None = None

    @property
    def storage(self) -> TaskStorage:
        return self._storage

    def bind(self, session: Any) -> None:
        """Attach the session that receives answers to asks."""
        self._session = session

    # ── TaskHost ──

    async def get_state(self) -> HostSettings:
        return dataclasses.replace(self._settings)

    async def update_task_history(self, item: HistoryItem) -> list[HistoryItem]:
        return self._storage.upsert_history_item(item)

    async def get_task_with_id(self, task_id: str) -> StoredTask:
        return self._storage.load_task(task_id)

    async def init_task_with_history_item(self, item: HistoryItem) -> None:
        self.active_task = item
        self._console.print(
            f"[dim]Resuming task {item.id} ({item.status}): {item.task[:80]}[/dim]",
            highlight=False,
        )

    def get_global_storage_path(self) -> str | None:
        return str(self._storage.base_dir)

    async def post_state_to_webview(self) -> None:
        logger.debug("CliTaskHost: state posted")

    async def post_message_to_webview(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "say":
            self._render_say(message)
        elif kind == "approval":
            self._render_approval(message)
        elif kind == "ask":
            self._end_stream()
            self._answer_task = asyncio.create_task(self._answer(message))
        elif kind == "state":
            logger.debug("Task phase %s -> %s", message.get("previous"), message.get("phase"))

    # ── rendering ──

    def _end_stream(self) -> None:
        if self._streaming:
            self._console.print()
            self._streaming = False

    def _render_say(self, message: dict[str, Any]) -> None:
        say = message.get("say")
        text = str(message.get("text") or "")
        if say == "text":
            if message.get("partial"):
                self._console.print(text, end="", markup=False, highlight=False)
                self._streaming = True
            else:
                self._end_stream()
            return

        self._end_stream()
        if say == "task":
            self._console.print(Panel(text, title="Task", border_style="cyan"))
        elif say == "tool_result":
            call = self._calls.pop(str(message.get("call_id")), {})
            success = bool(message.get("success", True))
            fmt = format_tool_call(
                str(message.get("tool") or call.get("name", "tool")),
                call.get("params", {}),
                text,
                success,
            )
            self._console.print(render_collapsed_rich(fmt, "done" if success else "error"))
            if not success:
                self._console.print(f"  [red]{_first_line(text)}[/red]", highlight=False)
        elif say == "completion_result":
            self._console.print(Panel(Markdown(text), title="Task completed", border_style="green"))
        elif say == "error":
            self._console.print(f"[bold red]Error:[/bold red] {text}", highlight=False)
        elif say == "aborted":
            self._console.print(f"[yellow]Task aborted:[/yellow] {text}", highlight=False)
        elif say == "api_req_retried":
            self._console.print(f"[yellow]{text}[/yellow]", highlight=False)
        else:
            self._console.print(f"[dim]{text}[/dim]", highlight=False)

    def _render_approval(self, message: dict[str, Any]) -> None:
        name = str(message.get("tool", "tool"))
        params = message.get("params") or {}
        self._calls[str(message.get("call_id"))] = {"name": name, "params": params}
        decision = message.get("decision")
        if decision == "auto_approved":
            self._end_stream()
            self._console.print(render_collapsed_rich(format_tool_call(name, params), "pending"))
        elif decision == "user_denied":
            self._console.print(render_collapsed_rich(format_tool_call(name, params), "denied"))

    # ── asks ──

    async def _answer(self, message: dict[str, Any]) -> None:
        ask = str(message.get("ask"))
        text = str(message.get("text") or "")
        tool = message.get("tool") or {}
        try:
            if ask in _APPROVAL_ASKS:
                fmt = format_tool_call(tool.get("name", "tool"), tool.get("params", {}))
                self._console.print(render_expanded_rich(fmt, "pending"))
                reply = await asyncio.to_thread(
                    Prompt.ask,
                    "[bold]Approve?[/bold] [dim](y = yes, n = no, a = always allow this "
                    "command prefix, other text = deny with feedback)[/dim]",
                    console=self._console,
                )
                response = self._approval_response(reply, tool)
            elif ask == "followup":
                self._console.print(Panel(text, title="Question", border_style="yellow"))
                reply = await asyncio.to_thread(Prompt.ask, "[bold yellow]Answer[/bold yellow]", console=self._console)
                response = AskResponse(kind="message", text=reply)
            else:
                self._console.print(f"[yellow]{_describe_ask(ask, text)}[/yellow]", highlight=False)
                reply = await asyncio.to_thread(
                    Prompt.ask,
                    "[bold]Continue?[/bold] [dim](y / n / guidance text)[/dim]",
                    console=self._console,
                )
                response = _continue_response(reply)
        except (EOFError, KeyboardInterrupt):
            response = AskResponse(kind="no")
        if self._session is None or not self._session.handle_ask_response(response):
            logger.debug("CliTaskHost: answer to %s ask was not delivered", ask)

    def _approval_response(self, reply: str, tool: dict[str, Any]) -> AskResponse:
        answer = reply.strip()
        if answer.lower() in ("", "y", "yes"):
            return AskResponse(kind="yes")
        if answer.lower() in ("n", "no"):
            return AskResponse(kind="no")
        if answer.lower() in ("a", "always"):
            command = (tool.get("params") or {}).get("command")
            if command:
                prefix = CommandPolicyStore.suggest_prefix(command)
                self._policy_store.add_allowed(prefix)
                self._console.print(f"[dim]Always allowing commands starting with {prefix!r}[/dim]")
            return AskResponse(kind="yes")
        return AskResponse(kind="no", text=answer)


def _continue_response(reply: str) -> AskResponse:
    answer = reply.strip()
    if answer.lower() in ("n", "no"):
        return AskResponse(kind="no")
    if answer.lower() in ("", "y", "yes"):
        return AskResponse(kind="yes")
    return AskResponse(kind="message", text=answer)


def _describe_ask(ask: str, text: str) -> str:
    if ask == "api_req_failed":
        return f"The API request failed: {text}"
    if ask == "mistake_limit_reached":
        return text
    try:
        return json.dumps(json.loads(text), indent=2)
    except ValueError:
        return text


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""
