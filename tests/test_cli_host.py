from __future__ import annotations

import io
import time

import pytest
from rich.console import Console
from rich.prompt import Prompt

from taskloop.adapters.cli_host import CliTaskHost, _continue_response, _describe_ask
from taskloop.engine.models import AskResponse, HistoryItem, HostSettings
from taskloop.shared.services.command_policy_store import CommandPolicyStore


class _Session:
    def __init__(self) -> None:
        self.responses: list[AskResponse] = []

    def handle_ask_response(self, response: AskResponse) -> bool:
        self.responses.append(response)
        return True


def _host(tmp_path, settings: HostSettings | None = None) -> tuple[CliTaskHost, io.StringIO]:
    out = io.StringIO()
    console = Console(file=out, width=120, force_terminal=False, color_system=None)
    return CliTaskHost(str(tmp_path), settings, console=console), out


@pytest.mark.asyncio
async def test_get_state_returns_a_copy(tmp_path) -> None:
    host, _ = _host(tmp_path, HostSettings(always_allow_read_only=True))
    state = await host.get_state()
    assert state.always_allow_read_only
    state.always_allow_read_only = False
    assert (await host.get_state()).always_allow_read_only


@pytest.mark.asyncio
async def test_task_history_lives_under_taskloop_dir(tmp_path) -> None:
    host, _ = _host(tmp_path)
    item = HistoryItem(id="t1", ts=time.time(), task="fix it", cwd=str(tmp_path))
    items = await host.update_task_history(item)
    assert [h.id for h in items] == ["t1"]
    assert host.get_global_storage_path() == str(tmp_path / ".taskloop")
    stored = await host.get_task_with_id("t1")
    assert stored.history_item.task == "fix it"


def test_approval_responses(tmp_path) -> None:
    host, _ = _host(tmp_path)
    assert host._approval_response("", {}).kind == "yes"
    assert host._approval_response("Y", {}).kind == "yes"
    assert host._approval_response("no", {}).kind == "no"
    feedback = host._approval_response("  use pytest instead ", {})
    assert (feedback.kind, feedback.text) == ("no", "use pytest instead")


def test_always_allow_remembers_command_prefix(tmp_path) -> None:
    host, out = _host(tmp_path)
    response = host._approval_response("a", {"name": "execute_command", "params": {"command": "git status -s"}})
    assert response.kind == "yes"
    assert CommandPolicyStore(tmp_path).load().allowed == ["git status"]
    assert "git status" in out.getvalue()


def test_continue_response_and_describe_ask() -> None:
    assert _continue_response("").kind == "yes"
    assert _continue_response("N").kind == "no"
    guidance = _continue_response("try a smaller step")
    assert (guidance.kind, guidance.text) == ("message", "try a smaller step")

    assert _describe_ask("api_req_failed", "boom") == "The API request failed: boom"
    assert _describe_ask("mistake_limit_reached", "stuck") == "stuck"
    assert _describe_ask("resume_task", '{"a": 1}') == '{\n  "a": 1\n}'
    assert _describe_ask("resume_task", "plain") == "plain"


@pytest.mark.asyncio
async def test_ask_is_answered_through_the_session(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(Prompt, "ask", lambda *args, **kwargs: "y")
    host, out = _host(tmp_path)
    session = _Session()
    host.bind(session)

    await host.post_message_to_webview({
        "type": "ask", "ask": "command", "text": "ls",
        "tool": {"name": "execute_command", "params": {"command": "ls"}},
    })
    await host._answer_task

    assert [r.kind for r in session.responses] == ["yes"]
    assert "Command" in out.getvalue()


@pytest.mark.asyncio
async def test_eof_on_prompt_denies(tmp_path, monkeypatch) -> None:
    def _eof(*args, **kwargs):
        raise EOFError

    monkeypatch.setattr(Prompt, "ask", _eof)
    host, _ = _host(tmp_path)
    session = _Session()
    host.bind(session)
    await host.post_message_to_webview({"type": "ask", "ask": "followup", "text": "Which file?"})
    await host._answer_task
    assert [r.kind for r in session.responses] == ["no"]


@pytest.mark.asyncio
async def test_tool_result_uses_params_from_approval(tmp_path) -> None:
    host, out = _host(tmp_path)
    await host.post_message_to_webview({
        "type": "approval", "tool": "read_file", "call_id": "c1",
        "params": {"path": "src/app.py"}, "decision": "auto_approved",
    })
    await host.post_message_to_webview({
        "type": "say", "say": "tool_result", "call_id": "c1", "tool": "read_file",
        "text": "missing file", "success": False,
    })
    text = out.getvalue()
    assert "pending" in text
    assert "src/app.py" in text
    assert "error" in text
    assert "missing file" in text
