from __future__ import annotations

import asyncio

import pytest

from taskloop.engine import responses
from taskloop.engine.errors import TransportError
from taskloop.engine.models import (
    AskResponse,
    BlockType,
    HistoryItem,
    HostSettings,
    Message,
    MessageRole,
    StoredTask,
    TaskPhase,
    ToolCall,
    text_block,
)
from taskloop.engine.task_session import RepeatedCallGuard, TaskSession
from taskloop.shared.services.task_storage import TaskStorage

_ECHO = "<execute_command>\n<command>echo hi</command>\n</execute_command>"
_DONE = "<attempt_completion>\n<result>done</result>\n</attempt_completion>"
_EDIT = (
    "Updating the greeting.\n"
    "<apply_diff>\n<path>app.py</path>\n<diff>\n"
    "<<<<<<< SEARCH\n    return 'hi'\n=======\n    return 'hello'\n>>>>>>> REPLACE\n"
    "</diff>\n</apply_diff>"
)


def _session(caps, api, config, workspace, **kwargs) -> TaskSession:
    session = TaskSession(caps, api, config=config, cwd=str(workspace), **kwargs)
    caps.host.session = session
    return session


def _last_user_text(api, request_index: int) -> str:
    messages = api.requests[request_index][1]
    return "\n".join(b.text for b in messages[-1].blocks)


# ── end-to-end turns ──


@pytest.mark.asyncio
async def test_command_then_completion(workspace, engine_config, make_capabilities, make_api, reply) -> None:
    caps = make_capabilities(
        settings=HostSettings(always_allow_execute=True),
        outputs={"echo hi": (["hi"], 0)},
    )
    api = make_api(reply(_ECHO), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Say hi in the terminal")

    assert state.phase == TaskPhase.COMPLETED
    assert state.result == "done"
    assert caps.terminal.commands == ["echo hi"]
    assert caps.terminal.disposed
    assert caps.host.phases() == [
        "awaiting_model", "streaming_response", "awaiting_approval", "executing_tool",
        "awaiting_model", "streaming_response", "awaiting_approval", "executing_tool",
        "completed",
    ]
    assert len(api.requests) == 2

    reply_to_call = api.requests[1][1][-1]
    assert reply_to_call.role == MessageRole.TOOL_RESULT
    result_block = reply_to_call.tool_results[0]
    assert result_block.text == "Command executed.\nOutput:\nhi"
    assert reply_to_call.blocks[-1].text.startswith("<environment_details>")
    assert state.tokens_in == 200
    assert state.tokens_out == 40
    assert state.total_cost > 0


@pytest.mark.asyncio
async def test_immediate_completion_sends_one_request(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    events: list[dict] = []

    async def on_event(event: dict) -> None:
        events.append(event)

    caps = make_capabilities()
    api = make_api(reply("Nothing to change.\n", _DONE))
    session = _session(caps, api, engine_config, workspace, event_callback=on_event)

    state = await session.start("Summarize @/app.py")

    assert state.phase == TaskPhase.COMPLETED
    assert len(api.requests) == 1
    first = api.requests[0][1][0]
    assert first.role == MessageRole.USER
    assert first.blocks[0].text.startswith("<task>\nSummarize @/app.py\n\n<file_content path=\"app.py\">")
    assert "# Current Working Directory" in first.blocks[-1].text
    assert [m["text"] for m in caps.host.says("completion_result")] == ["done"]
    assert caps.host.says("task")[0]["text"] == "Summarize @/app.py"
    assert [e["phase"] for e in events if e["type"] == "state"][-1] == "completed"


@pytest.mark.asyncio
async def test_identical_calls_abort_the_task(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(settings=HostSettings(always_allow_execute=True))
    api = make_api(reply(_ECHO), reply(_ECHO), reply(_ECHO))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Loop forever")

    assert state.phase == TaskPhase.ABORTED
    assert caps.terminal.commands == ["echo hi", "echo hi"]
    assert len(api.requests) == 3
    assert "identical execute_command call" in state.error
    assert caps.host.says("aborted")


@pytest.mark.asyncio
async def test_abort_during_save_reverts_before_aborting(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    log: list = []
    caps = make_capabilities(settings=HostSettings(always_allow_write=True), log=log)
    caps.diff_view.block_save = True
    api = make_api(reply(_EDIT))
    session = _session(caps, api, engine_config, workspace)

    running = asyncio.create_task(session.start("Change the greeting"))
    await asyncio.wait_for(caps.diff_view.save_started.wait(), timeout=5)
    session.abort("stop")
    state = await asyncio.wait_for(running, timeout=5)

    assert state.phase == TaskPhase.ABORTED
    assert state.error == "stop"
    revert = log.index(("revert", "app.py"))
    aborted = log.index(("state", "aborted"))
    assert log.index(("save", "app.py")) < revert < aborted
    assert (workspace / "app.py").read_text(encoding="utf-8") == "def greet():\n    return 'hi'\n"


@pytest.mark.asyncio
async def test_auto_approved_edit_is_saved(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(settings=HostSettings(always_allow_write=True))
    api = make_api(reply(_EDIT), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Change the greeting")

    assert state.phase == TaskPhase.COMPLETED
    assert (workspace / "app.py").read_text(encoding="utf-8") == "def greet():\n    return 'hello'\n"
    assistant = api.requests[1][1][1]
    assert assistant.text == "Updating the greeting."
    assert assistant.tool_calls[0].params["path"] == "app.py"
    assert "successfully saved to app.py" in _last_user_text(api, 1)


# ── approvals and asks ──


@pytest.mark.asyncio
async def test_denied_command_feeds_back_user_text(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    caps.host.responder = lambda m: AskResponse(kind="no", text="use pnpm instead") if m["ask"] == "command" else None
    api = make_api(reply("<execute_command><command>npm install</command></execute_command>"), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Install dependencies")

    assert state.phase == TaskPhase.COMPLETED
    assert caps.terminal.commands == []
    asks = [m for m in caps.host.messages if m["type"] == "ask"]
    assert asks[0]["ask"] == "command"
    assert asks[0]["tool"] == {"name": "execute_command", "params": {"command": "npm install"}}
    approvals = [m for m in caps.host.messages if m["type"] == "approval"]
    assert approvals[0]["decision"] == "user_denied"
    result = api.requests[1][1][-1].tool_results[0]
    assert result.is_error
    assert result.text == responses.tool_denied_with_feedback("use pnpm instead")


@pytest.mark.asyncio
async def test_approved_command_runs(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(outputs={"echo hi": (["hi"], 0)})
    caps.host.responder = lambda m: AskResponse(kind="yes")
    api = make_api(reply(_ECHO), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Say hi")

    assert state.phase == TaskPhase.COMPLETED
    assert caps.terminal.commands == ["echo hi"]
    approvals = [m for m in caps.host.messages if m["type"] == "approval"]
    assert [a["decision"] for a in approvals] == ["user_approved", "auto_approved"]


@pytest.mark.asyncio
async def test_followup_question_answer_reaches_the_model(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    caps.host.responder = (
        lambda m: AskResponse(kind="message", text="app.py") if m["ask"] == "followup" else None
    )
    question = "<ask_followup_question>\n<question>Which file?</question>\n</ask_followup_question>"
    api = make_api(reply(question), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Tidy up")

    assert state.phase == TaskPhase.COMPLETED
    assert "<answer>\napp.py\n</answer>" in _last_user_text(api, 1)


def test_answer_without_pending_ask_is_ignored(make_capabilities, engine_config, workspace) -> None:
    session = TaskSession(make_capabilities(), None, config=engine_config, cwd=str(workspace))
    assert session.handle_ask_response(AskResponse(kind="yes")) is False


@pytest.mark.asyncio
async def test_second_answer_to_the_same_ask_is_ignored(make_capabilities, engine_config, workspace) -> None:
    session = TaskSession(make_capabilities(), None, config=engine_config, cwd=str(workspace))
    asking = asyncio.create_task(session.ask("followup", "Which file?"))
    await asyncio.sleep(0)

    assert session.awaiting_answer
    assert session.handle_ask_response(AskResponse(kind="message", text="a.py")) is True
    assert session.handle_ask_response(AskResponse(kind="message", text="b.py")) is False
    assert (await asking).text == "a.py"
    assert session.handle_ask_response(AskResponse(kind="yes")) is False


# ── recoverable mistakes ──


@pytest.mark.asyncio
async def test_reply_without_tool_gets_reminder(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    api = make_api(reply("I think the code looks fine."), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Review app.py")

    assert state.phase == TaskPhase.COMPLETED
    assert "[ERROR] You did not use a tool" in _last_user_text(api, 1)
    assert api.requests[1][1][1].text == "I think the code looks fine."


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_back(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    api = make_api(reply("<delete_file><path>app.py</path></delete_file>"), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Clean up")

    assert state.phase == TaskPhase.COMPLETED
    assert "'delete_file' is not a tool you can use" in _last_user_text(api, 1)
    assert (workspace / "app.py").exists()


@pytest.mark.asyncio
async def test_missing_parameter_is_reported_back(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(settings=HostSettings(always_allow_read_only=True))
    api = make_api(reply("<read_file>\n</read_file>"), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Read something")

    assert state.phase == TaskPhase.COMPLETED
    assert "Missing value for required parameter 'path' in read_file" in _last_user_text(api, 1)


@pytest.mark.asyncio
async def test_text_after_tool_call_is_cut(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(settings=HostSettings(always_allow_read_only=True))
    api = make_api(
        reply("<read_file><path>app.py</path></read_file>", "\nNow I will also edit it."),
        reply(_DONE),
    )
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Read app.py")

    assert state.phase == TaskPhase.COMPLETED
    assert api.closed_early == 1
    assistant = api.requests[1][1][1]
    assert responses.TOOL_INTERRUPTED_NOTICE in assistant.text
    assert "1 | def greet():" in _last_user_text(api, 1)


@pytest.mark.asyncio
async def test_mistake_limit_asks_the_user(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    caps.host.responder = (
        lambda m: AskResponse(kind="no") if m["ask"] == "mistake_limit_reached" else None
    )
    api = make_api(reply("hmm"), reply("still thinking"), reply("not sure"))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Do something")

    assert state.phase == TaskPhase.ABORTED
    assert len(api.requests) == 3
    assert [m["ask"] for m in caps.host.messages if m["type"] == "ask"] == ["mistake_limit_reached"]


# ── transport ──


@pytest.mark.asyncio
async def test_retriable_transport_error_is_retried(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    api = make_api(TransportError("overloaded", retriable=True, status=529), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Finish")

    assert state.phase == TaskPhase.COMPLETED
    assert len(api.requests) == 2
    assert len(caps.host.says("api_req_retried")) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_fails_the_task(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    errors = [TransportError("overloaded", retriable=True) for _ in range(engine_config.retry_attempts)]
    api = make_api(*errors)
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Finish")

    assert state.phase == TaskPhase.FAILED
    assert len(api.requests) == engine_config.retry_attempts
    assert "API request failed" in state.error


@pytest.mark.asyncio
async def test_stream_error_after_complete_call_keeps_the_call(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    from taskloop.engine.providers.base import ApiChunk

    caps = make_capabilities(
        settings=HostSettings(always_allow_execute=True),
        outputs={"echo hi": (["hi"], 0)},
    )

    class _Broken(list):
        def __iter__(self):
            yield ApiChunk.text_delta(_ECHO)
            raise TransportError("connection reset")

    api = make_api(_Broken([None, None]), reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.start("Say hi")

    assert state.phase == TaskPhase.COMPLETED
    assert caps.terminal.commands == ["echo hi"]
    assert len(api.requests) == 2


# ── resume ──


@pytest.mark.asyncio
async def test_resume_does_not_reexecute_answered_calls(
    tmp_path, workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    store_dir = tmp_path / "storage"
    settings = HostSettings(always_allow_execute=True)
    caps = make_capabilities(settings=settings, outputs={"echo hi": (["hi"], 0)}, storage_path=store_dir)
    api = make_api(reply(_ECHO), TransportError("bad request", retriable=False, status=400))
    first = _session(caps, api, engine_config, workspace)

    state = await first.start("Say hi then finish")
    assert state.phase == TaskPhase.FAILED

    stored = TaskStorage(store_dir).load_task(first.task_id)
    assert stored.history_item.status == "failed"
    assert [m.role for m in stored.messages] == [
        MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL_RESULT,
    ]

    caps2 = make_capabilities(settings=settings, storage_path=store_dir)
    api2 = make_api(reply(_DONE))
    second = _session(caps2, api2, engine_config, workspace)

    state = await second.resume(first.task_id)

    assert state.phase == TaskPhase.COMPLETED
    assert state.task_id == first.task_id
    assert caps2.terminal.commands == []
    sent = api2.requests[0][1]
    assert [m.to_dict() for m in sent[:2]] == [m.to_dict() for m in stored.messages[:2]]
    resumed_reply = sent[2]
    assert resumed_reply.role == MessageRole.TOOL_RESULT
    assert resumed_reply.tool_results[0].text == "Command executed.\nOutput:\nhi"
    texts = [b.text for b in resumed_reply.blocks if b.block_type == BlockType.TEXT]
    assert sum(t.startswith("<environment_details>") for t in texts) == 1
    assert any(t.startswith("[TASK RESUMPTION] This task was interrupted") for t in texts)
    assert TaskStorage(store_dir).get_history_item(first.task_id).status == "completed"


@pytest.mark.asyncio
async def test_resume_answers_unanswered_call_as_interrupted(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities(settings=HostSettings(always_allow_execute=True))
    call = ToolCall(name="execute_command", params={"command": "make deploy"}, partial=False)
    caps.host.stored["t-1"] = StoredTask(
        history_item=HistoryItem(id="t-1", ts=0.0, task="Deploy", status="aborted"),
        messages=[
            Message(MessageRole.USER, [text_block("<task>\nDeploy\n</task>")]),
            Message(MessageRole.ASSISTANT, [call.to_block()]),
        ],
    )
    api = make_api(reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.resume("t-1")

    assert state.phase == TaskPhase.COMPLETED
    assert caps.terminal.commands == []
    reply_msg = api.requests[0][1][-1]
    result = reply_msg.tool_results[0]
    assert result.call_id == call.call_id
    assert result.is_error
    assert result.text == responses.interrupted_tool("execute_command")


@pytest.mark.asyncio
async def test_resume_keeps_trimmed_turns_out_of_requests(
    workspace, engine_config, make_capabilities, make_api, reply,
) -> None:
    caps = make_capabilities()
    messages = [Message(MessageRole.USER, [text_block("<task>\nRefactor\n</task>")])]
    for i in range(1, 4):
        messages.append(Message(MessageRole.ASSISTANT, [text_block(f"step {i}")]))
        messages.append(Message(MessageRole.USER, [text_block(f"answer {i}")]))
    caps.host.stored["t-2"] = StoredTask(
        history_item=HistoryItem(
            id="t-2", ts=0.0, task="Refactor", status="aborted",
            conversation_history_deleted_range=(1, 5),
        ),
        messages=messages,
    )
    api = make_api(reply(_DONE))
    session = _session(caps, api, engine_config, workspace)

    state = await session.resume("t-2")

    assert state.phase == TaskPhase.COMPLETED
    sent = api.requests[0][1]
    assert [m.text for m in sent[:2]] == ["<task>\nRefactor\n</task>", "step 3"]
    assert sent[2].role == MessageRole.USER
    assert session.store.full_history()[1].text == "step 1"
    assert caps.host.history["t-2"].conversation_history_deleted_range == (1, 5)


@pytest.mark.asyncio
async def test_resume_unknown_task_raises(workspace, engine_config, make_capabilities, make_api) -> None:
    session = _session(make_capabilities(), make_api(), engine_config, workspace)
    with pytest.raises(KeyError):
        await session.resume("missing")


# ── repeat guard ──


def test_repeated_call_guard_counts_consecutive_identical_calls() -> None:
    guard = RepeatedCallGuard(max_repeats=3)
    a = ToolCall(name="read_file", params={"path": "a.py"})
    b = ToolCall(name="read_file", params={"path": "b.py"})
    assert guard.check(a) == (True, 1)
    assert guard.check(a) == (True, 2)
    assert guard.check(b) == (True, 1)
    assert guard.check(a) == (True, 1)
    assert guard.check(a) == (True, 2)
    assert guard.check(a) == (False, 3)
    guard.reset()
    assert guard.check(a) == (True, 1)
