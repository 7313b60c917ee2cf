from __future__ import annotations

import os
import stat

import pytest

from taskloop.engine.errors import InvariantViolationError
from taskloop.engine.models import (
    BlockType,
    HistoryItem,
    Message,
    MessageRole,
    Observation,
    ToolCall,
    text_block,
)
from taskloop.shared.services.durable_write import atomic_write_json, atomic_write_text
from taskloop.shared.services.task_storage import CONVERSATION_FILENAME, TaskStorage


def test_history_is_newest_first_and_upserted(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    storage.upsert_history_item(HistoryItem(id="a", ts=1.0, task="first"))
    storage.upsert_history_item(HistoryItem(id="b", ts=2.0, task="second"))
    items = storage.upsert_history_item(HistoryItem(id="a", ts=3.0, task="first", status="completed"))

    assert [i.id for i in items] == ["a", "b"]
    assert items[0].status == "completed"
    assert [i.id for i in storage.load_history()] == ["a", "b"]


def test_load_task_returns_messages_and_item(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    messages = [Message(MessageRole.USER, [text_block("<task>\nfix it\n</task>")], timestamp=5.0)]
    storage.save_messages("t1", messages)
    storage.upsert_history_item(HistoryItem(id="t1", ts=5.0, task="fix it", tokens_in=10))

    stored = storage.load_task("t1")
    assert stored.history_item.tokens_in == 10
    assert stored.messages[0].to_dict() == messages[0].to_dict()
    assert stored.task_dir.endswith("t1")


def test_load_unknown_task_raises_key_error(tmp_path) -> None:
    with pytest.raises(KeyError):
        TaskStorage(tmp_path).load_task("missing")


def test_corrupt_checkpoint_is_an_invariant_violation(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    path = storage.task_dir("t1") / CONVERSATION_FILENAME
    path.parent.mkdir(parents=True)
    path.write_text("[{not json", encoding="utf-8")
    with pytest.raises(InvariantViolationError):
        storage.load_messages("t1")


def test_unreadable_history_starts_fresh(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    storage.history_path.write_text("garbage", encoding="utf-8")
    assert storage.load_history() == []


def test_delete_task_removes_dir_and_entry(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    storage.save_messages("t1", [])
    storage.upsert_history_item(HistoryItem(id="t1", ts=1.0, task="x"))
    assert storage.delete_task("t1") is True
    assert storage.load_history() == []
    assert not storage.task_dir("t1").exists()
    assert storage.delete_task("t1") is False


def test_atomic_write_replaces_content_without_leftovers(tmp_path) -> None:
    target = tmp_path / "nested" / "file.txt"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")
    assert target.read_text(encoding="utf-8") == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.txt"]

    atomic_write_json(tmp_path / "data.json", {"k": [1, 2]})
    assert (tmp_path / "data.json").read_text(encoding="utf-8").endswith("\n")


def test_tool_result_payload_survives_checkpoint(tmp_path) -> None:
    storage = TaskStorage(tmp_path)
    call = ToolCall(name="execute_command", params={"command": "make"}, partial=False)
    observation = Observation(
        success=False, text="Command failed.", payload={"command": "make", "exit_code": 2, "completed": True},
    )
    messages = [
        Message(MessageRole.USER, [text_block("<task>\nbuild\n</task>")]),
        Message(MessageRole.ASSISTANT, [call.to_block()]),
        Message(MessageRole.TOOL_RESULT, [observation.to_block(call)]),
    ]
    storage.save_messages("t1", messages)

    result = storage.load_messages("t1")[2].blocks[0]
    assert result.block_type == BlockType.TOOL_RESULT
    assert result.is_error
    assert result.payload == {"command": "make", "exit_code": 2, "completed": True}
    assert "payload" not in messages[0].blocks[0].to_dict()


def test_atomic_write_keeps_line_endings_verbatim(tmp_path) -> None:
    target = tmp_path / "script.bat"
    atomic_write_text(target, "echo one\r\necho two\n")
    assert target.read_bytes() == b"echo one\r\necho two\n"


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_atomic_write_keeps_existing_file_mode(tmp_path) -> None:
    target = tmp_path / "run.sh"
    target.write_text("#!/bin/sh\n", encoding="utf-8")
    target.chmod(0o755)
    atomic_write_text(target, "#!/bin/sh\necho hi\n")
    assert stat.S_IMODE(target.stat().st_mode) == 0o755


def test_failed_atomic_write_leaves_previous_content(tmp_path) -> None:
    target = tmp_path / "notes.txt"
    atomic_write_text(target, "kept")
    with pytest.raises(UnicodeEncodeError):
        atomic_write_text(target, "café", encoding="ascii")
    assert target.read_text(encoding="utf-8") == "kept"
    assert [p.name for p in tmp_path.iterdir()] == ["notes.txt"]
