"""Task persistence: conversation checkpoints and the task history index.

Storage layout:
    {global_storage}/tasks/{task_id}/api_conversation_history.json
    {global_storage}/task_history.json

task_history.json holds every HistoryItem, newest first. All writes go
through atomic_write_text so a crash leaves the previous checkpoint intact.
"""
from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

from taskloop.engine.errors import InvariantViolationError
from taskloop.engine.models import HistoryItem, Message, StoredTask
from taskloop.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

TASKS_DIRNAME = "tasks"
CONVERSATION_FILENAME = "api_conversation_history.json"
HISTORY_FILENAME = "task_history.json"


class TaskStorage:
    """Reads and writes per-task checkpoints under a storage root."""

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def history_path(self) -> Path:
        return self._base_dir / HISTORY_FILENAME

    def task_dir(self, task_id: str) -> Path:
        return self._base_dir / TASKS_DIRNAME / task_id

    def save_messages(self, task_id: str, messages: list[Message]) -> Path:
        path = self.task_dir(task_id) / CONVERSATION_FILENAME
        atomic_write_json(path, [m.to_dict() for m in messages])
        logger.debug("Saved %d messages for task %s to %s", len(messages), task_id[:8], path)
        return path

    def load_messages(self, task_id: str) -> list[Message]:
        path = self.task_dir(task_id) / CONVERSATION_FILENAME
        if not path.exists():
            raise FileNotFoundError(f"No conversation checkpoint for task {task_id}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [Message.from_dict(item) for item in raw]
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
            raise InvariantViolationError(
                "checkpoint_readable", f"{path} is corrupt: {exc}",
            ) from exc

    def load_history(self) -> list[HistoryItem]:
        if not self.history_path.exists():
            return []
        try:
            raw = json.loads(self.history_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Task history %s is unreadable; starting fresh", self.history_path)
            return []
        items: list[HistoryItem] = []
        for entry in raw:
            try:
                items.append(HistoryItem.from_dict(entry))
            except (KeyError, ValueError, TypeError):
                logger.warning("Skipping malformed task history entry: %r", entry)
        return items

    def upsert_history_item(self, item: HistoryItem) -> list[HistoryItem]:
        """Insert or replace item and return the history, newest first."""
        items = [existing for existing in self.load_history() if existing.id != item.id]
        items.append(item)
        items.sort(key=lambda h: h.ts, reverse=True)
        atomic_write_json(self.history_path, [h.to_dict() for h in items])
        return items

    def get_history_item(self, task_id: str) -> HistoryItem | None:
        for item in self.load_history():
            if item.id == task_id:
                return item
        return None

    def load_task(self, task_id: str) -> StoredTask:
        item = self.get_history_item(task_id)
        if item is None:
            raise KeyError(f"Task {task_id} not found in {self.history_path}")
        return StoredTask(
            history_item=item,
            messages=self.load_messages(task_id),
            task_dir=str(self.task_dir(task_id)),
        )

    def delete_task(self, task_id: str) -> bool:
        """Remove a task's directory and history entry. Returns True if found."""
        items = self.load_history()
        remaining = [h for h in items if h.id != task_id]
        found = len(remaining) != len(items)
        if found:
            atomic_write_json(self.history_path, [h.to_dict() for h in remaining])
        task_dir = self.task_dir(task_id)
        if task_dir.exists():
            shutil.rmtree(task_dir)
            found = True
        return found
