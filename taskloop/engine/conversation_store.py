"""Ordered message log for one task, with trimming and checkpoints.

Shape of the history:

    [user] [assistant] [user-side] [assistant] [user-side] ...

A user-side message is either a USER message or a TOOL_RESULT message.
An assistant message that carries tool calls must be answered by a
TOOL_RESULT message with exactly matching call ids, before any new user
content. append() enforces this and raises InvariantViolationError
instead of repairing a broken sequence.

A "turn" is an assistant message plus the user-side message that
answers it; trimming only ever drops whole turns. Trimmed turns stay in
the log and in checkpoints: deleted_range marks the [1, end) slice that
current_history() leaves out of requests.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .errors import InvariantViolationError
from .models import BlockType, HistoryItem, Message, MessageRole

logger = logging.getLogger(__name__)

# Rough chars-per-token ratio for budget checks; the API's usage
# chunks give exact figures after the fact.
CHARS_PER_TOKEN = 3.5
_BLOCK_OVERHEAD_TOKENS = 4
_IMAGE_TOKENS = 1_000


def estimate_tokens(messages: list[Message]) -> int:
    total = 0
    for message in messages:
        for block in message.blocks:
            total += _BLOCK_OVERHEAD_TOKENS
            if block.block_type == BlockType.IMAGE:
                total += _IMAGE_TOKENS
                continue
            chars = len(block.text)
            if block.params:
                chars += sum(len(k) + len(v) for k, v in block.params.items())
            total += int(chars / CHARS_PER_TOKEN)
    return total


class ConversationStore:
    """Message sequence owned by one TaskSession (single writer).

    Optionally backed by a TaskStorage; checkpoint() then writes the
    sequence and the HistoryItem atomically to disk.
    """

    def __init__(self, task_id: str, storage: Any | None = None) -> None:
        self._task_id = task_id
        self._storage = storage
        self._messages: list[Message] = []
        self.deleted_range: tuple[int, int] | None = None
        self.trimmed_turns = 0

    @property
    def task_id(self) -> str:
        return self._task_id

    def attach_storage(self, storage: Any) -> None:
        self._storage = storage

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def current_history(self) -> list[Message]:
        """Messages sent with the next request: the log minus trimmed turns.

        Returns a new list; mutating it does not affect the store.
        """
        if self.deleted_range is None:
            return list(self._messages)
        return self._messages[:1] + self._messages[self.deleted_range[1]:]

    def full_history(self) -> list[Message]:
        """Every message ever appended, trimmed turns included."""
        return list(self._messages)

    def append(self, message: Message) -> None:
        self._validate_next(message)
        self._messages.append(message)
        logger.debug(
            "Task %s: appended %s message (%d blocks), history=%d",
            self._task_id[:8], message.role.value, len(message.blocks), len(self._messages),
        )

    def _validate_next(self, message: Message) -> None:
        previous = self.last
        if previous is None:
            if message.role != MessageRole.USER:
                raise InvariantViolationError(
                    "first_message_is_user",
                    f"history must start with a user message, got {message.role.value}",
                )
            return

        if message.role == MessageRole.ASSISTANT:
            if previous.role == MessageRole.ASSISTANT:
                raise InvariantViolationError(
                    "roles_alternate", "two consecutive assistant messages",
                )
            if message.tool_results:
                raise InvariantViolationError(
                    "assistant_has_no_results", "assistant message carries tool results",
                )
            return

        # user-side
        if previous.is_user_side:
            raise InvariantViolationError(
                "roles_alternate", "two consecutive user-side messages",
            )
        call_ids = [b.call_id for b in previous.tool_calls]
        result_ids = [b.call_id for b in message.tool_results]
        if call_ids:
            if message.role != MessageRole.TOOL_RESULT:
                raise InvariantViolationError(
                    "tool_calls_answered",
                    f"user message follows unanswered tool call(s) {call_ids}",
                )
            if sorted(call_ids) != sorted(result_ids):  # type: ignore[type-var]
                raise InvariantViolationError(
                    "tool_results_match_calls",
                    f"tool results {result_ids} do not match calls {call_ids}",
                )
        elif result_ids or message.role == MessageRole.TOOL_RESULT:
            raise InvariantViolationError(
                "tool_results_match_calls",
                f"tool result(s) {result_ids} without a preceding tool call",
            )

    # ── trimming ──

    def _turn_spans(self) -> list[tuple[int, int]]:
        """[start, end) index ranges of each turn still sent with requests."""
        spans = []
        i = self.deleted_range[1] if self.deleted_range else 1
        while i < len(self._messages):
            end = min(i + 2, len(self._messages))
            spans.append((i, end))
            i = end
        return spans

    def estimate_tokens(self) -> int:
        return estimate_tokens(self.current_history())

    def trim_to_budget(self, max_tokens: int, keep_recent_turns: int = 4) -> int:
        """Drop the oldest whole turns until the estimate fits max_tokens.

        The first message and the last keep_recent_turns turns are never
        dropped. Returns the number of turns removed; 0 when already
        within budget, so repeated calls are idempotent.
        """
        if self.estimate_tokens() <= max_tokens:
            return 0
        spans = self._turn_spans()
        droppable = max(0, len(spans) - max(0, keep_recent_turns))
        if droppable == 0:
            logger.warning(
                "Task %s: history over budget (%d > %d) but nothing can be trimmed",
                self._task_id[:8], self.estimate_tokens(), max_tokens,
            )
            return 0

        total = self.estimate_tokens()
        drop = 0
        for start, end in spans[:droppable]:
            if total <= max_tokens:
                break
            total -= estimate_tokens(self._messages[start:end])
            drop += 1
        if drop == 0:
            return 0
        self.deleted_range = (1, spans[drop - 1][1])
        self.trimmed_turns += drop
        logger.info(
            "Task %s: trimmed %d turn(s) from history, ~%d tokens remain (budget %d)",
            self._task_id[:8], drop, self.estimate_tokens(), max_tokens,
        )
        return drop

    # ── checkpoints ──

    def to_json(self) -> str:
        return json.dumps([m.to_dict() for m in self._messages], ensure_ascii=False)

    @classmethod
    def from_messages(
        cls,
        task_id: str,
        messages: list[Message],
        storage: Any | None = None,
        deleted_range: tuple[int, int] | list[int] | None = None,
    ) -> ConversationStore:
        """Rebuild a store, re-validating every message in order.

        deleted_range is the trimmed slice recorded at checkpoint time. Its
        end is clamped to the log, since resume may drop a trailing message,
        and never hides a final assistant message. A range that does not
        end on a turn boundary is ignored.
        """
        store = cls(task_id, storage=storage)
        for message in messages:
            store.append(message)
        if deleted_range:
            start, end = deleted_range
            count = len(store._messages)
            end = min(end, count)
            if end == count and count > 1 and store._messages[-1].role == MessageRole.ASSISTANT:
                end -= 1
            if start != 1 or end <= 1 or (end < count and end % 2 == 0):
                logger.warning(
                    "Task %s: ignoring invalid deleted range %s", task_id[:8], list(deleted_range),
                )
            else:
                store.deleted_range = (1, end)
        return store

    @classmethod
    def from_json(cls, task_id: str, data: str, storage: Any | None = None) -> ConversationStore:
        return cls.from_messages(
            task_id, [Message.from_dict(item) for item in json.loads(data)], storage,
        )

    def checkpoint(self, item: HistoryItem) -> None:
        """Persist the full message log; a no-op without storage.

        Trimmed turns are written too; the session records deleted_range
        on the HistoryItem so a resumed store sends the same view. The
        HistoryItem index itself is the host's to keep
        (TaskHost.update_task_history).
        """
        if self._storage is None:
            return
        self._storage.save_messages(self._task_id, self._messages)
        logger.info(
            "Task %s: checkpoint saved (%d messages, status=%s)",
            self._task_id[:8], len(self._messages), item.status,
        )
