"""Core data models for the task orchestration engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskPhase(str, Enum):
    """Session lifecycle phases. See lifecycle.py for transition rules."""
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    STREAMING_RESPONSE = "streaming_response"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOL = "executing_tool"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskPhase.COMPLETED, TaskPhase.ABORTED, TaskPhase.FAILED)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


class BlockType(str, Enum):
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    IMAGE = "image"


class ToolName(str, Enum):
    """Tools the model may invoke."""
    EXECUTE_COMMAND = "execute_command"
    READ_FILE = "read_file"
    WRITE_TO_FILE = "write_to_file"
    APPLY_DIFF = "apply_diff"
    LIST_FILES = "list_files"
    SEARCH_FILES = "search_files"
    BROWSER_ACTION = "browser_action"
    USE_MCP_TOOL = "use_mcp_tool"
    ACCESS_MCP_RESOURCE = "access_mcp_resource"
    ASK_FOLLOWUP_QUESTION = "ask_followup_question"
    ATTEMPT_COMPLETION = "attempt_completion"


TOOL_NAMES: frozenset[str] = frozenset(t.value for t in ToolName)


class ToolCategory(str, Enum):
    """Approval categories, one "always allow" toggle each."""
    READ_ONLY = "read_only"
    WRITE = "write"
    EXECUTE = "execute"
    BROWSER = "browser"
    MCP = "mcp"
    INTERACTION = "interaction"


TOOL_CATEGORIES: dict[ToolName, ToolCategory] = {
    ToolName.EXECUTE_COMMAND: ToolCategory.EXECUTE,
    ToolName.READ_FILE: ToolCategory.READ_ONLY,
    ToolName.LIST_FILES: ToolCategory.READ_ONLY,
    ToolName.SEARCH_FILES: ToolCategory.READ_ONLY,
    ToolName.WRITE_TO_FILE: ToolCategory.WRITE,
    ToolName.APPLY_DIFF: ToolCategory.WRITE,
    ToolName.BROWSER_ACTION: ToolCategory.BROWSER,
    ToolName.USE_MCP_TOOL: ToolCategory.MCP,
    ToolName.ACCESS_MCP_RESOURCE: ToolCategory.MCP,
    ToolName.ASK_FOLLOWUP_QUESTION: ToolCategory.INTERACTION,
    ToolName.ATTEMPT_COMPLETION: ToolCategory.INTERACTION,
}

# Required parameters per tool; optional ones are accepted but not enforced.
TOOL_REQUIRED_PARAMS: dict[ToolName, tuple[str, ...]] = {
    ToolName.EXECUTE_COMMAND: ("command",),
    ToolName.READ_FILE: ("path",),
    ToolName.WRITE_TO_FILE: ("path", "content"),
    ToolName.APPLY_DIFF: ("path", "diff"),
    ToolName.LIST_FILES: ("path",),
    ToolName.SEARCH_FILES: ("path", "regex"),
    ToolName.BROWSER_ACTION: ("action",),
    ToolName.USE_MCP_TOOL: ("server_name", "tool_name"),
    ToolName.ACCESS_MCP_RESOURCE: ("server_name", "uri"),
    ToolName.ASK_FOLLOWUP_QUESTION: ("question",),
    ToolName.ATTEMPT_COMPLETION: ("result",),
}

TOOL_PARAM_NAMES: frozenset[str] = frozenset({
    "command", "path", "content", "diff", "regex", "file_pattern",
    "recursive", "action", "url", "coordinate", "text", "server_name",
    "tool_name", "arguments", "uri", "question", "result",
})

# Parameters whose values keep interior whitespace verbatim.
VERBATIM_PARAMS: frozenset[str] = frozenset({"content", "diff"})


def _make_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ContentBlock:
    """One block inside a Message.

    Only the fields relevant to block_type are populated.
    """
    block_type: BlockType
    text: str = ""
    call_id: str | None = None
    tool_name: str | None = None
    params: dict[str, str] = field(default_factory=dict)
    is_error: bool = False
    image_ref: str | None = None
    # Structured tool outcome kept with the checkpoint; never sent to the model.
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.block_type.value}
        if self.text:
            d["text"] = self.text
        if self.call_id:
            d["call_id"] = self.call_id
        if self.tool_name:
            d["tool_name"] = self.tool_name
        if self.params:
            d["params"] = dict(self.params)
        if self.is_error:
            d["is_error"] = True
        if self.image_ref:
            d["image_ref"] = self.image_ref
        if self.payload:
            d["payload"] = dict(self.payload)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentBlock:
        return cls(
            block_type=BlockType(data["type"]),
            text=str(data.get("text", "")),
            call_id=data.get("call_id"),
            tool_name=data.get("tool_name"),
            params={str(k): str(v) for k, v in (data.get("params") or {}).items()},
            is_error=bool(data.get("is_error", False)),
            image_ref=data.get("image_ref"),
            payload=dict(data.get("payload") or {}),
        )


def text_block(text: str) -> ContentBlock:
    return ContentBlock(BlockType.TEXT, text=text)


def image_block(image_ref: str) -> ContentBlock:
    return ContentBlock(BlockType.IMAGE, image_ref=image_ref)


@dataclass
class Message:
    """One conversation turn. Owned by ConversationStore."""
    role: MessageRole
    blocks: list[ContentBlock] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def tool_calls(self) -> list[ContentBlock]:
        return [b for b in self.blocks if b.block_type == BlockType.TOOL_CALL]

    @property
    def tool_results(self) -> list[ContentBlock]:
        return [b for b in self.blocks if b.block_type == BlockType.TOOL_RESULT]

    @property
    def text(self) -> str:
        return "\n\n".join(
            b.text for b in self.blocks if b.block_type == BlockType.TEXT and b.text
        )

    @property
    def is_user_side(self) -> bool:
        return self.role in (MessageRole.USER, MessageRole.TOOL_RESULT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "blocks": [b.to_dict() for b in self.blocks],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=MessageRole(data["role"]),
            blocks=[ContentBlock.from_dict(b) for b in data.get("blocks", [])],
            timestamp=float(data.get("timestamp", time.time())),
        )


@dataclass
class ToolCall:
    """A structured action request extracted from assistant output.

    name may be any string while parsing; is_known tells whether it is
    one of ToolName.
    """
    name: str
    params: dict[str, str] = field(default_factory=dict)
    raw: str = ""
    partial: bool = True
    call_id: str = field(default_factory=lambda: "call_" + uuid.uuid4().hex[:12])

    @property
    def is_known(self) -> bool:
        return self.name in TOOL_NAMES

    @property
    def tool(self) -> ToolName:
        return ToolName(self.name)

    @property
    def category(self) -> ToolCategory:
        return TOOL_CATEGORIES[self.tool]

    def missing_params(self) -> list[str]:
        if not self.is_known:
            return []
        return [
            p for p in TOOL_REQUIRED_PARAMS[self.tool]
            if not str(self.params.get(p, "")).strip()
        ]

    def signature(self) -> str:
        """Stable identity of name + parameters for repeat detection."""
        return json.dumps([self.name, sorted(self.params.items())])

    def to_block(self) -> ContentBlock:
        return ContentBlock(
            BlockType.TOOL_CALL,
            call_id=self.call_id,
            tool_name=self.name,
            params=dict(self.params),
        )

    def with_params(self, overrides: dict[str, str]) -> ToolCall:
        """Copy of this call with parameters replaced by user edits."""
        merged = dict(self.params)
        merged.update(overrides)
        return ToolCall(
            name=self.name,
            params=merged,
            raw=self.raw,
            partial=False,
            call_id=self.call_id,
        )


@dataclass
class Observation:
    """Outcome of executing a ToolCall, fed back as a tool-result."""
    success: bool
    text: str
    payload: dict[str, Any] = field(default_factory=dict)
    user_edits: str | None = None
    images: list[str] = field(default_factory=list)
    completes_task: bool = False

    def to_block(self, call: ToolCall) -> ContentBlock:
        return ContentBlock(
            BlockType.TOOL_RESULT,
            text=self.text,
            call_id=call.call_id,
            tool_name=call.name,
            is_error=not self.success,
            payload=dict(self.payload),
        )


class ApprovalDecision(str, Enum):
    AUTO_APPROVED = "auto_approved"
    USER_APPROVED = "user_approved"
    USER_DENIED = "user_denied"
    NEEDS_USER_INPUT = "needs_user_input"

    @property
    def allows_execution(self) -> bool:
        return self in (ApprovalDecision.AUTO_APPROVED, ApprovalDecision.USER_APPROVED)


@dataclass
class HostSettings:
    """Settings snapshot returned by TaskHost.get_state()."""
    always_allow_read_only: bool = False
    always_allow_write: bool = False
    always_allow_execute: bool = False
    always_allow_browser: bool = False
    always_allow_mcp: bool = False
    allowed_commands: list[str] = field(default_factory=list)
    denied_commands: list[str] = field(default_factory=list)
    custom_instructions: str | None = None
    preferred_language: str = "English"
    terminal_output_line_limit: int = 500
    fuzzy_match_threshold: float = 1.0
    diff_enabled: bool = True
    mcp_enabled: bool = False
    always_approve_resubmit: bool = True
    # Base delay before an automatic API retry; 0 uses EngineConfig backoff.
    request_delay_seconds: float = 0.0
    browser_viewport_size: str = "900x600"
    screenshot_quality: int = 75


@dataclass(frozen=True)
class ApprovalPolicy:
    """Per-category auto-approval flags plus command prefix lists.

    Captured from HostSettings at the start of each decision.
    """
    always_allow_read_only: bool = False
    always_allow_write: bool = False
    always_allow_execute: bool = False
    always_allow_browser: bool = False
    always_allow_mcp: bool = False
    allowed_commands: tuple[str, ...] = ()
    denied_commands: tuple[str, ...] = ()

    @classmethod
    def from_settings(
        cls,
        settings: HostSettings,
        *,
        extra_allowed: list[str] | None = None,
        extra_denied: list[str] | None = None,
    ) -> ApprovalPolicy:
        return cls(
            always_allow_read_only=settings.always_allow_read_only,
            always_allow_write=settings.always_allow_write,
            always_allow_execute=settings.always_allow_execute,
            always_allow_browser=settings.always_allow_browser,
            always_allow_mcp=settings.always_allow_mcp,
            allowed_commands=tuple(list(settings.allowed_commands) + list(extra_allowed or [])),
            denied_commands=tuple(list(settings.denied_commands) + list(extra_denied or [])),
        )

    def allows_category(self, category: ToolCategory) -> bool:
        return {
            ToolCategory.READ_ONLY: self.always_allow_read_only,
            ToolCategory.WRITE: self.always_allow_write,
            ToolCategory.EXECUTE: self.always_allow_execute,
            ToolCategory.BROWSER: self.always_allow_browser,
            ToolCategory.MCP: self.always_allow_mcp,
            ToolCategory.INTERACTION: True,
        }[category]


@dataclass
class AskResponse:
    """An external caller's answer to a suspended ask.

    kind: "yes" (approve), "no" (deny) or "message" (free text answer).
    text carries optional feedback; edited_params replaces tool
    parameters on approve-with-edits.
    """
    kind: str
    text: str = ""
    edited_params: dict[str, str] | None = None
    images: list[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.kind == "yes"


def _deleted_range(value: Any) -> tuple[int, int] | None:
    if not value:
        return None
    start, end = value
    return int(start), int(end)


@dataclass
class HistoryItem:
    """Persisted summary of one task."""
    id: str
    ts: float
    task: str
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0
    cwd: str = "."
    status: str = TaskPhase.IDLE.value
    # [1, end) slice of the message log left out of requests after trimming
    conversation_history_deleted_range: tuple[int, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "ts": self.ts,
            "task": self.task,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cache_writes": self.cache_writes,
            "cache_reads": self.cache_reads,
            "total_cost": self.total_cost,
            "cwd": self.cwd,
            "status": self.status,
        }
        if self.conversation_history_deleted_range is not None:
            data["conversation_history_deleted_range"] = list(self.conversation_history_deleted_range)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryItem:
        return cls(
            id=str(data["id"]),
            ts=float(data.get("ts", 0.0)),
            task=str(data.get("task", "")),
            tokens_in=int(data.get("tokens_in", 0)),
            tokens_out=int(data.get("tokens_out", 0)),
            cache_writes=int(data.get("cache_writes", 0)),
            cache_reads=int(data.get("cache_reads", 0)),
            total_cost=float(data.get("total_cost", 0.0)),
            cwd=str(data.get("cwd", ".")),
            status=str(data.get("status", TaskPhase.IDLE.value)),
            conversation_history_deleted_range=_deleted_range(
                data.get("conversation_history_deleted_range"),
            ),
        )


@dataclass
class StoredTask:
    """What TaskHost.get_task_with_id() hands back for resumption."""
    history_item: HistoryItem
    messages: list[Message]
    task_dir: str = ""


@dataclass
class TaskState:
    """The session's lifecycle record. Owned by TaskSession."""
    task_id: str = field(default_factory=_make_id)
    task: str = ""
    cwd: str = "."
    phase: TaskPhase = TaskPhase.IDLE
    policy: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    started_at: float = field(default_factory=time.time)
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    total_cost: float = 0.0
    consecutive_mistakes: int = 0
    result: str | None = None
    error: str | None = None

    def to_history_item(self) -> HistoryItem:
        return HistoryItem(
            id=self.task_id,
            ts=time.time(),
            task=self.task,
            tokens_in=self.tokens_in,
            tokens_out=self.tokens_out,
            cache_writes=self.cache_writes,
            cache_reads=self.cache_reads,
            total_cost=self.total_cost,
            cwd=self.cwd,
            status=self.phase.value,
        )

    @classmethod
    def from_history_item(cls, item: HistoryItem) -> TaskState:
        return cls(
            task_id=item.id,
            task=item.task,
            cwd=item.cwd,
            tokens_in=item.tokens_in,
            tokens_out=item.tokens_out,
            cache_writes=item.cache_writes,
            cache_reads=item.cache_reads,
            total_cost=item.total_cost,
        )
