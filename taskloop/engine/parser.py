"""Incremental parser for tool-call markup in streamed assistant text.

The model embeds at most one action per turn as XML-style markup:

    <execute_command>
    <command>npm test</command>
    </execute_command>

Text outside a recognized tool tag is narration and is forwarded
verbatim. Parsing state persists across feed() calls, so a tag or a
parameter block may be split at any character boundary.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from .errors import ToolCallParseError
from .models import TOOL_NAMES, VERBATIM_PARAMS, ToolCall

logger = logging.getLogger(__name__)

# A "<" followed by these characters may still become a tag.
_PENDING_TAG = re.compile(r"</?[a-z_]{0,64}")
# Snake-case tags that look like a tool invocation but name no known tool.
_TOOL_LIKE_TAG = re.compile(r"[a-z]+(?:_[a-z]+)+")
_PARAM_TAG = re.compile(r"[a-z][a-z_]*")


class ParseEventKind(str, Enum):
    NARRATION = "narration"
    TOOL_UPDATE = "tool_update"
    TOOL_CALL = "tool_call"
    ERROR = "error"


@dataclass
class ParseEvent:
    kind: ParseEventKind
    text: str = ""
    call: ToolCall | None = None
    error: ToolCallParseError | None = None


class _Mode(str, Enum):
    TEXT = "text"
    TOOL = "tool"
    PARAM = "param"
    UNKNOWN = "unknown"


def _clean_param(name: str, value: str) -> str:
    if name in VERBATIM_PARAMS:
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        return value
    return value.strip()


def _held_suffix(buffer: str, *markers: str) -> int:
    """Length of the longest buffer suffix that could begin a marker."""
    best = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(buffer)), 0, -1):
            if marker.startswith(buffer[-size:]):
                best = max(best, size)
                break
    return best


class ToolCallParser:
    """Turns streamed text fragments into narration and tool calls.

    feed() returns the events produced by one fragment; finish() is
    called once at stream end and reports an unterminated call as a
    recoverable parse error.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._mode = _Mode.TEXT
        self._buffer = ""
        self._call: ToolCall | None = None
        self._param: str | None = None
        self._param_value = ""

    @property
    def active_call(self) -> ToolCall | None:
        return self._call

    def feed(self, fragment: str) -> list[ParseEvent]:
        self._buffer += fragment
        events: list[ParseEvent] = []
        while self._buffer:
            if self._mode == _Mode.TEXT:
                progressed = self._step_text(events)
            elif self._mode == _Mode.TOOL:
                progressed = self._step_tool(events)
            elif self._mode == _Mode.PARAM:
                progressed = self._step_param(events)
            else:
                progressed = self._step_unknown(events)
            if not progressed:
                break
        return events

    def finish(self) -> list[ParseEvent]:
        events: list[ParseEvent] = []
        if self._mode == _Mode.TEXT:
            if self._buffer:
                events.append(ParseEvent(ParseEventKind.NARRATION, text=self._buffer))
        elif self._mode == _Mode.UNKNOWN:
            # Never closed, so it was prose that happened to look like a tag.
            assert self._call is not None
            events.append(ParseEvent(
                ParseEventKind.NARRATION, text=self._call.raw + self._buffer,
            ))
        else:
            assert self._call is not None
            raw = self._call.raw + self._buffer
            error = ToolCallParseError(
                "unterminated",
                self._call.name,
                f"stream ended before </{self._call.name}> was received",
                raw=raw,
            )
            logger.warning("Dropping unterminated tool call %s", self._call.name)
            events.append(ParseEvent(ParseEventKind.ERROR, error=error))
        self.reset()
        return events

    # ── modes ──

    def _step_text(self, events: list[ParseEvent]) -> bool:
        buf = self._buffer
        start = buf.find("<")
        if start == -1:
            events.append(ParseEvent(ParseEventKind.NARRATION, text=buf))
            self._buffer = ""
            return True
        if start > 0:
            events.append(ParseEvent(ParseEventKind.NARRATION, text=buf[:start]))
            self._buffer = buf = buf[start:]
        end = buf.find(">")
        if end == -1:
            if _PENDING_TAG.fullmatch(buf):
                return False
            return self._emit_literal_lt(events)
        tag = buf[1:end]
        if tag in TOOL_NAMES or _TOOL_LIKE_TAG.fullmatch(tag):
            self._call = ToolCall(name=tag, raw=buf[:end + 1])
            self._buffer = buf[end + 1:]
            if tag in TOOL_NAMES:
                self._mode = _Mode.TOOL
                logger.debug("Tool call started: %s", tag)
                events.append(ParseEvent(ParseEventKind.TOOL_UPDATE, call=self._call))
            else:
                self._mode = _Mode.UNKNOWN
            return True
        return self._emit_literal_lt(events)

    def _emit_literal_lt(self, events: list[ParseEvent]) -> bool:
        events.append(ParseEvent(ParseEventKind.NARRATION, text="<"))
        self._buffer = self._buffer[1:]
        return True

    def _step_tool(self, events: list[ParseEvent]) -> bool:
        call = self._call
        assert call is not None
        buf = self._buffer
        start = buf.find("<")
        if start == -1:
            call.raw += buf
            self._buffer = ""
            return True
        call.raw += buf[:start]
        buf = buf[start:]
        end = buf.find(">")
        if end == -1:
            self._buffer = buf
            if _PENDING_TAG.fullmatch(buf):
                return False
            call.raw += "<"
            self._buffer = buf[1:]
            return True
        tag = buf[1:end]
        call.raw += buf[:end + 1]
        self._buffer = buf[end + 1:]
        if tag == "/" + call.name:
            self._finalize(events)
        elif _PARAM_TAG.fullmatch(tag):
            self._mode = _Mode.PARAM
            self._param = tag
            self._param_value = ""
        return True

    def _step_param(self, events: list[ParseEvent]) -> bool:
        call = self._call
        param = self._param
        assert call is not None and param is not None
        buf = self._buffer
        close = f"</{param}>"
        tool_close = f"</{call.name}>"
        at_close = buf.find(close)
        at_tool_close = buf.find(tool_close)
        if at_close == -1 and at_tool_close == -1:
            keep = _held_suffix(buf, close, tool_close)
            consumed = buf[:len(buf) - keep]
            if not consumed:
                return False
            self._param_value += consumed
            call.raw += consumed
            self._buffer = buf[len(consumed):]
            call.params[param] = _clean_param(param, self._param_value).rstrip("\n")
            events.append(ParseEvent(ParseEventKind.TOOL_UPDATE, call=call))
            return False
        if at_close != -1 and (at_tool_close == -1 or at_close < at_tool_close):
            self._param_value += buf[:at_close]
            call.raw += buf[:at_close + len(close)]
            self._buffer = buf[at_close + len(close):]
            call.params[param] = _clean_param(param, self._param_value)
            self._mode = _Mode.TOOL
            self._param = None
            events.append(ParseEvent(ParseEventKind.TOOL_UPDATE, call=call))
            return True
        # Tool closed without closing the parameter: close both.
        self._param_value += buf[:at_tool_close]
        call.raw += buf[:at_tool_close + len(tool_close)]
        self._buffer = buf[at_tool_close + len(tool_close):]
        call.params[param] = _clean_param(param, self._param_value)
        self._param = None
        self._finalize(events)
        return True

    def _step_unknown(self, events: list[ParseEvent]) -> bool:
        call = self._call
        assert call is not None
        buf = self._buffer
        start = buf.find("<")
        if start == -1:
            call.raw += buf
            self._buffer = ""
            return True
        call.raw += buf[:start]
        buf = buf[start:]
        end = buf.find(">")
        if end == -1:
            self._buffer = buf
            if _PENDING_TAG.fullmatch(buf):
                return False
            call.raw += "<"
            self._buffer = buf[1:]
            return True
        tag = buf[1:end]
        if tag in TOOL_NAMES:
            # A real tool starts here; what came before was prose.
            events.append(ParseEvent(ParseEventKind.NARRATION, text=call.raw))
            self._call = None
            self._mode = _Mode.TEXT
            self._buffer = buf
            return True
        call.raw += buf[:end + 1]
        self._buffer = buf[end + 1:]
        if tag == "/" + call.name:
            error = ToolCallParseError(
                "unknown_tool",
                call.name,
                f"'{call.name}' is not a recognized tool",
                raw=call.raw,
            )
            logger.warning("Dropping call to unknown tool %s", call.name)
            events.append(ParseEvent(ParseEventKind.ERROR, error=error))
            self._call = None
            self._mode = _Mode.TEXT
        return True

    def _finalize(self, events: list[ParseEvent]) -> None:
        call = self._call
        assert call is not None
        call.partial = False
        logger.debug("Tool call finalized: %s params=%s", call.name, sorted(call.params))
        events.append(ParseEvent(ParseEventKind.TOOL_CALL, call=call))
        self._call = None
        self._param = None
        self._param_value = ""
        self._mode = _Mode.TEXT
