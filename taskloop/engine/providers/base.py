"""Abstract base for model API clients.

An ApiClient turns (system prompt, conversation) into a lazy, ordered
sequence of ApiChunk values. The session consumes the sequence with
`async for` and closes it early (aclose) once it has what it needs;
closing must stop further chunk delivery.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from ..models import Message

logger = logging.getLogger(__name__)


class ChunkKind(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL_DELTA = "tool_call_delta"
    USAGE = "usage"
    END_OF_TURN = "end_of_turn"


@dataclass
class ApiChunk:
    """One streamed unit of a model response.

    text is set for TEXT_DELTA and TOOL_CALL_DELTA (tool markup is
    delivered as text and parsed by ToolCallParser); the token fields
    and optional cost are set for USAGE.
    """
    kind: ChunkKind
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float | None = None
    stop_reason: str | None = None

    @classmethod
    def text_delta(cls, text: str) -> ApiChunk:
        return cls(ChunkKind.TEXT_DELTA, text=text)

    @classmethod
    def end_of_turn(cls, stop_reason: str | None = None) -> ApiChunk:
        return cls(ChunkKind.END_OF_TURN, stop_reason=stop_reason)


class ApiClient(abc.ABC):
    """Abstract model transport.

    Implementations:
    - AnthropicProvider: Anthropic Messages API via the anthropic SDK
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short client name (e.g. 'anthropic')."""

    @property
    @abc.abstractmethod
    def model_id(self) -> str:
        """Model identifier sent with each request."""

    @abc.abstractmethod
    def send(
        self,
        system_prompt: str,
        messages: list[Message],
    ) -> AsyncIterator[ApiChunk]:
        """Stream one assistant response for the given conversation.

        Raises TransportError (from the first __anext__ onward) when
        the request fails; retriable=False marks errors that will not
        succeed on retry (bad request, auth).
        """

    async def shutdown(self) -> None:
        """Release connections. Default no-op."""
        return None
