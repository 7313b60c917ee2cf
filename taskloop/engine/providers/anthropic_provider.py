"""Anthropic Messages API client on the official anthropic SDK.

Streams responses with AsyncAnthropic.messages.stream() and maps the
stream events onto ApiChunk:

    message_start         -> input / cache usage (held)
    content_block_delta   -> TEXT_DELTA
    message_delta         -> output usage, stop reason (held)
    message_stop          -> USAGE, END_OF_TURN

APIStatusError and APIConnectionError become TransportError. The SDK's
own retries are off; TaskSession owns retry and backoff.

Tool calls travel as markup text in both directions, so the
conversation is rendered as plain text and image content only.

Auth: reads the key from the environment variable named by api_key_env
(ANTHROPIC_API_KEY by default).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator

import anthropic

from ..errors import TransportError
from ..models import BlockType, ContentBlock, Message, MessageRole
from .base import ApiChunk, ApiClient, ChunkKind

logger = logging.getLogger(__name__)

_NON_RETRIABLE_STATUS = frozenset({400, 401, 403, 404, 413})


def render_tool_call(block: ContentBlock) -> str:
    """Markup for a stored tool call, in the form the model emits it."""
    name = block.tool_name or "tool"
    lines = [f"<{name}>"]
    for key, value in block.params.items():
        lines.append(f"<{key}>{value}</{key}>")
    lines.append(f"</{name}>")
    return "\n".join(lines)


def _image_content(ref: str) -> dict[str, Any]:
    # data:<media_type>;base64,<payload>
    if ref.startswith("data:") and ";base64," in ref:
        header, data = ref[5:].split(";base64,", 1)
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": header or "image/png", "data": data},
        }
    return {"type": "text", "text": f"[image: {ref}]"}


def _render_block(block: ContentBlock) -> dict[str, Any] | None:
    if block.block_type == BlockType.IMAGE:
        return _image_content(block.image_ref or "")
    if block.block_type == BlockType.TOOL_CALL:
        text = render_tool_call(block)
    elif block.block_type == BlockType.TOOL_RESULT:
        text = f"[{block.tool_name or 'tool'}] Result:\n{block.text or '(no output)'}"
    else:
        text = block.text
    if not text:
        return None
    return {"type": "text", "text": text}


def render_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to the API's alternating user/assistant form."""
    rendered: list[dict[str, Any]] = []
    for message in messages:
        role = "assistant" if message.role == MessageRole.ASSISTANT else "user"
        content = [c for c in (_render_block(b) for b in message.blocks) if c is not None]
        if not content:
            content = [{"type": "text", "text": "(empty)"}]
        if rendered and rendered[-1]["role"] == role:
            rendered[-1]["content"].extend(content)
        else:
            rendered.append({"role": role, "content": content})
    return rendered


@dataclass
class _Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    stop_reason: str | None = None


def _int(obj: Any, name: str) -> int:
    return int(getattr(obj, name, None) or 0)


class StreamTranslator:
    """Maps SDK stream events onto ApiChunks for one response.

    Events are read by attribute, so the raw event models and the
    higher-level MessageStream events are handled alike; event types
    without a mapping (text, content_block_stop, ...) are ignored.
    """

    def __init__(self) -> None:
        self.usage = _Usage()
        self.finished = False

    def translate(self, event: Any) -> list[ApiChunk]:
        kind = getattr(event, "type", None)
        if kind == "message_start":
            usage = getattr(getattr(event, "message", None), "usage", None)
            self.usage.input_tokens += _int(usage, "input_tokens")
            self.usage.output_tokens += _int(usage, "output_tokens")
            self.usage.cache_write_tokens += _int(usage, "cache_creation_input_tokens")
            self.usage.cache_read_tokens += _int(usage, "cache_read_input_tokens")
            return []
        if kind == "content_block_start":
            block = getattr(event, "content_block", None)
            text = getattr(block, "text", None)
            if getattr(block, "type", None) == "text" and text:
                return [ApiChunk.text_delta(text)]
            return []
        if kind == "content_block_delta":
            delta = getattr(event, "delta", None)
            text = getattr(delta, "text", None)
            if getattr(delta, "type", None) == "text_delta" and text:
                return [ApiChunk.text_delta(text)]
            return []
        if kind == "message_delta":
            self.usage.output_tokens = max(
                self.usage.output_tokens, _int(getattr(event, "usage", None), "output_tokens"),
            )
            self.usage.stop_reason = getattr(getattr(event, "delta", None), "stop_reason", None)
            return []
        if kind == "message_stop":
            self.finished = True
            return [
                ApiChunk(
                    ChunkKind.USAGE,
                    input_tokens=self.usage.input_tokens,
                    output_tokens=self.usage.output_tokens,
                    cache_write_tokens=self.usage.cache_write_tokens,
                    cache_read_tokens=self.usage.cache_read_tokens,
                ),
                ApiChunk.end_of_turn(self.usage.stop_reason),
            ]
        return []


class AnthropicProvider(ApiClient):
    """ApiClient backed by the Anthropic Messages API (streaming).

    One AsyncAnthropic client is created lazily and reused across
    requests; call shutdown() to close it. A ready client can be passed
    in instead.
    """

    def __init__(
        self,
        model_id: str = "claude-3-5-sonnet-20241022",
        *,
        api_key_env: str = "ANTHROPIC_API_KEY",
        base_url: str = "https://api.anthropic.com",
        max_output_tokens: int = 8192,
        request_timeout_seconds: float = 600.0,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._model_id = model_id
        self._api_key_env = api_key_env
        self._base_url = base_url.rstrip("/")
        self._max_output_tokens = max_output_tokens
        self._timeout = request_timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def model_id(self) -> str:
        return self._model_id

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            key = os.environ.get(self._api_key_env)
            if not key:
                raise TransportError(
                    f"environment variable {self._api_key_env} is not set", retriable=False,
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    def build_request(self, system_prompt: str, messages: list[Message]) -> dict[str, Any]:
        return {
            "model": self._model_id,
            "max_tokens": self._max_output_tokens,
            "system": system_prompt,
            "messages": render_messages(messages),
        }

    async def send(
        self,
        system_prompt: str,
        messages: list[Message],
    ) -> AsyncIterator[ApiChunk]:
        client = self._get_client()
        request = self.build_request(system_prompt, messages)
        translator = StreamTranslator()
        logger.debug(
            "AnthropicProvider: stream model=%s messages=%d",
            self._model_id, len(request["messages"]),
        )
        try:
            async with client.messages.stream(**request) as stream:
                async for event in stream:
                    for chunk in translator.translate(event):
                        yield chunk
                    if translator.finished:
                        return
        except anthropic.APIStatusError as exc:
            logger.warning("AnthropicProvider: HTTP %d: %s", exc.status_code, exc.message)
            raise TransportError(
                _error_message(exc),
                retriable=exc.status_code not in _NON_RETRIABLE_STATUS,
                status=exc.status_code,
            ) from exc
        except anthropic.APIConnectionError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        raise TransportError("stream ended before message_stop")

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


def _error_message(exc: anthropic.APIStatusError) -> str:
    """'<error type>: <message>' from the error body, else the SDK message."""
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"{error.get('type', 'error')}: {error['message']}"
    return str(exc.message).strip()[:500] or "empty response"
