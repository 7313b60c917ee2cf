"""TaskSession: the control loop for one task.

    Idle -> AwaitingModel -> StreamingResponse -> AwaitingApproval
         -> ExecutingTool -> AwaitingModel ... -> Completed | Aborted | Failed

Each turn: request a response for the current history, feed the stream
through ToolCallParser, gate the first finalized tool call through
ApprovalGate (asking the user when needed), run it through ToolExecutor,
and append the observation as the user-side reply. A checkpoint is
written after every completed turn.

The session is the single writer of its ConversationStore and TaskState.
External callers interact through abort() and handle_ask_response().
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import responses
from .approval import ApprovalGate, decision_from_response
from .cancellation import CancellationToken
from .capabilities import Capabilities
from .config import EngineConfig, EventCallback, fire_event
from .conversation_store import ConversationStore
from .errors import (
    InvariantViolationError,
    TaskAbortedError,
    ToolCallParseError,
    TransportError,
)
from .executor import EditPreview, ToolExecutor
from .lifecycle import validate_transition
from .mentions import parse_mentions
from .models import (
    ApprovalDecision,
    ApprovalPolicy,
    AskResponse,
    BlockType,
    ContentBlock,
    HostSettings,
    Message,
    MessageRole,
    Observation,
    TaskPhase,
    TaskState,
    ToolCall,
    ToolName,
    image_block,
    text_block,
)
from .parser import ParseEventKind, ToolCallParser
from .prompts import available_tools, build_system_prompt, format_environment_details
from .providers.base import ApiClient, ChunkKind

from taskloop.shared.services.command_policy_store import CommandPolicyStore
from taskloop.shared.services.task_storage import TaskStorage

logger = logging.getLogger(__name__)

_ENV_DETAILS_PREFIX = "<environment_details>"


class RepeatedCallGuard:
    """Detects the same tool call (name and parameters) issued in a row.

    check() returns (allowed, repeat_count); the call that would reach
    max_repeats consecutive issues is refused.
    """

    def __init__(self, max_repeats: int = 3) -> None:
        self._max_repeats = max_repeats
        self._last_signature: str | None = None
        self._repeat_count: int = 0

    def check(self, call: ToolCall) -> tuple[bool, int]:
        signature = call.signature()
        if signature == self._last_signature:
            self._repeat_count += 1
        else:
            self._last_signature = signature
            self._repeat_count = 1
        return self._repeat_count < self._max_repeats, self._repeat_count

    def reset(self) -> None:
        self._last_signature = None
        self._repeat_count = 0


@dataclass
class _StreamOutcome:
    narration: str = ""
    call: ToolCall | None = None
    parse_errors: list[ToolCallParseError] = field(default_factory=list)
    dropped_raw: list[str] = field(default_factory=list)
    cut_short: bool = False


class TaskSession:
    """Runs one task until it completes, is aborted or fails."""

    def __init__(
        self,
        capabilities: Capabilities,
        api_client: ApiClient,
        *,
        config: EngineConfig | None = None,
        cwd: str | None = None,
        event_callback: EventCallback | None = None,
        policy_store: CommandPolicyStore | None = None,
        task_id: str | None = None,
    ) -> None:
        self._caps = capabilities
        self._api = api_client
        self._config = config or EngineConfig()
        self._cwd = cwd or capabilities.platform.get_working_directory()
        self._event_callback = event_callback
        self._policy_store = policy_store or CommandPolicyStore(self._cwd)

        self.state = TaskState(cwd=self._cwd)
        if task_id:
            self.state.task_id = task_id
        self._token = CancellationToken(self.state.task_id)
        self._gate = ApprovalGate(self._cwd)
        self._settings = HostSettings()
        self._executor = ToolExecutor(
            capabilities,
            self._token,
            cwd=self._cwd,
            config=self._config,
            ask_user=self.ask,
        )
        self._repeat_guard = RepeatedCallGuard(self._config.identical_call_limit)
        self.store = ConversationStore(self.state.task_id)
        self._pending_ask: asyncio.Future[AskResponse] | None = None
        self._pending_blocks: list[ContentBlock] = []
        self._tools: list[ToolName] = list(ToolName)
        self._requests_sent = 0

    # ── public surface ──

    @property
    def task_id(self) -> str:
        return self.state.task_id

    @property
    def phase(self) -> TaskPhase:
        return self.state.phase

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def awaiting_answer(self) -> bool:
        return self._pending_ask is not None and not self._pending_ask.done()

    async def start(self, task: str, images: list[str] | None = None) -> TaskState:
        """Start a fresh task and run it to a terminal phase."""
        self.state.task = task
        self.state.started_at = time.time()
        self._attach_storage()
        logger.info("Task %s starting in %s", self.task_id[:8], self._cwd)
        self._settings = await self._caps.host.get_state()
        self._executor.settings = self._settings
        await self._say("task", task)
        try:
            text = await parse_mentions(task, self._cwd, self._caps.url_fetcher)
            self._pending_blocks = [text_block(f"<task>\n{text}\n</task>")]
            self._pending_blocks += [image_block(ref) for ref in images or []]
            await self._transition(TaskPhase.AWAITING_MODEL)
            await self._commit_user_message()
            await self._checkpoint()
        except TaskAbortedError:
            await self._finish_aborted()
            return self.state
        return await self._run()

    async def resume(self, task_id: str) -> TaskState:
        """Reload a checkpointed task and continue it.

        No tool call from the stored history is executed again: a call
        left unanswered is answered with an "interrupted" result.
        """
        stored = await self._caps.host.get_task_with_id(task_id)
        item = stored.history_item
        await self._caps.host.init_task_with_history_item(item)

        self.state = TaskState.from_history_item(item)
        self.state.cwd = self._cwd
        self._token = CancellationToken(self.state.task_id)
        self._executor = ToolExecutor(
            self._caps, self._token, cwd=self._cwd, config=self._config, ask_user=self.ask,
        )
        self._gate = ApprovalGate(self._cwd)
        self._repeat_guard.reset()
        self._settings = await self._caps.host.get_state()
        self._executor.settings = self._settings

        messages = list(stored.messages)
        carried: list[ContentBlock] = []
        if messages and messages[-1].is_user_side:
            carried = [
                b for b in messages.pop().blocks
                if not (b.block_type == BlockType.TEXT and b.text.startswith(_ENV_DETAILS_PREFIX))
            ]
        self.store = ConversationStore.from_messages(
            self.task_id, messages,
            deleted_range=item.conversation_history_deleted_range,
        )
        self._attach_storage()

        last = self.store.last
        if last is not None and last.role == MessageRole.ASSISTANT and last.tool_calls:
            answered = {b.call_id for b in carried if b.block_type == BlockType.TOOL_RESULT}
            for call_block in last.tool_calls:
                if call_block.call_id not in answered:
                    carried.insert(0, ContentBlock(
                        BlockType.TOOL_RESULT,
                        text=responses.interrupted_tool(call_block.tool_name or "tool"),
                        call_id=call_block.call_id,
                        tool_name=call_block.tool_name,
                        is_error=True,
                    ))

        elapsed = responses.format_elapsed(time.time() - item.ts)
        carried.append(text_block(responses.task_resumption(
            elapsed, self._cwd, item.status == TaskPhase.COMPLETED.value,
        )))
        self._pending_blocks = carried
        logger.info(
            "Task %s resumed: %d messages restored, last status=%s",
            self.task_id[:8], len(self.store), item.status,
        )
        await self._say("resume", f"Resuming task {self.task_id}")
        try:
            await self._transition(TaskPhase.AWAITING_MODEL)
            await self._commit_user_message()
            await self._checkpoint()
        except TaskAbortedError:
            await self._finish_aborted()
            return self.state
        return await self._run()

    def abort(self, reason: str = "aborted by user") -> None:
        """Signal cancellation; the loop unwinds to Aborted."""
        if self.state.phase.is_terminal:
            return
        logger.info("Task %s abort requested: %s", self.task_id[:8], reason)
        self._token.cancel(reason)

    def handle_ask_response(self, response: AskResponse) -> bool:
        """Deliver an external answer to the suspended ask, if any."""
        future = self._pending_ask
        if future is None or future.done():
            logger.warning("Task %s: ask response with no pending ask ignored", self.task_id[:8])
            return False
        future.set_result(response)
        return True

    async def ask(self, kind: str, text: str, call: ToolCall | None = None) -> AskResponse:
        """Post an ask and suspend until handle_ask_response() answers it."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[AskResponse] = loop.create_future()
        self._pending_ask = future
        message: dict[str, Any] = {"type": "ask", "ask": kind, "text": text, "task_id": self.task_id}
        if call is not None:
            message["tool"] = {"name": call.name, "params": dict(call.params)}
        try:
            await self._post(message)
            timeout = self._config.user_question_timeout_seconds
            waiter = future if timeout <= 0 else asyncio.wait_for(future, timeout)
            try:
                return await self._token.guard(waiter)
            except asyncio.TimeoutError:
                logger.warning("Task %s: no answer to %s ask within %.0fs", self.task_id[:8], kind, timeout)
                return AskResponse(kind="no", text="The user did not respond in time.")
        finally:
            self._pending_ask = None

    # ── loop ──

    async def _run(self) -> TaskState:
        try:
            while not self.state.phase.is_terminal:
                await self._run_turn()
        except TaskAbortedError:
            await self._finish_aborted()
        except InvariantViolationError as exc:
            logger.error("Task %s failed: %s", self.task_id[:8], exc)
            await self._finish_failed(str(exc))
        except Exception as exc:
            logger.exception("Task %s crashed", self.task_id[:8])
            await self._finish_failed(f"{type(exc).__name__}: {exc}")
        finally:
            await self._cleanup()
        logger.info(
            "Task %s finished: phase=%s tokens_in=%d tokens_out=%d cost=$%.4f",
            self.task_id[:8], self.state.phase.value,
            self.state.tokens_in, self.state.tokens_out, self.state.total_cost,
        )
        return self.state

    async def _run_turn(self) -> None:
        self._settings = await self._caps.host.get_state()
        self._executor.settings = self._settings
        system_prompt = self._system_prompt()

        dropped = self.store.trim_to_budget(
            self._config.history_token_budget, self._config.keep_recent_turns,
        )
        if dropped:
            await self._say("context_trimmed", f"Dropped {dropped} earlier turn(s) to fit the context window")

        outcome = await self._request_with_retry(system_prompt)
        if outcome is None:
            return  # failed, already finalized

        if outcome.call is None:
            await self._handle_no_tool(outcome)
            return

        call = outcome.call
        blocks = []
        if outcome.narration:
            blocks.append(text_block(outcome.narration))
        blocks.append(call.to_block())
        if outcome.cut_short:
            blocks.append(text_block(responses.TOOL_INTERRUPTED_NOTICE))
        self.store.append(Message(MessageRole.ASSISTANT, blocks))

        await self._transition(TaskPhase.AWAITING_APPROVAL)
        observation, extra = await self._handle_call(call)

        self._pending_blocks = [observation.to_block(call)] + extra
        self._pending_blocks += [image_block(ref) for ref in observation.images]
        if observation.completes_task:
            self.state.result = observation.text
            self.store.append(Message(MessageRole.TOOL_RESULT, self._pending_blocks))
            self._pending_blocks = []
            await self._transition(TaskPhase.COMPLETED)
            await self._say("completion_result", observation.text)
            await self._checkpoint()
            return

        await self._transition(TaskPhase.AWAITING_MODEL)
        await self._commit_user_message()
        await self._checkpoint()

    async def _handle_no_tool(self, outcome: _StreamOutcome) -> None:
        text = "\n".join(p for p in [outcome.narration, *outcome.dropped_raw] if p)
        if not text.strip() and not outcome.parse_errors:
            # The model said nothing more: the task is finished from its side.
            await self._transition(TaskPhase.COMPLETED)
            await self._checkpoint()
            return

        self.store.append(Message(MessageRole.ASSISTANT, [text_block(text)]))
        if outcome.parse_errors:
            self._pending_blocks = [text_block(responses.parse_error(e)) for e in outcome.parse_errors]
        else:
            self._pending_blocks = [text_block(responses.no_tools_used())]
        self._pending_blocks += await self._record_mistake()
        await self._transition(TaskPhase.AWAITING_MODEL)
        await self._commit_user_message()
        await self._checkpoint()

    async def _record_mistake(self) -> list[ContentBlock]:
        """Count a recoverable mistake; at the limit, ask the user for help.

        Returns feedback blocks for the next user-side message.
        """
        self.state.consecutive_mistakes += 1
        if self.state.consecutive_mistakes < self._config.max_consecutive_mistakes:
            return []
        logger.warning(
            "Task %s: %d consecutive mistakes, asking the user",
            self.task_id[:8], self.state.consecutive_mistakes,
        )
        response = await self.ask(
            "mistake_limit_reached",
            "The model appears to be stuck. Provide guidance to continue, or decline to stop.",
        )
        if response.kind == "no":
            self.abort("stopped by user after repeated mistakes")
            self._token.raise_if_cancelled()
        feedback = await self._expand(response.text) if response.text else None
        self.state.consecutive_mistakes = 0
        return [text_block(responses.too_many_mistakes(feedback))] + [
            image_block(ref) for ref in response.images
        ]

    # ── streaming ──

    async def _request_with_retry(self, system_prompt: str) -> _StreamOutcome | None:
        attempts = max(1, self._config.retry_attempts)
        base_delay = self._settings.request_delay_seconds or self._config.retry_base_delay_seconds
        max_delay = max(base_delay, self._config.retry_max_delay_seconds)
        attempt = 0
        partial = ""
        while True:
            attempt += 1
            partial_holder: list[str] = []
            try:
                return await self._stream_once(system_prompt, partial_holder)
            except TransportError as exc:
                partial = "".join(partial_holder)
                if exc.retriable and attempt < attempts:
                    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
                    logger.warning(
                        "Task %s API failure on attempt %d/%d; retrying in %.2fs: %s",
                        self.task_id[:8], attempt, attempts, delay, exc,
                    )
                    if not self._settings.always_approve_resubmit:
                        response = await self.ask("api_req_failed", str(exc))
                        if not response.approved:
                            break
                    await self._say("api_req_retried", f"Retrying ({attempt}/{attempts - 1}) in {delay:.1f}s: {exc.reason}")
                    if self.state.phase == TaskPhase.STREAMING_RESPONSE:
                        await self._transition(TaskPhase.AWAITING_MODEL)
                    await self._token.guard(asyncio.sleep(delay))
                    continue
                logger.error(
                    "Task %s API failure after %d attempt(s): %s",
                    self.task_id[:8], attempt, exc,
                )
                break
        # exhausted or declined: keep the partial turn so resume can re-request it
        if partial.strip():
            self.store.append(Message(
                MessageRole.ASSISTANT,
                [text_block(partial), text_block(responses.API_ERROR_NOTICE)],
            ))
        await self._finish_failed(f"API request failed after {attempt} attempt(s)")
        return None

    async def _stream_once(self, system_prompt: str, partial: list[str]) -> _StreamOutcome:
        parser = ToolCallParser()
        outcome = _StreamOutcome()
        narration: list[str] = []
        history = self.store.current_history()
        self._requests_sent += 1
        logger.info(
            "Task %s: request #%d (%d messages, ~%d tokens)",
            self.task_id[:8], self._requests_sent, len(history), self.store.estimate_tokens(),
        )
        stream = self._api.send(system_prompt, history)
        ended = False
        try:
            while True:
                try:
                    chunk = await self._token.guard(_next_chunk(stream))
                except TransportError as exc:
                    if outcome.call is None:
                        raise
                    logger.warning(
                        "Task %s: stream failed after a complete tool call, keeping the call: %s",
                        self.task_id[:8], exc,
                    )
                    break
                if self.state.phase == TaskPhase.AWAITING_MODEL:
                    await self._transition(TaskPhase.STREAMING_RESPONSE)
                if chunk is None or chunk.kind == ChunkKind.END_OF_TURN:
                    ended = True
                    break
                if chunk.kind == ChunkKind.USAGE:
                    self._add_usage(chunk)
                    continue
                if not chunk.text:
                    continue
                if outcome.call is not None:
                    # Only usage and whitespace may follow the one tool call.
                    if chunk.text.strip():
                        outcome.cut_short = True
                        break
                    continue
                partial.append(chunk.text)
                events = parser.feed(chunk.text)
                for index, event in enumerate(events):
                    if event.kind == ParseEventKind.TOOL_CALL:
                        outcome.call = event.call
                        rest = events[index + 1:]
                        outcome.cut_short = any(
                            (e.kind == ParseEventKind.NARRATION and e.text.strip())
                            or e.kind != ParseEventKind.NARRATION
                            for e in rest
                        )
                        break
                    await self._apply_parse_event(event, narration, outcome)
                if outcome.cut_short:
                    break
        finally:
            await _close_stream(stream)

        if outcome.call is None:
            for event in parser.finish():
                await self._apply_parse_event(event, narration, outcome)
        elif not ended:
            logger.debug("Task %s: stream closed after first tool call", self.task_id[:8])
        outcome.narration = "".join(narration).strip()
        if outcome.narration:
            await self._say("text", outcome.narration, partial=False)
        return outcome

    async def _apply_parse_event(self, event, narration: list[str], outcome: _StreamOutcome) -> None:
        if event.kind == ParseEventKind.NARRATION:
            narration.append(event.text)
            await self._say("text", event.text, partial=True)
        elif event.kind == ParseEventKind.ERROR and event.error is not None:
            outcome.parse_errors.append(event.error)
            if event.error.raw:
                outcome.dropped_raw.append(event.error.raw)
            logger.warning("Task %s: %s", self.task_id[:8], event.error)

    def _add_usage(self, chunk) -> None:
        self.state.tokens_in += chunk.input_tokens
        self.state.tokens_out += chunk.output_tokens
        self.state.cache_writes += chunk.cache_write_tokens
        self.state.cache_reads += chunk.cache_read_tokens
        if chunk.total_cost is not None:
            self.state.total_cost += chunk.total_cost
        else:
            self.state.total_cost += self._config.model.cost(
                chunk.input_tokens, chunk.output_tokens,
                chunk.cache_write_tokens, chunk.cache_read_tokens,
            )

    # ── tool handling ──

    async def _handle_call(self, call: ToolCall) -> tuple[Observation, list[ContentBlock]]:
        """Validate, approve and execute call.

        Returns the observation plus extra user-side blocks (feedback).
        """
        missing = call.missing_params()
        if missing:
            logger.warning("Task %s: %s missing parameter %s", self.task_id[:8], call.name, missing[0])
            extra = await self._record_mistake()
            return Observation(
                success=False,
                text=responses.missing_tool_parameter(call.name, missing[0]),
            ), extra
        if call.tool not in self._tools:
            extra = await self._record_mistake()
            return Observation(
                success=False,
                text=responses.tool_error(f"The {call.name} tool is not available in this session."),
            ), extra

        allowed, count = self._repeat_guard.check(call)
        if not allowed:
            logger.warning(
                "Task %s: identical %s call issued %d times in a row, aborting",
                self.task_id[:8], call.name, count,
            )
            await self._say("error", f"Stopped: the same {call.name} call was issued {count} times in a row.")
            self.abort(f"identical {call.name} call repeated {count} times")
            self._token.raise_if_cancelled()
        self.state.consecutive_mistakes = 0

        policy = self._policy_snapshot()
        decision = self._gate.decide(call, policy)
        logger.info("Task %s: %s -> %s", self.task_id[:8], call.name, decision.value)

        preview: EditPreview | None = None
        if call.tool in (ToolName.WRITE_TO_FILE, ToolName.APPLY_DIFF):
            staged = await self._executor.preview_edit(call)
            if isinstance(staged, Observation):
                return staged, []
            preview = staged

        extra: list[ContentBlock] = []
        try:
            feedback = ""
            if decision == ApprovalDecision.NEEDS_USER_INPUT:
                response = await self.ask(_ask_kind(call), json.dumps(
                    {"tool": call.name, **call.params}, ensure_ascii=False,
                ), call)
                decision = decision_from_response(response)
                feedback = response.text
                extra += [image_block(ref) for ref in response.images]
                if decision.allows_execution and response.edited_params:
                    call = call.with_params(response.edited_params)
                    if preview is not None:
                        await self._executor.revert_edit()
                        preview = None
                        staged = await self._executor.preview_edit(call)
                        if isinstance(staged, Observation):
                            return staged, extra
                        preview = staged

            await self._post({
                "type": "approval", "tool": call.name, "call_id": call.call_id,
                "params": dict(call.params), "decision": decision.value,
            })
            if not decision.allows_execution:
                if preview is not None:
                    await self._executor.revert_edit()
                    preview = None
                text = (
                    responses.tool_denied_with_feedback(await self._expand(feedback))
                    if feedback else responses.tool_denied()
                )
                return Observation(success=False, text=text, payload={"denied": True}), extra

            await self._transition(TaskPhase.EXECUTING_TOOL)
            if preview is not None:
                observation = await self._executor.commit_edit(call, preview)
                preview = None
            else:
                observation = await self._executor.execute(call)
        except TaskAbortedError:
            if preview is not None:
                await asyncio.shield(self._executor.revert_edit())
            raise

        if feedback:
            extra.insert(0, text_block(responses.tool_approved_with_feedback(await self._expand(feedback))))
        await self._say(
            "tool_result", observation.text,
            tool=call.name, call_id=call.call_id, success=observation.success,
        )
        return observation, extra

    def _policy_snapshot(self) -> ApprovalPolicy:
        prefixes = self._policy_store.load()
        self.state.policy = ApprovalPolicy.from_settings(
            self._settings,
            extra_allowed=prefixes.allowed,
            extra_denied=prefixes.denied,
        )
        return self.state.policy

    # ── user-side messages ──

    async def _commit_user_message(self) -> None:
        blocks = list(self._pending_blocks)
        self._pending_blocks = []
        blocks.append(text_block(await self._environment_details()))
        role = (
            MessageRole.TOOL_RESULT
            if any(b.block_type == BlockType.TOOL_RESULT for b in blocks)
            else MessageRole.USER
        )
        self.store.append(Message(role, blocks))

    async def _environment_details(self) -> str:
        platform = self._caps.platform
        try:
            visible = await self._token.guard(platform.get_visible_files())
            tabs = await self._token.guard(platform.get_open_tabs())
        except TaskAbortedError:
            raise
        except Exception:
            logger.debug("Platform query failed", exc_info=True)
            visible, tabs = [], []

        terminals = []
        terminal_mgr = self._caps.terminal
        limit = self._settings.terminal_output_line_limit
        for busy in (True, False):
            for info in terminal_mgr.get_terminals(busy):
                output = terminal_mgr.get_unretrieved_output(info.id)
                if busy or output:
                    terminals.append((info.last_command, responses.truncate_lines(output, limit)))

        return format_environment_details(
            cwd=self._cwd,
            visible_files=visible,
            open_tabs=tabs,
            busy_terminals=terminals,
            include_file_listing=self._requests_sent == 0,
        )

    def _system_prompt(self) -> str:
        hub = self._caps.host.mcp_hub
        self._tools = available_tools(
            diff_enabled=self._settings.diff_enabled,
            has_browser=self._caps.browser is not None,
            has_mcp=hub is not None and self._settings.mcp_enabled,
        )
        return build_system_prompt(
            self._cwd,
            self._tools,
            custom_instructions=self._settings.custom_instructions,
            preferred_language=self._settings.preferred_language,
            mcp_servers=hub.list_servers() if hub is not None and self._settings.mcp_enabled else None,
        )

    async def _expand(self, text: str) -> str:
        return await parse_mentions(text, self._cwd, self._caps.url_fetcher)

    # ── lifecycle ──

    async def _transition(self, target: TaskPhase) -> None:
        current = self.state.phase
        validate_transition(current, target)
        self.state.phase = target
        logger.info("Task %s: %s -> %s", self.task_id[:8], current.value, target.value)
        await self._post({
            "type": "state", "task_id": self.task_id,
            "phase": target.value, "previous": current.value,
        })

    async def _finish_aborted(self) -> None:
        try:
            await asyncio.shield(self._executor.revert_edit())
        except Exception:
            logger.exception("Task %s: reverting staged edit failed", self.task_id[:8])
        if self.state.phase.is_terminal:
            return
        self.state.error = self._token.reason
        await self._transition(TaskPhase.ABORTED)
        await self._say("aborted", self._token.reason)
        await self._checkpoint()

    async def _finish_failed(self, reason: str) -> None:
        if self.state.phase.is_terminal:
            return
        self.state.error = reason
        await self._transition(TaskPhase.FAILED)
        await self._say("error", reason)
        await self._checkpoint()

    async def _cleanup(self) -> None:
        try:
            await self._caps.terminal.dispose_all()
        except Exception:
            logger.warning("Terminal cleanup failed", exc_info=True)
        try:
            await self._executor.close_browser()
        except Exception:
            logger.warning("Browser cleanup failed", exc_info=True)

    def _attach_storage(self) -> None:
        root = self._caps.host.get_global_storage_path()
        if root:
            self.store.attach_storage(TaskStorage(Path(root)))

    async def _checkpoint(self) -> None:
        item = self.state.to_history_item()
        item.conversation_history_deleted_range = self.store.deleted_range
        try:
            self.store.checkpoint(item)
        except OSError:
            logger.exception("Task %s: checkpoint write failed", self.task_id[:8])
        host = self._caps.host
        try:
            await host.update_task_history(item)
            await host.post_state_to_webview()
        except Exception:
            logger.warning("Task %s: host history update failed", self.task_id[:8], exc_info=True)

    # ── host messages ──

    async def _post(self, message: dict[str, Any]) -> None:
        try:
            await self._caps.host.post_message_to_webview(message)
        except Exception:
            logger.debug("post_message_to_webview failed for %s", message.get("type"), exc_info=True)
        await fire_event(self._event_callback, message)

    async def _say(self, say: str, text: str, *, partial: bool = False, **extra: Any) -> None:
        await self._post({
            "type": "say", "say": say, "text": text, "partial": partial,
            "task_id": self.task_id, "ts": time.time(), **extra,
        })


def _ask_kind(call: ToolCall) -> str:
    if call.tool == ToolName.EXECUTE_COMMAND:
        return "command"
    if call.tool == ToolName.BROWSER_ACTION:
        return "browser_action_launch"
    if call.tool in (ToolName.USE_MCP_TOOL, ToolName.ACCESS_MCP_RESOURCE):
        return "use_mcp_server"
    return "tool"


async def _next_chunk(stream):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


async def _close_stream(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Closing response stream failed", exc_info=True)
