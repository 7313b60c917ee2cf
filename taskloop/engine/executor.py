"""Tool execution: route one approved ToolCall to its capability adapter.

Every adapter call runs under the session's CancellationToken. Faults
raised by adapters are caught here and returned as failed Observations
so the model can adapt; only TaskAbortedError propagates.

File edits are split in two steps so the session can ask for approval
in between:

    preview_edit(call)  -> stage content in the DiffViewProvider
    commit_edit(call)   -> save_changes(), build the observation
    revert_edit()       -> revert_changes() on denial or abort
"""
from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from . import responses
from .cancellation import CancellationToken
from .capabilities import Capabilities, TerminalEvent
from .config import EngineConfig
from .diff_strategy import apply_diff
from .errors import AdapterError, CapabilityUnavailableError, TaskAbortedError
from .models import AskResponse, HostSettings, Observation, ToolCall, ToolName

logger = logging.getLogger(__name__)

# kind ("followup", "mistake_limit_reached", ...), text -> answer
AskUserCallback = Callable[[str, str], Awaitable[AskResponse]]

IGNORED_DIRS = frozenset({
    ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
    "dist", "build", ".mypy_cache", ".pytest_cache", ".tox", ".idea",
    ".taskloop",
})
LIST_FILES_LIMIT = 200
SEARCH_RESULTS_LIMIT = 300
SEARCH_MAX_FILE_BYTES = 1_000_000

_FENCE_OPEN = re.compile(r"^```[\w+-]*\n")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


@dataclass
class EditPreview:
    """A staged edit waiting for approval."""
    rel_path: str
    content: str
    edit_type: str


def _strip_code_fence(content: str) -> str:
    if _FENCE_OPEN.match(content) and _FENCE_CLOSE.search(content):
        content = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", content, count=1))
    return content


def _is_true(value: str | None) -> bool:
    return str(value or "").strip().lower() in ("true", "1", "yes")


class ToolExecutor:
    """Dispatches tool calls to capabilities and normalizes the results."""

    def __init__(
        self,
        capabilities: Capabilities,
        token: CancellationToken,
        *,
        cwd: str,
        config: EngineConfig | None = None,
        settings: HostSettings | None = None,
        ask_user: AskUserCallback | None = None,
    ) -> None:
        self._caps = capabilities
        self._token = token
        self._cwd = os.path.abspath(cwd)
        self._config = config or EngineConfig()
        self.settings = settings or HostSettings()
        self._ask_user = ask_user
        self._browser_open = False

    @property
    def cwd(self) -> str:
        return self._cwd

    def resolve_path(self, rel_path: str) -> str:
        return os.path.abspath(os.path.join(self._cwd, rel_path))

    async def _guard(self, awaitable):
        return await self._token.guard(awaitable)

    # ── entry points ──

    async def execute(self, call: ToolCall) -> Observation:
        """Run call end to end and return its Observation.

        Write tools are previewed and committed in one step here; the
        session uses preview_edit/commit_edit directly when it has to
        ask for approval in between.
        """
        logger.info("Executing tool %s (%s)", call.name, call.call_id)
        try:
            if call.tool in (ToolName.WRITE_TO_FILE, ToolName.APPLY_DIFF):
                preview = await self.preview_edit(call)
                if isinstance(preview, Observation):
                    return preview
                return await self.commit_edit(call, preview)
            handler = self._handlers()[call.tool]
            return await handler(call)
        except TaskAbortedError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._fault(call, exc)

    def _handlers(self):
        return {
            ToolName.EXECUTE_COMMAND: self._execute_command,
            ToolName.READ_FILE: self._read_file,
            ToolName.LIST_FILES: self._list_files,
            ToolName.SEARCH_FILES: self._search_files,
            ToolName.BROWSER_ACTION: self._browser_action,
            ToolName.USE_MCP_TOOL: self._use_mcp_tool,
            ToolName.ACCESS_MCP_RESOURCE: self._access_mcp_resource,
            ToolName.ASK_FOLLOWUP_QUESTION: self._ask_followup_question,
            ToolName.ATTEMPT_COMPLETION: self._attempt_completion,
        }

    def _fault(self, call: ToolCall, exc: Exception) -> Observation:
        if isinstance(exc, AdapterError):
            reason = exc.reason
        else:
            reason = f"{type(exc).__name__}: {exc}"
        logger.warning("Tool %s failed: %s", call.name, reason)
        return Observation(
            success=False,
            text=responses.tool_error(reason),
            payload={"error": reason},
        )

    # ── file edits ──

    async def preview_edit(self, call: ToolCall) -> EditPreview | Observation:
        """Compute the new content and stage it in the diff view.

        Returns a failed Observation when the edit cannot be staged
        (unreadable file, diff that does not apply).
        """
        try:
            return await self._preview_edit(call)
        except TaskAbortedError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._reset_diff_view()
            return self._fault(call, exc)

    async def _preview_edit(self, call: ToolCall) -> EditPreview:
        rel_path = call.params["path"]
        abs_path = self.resolve_path(rel_path)
        exists = os.path.isfile(abs_path)

        if call.tool == ToolName.APPLY_DIFF:
            if not exists:
                raise AdapterError(call.name, f"File does not exist at path: {rel_path}")
            with open(abs_path, encoding="utf-8") as f:
                original = f.read()
            result = apply_diff(
                original, call.params["diff"], self.settings.fuzzy_match_threshold,
            )
            if not result.success:
                raise AdapterError(
                    call.name,
                    f"Unable to apply diff to {rel_path}:\n{result.error}",
                )
            content = result.content
        else:
            content = _strip_code_fence(call.params["content"])
            if content and not content.endswith("\n"):
                content += "\n"

        diff_view = self._caps.diff_view
        diff_view.edit_type = "modify" if exists else "create"
        await self._guard(diff_view.open(rel_path))
        await self._guard(diff_view.update(content, True))
        diff_view.scroll_to_first_diff()
        logger.debug("Staged %s edit for %s (%d chars)", diff_view.edit_type, rel_path, len(content))
        return EditPreview(rel_path=rel_path, content=content, edit_type=diff_view.edit_type)

    async def commit_edit(self, call: ToolCall, preview: EditPreview) -> Observation:
        diff_view = self._caps.diff_view
        try:
            result = await self._guard(diff_view.save_changes())
        except TaskAbortedError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self.revert_edit()
            return self._fault(call, exc)

        if result.user_edits:
            text = responses.user_edits_summary(
                preview.rel_path, result.user_edits, result.final_content,
            )
        else:
            text = f"The content was successfully saved to {preview.rel_path}."
        if result.new_problems_message:
            text += f"\n\n{result.new_problems_message}"
        await self._reset_diff_view()
        logger.info("Saved %s (%s)", preview.rel_path, preview.edit_type)
        return Observation(
            success=True,
            text=text,
            user_edits=result.user_edits,
            payload={"path": preview.rel_path, "edit_type": preview.edit_type},
        )

    async def revert_edit(self) -> None:
        """Discard a staged edit. Safe to call when nothing is staged."""
        diff_view = self._caps.diff_view
        if diff_view.is_editing:
            logger.info("Reverting staged edit")
            await diff_view.revert_changes()
        await self._reset_diff_view()

    async def _reset_diff_view(self) -> None:
        try:
            await self._caps.diff_view.reset()
        except Exception:
            logger.debug("Diff view reset failed", exc_info=True)

    # ── commands ──

    async def _execute_command(self, call: ToolCall) -> Observation:
        command = call.params["command"]
        terminal_mgr = self._caps.terminal
        terminal = await self._guard(terminal_mgr.get_or_create_terminal(self._cwd))
        iterator = terminal_mgr.run_command(terminal, command).__aiter__()
        idle = self._config.command_idle_timeout_seconds

        lines: list[str] = []
        completed = False
        exit_code: int | None = None
        no_shell = False
        still_running = False
        grace_used = False
        pending: asyncio.Future[TerminalEvent] | None = None
        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(iterator.__anext__())
                done, _ = await self._guard(asyncio.wait({pending}, timeout=idle))
                if not done:
                    if not grace_used and terminal_mgr.is_process_hot(terminal.id):
                        grace_used = True
                        continue
                    still_running = True
                    break
                grace_used = False
                try:
                    event = pending.result()
                except StopAsyncIteration:
                    pending = None
                    completed = True
                    break
                pending = None
                if event.kind == "line":
                    lines.append(event.line)
                elif event.kind == "completed":
                    completed = True
                    exit_code = event.exit_code
                    break
                elif event.kind == "no_shell_integration":
                    no_shell = True
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
            if completed:
                await iterator.aclose()

        output = responses.truncate_lines(
            "\n".join(lines).rstrip("\n"), self.settings.terminal_output_line_limit,
        )
        payload = {"command": command, "exit_code": exit_code, "completed": completed}
        if still_running:
            logger.info("Command still running after %.1fs idle: %.80s", idle, command)
            text = (
                "Command is still running in the user's terminal."
                + (f"\nHere's the output so far:\n{output}" if output else "")
                + "\n\nYou will be updated on the terminal status and new output "
                "in the future."
            )
            return Observation(success=True, text=text, payload=payload)

        text = "Command executed."
        if exit_code not in (None, 0):
            text = f"Command exited with code {exit_code}."
        if no_shell:
            text += (
                "\n(Shell integration is unavailable; output may be incomplete.)"
            )
        text += f"\nOutput:\n{output}" if output else "\n(No output)"
        logger.info("Command finished (exit=%s): %.80s", exit_code, command)
        return Observation(
            success=exit_code in (None, 0),
            text=text,
            payload={**payload, "lines": len(lines)},
        )

    # ── read-only file tools ──

    async def _read_file(self, call: ToolCall) -> Observation:
        rel_path = call.params["path"]
        abs_path = self.resolve_path(rel_path)
        if os.path.isdir(abs_path):
            raise AdapterError(call.name, f"{rel_path} is a directory, not a file")
        if not os.path.isfile(abs_path):
            raise AdapterError(call.name, f"File not found: {rel_path}")
        try:
            with open(abs_path, encoding="utf-8") as f:
                content = f.read()
        except UnicodeDecodeError as exc:
            raise AdapterError(call.name, f"Cannot read binary file: {rel_path}") from exc
        return Observation(
            success=True,
            text=responses.add_line_numbers(content) if content else "(empty file)",
            payload={"path": rel_path, "lines": content.count("\n") + 1 if content else 0},
        )

    async def _list_files(self, call: ToolCall) -> Observation:
        rel_path = call.params["path"]
        recursive = _is_true(call.params.get("recursive"))
        root = self.resolve_path(rel_path)
        if not os.path.isdir(root):
            raise AdapterError(call.name, f"Directory not found: {rel_path}")

        entries: list[str] = []
        truncated = False
        for current, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
            rel_current = os.path.relpath(current, root)
            for name in dirs:
                entries.append(os.path.normpath(os.path.join(rel_current, name)) + "/")
            for name in sorted(files):
                entries.append(os.path.normpath(os.path.join(rel_current, name)))
            if len(entries) >= LIST_FILES_LIMIT:
                truncated = True
                break
            if not recursive:
                break

        entries = entries[:LIST_FILES_LIMIT]
        text = "\n".join(entries) if entries else "No files found."
        if truncated:
            text += (
                f"\n\n(File list truncated at {LIST_FILES_LIMIT} entries. "
                "Use list_files on specific subdirectories to explore further.)"
            )
        return Observation(
            success=True, text=text,
            payload={"path": rel_path, "count": len(entries), "truncated": truncated},
        )

    async def _search_files(self, call: ToolCall) -> Observation:
        rel_path = call.params["path"]
        root = self.resolve_path(rel_path)
        if not os.path.isdir(root):
            raise AdapterError(call.name, f"Directory not found: {rel_path}")
        try:
            pattern = re.compile(call.params["regex"])
        except re.error as exc:
            raise AdapterError(call.name, f"Invalid regex: {exc}") from exc
        file_pattern = call.params.get("file_pattern") or "*"

        sections: list[str] = []
        count = 0
        for current, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
            for name in sorted(files):
                if count >= SEARCH_RESULTS_LIMIT:
                    break
                if not fnmatch.fnmatch(name, file_pattern):
                    continue
                path = os.path.join(current, name)
                try:
                    if os.path.getsize(path) > SEARCH_MAX_FILE_BYTES:
                        continue
                    with open(path, encoding="utf-8") as f:
                        lines = f.read().split("\n")
                except (UnicodeDecodeError, OSError):
                    continue
                hits = [i for i, line in enumerate(lines) if pattern.search(line)]
                if not hits:
                    continue
                hits = hits[:SEARCH_RESULTS_LIMIT - count]
                count += len(hits)
                block = [os.path.relpath(path, self._cwd)]
                for i in hits:
                    block.append("│----")
                    for j in range(max(0, i - 1), min(len(lines), i + 2)):
                        block.append(f"│{j + 1}: {lines[j]}")
                block.append("│----")
                sections.append("\n".join(block))

        if count == 0:
            return Observation(success=True, text="Found 0 results.", payload={"count": 0})
        header = f"Found {count} result{'s' if count != 1 else ''}."
        if count >= SEARCH_RESULTS_LIMIT:
            header = f"Showing first {SEARCH_RESULTS_LIMIT} results. Use a more specific search if necessary."
        return Observation(
            success=True,
            text=header + "\n\n" + "\n\n".join(sections),
            payload={"count": count},
        )

    # ── browser ──

    async def _browser_action(self, call: ToolCall) -> Observation:
        browser = self._caps.browser
        if browser is None:
            raise CapabilityUnavailableError(call.name, "Browser session")
        action = call.params["action"].strip()

        if action == "launch":
            url = call.params.get("url", "").strip()
            if not url:
                raise AdapterError(call.name, "Missing value for required parameter 'url'")
            await self._guard(browser.launch_browser())
            self._browser_open = True
            result = await self._guard(browser.navigate_to_url(url))
        elif action == "close":
            result = await self._guard(browser.close_browser())
            self._browser_open = False
            return Observation(
                success=True,
                text="The browser has been closed. You may now proceed to using other tools.",
                payload={"action": action},
            )
        elif not self._browser_open:
            raise AdapterError(
                call.name, f"Browser is not open; use 'launch' before '{action}'",
            )
        elif action == "click":
            coordinate = call.params.get("coordinate", "").strip()
            if not coordinate:
                raise AdapterError(call.name, "Missing value for required parameter 'coordinate'")
            result = await self._guard(browser.click(coordinate))
        elif action == "type":
            text = call.params.get("text", "")
            if not text:
                raise AdapterError(call.name, "Missing value for required parameter 'text'")
            result = await self._guard(browser.type(text))
        elif action == "scroll_down":
            result = await self._guard(browser.scroll_down())
        elif action == "scroll_up":
            result = await self._guard(browser.scroll_up())
        else:
            raise AdapterError(call.name, f"Unknown browser action: {action}")

        text = (
            "The browser action has been executed. The console logs and "
            "screenshot have been captured for your analysis.\n\n"
            f"Console logs:\n{result.logs or '(No new logs)'}"
        )
        if result.current_url:
            text += f"\n\nCurrent URL: {result.current_url}"
        return Observation(
            success=True,
            text=text,
            images=[result.screenshot] if result.screenshot else [],
            payload={"action": action, "current_url": result.current_url},
        )

    async def close_browser(self) -> None:
        if self._caps.browser is not None and self._browser_open:
            self._browser_open = False
            await self._caps.browser.close_browser()

    # ── MCP ──

    def _mcp_hub(self, call: ToolCall):
        hub = self._caps.host.mcp_hub
        if hub is None:
            raise CapabilityUnavailableError(call.name, "MCP hub")
        return hub

    async def _use_mcp_tool(self, call: ToolCall) -> Observation:
        hub = self._mcp_hub(call)
        raw_args = call.params.get("arguments", "").strip()
        try:
            arguments = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError as exc:
            raise AdapterError(call.name, f"arguments is not valid JSON: {exc}") from exc
        if not isinstance(arguments, dict):
            raise AdapterError(call.name, "arguments must be a JSON object")
        text = await self._guard(hub.call_tool(
            call.params["server_name"], call.params["tool_name"], arguments,
        ))
        return Observation(success=True, text=text or "(No response)")

    async def _access_mcp_resource(self, call: ToolCall) -> Observation:
        hub = self._mcp_hub(call)
        text = await self._guard(hub.read_resource(call.params["server_name"], call.params["uri"]))
        return Observation(success=True, text=text or "(Empty response)")

    # ── interaction ──

    async def _ask_followup_question(self, call: ToolCall) -> Observation:
        if self._ask_user is None:
            raise CapabilityUnavailableError(call.name, "User interaction")
        response = await self._ask_user("followup", call.params["question"])
        return Observation(
            success=True,
            text=f"<answer>\n{response.text}\n</answer>",
            images=list(response.images),
        )

    async def _attempt_completion(self, call: ToolCall) -> Observation:
        result = call.params["result"]
        logger.info("Task completion attempted")
        return Observation(
            success=True,
            text=result,
            completes_task=True,
            payload={"command": call.params.get("command")},
        )
