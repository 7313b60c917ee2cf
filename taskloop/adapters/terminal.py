"""Subprocess-backed TerminalManager for headless hosts.

Each terminal runs one shell command at a time. A background reader
collects output lines as they arrive; run_command() yields them and
marks them retrieved, so output produced after the consumer stops
pulling is still available through get_unretrieved_output().
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import AsyncIterator

from taskloop.engine.capabilities import TerminalEvent, TerminalInfo, TerminalManager

logger = logging.getLogger(__name__)

# A process that printed within this window counts as "hot".
HOT_WINDOW_SECONDS = 2.0
_TERMINATE_GRACE_SECONDS = 3.0


class _Terminal:
    def __init__(self, info: TerminalInfo) -> None:
        self.info = info
        self.proc: asyncio.subprocess.Process | None = None
        self.reader: asyncio.Task | None = None
        self.lines: list[str] = []
        self.retrieved = 0
        self.exit_code: int | None = None
        self.finished = True
        self.last_output_at = 0.0
        self.cond = asyncio.Condition()

    def unretrieved(self) -> list[str]:
        pending = self.lines[self.retrieved:]
        self.retrieved = len(self.lines)
        return pending


class SubprocessTerminalManager(TerminalManager):
    """Runs commands with asyncio subprocesses in the host's shell."""

    def __init__(self, shell: str | None = None) -> None:
        self._shell = shell
        self._terminals: dict[int, _Terminal] = {}
        self._next_id = 1

    async def get_or_create_terminal(self, cwd: str) -> TerminalInfo:
        for terminal in self._terminals.values():
            if not terminal.info.busy and terminal.info.cwd == cwd:
                return terminal.info
        info = TerminalInfo(id=self._next_id, cwd=cwd)
        self._next_id += 1
        self._terminals[info.id] = _Terminal(info)
        logger.debug("Created terminal %d in %s", info.id, cwd)
        return info

    async def run_command(
        self, terminal: TerminalInfo, command: str,
    ) -> AsyncIterator[TerminalEvent]:
        state = self._terminals[terminal.id]
        if state.info.busy:
            raise RuntimeError(f"terminal {terminal.id} is already running a command")
        state.lines = []
        state.retrieved = 0
        state.exit_code = None
        state.finished = False
        state.info.busy = True
        state.info.last_command = command
        try:
            state.proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=state.info.cwd,
                executable=self._shell,
                start_new_session=True,
            )
        except OSError:
            state.info.busy = False
            state.finished = True
            raise
        logger.info("Terminal %d: started pid=%s: %.120s", terminal.id, state.proc.pid, command)
        state.reader = asyncio.create_task(self._read_output(state))

        while True:
            async with state.cond:
                await state.cond.wait_for(
                    lambda: state.retrieved < len(state.lines) or state.finished
                )
            while state.retrieved < len(state.lines):
                line = state.lines[state.retrieved]
                state.retrieved += 1
                yield TerminalEvent("line", line=line)
            if state.finished and state.retrieved >= len(state.lines):
                yield TerminalEvent("completed", exit_code=state.exit_code)
                return

    async def _read_output(self, state: _Terminal) -> None:
        proc = state.proc
        assert proc is not None and proc.stdout is not None
        try:
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                state.last_output_at = time.monotonic()
                async with state.cond:
                    state.lines.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                    state.cond.notify_all()
            state.exit_code = await proc.wait()
        finally:
            state.info.busy = False
            async with state.cond:
                state.finished = True
                state.cond.notify_all()
            logger.info("Terminal %d: process exited with %s", state.info.id, state.exit_code)

    def get_terminals(self, busy: bool) -> list[TerminalInfo]:
        return [t.info for t in self._terminals.values() if t.info.busy == busy]

    def get_unretrieved_output(self, terminal_id: int) -> str:
        state = self._terminals.get(terminal_id)
        if state is None:
            return ""
        return "\n".join(state.unretrieved())

    def is_process_hot(self, terminal_id: int) -> bool:
        state = self._terminals.get(terminal_id)
        if state is None or state.finished:
            return False
        return time.monotonic() - state.last_output_at < HOT_WINDOW_SECONDS

    async def dispose_all(self) -> None:
        for state in list(self._terminals.values()):
            await self._terminate(state)
        self._terminals.clear()

    async def _terminate(self, state: _Terminal) -> None:
        proc = state.proc
        if proc is None or proc.returncode is not None:
            return
        logger.info("Terminal %d: terminating pid=%s", state.info.id, proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), _TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
        if state.reader is not None:
            await asyncio.gather(state.reader, return_exceptions=True)
