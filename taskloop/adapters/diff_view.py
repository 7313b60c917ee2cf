"""File-backed DiffViewProvider for headless hosts.

Edits are staged in memory. save_changes() writes them atomically;
revert_changes() restores the original content, or removes a file the
edit created along with any directories created for it.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

from taskloop.engine.capabilities import DiffSaveResult, DiffViewProvider
from taskloop.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)


class FileDiffViewProvider(DiffViewProvider):
    """Stages one file edit at a time under cwd."""

    def __init__(self, cwd: str) -> None:
        self._cwd = os.path.abspath(cwd)
        self._rel_path: str | None = None
        self._staged: str | None = None
        self._created_dirs: list[Path] = []
        self._written = False
        self.is_editing = False
        self.edit_type = None
        self.original_content = None

    @property
    def staged_content(self) -> str | None:
        return self._staged

    @property
    def rel_path(self) -> str | None:
        return self._rel_path

    def _abs(self) -> Path:
        assert self._rel_path is not None
        return Path(self._cwd) / self._rel_path

    async def open(self, rel_path: str) -> None:
        self._rel_path = rel_path
        path = self._abs()
        if path.is_file():
            self.original_content = path.read_text(encoding="utf-8")
            self.edit_type = "modify"
        else:
            self.original_content = None
            self.edit_type = "create"
        self._staged = None
        self._written = False
        self.is_editing = True
        logger.debug("Diff view opened %s (%s)", rel_path, self.edit_type)

    async def update(self, content: str, is_complete: bool) -> None:
        if not self.is_editing:
            raise RuntimeError("update() called before open()")
        self._staged = content

    async def save_changes(self) -> DiffSaveResult:
        if not self.is_editing or self._staged is None:
            raise RuntimeError("no staged edit to save")
        path = self._abs()
        self._created_dirs = [p for p in reversed(path.parents) if not p.exists()]
        atomic_write_text(path, self._staged)
        self._written = True
        logger.info("Saved %s (%d chars)", self._rel_path, len(self._staged))
        return DiffSaveResult(final_content=self._staged)

    async def revert_changes(self) -> None:
        if not self.is_editing:
            return
        path = self._abs()
        if self._written:
            if self.original_content is None:
                path.unlink(missing_ok=True)
                for directory in reversed(self._created_dirs):
                    try:
                        directory.rmdir()
                    except OSError:
                        break
            else:
                atomic_write_text(path, self.original_content)
        logger.info("Reverted staged edit to %s", self._rel_path)
        self.is_editing = False

    async def reset(self) -> None:
        self._rel_path = None
        self._staged = None
        self._created_dirs = []
        self._written = False
        self.is_editing = False
        self.edit_type = None
        self.original_content = None
