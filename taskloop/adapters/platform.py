"""PlatformProvider for a plain shell session: no editor surface."""
from __future__ import annotations

import logging
import os

from taskloop.engine.capabilities import PlatformProvider

logger = logging.getLogger(__name__)


class ShellPlatformProvider(PlatformProvider):
    """Reports the working directory; visible files and tabs come from the caller."""

    def __init__(
        self,
        cwd: str,
        visible_files: list[str] | None = None,
        open_tabs: list[str] | None = None,
    ) -> None:
        self._cwd = os.path.abspath(cwd)
        self.visible_files = list(visible_files or [])
        self.open_tabs = list(open_tabs or [])

    async def get_visible_files(self) -> list[str]:
        return list(self.visible_files)

    async def get_open_tabs(self) -> list[str]:
        return list(self.open_tabs)

    def get_working_directory(self) -> str:
        return self._cwd

    async def show_warning_message(self, message: str, *items: str) -> str | None:
        logger.warning(message)
        return None
