"""Crash-safe file replacement for checkpoints and workspace edits.

Both the task checkpoint files and the files the diff view saves into the
workspace go through atomic_write_text: the new content lands in a temp
file beside the target and is renamed over it, so readers see either the
old file or the new one. A workspace file keeps its permission bits
across the rewrite, and line endings are written exactly as given.
"""
from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _existing_mode(path: Path) -> int | None:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None


def _sync_parent(directory: Path) -> None:
    # Directory fsync makes the rename durable; some filesystems refuse it.
    try:
        fd = os.open(str(directory), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("fsync not supported on %s", directory)
    finally:
        os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace path with content in one rename.

    Missing parent directories are created. On any failure the temp file
    is removed and the previous content of path is left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = _existing_mode(path)

    tmp = tempfile.NamedTemporaryFile(
        "w", encoding=encoding, newline="", dir=path.parent,
        prefix=f".{path.name}.", suffix=".partial", delete=False,
    )
    tmp_path = Path(tmp.name)
    try:
        with tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _sync_parent(path.parent)
    logger.debug("Wrote %s (%d chars)", path, len(content))


def atomic_write_json(path: Path, data: Any) -> None:
    """Pretty-printed UTF-8 JSON with a trailing newline, written atomically."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
