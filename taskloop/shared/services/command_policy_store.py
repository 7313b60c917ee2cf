"""Workspace command allow/deny prefix persistence.

Prefixes are stored one per line in:
- <workspace>/.taskloop/allowed_commands.txt
- <workspace>/.taskloop/denied_commands.txt

Lines starting with # are comments. The lists are merged into the
ApprovalPolicy next to the prefixes from HostSettings.
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

TASKLOOP_DIRNAME = ".taskloop"
ALLOWED_FILENAME = "allowed_commands.txt"
DENIED_FILENAME = "denied_commands.txt"


@dataclass
class CommandPrefixes:
    allowed: list[str] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)


class CommandPolicyStore:
    """Reads and writes workspace command prefix files."""

    def __init__(self, workspace_dir: Path | str) -> None:
        self._workspace_dir = Path(workspace_dir)
        self._policy_dir = self._workspace_dir / TASKLOOP_DIRNAME
        self._allowed_path = self._policy_dir / ALLOWED_FILENAME
        self._denied_path = self._policy_dir / DENIED_FILENAME

    @property
    def policy_dir(self) -> Path:
        return self._policy_dir

    @property
    def allowed_path(self) -> Path:
        return self._allowed_path

    @property
    def denied_path(self) -> Path:
        return self._denied_path

    def ensure_files(self) -> None:
        """Create policy files if missing."""
        self._policy_dir.mkdir(parents=True, exist_ok=True)
        for path in (self._allowed_path, self._denied_path):
            if not path.exists():
                path.write_text("", encoding="utf-8")

    def load(self) -> CommandPrefixes:
        prefixes = CommandPrefixes(
            allowed=self._read_prefixes(self._allowed_path),
            denied=self._read_prefixes(self._denied_path),
        )
        logger.debug(
            "Command policy loaded: %d allowed prefixes from %s, %d denied from %s",
            len(prefixes.allowed), self._allowed_path,
            len(prefixes.denied), self._denied_path,
        )
        return prefixes

    def add_allowed(self, prefix: str) -> None:
        self._add_prefix(self._allowed_path, prefix)

    def add_denied(self, prefix: str) -> None:
        self._add_prefix(self._denied_path, prefix)

    def remove_allowed(self, prefix: str) -> bool:
        """Remove a prefix from the allow list. Returns True if removed."""
        return self._remove_prefix(self._allowed_path, prefix)

    def remove_denied(self, prefix: str) -> bool:
        """Remove a prefix from the deny list. Returns True if removed."""
        return self._remove_prefix(self._denied_path, prefix)

    @staticmethod
    def suggest_prefix(command: str) -> str:
        """Prefix to remember for "always allow" on command.

        Keeps the executable and, for tools with subcommands (git, npm,
        docker...), the subcommand; drops the remaining arguments.
        """
        cleaned = str(command or "").strip()
        if not cleaned:
            return ""
        try:
            tokens = shlex.split(cleaned)
        except ValueError:
            return cleaned
        if not tokens:
            return cleaned
        exe = tokens[0]
        if Path(exe).name.lower() in {
            "git", "npm", "pnpm", "yarn", "docker", "podman", "kubectl",
            "cargo", "go", "pip", "poetry", "uv",
        }:
            for token in tokens[1:]:
                if not token.startswith("-"):
                    return f"{exe} {token}"
        return exe

    @staticmethod
    def _read_prefixes(path: Path) -> list[str]:
        if not path.exists():
            return []
        lines: list[str] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            lines.append(entry)
        return lines

    def _add_prefix(self, path: Path, prefix: str) -> None:
        cleaned = prefix.strip()
        if not cleaned:
            return
        self.ensure_files()
        entries = self._read_prefixes(path)
        if cleaned in entries:
            return
        entries.append(cleaned)
        path.write_text("\n".join(entries) + "\n", encoding="utf-8")

    def _remove_prefix(self, path: Path, prefix: str) -> bool:
        cleaned = prefix.strip()
        if not cleaned:
            return False
        entries = self._read_prefixes(path)
        if cleaned not in entries:
            return False
        entries.remove(cleaned)
        path.write_text("\n".join(entries) + "\n" if entries else "", encoding="utf-8")
        return True
