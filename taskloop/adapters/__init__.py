"""Adapters package - concrete capabilities for the headless CLI host.

These implement the capability contracts in taskloop.engine.capabilities
on top of a plain terminal: rich console presentation, asyncio
subprocesses, direct file edits and HTTP page fetching.
"""
from __future__ import annotations

__all__ = [
    "CliTaskHost",
    "FileDiffViewProvider",
    "HttpUrlContentFetcher",
    "ShellPlatformProvider",
    "SubprocessTerminalManager",
]

from taskloop.adapters.browser import HttpUrlContentFetcher
from taskloop.adapters.cli_host import CliTaskHost
from taskloop.adapters.diff_view import FileDiffViewProvider
from taskloop.adapters.platform import ShellPlatformProvider
from taskloop.adapters.terminal import SubprocessTerminalManager
