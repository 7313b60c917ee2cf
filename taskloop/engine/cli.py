"""CLI entry point for the task orchestration engine.

Usage:
    taskloop "Add a --json flag to the report command"
    taskloop -d tasks/feature.md --yes
    taskloop --resume 6f1c2b9e-...
    taskloop --history
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .config import EngineConfig
from .errors import ConfigError
from .models import HostSettings, TaskPhase, TaskState
from .yaml_config import ProviderConfig, find_config_file, load_yaml_config

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="taskloop",
        description="Autonomous coding-assistant task loop",
    )
    parser.add_argument(
        "task",
        nargs="?",
        default=None,
        help="The task to run (inline string)",
    )
    parser.add_argument(
        "--task-file", "-d",
        default=None,
        help="Read task from a file (.md, .txt, etc.)",
    )
    parser.add_argument(
        "--resume",
        default=None,
        metavar="TASK_ID",
        help="Resume a checkpointed task",
    )
    parser.add_argument(
        "--history",
        action="store_true",
        help="List stored tasks and exit",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to taskloop.yaml (default: ./taskloop.yaml or ./.taskloop/taskloop.yaml)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the task (default: current dir)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model id (default: from config)",
    )
    parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Auto-approve every tool category",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    cwd = os.path.abspath(args.cwd or os.getcwd())
    if not os.path.isdir(cwd):
        print(f"Error: Working directory not found: {cwd}")
        sys.exit(1)

    # Build config
    try:
        config, settings, provider = _load_config(args.config, cwd)
    except ConfigError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if not args.verbose:
        logging.getLogger().setLevel(config.log_level.upper())
    if args.model is not None:
        config.model.model_id = args.model
    if args.yes:
        settings.always_allow_read_only = True
        settings.always_allow_write = True
        settings.always_allow_execute = True
        settings.always_allow_browser = True
        settings.always_allow_mcp = True

    if args.history:
        _print_history(cwd)
        return

    task = None
    if not args.resume:
        task = _resolve_task(args.task, args.task_file)
    elif args.task or args.task_file:
        print("Error: --resume cannot be combined with a new task.")
        sys.exit(1)

    try:
        state = asyncio.run(_run(task, args.resume, cwd, config, settings, provider))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    sys.exit(0 if state.phase == TaskPhase.COMPLETED else 1)


def _load_config(
    path: str | None, cwd: str,
) -> tuple[EngineConfig, HostSettings, ProviderConfig]:
    config_path = Path(path) if path else find_config_file(cwd)
    if config_path is None:
        return EngineConfig.from_env(), HostSettings(), ProviderConfig()
    loaded = load_yaml_config(config_path)
    return loaded.engine, loaded.settings, loaded.provider


def _resolve_task(inline: str | None, file_path: str | None) -> str:
    """Get task from inline arg or file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a task string or --task-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Task file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a task string, --task-file or --resume.")
    sys.exit(1)


async def _run(
    task: str | None,
    resume_id: str | None,
    cwd: str,
    config: EngineConfig,
    settings: HostSettings,
    provider_config: ProviderConfig,
) -> TaskState:
    from taskloop.adapters import (
        CliTaskHost,
        FileDiffViewProvider,
        HttpUrlContentFetcher,
        ShellPlatformProvider,
        SubprocessTerminalManager,
    )
    from .capabilities import Capabilities
    from .providers.anthropic_provider import AnthropicProvider
    from .task_session import TaskSession

    console = Console()
    host = CliTaskHost(cwd, settings, console=console)
    capabilities = Capabilities(
        host=host,
        platform=ShellPlatformProvider(cwd),
        terminal=SubprocessTerminalManager(),
        diff_view=FileDiffViewProvider(cwd),
        url_fetcher=HttpUrlContentFetcher(),
    )
    api_client = AnthropicProvider(
        config.model.model_id,
        api_key_env=provider_config.api_key_env,
        base_url=provider_config.base_url,
        max_output_tokens=config.model.max_output_tokens,
        request_timeout_seconds=provider_config.request_timeout_seconds,
    )
    session = TaskSession(capabilities, api_client, config=config, cwd=cwd)
    host.bind(session)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.abort, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")

    try:
        if resume_id:
            state = await session.resume(resume_id)
        else:
            assert task is not None
            state = await session.start(task)
    except KeyError:
        console.print(f"[red]No stored task with id {resume_id}[/red]")
        return session.state
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await api_client.shutdown()

    console.print(
        f"[dim]Task {state.task_id} {state.phase.value}: "
        f"tokens in {state.tokens_in:,} / out {state.tokens_out:,}, "
        f"cost ${state.total_cost:.4f}[/dim]",
        highlight=False,
    )
    return state


def _print_history(cwd: str) -> None:
    from taskloop.adapters.cli_host import STORAGE_DIRNAME
    from taskloop.shared.services.task_storage import TaskStorage

    items = TaskStorage(Path(cwd) / STORAGE_DIRNAME).load_history()
    console = Console()
    if not items:
        console.print("[dim]No stored tasks.[/dim]")
        return
    table = Table(title="Task history")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Task")
    table.add_column("Cost", justify="right")
    for item in items:
        table.add_row(item.id, item.status, item.task[:60], f"${item.total_cost:.4f}")
    console.print(table)


if __name__ == "__main__":
    main()
