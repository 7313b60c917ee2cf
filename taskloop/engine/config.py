"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TASKLOOP_* env vars
or the engine: section of taskloop.yaml (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let host callback errors break the engine
        logger.debug("Event callback failed for %s", event.get("type"), exc_info=True)


@dataclass
class ModelInfo:
    """Context window and per-million-token pricing for one model."""
    model_id: str = "claude-3-5-sonnet-20241022"
    context_window: int = 200_000
    max_output_tokens: int = 8192
    input_price: float = 3.0
    output_price: float = 15.0
    cache_writes_price: float = 3.75
    cache_reads_price: float = 0.3

    def cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_writes: int = 0,
        cache_reads: int = 0,
    ) -> float:
        return (
            self.input_price * input_tokens
            + self.output_price * output_tokens
            + self.cache_writes_price * cache_writes
            + self.cache_reads_price * cache_reads
        ) / 1_000_000


@dataclass
class EngineConfig:
    """Task orchestration engine configuration."""

    model: ModelInfo = field(default_factory=ModelInfo)

    # Tokens held back from the context window for the next response.
    # Trimming starts once the projected history exceeds
    # model.context_window - context_reserve_tokens.
    context_reserve_tokens: int = 40_000
    # Most recent turns (assistant + reply) that trimming never drops.
    keep_recent_turns: int = 4

    # Transport retry at the session boundary.
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0

    # Identical tool call (same name, same params) issued this many
    # times in a row aborts the task.
    identical_call_limit: int = 3
    # Consecutive recoverable mistakes before asking the user for help.
    max_consecutive_mistakes: int = 3

    # Seconds without new output before a running command is reported
    # back to the model as still running.
    command_idle_timeout_seconds: float = 10.0
    # Max wait for ask_followup_question and approval answers.
    # Set to 0 (or a negative value) to disable timeout.
    user_question_timeout_seconds: float = 0.0

    # Logging
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TASKLOOP_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TASKLOOP_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: TASKLOOP_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())
                          if "KEY" not in k),
            )
        else:
            logger.debug("EngineConfig.from_env: no TASKLOOP_* env vars set, using defaults")

        defaults = cls()
        model = ModelInfo(
            model_id=os.getenv("TASKLOOP_MODEL", defaults.model.model_id),
            context_window=int(os.getenv(
                "TASKLOOP_CONTEXT_WINDOW", str(defaults.model.context_window)
            )),
            max_output_tokens=int(os.getenv(
                "TASKLOOP_MAX_OUTPUT_TOKENS", str(defaults.model.max_output_tokens)
            )),
        )
        config = cls(
            model=model,
            context_reserve_tokens=int(os.getenv(
                "TASKLOOP_CONTEXT_RESERVE", str(defaults.context_reserve_tokens)
            )),
            keep_recent_turns=int(os.getenv(
                "TASKLOOP_KEEP_RECENT_TURNS", str(defaults.keep_recent_turns)
            )),
            retry_attempts=int(os.getenv(
                "TASKLOOP_RETRY_ATTEMPTS", str(defaults.retry_attempts)
            )),
            retry_base_delay_seconds=float(os.getenv(
                "TASKLOOP_RETRY_BASE_DELAY", str(defaults.retry_base_delay_seconds)
            )),
            retry_max_delay_seconds=float(os.getenv(
                "TASKLOOP_RETRY_MAX_DELAY", str(defaults.retry_max_delay_seconds)
            )),
            identical_call_limit=int(os.getenv(
                "TASKLOOP_IDENTICAL_CALL_LIMIT", str(defaults.identical_call_limit)
            )),
            max_consecutive_mistakes=int(os.getenv(
                "TASKLOOP_MAX_MISTAKES", str(defaults.max_consecutive_mistakes)
            )),
            command_idle_timeout_seconds=float(os.getenv(
                "TASKLOOP_COMMAND_IDLE_TIMEOUT",
                str(defaults.command_idle_timeout_seconds),
            )),
            user_question_timeout_seconds=float(os.getenv(
                "TASKLOOP_USER_QUESTION_TIMEOUT",
                str(defaults.user_question_timeout_seconds),
            )),
            log_level=os.getenv("TASKLOOP_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "EngineConfig.from_env: model=%s context=%d retries=%d log_level=%s",
            config.model.model_id, config.model.context_window,
            config.retry_attempts, config.log_level,
        )
        return config

    @property
    def history_token_budget(self) -> int:
        return max(1, self.model.context_window - self.context_reserve_tokens)
