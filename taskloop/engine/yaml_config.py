"""YAML configuration loader.

Loads an optional taskloop.yaml. Every section is optional; keys that
are not recognized are logged and ignored.

Example YAML:
    engine:
      keep_recent_turns: 6
      retry_attempts: 5
      identical_call_limit: 3
      command_idle_timeout_seconds: 15

    model:
      model_id: claude-3-5-sonnet-20241022
      context_window: 200000
      max_output_tokens: 8192
      input_price: 3.0
      output_price: 15.0

    provider:
      api_key_env: ANTHROPIC_API_KEY
      base_url: https://api.anthropic.com

    settings:
      always_allow_read_only: true
      always_allow_execute: true
      allowed_commands: ["npm test", "git status"]
      denied_commands: ["rm -rf", "git push"]
      custom_instructions: |
        Prefer small, reviewed changes.
      terminal_output_line_limit: 300
      fuzzy_match_threshold: 0.9
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, ModelInfo
from .errors import ConfigError
from .models import HostSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "taskloop.yaml"
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class ProviderConfig:
    """Connection settings for the model API client."""
    api_key_env: str = "ANTHROPIC_API_KEY"
    base_url: str = "https://api.anthropic.com"
    request_timeout_seconds: float = 600.0


@dataclass
class TaskLoopConfig:
    """Fully parsed YAML configuration."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    settings: HostSettings = field(default_factory=HostSettings)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    source: Path | None = None


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def _coerce(name: str, value: Any, default: Any, source: str) -> Any:
    """Convert value to the type of default."""
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, list):
            if value is None:
                return []
            if isinstance(value, str):
                return [value]
            return [str(v) for v in value]
        if default is None or isinstance(default, str):
            return None if value is None else str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(source, f"{name}: {exc}") from exc
    return value


def _apply_section(target: Any, section: Any, section_name: str, source: str) -> list[str]:
    """Set dataclass fields on target from a mapping; returns unknown keys."""
    if section is None:
        return []
    if not isinstance(section, dict):
        raise ConfigError(source, f"'{section_name}' must be a mapping")
    known = {f.name for f in dataclasses.fields(target)}
    unknown = []
    for key, value in section.items():
        if key not in known or key == "model":
            unknown.append(str(key))
            continue
        default = getattr(target, key)
        setattr(target, key, _coerce(f"{section_name}.{key}", value, default, source))
    for key in unknown:
        logger.warning("load_yaml_config: ignoring unknown key %s.%s in %s", section_name, key, source)
    return unknown


def load_yaml_config(path: str | Path) -> TaskLoopConfig:
    """Load and parse a YAML config file.

    Raises ConfigError when the file is missing, is not valid YAML, or
    holds values of the wrong type.
    """
    path = Path(path)
    source = str(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise ConfigError(source, "file not found") from exc
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(source, f"YAML parse error: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(source, "top level must be a mapping")
    raw = _expand_env(raw)
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    config = TaskLoopConfig(source=path)
    for section in sorted(set(raw) - {"engine", "model", "provider", "settings"}):
        logger.warning("load_yaml_config: ignoring unknown section '%s' in %s", section, path)

    _apply_section(config.engine, raw.get("engine"), "engine", source)
    model = ModelInfo()
    _apply_section(model, raw.get("model"), "model", source)
    config.engine.model = model
    _apply_section(config.provider, raw.get("provider"), "provider", source)
    _apply_section(config.settings, raw.get("settings"), "settings", source)

    if not 0.0 <= config.settings.fuzzy_match_threshold <= 1.0:
        raise ConfigError(source, "settings.fuzzy_match_threshold must be between 0 and 1")
    if config.engine.identical_call_limit < 2:
        raise ConfigError(source, "engine.identical_call_limit must be at least 2")

    logger.info(
        "load_yaml_config: model=%s retries=%d auto-approve(read=%s write=%s execute=%s)",
        config.engine.model.model_id, config.engine.retry_attempts,
        config.settings.always_allow_read_only, config.settings.always_allow_write,
        config.settings.always_allow_execute,
    )
    return config


def find_config_file(cwd: str | Path) -> Path | None:
    """taskloop.yaml in cwd or its .taskloop/ directory, if present."""
    for candidate in (
        Path(cwd) / DEFAULT_CONFIG_FILENAME,
        Path(cwd) / ".taskloop" / DEFAULT_CONFIG_FILENAME,
    ):
        if candidate.is_file():
            return candidate
    return None
