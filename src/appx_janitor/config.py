"""!
@brief Runtime settings for AppX Janitor.
@details Settings are resolved with the following precedence (highest first):
1. CLI arguments explicitly specified
2. ``APPX_JANITOR_<KEY>`` environment variables
3. JSON config file values (hyphenated keys, e.g. ``settle-delay``)
4. Built-in defaults
"""
from __future__ import annotations

import json
import os
import pathlib
import sys
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Mapping, Optional

__all__ = ["ENV_PREFIX", "JanitorSettings", "load_config_file", "resolve_settings"]

ENV_PREFIX = "APPX_JANITOR_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class JanitorSettings:
    """!
    @brief Tunables shared by the orchestrator and its collaborators.
    @details ``settle_delay`` is the pause between steps that lets the
    package manager and filesystem catch up. ``partial_clear_threshold`` is
    the share of files that must be gone for an incomplete folder deletion to
    count as a soft success. ``command_timeout_ceiling`` caps every
    per-command timeout when set.
    """

    settle_delay: float = 2.0
    process_grace_period: float = 2.0
    partial_clear_threshold: float = 0.5
    strict_success_marker: bool = False
    command_timeout_ceiling: Optional[float] = None
    max_workers: int = 2
    logdir: Optional[str] = None

    def __post_init__(self) -> None:
        if self.settle_delay < 0:
            raise ValueError("settle_delay must not be negative")
        if self.process_grace_period < 0:
            raise ValueError("process_grace_period must not be negative")
        if not 0.0 <= self.partial_clear_threshold <= 1.0:
            raise ValueError("partial_clear_threshold must be between 0 and 1")
        if self.command_timeout_ceiling is not None and self.command_timeout_ceiling <= 0:
            raise ValueError("command_timeout_ceiling must be positive")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_optional_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and value.strip().lower() in {"", "none"}):
        return None
    return float(value)


def _parse_optional_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


_PARSERS: Dict[str, Callable[[Any], Any]] = {
    "settle_delay": float,
    "process_grace_period": float,
    "partial_clear_threshold": float,
    "strict_success_marker": _parse_bool,
    "command_timeout_ceiling": _parse_optional_float,
    "max_workers": int,
    "logdir": _parse_optional_str,
}


def load_config_file(config_path: str | None) -> dict[str, object]:
    """!
    @brief Load and parse a JSON configuration file.
    @param config_path Path to the JSON config file, or None to skip.
    @returns Dictionary of configuration options, empty if no file specified.
    @raises SystemExit if the file cannot be read or parsed.
    """
    if not config_path:
        return {}

    path = pathlib.Path(config_path).expanduser().resolve()
    if not path.exists():
        print(f"Error: Configuration file not found: {path}", file=sys.stderr)
        raise SystemExit(1)

    try:
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            print(
                f"Error: Configuration file must contain a JSON object: {path}",
                file=sys.stderr,
            )
            raise SystemExit(1)
        return config
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in configuration file: {path}\n{e}", file=sys.stderr)
        raise SystemExit(1) from e
    except OSError as e:
        print(f"Error: Cannot read configuration file: {path}\n{e}", file=sys.stderr)
        raise SystemExit(1) from e


def resolve_settings(
    cli: Mapping[str, object] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    file_values: Mapping[str, object] | None = None,
) -> JanitorSettings:
    """!
    @brief Merge CLI, environment, and config file values into settings.
    @param cli Values from the command line; ``None`` entries are treated as unset.
    @param env Environment mapping, defaults to :data:`os.environ`.
    @param file_values Parsed config file contents from :func:`load_config_file`.
    @raises ValueError when a value cannot be converted or is out of range.
    """

    cli = cli or {}
    environment = os.environ if env is None else env
    file_values = file_values or {}

    resolved: Dict[str, Any] = {}
    for setting in fields(JanitorSettings):
        key = setting.name
        parser = _PARSERS[key]
        hyphenated = key.replace("_", "-")
        env_key = ENV_PREFIX + key.upper()

        if cli.get(key) is not None:
            raw, source = cli[key], "command line"
        elif env_key in environment:
            raw, source = environment[env_key], env_key
        elif hyphenated in file_values:
            raw, source = file_values[hyphenated], f"config key {hyphenated!r}"
        elif key in file_values:
            raw, source = file_values[key], f"config key {key!r}"
        else:
            continue

        try:
            resolved[key] = parser(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for {key} from {source}: {raw!r}") from exc

    return JanitorSettings(**resolved)
