from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import tomllib

from .model import PRIORITIES


CONFIG_FILENAME = "taskhub.toml"
STATE_DIR_NAME = ".taskhub"
STATE_DIR_ENV = "TASKHUB_STATE_DIR"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class TaskHubConfig:
    state_dir: Path
    eager_cycle_check: bool = False
    default_priority: str = "medium"
    progress_in_results: bool = True
    log_level: str = "WARNING"
    source_path: Path | None = None


def find_state_dir(cwd: Path | None = None) -> Path:
    """Pick the state directory: $TASKHUB_STATE_DIR, the nearest enclosing
    ``.taskhub``, or ``.taskhub`` under ``cwd``. Nothing is created here."""
    override = os.environ.get(STATE_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    start = (cwd or Path.cwd()).resolve()
    for base in (start, *start.parents):
        if (base / STATE_DIR_NAME).is_dir():
            return base / STATE_DIR_NAME
    return start / STATE_DIR_NAME


def _as_bool(value: object, *, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ConfigValidationError(f"{field} must be a boolean")


def _as_choice(value: object, *, field: str, choices: tuple[str, ...], upper: bool = False) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigValidationError(f"{field} must be a non-empty string")
    text = value.strip().upper() if upper else value.strip().lower()
    if text not in choices:
        expected = ", ".join(choices)
        raise ConfigValidationError(f"{field} must be one of: {expected}")
    return text


def _parse_table(raw: dict[str, object], *, path: Path) -> dict[str, object]:
    table = raw.get("taskhub", {})
    if not isinstance(table, dict):
        raise ConfigValidationError(f"[taskhub] in {path} must be a table")
    known = {"eager_cycle_check", "default_priority", "progress_in_results", "log_level"}
    unknown = sorted(set(table) - known)
    if unknown:
        raise ConfigValidationError(f"unknown [taskhub] keys: {', '.join(unknown)}")

    out: dict[str, object] = {}
    if "eager_cycle_check" in table:
        out["eager_cycle_check"] = _as_bool(
            table["eager_cycle_check"], field="[taskhub].eager_cycle_check"
        )
    if "progress_in_results" in table:
        out["progress_in_results"] = _as_bool(
            table["progress_in_results"], field="[taskhub].progress_in_results"
        )
    if "default_priority" in table:
        out["default_priority"] = _as_choice(
            table["default_priority"],
            field="[taskhub].default_priority",
            choices=PRIORITIES,
        )
    if "log_level" in table:
        out["log_level"] = _as_choice(
            table["log_level"], field="[taskhub].log_level", choices=LOG_LEVELS, upper=True
        )
    return out


def load_config(cwd: Path | None = None, *, state_dir: Path | None = None) -> TaskHubConfig:
    """Load ``taskhub.toml`` from the state directory and apply env overrides.

    Environment variables win over the file:
    - TASKHUB_EAGER_CYCLE_CHECK
    - TASKHUB_LOG_LEVEL
    """
    root = state_dir if state_dir is not None else find_state_dir(cwd)
    root.mkdir(parents=True, exist_ok=True)
    path = root / CONFIG_FILENAME
    values: dict[str, object] = {}
    source: Path | None = None
    if path.exists():
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigValidationError(f"invalid TOML in {path}: {exc}") from exc
        values.update(_parse_table(raw, path=path))
        source = path

    env_eager = os.environ.get("TASKHUB_EAGER_CYCLE_CHECK", "").strip()
    if env_eager:
        values["eager_cycle_check"] = _as_bool(env_eager, field="TASKHUB_EAGER_CYCLE_CHECK")
    env_level = os.environ.get("TASKHUB_LOG_LEVEL", "").strip()
    if env_level:
        values["log_level"] = _as_choice(
            env_level, field="TASKHUB_LOG_LEVEL", choices=LOG_LEVELS, upper=True
        )

    return TaskHubConfig(state_dir=root, source_path=source, **values)  # type: ignore[arg-type]
