from __future__ import annotations

import json
import os
import sys
try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover
        raise RuntimeError(
            "TOML parser unavailable. Use Python 3.11+ or install tomli for Python 3.10."
        ) from exc
from copy import deepcopy
from pathlib import Path
from typing import Any

from loguru import logger


APP_NAME = "panopticon"
LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_CONFIG: dict[str, Any] = {
    "registry": {
        "path": "",
        "retention_days": 7,
    },
    "polling": {
        "interval_secs": 5.0,
        "capture_lines": 30,
        "command_timeout_secs": 5.0,
    },
    "tmux": {
        "socket": "",
        "width": 220,
        "height": 50,
    },
    "agents": {
        "claude_flags": "",
        "codex_flags": "",
    },
    "terminal": {
        "override_env": "PANOPTICON_TERMINAL",
    },
    "hooks": {
        "state_file": "",
        "stale_minutes": 60,
        "retention_days": 7,
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}


class ConfigError(RuntimeError):
    pass


def config_dir() -> Path:
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base).expanduser() / APP_NAME


def data_dir() -> Path:
    override = os.getenv("PANOPTICON_DATA_DIR")
    if override:
        return Path(override).expanduser()
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base).expanduser() / APP_NAME


def _bootstrap_config_if_missing(cfg_path: Path) -> None:
    if cfg_path.exists():
        return

    cfg_path.parent.mkdir(parents=True, exist_ok=True)

    def q(value: str) -> str:
        # JSON string escaping is TOML-basic-string compatible.
        return json.dumps(value, ensure_ascii=False)

    d = DEFAULT_CONFIG
    template = f"""[registry]
path = {q(str(d["registry"]["path"]))}
retention_days = {int(d["registry"]["retention_days"])}

[polling]
interval_secs = {float(d["polling"]["interval_secs"])}
capture_lines = {int(d["polling"]["capture_lines"])}
command_timeout_secs = {float(d["polling"]["command_timeout_secs"])}

[tmux]
socket = {q(str(d["tmux"]["socket"]))}
width = {int(d["tmux"]["width"])}
height = {int(d["tmux"]["height"])}

[agents]
claude_flags = {q(str(d["agents"]["claude_flags"]))}
codex_flags = {q(str(d["agents"]["codex_flags"]))}

[terminal]
override_env = {q(str(d["terminal"]["override_env"]))}

[hooks]
state_file = {q(str(d["hooks"]["state_file"]))}
stale_minutes = {int(d["hooks"]["stale_minutes"])}
retention_days = {int(d["hooks"]["retention_days"])}

[logging]
level = {q(str(d["logging"]["level"]))}
file = {q(str(d["logging"]["file"]))}
"""
    cfg_path.write_text(template, encoding="utf-8")


def _deep_merge(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in incoming.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _to_abs(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    if p.is_absolute():
        return p
    return (base / p).resolve()


def _require_number(merged: dict[str, Any], section: str, key: str, minimum: float, integer: bool = False) -> None:
    value = merged.get(section, {}).get(key)
    valid_type = isinstance(value, int) if integer else isinstance(value, (int, float))
    if isinstance(value, bool) or not valid_type or value < minimum:
        kind = "an integer" if integer else "a number"
        raise ConfigError(f"{section}.{key} must be {kind} >= {minimum:g}")


def load_config(config_path: str | None = None) -> tuple[dict[str, Any], Path]:
    raw_path = config_path or os.getenv("PANOPTICON_CONFIG")
    cfg_path = Path(raw_path).expanduser() if raw_path else (config_dir() / "config.toml")
    if not cfg_path.is_absolute():
        cfg_path = cfg_path.resolve()

    _bootstrap_config_if_missing(cfg_path)

    try:
        parsed = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {cfg_path}: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ConfigError(f"invalid config root (expected table): {cfg_path}")

    merged = _deep_merge(DEFAULT_CONFIG, parsed)

    for section in DEFAULT_CONFIG:
        if not isinstance(merged.get(section), dict):
            raise ConfigError(f"[{section}] must be a table")

    _require_number(merged, "registry", "retention_days", 0)
    _require_number(merged, "polling", "interval_secs", 0.1)
    _require_number(merged, "polling", "capture_lines", 5, integer=True)
    _require_number(merged, "polling", "command_timeout_secs", 0.1)
    _require_number(merged, "tmux", "width", 20, integer=True)
    _require_number(merged, "tmux", "height", 5, integer=True)
    _require_number(merged, "hooks", "stale_minutes", 1)
    _require_number(merged, "hooks", "retention_days", 1)

    override_env = str(merged["terminal"].get("override_env", "")).strip()
    if not override_env:
        raise ConfigError("terminal.override_env must be a non-empty variable name")
    merged["terminal"]["override_env"] = override_env

    level = str(merged["logging"].get("level", "")).strip().upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of: {', '.join(sorted(LOG_LEVELS))}")
    merged["logging"]["level"] = level

    return merged, cfg_path


def resolve_context(config: dict[str, Any], config_path: Path | None = None) -> dict[str, Any]:
    base = data_dir()
    cfg_base = config_path.parent if config_path else base

    registry_raw = str(config["registry"]["path"]).strip()
    registry_file = _to_abs(cfg_base, registry_raw) if registry_raw else base / "sessions.json"

    hooks_raw = str(config["hooks"]["state_file"]).strip()
    hook_state_file = _to_abs(cfg_base, hooks_raw) if hooks_raw else base / "claude_state.json"

    log_raw = str(config["logging"]["file"]).strip()
    log_file = _to_abs(cfg_base, log_raw) if log_raw else base / "panopticon.log"

    return {
        "config_path": str(config_path) if config_path else "",
        "data_dir": str(base),
        "registry_file": str(registry_file),
        "hook_state_file": str(hook_state_file),
        "log_file": str(log_file),
        "retention_days": float(config["registry"]["retention_days"]),
        "polling": {
            "interval_secs": float(config["polling"]["interval_secs"]),
            "capture_lines": int(config["polling"]["capture_lines"]),
            "command_timeout_secs": float(config["polling"]["command_timeout_secs"]),
        },
        "tmux": {
            "socket": str(config["tmux"]["socket"]).strip(),
            "width": int(config["tmux"]["width"]),
            "height": int(config["tmux"]["height"]),
        },
        "agents": {
            "claude_flags": str(config["agents"]["claude_flags"]),
            "codex_flags": str(config["agents"]["codex_flags"]),
        },
        "terminal": {
            "override_env": str(config["terminal"]["override_env"]),
        },
        "hooks": {
            "stale_minutes": float(config["hooks"]["stale_minutes"]),
            "retention_days": float(config["hooks"]["retention_days"]),
        },
        "logging": {
            "level": str(config["logging"]["level"]),
        },
    }


def configure_logging(level: str, log_file: str | None = None) -> None:
    logger.remove()
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level, rotation="5 MB", retention=3)
    else:
        logger.add(sys.stderr, level=level, format="<level>{level: <8}</level> {message}")
