from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/clipmem/config.json").expanduser()
DEFAULT_HOME = "~/.clipmem"

INT_KEYS = {
    "poll_interval_ms",
    "busy_retries",
    "busy_backoff_ms",
    "busy_timeout_ms",
    "max_text_bytes",
}
FLOAT_KEYS = {"read_timeout_s", "stop_timeout_s"}

CONFIG_ENV_OVERRIDES = {
    "home": "CLIPMEM_HOME",
    "poll_interval_ms": "CLIPMEM_POLL_INTERVAL_MS",
    "read_timeout_s": "CLIPMEM_READ_TIMEOUT_S",
    "busy_retries": "CLIPMEM_BUSY_RETRIES",
    "busy_backoff_ms": "CLIPMEM_BUSY_BACKOFF_MS",
    "busy_timeout_ms": "CLIPMEM_BUSY_TIMEOUT_MS",
    "stop_timeout_s": "CLIPMEM_STOP_TIMEOUT_S",
    "log_level": "CLIPMEM_LOG_LEVEL",
    "max_text_bytes": "CLIPMEM_MAX_TEXT_BYTES",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CLIPMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass(frozen=True)
class ClipmemPaths:
    base_dir: Path
    db_path: Path
    images_dir: Path
    pid_file: Path
    log_file: Path

    @classmethod
    def from_base(cls, base: Path | str) -> ClipmemPaths:
        base_dir = Path(base).expanduser()
        return cls(
            base_dir=base_dir,
            db_path=base_dir / "clipmem.db",
            images_dir=base_dir / "images",
            pid_file=base_dir / "clipmem.pid",
            log_file=base_dir / "clipmem.log",
        )


@dataclass
class ClipmemConfig:
    home: str = DEFAULT_HOME
    poll_interval_ms: int = 500
    read_timeout_s: float = 2.0
    busy_retries: int = 5
    busy_backoff_ms: int = 50
    busy_timeout_ms: int = 250
    stop_timeout_s: float = 5.0
    log_level: str = "INFO"
    # Larger text payloads are skipped by the watcher.
    max_text_bytes: int = 1_048_576

    @property
    def paths(self) -> ClipmemPaths:
        return ClipmemPaths.from_base(self.home)


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> ClipmemConfig:
    cfg = ClipmemConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        warnings.warn(f"Ignoring config file: {exc}", RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: ClipmemConfig, data: dict[str, Any]) -> ClipmemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg
