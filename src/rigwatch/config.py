from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import tomllib

_LOG_FORMATS = ("console", "json")
_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_ENV_KEYS: dict[str, str] = {
    "gt_root": "GT_BASE_PATH",
    "beads_path": "BEADS_PATH",
    "rigs": "GT_RIGS",
    "host": "RIGWATCH_HOST",
    "port": "RIGWATCH_PORT",
    "snapshot_ttl": "RIGWATCH_SNAPSHOT_TTL",
    "status_ttl": "RIGWATCH_STATUS_TTL",
    "log_timeout": "RIGWATCH_LOG_TIMEOUT",
    "status_timeout": "RIGWATCH_STATUS_TIMEOUT",
    "fetch_timeout": "RIGWATCH_FETCH_TIMEOUT",
    "stall_minutes": "RIGWATCH_STALL_MINUTES",
    "log_level": "RIGWATCH_LOG_LEVEL",
    "log_format": "RIGWATCH_LOG_FORMAT",
}

_FLOAT_KEYS = ("snapshot_ttl", "status_ttl", "log_timeout", "status_timeout", "fetch_timeout")
_INT_KEYS = ("port", "stall_minutes")


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class MonitorConfig:
    gt_root: Path | None = None
    beads_path: Path | None = None
    rigs: tuple[str, ...] = ()
    host: str = "127.0.0.1"
    port: int = 8787
    snapshot_ttl: float = 30.0
    status_ttl: float = 5.0
    log_timeout: float = 10.0
    status_timeout: float = 15.0
    fetch_timeout: float = 5.0
    stall_minutes: int = 30
    log_level: str = "info"
    log_format: str = "console"
    source_path: Path | None = field(default=None, compare=False)

    def rig_paths(self) -> dict[str, Path]:
        """Beads directory per rig; a single ``default`` rig without GT_RIGS."""
        base = self.gt_root or Path.cwd()
        if self.rigs:
            return {rig: base / rig / ".beads" for rig in self.rigs}
        return {"default": self.beads_path or base / ".beads"}

    def registry_path(self) -> Path | None:
        if self.gt_root is None:
            return None
        return self.gt_root / "mayor" / "rigs.json"


def _as_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped


def _as_positive_float(value: object, *, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigValidationError(f"{key} must be a number")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{key} must be a number, got {value!r}") from None
    if number <= 0:
        raise ConfigValidationError(f"{key} must be positive, got {value!r}")
    return number


def _as_positive_int(value: object, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigValidationError(f"{key} must be an integer")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{key} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigValidationError(f"{key} must be positive, got {value!r}")
    return number


def _parse_rigs(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, list):
        out: list[str] = []
        for idx, item in enumerate(value):
            text = _as_str(item)
            if text is None:
                raise ConfigValidationError(f"rigs[{idx}] must be a non-empty string")
            out.append(text)
        return tuple(out)
    raise ConfigValidationError("rigs must be a comma-separated string or an array of strings")


def _apply(raw: Mapping[str, Any], cfg: MonitorConfig) -> MonitorConfig:
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _ENV_KEYS:
            raise ConfigValidationError(f"unknown [monitor] key: {key!r}")
        if key in ("gt_root", "beads_path"):
            text = _as_str(value)
            updates[key] = Path(text).expanduser() if text else None
        elif key == "rigs":
            updates[key] = _parse_rigs(value)
        elif key in _FLOAT_KEYS:
            updates[key] = _as_positive_float(value, key=key)
        elif key in _INT_KEYS:
            updates[key] = _as_positive_int(value, key=key)
        elif key == "log_format":
            fmt = (_as_str(value) or "").lower()
            if fmt not in _LOG_FORMATS:
                raise ConfigValidationError(
                    f"log_format must be one of {', '.join(_LOG_FORMATS)}, got {value!r}"
                )
            updates[key] = fmt
        elif key == "log_level":
            level = (_as_str(value) or "").lower()
            if level not in _LOG_LEVELS:
                raise ConfigValidationError(
                    f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {value!r}"
                )
            updates[key] = level
        else:
            text = _as_str(value)
            if text is None:
                raise ConfigValidationError(f"{key} must be a non-empty string")
            updates[key] = text
    return replace(cfg, **updates)


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MonitorConfig:
    """Build the monitor config from an optional TOML file and the environment.

    Environment variables win over the ``[monitor]`` table of the file.
    """
    env = os.environ if env is None else env
    cfg = MonitorConfig()

    if path is not None:
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigValidationError(f"cannot read {path}: {exc}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigValidationError(f"invalid TOML in {path}: {exc}") from exc
        section = data.get("monitor", {})
        if not isinstance(section, dict):
            raise ConfigValidationError("[monitor] must be a table")
        cfg = replace(_apply(section, cfg), source_path=path)

    from_env = {
        key: env[name] for key, name in _ENV_KEYS.items() if env.get(name, "").strip()
    }
    return _apply(from_env, cfg)
