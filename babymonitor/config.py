#!/usr/bin/env python3
"""
Unified configuration loader for Babymonitor.

Merge order (later layers override earlier ones):
  1) built-in defaults
  2) ./config.yaml (current working directory)
  3) <project_root>/config.yaml (derived from this file's location)
  4) /etc/babymonitor/config.yaml
  5) BABYMONITOR_CONFIG (env, absolute or relative to CWD)
  6) explicit path passed on the command line (JSON or YAML)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from babymonitor.actions import ActionSpec, load_actions


_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "default",
        "sample_rate": 44100,
        "frame_size": 128,
    },
    "http_host": "0.0.0.0",
    "http_port": 8080,
    "actions": [],
    "action_timeout_sec": 10.0,
    "debug_mp3": {"enabled": False, "filename": "debug.mp3"},
    "debug_wav": {"enabled": False, "filename": "debug.wav"},
    "level_trigger": {
        "measure_time_ms": 2000,
        "level": 0.3,
    },
    "trigger_pause_sec": 60,
    "mp3_lame_quality": 2,
    "mp3_bitrate": "128k",
    "logging": {
        "level": "INFO",
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None

log = logging.getLogger("config")


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class MonitorSettings:
    device: str
    sample_rate: int
    frame_size: int
    http_host: str
    http_port: int
    actions: tuple[ActionSpec, ...]
    action_timeout_sec: float
    debug_mp3_enabled: bool
    debug_mp3_filename: str
    debug_wav_enabled: bool
    debug_wav_filename: str
    measure_time_ms: int
    level: float
    trigger_pause_sec: float
    mp3_lame_quality: int
    mp3_bitrate: str
    log_level: str

    @property
    def window_capacity(self) -> int:
        """Samples needed for one level measurement."""
        return self.measure_time_ms * self.sample_rate // 1000


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("Ignoring unreadable config %s: %s", path, exc)
    return {}


def _load_explicit(path: Path) -> Dict[str, Any]:
    """Load a config file named by the user; failures abort startup."""
    log.info("Reading config from %s", path)
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Reading config file {path} failed: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Parsing config file {path} failed: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("BABYMONITOR_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/babymonitor/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "AUDIO_DEV" in os.environ:
        env_device = os.environ["AUDIO_DEV"].strip()
        if env_device:
            cfg.setdefault("audio", {})["device"] = env_device

    env_map = {
        "HTTP_PORT": (None, "http_port", int),
        "TRIGGER_PAUSE_SEC": (None, "trigger_pause_sec", float),
        "MP3_LAME_QUALITY": (None, "mp3_lame_quality", int),
        "LEVEL_TRIGGER_LEVEL": ("level_trigger", "level", float),
        "LEVEL_TRIGGER_MEASURE_MS": ("level_trigger", "measure_time_ms", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        try:
            value = cast(os.environ[env_key])
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])
            continue
        target = cfg if section is None else cfg.setdefault(section, {})
        target[key] = value


def get_cfg(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """Return the merged configuration.

    Passing ``path`` reloads from scratch with that file layered on top of
    the search path; without it the cached result is returned.
    """
    global _cfg_cache, _active_config_path
    if _cfg_cache is not None and path is None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (babymonitor/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    if path is not None:
        explicit = Path(path).expanduser()
        cfg = _deep_merge(cfg, _load_explicit(explicit))
        active = explicit

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def _parse_int_like(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 10)
        except ValueError:
            parsed = _parse_float_like(text)
            if parsed is not None and parsed.is_integer():
                return int(parsed)
    return None


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return None


def _parse_float_like(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(result):
        return None
    return result


def _section(cfg: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = cfg.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _require_int(value: Any, name: str, *, minimum: int, maximum: int | None = None) -> int:
    parsed = _parse_int_like(value)
    if parsed is None or parsed < minimum or (maximum is not None and parsed > maximum):
        bounds = f">= {minimum}" if maximum is None else f"in [{minimum}, {maximum}]"
        raise ConfigError(f"{name} must be an integer {bounds}, got {value!r}")
    return parsed


def _require_bool(value: Any, name: str, default: bool = False) -> bool:
    if value is None:
        return default
    parsed = _coerce_bool(value)
    if parsed is None:
        raise ConfigError(f"{name} must be a boolean, got {value!r}")
    return parsed


def _require_float(value: Any, name: str, *, minimum: float, maximum: float | None = None) -> float:
    parsed = _parse_float_like(value)
    if parsed is None or parsed < minimum or (maximum is not None and parsed > maximum):
        bounds = f">= {minimum}" if maximum is None else f"in [{minimum}, {maximum}]"
        raise ConfigError(f"{name} must be a number {bounds}, got {value!r}")
    return parsed


def settings_from_cfg(cfg: Mapping[str, Any]) -> MonitorSettings:
    """Validate the merged config and freeze it into ``MonitorSettings``."""
    audio = _section(cfg, "audio")
    trigger = _section(cfg, "level_trigger")
    debug_mp3 = _section(cfg, "debug_mp3")
    debug_wav = _section(cfg, "debug_wav")
    logging_cfg = _section(cfg, "logging")

    try:
        actions = load_actions(cfg.get("actions"))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    log_level = str(logging_cfg.get("level") or "INFO").upper()
    if _require_bool(logging_cfg.get("dev_mode"), "logging.dev_mode"):
        log_level = "DEBUG"

    settings = MonitorSettings(
        device=str(audio.get("device") or "default"),
        sample_rate=_require_int(audio.get("sample_rate"), "audio.sample_rate", minimum=1),
        frame_size=_require_int(audio.get("frame_size"), "audio.frame_size", minimum=1),
        http_host=str(cfg.get("http_host") or "0.0.0.0"),
        http_port=_require_int(cfg.get("http_port"), "http_port", minimum=1, maximum=65535),
        actions=actions,
        action_timeout_sec=_require_float(
            cfg.get("action_timeout_sec", 10.0), "action_timeout_sec", minimum=0.1
        ),
        debug_mp3_enabled=_require_bool(debug_mp3.get("enabled"), "debug_mp3.enabled"),
        debug_mp3_filename=str(debug_mp3.get("filename") or "debug.mp3"),
        debug_wav_enabled=_require_bool(debug_wav.get("enabled"), "debug_wav.enabled"),
        debug_wav_filename=str(debug_wav.get("filename") or "debug.wav"),
        measure_time_ms=_require_int(
            trigger.get("measure_time_ms"), "level_trigger.measure_time_ms", minimum=1
        ),
        level=_require_float(trigger.get("level"), "level_trigger.level", minimum=0.0, maximum=1.0),
        trigger_pause_sec=_require_float(
            cfg.get("trigger_pause_sec"), "trigger_pause_sec", minimum=0.0
        ),
        mp3_lame_quality=_require_int(
            cfg.get("mp3_lame_quality"), "mp3_lame_quality", minimum=0, maximum=9
        ),
        mp3_bitrate=str(cfg.get("mp3_bitrate") or "128k"),
        log_level=log_level,
    )
    if settings.window_capacity <= 0:
        raise ConfigError(
            "level_trigger.measure_time_ms is too short for the configured sample rate"
        )
    return settings
