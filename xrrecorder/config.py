#!/usr/bin/env python3
"""
Unified configuration loader for xrrecorder.

Load order (first found wins):
  1) XRRECORDER_CONFIG (env, absolute or relative to CWD)
  2) /etc/xrrecorder/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULT_SAMPLE_RATES: tuple[int, ...] = (
    8000,
    11025,
    16000,
    22050,
    32000,
    44100,
    48000,
    88200,
    96000,
    176400,
    192000,
)

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "name": "xrRecorder",
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
        "ping_interval": 10.0,
        "close_timeout": 2.0,
        "static_dir": "",
    },
    "paths": {
        "recordings_dir": "/apps/xrrecorder/recordings",
    },
    "recording": {
        "device": "hw:0,0",
        "channels": 2,
        "bit_depth": 16,
        "sample_rate": 44100,
        "buffer_size": 262144,
        "max_channels": 32,
        "allowed_sample_rates": list(DEFAULT_SAMPLE_RATES),
        "arecord_path": "arecord",
        "status_markers": ["Max peak"],
        "stop_timeout": 5.0,
        "diagnostic_lines": 200,
        "diagnostic_line_length": 512,
        "filename_pattern": "%Y-%m-%d_%H-%M-%S",
    },
    "probe": {
        "ffprobe_path": "ffprobe",
        "timeout": 10.0,
    },
    "host": {
        "shutdown_command": ["sudo", "shutdown", "-h", "now"],
        "reboot_command": ["sudo", "reboot"],
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore unreadable files and continue with other locations/defaults
        log.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    log.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("XRRECORDER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/xrrecorder/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
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
            cfg.setdefault("recording", {})["device"] = env_device
    # Paths
    if "REC_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["REC_DIR"]
    if "STATIC_DIR" in os.environ:
        cfg.setdefault("server", {})["static_dir"] = os.environ["STATIC_DIR"]
    if "LISTEN_HOST" in os.environ:
        value = os.environ["LISTEN_HOST"].strip()
        if value:
            cfg.setdefault("server", {})["listen_host"] = value

    env_map = {
        "LISTEN_PORT": ("server", "listen_port", int),
        "PING_INTERVAL": ("server", "ping_interval", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (xrrecorder/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

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

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


__all__ = [
    "DEFAULT_SAMPLE_RATES",
    "active_config_path",
    "get_cfg",
    "reload_cfg",
    "search_paths",
]
