# scanhub/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for ScanHub.

Single source of truth:
    config/config.yaml

Design notes
------------
- One file, one 'app:' root for the service plus a few feature sections
  (ai, devices, saved_scans, realtime, reassembler, log).
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Environment variables win over YAML for deployment knobs:
    AI_SERVER_URL, SCANHUB_DB_PATH, SCANHUB_DEV_MODE
- Every accessor takes an optional `cfg` so the app factory and tests can
  hand in their own mapping instead of the eager CONFIG.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path(cfg=None) -> pathlib.Path
- get_ai_cfg(cfg=None) -> dict
- get_devices_cfg(cfg=None) -> dict
- get_saved_scans_cfg(cfg=None) -> dict
- get_realtime_cfg(cfg=None) -> dict
- get_reassembler_cfg(cfg=None) -> dict
- is_dev_mode(cfg=None) -> bool
- get_log_level(default: str = "INFO", cfg=None) -> str
- get_server_bind(cfg=None) -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

_TRUTHY = ("1", "true", "yes")


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except OSError as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def _section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    src = CONFIG if cfg is None else cfg
    return src.get(name, {}) or {}


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml), validate required shape,
    and return the raw dict (unmodified).
    """
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for service startup:
    try:
        app = cfg["app"]
        persistence = app["persistence"]
        sqlite_path = persistence["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.persistence.sqlite_path must be a non-empty string")
    except KeyError as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with a "
            "'persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


# ---------- Accessors ----------
def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database."""
    env = os.getenv("SCANHUB_DB_PATH", "").strip()
    if env:
        return _resolve_path(env)
    sqlite_path = (
        _section(cfg, "app")
              .get("persistence", {})
              .get("sqlite_path")
    )
    if not sqlite_path:
        raise RuntimeError("CONFIG missing app.persistence.sqlite_path")
    return _resolve_path(sqlite_path)


def get_ai_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Return the AI analysis service block with defaults filled in:
    {server_url, timeout_s, policy}.
    """
    ai = dict(_section(cfg, "ai"))
    env_url = os.getenv("AI_SERVER_URL", "").strip()
    if env_url:
        ai["server_url"] = env_url
    ai.setdefault("server_url", "http://127.0.0.1:8000")
    ai["timeout_s"] = float(ai.get("timeout_s", 15))
    ai["policy"] = str(ai.get("policy", "always")).lower()
    return ai


def get_devices_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    dev = dict(_section(cfg, "devices"))
    dev["stale_after_s"] = float(dev.get("stale_after_s", 60))
    dev["capability_marker"] = str(dev.get("capability_marker", "AI"))
    return dev


def get_saved_scans_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    saved = dict(_section(cfg, "saved_scans"))
    saved["duplicate_window_s"] = float(saved.get("duplicate_window_s", 300))
    saved["allowed_sources"] = [str(s).upper() for s in (saved.get("allowed_sources") or ["ESP32"])]
    return saved


def get_realtime_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    rt = dict(_section(cfg, "realtime"))
    rt["replay_buffer_size"] = int(rt.get("replay_buffer_size", 200))
    rt["subscriber_queue_size"] = int(rt.get("subscriber_queue_size", 256))
    return rt


def get_reassembler_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Client-side reassembly knobs (used by dashboard_watch)."""
    ra = dict(_section(cfg, "reassembler"))
    ra["settle_ms"] = int(ra.get("settle_ms", 500))
    ra["cooldown_ms"] = int(ra.get("cooldown_ms", 2000))
    ra["device_name_markers"] = list(ra.get("device_name_markers") or ["Scanner", "ESP32-", "Robridge"])
    sources = ra.get("sources") or ["esp32", "esp32_basic", "esp32_live_scanner"]
    ra["sources"] = [str(s).lower() for s in sources]
    return ra


def is_dev_mode(cfg: Optional[Dict[str, Any]] = None) -> bool:
    env = os.getenv("SCANHUB_DEV_MODE", "").strip().lower()
    if env:
        return env in _TRUTHY
    return bool(_section(cfg, "app").get("dev_mode", False))


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """
    Return log level as 'INFO'/'DEBUG', etc.
    Server access logging is controlled separately by Uvicorn.
    """
    lvl = _section(cfg, "log").get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) for launching with uvicorn from code."""
    server = _section(cfg, "app").get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 3001
# ---------- End of config_loader.py ----------
