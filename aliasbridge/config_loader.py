# aliasbridge/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the alias bridge.

Single source of truth:
    config/config.yaml   (or $ALIASBRIDGE_CONFIG, or --config on the CLI)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- load_config(path: str|Path|None = None) -> dict
- get_server_bind(cfg) -> tuple[str, int]
- get_store_path(cfg) -> pathlib.Path
- get_scanner_cfg(cfg) -> dict
- get_card_cfg(cfg) -> dict
- get_hub_cfg(cfg) -> dict
- get_log_level(cfg, default: str = "INFO") -> str
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_CFG      = "ALIASBRIDGE_CONFIG"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_STORE = "data/aliases.json"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Copy config/config.yaml from the repository or point {ENV_CFG} at one.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file and return the raw dict (unmodified).

    Lookup order: explicit `path`, then $ALIASBRIDGE_CONFIG, then config/config.yaml.
    """
    if not path:
        path = os.getenv(ENV_CFG, "").strip() or None
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    return _load_yaml(cfg_path)


# ---------- Accessors ----------
def _section(cfg: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    sec = (cfg or {}).get(name) or {}
    if not isinstance(sec, dict):
        raise RuntimeError(f"CONFIG section '{name}' must be a mapping, not {type(sec).__name__}")
    return sec


def get_server_bind(cfg: Optional[Dict[str, Any]]) -> Tuple[str, int]:
    """Return (host, port) for the observer endpoint; defaults to 0.0.0.0:3000."""
    server = _section(cfg, "server")
    host = server.get("host") or DEFAULT_HOST
    try:
        port = int(server.get("port", DEFAULT_PORT))
    except (TypeError, ValueError):
        raise RuntimeError(f"Invalid server.port: {server.get('port')!r}") from None
    return str(host), port


def get_store_path(cfg: Optional[Dict[str, Any]]) -> Path:
    """Return absolute filesystem path to the alias table JSON file."""
    store = _section(cfg, "store")
    raw = store.get("path") or DEFAULT_STORE
    return _resolve_path(raw)


def get_scanner_cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return scanner configuration block or {}."""
    return _section(cfg, "scanner")


def get_card_cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return card reader configuration block or {}."""
    return _section(cfg, "card")


def get_hub_cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return _section(cfg, "hub")


def get_log_level(cfg: Optional[Dict[str, Any]], default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = _section(cfg, "log").get("level", default)
    # normalize common variants
    return str(lvl or default).upper()
# ---------- End of config_loader.py ----------
