"""
Command-line entry point.

    aliasbridge --config /path/to/config.yaml
    python -m aliasbridge.main --port 3000 --log-level DEBUG
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import uvicorn

from .config_loader import get_log_level, get_server_bind, load_config
from .server import create_app


LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def resolve_log_level(value: Optional[str]) -> Optional[str]:
    """Canonical level name understood by both logging and uvicorn, or None if unknown."""
    name = str(value or "").strip().upper()
    name = _LEVEL_ALIASES.get(name, name)
    return name if name in LOG_LEVELS else None


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Card reader / barcode scanner alias bridge")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--host", help="Bind address (overrides server.host)")
    ap.add_argument("--port", type=int, help="Bind port (overrides server.port)")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL (overrides log.level)")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    cfg = load_config(args.config)

    requested = args.log_level or get_log_level(cfg, "INFO")
    resolved = resolve_log_level(requested)
    level = resolved or "INFO"
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("aliasbridge")
    if resolved is None:
        log.warning("Unknown log level %r; using INFO", requested)

    host, port = get_server_bind(cfg)
    host = args.host or host
    port = args.port or port

    app = create_app(cfg)
    log.info("Listening on ws://%s:%d/", host, port)
    uvicorn.run(app, host=host, port=port, log_level=level.lower())


if __name__ == "__main__":
    main()
