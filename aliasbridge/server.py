from __future__ import annotations

"""
Alias Bridge - aliasbridge/server.py
------------------------------------
FastAPI app that bridges a PC/SC card reader and a serial barcode scanner to
browser observers over WebSocket.

Surfaces
  - WS  /  and  /ws   observer channel (aliases-update, card-read, save-success, error
                      out; save-alias, save-batch-alias, delete-alias,
                      delete-batch-alias in)
  - GET /healthz      liveness
  - GET /aliases      current alias table
  - GET /status       scanner state, attached readers, observer count

Bootstrap order on startup: load the alias table, bind the hub to the loop,
start the scanner state machine, start PC/SC monitoring. Shutdown runs the
reverse and cancels the scanner retry timer.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse

from .alias_store import AliasStore
from .card_reader import CardAdapter, PcscCardSource
from .config_loader import (
    get_card_cfg,
    get_hub_cfg,
    get_scanner_cfg,
    get_store_path,
    load_config,
)
from .hub import BroadcastHub
from .scanner import ScannerAdapter, ScannerConfig

log = logging.getLogger("aliasbridge")


class Bridge:
    """Owns the store, the hub and both device adapters."""

    def __init__(self, cfg: Dict[str, Any]):
        self.cfg = cfg
        self.store = AliasStore(get_store_path(cfg))
        self.hub = BroadcastHub(self.store, queue_size=int(get_hub_cfg(cfg).get("queue_size", 256)))

        self.cards = CardAdapter(self.store.get, self.hub.publish)
        card_cfg = get_card_cfg(cfg)
        self.card_source: Optional[PcscCardSource] = (
            PcscCardSource(self.cards) if bool(card_cfg.get("enabled", True)) else None
        )

        scan_cfg = ScannerConfig.from_cfg(get_scanner_cfg(cfg))
        self.scanner: Optional[ScannerAdapter] = (
            ScannerAdapter(scan_cfg, self.store.get, self.hub.publish) if scan_cfg.enabled else None
        )

    async def start(self) -> None:
        self.store.load()
        self.hub.start()
        if self.scanner is not None:
            self.scanner.start()
        else:
            log.info("Serial scanner disabled")
        if self.card_source is not None:
            self.card_source.start()
        else:
            log.info("Card reader disabled")
        log.info("--- alias bridge ready (%d aliases, store=%s) ---", len(self.store), self.store.path)

    async def stop(self) -> None:
        if self.card_source is not None:
            self.card_source.stop()
        if self.scanner is not None:
            await self.scanner.stop()
        await self.hub.stop()
        log.info("Alias bridge stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "aliases": len(self.store),
            "scanner": self.scanner.status() if self.scanner else {"state": "disabled"},
            "card": {
                "enabled": self.card_source is not None,
                "monitoring": bool(self.card_source and self.card_source.running),
                **self.cards.status(),
            },
            "hub": self.hub.status(),
        }


def create_app(cfg: Optional[Dict[str, Any]] = None, bridge: Optional[Bridge] = None) -> FastAPI:
    if bridge is None:
        bridge = Bridge(cfg if cfg is not None else load_config())

    app = FastAPI(title="Alias Bridge", version="0.1.0")
    app.state.bridge = bridge

    @app.on_event("startup")
    async def start_bridge() -> None:
        await bridge.start()

    @app.on_event("shutdown")
    async def stop_bridge() -> None:
        await bridge.stop()

    async def observer_session(websocket: WebSocket) -> None:
        await websocket.accept()
        hub = bridge.hub
        name = await hub.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await hub.handle_message(websocket, raw)
        except Exception as e:
            # closed under us (e.g. evicted for not keeping up)
            log.info("Observer %s session ended: %s", name, e)
        finally:
            await hub.disconnect(websocket)

    app.add_api_websocket_route("/", observer_session)
    app.add_api_websocket_route("/ws", observer_session)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "aliasbridge"}

    @app.get("/aliases")
    async def aliases():
        return JSONResponse(bridge.store.snapshot())

    @app.get("/status")
    async def status():
        return bridge.status()

    return app
