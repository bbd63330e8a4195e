"""Shared fixtures: a temp-dir alias store, fake observers, a hardware-free config."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from aliasbridge.alias_store import AliasStore


class FakeObserver:
    """Stands in for a WebSocket: records everything the hub sends it."""

    def __init__(self, *, fail_send: bool = False, block_send: bool = False, block_close: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Optional[int] = None
        self.fail_send = fail_send
        self.block_send = block_send
        self.block_close = block_close
        self.close_cancelled = False
        self.started = asyncio.Event()

    async def send_json(self, data: Any) -> None:
        self.started.set()
        if self.fail_send:
            raise RuntimeError("socket is closed")
        if self.block_send:
            await asyncio.Event().wait()
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        if self.block_close:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.close_cancelled = True
                raise

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "aliases.json"


@pytest.fixture
def store(store_path: Path) -> AliasStore:
    s = AliasStore(store_path)
    s.load()
    return s


@pytest.fixture
def bridge_cfg(store_path: Path) -> Dict[str, Any]:
    """Config with both device adapters switched off."""
    return {
        "server": {"host": "127.0.0.1", "port": 3000},
        "store": {"path": str(store_path)},
        "hub": {"queue_size": 64},
        "card": {"enabled": False},
        "scanner": {"enabled": False},
        "log": {"level": "DEBUG"},
    }
