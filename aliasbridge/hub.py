# aliasbridge/hub.py
from __future__ import annotations
"""
Broadcast hub: the single fan-out point to browser observers and the single
fan-in point for their commands.

Design notes
------------
- Every observer gets its own bounded asyncio.Queue and a sender task, so a
  slow socket never stalls the others. A queue that fills up means the
  observer has stalled; it is disconnected (code 1013) instead of being sent
  a stream with holes in it. Browsers reconnect and get a fresh snapshot.
- The first thing queued for a new observer is the current alias table.
- Commands are serialised with one asyncio.Lock; the store write itself runs
  in a worker thread so card/scanner broadcasts keep flowing meanwhile.
- Table broadcasts are driven by the store's change notification (once per
  successful mutation), marshalled onto the loop with call_soon_threadsafe.
  No-op deletes therefore broadcast nothing.
"""

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Dict, Optional, Protocol

from .alias_store import AliasStore, AliasStoreError
from .messages import (
    Command,
    CommandError,
    DeleteAlias,
    DeleteBatchAlias,
    SaveAlias,
    SaveBatchAlias,
    TokenObserved,
    aliases_update,
    decode_command,
    error_message,
    save_success,
)

log = logging.getLogger("aliasbridge.hub")

CLOSE_TRY_AGAIN_LATER = 1013


class Observer(Protocol):
    """What the hub needs from a connected client (FastAPI's WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class _Channel:
    __slots__ = ("observer", "name", "queue", "task")

    def __init__(self, observer: Observer, name: str, maxsize: int):
        self.observer = observer
        self.name = name
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None


class BroadcastHub:
    def __init__(self, store: AliasStore, *, queue_size: int = 256):
        self.store = store
        self.queue_size = max(1, int(queue_size))
        self._channels: Dict[int, _Channel] = {}
        self._command_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ids = itertools.count(1)
        self._closers: set[asyncio.Task] = set()

        # Observability counters
        self.events_published = 0
        self.commands_ok = 0
        self.commands_failed = 0
        self.messages_dropped = 0

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def start(self) -> None:
        """Bind to the running loop and subscribe to store changes."""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self.store.on_change(self._on_store_change)

    async def stop(self) -> None:
        self.store.remove_listener(self._on_store_change)
        channels = list(self._channels.values())
        self._channels.clear()
        for ch in channels:
            if ch.task:
                ch.task.cancel()
        for ch in channels:
            if ch.task:
                with contextlib.suppress(asyncio.CancelledError):
                    await ch.task
        closers = list(self._closers)
        for t in closers:
            t.cancel()
        if closers:
            await asyncio.gather(*closers, return_exceptions=True)
        self._loop = None
        if channels:
            log.info("Hub stopped; released %d observer(s)", len(channels))

    @property
    def observer_count(self) -> int:
        return len(self._channels)

    # ------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------

    async def connect(self, observer: Observer) -> str:
        """Register an observer; its first message is always the current table."""
        if self._loop is None:
            self.start()
        ch = _Channel(observer, f"obs-{next(self._ids)}", self.queue_size)
        ch.queue.put_nowait(aliases_update(self.store.snapshot()))
        self._channels[id(observer)] = ch
        ch.task = asyncio.create_task(self._sender(ch), name=f"hub-{ch.name}")
        log.info("Observer %s connected (%d total)", ch.name, len(self._channels))
        return ch.name

    async def disconnect(self, observer: Observer) -> None:
        ch = self._channels.pop(id(observer), None)
        if ch is None:
            return
        if ch.task and ch.task is not asyncio.current_task():
            ch.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ch.task
        self._forget(ch)
        log.info("Observer %s disconnected (%d left)", ch.name, len(self._channels))

    async def wait_idle(self) -> None:
        """Wait until every queued message has been handed to its observer."""
        await asyncio.gather(*(ch.queue.join() for ch in list(self._channels.values())))

    async def _sender(self, ch: _Channel) -> None:
        while True:
            msg = await ch.queue.get()
            try:
                await ch.observer.send_json(msg)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.info("Send to %s failed (%s); dropping observer", ch.name, e)
                self._evict(ch)
                return
            finally:
                ch.queue.task_done()

    def _forget(self, ch: _Channel) -> None:
        if self._channels.get(id(ch.observer)) is ch:
            del self._channels[id(ch.observer)]
        # release anyone blocked in wait_idle()
        while not ch.queue.empty():
            ch.queue.get_nowait()
            ch.queue.task_done()

    def _evict(self, ch: _Channel) -> None:
        """Observer stalled or its socket failed: stop feeding it and close it (code 1013)."""
        self._forget(ch)
        if ch.task and ch.task is not asyncio.current_task():
            ch.task.cancel()
        t = asyncio.ensure_future(self._close_quietly(ch))
        self._closers.add(t)
        t.add_done_callback(self._closers.discard)

    async def _close_quietly(self, ch: _Channel) -> None:
        try:
            await ch.observer.close(code=CLOSE_TRY_AGAIN_LATER)
        except Exception as e:
            log.debug("Close of %s failed: %s", ch.name, e)

    # ------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------

    def broadcast(self, msg: Dict[str, Any]) -> int:
        """Queue `msg` for every connected observer. Returns how many got it."""
        delivered = 0
        for ch in list(self._channels.values()):
            try:
                ch.queue.put_nowait(msg)
                delivered += 1
            except asyncio.QueueFull:
                self.messages_dropped += 1
                log.warning("Observer %s is not keeping up (%d queued); disconnecting", ch.name, ch.queue.qsize())
                self._evict(ch)
        return delivered

    def send_to(self, observer: Observer, msg: Dict[str, Any]) -> bool:
        ch = self._channels.get(id(observer))
        if ch is None:
            return False
        try:
            ch.queue.put_nowait(msg)
        except asyncio.QueueFull:
            self.messages_dropped += 1
            log.warning("Observer %s is not keeping up; disconnecting", ch.name)
            self._evict(ch)
            return False
        return True

    def publish(self, event: TokenObserved) -> int:
        """Broadcast an identifier-observed event. Must run on the hub's loop."""
        self.events_published += 1
        return self.broadcast(event.to_message())

    def _on_store_change(self, table: Dict[str, str]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        msg = aliases_update(table)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self.broadcast(msg)
        else:
            loop.call_soon_threadsafe(self.broadcast, msg)

    # ------------------------------------------------------------
    # Fan-in
    # ------------------------------------------------------------

    async def handle_message(self, observer: Observer, raw: Any) -> Optional[bool]:
        """
        Decode and execute one observer message.

        Returns None when the message was dropped as malformed, otherwise
        whether the command succeeded.
        """
        try:
            cmd = decode_command(raw)
        except CommandError as e:
            ch = self._channels.get(id(observer))
            log.warning("Dropped message from %s: %s", ch.name if ch else "observer", e)
            return None
        return await self.execute(observer, cmd)

    async def execute(self, observer: Optional[Observer], cmd: Command) -> bool:
        async with self._command_lock:
            try:
                await asyncio.to_thread(self._apply, cmd)
            except AliasStoreError as e:
                self.commands_failed += 1
                if observer is not None:
                    self.send_to(observer, error_message(str(e)))
                return False
            except Exception as e:
                self.commands_failed += 1
                log.exception("Command %s failed", cmd.type)
                if observer is not None:
                    self.send_to(observer, error_message(f"{type(e).__name__}: {e}"))
                return False
        self.commands_ok += 1
        if observer is not None:
            self.send_to(observer, save_success())
        return True

    def _apply(self, cmd: Command) -> None:
        store = self.store
        if isinstance(cmd, SaveAlias):
            store.assign(cmd.uid, cmd.name)
        elif isinstance(cmd, SaveBatchAlias):
            store.assign_batch(cmd.uids, cmd.name)
        elif isinstance(cmd, DeleteAlias):
            store.remove(cmd.uid)
        elif isinstance(cmd, DeleteBatchAlias):
            store.remove_batch(cmd.uids)
        else:
            raise CommandError(f"no handler for {type(cmd).__name__}")

    def status(self) -> Dict[str, Any]:
        return {
            "observers": self.observer_count,
            "events_published": self.events_published,
            "commands_ok": self.commands_ok,
            "commands_failed": self.commands_failed,
            "messages_dropped": self.messages_dropped,
        }
