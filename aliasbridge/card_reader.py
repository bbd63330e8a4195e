# ============================================================================
# Alias Bridge - Contactless Card Reader Adapter
# ============================================================================
# Purpose:
#   Turns PC/SC reader notifications into "identifier observed" events.
#
# Architecture:
#   - CardAdapter: pure translation layer. Runs on the event loop, looks the
#     alias up at the moment of the read and hands a TokenObserved to the hub.
#     Every notification handler degrades to logging; nothing it receives can
#     raise out of it.
#   - PcscCardSource: binds pyscard's ReaderMonitor/CardMonitor (which run in
#     their own threads) to a CardAdapter, marshalling every callback onto the
#     loop with call_soon_threadsafe.
#
# UID handling:
#   GET DATA (FF CA 00 00 00) returns the UID bytes; they are rendered as
#   uppercase hex with no separators ("A1B2C3D4"). Hex strings coming from
#   other front-ends are accepted and normalised the same way.
#
# Dependencies:
#   - pyscard (optional extra "card"); imported when the source starts.
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence, Set, Union

from .messages import SOURCE_CARD, TokenObserved

log = logging.getLogger("aliasbridge.card")

Lookup = Callable[[str], Optional[str]]
Publish = Callable[[TokenObserved], Any]

GET_UID_APDU = [0xFF, 0xCA, 0x00, 0x00, 0x00]


def normalize_uid(uid: Union[bytes, bytearray, Sequence[int], str]) -> str:
    """Uppercase hex, no separators. Accepts raw bytes, a list of ints or a hex string."""
    if isinstance(uid, str):
        text = "".join(ch for ch in uid if ch not in ": -\t\r\n")
    else:
        text = bytes(uid).hex()
    return text.upper()


class CardAdapter:
    """
    Receives reader-attached, reader-detached, card-presented, reader-error
    and service-error notifications. Emits one TokenObserved per card.
    """

    def __init__(self, lookup: Lookup, publish: Publish):
        self._lookup = lookup
        self._publish = publish
        self.readers: Set[str] = set()
        self.cards_seen = 0

    def reader_attached(self, reader: str) -> None:
        self.readers.add(str(reader))
        log.info("Reader ready: %s", reader)

    def reader_detached(self, reader: str) -> None:
        self.readers.discard(str(reader))
        log.info("Reader removed: %s", reader)

    def card_presented(self, reader: str, uid: Any) -> Optional[TokenObserved]:
        try:
            identifier = normalize_uid(uid)
            if not identifier:
                log.warning("Empty UID from %s ignored", reader)
                return None
            event = TokenObserved(identifier, SOURCE_CARD, self._lookup(identifier))
            self.cards_seen += 1
            log.info("Read %s on %s", identifier, reader, extra={"reader": reader, "seen_at": event.seen_at})
            self._publish(event)
            return event
        except Exception:
            log.exception("Card event from %s could not be handled", reader)
            return None

    def reader_error(self, reader: str, err: BaseException | str) -> None:
        log.error("Reader error on %s: %s", reader, err)

    def service_error(self, err: BaseException | str) -> None:
        log.error("PC/SC service error: %s", err)

    def status(self) -> dict:
        return {"readers": sorted(self.readers), "cards_seen": self.cards_seen}


# ------------------------------------------------------------
# pyscard binding
# ------------------------------------------------------------

class _ReaderWatch:
    """pyscard ReaderObserver: update(observable, (added, removed))."""

    def __init__(self, source: "PcscCardSource"):
        self.source = source

    def update(self, observable, actions) -> None:
        added, removed = actions
        for r in added:
            self.source.post(self.source.adapter.reader_attached, str(r))
        for r in removed:
            self.source.post(self.source.adapter.reader_detached, str(r))


class _CardWatch:
    """pyscard CardObserver: update(observable, (inserted, removed))."""

    def __init__(self, source: "PcscCardSource"):
        self.source = source

    def update(self, observable, actions) -> None:
        inserted, _removed = actions
        for card in inserted:
            self.source.read_card(card)


class PcscCardSource:
    def __init__(self, adapter: CardAdapter, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.adapter = adapter
        self._loop = loop
        self._reader_monitor = None
        self._card_monitor = None
        self._reader_watch = _ReaderWatch(self)
        self._card_watch = _CardWatch(self)

    @property
    def running(self) -> bool:
        return self._card_monitor is not None

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run `fn(*args)` on the loop; safe to call from monitor threads."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(fn, *args)

    def start(self) -> bool:
        if self.running:
            return True
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        try:
            from smartcard.CardMonitoring import CardMonitor
            from smartcard.ReaderMonitoring import ReaderMonitor
        except ImportError as e:
            log.error("pyscard not installed; card reading disabled (pip install 'aliasbridge[card]'): %s", e)
            return False

        try:
            self._reader_monitor = ReaderMonitor()
            self._reader_monitor.addObserver(self._reader_watch)
            self._card_monitor = CardMonitor()
            self._card_monitor.addObserver(self._card_watch)
        except Exception as e:
            self.adapter.service_error(e)
            self.stop()
            return False
        log.info("PC/SC monitoring started")
        return True

    def stop(self) -> None:
        for monitor, watch in (
            (self._card_monitor, self._card_watch),
            (self._reader_monitor, self._reader_watch),
        ):
            if monitor is None:
                continue
            try:
                monitor.deleteObserver(watch)
            except Exception as e:
                log.warning("Failed to detach PC/SC observer: %s", e)
        self._card_monitor = None
        self._reader_monitor = None

    def read_card(self, card: Any) -> None:
        """Fetch the UID of a freshly inserted card (monitor thread) and post it."""
        reader = str(getattr(card, "reader", None) or "unknown")
        conn = None
        try:
            conn = card.createConnection()
            conn.connect()
            response, sw1, sw2 = conn.transmit(GET_UID_APDU)
            if (sw1, sw2) != (0x90, 0x00) or not response:
                self.post(self.adapter.reader_error, reader, f"GET UID failed (SW={sw1:02X}{sw2:02X})")
                return
            log.debug("card_uid", extra={"reader": reader, "uid": bytes(response).hex()})
            self.post(self.adapter.card_presented, reader, bytes(response))
        except Exception as e:
            self.post(self.adapter.reader_error, reader, e)
        finally:
            if conn is not None:
                try:
                    conn.disconnect()
                except Exception as e:
                    log.debug("Disconnect from %s failed: %s", reader, e)

