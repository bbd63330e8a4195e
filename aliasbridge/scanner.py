"""
Alias Bridge - Serial Barcode Scanner Adapter
=============================================

Purpose
-------
Keep a connection to a line-oriented serial barcode scanner and turn every
scanned line into an "identifier observed" event.

Key behaviors
-------------
- State machine:  SEARCHING -> CONNECTING -> CONNECTED -> (error/unplug) -> SEARCHING
  with STOPPED as the terminal state once the bridge shuts down.
- Retries run on a fixed interval (default 3 s, floor 0.5 s) through ONE loop.call_later
  handle. A retry that fires while an attempt is still running is ignored, so
  there is never more than one connection attempt in flight.
- Port discovery (only when no fixed port is configured):
    * prefer a port whose manufacturer/description/product/hwid mentions one
      of the configured vendor signatures
    * else the last port the OS enumerated
    * else stay SEARCHING and retry later
- Framing: CR, LF or CRLF terminate a line. Each line has NUL characters
  removed and whitespace trimmed; empty results are discarded. Text is
  otherwise passed through untouched (no case normalisation).

Dependencies
------------
- pyserial: serial.Serial and serial.tools.list_ports.comports. Blocking calls
  are pushed to worker threads with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import serial
from serial.tools import list_ports

from .messages import SOURCE_SCANNER, TokenObserved

log = logging.getLogger("aliasbridge.scanner")

Lookup = Callable[[str], Optional[str]]
Publish = Callable[[TokenObserved], Any]

DEFAULT_VENDOR_SIGNATURES = (
    "honeywell", "zebra", "symbol", "datalogic", "newland", "netum",
    "barcode", "scanner", "ftdi", "prolific", "silicon labs", "wch.cn", "ch340",
)

# lower bound for retry_interval_s
MIN_RETRY_INTERVAL_S = 0.5


class ScannerState(str, Enum):
    SEARCHING = "searching"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


@dataclass
class ScannerConfig:
    enabled: bool = True
    port: Optional[str] = None
    baud: int = 9600
    retry_interval_s: float = 3.0
    read_timeout_s: float = 0.25
    vendor_signatures: tuple[str, ...] = DEFAULT_VENDOR_SIGNATURES

    def __post_init__(self) -> None:
        if self.retry_interval_s < MIN_RETRY_INTERVAL_S:
            log.warning(
                "scanner.retry_interval_s=%s is below %.1fs; using %.1fs",
                self.retry_interval_s, MIN_RETRY_INTERVAL_S, MIN_RETRY_INTERVAL_S,
            )
            self.retry_interval_s = MIN_RETRY_INTERVAL_S

    @classmethod
    def from_cfg(cls, sc: Optional[Dict[str, Any]]) -> "ScannerConfig":
        sc = sc or {}
        sigs = sc.get("vendor_signatures")
        baud_value = sc.get("baud") or sc.get("baudrate") or 9600
        try:
            baud = int(baud_value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid scanner baud value: {baud_value!r}") from None
        return cls(
            enabled=bool(sc.get("enabled", True)),
            port=(str(sc["port"]).strip() or None) if sc.get("port") else None,
            baud=baud,
            retry_interval_s=float(sc.get("retry_interval_s", 3.0)),
            read_timeout_s=float(sc.get("read_timeout_s", 0.25)),
            vendor_signatures=tuple(str(s) for s in sigs) if sigs is not None else DEFAULT_VENDOR_SIGNATURES,
        )


# ------------------------------------------------------------
# Parsing helpers
# ------------------------------------------------------------

_EOL = re.compile(rb"\r\n|\r|\n")


def clean_line(text: str) -> str:
    """Drop embedded NULs and surrounding whitespace."""
    return text.replace("\x00", "").strip()


class LineFramer:
    """Accumulates raw serial chunks and returns complete lines."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buf = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._buf += chunk
        parts = _EOL.split(self._buf)
        self._buf = parts.pop()  # tail (possibly partial line)
        return [p.decode(self.encoding, errors="replace") for p in parts]

    def reset(self) -> None:
        self._buf = b""


def _descriptor(port: Any) -> str:
    fields = (
        getattr(port, "manufacturer", None),
        getattr(port, "description", None),
        getattr(port, "product", None),
        getattr(port, "hwid", None),
    )
    return " ".join(str(f) for f in fields if f).lower()


def pick_port(ports: Iterable[Any], signatures: Iterable[str]) -> Optional[str]:
    """Choose which enumerated port to open, or None if there are none."""
    ports = list(ports)
    if not ports:
        return None
    sigs = [s.lower() for s in signatures if s]
    for p in ports:
        desc = _descriptor(p)
        if any(s in desc for s in sigs):
            return p.device
    return ports[-1].device


def _comports() -> List[Any]:
    return list(list_ports.comports())


def _open_serial(port: str, baud: int, timeout: float) -> serial.Serial:
    return serial.Serial(port, baud, bytesize=8, parity="N", stopbits=1, timeout=timeout)


def _read_chunk(ser: Any) -> bytes:
    waiting = getattr(ser, "in_waiting", 0) or 0
    return ser.read(waiting or 1)


# ------------------------------------------------------------
# Adapter
# ------------------------------------------------------------

class ScannerAdapter:
    def __init__(
        self,
        cfg: ScannerConfig,
        lookup: Lookup,
        publish: Publish,
        *,
        list_ports_fn: Callable[[], Iterable[Any]] = _comports,
        open_port_fn: Callable[[str, int, float], Any] = _open_serial,
    ):
        self.cfg = cfg
        self._lookup = lookup
        self._publish = publish
        self._list_ports = list_ports_fn
        self._open_port = open_port_fn

        self.state = ScannerState.STOPPED
        self.port: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._retry: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

        # Observability counters
        self.attempts = 0
        self.lines_accepted = 0
        self.lines_discarded = 0

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        if self.state is not ScannerState.STOPPED:
            return
        self._loop = asyncio.get_running_loop()
        self._set_state(ScannerState.SEARCHING)
        self._begin_attempt()

    async def stop(self) -> None:
        self._set_state(ScannerState.STOPPED)
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "port": self.port,
            "fixed_port": self.cfg.port,
            "attempts": self.attempts,
            "lines_accepted": self.lines_accepted,
            "lines_discarded": self.lines_discarded,
        }

    # ---------------- state machine ----------------

    def _set_state(self, state: ScannerState) -> None:
        if state is self.state:
            return
        log.info("Scanner %s -> %s", self.state.value, state.value)
        self.state = state

    def _schedule_retry(self) -> None:
        if self.state is ScannerState.STOPPED or self._retry is not None or self._loop is None:
            return
        self._retry = self._loop.call_later(self.cfg.retry_interval_s, self._begin_attempt)
        log.debug("Scanner retry in %.1fs", self.cfg.retry_interval_s)

    def _begin_attempt(self) -> None:
        self._retry = None
        if self.state is ScannerState.STOPPED or self._loop is None:
            return
        if self._task is not None and not self._task.done():
            return
        self.attempts += 1
        self._task = self._loop.create_task(self._run_once(), name="scanner-connection")

    async def _run_once(self) -> None:
        ser = None
        try:
            self._set_state(ScannerState.SEARCHING)
            port = self.cfg.port or await self._discover()
            if not port:
                log.debug("No serial port available")
                return

            self.port = port
            self._set_state(ScannerState.CONNECTING)
            ser = await asyncio.to_thread(self._open_port, port, self.cfg.baud, self.cfg.read_timeout_s)
            self._set_state(ScannerState.CONNECTED)
            log.info("Scanner connected on %s @ %d baud", port, self.cfg.baud)

            await self._read_loop(ser)
            log.warning("Scanner port %s closed", port)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Port error, unplug, access denied, etc. -> back to searching
            log.warning("Scanner error on %s: %s", self.port or "<no port>", e)
        finally:
            if ser is not None:
                with contextlib.suppress(Exception):
                    ser.close()
            if self.state is not ScannerState.STOPPED:
                self._set_state(ScannerState.SEARCHING)
                self._schedule_retry()

    async def _discover(self) -> Optional[str]:
        ports = await asyncio.to_thread(self._list_ports)
        return pick_port(ports, self.cfg.vendor_signatures)

    async def _read_loop(self, ser: Any) -> None:
        framer = LineFramer()
        while getattr(ser, "is_open", True):
            chunk = await asyncio.to_thread(_read_chunk, ser)
            if not chunk:
                # timeout tick; keep polling
                continue
            log.debug("serial_chunk", extra={"port": self.port, "raw": repr(chunk)})
            for line in framer.feed(chunk):
                self.handle_line(line)

    # ---------------- events ----------------

    def handle_line(self, text: str) -> Optional[TokenObserved]:
        code = clean_line(text)
        if not code:
            self.lines_discarded += 1
            log.debug("scan_discarded", extra={"raw": repr(text)})
            return None
        try:
            event = TokenObserved(code, SOURCE_SCANNER, self._lookup(code))
            self.lines_accepted += 1
            log.info("Scanned %s", code, extra={"port": self.port, "seen_at": event.seen_at})
            self._publish(event)
            return event
        except Exception:
            log.exception("Scanned line %r could not be handled", code)
            return None
