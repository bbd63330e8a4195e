"""Scanner adapter: framing, port choice and the reconnect state machine."""

import asyncio
import logging
import threading
import time
from types import SimpleNamespace

import pytest
import serial

from aliasbridge.scanner import (
    DEFAULT_VENDOR_SIGNATURES,
    MIN_RETRY_INTERVAL_S,
    LineFramer,
    ScannerAdapter,
    ScannerConfig,
    ScannerState,
    clean_line,
    pick_port,
)


def _port(device, manufacturer=None, description=None, product=None, hwid=None):
    return SimpleNamespace(
        device=device, manufacturer=manufacturer, description=description, product=product, hwid=hwid
    )


class FakeSerial:
    """Hands out queued chunks, then either idles (timeout ticks) or 'unplugs'."""

    def __init__(self, chunks=(), unplug=True):
        self._chunks = list(chunks)
        self._unplug = unplug
        self.is_open = True
        self.in_waiting = 0
        self._lock = threading.Lock()

    def read(self, n):
        with self._lock:
            if self._chunks:
                return self._chunks.pop(0)
        if self._unplug:
            raise serial.SerialException("device reports readiness to read but returned no data")
        time.sleep(0.01)
        return b""

    def close(self):
        self.is_open = False


async def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestFraming:
    def test_clean_line(self):
        assert clean_line("  ABC123 \t") == "ABC123"
        assert clean_line("\x00AB\x00C\x00") == "ABC"
        assert clean_line("\x00\x00") == ""

    def test_split_on_cr_lf_crlf(self):
        f = LineFramer()
        assert f.feed(b"ONE\rTWO\nTHREE\r\nFOUR") == ["ONE", "TWO", "THREE"]
        assert f.feed(b"\r") == ["FOUR"]

    def test_partial_lines_are_buffered(self):
        f = LineFramer()
        assert f.feed(b"978020") == []
        assert f.feed(b"1633610\r") == ["9780201633610"]

    def test_scanned_text_keeps_case(self):
        events = []
        adapter = ScannerAdapter(ScannerConfig(), lambda c: None, events.append)
        adapter.handle_line("abc-01x")
        assert events[0].identifier == "abc-01x"
        assert events[0].source == "scanner"

    def test_nul_only_line_is_discarded(self):
        events = []
        adapter = ScannerAdapter(ScannerConfig(), {"ABC123": "Widget"}.get, events.append)
        f = LineFramer()

        for chunk in (b"ABC123\r", b"\x00\x00\r"):
            for line in f.feed(chunk):
                adapter.handle_line(line)

        assert [(e.identifier, e.known_name) for e in events] == [("ABC123", "Widget")]
        assert adapter.lines_discarded == 1

    def test_publish_failure_is_contained(self):
        def publish(evt):
            raise RuntimeError("hub gone")
        adapter = ScannerAdapter(ScannerConfig(), lambda c: None, publish)
        assert adapter.handle_line("ABC123") is None

    def test_scan_log_carries_timestamp(self, caplog):
        events = []
        adapter = ScannerAdapter(ScannerConfig(), lambda c: None, events.append)

        with caplog.at_level(logging.INFO, logger="aliasbridge.scanner"):
            adapter.handle_line("ABC123")

        record = next(r for r in caplog.records if r.getMessage() == "Scanned ABC123")
        assert record.seen_at == events[0].seen_at


class TestPickPort:
    def test_prefers_vendor_signature(self):
        ports = [
            _port("/dev/ttyS0", description="n/a"),
            _port("/dev/ttyACM0", manufacturer="Honeywell", description="Honeywell Scanning"),
            _port("/dev/ttyUSB0", description="USB Serial"),
        ]
        assert pick_port(ports, DEFAULT_VENDOR_SIGNATURES) == "/dev/ttyACM0"

    def test_matches_hwid_case_insensitively(self):
        ports = [_port("COM3", description="Other"), _port("COM7", hwid="USB VID:PID=1A86:7523 WCH.CN")]
        assert pick_port(ports, ["wch.cn"]) == "COM7"

    def test_falls_back_to_last_enumerated(self):
        ports = [_port("COM3", description="Bluetooth link"), _port("COM9", description="Modem")]
        assert pick_port(ports, DEFAULT_VENDOR_SIGNATURES) == "COM9"

    def test_no_ports(self):
        assert pick_port([], DEFAULT_VENDOR_SIGNATURES) is None


class TestScannerConfig:
    def test_defaults(self):
        cfg = ScannerConfig.from_cfg({})
        assert cfg.enabled is True
        assert cfg.port is None
        assert cfg.baud == 9600
        assert cfg.retry_interval_s == 3.0
        assert cfg.vendor_signatures == DEFAULT_VENDOR_SIGNATURES

    def test_overrides(self):
        cfg = ScannerConfig.from_cfg(
            {"port": "COM5", "baud": "115200", "retry_interval_s": 1, "vendor_signatures": ["acme"]}
        )
        assert (cfg.port, cfg.baud, cfg.retry_interval_s) == ("COM5", 115200, 1.0)
        assert cfg.vendor_signatures == ("acme",)

    def test_bad_baud(self):
        with pytest.raises(ValueError):
            ScannerConfig.from_cfg({"baud": "fast"})

    @pytest.mark.parametrize("value", [0, -1, 0.1])
    def test_retry_interval_has_a_floor(self, value, caplog):
        with caplog.at_level(logging.WARNING, logger="aliasbridge.scanner"):
            cfg = ScannerConfig.from_cfg({"retry_interval_s": value})

        assert cfg.retry_interval_s == MIN_RETRY_INTERVAL_S
        assert "retry_interval_s" in caplog.text

    def test_retry_interval_floor_applies_to_direct_construction(self):
        assert ScannerConfig(retry_interval_s=0).retry_interval_s == MIN_RETRY_INTERVAL_S


class TestReconnect:
    @pytest.mark.asyncio
    async def test_unplug_goes_back_to_searching_and_retries_once(self):
        events = []
        opened = []
        sessions = [
            FakeSerial([b"ABC123\r", b"\x00\x00\r"], unplug=True),
            FakeSerial(unplug=False),
        ]

        def open_port(port, baud, timeout):
            opened.append((port, baud, time.monotonic()))
            return sessions[len(opened) - 1]

        cfg = ScannerConfig(port="/dev/ttyACM0", retry_interval_s=0.5)
        adapter = ScannerAdapter(cfg, lambda c: None, events.append, open_port_fn=open_port)
        adapter.start()
        try:
            await _wait_for(lambda: adapter.retry_pending)
            assert adapter.state is ScannerState.SEARCHING
            assert [e.identifier for e in events] == ["ABC123"]
            assert len(opened) == 1

            await asyncio.sleep(0.2)
            assert len(opened) == 1  # backoff, not a tight loop

            await _wait_for(lambda: adapter.state is ScannerState.CONNECTED)
            assert len(opened) == 2
            assert opened[1][2] - opened[0][2] >= 0.4

            await asyncio.sleep(0.3)
            assert len(opened) == 2
            assert adapter.attempts == 2
        finally:
            await adapter.stop()

        assert adapter.state is ScannerState.STOPPED
        assert sessions[1].is_open is False

    @pytest.mark.asyncio
    async def test_no_ports_stays_searching(self):
        opened = []
        adapter = ScannerAdapter(
            ScannerConfig(retry_interval_s=10.0),
            lambda c: None,
            lambda e: None,
            list_ports_fn=lambda: [],
            open_port_fn=lambda *a: opened.append(a),
        )
        adapter.start()
        try:
            await _wait_for(lambda: adapter.retry_pending)
            assert adapter.state is ScannerState.SEARCHING
            assert opened == []
        finally:
            await adapter.stop()
        assert adapter.retry_pending is False

    @pytest.mark.asyncio
    async def test_discovers_port_when_none_configured(self):
        opened = []

        def open_port(port, baud, timeout):
            opened.append(port)
            return FakeSerial(unplug=False)

        adapter = ScannerAdapter(
            ScannerConfig(baud=19200),
            lambda c: None,
            lambda e: None,
            list_ports_fn=lambda: [_port("/dev/ttyS0"), _port("/dev/ttyACM0", manufacturer="Zebra")],
            open_port_fn=open_port,
        )
        adapter.start()
        try:
            await _wait_for(lambda: adapter.state is ScannerState.CONNECTED)
            assert opened == ["/dev/ttyACM0"]
            assert adapter.status()["port"] == "/dev/ttyACM0"
        finally:
            await adapter.stop()

    @pytest.mark.asyncio
    async def test_open_failure_schedules_retry(self):
        def open_port(port, baud, timeout):
            raise serial.SerialException(f"could not open port {port}: Permission denied")

        adapter = ScannerAdapter(
            ScannerConfig(port="COM5", retry_interval_s=10.0), lambda c: None, lambda e: None,
            open_port_fn=open_port,
        )
        adapter.start()
        try:
            await _wait_for(lambda: adapter.retry_pending)
            assert adapter.state is ScannerState.SEARCHING
            assert adapter.attempts == 1
        finally:
            await adapter.stop()

    @pytest.mark.asyncio
    async def test_overlapping_retry_is_ignored(self):
        adapter = ScannerAdapter(
            ScannerConfig(port="COM5"), lambda c: None, lambda e: None,
            open_port_fn=lambda *a: FakeSerial(unplug=False),
        )
        adapter.start()
        try:
            await _wait_for(lambda: adapter.state is ScannerState.CONNECTED)
            adapter._begin_attempt()  # a stray timer firing mid-session
            adapter._begin_attempt()
            assert adapter.attempts == 1
        finally:
            await adapter.stop()

    @pytest.mark.asyncio
    async def test_stop_before_start_is_harmless(self):
        adapter = ScannerAdapter(ScannerConfig(), lambda c: None, lambda e: None)
        await adapter.stop()
        assert adapter.state is ScannerState.STOPPED
