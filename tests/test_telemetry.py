import sqlite3
import time

import pytest

from settings import ChannelConfig, ScheduleGrid
from telemetry import (
    FLUSH_TIMEOUT_SECONDS,
    RECORD_SIZE,
    MetricsSink,
    TelemetryBroadcaster,
    TelemetrySinkFault,
    build_telemetry_record,
    parse_telemetry_record,
)


def _values():
    return {
        "flow1": 12,
        "flow2": 0,
        "flow3": 255,
        "flow4": 1,
        "flow5": 2,
        "level": 180,
        "pressure": 33,
        "temp_cpu": 48,
        "temp_amb": 21,
        "temp_exp": 27,
    }


def test_record_layout():
    channels = [ChannelConfig(10 * i, 100 - i, 50 + i) for i in range(1, 6)]
    grid = ScheduleGrid()
    grid.slot_flags["noon"][1] = True
    grid.day_flags[6][0] = True
    grid.day_flags[6][4] = True
    record = build_telemetry_record(_values(), 0x92, 0x05, channels, grid)
    assert len(record) == RECORD_SIZE == 74
    # little-endian words: flow1 first, then status at word 5
    assert record[0:2] == b"\x0c\x00"
    assert record[10:12] == b"\x92\x00"

    decoded = parse_telemetry_record(record)
    assert decoded["flow3"] == 255
    assert decoded["io"] == 0x05
    assert decoded["temp_exp"] == 27
    assert decoded["volume"] == [10, 20, 30, 40, 50]
    assert decoded["rain_attenuation"] == [99, 98, 97, 96, 95]
    assert decoded["ground_attenuation"] == [51, 52, 53, 54, 55]
    assert decoded["slots"] == {"morning": 0, "noon": 0b10, "evening": 0}
    assert decoded["days"]["SUN"] == 0b10001
    assert decoded["days"]["MON"] == 0


def test_parse_rejects_short_payload():
    with pytest.raises(ValueError):
        parse_telemetry_record(b"\x00" * 10)


class _BrokenSocket:
    def sendto(self, data, addr):
        raise OSError("network unreachable")

    def close(self):
        pass


def test_broadcast_failure_is_wrapped():
    broadcaster = TelemetryBroadcaster("127.0.0.1", 12300)
    broadcaster.sock = _BrokenSocket()
    with pytest.raises(TelemetrySinkFault):
        broadcaster.send(b"\x00" * RECORD_SIZE)
    assert broadcaster.sock is None


def test_sink_flushes_rows(tmp_path):
    sink = MetricsSink(tmp_path / "db" / "sulama.db")
    sink.init_db()
    sink.record_signals(1000.0, {"flow1": 5, "rain": 210}, {"pump": True, "valve1": True})
    sink.log_event("watering", "info", "Channel 1 started", {"channel": 1})
    assert sink.pending() == 2
    assert sink.flush() == 2
    assert sink.pending() == 0

    conn = sqlite3.connect(tmp_path / "db" / "sulama.db")
    row = conn.execute("SELECT flow1, rain, pump, valve1, valve2 FROM signal_log").fetchone()
    conn.close()
    assert row == (5, 210, 1, 1, 0)

    events = sink.recent_events()
    assert events[0]["message"] == "Channel 1 started"
    assert events[0]["meta"] == {"channel": 1}


def test_flush_in_progress_is_not_waited_on(tmp_path):
    sink = MetricsSink(tmp_path / "sulama.db")
    sink.init_db()
    sink.log_event("system", "info", "boot")
    sink._flush_lock.acquire()
    try:
        assert sink.flush() == 0
    finally:
        sink._flush_lock.release()
    assert sink.pending() == 1


def test_database_failure_keeps_rows_queued(tmp_path):
    sink = MetricsSink(tmp_path / "missing-dir" / "sulama.db")
    sink.log_event("system", "info", "boot")
    with pytest.raises(TelemetrySinkFault):
        sink.flush()
    assert sink.pending() == 1


def test_locked_database_defers_flush_quickly(tmp_path):
    sink = MetricsSink(tmp_path / "sulama.db")
    sink.init_db()
    sink.log_event("system", "info", "boot")
    holder = sqlite3.connect(tmp_path / "sulama.db", isolation_level=None)
    holder.execute("BEGIN EXCLUSIVE")
    try:
        started = time.monotonic()
        with pytest.raises(TelemetrySinkFault):
            sink.flush()
        assert time.monotonic() - started < FLUSH_TIMEOUT_SECONDS + 0.5
    finally:
        holder.execute("ROLLBACK")
        holder.close()
    assert sink.pending() == 1
    assert sink.flush() == 1


def test_queue_is_bounded(tmp_path):
    sink = MetricsSink(tmp_path / "sulama.db", max_rows=3)
    for i in range(5):
        sink.log_event("system", "info", f"event {i}")
    assert sink.pending() == 3
    assert sink.dropped == 2
    assert [e[3] for e in sink.events] == ["event 2", "event 3", "event 4"]
