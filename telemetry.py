import json
import logging
import socket
import sqlite3
import struct
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from settings import SLOTS, WEEKDAYS, ChannelConfig, ScheduleGrid

logger = logging.getLogger(__name__)

RECORD_FORMAT = "<37h"
RECORD_SIZE = struct.calcsize(RECORD_FORMAT)
SENSOR_ORDER = ["flow1", "flow2", "flow3", "flow4", "flow5"]
ENV_ORDER = ["level", "pressure", "temp_cpu", "temp_amb", "temp_exp"]
SIGNAL_COLUMNS = [
    "flow1",
    "flow2",
    "flow3",
    "flow4",
    "flow5",
    "rain",
    "ground",
    "level",
    "pressure",
    "temp_cpu",
    "temp_amb",
    "temp_exp",
]
ACTUATOR_COLUMNS = ["pump", "valve1", "valve2", "valve3", "valve4", "valve5"]
MAX_QUEUED_ROWS = 5000
# a locked database defers the flush to the next tick
FLUSH_TIMEOUT_SECONDS = 0.1


class TelemetrySinkFault(Exception):
    pass


def build_telemetry_record(
    values: Dict[str, int],
    status_bits: int,
    io_bits: int,
    channels: List[ChannelConfig],
    grid: ScheduleGrid,
) -> bytes:
    words: List[int] = [int(values.get(q, 0)) for q in SENSOR_ORDER]
    words += [status_bits, io_bits]
    words += [int(values.get(q, 0)) for q in ENV_ORDER]
    words += [c.target_volume for c in channels]
    words += [c.rain_attenuation for c in channels]
    words += [c.ground_attenuation for c in channels]
    words += [grid.slot_bits(slot) for slot in SLOTS]
    words += [grid.day_bits(day) for day in range(len(WEEKDAYS))]
    return struct.pack(RECORD_FORMAT, *words)


def parse_telemetry_record(payload: bytes) -> Dict[str, Any]:
    """Decode a broadcast record, for monitors and the bench scripts."""
    if len(payload) != RECORD_SIZE:
        raise ValueError(f"expected {RECORD_SIZE} bytes, got {len(payload)}")
    words = struct.unpack(RECORD_FORMAT, payload)
    out: Dict[str, Any] = dict(zip(SENSOR_ORDER, words[0:5]))
    out["status"] = words[5]
    out["io"] = words[6]
    out.update(zip(ENV_ORDER, words[7:12]))
    out["volume"] = list(words[12:17])
    out["rain_attenuation"] = list(words[17:22])
    out["ground_attenuation"] = list(words[22:27])
    out["slots"] = dict(zip(SLOTS, words[27:30]))
    out["days"] = dict(zip(WEEKDAYS, words[30:37]))
    return out


class TelemetryBroadcaster:
    def __init__(self, addr: str = "255.255.255.255", port: int = 12300) -> None:
        self.addr = addr
        self.port = port
        self.sock: Optional[socket.socket] = None

    def _socket(self) -> socket.socket:
        if self.sock is None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            self.sock = sock
        return self.sock

    def send(self, record: bytes) -> None:
        try:
            self._socket().sendto(record, (self.addr, self.port))
        except OSError as exc:
            # recreate on the next tick
            self.close()
            raise TelemetrySinkFault(f"broadcast to {self.addr}:{self.port} failed: {exc}") from exc

    def close(self) -> None:
        if self.sock is not None:
            self.sock.close()
            self.sock = None


class MetricsSink:
    """Append-only signal and event rows in SQLite.

    Rows are queued in memory and written in one transaction per flush. A
    flush that is already running is never waited on.
    """

    def __init__(self, db_path: Path, max_rows: int = MAX_QUEUED_ROWS) -> None:
        self.db_path = db_path
        self.max_rows = max_rows
        self.lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self.signals: Deque[Tuple[Any, ...]] = deque()
        self.events: Deque[Tuple[Any, ...]] = deque()
        self.dropped = 0

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        signal_cols = ",\n".join(f"            {c} INTEGER" for c in SIGNAL_COLUMNS + ACTUATOR_COLUMNS)
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS signal_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts REAL NOT NULL,
{signal_cols}
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts REAL NOT NULL,
                category TEXT,
                level TEXT,
                message TEXT,
                meta TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_signal_log_ts ON signal_log (ts)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_event_log_ts ON event_log (ts)")
        conn.commit()
        conn.close()

    def _enqueue(self, queue: Deque[Tuple[Any, ...]], row: Tuple[Any, ...]) -> None:
        with self.lock:
            if len(self.signals) + len(self.events) >= self.max_rows:
                victim = queue if queue else (self.signals if self.signals else self.events)
                victim.popleft()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning("Metrics queue full, %d rows dropped", self.dropped)
            queue.append(row)

    def record_signals(self, ts: float, values: Dict[str, int], actuators: Dict[str, bool]) -> None:
        row = (ts,) + tuple(int(values.get(c, 0)) for c in SIGNAL_COLUMNS)
        row += tuple(1 if actuators.get(c) else 0 for c in ACTUATOR_COLUMNS)
        self._enqueue(self.signals, row)

    def log_event(self, category: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        payload = json.dumps(meta) if meta else None
        self._enqueue(self.events, (time.time(), category, level, message, payload))

    def pending(self) -> int:
        with self.lock:
            return len(self.signals) + len(self.events)

    def flush(self) -> int:
        """Write queued rows; returns how many were written."""
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            with self.lock:
                signals = list(self.signals)
                events = list(self.events)
            if not signals and not events:
                return 0
            placeholders = ", ".join("?" for _ in range(1 + len(SIGNAL_COLUMNS) + len(ACTUATOR_COLUMNS)))
            columns = ", ".join(["ts"] + SIGNAL_COLUMNS + ACTUATOR_COLUMNS)
            try:
                conn = sqlite3.connect(self.db_path, timeout=FLUSH_TIMEOUT_SECONDS)
                try:
                    with conn:
                        conn.executemany(f"INSERT INTO signal_log ({columns}) VALUES ({placeholders})", signals)
                        conn.executemany(
                            "INSERT INTO event_log (ts, category, level, message, meta) VALUES (?, ?, ?, ?, ?)",
                            events,
                        )
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise TelemetrySinkFault(f"metrics flush failed: {exc}") from exc
            with self.lock:
                # rows queued while writing stay for the next flush
                for _ in range(min(len(signals), len(self.signals))):
                    self.signals.popleft()
                for _ in range(min(len(events), len(self.events))):
                    self.events.popleft()
            return len(signals) + len(events)
        finally:
            self._flush_lock.release()

    def recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(
                "SELECT ts, category, level, message, meta FROM event_log ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        out = []
        for row in rows:
            item = dict(row)
            item["meta"] = json.loads(item["meta"]) if item["meta"] else None
            out.append(item)
        return out
