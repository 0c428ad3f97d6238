import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from hardware import (
    FLOW_QUANTITIES,
    ActuatorFault,
    ActuatorRejected,
    BusFault,
    SensorFault,
)
from settings import CHANNEL_COUNT, ChannelConfig, ControllerSettings, ScheduleGrid
from telemetry import TelemetrySinkFault, build_telemetry_record

logger = logging.getLogger(__name__)

QUANTITIES = FLOW_QUANTITIES + [
    "rain",
    "ground",
    "level",
    "pressure",
    "temp_cpu",
    "temp_amb",
    "temp_exp",
]

SENSOR_LOW = 100
SENSOR_HIGH = 200

STATUS_RAIN_FAULT = 0x01
STATUS_RAIN = 0x02
STATUS_GROUND_FAULT = 0x04
STATUS_GROUND = 0x08
STATUS_RAIL_BITS = {"5v": 0x10, "12v": 0x20, "24v": 0x40}
STATUS_SENSOR_FAULT = 0x80

SLOT_TIMES = {
    "morning": dt_time(7, 0, 1),
    "noon": dt_time(12, 0, 1),
    "evening": dt_time(18, 40, 1),
}


def _emit(events: Any, category: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
    if events is not None:
        events.log_event(category, level, message, meta)


# Sensor cache

@dataclass
class Reading:
    value: int = 0
    last_good: int = 0
    stale_ticks: int = 0
    refresh_interval: int = 1
    faults: int = 0
    failed: bool = False


@dataclass
class SensorSnapshot:
    values: Dict[str, int]
    failed: List[str] = field(default_factory=list)
    tick: int = 0
    ts: float = 0.0

    def __getitem__(self, quantity: str) -> int:
        return self.values[quantity]

    @property
    def faulted(self) -> bool:
        return bool(self.failed)


class SensorCache:
    """Last-known-good readings for every monitored quantity.

    Slow sensors are only read every ``refresh_interval`` ticks; a failed read
    keeps the previous good value and is retried on the next tick.
    """

    def __init__(
        self,
        bus: Any,
        refresh_ticks: Optional[Dict[str, int]] = None,
        lock: Any = None,
        events: Any = None,
    ) -> None:
        self.bus = bus
        self.lock = lock or threading.RLock()
        self.events = events
        self.tick = 0
        intervals = refresh_ticks or {}
        self.readings: Dict[str, Reading] = {}
        for quantity in QUANTITIES:
            interval = max(1, int(intervals.get(quantity, 1)))
            # first refresh always goes to the bus
            self.readings[quantity] = Reading(stale_ticks=interval, refresh_interval=interval)

    def refresh(self) -> SensorSnapshot:
        failed: List[str] = []
        with self.lock:
            self.tick += 1
            for quantity, reading in self.readings.items():
                reading.stale_ticks += 1
                if reading.stale_ticks < reading.refresh_interval:
                    continue
                try:
                    self._read(quantity, reading)
                except SensorFault:
                    failed.append(quantity)
            return self._snapshot(failed)

    def poll(self, quantity: str) -> int:
        """Read one quantity now, bypassing the refresh interval.

        Raises SensorFault when the bus read fails; the cached value is kept.
        """
        with self.lock:
            return self._read(quantity, self.readings[quantity])

    def _read(self, quantity: str, reading: Reading) -> int:
        try:
            raw = int(self.bus.read(quantity)) & 0xFF
        except BusFault as exc:
            reading.faults += 1
            reading.failed = True
            reading.value = reading.last_good
            logger.warning("Sensor %s read failed (%d): %s", quantity, reading.faults, exc)
            _emit(
                self.events,
                "sensor",
                "warning",
                f"{quantity} read failed",
                {"quantity": quantity, "faults": reading.faults, "error": str(exc)},
            )
            raise SensorFault(f"{quantity}: {exc}") from exc
        reading.value = raw
        reading.last_good = raw
        reading.stale_ticks = 0
        reading.failed = False
        return raw

    def snapshot(self) -> SensorSnapshot:
        with self.lock:
            return self._snapshot([q for q, r in self.readings.items() if r.failed])

    def _snapshot(self, failed: List[str]) -> SensorSnapshot:
        return SensorSnapshot(
            values={q: r.last_good for q, r in self.readings.items()},
            failed=failed,
            tick=self.tick,
            ts=time.time(),
        )

    def fault_counts(self) -> Dict[str, int]:
        with self.lock:
            return {q: r.faults for q, r in self.readings.items()}

    def reset_flow_counters(self) -> None:
        with self.lock:
            self.bus.reset_flow_counters()


# Derived status

@dataclass(frozen=True)
class StatusBits:
    bits: int
    rain_active: bool
    ground_active: bool


def derive_status(snapshot: SensorSnapshot, rails_ok: Dict[str, bool]) -> StatusBits:
    rain = snapshot["rain"]
    ground = snapshot["ground"]
    bits = 0
    if rain < SENSOR_LOW:
        bits |= STATUS_RAIN_FAULT
    if rain > SENSOR_HIGH:
        bits |= STATUS_RAIN
    if ground < SENSOR_LOW:
        bits |= STATUS_GROUND_FAULT
    if ground > SENSOR_HIGH:
        bits |= STATUS_GROUND
    for rail, bit in STATUS_RAIL_BITS.items():
        if rails_ok.get(rail):
            bits |= bit
    if snapshot.faulted:
        bits |= STATUS_SENSOR_FAULT
    return StatusBits(bits=bits, rain_active=rain > SENSOR_HIGH, ground_active=ground > SENSOR_HIGH)


def io_bits(pump_on: bool, valves_open: List[bool]) -> int:
    bits = 0x01 if pump_on else 0
    for idx, is_open in enumerate(valves_open):
        if is_open:
            bits |= 1 << (idx + 1)
    return bits


# Volume calculator

def effective_volume(
    config: ChannelConfig,
    rain_active: bool,
    ground_active: bool,
    legacy_truncation: bool = False,
) -> int:
    rain = config.rain_attenuation if rain_active else 100
    ground = config.ground_attenuation if ground_active else 100
    if legacy_truncation:
        # historical behaviour: each percentage is divided down before use
        volume = config.target_volume * (rain // 100) * (ground // 100)
    else:
        volume = config.target_volume * rain * ground // 10000
    return max(0, min(255, volume))


# Actuator gateway

class ActuatorGateway:
    """Pump and valve lines with the no-load pumping interlock.

    The pump is only switched on while at least one valve is open, and with
    ``exclusive`` set only one valve may be open at a time.
    """

    def __init__(
        self,
        gpio: Any,
        pump_pin: int,
        valve_pins: List[int],
        power_pins: Dict[str, int],
        active_low: bool = False,
        exclusive: bool = True,
        lock: Any = None,
        events: Any = None,
    ) -> None:
        self.gpio = gpio
        self.active_low = active_low
        self.exclusive = exclusive
        self.lock = lock or threading.RLock()
        self.events = events
        self.pins: Dict[str, int] = {"pump": int(pump_pin)}
        for idx, pin in enumerate(valve_pins, start=1):
            self.pins[f"valve{idx}"] = int(pin)
        self.power_pins = {name: int(pin) for name, pin in power_pins.items()}
        self.state: Dict[str, bool] = {name: False for name in self.pins}

    def setup(self) -> None:
        with self.lock:
            for name, pin in self.pins.items():
                self.gpio.setup_output(pin, self.active_low)
                self.state[name] = False
            for pin in self.power_pins.values():
                self.gpio.setup_input(pin)

    def open_valves(self) -> List[int]:
        with self.lock:
            return [ch for ch in range(1, CHANNEL_COUNT + 1) if self.state.get(f"valve{ch}")]

    def is_on(self, line: str) -> bool:
        with self.lock:
            return self.state.get(line, False)

    def set_valve(self, channel: int, open_: bool, reason: str = "manual") -> None:
        name = f"valve{channel}"
        if name not in self.pins:
            raise ActuatorRejected(f"Unknown valve: {channel}")
        with self.lock:
            if open_:
                others = [ch for ch in self.open_valves() if ch != channel]
                if self.exclusive and others:
                    self._reject(f"valve {channel} refused, valve {others[0]} already open")
            else:
                if self.state["pump"] and self.open_valves() == [channel]:
                    self._write("pump", False, reason)
            self._write(name, open_, reason)

    def set_pump(self, on: bool, reason: str = "manual") -> None:
        with self.lock:
            if on and not self.open_valves():
                self._reject("pump refused, no valve open")
            self._write("pump", on, reason)

    def open_all_valves(self, reason: str = "manual") -> None:
        with self.lock:
            if self.exclusive:
                self._reject("opening all valves refused, valves are exclusive")
            for ch in range(1, CHANNEL_COUNT + 1):
                self._write(f"valve{ch}", True, reason)

    def close_all(self, reason: str = "manual") -> None:
        """Pump off first, then every valve; keeps going past faults."""
        errors: List[str] = []
        with self.lock:
            for name in ["pump"] + [f"valve{ch}" for ch in range(1, CHANNEL_COUNT + 1)]:
                try:
                    self._write(name, False, reason)
                except ActuatorFault as exc:
                    errors.append(str(exc))
        if errors:
            raise ActuatorFault("; ".join(errors))

    def read(self, line: str) -> bool:
        with self.lock:
            if line in self.pins:
                pin, active_low = self.pins[line], self.active_low
            elif line in self.power_pins:
                pin, active_low = self.power_pins[line], False
            else:
                raise KeyError(line)
            try:
                return self.gpio.read(pin, active_low)
            except BusFault as exc:
                logger.warning("Line %s read failed: %s", line, exc)
                return False

    def rails_ok(self) -> Dict[str, bool]:
        out: Dict[str, bool] = {}
        for rail, pin in self.power_pins.items():
            with self.lock:
                try:
                    # low input means the rail is up
                    out[rail] = not self.gpio.read(pin, False)
                except BusFault as exc:
                    logger.warning("Power rail %s read failed: %s", rail, exc)
                    out[rail] = False
        return out

    def io_bits(self) -> int:
        with self.lock:
            return io_bits(
                self.state["pump"],
                [self.state[f"valve{ch}"] for ch in range(1, CHANNEL_COUNT + 1)],
            )

    def snapshot(self) -> Dict[str, bool]:
        with self.lock:
            return dict(self.state)

    def _reject(self, message: str) -> None:
        logger.warning("Actuator command rejected: %s", message)
        _emit(self.events, "actuator", "warning", message)
        raise ActuatorRejected(message)

    def _write(self, name: str, on: bool, reason: str) -> None:
        pin = self.pins[name]
        try:
            self.gpio.set_state(pin, self.active_low, on)
        except BusFault as exc:
            self.state[name] = False
            try:
                self.gpio.set_state(pin, self.active_low, False)
            except BusFault:
                logger.error("Line %s could not be driven to its safe state", name)
            logger.error("Line %s write failed: %s", name, exc)
            _emit(self.events, "actuator", "error", f"{name} write failed", {"error": str(exc)})
            raise ActuatorFault(f"{name}: {exc}") from exc
        if self.state[name] != on:
            logger.info("%s %s (%s)", name, "ON" if on else "OFF", reason)
        self.state[name] = on


# Watering sequencer

class WateringTimeout(Exception):
    pass


class SequencerState(Enum):
    IDLE = "idle"
    VALVE_SETTLE_OPEN = "valve_settle_open"
    PUMPING = "pumping"
    VALVE_SETTLE_CLOSE = "valve_settle_close"
    ABORTED = "aborted"


@dataclass
class WateringSession:
    channel: int
    target: int
    elapsed: int = 0
    aborted: bool = False
    state: SequencerState = SequencerState.IDLE
    finished: bool = False
    flow: int = 0
    error: Optional[Exception] = None
    started_ts: Optional[float] = None
    finished_ts: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "target": self.target,
            "elapsed": self.elapsed,
            "flow": self.flow,
            "aborted": self.aborted,
            "state": self.state.value,
            "error": str(self.error) if self.error else None,
            "started_ts": self.started_ts,
            "finished_ts": self.finished_ts,
        }


class WateringSequencer:
    """Drives one channel through open, settle, pump, settle, close.

    ``step`` performs one checkpoint and returns how long to wait before the
    next one (``None`` once the session is over). ``run`` is the blocking
    driver used by the control tick.
    """

    def __init__(
        self,
        gateway: ActuatorGateway,
        cache: SensorCache,
        open_settle: float = 2,
        close_settle: float = 5,
        poll_interval: float = 1,
        max_watering: int = 100,
        sleep: Callable[[float], None] = time.sleep,
        events: Any = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.open_settle = open_settle
        self.close_settle = close_settle
        self.poll_interval = poll_interval
        self.max_watering = max_watering
        self.sleep = sleep
        self.events = events

    def run(self, channel: int, target: int) -> WateringSession:
        session = WateringSession(channel=channel, target=target)
        while True:
            delay = self.step(session)
            if delay is None:
                return session
            if delay > 0:
                self.sleep(delay)

    def step(self, session: WateringSession) -> Optional[float]:
        if session.finished:
            return None
        with self.gateway.lock:
            try:
                return self._advance(session)
            except (ActuatorFault, SensorFault, BusFault) as exc:
                self._fail_safe(session, exc)
                return None

    def _advance(self, session: WateringSession) -> Optional[float]:
        ch = session.channel
        state = session.state
        if state is SequencerState.IDLE:
            session.started_ts = time.time()
            logger.info("Watering channel %d, target %d", ch, session.target)
            _emit(self.events, "watering", "info", f"Channel {ch} started", {"channel": ch, "target": session.target})
            self.gateway.set_valve(ch, True, "watering")
            session.state = SequencerState.VALVE_SETTLE_OPEN
            return self.open_settle
        if state is SequencerState.VALVE_SETTLE_OPEN:
            if not self.gateway.is_on(f"valve{ch}"):
                raise ActuatorFault(f"channel {ch} valve closed before pump start")
            self.gateway.set_pump(True, "watering")
            session.state = SequencerState.PUMPING
            return 0
        if state is SequencerState.PUMPING:
            if not (self.gateway.is_on("pump") and self.gateway.is_on(f"valve{ch}")):
                raise ActuatorFault(f"channel {ch} lines switched off during watering")
            session.flow = self.cache.poll(FLOW_QUANTITIES[ch - 1])
            if session.flow >= session.target:
                self.gateway.set_pump(False, "watering")
                session.state = SequencerState.VALVE_SETTLE_CLOSE
                return self.close_settle
            if session.elapsed >= self.max_watering:
                session.aborted = True
                session.error = WateringTimeout(
                    f"channel {ch} reached {session.flow}/{session.target} in {session.elapsed}s"
                )
                logger.warning("Watering timeout: %s", session.error)
                _emit(
                    self.events,
                    "watering",
                    "warning",
                    f"Channel {ch} timed out",
                    {"channel": ch, "flow": session.flow, "target": session.target},
                )
                session.state = SequencerState.ABORTED
                return 0
            session.elapsed += 1
            return self.poll_interval
        if state is SequencerState.ABORTED:
            # timeout close-out, same path as success
            self.gateway.set_pump(False, "watering_timeout")
            session.state = SequencerState.VALVE_SETTLE_CLOSE
            return self.close_settle
        if state is SequencerState.VALVE_SETTLE_CLOSE:
            self.gateway.set_valve(ch, False, "watering")
            session.state = SequencerState.IDLE
            session.finished = True
            session.finished_ts = time.time()
            if not session.aborted:
                logger.info("Channel %d done, flow %d in %ds", ch, session.flow, session.elapsed)
                _emit(
                    self.events,
                    "watering",
                    "info",
                    f"Channel {ch} finished",
                    {"channel": ch, "flow": session.flow, "elapsed": session.elapsed},
                )
            return None
        return None

    def _fail_safe(self, session: WateringSession, exc: Exception) -> None:
        ch = session.channel
        logger.error("Channel %d aborted: %s", ch, exc)
        for action in (
            lambda: self.gateway.set_pump(False, "fail_safe"),
            lambda: self.gateway.set_valve(ch, False, "fail_safe"),
        ):
            try:
                action()
            except ActuatorFault as inner:
                logger.error("Fail-safe step failed on channel %d: %s", ch, inner)
        session.aborted = True
        session.error = exc
        session.state = SequencerState.ABORTED
        session.finished = True
        session.finished_ts = time.time()
        _emit(self.events, "watering", "error", f"Channel {ch} aborted", {"channel": ch, "error": str(exc)})


# Schedule

def current_slot(now: datetime) -> Optional[str]:
    clock = now.time().replace(microsecond=0)
    for slot, slot_time in SLOT_TIMES.items():
        if clock == slot_time:
            return slot
    return None


def due_channels(now: datetime, grid: ScheduleGrid) -> Set[int]:
    slot = current_slot(now)
    if slot is None:
        return set()
    weekday = now.weekday()
    return {ch for ch in range(1, CHANNEL_COUNT + 1) if grid.is_enabled(ch, slot, weekday)}


class ScheduleEvaluator:
    """Fires each slot at most once per day.

    With ``catch_up`` a slot whose exact second was skipped still fires on the
    first tick within the same hour.
    """

    def __init__(self, settings: ControllerSettings, catch_up: bool = False) -> None:
        self.settings = settings
        self.catch_up = catch_up
        self.fired: Set[Tuple[date, str]] = set()

    def due(self, now: datetime) -> Tuple[Optional[str], Set[int]]:
        grid = self.settings.grid()
        slot = current_slot(now)
        if slot is None and self.catch_up:
            slot = self._missed_slot(now)
        if slot is None or (now.date(), slot) in self.fired:
            return None, set()
        self.fired = {key for key in self.fired if key[0] == now.date()}
        self.fired.add((now.date(), slot))
        weekday = now.weekday()
        channels = {ch for ch in range(1, CHANNEL_COUNT + 1) if grid.is_enabled(ch, slot, weekday)}
        if slot != current_slot(now) and channels:
            logger.warning("Slot %s fired late at %s", slot, now.strftime("%H:%M:%S"))
        return slot, channels

    def _missed_slot(self, now: datetime) -> Optional[str]:
        for slot, slot_time in SLOT_TIMES.items():
            start = datetime.combine(now.date(), slot_time)
            if start <= now.replace(tzinfo=None) < start + timedelta(hours=1):
                return slot
        return None


# Control tick

class ControlTick:
    def __init__(
        self,
        settings: ControllerSettings,
        cache: SensorCache,
        gateway: ActuatorGateway,
        sequencer: WateringSequencer,
        schedule: ScheduleEvaluator,
        broadcaster: Any = None,
        sink: Any = None,
        clock: Callable[[], datetime] = datetime.now,
        legacy_volume: bool = False,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.gateway = gateway
        self.sequencer = sequencer
        self.schedule = schedule
        self.broadcaster = broadcaster
        self.sink = sink
        self.clock = clock
        self.legacy_volume = legacy_volume
        self.lock = threading.Lock()
        self.last_snapshot: Optional[SensorSnapshot] = None
        self.last_status: Optional[StatusBits] = None
        self.sessions: Deque[WateringSession] = deque(maxlen=20)
        self.ticks = 0
        self.skipped = 0

    def run_once(self) -> bool:
        """Run one tick; returns False if a tick is already running."""
        if not self.lock.acquire(blocking=False):
            self.skipped += 1
            return False
        try:
            self._tick()
            if self.sink is not None:
                self._flush()
        finally:
            self.lock.release()
        return True

    def _tick(self) -> None:
        self.ticks += 1
        snapshot = self.cache.refresh()
        status = derive_status(snapshot, self.gateway.rails_ok())
        self.last_snapshot = snapshot
        self.last_status = status
        self.publish(snapshot, status)

        slot, due = self.schedule.due(self.clock())
        if not due:
            return
        logger.info("Slot %s due for channels %s", slot, sorted(due))
        for ch in sorted(due):
            target = effective_volume(
                self.settings.channel(ch),
                status.rain_active,
                status.ground_active,
                self.legacy_volume,
            )
            if target == 0:
                logger.info("Channel %d skipped, effective volume 0", ch)
                continue
            self.sessions.append(self.sequencer.run(ch, target))
        try:
            self.cache.reset_flow_counters()
        except BusFault as exc:
            logger.error("Flow counter reset failed: %s", exc)
            if self.sink is not None:
                self.sink.log_event("sensor", "error", "Flow counter reset failed", {"error": str(exc)})
        logger.info("Watering cycle %s complete", slot)
        if self.sink is not None:
            self.sink.log_event("watering", "info", f"Watering cycle {slot} complete", {"channels": sorted(due)})

    def publish(self, snapshot: SensorSnapshot, status: StatusBits) -> None:
        io = self.gateway.io_bits()
        if self.broadcaster is not None:
            record = build_telemetry_record(
                snapshot.values,
                status.bits,
                io,
                self.settings.channels(),
                self.settings.grid(),
            )
            try:
                self.broadcaster.send(record)
            except TelemetrySinkFault as exc:
                logger.debug("Telemetry dropped: %s", exc)
        if self.sink is not None:
            self.sink.record_signals(snapshot.ts, snapshot.values, self.gateway.snapshot())

    def _flush(self) -> None:
        try:
            self.sink.flush()
        except TelemetrySinkFault as exc:
            logger.warning("Metrics flush deferred: %s", exc)

    def status_payload(self) -> Dict[str, Any]:
        snapshot = self.last_snapshot or self.cache.snapshot()
        return {
            "tick": self.ticks,
            "busy": self.lock.locked(),
            "sensors": snapshot.values,
            "failed": snapshot.failed,
            "status_bits": self.last_status.bits if self.last_status else None,
            "io_bits": self.gateway.io_bits(),
            "actuators": self.gateway.snapshot(),
            "sensor_faults": self.cache.fault_counts(),
            "sessions": [s.as_dict() for s in self.sessions],
        }


class ControlLoop:
    """Calls the control tick on fixed period boundaries in a daemon thread.

    An overrunning tick is not followed by catch-up ticks; the loop resumes at
    the next boundary after it returns.
    """

    def __init__(self, tick: ControlTick, period: float = 1.0, monotonic: Callable[[], float] = time.monotonic) -> None:
        self.tick = tick
        self.period = period
        self.monotonic = monotonic
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def next_delay(self, started: float, now: float) -> float:
        elapsed = now - started
        if elapsed < self.period:
            return self.period - elapsed
        return self.period - (elapsed % self.period)

    def run(self) -> None:
        while not self.stop_event.is_set():
            started = self.monotonic()
            try:
                self.tick.run_once()
            except Exception as exc:
                logger.exception("Control tick error: %s", exc)
            self.stop_event.wait(self.next_delay(started, self.monotonic()))

    def start(self) -> None:
        self.thread = threading.Thread(target=self.run, name="control-loop", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        self.stop_event.set()
