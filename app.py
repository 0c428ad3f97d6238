import atexit
import logging
import os
import threading
from pathlib import Path
from typing import Any

from flask import Flask, Response, jsonify, request

from commands import CommandDispatcher
from control import (
    ActuatorGateway,
    ControlLoop,
    ControlTick,
    ScheduleEvaluator,
    SensorCache,
    WateringSequencer,
)
from hardware import ActuatorFault, GPIOBackend, I2CBus, SimulatedBus
from settings import ControllerSettings, SettingsStore, load_hardware_config
from telemetry import MetricsSink, TelemetryBroadcaster, TelemetrySinkFault

BASE_DIR = Path(__file__).resolve().parent


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


SIMULATION_MODE = os.getenv("SIMULATION_MODE", "0") == "1"
DISABLE_BACKGROUND_LOOPS = os.getenv("DISABLE_BACKGROUND_LOOPS", "0") == "1"
CONFIG_DIR = Path(os.getenv("SULAMA_CONFIG_DIR") or BASE_DIR / "config")
DATA_DIR = Path(os.getenv("SULAMA_DATA_DIR") or BASE_DIR / "data")
SETTINGS_PATH = CONFIG_DIR / "settings.json"
HARDWARE_CONFIG_PATH = CONFIG_DIR / "hardware.json"
DB_PATH = DATA_DIR / "sulama.db"
LOG_PATH = DATA_DIR / "sulama.log"
TELEMETRY_ADDR = os.getenv("TELEMETRY_ADDR", "255.255.255.255")
TELEMETRY_PORT = _env_int("TELEMETRY_PORT", 12300)
COMMAND_PORT = _env_int("COMMAND_PORT", 8081)
TICK_SECONDS = _env_float("TICK_SECONDS", 1.0)

logger = logging.getLogger("sulama")


def configure_logging() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    if root.handlers:
        return
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    for handler in (logging.StreamHandler(), logging.FileHandler(LOG_PATH, encoding="utf-8")):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if SIMULATION_MODE else logging.INFO)


configure_logging()
hardware_config = load_hardware_config(HARDWARE_CONFIG_PATH)

sink = MetricsSink(DB_PATH)
sink.init_db()

settings = ControllerSettings(SettingsStore(SETTINGS_PATH))
for fault in settings.load():
    sink.log_event("config", "warning", str(fault))

hardware_lock = threading.RLock()
gpio = GPIOBackend(simulation=SIMULATION_MODE)
if SIMULATION_MODE:
    bus: Any = SimulatedBus(gpio, hardware_config["valve_gpios"], hardware_config["pump_gpio"])
else:
    bus = I2CBus(hardware_config)

gateway = ActuatorGateway(
    gpio,
    pump_pin=hardware_config["pump_gpio"],
    valve_pins=hardware_config["valve_gpios"],
    power_pins=hardware_config["power_gpios"],
    active_low=bool(hardware_config.get("active_low", False)),
    exclusive=bool(hardware_config.get("exclusive_valves", True)),
    lock=hardware_lock,
    events=sink,
)
gateway.setup()
sensor_cache = SensorCache(bus, hardware_config.get("refresh_ticks"), lock=hardware_lock, events=sink)
sequencer = WateringSequencer(
    gateway,
    sensor_cache,
    open_settle=float(hardware_config["open_settle_seconds"]),
    close_settle=float(hardware_config["close_settle_seconds"]),
    poll_interval=float(hardware_config["poll_seconds"]),
    max_watering=int(hardware_config["max_watering_seconds"]),
    events=sink,
)
schedule = ScheduleEvaluator(settings, catch_up=bool(hardware_config.get("schedule_catch_up", False)))
control_tick = ControlTick(
    settings,
    sensor_cache,
    gateway,
    sequencer,
    schedule,
    broadcaster=TelemetryBroadcaster(TELEMETRY_ADDR, TELEMETRY_PORT),
    sink=sink,
    legacy_volume=bool(hardware_config.get("legacy_volume_truncation", False)),
)
dispatcher = CommandDispatcher(settings, gateway, sensor_cache, events=sink)
control_loop = ControlLoop(control_tick, period=TICK_SECONDS)

app = Flask(__name__)


def _shutdown() -> None:
    control_loop.stop()
    try:
        gateway.close_all("shutdown")
    except ActuatorFault as exc:
        logger.error("Fail-safe on shutdown incomplete: %s", exc)
    gpio.cleanup()


atexit.register(_shutdown)

if not DISABLE_BACKGROUND_LOOPS:
    control_loop.start()
    logger.info("Control loop started (tick %.1fs, simulation=%s)", TICK_SECONDS, SIMULATION_MODE)


# Routes
@app.route("/")
def command() -> Any:
    raw = request.query_string.decode("ascii", errors="replace")
    return Response(dispatcher.handle_query(raw), mimetype="text/plain")


@app.route("/api/status")
def api_status() -> Any:
    payload = control_tick.status_payload()
    payload["settings"] = settings.as_dict()
    payload["rails"] = gateway.rails_ok()
    payload["simulation"] = SIMULATION_MODE
    return jsonify(payload)


@app.route("/api/events")
def api_events() -> Any:
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    limit = max(1, min(limit, 500))
    try:
        sink.flush()
    except TelemetrySinkFault as exc:
        logger.warning("Event flush failed: %s", exc)
    return jsonify({"events": sink.recent_events(limit)})


@app.route("/health")
def health() -> Any:
    return jsonify({"ok": True, "simulation": SIMULATION_MODE, "tick": control_tick.ticks})


def create_app() -> Flask:
    return app


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=COMMAND_PORT, debug=False, threaded=True)
