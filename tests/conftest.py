import os
import tempfile

import pytest

_TMP = tempfile.mkdtemp(prefix="sulama-test-")
os.environ.setdefault("SIMULATION_MODE", "1")
os.environ.setdefault("DISABLE_BACKGROUND_LOOPS", "1")
os.environ.setdefault("SULAMA_DATA_DIR", os.path.join(_TMP, "data"))
os.environ.setdefault("SULAMA_CONFIG_DIR", os.path.join(_TMP, "config"))
os.environ.setdefault("TELEMETRY_ADDR", "127.0.0.1")

from control import ActuatorGateway, SensorCache, WateringSequencer  # noqa: E402
from hardware import BusFault  # noqa: E402
from settings import ControllerSettings  # noqa: E402

PUMP_PIN = 18
VALVE_PINS = [23, 24, 25, 12, 16]
POWER_PINS = {"5v": 6, "12v": 5, "24v": 4}


class FakeBus:
    def __init__(self):
        self.values = {
            "flow1": 0,
            "flow2": 0,
            "flow3": 0,
            "flow4": 0,
            "flow5": 0,
            "rain": 150,
            "ground": 150,
            "level": 180,
            "pressure": 20,
            "temp_cpu": 40,
            "temp_amb": 22,
            "temp_exp": 27,
        }
        # per-read increment, emulates water moving through a flow meter
        self.flow_rate = {}
        self.fail = set()
        self.reads = []
        self.resets = 0

    def read(self, quantity):
        self.reads.append(quantity)
        if quantity in self.fail:
            raise BusFault(f"{quantity} NACK")
        if quantity in self.flow_rate:
            self.values[quantity] = min(255, self.values[quantity] + self.flow_rate[quantity])
        return self.values[quantity]

    def reset_flow_counters(self):
        self.resets += 1
        for i in range(1, 6):
            self.values[f"flow{i}"] = 0

    def read_count(self, quantity):
        return self.reads.count(quantity)


class FakeGPIO:
    def __init__(self):
        self.states = {}
        self.inputs = {}
        self.fail_pins = set()
        self.writes = []

    def setup_output(self, pin, active_low):
        self.states[pin] = False

    def setup_input(self, pin):
        self.inputs.setdefault(pin, False)

    def set_state(self, pin, active_low, on):
        if pin in self.fail_pins:
            raise BusFault(f"GPIO{pin} stuck")
        self.states[pin] = bool(on)
        self.writes.append((pin, bool(on)))
        if pin == PUMP_PIN and on:
            # the pump must only ever start against an open valve
            assert any(self.states.get(p) for p in VALVE_PINS)

    def read(self, pin, active_low=False):
        if pin in self.fail_pins:
            raise BusFault(f"GPIO{pin} stuck")
        if pin in self.states:
            return self.states[pin]
        return self.inputs.get(pin, False)

    def cleanup(self):
        pass


class Rig:
    def __init__(self):
        self.bus = FakeBus()
        self.gpio = FakeGPIO()
        self.settings = ControllerSettings()
        self.gateway = ActuatorGateway(self.gpio, PUMP_PIN, VALVE_PINS, POWER_PINS)
        self.gateway.setup()
        self.cache = SensorCache(self.bus, {"temp_cpu": 10, "temp_amb": 60, "temp_exp": 60})
        self.sleeps = []
        self.sequencer = WateringSequencer(self.gateway, self.cache, sleep=self.sleeps.append)


@pytest.fixture
def rig():
    return Rig()
