import random
import threading
from typing import Any, Dict, List, Optional

# Microcontroller registers (single byte select, single byte answer)
ATMEGA_FLOW_BASE = 0x20
ATMEGA_RAIN = 0x25
ATMEGA_LEVEL = 0x26
ATMEGA_PRESSURE = 0x27
ATMEGA_GROUND = 0x28
ATMEGA_RESET_COUNTERS = 0x40
LM75_TEMP_REGISTER = 0x00

FLOW_QUANTITIES = ["flow1", "flow2", "flow3", "flow4", "flow5"]
ATMEGA_REGISTERS = {
    "flow1": ATMEGA_FLOW_BASE,
    "flow2": ATMEGA_FLOW_BASE + 1,
    "flow3": ATMEGA_FLOW_BASE + 2,
    "flow4": ATMEGA_FLOW_BASE + 3,
    "flow5": ATMEGA_FLOW_BASE + 4,
    "rain": ATMEGA_RAIN,
    "level": ATMEGA_LEVEL,
    "pressure": ATMEGA_PRESSURE,
    "ground": ATMEGA_GROUND,
}
TEMP_QUANTITIES = ("temp_cpu", "temp_amb", "temp_exp")
EXPOSED_TEMP_REPLACEMENT = 27


class BusFault(Exception):
    """A bus transaction timed out or was not acknowledged."""


class SensorFault(Exception):
    pass


class ActuatorFault(Exception):
    pass


class ActuatorRejected(ActuatorFault):
    """The gateway refused a command that would break a safety rule."""


def _lm75_to_byte(msb: int) -> int:
    # MSB is whole degrees in two's complement; the value field is unsigned
    if msb & 0x80:
        return 0
    return msb & 0x7F


class I2CBus:
    """Sensor bus on the Pi's I2C controller."""

    def __init__(self, config: Dict[str, Any]) -> None:
        from smbus2 import SMBus  # type: ignore

        self.bus_num = int(config.get("i2c_bus", 1))
        self.atmega_addr = int(str(config.get("atmega_addr", "0x56")), 0)
        self.temp_addrs: Dict[str, Optional[int]] = {
            "temp_cpu": self._parse_addr(config.get("cpu_temp_addr", "0x48")),
            "temp_amb": self._parse_addr(config.get("ambient_temp_addr", "0x4F")),
            "temp_exp": self._parse_addr(config.get("exposed_temp_addr")),
        }
        self.lock = threading.Lock()
        self.bus = SMBus(self.bus_num)

    @staticmethod
    def _parse_addr(value: Any) -> Optional[int]:
        if value is None:
            return None
        return int(str(value), 0)

    def read(self, quantity: str) -> int:
        if quantity in ATMEGA_REGISTERS:
            return self._read_atmega(ATMEGA_REGISTERS[quantity])
        if quantity in TEMP_QUANTITIES:
            addr = self.temp_addrs.get(quantity)
            if addr is None:
                return EXPOSED_TEMP_REPLACEMENT
            return self._read_lm75(addr)
        raise BusFault(f"Unknown quantity: {quantity}")

    def write(self, command: int) -> None:
        with self.lock:
            try:
                self.bus.write_byte(self.atmega_addr, command)
            except OSError as exc:
                raise BusFault(f"write 0x{command:02X} failed: {exc}") from exc

    def reset_flow_counters(self) -> None:
        self.write(ATMEGA_RESET_COUNTERS)

    def _read_atmega(self, register: int) -> int:
        with self.lock:
            try:
                self.bus.write_byte(self.atmega_addr, register)
                return int(self.bus.read_byte(self.atmega_addr)) & 0xFF
            except OSError as exc:
                raise BusFault(f"read 0x{register:02X} failed: {exc}") from exc

    def _read_lm75(self, addr: int) -> int:
        with self.lock:
            try:
                data = self.bus.read_i2c_block_data(addr, LM75_TEMP_REGISTER, 2)
            except OSError as exc:
                raise BusFault(f"LM75 0x{addr:02X} failed: {exc}") from exc
        return _lm75_to_byte(int(data[0]))

    def close(self) -> None:
        self.bus.close()


class GPIOBackend:
    """Digital I/O lines with a simulation mode."""

    def __init__(self, simulation: bool = False) -> None:
        self.simulation = simulation
        self.sim_states: Dict[int, bool] = {}
        self.sim_inputs: Dict[int, bool] = {}
        self.GPIO: Any = None
        if not self.simulation:
            import RPi.GPIO as GPIO  # type: ignore

            self.GPIO = GPIO
            self.GPIO.setwarnings(False)
            self.GPIO.setmode(self.GPIO.BCM)

    def setup_output(self, pin: int, active_low: bool) -> None:
        if self.simulation:
            self.sim_states[pin] = False
            return
        try:
            self.GPIO.setup(pin, self.GPIO.OUT, initial=self._to_output(False, active_low))
        except RuntimeError as exc:
            raise BusFault(f"GPIO{pin} setup failed: {exc}") from exc

    def setup_input(self, pin: int) -> None:
        if self.simulation:
            # power rails read low (OK) unless a test says otherwise
            self.sim_inputs.setdefault(pin, False)
            return
        try:
            self.GPIO.setup(pin, self.GPIO.IN)
        except RuntimeError as exc:
            raise BusFault(f"GPIO{pin} setup failed: {exc}") from exc

    def set_state(self, pin: int, active_low: bool, on: bool) -> None:
        if self.simulation:
            self.sim_states[pin] = bool(on)
            return
        try:
            self.GPIO.output(pin, self._to_output(on, active_low))
        except RuntimeError as exc:
            raise BusFault(f"GPIO{pin} write failed: {exc}") from exc

    def read(self, pin: int, active_low: bool = False) -> bool:
        if self.simulation:
            if pin in self.sim_states:
                return self.sim_states[pin]
            return self.sim_inputs.get(pin, False)
        try:
            level = bool(self.GPIO.input(pin))
        except RuntimeError as exc:
            raise BusFault(f"GPIO{pin} read failed: {exc}") from exc
        return (not level) if active_low else level

    def cleanup(self) -> None:
        if not self.simulation and self.GPIO is not None:
            self.GPIO.cleanup()

    @staticmethod
    def _to_output(on: bool, active_low: bool) -> int:
        if active_low:
            return 0 if on else 1
        return 1 if on else 0


class SimulatedBus:
    """Stand-in sensor bus for SIMULATION_MODE.

    Flow counters only advance while the matching valve pin is driven on the
    simulated GPIO backend, so a watering sequence finishes on its own.
    """

    def __init__(self, gpio: GPIOBackend, valve_pins: List[int], pump_pin: int) -> None:
        self.gpio = gpio
        self.valve_pins = list(valve_pins)
        self.pump_pin = pump_pin
        self.counters = [0, 0, 0, 0, 0]
        self.lock = threading.Lock()

    def read(self, quantity: str) -> int:
        with self.lock:
            if quantity in FLOW_QUANTITIES:
                idx = FLOW_QUANTITIES.index(quantity)
                pumping = self.gpio.sim_states.get(self.pump_pin, False)
                if pumping and self.gpio.sim_states.get(self.valve_pins[idx], False):
                    self.counters[idx] = min(255, self.counters[idx] + random.randint(2, 6))
                return self.counters[idx]
        if quantity in ("rain", "ground"):
            return random.randint(110, 190)
        if quantity == "level":
            return random.randint(120, 200)
        if quantity == "pressure":
            return random.randint(0, 40)
        if quantity == "temp_exp":
            return EXPOSED_TEMP_REPLACEMENT
        if quantity in TEMP_QUANTITIES:
            return random.randint(18, 45)
        raise BusFault(f"Unknown quantity: {quantity}")

    def write(self, command: int) -> None:
        if command == ATMEGA_RESET_COUNTERS:
            with self.lock:
                self.counters = [0, 0, 0, 0, 0]

    def reset_flow_counters(self) -> None:
        self.write(ATMEGA_RESET_COUNTERS)

    def close(self) -> None:
        pass
