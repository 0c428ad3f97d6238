import logging
from typing import Any, Callable, Dict, Tuple

from control import ActuatorGateway, SensorCache
from hardware import ActuatorFault, ActuatorRejected, BusFault
from settings import CHANNEL_COUNT, SLOT_KEYS, WEEKDAYS, ControllerSettings

logger = logging.getLogger(__name__)

FAILURE_UNKNOWN = "FAILURE_UNKNOWN"
FAILURE_INVALID = "FAILURE_INVALID"
FAILURE_REJECTED = "FAILURE_REJECTED"
PARAMETER_WRITTEN = "Parameter was written"

# settings codes are <channel + 4><suffix>, e.g. 501 = volume of channel 1
SETTING_SUFFIXES = {
    "01": "VOL",
    "02": "MOR",
    "03": "NOO",
    "04": "EVE",
    "05": "MON",
    "06": "TUE",
    "07": "WED",
    "08": "THU",
    "09": "FRI",
    "10": "SAT",
    "11": "SUN",
    "12": "RAF",
    "13": "GAF",
}


def parse_query(raw: str) -> Tuple[str, str]:
    """Split ``?501=200`` style requests into code and parameter."""
    text = (raw or "").strip()
    if text.startswith("?"):
        text = text[1:]
    code = text[:3]
    param = text[4:7] if len(text) > 4 else ""
    return code, param


class CommandDispatcher:
    def __init__(
        self,
        settings: ControllerSettings,
        gateway: ActuatorGateway,
        cache: SensorCache,
        events: Any = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.cache = cache
        self.events = events
        self.table: Dict[str, Callable[[str], str]] = {
            "120": self._reset_counters,
            "130": self._open_all,
            "131": self._pump_on,
            "140": self._all_low,
            "141": self._pump_off,
            "200": self._debug_dump,
        }
        for ch in range(1, CHANNEL_COUNT + 1):
            self.table[f"{131 + ch}"] = self._valve(ch, True)
            self.table[f"{141 + ch}"] = self._valve(ch, False)
            for suffix, prefix in SETTING_SUFFIXES.items():
                self.table[f"{ch + 4}{suffix}"] = self._setting(f"{prefix}{ch}", prefix in WEEKDAYS or prefix in SLOT_KEYS.values())

    def dispatch(self, code: str, param: str = "") -> str:
        handler = self.table.get(code)
        if handler is None:
            logger.info("Unknown command %r", code)
            return FAILURE_UNKNOWN
        logger.info("Command %s received (param %r)", code, param)
        try:
            response = handler(param)
        except ActuatorRejected:
            response = FAILURE_REJECTED
        except ActuatorFault as exc:
            logger.error("Command %s failed: %s", code, exc)
            response = FAILURE_REJECTED
        except BusFault as exc:
            logger.error("Command %s failed: %s", code, exc)
            response = FAILURE_REJECTED
        if self.events is not None:
            self.events.log_event("command", "info", f"Command {code}: {response}", {"code": code, "param": param})
        return response

    def handle_query(self, raw: str) -> str:
        code, param = parse_query(raw)
        return self.dispatch(code, param)

    def _reset_counters(self, _param: str) -> str:
        self.cache.reset_flow_counters()
        return "Reset flow counters"

    def _open_all(self, _param: str) -> str:
        self.gateway.open_all_valves("command")
        return "All valves opened"

    def _pump_on(self, _param: str) -> str:
        self.gateway.set_pump(True, "command")
        return "Pump started"

    def _pump_off(self, _param: str) -> str:
        self.gateway.set_pump(False, "command")
        return "Pump stopped"

    def _all_low(self, _param: str) -> str:
        self.gateway.close_all("command")
        return "All outputs low"

    def _valve(self, channel: int, open_: bool) -> Callable[[str], str]:
        def handler(_param: str) -> str:
            self.gateway.set_valve(channel, open_, "command")
            return f"Valve #{channel} {'opened' if open_ else 'closed'}"

        return handler

    def _setting(self, key: str, flag: bool = False) -> Callable[[str], str]:
        def handler(param: str) -> str:
            if flag:
                # anything other than TRU clears the flag
                param = "TRU" if param.strip().upper() == "TRU" else "FAL"
            try:
                self.settings.set_parameter(key, param)
            except (TypeError, ValueError) as exc:
                logger.warning("Parameter %s rejected: %s", key, exc)
                return FAILURE_INVALID
            return PARAMETER_WRITTEN

        return handler

    def _debug_dump(self, _param: str) -> str:
        snapshot = self.cache.snapshot()
        logger.info("Sensor values: %s", snapshot.values)
        logger.info("Sensor faults: %s", self.cache.fault_counts())
        logger.info("Actuators: %s", self.gateway.snapshot())
        logger.info("Power rails: %s", self.gateway.rails_ok())
        logger.info("Settings: %s", self.settings.as_dict())
        return "Command 200 (debug sensor data) successful"
