import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

CHANNEL_COUNT = 5
SLOTS = ("morning", "noon", "evening")
WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
SLOT_KEYS = {"morning": "MOR", "noon": "NOO", "evening": "EVE"}

DEFAULT_HARDWARE = {
    "i2c_bus": 1,
    "atmega_addr": "0x56",
    "cpu_temp_addr": "0x48",
    "ambient_temp_addr": "0x4F",
    "exposed_temp_addr": None,
    "active_low": False,
    "pump_gpio": 18,
    "valve_gpios": [23, 24, 25, 12, 16],
    "power_gpios": {"5v": 6, "12v": 5, "24v": 4},
    "refresh_ticks": {"temp_cpu": 10, "temp_amb": 60, "temp_exp": 60},
    "exclusive_valves": True,
    "open_settle_seconds": 2,
    "close_settle_seconds": 5,
    "poll_seconds": 1,
    "max_watering_seconds": 100,
    "legacy_volume_truncation": False,
    "schedule_catch_up": False,
}


class ConfigLoadFault(Exception):
    pass


def _deep_merge_dict(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in (updates or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge_dict(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, path)


def _load_json_or_none(path: Path) -> Optional[Any]:
    try:
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def load_hardware_config(path: Path) -> Dict[str, Any]:
    defaults = json.loads(json.dumps(DEFAULT_HARDWARE))
    if path.exists():
        data = _load_json_or_none(path)
        if isinstance(data, dict):
            return _deep_merge_dict(defaults, data)
        logger.warning("%s unreadable, using hardware defaults", path)
        return defaults
    _write_json_atomic(path, defaults)
    return defaults


@dataclass(frozen=True)
class ChannelConfig:
    target_volume: int = 0
    rain_attenuation: int = 100
    ground_attenuation: int = 100


@dataclass
class ScheduleGrid:
    """Per-channel weekday flags and slot flags.

    A channel waters in a slot on a weekday only if both its day flag and its
    slot flag are set.
    """

    day_flags: List[List[bool]] = field(
        default_factory=lambda: [[False] * CHANNEL_COUNT for _ in WEEKDAYS]
    )
    slot_flags: Dict[str, List[bool]] = field(
        default_factory=lambda: {slot: [False] * CHANNEL_COUNT for slot in SLOTS}
    )

    def is_enabled(self, channel: int, slot: str, weekday: int) -> bool:
        idx = channel - 1
        return self.day_flags[weekday][idx] and self.slot_flags[slot][idx]

    def day_bits(self, weekday: int) -> int:
        return _to_bits(self.day_flags[weekday])

    def slot_bits(self, slot: str) -> int:
        return _to_bits(self.slot_flags[slot])

    def copy(self) -> "ScheduleGrid":
        return ScheduleGrid(
            day_flags=[list(row) for row in self.day_flags],
            slot_flags={slot: list(row) for slot, row in self.slot_flags.items()},
        )


def _to_bits(flags: List[bool]) -> int:
    bits = 0
    for idx, flag in enumerate(flags):
        if flag:
            bits |= 1 << idx
    return bits


def _parse_byte(raw: Any) -> int:
    value = int(str(raw).strip())
    if value < 0 or value > 255:
        raise ValueError(f"{value} outside 0-255")
    return value


def _parse_percent(raw: Any) -> int:
    value = int(str(raw).strip())
    if value < 0 or value > 100:
        raise ValueError(f"{value} outside 0-100")
    return value


def _parse_flag(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().upper()
    if text in ("TRU", "TRUE", "1"):
        return True
    if text in ("FAL", "FALSE", "0", ""):
        return False
    raise ValueError(f"{raw!r} is not a flag")


# prefix -> (parser, default, setter(settings, channel, value))
Setter = Callable[["ControllerSettings", int, Any], None]


def _set_channel_field(name: str) -> Setter:
    def setter(settings: "ControllerSettings", channel: int, value: Any) -> None:
        idx = channel - 1
        settings._channels[idx] = replace(settings._channels[idx], **{name: value})

    return setter


def _set_slot(slot: str) -> Setter:
    def setter(settings: "ControllerSettings", channel: int, value: Any) -> None:
        settings._grid.slot_flags[slot][channel - 1] = bool(value)

    return setter


def _set_day(weekday: int) -> Setter:
    def setter(settings: "ControllerSettings", channel: int, value: Any) -> None:
        settings._grid.day_flags[weekday][channel - 1] = bool(value)

    return setter


PARAMETERS: Dict[str, Tuple[Callable[[Any], Any], Any, Setter]] = {
    "VOL": (_parse_byte, 0, _set_channel_field("target_volume")),
    "RAF": (_parse_percent, 100, _set_channel_field("rain_attenuation")),
    "GAF": (_parse_percent, 100, _set_channel_field("ground_attenuation")),
}
for _slot, _prefix in SLOT_KEYS.items():
    PARAMETERS[_prefix] = (_parse_flag, False, _set_slot(_slot))
for _idx, _prefix in enumerate(WEEKDAYS):
    PARAMETERS[_prefix] = (_parse_flag, False, _set_day(_idx))


def split_key(key: str) -> Tuple[str, int]:
    key = (key or "").strip().upper()
    if len(key) != 4 or key[:3] not in PARAMETERS or not key[3].isdigit():
        raise KeyError(f"Unknown setting: {key}")
    channel = int(key[3])
    if channel < 1 or channel > CHANNEL_COUNT:
        raise KeyError(f"Unknown setting: {key}")
    return key[:3], channel


def all_keys() -> List[str]:
    return [f"{prefix}{ch}" for prefix in PARAMETERS for ch in range(1, CHANNEL_COUNT + 1)]


class SettingsStore:
    """Flat key/value persistence for channel and schedule settings."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        data = _load_json_or_none(self.path)
        if data is None and self.path.exists():
            logger.warning("%s could not be parsed, every setting falls back to default", self.path)
        return data if isinstance(data, dict) else {}

    def save(self, key: str, value: Any) -> None:
        with self.lock:
            data = self.load()
            data[key] = value
            _write_json_atomic(self.path, data)


class ControllerSettings:
    """Single owner of ChannelConfig x5 and the ScheduleGrid."""

    def __init__(self, store: Optional[SettingsStore] = None) -> None:
        self.store = store
        self.lock = threading.Lock()
        self._channels: List[ChannelConfig] = [ChannelConfig() for _ in range(CHANNEL_COUNT)]
        self._grid = ScheduleGrid()
        self.load_faults: List[ConfigLoadFault] = []

    def load(self) -> List[ConfigLoadFault]:
        raw = self.store.load() if self.store else {}
        faults: List[ConfigLoadFault] = []
        with self.lock:
            for key in all_keys():
                prefix, channel = split_key(key)
                parser, default, setter = PARAMETERS[prefix]
                if key not in raw:
                    faults.append(ConfigLoadFault(f"{key} missing, using {default}"))
                    setter(self, channel, default)
                    continue
                try:
                    value = parser(raw[key])
                except (TypeError, ValueError) as exc:
                    faults.append(ConfigLoadFault(f"{key} invalid ({exc}), using {default}"))
                    value = default
                setter(self, channel, value)
        for fault in faults:
            logger.warning("Setting not loaded: %s", fault)
        self.load_faults = faults
        return faults

    def set_parameter(self, key: str, raw: Any) -> Any:
        prefix, channel = split_key(key)
        parser, _default, setter = PARAMETERS[prefix]
        value = parser(raw)
        with self.lock:
            setter(self, channel, value)
            if self.store:
                try:
                    self.store.save(f"{prefix}{channel}", value)
                except OSError as exc:
                    logger.error("Could not persist %s%d: %s", prefix, channel, exc)
        logger.info("Writing parameter %s%d to %s", prefix, channel, value)
        return value

    def channel(self, channel: int) -> ChannelConfig:
        with self.lock:
            return self._channels[channel - 1]

    def channels(self) -> List[ChannelConfig]:
        with self.lock:
            return list(self._channels)

    def grid(self) -> ScheduleGrid:
        with self.lock:
            return self._grid.copy()

    def as_dict(self) -> Dict[str, Any]:
        with self.lock:
            out: Dict[str, Any] = {}
            for idx, cfg in enumerate(self._channels, start=1):
                out[f"VOL{idx}"] = cfg.target_volume
                out[f"RAF{idx}"] = cfg.rain_attenuation
                out[f"GAF{idx}"] = cfg.ground_attenuation
            for slot, prefix in SLOT_KEYS.items():
                for idx, flag in enumerate(self._grid.slot_flags[slot], start=1):
                    out[f"{prefix}{idx}"] = flag
            for day, prefix in enumerate(WEEKDAYS):
                for idx, flag in enumerate(self._grid.day_flags[day], start=1):
                    out[f"{prefix}{idx}"] = flag
            return out
