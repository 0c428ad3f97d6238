#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jsonschema

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
FLAG_PREFIXES = ("MOR", "NOO", "EVE") + WEEKDAYS
# I2C1 SDA/SCL; driving them as relays breaks the sensor bus
RESERVED_PINS = {2, 3}


@dataclass
class Issue:
    level: str
    message: str
    path: str | None = None

    def format(self) -> str:
        prefix = f"[{self.level}]"
        if self.path:
            return f"{prefix} {self.path}: {self.message}"
        return f"{prefix} {self.message}"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _load_json(path: Path, issues: list[Issue]) -> Any | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        issues.append(Issue("ERROR", "Dosya bulunamadı.", str(path)))
    except json.JSONDecodeError as exc:
        issues.append(Issue("ERROR", f"JSON parse hatası: {exc}", str(path)))
    except OSError as exc:
        issues.append(Issue("ERROR", f"Okuma hatası: {exc}", str(path)))
    return None


def _parse_hex_addr(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value.startswith(("0x", "0X")):
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def _schema_validate(instance: Any, schema_path: Path, issues: list[Issue]) -> None:
    schema = _load_json(schema_path, issues)
    if schema is None:
        return

    try:
        validator_cls = jsonschema.validators.validator_for(schema)
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        issues.append(Issue("ERROR", f"Şema geçersiz: {exc.message}", str(schema_path)))
        return
    validator = validator_cls(schema)
    for err in sorted(validator.iter_errors(instance), key=str):
        loc = ".".join(str(p) for p in err.path) if err.path else ""
        issues.append(Issue("ERROR", f"Şema hatası{f' ({loc})' if loc else ''}: {err.message}", str(schema_path)))


def validate_settings(cfg: Any, issues: list[Issue]) -> None:
    if not isinstance(cfg, dict):
        issues.append(Issue("ERROR", "settings.json bir object olmalı."))
        return

    for ch in range(1, 6):
        vol = cfg.get(f"VOL{ch}")
        if vol is None:
            issues.append(Issue("WARN", "Eksik; varsayılan 0 kullanılacak.", f"settings.VOL{ch}"))
        elif not isinstance(vol, int) or not 0 <= vol <= 255:
            issues.append(Issue("ERROR", "0-255 arası int olmalı.", f"settings.VOL{ch}"))

        for prefix in ("RAF", "GAF"):
            val = cfg.get(f"{prefix}{ch}")
            if val is None:
                issues.append(Issue("WARN", "Eksik; varsayılan 100 kullanılacak.", f"settings.{prefix}{ch}"))
            elif not isinstance(val, int) or not 0 <= val <= 100:
                issues.append(Issue("ERROR", "0-100 arası int olmalı.", f"settings.{prefix}{ch}"))

        for prefix in FLAG_PREFIXES:
            val = cfg.get(f"{prefix}{ch}")
            if val is None:
                issues.append(Issue("WARN", "Eksik; varsayılan false kullanılacak.", f"settings.{prefix}{ch}"))
            elif not isinstance(val, bool):
                issues.append(Issue("ERROR", "bool olmalı.", f"settings.{prefix}{ch}"))

        days = [cfg.get(f"{day}{ch}") is True for day in WEEKDAYS]
        slots = [cfg.get(f"{slot}{ch}") is True for slot in ("MOR", "NOO", "EVE")]
        if any(days) != any(slots):
            issues.append(Issue("WARN", f"Kanal {ch}: gün ve saat seçimi birbirini tutmuyor, kanal hiç sulamaz."))
        if any(days) and any(slots) and cfg.get(f"VOL{ch}") == 0:
            issues.append(Issue("WARN", f"Kanal {ch}: takvimde açık ama VOL{ch}=0."))


def validate_hardware(cfg: Any, issues: list[Issue]) -> None:
    if not isinstance(cfg, dict):
        issues.append(Issue("ERROR", "hardware.json bir object olmalı."))
        return

    for key in ("atmega_addr", "cpu_temp_addr", "ambient_temp_addr", "exposed_temp_addr"):
        if key not in cfg or (key == "exposed_temp_addr" and cfg.get(key) is None):
            continue
        if _parse_hex_addr(cfg.get(key)) is None:
            issues.append(Issue("ERROR", f"{key} '0x..' formatında olmalı.", f"hardware.{key}"))

    pins: list[tuple[str, Any]] = [("pump_gpio", cfg.get("pump_gpio"))]
    valves = cfg.get("valve_gpios")
    if isinstance(valves, list):
        if len(valves) != 5:
            issues.append(Issue("ERROR", f"5 vana pini bekleniyor, {len(valves)} bulundu.", "hardware.valve_gpios"))
        pins += [(f"valve_gpios[{i}]", pin) for i, pin in enumerate(valves)]
    power = cfg.get("power_gpios")
    if isinstance(power, dict):
        pins += [(f"power_gpios.{name}", pin) for name, pin in power.items()]

    seen: dict[int, str] = {}
    for where, pin in pins:
        if pin is None:
            continue
        if not isinstance(pin, int):
            issues.append(Issue("ERROR", "GPIO pini int olmalı.", f"hardware.{where}"))
            continue
        if pin in seen:
            issues.append(Issue("ERROR", f"GPIO{pin} tekrarı ({seen[pin]}).", f"hardware.{where}"))
        seen[pin] = where
        if pin in RESERVED_PINS:
            issues.append(Issue("ERROR", f"GPIO{pin} I2C hattı, röle için kullanılamaz.", f"hardware.{where}"))
        elif not 0 <= pin <= 27:
            issues.append(Issue("WARN", f"gpio aralığı şüpheli: {pin} (0-27 beklenir).", f"hardware.{where}"))

    open_settle = cfg.get("open_settle_seconds")
    if isinstance(open_settle, (int, float)) and open_settle < 1:
        issues.append(Issue("WARN", "Vana açılma beklemesi 1 sn altında; pompa kuru çalışabilir.", "hardware.open_settle_seconds"))

    max_watering = cfg.get("max_watering_seconds")
    if isinstance(max_watering, int) and max_watering > 600:
        issues.append(Issue("WARN", "Sulama zaman aşımı 10 dakikadan uzun.", "hardware.max_watering_seconds"))

    if cfg.get("legacy_volume_truncation") is True:
        issues.append(Issue("WARN", "legacy_volume_truncation açık: %100 altı zayıflatma hacmi sıfırlar.", "hardware.legacy_volume_truncation"))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sulama kontrolcüsü hızlı doğrulama (config + şema).")
    parser.add_argument("--strict", action="store_true", help="Uyarıları da hata gibi değerlendir.")
    parser.add_argument("--config-dir", type=Path, default=None, help="config dizini (varsayılan: repo/config)")
    args = parser.parse_args(argv)

    config_dir = args.config_dir or _repo_root() / "config"
    schema_dir = _repo_root() / "config" / "schema"

    config_files = {
        "settings.json": ("settings.schema.json", validate_settings),
        "hardware.json": ("hardware.schema.json", validate_hardware),
    }

    issues: list[Issue] = []

    for filename, (schema_name, custom_validator) in config_files.items():
        path = config_dir / filename
        cfg = _load_json(path, issues)
        if cfg is None:
            continue

        schema_path = schema_dir / schema_name
        if schema_path.exists():
            _schema_validate(cfg, schema_path, issues)
        else:
            issues.append(Issue("WARN", "Şema dosyası yok (schema validation atlandı).", str(schema_path)))

        custom_validator(cfg, issues)

    errors = [i for i in issues if i.level == "ERROR"]
    warns = [i for i in issues if i.level == "WARN"]

    for issue in issues:
        print(issue.format())

    if not issues:
        print("[OK] Her şey temiz.")

    if errors:
        print(f"[FAIL] {len(errors)} hata, {len(warns)} uyarı.")
        return 1

    if args.strict and warns:
        print(f"[FAIL] strict mod: {len(warns)} uyarı hata sayıldı.")
        return 1

    print(f"[OK] {len(warns)} uyarı.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
