#!/usr/bin/env python3
import argparse
import os
import sys
import time
from pathlib import Path

from control import ActuatorGateway
from hardware import ActuatorFault, GPIOBackend
from settings import load_hardware_config

BASE_DIR = Path(__file__).resolve().parent

# Pompa sadece vana açıkken çalışır; süreler hardware.json'dan gelir
PUMP_PULSE_SEC = 3.0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Vana/pompa tezgah testi.")
    parser.add_argument("--no-pump", action="store_true", help="Pompayı çalıştırma, sadece vanaları dene.")
    parser.add_argument("--simulation", action="store_true", help="GPIO yerine simülasyon kullan.")
    args = parser.parse_args(argv)

    config_dir = Path(os.getenv("SULAMA_CONFIG_DIR") or BASE_DIR / "config")
    cfg = load_hardware_config(config_dir / "hardware.json")
    simulation = args.simulation or os.getenv("SIMULATION_MODE", "0") == "1"

    try:
        gpio = GPIOBackend(simulation=simulation)
    except ImportError as exc:
        print("GPIO kütüphanesi bulunamadı.")
        print("Çözüm: pip install .[hardware]  veya  sudo apt install -y python3-rpi.gpio")
        print("Hata:", exc)
        return 1

    gateway = ActuatorGateway(
        gpio,
        pump_pin=cfg["pump_gpio"],
        valve_pins=cfg["valve_gpios"],
        power_pins=cfg["power_gpios"],
        active_low=bool(cfg.get("active_low", False)),
        exclusive=True,
    )
    gateway.setup()

    open_settle = float(cfg["open_settle_seconds"])
    close_settle = float(cfg["close_settle_seconds"])

    print(f"\n=== Vana Testi (simülasyon: {simulation}) ===")
    print(f"Besleme hatları: {gateway.rails_ok()}")
    print("Çıkmak için her adımda 'q' yazıp Enter.\n")

    try:
        for ch, pin in enumerate(cfg["valve_gpios"], start=1):
            inp = input(f"[{ch}/5] Hazırsa Enter (ya da q): ").strip().lower()
            if inp == "q":
                break

            print(f"-> AÇ   : Vana {ch}  (GPIO{pin})")
            gateway.set_valve(ch, True, "bench_test")
            time.sleep(open_settle)

            if not args.no_pump:
                print(f"-> POMPA: {PUMP_PULSE_SEC:.0f} sn")
                gateway.set_pump(True, "bench_test")
                time.sleep(PUMP_PULSE_SEC)
                gateway.set_pump(False, "bench_test")
                time.sleep(close_settle)

            print(f"-> KAPAT: Vana {ch}  (GPIO{pin})")
            gateway.set_valve(ch, False, "bench_test")

        print("\nBitti.")

    except ActuatorFault as exc:
        print(f"\nHat hatası: {exc}")

    except KeyboardInterrupt:
        print("\nCTRL+C alındı. Kapatıyorum....")

    finally:
        try:
            gateway.close_all("bench_test_exit")
        except ActuatorFault as exc:
            print(f"Güvenli duruma geçilemedi: {exc}")
        gpio.cleanup()
        print("Pompa kapalı, tüm vanalar kapalı.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
