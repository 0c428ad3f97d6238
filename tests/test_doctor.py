import importlib.util
import json
import shutil
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]

_spec = importlib.util.spec_from_file_location("doctor", REPO_ROOT / "scripts" / "doctor.py")
doctor = importlib.util.module_from_spec(_spec)
sys.modules[_spec.name] = doctor
_spec.loader.exec_module(doctor)


def _copy_config(tmp_path):
    for name in ("settings.json", "hardware.json"):
        shutil.copy(REPO_ROOT / "config" / name, tmp_path / name)


def test_shipped_config_is_clean(tmp_path, capsys):
    _copy_config(tmp_path)
    assert doctor.main(["--config-dir", str(tmp_path), "--strict"]) == 0
    assert "[OK]" in capsys.readouterr().out


def test_pin_clash_is_an_error(tmp_path, capsys):
    _copy_config(tmp_path)
    hw = json.loads((tmp_path / "hardware.json").read_text(encoding="utf-8"))
    hw["valve_gpios"][2] = 18
    (tmp_path / "hardware.json").write_text(json.dumps(hw), encoding="utf-8")
    assert doctor.main(["--config-dir", str(tmp_path)]) == 1
    assert "GPIO18" in capsys.readouterr().out


def test_schema_catches_out_of_range_volume(tmp_path, capsys):
    _copy_config(tmp_path)
    settings = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    settings["VOL1"] = 400
    (tmp_path / "settings.json").write_text(json.dumps(settings), encoding="utf-8")
    assert doctor.main(["--config-dir", str(tmp_path)]) == 1
    assert "VOL1" in capsys.readouterr().out


def test_half_configured_schedule_warns(tmp_path):
    _copy_config(tmp_path)
    settings = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    settings["MON2"] = True
    (tmp_path / "settings.json").write_text(json.dumps(settings), encoding="utf-8")
    assert doctor.main(["--config-dir", str(tmp_path)]) == 0
    assert doctor.main(["--config-dir", str(tmp_path), "--strict"]) == 1
