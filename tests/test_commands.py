import pytest

from commands import (
    FAILURE_INVALID,
    FAILURE_REJECTED,
    FAILURE_UNKNOWN,
    PARAMETER_WRITTEN,
    CommandDispatcher,
    parse_query,
)


@pytest.fixture
def dispatcher(rig):
    return CommandDispatcher(rig.settings, rig.gateway, rig.cache)


def test_parse_query():
    assert parse_query("?501=200") == ("501", "200")
    assert parse_query("502=TRUE") == ("502", "TRU")
    assert parse_query("140") == ("140", "")
    assert parse_query("") == ("", "")


def test_valve_and_pump_commands(dispatcher, rig):
    assert dispatcher.handle_query("?132") == "Valve #1 opened"
    assert dispatcher.handle_query("?131") == "Pump started"
    assert rig.gateway.io_bits() == 0x03
    assert dispatcher.handle_query("?141") == "Pump stopped"
    assert dispatcher.handle_query("?142") == "Valve #1 closed"
    assert rig.gateway.io_bits() == 0


def test_unsafe_commands_are_rejected(dispatcher, rig):
    assert dispatcher.dispatch("131") == FAILURE_REJECTED
    assert dispatcher.dispatch("133") == "Valve #2 opened"
    assert dispatcher.dispatch("134") == FAILURE_REJECTED
    assert dispatcher.dispatch("130") == FAILURE_REJECTED
    assert rig.gateway.open_valves() == [2]


def test_all_outputs_low(dispatcher, rig):
    dispatcher.dispatch("136")
    dispatcher.dispatch("131")
    assert dispatcher.dispatch("140") == "All outputs low"
    assert rig.gateway.io_bits() == 0


def test_open_all_when_not_exclusive(dispatcher, rig):
    rig.gateway.exclusive = False
    assert dispatcher.dispatch("130") == "All valves opened"
    assert rig.gateway.open_valves() == [1, 2, 3, 4, 5]


def test_setting_commands(dispatcher, rig):
    assert dispatcher.handle_query("?501=200") == PARAMETER_WRITTEN
    assert dispatcher.handle_query("?913=40") == PARAMETER_WRITTEN
    assert dispatcher.handle_query("?702=TRU") == PARAMETER_WRITTEN
    assert dispatcher.handle_query("?611=TRU") == PARAMETER_WRITTEN
    assert rig.settings.channel(1).target_volume == 200
    assert rig.settings.channel(5).ground_attenuation == 40
    grid = rig.settings.grid()
    assert grid.slot_flags["morning"][2] is True
    assert grid.day_flags[6][1] is True


def test_flag_is_true_only_for_tru(dispatcher, rig):
    dispatcher.handle_query("?505=TRU")
    assert dispatcher.handle_query("?505=YES") == PARAMETER_WRITTEN
    assert rig.settings.grid().day_flags[0][0] is False


def test_invalid_setting_values(dispatcher, rig):
    assert dispatcher.handle_query("?501=999") == FAILURE_INVALID
    assert dispatcher.handle_query("?512=abc") == FAILURE_INVALID
    assert dispatcher.handle_query("?512") == FAILURE_INVALID
    assert rig.settings.channel(1).target_volume == 0


@pytest.mark.parametrize("code", ["999", "137", "514", "401", "1000", "", "abc"])
def test_unknown_codes(dispatcher, code):
    assert dispatcher.dispatch(code) == FAILURE_UNKNOWN


def test_reset_and_debug(dispatcher, rig):
    assert dispatcher.dispatch("120") == "Reset flow counters"
    assert rig.bus.resets == 1
    assert dispatcher.dispatch("200") == "Command 200 (debug sensor data) successful"


def test_bus_fault_reports_generic_token(dispatcher, rig):
    rig.gpio.fail_pins.add(23)
    assert dispatcher.dispatch("132") == FAILURE_REJECTED
