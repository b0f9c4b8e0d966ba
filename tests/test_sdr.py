"""Tests for rtl_433 ingestion (conduit/sdr.py)."""

from __future__ import annotations

import io
import json
import queue
import subprocess
from unittest.mock import MagicMock, Mock

import pytest
from conduit.config import Rtl433Config, SdrConfig
from conduit.sdr import (
    AllowList,
    MalformedRecordError,
    Rtl433Supervisor,
    SensorBridge,
    SensorReading,
    SensorState,
    build_rtl433_args,
    start_sdr,
)


class _StopLoop(Exception):
    """Raised from a fake to break out of a forever loop."""


def _line(**fields) -> str:
    record = {"model": "Acurite-Tower", "id": 1}
    record.update(fields)
    return json.dumps(record)


def _clock(*values: float):
    iterator = iter(values)
    return lambda: next(iterator)


def _process(lines: list[str]) -> MagicMock:
    process = MagicMock()
    process.stdout = list(lines)
    process.returncode = 0
    return process


@pytest.fixture
def sdr_config():
    return SdrConfig(topic="local:sdr/", interval=1)


@pytest.fixture
def bridge(mock_mux, sdr_config, mock_logger):
    dispatcher = Mock()
    bridge = SensorBridge(mock_mux, sdr_config, queue.Queue(), dispatcher=dispatcher, logger=mock_logger)
    return bridge, dispatcher


# Record Parsing


class TestSensorReading:
    def test_parses_known_fields(self):
        reading = SensorReading.from_json(_line(temperature_C=20.5, humidity=55, rain_mm=1.2))

        assert reading.hash == "Acurite-Tower:1"
        assert reading.temperature_c == 20.5
        assert reading.humidity == 55.0
        assert reading.rain_mm == 1.2
        assert reading.wind_avg_km_h == 0.0

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            "[1, 2, 3]",
            '{"model": "x", "id": "abc"}',
            '{"model": "x", "id": 1, "temperature_C": "warm"}',
            '{"model": "x", "id": 1, "humidity": true}',
            '{"model": "x", "id": 1e400, "temperature_C": 20}',
            '{"model": "x", "id": 1.5}',
            '{"model": "x", "id": true}',
            '{"model": "x", "id": 1, "temperature_C": NaN}',
            '{"model": "x", "id": 1, "humidity": Infinity}',
        ],
    )
    def test_rejects_malformed(self, line):
        with pytest.raises(MalformedRecordError):
            SensorReading.from_json(line)


# Coalescing


class TestSensorState:
    def test_fahrenheit_overrides_celsius(self):
        state = SensorState(device_id=1)

        state.apply(SensorReading(model="m", id=1, temperature_c=10.0, temperature_f=68.0))

        assert state.temperature == pytest.approx(20.0)

    def test_wind_needs_speed_and_direction(self):
        state = SensorState(device_id=1)

        state.apply(SensorReading(model="m", id=1, wind_avg_km_h=12.0))
        assert state.wind_speed == 0.0

        state.apply(SensorReading(model="m", id=1, wind_avg_km_h=12.0, wind_dir_deg=270.0))
        assert (state.wind_speed, state.wind_dir) == (12.0, 270.0)

    def test_payload_omits_zero_optionals(self):
        state = SensorState(device_id=1, temperature=0.0, humidity=41.234)

        assert state.to_payload() == {"temperature": 0.0, "humidity": 41.23}


class TestAllowList:
    def test_empty_allows_all(self):
        assert AllowList().allows("anything", 99)

    def test_only_listed_devices(self):
        allow = AllowList([("Acurite-Tower", 1)])

        assert len(allow) == 1
        assert allow.allows("Acurite-Tower", 1)
        assert not allow.allows("Acurite-Tower", 2)
        assert not allow.allows("LaCrosse", 1)


class TestSensorBridge:
    def test_partial_readings_coalesce(self, bridge):
        sensor_bridge, dispatcher = bridge

        sensor_bridge.consume(_line(temperature_C=20.0))
        sensor_bridge.consume(_line(humidity=55))
        topics = sensor_bridge.emit()

        assert topics == ["local:sdr/1"]
        dispatcher.assert_called_once()
        _mux, topic, payload = dispatcher.call_args.args
        assert topic == "local:sdr/1"
        assert json.loads(payload) == {"temperature": 20.0, "humidity": 55.0}

    def test_no_reemit_without_new_reading(self, bridge):
        sensor_bridge, dispatcher = bridge
        sensor_bridge.consume(_line(temperature_C=20.0))
        sensor_bridge.emit()

        assert sensor_bridge.emit() == []
        assert dispatcher.call_count == 1

    def test_first_reading_after_emit_starts_fresh(self, bridge):
        sensor_bridge, dispatcher = bridge
        sensor_bridge.consume(_line(temperature_C=20.0, humidity=55))
        sensor_bridge.emit()

        sensor_bridge.consume(_line(humidity=60))
        sensor_bridge.emit()

        payload = json.loads(dispatcher.call_args.args[2])
        assert payload == {"temperature": 0.0, "humidity": 60.0}

    def test_allow_list_drops_other_devices(self, mock_mux, mock_logger):
        dispatcher = Mock()
        config = SdrConfig(topic="local:sdr/", allow=(("Acurite-Tower", 1),))
        sensor_bridge = SensorBridge(mock_mux, config, queue.Queue(), dispatcher=dispatcher, logger=mock_logger)

        assert sensor_bridge.consume(_line(model="LaCrosse", id=2, temperature_C=4.0)) is None
        assert sensor_bridge.sensors == {}
        assert sensor_bridge.emit() == []
        dispatcher.assert_not_called()

    def test_out_of_range_id_is_dropped(self, bridge):
        sensor_bridge, _dispatcher = bridge

        assert sensor_bridge.consume('{"model": "A", "id": 1e400, "temperature_C": 20}') is None
        assert sensor_bridge.consume(_line(temperature_C=20.0)) is not None
        assert sensor_bridge.emit() == ["local:sdr/1"]

    def test_malformed_line_is_dropped(self, bridge, mock_logger):
        sensor_bridge, _dispatcher = bridge

        assert sensor_bridge.consume("{truncated") is None
        assert sensor_bridge.sensors == {}
        mock_logger.info.assert_called_once()

    def test_separate_devices_publish_separately(self, bridge):
        sensor_bridge, _dispatcher = bridge
        sensor_bridge.consume(_line(id=1, temperature_C=20.0))
        sensor_bridge.consume(_line(id=2, temperature_C=21.0))

        assert sorted(sensor_bridge.emit()) == ["local:sdr/1", "local:sdr/2"]

    def test_run_forever_emits_at_deadline(self, mock_mux, sdr_config, mock_logger):
        lines: queue.Queue[str] = queue.Queue()
        lines.put(_line(temperature_C=20.0))
        dispatcher = Mock(side_effect=_StopLoop)
        # start, first check (consume), empty wait, deadline reached
        clock = _clock(0.0, 0.0, 59.99, 61.0)
        sensor_bridge = SensorBridge(
            mock_mux, sdr_config, lines, clock=clock, dispatcher=dispatcher, logger=mock_logger
        )

        with pytest.raises(_StopLoop):
            sensor_bridge.run_forever()

        assert dispatcher.call_args.args[1] == "local:sdr/1"


# rtl_433 Supervision


class TestRtl433Supervisor:
    def test_build_args(self):
        config = Rtl433Config(protocols=(40, 41), on_seconds=30)

        assert build_rtl433_args(config) == ["-F", "json", "-C", "si", "-T", "30", "-R", "40", "-R", "41"]

    def test_build_args_defaults(self):
        assert build_rtl433_args(Rtl433Config()) == ["-F", "json", "-C", "si"]

    def test_run_cycle_forwards_lines(self, mock_logger):
        lines: queue.Queue[str] = queue.Queue()
        popen = Mock(return_value=_process(['{"id": 1}\n', "\n", '{"id": 2}\n']))
        supervisor = Rtl433Supervisor(Rtl433Config(app="/usr/bin/rtl_433"), lines, popen=popen, logger=mock_logger)

        assert supervisor.run_cycle() == 2
        assert lines.get_nowait() == '{"id": 1}'
        assert lines.get_nowait() == '{"id": 2}'
        popen.assert_called_once_with(
            ["/usr/bin/rtl_433", "-F", "json", "-C", "si"],
            stdout=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )

    def test_run_cycle_survives_undecodable_output(self, mock_logger):
        lines: queue.Queue[str] = queue.Queue()
        raw = b'{"model": "A\xff", "id": 1}\n{"model": "B", "id": 2}\n'

        def _popen(_command, **kwargs):
            # Decode stdout the way Popen would with the requested settings
            stdout = io.TextIOWrapper(io.BytesIO(raw), encoding=kwargs["encoding"], errors=kwargs["errors"])
            return _process(list(stdout))

        supervisor = Rtl433Supervisor(Rtl433Config(), lines, popen=_popen, logger=mock_logger)

        assert supervisor.run_cycle() == 2
        assert "\ufffd" in lines.get_nowait()
        assert lines.get_nowait() == '{"model": "B", "id": 2}'

    def test_run_cycle_start_failure(self, mock_logger):
        popen = Mock(side_effect=FileNotFoundError("rtl_433"))
        supervisor = Rtl433Supervisor(Rtl433Config(), queue.Queue(), popen=popen, logger=mock_logger)

        assert supervisor.run_cycle() is None
        supervisor.run_forever()
        assert mock_logger.error.call_count == 2

    def test_deadman_reboots_once(self, mock_logger):
        run = Mock()
        supervisor = Rtl433Supervisor(Rtl433Config(deadman=3), queue.Queue(), run=run, logger=mock_logger)

        for _ in range(3):
            supervisor.check_deadman(0)

        run.assert_called_once_with(["sudo", "reboot", "now"], check=True)
        assert supervisor.deadman == 0

        for _ in range(5):
            supervisor.check_deadman(0)
        run.assert_called_once()

    def test_productive_cycle_resets_deadman(self, mock_logger):
        run = Mock()
        supervisor = Rtl433Supervisor(Rtl433Config(deadman=3), queue.Queue(), run=run, logger=mock_logger)

        for count in (0, 0, 4, 0, 0):
            supervisor.check_deadman(count)

        run.assert_not_called()
        assert supervisor.idle_cycles == 2

    def test_deadman_disabled(self, mock_logger):
        run = Mock()
        supervisor = Rtl433Supervisor(Rtl433Config(deadman=0), queue.Queue(), run=run, logger=mock_logger)

        for _ in range(10):
            supervisor.check_deadman(0)

        run.assert_not_called()

    def test_run_forever_idle_cycles_trigger_reboot(self, mock_logger):
        popen = Mock(side_effect=[_process([]), _process([]), _process([]), FileNotFoundError("gone")])
        run = Mock()
        sleep = Mock()
        config = Rtl433Config(deadman=2, off_seconds=5, reboot_command=("systemctl", "reboot"))
        supervisor = Rtl433Supervisor(config, queue.Queue(), popen=popen, run=run, sleep=sleep, logger=mock_logger)

        supervisor.run_forever()

        run.assert_called_once_with(["systemctl", "reboot"], check=True)
        assert sleep.call_count == 3
        sleep.assert_called_with(5)

    def test_reboot_failure_is_logged(self, mock_logger):
        run = Mock(side_effect=subprocess.CalledProcessError(1, ["sudo", "reboot", "now"]))
        supervisor = Rtl433Supervisor(Rtl433Config(), queue.Queue(), run=run, logger=mock_logger)

        supervisor.reboot()

        mock_logger.error.assert_called_once()


def test_start_sdr_disabled_without_topic(mock_mux):
    assert start_sdr(mock_mux, SdrConfig()) is None
