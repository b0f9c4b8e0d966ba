"""Tests for temperature roll-ups (conduit/temp_sensors.py)."""

from __future__ import annotations

import json
from unittest.mock import Mock, patch

import pytest
from conduit.config import JobConfig, TempSensorConfig, TempSensorGroup
from conduit.temp_sensors import TempSensor, TempSensorHub, celsius_to_fahrenheit, start_temp_sensors


@pytest.fixture
def group():
    return TempSensorGroup(
        name="outside",
        topic="cloud:temps",
        sensors=(
            TempSensorConfig(label="Porch", address="local:sdr/1"),
            TempSensorConfig(label="Attic", address="local:sdr/2"),
        ),
        jobs=JobConfig(),
    )


@pytest.fixture
def hub(mock_mux, group):
    return TempSensorHub(mux=mock_mux, groups=[group])


def test_celsius_to_fahrenheit():
    assert celsius_to_fahrenheit(20.0) == pytest.approx(68.0)


def test_describe():
    assert TempSensor(label="Porch", temperature=71.64, humidity=45.2).describe() == "Porch is 71.6° / 45%"
    assert TempSensor(label="Attic", temperature=88.0).describe() == "Attic is 88.0°"


class TestTempSensorHub:
    def test_reading_converts_to_fahrenheit(self, hub):
        hub.process_reading("local:sdr/1", json.dumps({"temperature": 20.0, "humidity": 45}))

        porch = hub.sensors["local:sdr/1"]
        assert porch.temperature == pytest.approx(68.0)
        assert porch.humidity == 45.0
        assert porch.dirty

    def test_unknown_topic_ignored(self, hub):
        hub.process_reading("local:sdr/9", json.dumps({"temperature": 20.0}))

        assert not any(sensor.dirty for sensor in hub.sensors.values())

    def test_bad_payload_is_logged(self, hub):
        with patch("conduit.temp_sensors.LOGGER") as mock_logger:
            hub.process_reading("local:sdr/1", b"{not json")
            hub.process_reading("local:sdr/1", json.dumps({"humidity": 40}))

        assert mock_logger.error.call_count == 2
        assert not hub.sensors["local:sdr/1"].dirty

    @patch("conduit.temp_sensors.dispatch")
    def test_group_reports_only_fresh_sensors(self, mock_dispatch, hub, mock_mux):
        hub.process_reading("local:sdr/1", json.dumps({"temperature": 20.0, "humidity": 45}))
        hub.process_reading("local:sdr/2", json.dumps({"temperature": 10.0}))

        event = hub.process_group(0)

        assert event == "Porch is 68.0° / 45%:Attic is 50.0°"
        mock_dispatch.assert_called_once()
        assert mock_dispatch.call_args.args == (mock_mux, "cloud:temps", event)

        hub.process_reading("local:sdr/2", json.dumps({"temperature": 12.0}))
        assert hub.process_group(0) == "Attic is 53.6°"
        assert hub.process_group(0) is None
        assert mock_dispatch.call_count == 2

    def test_bad_group_index(self, hub):
        assert hub.process_group(3) is None

    @patch("conduit.temp_sensors.dispatch")
    def test_events_run_through_queue(self, mock_dispatch, hub):
        hub.handle_message(Mock(topic="local:sdr/1", payload=json.dumps({"temperature": 0.0})))
        hub.request_report(0)

        hub.handle_event(hub._events.get_nowait())
        hub.handle_event(hub._events.get_nowait())

        assert mock_dispatch.call_args.args[2] == "Porch is 32.0°"


def test_start_subscribes_each_sensor(mock_mux, group):
    hub = start_temp_sensors(mock_mux, [group])

    assert hub is not None
    addresses = [call.args[0] for call in mock_mux.subscribe.call_args_list]
    assert addresses == ["local:sdr/1", "local:sdr/2"]


def test_start_without_groups(mock_mux):
    assert start_temp_sensors(mock_mux, []) is None
