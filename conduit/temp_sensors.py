"""
Temperature sensor roll-ups

Each group subscribes to a handful of sensor topics (the JSON records the SDR
bridge publishes) and, on its schedule, publishes one line summarizing every
sensor that reported since the last summary:

    Porch is 71.6° / 45%:Attic is 88.0°

Readings and report ticks arrive on one queue and are handled by a single
thread, so sensor state needs no locking.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .broker_mux import BrokerMux, NamespacedMessage, dispatch, wait_result
from .config import TempSensorGroup
from .jobs import JobRunner, build_job_runner

LOGGER = logging.getLogger("conduit.temp_sensors")


def celsius_to_fahrenheit(value: float) -> float:
    return (value * 9) / 5 + 32


@dataclass
class TempSensor:
    label: str
    temperature: float = 0.0
    humidity: float = 0.0
    dirty: bool = False

    def take_dirty(self) -> bool:
        was_dirty = self.dirty
        self.dirty = False
        return was_dirty

    def describe(self) -> str:
        text = f"{self.label} is {self.temperature:.1f}°"
        if self.humidity > 0:
            text += f" / {self.humidity:.0f}%"
        return text


@dataclass
class TempSensorHub:
    mux: BrokerMux
    groups: Sequence[TempSensorGroup]
    sensors: dict[str, TempSensor] = field(default_factory=dict)
    _events: queue.Queue = field(default_factory=queue.Queue, init=False, repr=False)

    def __post_init__(self) -> None:
        for group in self.groups:
            for sensor in group.sensors:
                self.sensors[sensor.address] = TempSensor(label=sensor.label)

    def handle_message(self, message: NamespacedMessage) -> None:
        self._events.put(("reading", message.topic, message.payload))

    def request_report(self, index: int) -> None:
        self._events.put(("report", index))

    def process_reading(self, topic: str, payload: bytes | str) -> None:
        sensor = self.sensors.get(topic)
        if sensor is None:
            return
        try:
            data: Any = json.loads(payload)
            temperature = float(data["temperature"])
            humidity = float(data.get("humidity") or 0.0)
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            LOGGER.error("[sensors] processTemp: %s: %s", topic, exc)
            return
        sensor.temperature = celsius_to_fahrenheit(temperature)
        sensor.humidity = humidity
        sensor.dirty = True
        LOGGER.debug("[sensors] %s %.2f %.0f", topic, sensor.temperature, sensor.humidity)

    def process_group(self, index: int) -> str | None:
        if not 0 <= index < len(self.groups):
            LOGGER.error("[sensors] bad group index: %d", index)
            return None
        group = self.groups[index]
        parts = [
            sensor.describe()
            for sensor in (self.sensors.get(desc.address) for desc in group.sensors)
            if sensor is not None and sensor.take_dirty()
        ]
        if not parts:
            return None
        event = ":".join(parts)
        LOGGER.info("[sensors] event: %s", event)
        dispatch(self.mux, group.topic, event, logger=LOGGER)
        return event

    def handle_event(self, event: tuple) -> None:
        if event[0] == "reading":
            self.process_reading(event[1], event[2])
        elif event[0] == "report":
            self.process_group(event[1])

    def run_forever(self) -> None:
        while True:
            self.handle_event(self._events.get())


def start_temp_sensors(mux: BrokerMux, groups: Sequence[TempSensorGroup]) -> TempSensorHub | None:
    if not groups:
        return None
    hub = TempSensorHub(mux=mux, groups=groups)

    runners: list[JobRunner] = []
    for idx, group in enumerate(groups):
        LOGGER.debug("[sensors] init group: %s:%d", group.topic, idx)
        runners.append(build_job_runner(f"sensors-{idx}", group.jobs, lambda idx=idx: hub.request_report(idx)))
        for sensor in group.sensors:
            LOGGER.debug("[sensors] init sensor: %s (%s)", sensor.address, sensor.label)
            if not wait_result(mux.subscribe(sensor.address, hub.handle_message), logger=LOGGER):
                LOGGER.error("[sensors] could not subscribe to %s", sensor.address)

    threading.Thread(target=hub.run_forever, name="conduit-temp-sensors", daemon=True).start()
    for runner in runners:
        runner.run()
    return hub
