"""
rtl_433 sensor ingestion

Two daemon threads connected by a one-slot queue:

- ``Rtl433Supervisor`` runs rtl_433 over and over, pushing each JSON line into
  the queue (blocking until the consumer takes it). Cycles that produce no
  output count toward a deadman threshold; reaching it reboots the machine
  once, since a wedged USB receiver usually needs a power cycle.
- ``SensorBridge`` owns all sensor state. It folds partial readings into one
  record per device and, every ``interval`` minutes, publishes the records
  that changed. Publishing happens on worker threads so a slow broker never
  holds up ingestion.
"""

from __future__ import annotations

import json
import logging
import math
import queue
import subprocess  # nosec B404 - subprocess used to run rtl_433 and reboot
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .broker_mux import BrokerMux, dispatch
from .config import Rtl433Config, SdrConfig

LOGGER = logging.getLogger("conduit.sdr")

SECONDS_PER_MINUTE = 60


class MalformedRecordError(ValueError):
    """A line from rtl_433 is not a usable sensor record."""


def device_hash(model: str, device_id: int) -> str:
    return f"{model}:{device_id}"


def fahrenheit_to_celsius(value: float) -> float:
    return (value - 32.0) * (5.0 / 9.0)


def _number(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRecordError(f"{key} is not numeric: {value!r}")
    if not math.isfinite(value):
        raise MalformedRecordError(f"{key} is not finite: {value!r}")
    return float(value)


@dataclass(frozen=True)
class SensorReading:
    model: str
    id: int
    temperature_c: float = 0.0
    temperature_f: float = 0.0
    humidity: float = 0.0
    wind_avg_km_h: float = 0.0
    wind_dir_deg: float = 0.0
    rain_mm: float = 0.0

    @property
    def hash(self) -> str:
        return device_hash(self.model, self.id)

    @classmethod
    def from_json(cls, line: str | bytes) -> SensorReading:
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedRecordError(str(exc)) from exc
        if not isinstance(data, dict):
            raise MalformedRecordError(f"expected an object, got {type(data).__name__}")
        device_id = data.get("id", 0)
        if isinstance(device_id, bool) or not isinstance(device_id, int):
            raise MalformedRecordError(f"bad id: {device_id!r}")
        return cls(
            model=str(data.get("model", "")),
            id=device_id,
            temperature_c=_number(data, "temperature_C"),
            temperature_f=_number(data, "temperature_F"),
            humidity=_number(data, "humidity"),
            wind_avg_km_h=_number(data, "wind_avg_km_h"),
            wind_dir_deg=_number(data, "wind_dir_deg"),
            rain_mm=_number(data, "rain_mm"),
        )


@dataclass
class SensorState:
    """Latest coalesced values for one device."""

    device_id: int
    temperature: float = 0.0
    humidity: float = 0.0
    wind_speed: float = 0.0
    wind_dir: float = 0.0
    rain: float = 0.0
    dirty: bool = False

    def apply(self, reading: SensorReading) -> None:
        # First reading since the last emit starts from a clean slate
        if not self.dirty:
            self.temperature = 0.0
            self.humidity = 0.0
            self.wind_speed = 0.0
            self.wind_dir = 0.0
            self.rain = 0.0
            self.dirty = True

        if reading.temperature_c:
            self.temperature = reading.temperature_c
        if reading.temperature_f:
            self.temperature = fahrenheit_to_celsius(reading.temperature_f)
        if reading.humidity:
            self.humidity = reading.humidity
        if reading.wind_avg_km_h and reading.wind_dir_deg:
            self.wind_speed = reading.wind_avg_km_h
            self.wind_dir = reading.wind_dir_deg
        if reading.rain_mm:
            self.rain = reading.rain_mm

    def to_payload(self) -> dict[str, float]:
        payload = {"temperature": round(self.temperature, 2)}
        optional = {
            "humidity": self.humidity,
            "windSpeed": self.wind_speed,
            "windDir": self.wind_dir,
            "rain": self.rain,
        }
        payload.update({key: round(value, 2) for key, value in optional.items() if value})
        return payload


class AllowList:
    """Devices to accept; an empty list accepts everything."""

    def __init__(self, entries: Iterable[tuple[str, int]] = ()) -> None:
        self._allowed = frozenset(device_hash(model, device_id) for model, device_id in entries)

    def __len__(self) -> int:
        return len(self._allowed)

    def allows(self, model: str, device_id: int) -> bool:
        if not self._allowed:
            return True
        return device_hash(model, device_id) in self._allowed


def build_rtl433_args(config: Rtl433Config) -> list[str]:
    args = ["-F", "json", "-C", "si"]
    if config.on_seconds > 0:
        args += ["-T", str(config.on_seconds)]
    for protocol in config.protocols:
        args += ["-R", str(protocol)]
    return args


class Rtl433Supervisor:
    def __init__(
        self,
        config: Rtl433Config,
        lines: queue.Queue[str],
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        run: Callable[..., Any] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.deadman = config.deadman
        self.idle_cycles = 0
        self._lines = lines
        self._popen = popen
        self._run = run
        self._sleep = sleep
        self._logger = logger or LOGGER
        self._command = [config.app, *build_rtl433_args(config)]

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def run_forever(self) -> None:
        self._logger.info("[sdr] args: %s", self._command[1:])
        while True:
            count = self.run_cycle()
            if count is None:
                return
            self.check_deadman(count)
            if self.config.off_seconds > 0:
                self._sleep(self.config.off_seconds)

    def run_cycle(self) -> int | None:
        """Run rtl_433 once; returns lines forwarded, or None if it cannot start."""
        try:
            process = self._popen(  # nosec B603 - command built from config
                self._command,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            self._logger.error("[sdr] start: %s", exc)
            return None

        self._logger.debug("[sdr] loop: start")
        count = 0
        with process:
            for raw in process.stdout:
                line = raw.strip()
                if not line:
                    continue
                count += 1
                self._lines.put(line)
        self._logger.debug("[sdr] loop: end (rc=%s, lines=%d)", process.returncode, count)
        return count

    def check_deadman(self, count: int) -> None:
        if self.deadman <= 0:
            return
        if count:
            self.idle_cycles = 0
            return
        self.idle_cycles += 1
        if self.idle_cycles >= self.deadman:
            self.deadman = 0
            self._logger.warning("[sdr] reboot due to deadman after %d idle cycles", self.idle_cycles)
            self.reboot()

    def reboot(self) -> None:
        try:
            self._run(list(self.config.reboot_command), check=True)  # nosec B603
        except FileNotFoundError as exc:
            self._logger.error("[sdr] reboot: command not found: %s", exc)
        except subprocess.CalledProcessError as exc:
            self._logger.error("[sdr] reboot: command failed with exit code %s", exc.returncode)


class SensorBridge:
    def __init__(
        self,
        mux: BrokerMux,
        config: SdrConfig,
        lines: queue.Queue[str],
        *,
        clock: Callable[[], float] = time.monotonic,
        dispatcher: Callable[..., Any] = dispatch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.allow = AllowList(config.allow)
        self.sensors: dict[str, SensorState] = {}
        self._mux = mux
        self._lines = lines
        self._clock = clock
        self._dispatch = dispatcher
        self._logger = logger or LOGGER
        self._period = max(1, config.interval) * SECONDS_PER_MINUTE

    def consume(self, line: str) -> SensorState | None:
        try:
            reading = SensorReading.from_json(line)
        except MalformedRecordError as exc:
            self._logger.info("[sdr] consume: %s: %s", exc, line)
            return None

        if not self.allow.allows(reading.model, reading.id):
            return None

        self._logger.debug("[sdr] consume: %s", reading)
        sensor = self.sensors.get(reading.hash)
        if sensor is None:
            sensor = SensorState(device_id=reading.id)
            self.sensors[reading.hash] = sensor
        sensor.apply(reading)
        return sensor

    def emit(self) -> list[str]:
        topics: list[str] = []
        for sensor in self.sensors.values():
            if not sensor.dirty:
                continue
            sensor.dirty = False
            topic = f"{self.config.topic}{sensor.device_id}"
            payload = json.dumps(sensor.to_payload())
            self._logger.debug("[sdr] emit: %s: %s", topic, payload)
            self._dispatch(self._mux, topic, payload, logger=self._logger)
            topics.append(topic)
        return topics

    def run_forever(self) -> None:
        next_emit = self._clock() + self._period
        while True:
            remaining = next_emit - self._clock()
            if remaining <= 0:
                self.emit()
                next_emit += self._period
                continue
            try:
                line = self._lines.get(timeout=remaining)
            except queue.Empty:
                continue
            self.consume(line)


@dataclass
class SdrPipeline:
    supervisor: Rtl433Supervisor
    bridge: SensorBridge
    threads: tuple[threading.Thread, ...]


def start_sdr(mux: BrokerMux, config: SdrConfig) -> SdrPipeline | None:
    if not config.topic:
        LOGGER.debug("[sdr] no topic configured; SDR disabled")
        return None

    lines: queue.Queue[str] = queue.Queue(maxsize=1)
    supervisor = Rtl433Supervisor(config.rtl433, lines)
    bridge = SensorBridge(mux, config, lines)
    if len(bridge.allow):
        LOGGER.info("[sdr] allowing %d sensor(s)", len(bridge.allow))

    threads = (
        threading.Thread(target=supervisor.run_forever, name="conduit-rtl433", daemon=True),
        threading.Thread(target=bridge.run_forever, name="conduit-sdr", daemon=True),
    )
    for thread in threads:
        thread.start()
    return SdrPipeline(supervisor=supervisor, bridge=bridge, threads=threads)
