"""Conduit hub daemon: wires the broker multiplexer to every data source."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .broker_mux import BrokerMux
from .config import BrokerConfig, HubConfig, load_env_file
from .device_mgmt import DeviceManager, start_device_mgmt
from .images import start_local_images, start_remote_images
from .jobs import JobRunner
from .mirror import start_mirrors
from .sdr import SdrPipeline, start_sdr
from .strings import start_strings
from .temp_sensors import TempSensorHub, start_temp_sensors
from .weather import start_weather

LOGGER = logging.getLogger("conduit-hub")

IDLE_SECONDS = 60


@dataclass
class Hub:
    mux: BrokerMux
    sdr: SdrPipeline | None = None
    temp_sensors: TempSensorHub | None = None
    device: DeviceManager | None = None
    runners: list[JobRunner] = field(default_factory=list)


def start_hub(config: HubConfig, *, mux_factory: Callable[[Sequence[BrokerConfig]], Any] = BrokerMux) -> Hub:
    if not config.brokers:
        LOGGER.warning("No brokers configured (CONDUIT_BROKERS); every publish will fail")
    hub = Hub(mux=mux_factory(config.brokers))

    hub.sdr = start_sdr(hub.mux, config.sdr)

    if runner := start_remote_images(hub.mux, config.remote_images):
        hub.runners.append(runner)
    hub.temp_sensors = start_temp_sensors(hub.mux, config.sensor_groups)
    hub.runners.extend(start_weather(hub.mux, config.weather))
    if runner := start_local_images(hub.mux, config.local_images):
        hub.runners.append(runner)
    if runner := start_strings(hub.mux, config.strings):
        hub.runners.append(runner)
    start_mirrors(hub.mux, config.mirrors)

    hub.device = start_device_mgmt(hub.mux, config.device)
    LOGGER.info("Conduit hub running (%d broker(s), %d scheduled source(s))", len(config.brokers), len(hub.runners))
    return hub


def load_source(config_path: str | None) -> dict[str, str]:
    """Environment layered with the optional config file (file wins)."""
    source = dict(os.environ)
    if config_path:
        source.update(load_env_file(Path(config_path)))
    return source


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Bridge data sources onto MQTT brokers")
    parser.add_argument("config", nargs="?", help="KEY=value config file layered over the environment")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    try:
        source = load_source(args.config)
    except OSError as exc:
        print(f"{exc}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1

    config = HubConfig.from_env(source)
    level = logging.DEBUG if config.debug else getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if config.debug:
        LOGGER.info("DEBUG")

    start_hub(config)
    while True:
        time.sleep(IDLE_SECONDS)
