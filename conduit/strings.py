"""Publish one randomly chosen string from a fixed list on a schedule."""

from __future__ import annotations

import logging
import random

from .broker_mux import BrokerMux, wait_result
from .config import StringsConfig
from .jobs import JobRunner, build_job_runner

LOGGER = logging.getLogger("conduit.strings")


def publish_random_string(mux: BrokerMux, config: StringsConfig, rng: random.Random | None = None) -> str:
    choice = (rng or random).choice(config.strings)
    LOGGER.debug("[strings] %s: %s", config.topic, choice)
    wait_result(mux.publish(config.topic, choice), logger=LOGGER)
    return choice


def start_strings(mux: BrokerMux, config: StringsConfig) -> JobRunner | None:
    if not config.topic or not config.strings:
        return None
    runner = build_job_runner("strings", config.jobs, lambda: publish_random_string(mux, config))
    runner.run()
    return runner
