"""Current conditions from OpenWeatherMap, one report per zip code."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .broker_mux import BrokerMux, wait_result
from .config import WeatherConfig
from .jobs import JobRunner, build_job_runner

LOGGER = logging.getLogger("conduit.weather")

REQUEST_TIMEOUT_SECONDS = 10.0


def format_report(zipcode: str, data: dict[str, Any]) -> str:
    main = data.get("main") or {}
    wind = data.get("wind") or {}
    conditions = ", ".join(
        str(entry.get("description", "")) for entry in data.get("weather") or [] if entry.get("description")
    )
    temperature = float(main.get("temp", 0.0))
    speed = float(wind.get("speed", 0.0))
    return f"{zipcode} is {temperature:.0f}° with {conditions} and {speed:.0f} MPH wind"


def fetch_weather(config: WeatherConfig, zipcode: str) -> dict[str, Any] | None:
    params = {"zip": zipcode, "APPID": config.key or "", "units": "imperial"}
    try:
        response = httpx.get(config.base_url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
        LOGGER.error("[weather] GET bad response: %s: %s", zipcode, exc.response.status_code)
    except httpx.HTTPError as exc:
        LOGGER.error("[weather] GET error: %s: %s", zipcode, exc)
    except ValueError as exc:
        LOGGER.error("[weather] parse error: %s: %s", zipcode, exc)
    return None


def report_weather(mux: BrokerMux, config: WeatherConfig, zipcode: str) -> str | None:
    data = fetch_weather(config, zipcode)
    if data is None:
        return None
    try:
        event = format_report(zipcode, data)
    except (TypeError, ValueError, AttributeError) as exc:
        LOGGER.error("[weather] parse error: %s: %s", zipcode, exc)
        return None
    LOGGER.info("[weather] %s", event)
    wait_result(mux.publish(config.topic, event), logger=LOGGER)
    return event


def start_weather(mux: BrokerMux, config: WeatherConfig) -> list[JobRunner]:
    if not config.topic:
        return []
    if not config.key:
        LOGGER.error("[weather] empty key")

    runners: list[JobRunner] = []
    for location in config.locations:
        zipcode = location.zipcode
        runner = build_job_runner(
            f"weather-{zipcode}",
            location.jobs,
            lambda zipcode=zipcode: report_weather(mux, config, zipcode),
        )
        runner.run()
        runners.append(runner)
    return runners
