"""
Device management over MQTT

- Publishes the LAN address to ``<topic>IP`` once at startup
- Runs named shell commands sent as the payload of ``<topic>cmd``
- Publishes ``<topic>uptime`` (hours) and ``<topic>time`` every hour

Only commands listed in the configuration can run; the payload just picks one
by name.
"""

from __future__ import annotations

import logging
import socket
import subprocess  # nosec B404 - subprocess used for configured device commands
import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import psutil

from .broker_mux import DEFAULT_WAIT_SECONDS, BrokerMux, NamespacedMessage, wait_result
from .config import DeviceCommand, DeviceConfig

LOGGER = logging.getLogger("conduit.device_mgmt")

UPTIME_PERIOD_SECONDS = 3600


def _is_valid_ip(ip: str | None) -> bool:
    return bool(ip) and not ip.startswith("127.") and ip != "0.0.0.0"


def detect_ip_address() -> str | None:
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as exc:
        LOGGER.debug("[device] unable to list interfaces: %s", exc)
        return None
    for addresses in interfaces.values():
        for address in addresses:
            if address.family == socket.AF_INET and _is_valid_ip(address.address):
                return address.address
    return None


class DeviceManager:
    def __init__(
        self,
        mux: BrokerMux,
        config: DeviceConfig,
        *,
        run: Callable[..., Any] = subprocess.run,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.mux = mux
        self.config = config
        self.uptime_hours = 0
        self._commands = {command.name: command for command in config.commands}
        self._run = run
        self._now = now
        self._sleep = sleep
        self._logger = logger or LOGGER

    @property
    def topic(self) -> str:
        return self.config.topic or ""

    def _publish_retained(self, suffix: str, payload: str) -> bool:
        result = self.mux.publish(f"{self.topic}{suffix}", payload, qos=1, retain=True)
        return wait_result(result, DEFAULT_WAIT_SECONDS, self._logger)

    def publish_ip(self) -> str | None:
        ip = detect_ip_address()
        if ip is None:
            self._logger.warning("[device] no LAN address found")
            return None
        self._publish_retained("IP", ip)
        return ip

    def report_uptime(self) -> None:
        self._publish_retained("uptime", str(self.uptime_hours))
        self._publish_retained("time", self._now().astimezone().isoformat())

    def subscribe_commands(self) -> Any:
        return self.mux.subscribe(f"{self.topic}cmd", self.handle_command)

    def handle_command(self, message: NamespacedMessage) -> threading.Thread | None:
        name = bytes(message.payload).decode("utf-8", errors="ignore").strip()
        self._logger.info("[device] command: name=%s", name)
        command = self._commands.get(name)
        if command is None:
            return None
        thread = threading.Thread(target=self.execute, args=(command,), name="conduit-device-cmd", daemon=True)
        thread.start()
        return thread

    def execute(self, command: DeviceCommand) -> bool:
        try:
            result = self._run(  # nosec B603 B607 - configured command line
                ["/bin/bash", "-c", command.cmdline],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=True,
            )
        except FileNotFoundError as exc:
            self._logger.error("[device] command %s: not found: %s", command.name, exc)
            return False
        except subprocess.CalledProcessError as exc:
            self._logger.error("[device] command %s: exit code %s: %s", command.name, exc.returncode, exc.output)
            return False
        self._logger.info("[device] command %s: result=%s", command.name, result.stdout)
        return True

    def run_forever(self) -> None:
        self.report_uptime()
        while True:
            self._sleep(UPTIME_PERIOD_SECONDS)
            self.uptime_hours += 1
            self.report_uptime()


def start_device_mgmt(mux: BrokerMux, config: DeviceConfig) -> DeviceManager | None:
    if not config.topic:
        return None
    manager = DeviceManager(mux, config)
    manager.publish_ip()
    wait_result(manager.subscribe_commands(), logger=LOGGER)
    threading.Thread(target=manager.run_forever, name="conduit-uptime", daemon=True).start()
    return manager
