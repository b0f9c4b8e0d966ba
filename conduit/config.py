"""Configuration helpers for the Conduit hub."""

from __future__ import annotations

import os
import re
import shlex
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from conduit.utils import env_key, parse_bool, parse_int, parse_int_list, split_csv

DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTT_TLS_PORT = 8883
DEFAULT_RTL433_APP = "rtl_433"
DEFAULT_REBOOT_COMMAND = "sudo reboot now"
DEFAULT_WEATHER_BASE_URL = "http://api.openweathermap.org/data/2.5/weather"
STRINGS_SEPARATOR = "|"
MIRROR_SEPARATOR = "->"

# VAR_NAME="value", VAR_NAME=value or export VAR_NAME=value
_ASSIGNMENT_RE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def _strip_quotes(value: str) -> str:
    """Remove matching single or double quotes from a value."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def load_env_file(path: Path | str) -> dict[str, str]:
    """Read a shell-style KEY=value file into a dict.

    Blank lines and ``#`` comments are skipped. Raises ``OSError`` when the
    file cannot be read.
    """
    values: dict[str, str] = {}
    for raw in Path(path).read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _ASSIGNMENT_RE.match(line)
        if not match:
            continue
        values[match.group(1)] = _strip_quotes(match.group(2))
    return values


@dataclass(frozen=True)
class BrokerConfig:
    name: str
    host: str
    port: int
    tls: bool
    username: str | None
    password: str | None
    client_id: str
    ca_cert: str | None = None


@dataclass(frozen=True)
class JobConfig:
    """Scheduling inputs; see ``conduit.jobs.build_job_runner`` for precedence."""

    offsets: tuple[int, ...] = ()
    rand_min: int = 0
    rand_max: int = 0
    every_start: int = 0
    every_interval: int = 0

    @property
    def is_set(self) -> bool:
        return bool(self.offsets) or self.rand_max > 0 or self.every_interval > 0


@dataclass(frozen=True)
class Rtl433Config:
    app: str = DEFAULT_RTL433_APP
    protocols: tuple[int, ...] = ()
    on_seconds: int = 0
    off_seconds: int = 0
    deadman: int = 0
    reboot_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_REBOOT_COMMAND))


@dataclass(frozen=True)
class SdrConfig:
    topic: str | None = None
    interval: int = 1
    allow: tuple[tuple[str, int], ...] = ()
    rtl433: Rtl433Config = field(default_factory=Rtl433Config)


@dataclass(frozen=True)
class WeatherLocation:
    zipcode: str
    jobs: JobConfig


@dataclass(frozen=True)
class WeatherConfig:
    topic: str | None = None
    key: str | None = None
    base_url: str = DEFAULT_WEATHER_BASE_URL
    locations: tuple[WeatherLocation, ...] = ()


@dataclass(frozen=True)
class TempSensorConfig:
    label: str
    address: str


@dataclass(frozen=True)
class TempSensorGroup:
    name: str
    topic: str
    sensors: tuple[TempSensorConfig, ...]
    jobs: JobConfig


@dataclass(frozen=True)
class RemoteImageSource:
    name: str
    uri: str
    offsets: tuple[int, ...]
    resize_width: int
    resize_height: int
    start_x: int = 0
    start_y: int = 0


@dataclass(frozen=True)
class RemoteImageConfig:
    topic: str | None = None
    width: int = 0
    height: int = 0
    sources: tuple[RemoteImageSource, ...] = ()


@dataclass(frozen=True)
class LocalImageConfig:
    topic: str | None = None
    width: int = 0
    height: int = 0
    sources: tuple[str, ...] = ()
    fixed_delay: int = 0
    rand_delay: int = 0


@dataclass(frozen=True)
class StringsConfig:
    topic: str | None = None
    strings: tuple[str, ...] = ()
    jobs: JobConfig = field(default_factory=JobConfig)


@dataclass(frozen=True)
class MirrorConfig:
    sub: str
    pub: str


@dataclass(frozen=True)
class DeviceCommand:
    name: str
    cmdline: str


@dataclass(frozen=True)
class DeviceConfig:
    topic: str | None = None
    commands: tuple[DeviceCommand, ...] = ()


@dataclass(frozen=True)
class HubConfig:
    hostname: str
    debug: bool
    brokers: tuple[BrokerConfig, ...]
    sdr: SdrConfig
    weather: WeatherConfig
    sensor_groups: tuple[TempSensorGroup, ...]
    remote_images: RemoteImageConfig
    local_images: LocalImageConfig
    strings: StringsConfig
    mirrors: tuple[MirrorConfig, ...]
    device: DeviceConfig

    @classmethod
    def from_env(cls, source: Mapping[str, str] | None = None) -> HubConfig:
        source = dict(os.environ if source is None else source)
        hostname = _strip_or_none(source.get("CONDUIT_HOSTNAME")) or socket.gethostname()

        brokers = tuple(_parse_broker(source, name, hostname) for name in split_csv(source.get("CONDUIT_BROKERS")))

        rtl433 = Rtl433Config(
            app=_strip_or_none(source.get("CONDUIT_RTL433_APP")) or DEFAULT_RTL433_APP,
            protocols=tuple(parse_int_list(source.get("CONDUIT_RTL433_PROTOCOLS"))),
            on_seconds=max(0, parse_int(source.get("CONDUIT_RTL433_ON_SECONDS"), 0)),
            off_seconds=max(0, parse_int(source.get("CONDUIT_RTL433_OFF_SECONDS"), 0)),
            deadman=max(0, parse_int(source.get("CONDUIT_RTL433_DEADMAN"), 0)),
            reboot_command=tuple(
                shlex.split(_strip_or_none(source.get("CONDUIT_REBOOT_COMMAND")) or DEFAULT_REBOOT_COMMAND)
            ),
        )
        sdr = SdrConfig(
            topic=_strip_or_none(source.get("CONDUIT_SDR_TOPIC")),
            interval=max(1, parse_int(source.get("CONDUIT_SDR_INTERVAL"), 1)),
            allow=_parse_allow_list(source.get("CONDUIT_SDR_ALLOW")),
            rtl433=rtl433,
        )

        weather_jobs = _parse_jobs(source, "CONDUIT_WEATHER_")
        weather = WeatherConfig(
            topic=_strip_or_none(source.get("CONDUIT_WEATHER_TOPIC")),
            key=_strip_or_none(source.get("CONDUIT_WEATHER_KEY")),
            base_url=_strip_or_none(source.get("CONDUIT_WEATHER_BASE_URL")) or DEFAULT_WEATHER_BASE_URL,
            locations=tuple(
                WeatherLocation(
                    zipcode=zipcode,
                    jobs=_parse_jobs(source, f"CONDUIT_WEATHER_{env_key(zipcode)}_", fallback=weather_jobs),
                )
                for zipcode in split_csv(source.get("CONDUIT_WEATHER_LOCATIONS"))
            ),
        )

        sensor_groups = tuple(
            group
            for group in (_parse_sensor_group(source, name) for name in split_csv(source.get("CONDUIT_SENSOR_GROUPS")))
            if group is not None
        )

        remote_images = RemoteImageConfig(
            topic=_strip_or_none(source.get("CONDUIT_REMOTE_IMAGE_TOPIC")),
            width=max(0, parse_int(source.get("CONDUIT_REMOTE_IMAGE_WIDTH"), 0)),
            height=max(0, parse_int(source.get("CONDUIT_REMOTE_IMAGE_HEIGHT"), 0)),
            sources=tuple(
                image
                for image in (
                    _parse_remote_image(source, name) for name in split_csv(source.get("CONDUIT_REMOTE_IMAGE_SOURCES"))
                )
                if image is not None
            ),
        )

        local_images = LocalImageConfig(
            topic=_strip_or_none(source.get("CONDUIT_LOCAL_IMAGE_TOPIC")),
            width=max(0, parse_int(source.get("CONDUIT_LOCAL_IMAGE_WIDTH"), 0)),
            height=max(0, parse_int(source.get("CONDUIT_LOCAL_IMAGE_HEIGHT"), 0)),
            sources=tuple(split_csv(source.get("CONDUIT_LOCAL_IMAGE_SOURCES"))),
            fixed_delay=parse_int(source.get("CONDUIT_LOCAL_IMAGE_FIXED_DELAY"), 0),
            rand_delay=max(0, parse_int(source.get("CONDUIT_LOCAL_IMAGE_RAND_DELAY"), 0)),
        )

        strings = StringsConfig(
            topic=_strip_or_none(source.get("CONDUIT_STRINGS_TOPIC")),
            strings=tuple(split_csv(source.get("CONDUIT_STRINGS"), STRINGS_SEPARATOR)),
            jobs=_parse_jobs(source, "CONDUIT_STRINGS_"),
        )

        mirrors = tuple(
            mirror
            for mirror in (_parse_mirror(token) for token in split_csv(source.get("CONDUIT_MIRRORS")))
            if mirror is not None
        )

        device = DeviceConfig(
            topic=_strip_or_none(source.get("CONDUIT_DEVICE_TOPIC")),
            commands=tuple(
                DeviceCommand(name=name, cmdline=cmdline)
                for name in split_csv(source.get("CONDUIT_DEVICE_COMMANDS"))
                if (cmdline := _strip_or_none(source.get(f"CONDUIT_DEVICE_COMMAND_{env_key(name)}")))
            ),
        )

        return cls(
            hostname=hostname,
            debug=parse_bool(source.get("CONDUIT_DEBUG"), False),
            brokers=brokers,
            sdr=sdr,
            weather=weather,
            sensor_groups=sensor_groups,
            remote_images=remote_images,
            local_images=local_images,
            strings=strings,
            mirrors=mirrors,
            device=device,
        )


def _parse_broker(source: Mapping[str, str], name: str, hostname: str) -> BrokerConfig:
    prefix = f"CONDUIT_BROKER_{env_key(name)}_"
    tls = parse_bool(source.get(f"{prefix}TLS"), False)
    default_port = DEFAULT_MQTT_TLS_PORT if tls else DEFAULT_MQTT_PORT
    return BrokerConfig(
        name=name,
        host=_strip_or_none(source.get(f"{prefix}HOST")) or "localhost",
        port=parse_int(source.get(f"{prefix}PORT"), default_port),
        tls=tls,
        username=_strip_or_none(source.get(f"{prefix}USER")),
        password=_strip_or_none(source.get(f"{prefix}PASS")),
        client_id=_strip_or_none(source.get(f"{prefix}CLIENT")) or f"conduit-{hostname}-{name}",
        ca_cert=_strip_or_none(source.get(f"{prefix}CA_CERT")),
    )


def _parse_jobs(source: Mapping[str, str], prefix: str, fallback: JobConfig | None = None) -> JobConfig:
    jobs = JobConfig(
        offsets=tuple(parse_int_list(source.get(f"{prefix}OFFSETS"))),
        rand_min=parse_int(source.get(f"{prefix}RAND_MIN"), 0),
        rand_max=parse_int(source.get(f"{prefix}RAND_MAX"), 0),
        every_start=parse_int(source.get(f"{prefix}EVERY_START"), 0),
        every_interval=parse_int(source.get(f"{prefix}EVERY_INTERVAL"), 0),
    )
    if fallback is not None and not jobs.is_set:
        return fallback
    return jobs


def _parse_allow_list(value: str | None) -> tuple[tuple[str, int], ...]:
    entries: list[tuple[str, int]] = []
    for token in split_csv(value):
        model, sep, raw_id = token.rpartition(":")
        if not sep or not model:
            continue
        try:
            entries.append((model.strip(), int(raw_id)))
        except ValueError:
            continue
    return tuple(entries)


def _parse_sensor_group(source: Mapping[str, str], name: str) -> TempSensorGroup | None:
    prefix = f"CONDUIT_SENSOR_GROUP_{env_key(name)}_"
    topic = _strip_or_none(source.get(f"{prefix}TOPIC"))
    if not topic:
        return None
    sensors: list[TempSensorConfig] = []
    for token in split_csv(source.get(f"{prefix}SENSORS")):
        label, sep, address = token.partition("=")
        if not sep or not label.strip() or not address.strip():
            continue
        sensors.append(TempSensorConfig(label=label.strip(), address=address.strip()))
    return TempSensorGroup(name=name, topic=topic, sensors=tuple(sensors), jobs=_parse_jobs(source, prefix))


def _parse_remote_image(source: Mapping[str, str], name: str) -> RemoteImageSource | None:
    prefix = f"CONDUIT_REMOTE_IMAGE_{env_key(name)}_"
    uri = _strip_or_none(source.get(f"{prefix}URI"))
    if not uri:
        return None
    return RemoteImageSource(
        name=name,
        uri=uri,
        offsets=tuple(parse_int_list(source.get(f"{prefix}OFFSETS"))),
        resize_width=max(0, parse_int(source.get(f"{prefix}RESIZE_WIDTH"), 0)),
        resize_height=max(0, parse_int(source.get(f"{prefix}RESIZE_HEIGHT"), 0)),
        start_x=max(0, parse_int(source.get(f"{prefix}START_X"), 0)),
        start_y=max(0, parse_int(source.get(f"{prefix}START_Y"), 0)),
    )


def _parse_mirror(token: str) -> MirrorConfig | None:
    sub, sep, pub = token.partition(MIRROR_SEPARATOR)
    if not sep or not sub.strip() or not pub.strip():
        return None
    return MirrorConfig(sub=sub.strip(), pub=pub.strip())
