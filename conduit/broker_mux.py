"""
Namespaced publish/subscribe across several MQTT brokers

Every topic handled by the hub is written as ``BROKER_NAME:TOPIC`` where
``BROKER_NAME`` is one of the configured brokers. The multiplexer owns one
paho client per broker and routes each operation to the right one, so callers
never touch a broker connection directly.

Startup blocks until every broker accepts a connection. A broker that is down
is retried every minute for as long as it takes; the hub cannot do anything
useful without its brokers, and a misconfigured broker simply hangs here.
After that, paho's own reconnect logic handles drops and the multiplexer only
logs them.
"""

from __future__ import annotations

import functools
import logging
import ssl
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import paho.mqtt.client as mqtt

from .config import BrokerConfig

LOGGER = logging.getLogger("conduit.broker_mux")

UNKNOWN_BROKER = "UNKNOWN"
KEEPALIVE_SECONDS = 60
CONNECT_RETRY_SECONDS = 60.0
CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_WAIT_SECONDS = 10.0

ClientFactory = Callable[[BrokerConfig], mqtt.Client]
MessageCallback = Callable[["NamespacedMessage"], None]


class AddressingError(LookupError):
    """A namespaced address names a broker that is not configured."""

    def __init__(self, broker: str) -> None:
        super().__init__(f"{broker} is not a valid broker")
        self.broker = broker


class ConnectivityError(ConnectionError):
    """A broker could not be reached during startup."""


def split_mux_topic(address: str) -> tuple[str, str]:
    """Split ``broker:topic`` on the first colon."""
    broker, sep, topic = address.partition(":")
    if not sep:
        return UNKNOWN_BROKER, ""
    return broker, topic


def _is_mqtt_success(reason_code: Any) -> bool:
    try:
        if hasattr(reason_code, "is_failure"):
            return not reason_code.is_failure
        candidate = getattr(reason_code, "value", reason_code)
        return int(candidate) == 0
    except (TypeError, ValueError):
        return False


class FailedResult:
    """Already-completed failure shaped like paho's ``MQTTMessageInfo``.

    Unpacks as ``(rc, mid)`` so it can also stand in for the tuple returned by
    ``Client.subscribe``.
    """

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.rc = mqtt.MQTT_ERR_NOT_FOUND
        self.mid = 0

    def __iter__(self) -> Iterator[int]:
        return iter((self.rc, self.mid))

    def __getitem__(self, index: int) -> int:
        return (self.rc, self.mid)[index]

    def __repr__(self) -> str:
        return f"FailedResult({self.error!s})"

    def is_published(self) -> bool:
        return False

    def wait_for_publish(self, timeout: float | None = None) -> None:
        return None


class NamespacedMessage:
    """Delivered message whose ``topic`` reads ``broker:topic``.

    Everything else is read from the wrapped paho message.
    """

    __slots__ = ("_message", "_client", "topic")

    def __init__(self, message: mqtt.MQTTMessage, topic: str, client: mqtt.Client | None = None) -> None:
        self._message = message
        self._client = client
        self.topic = topic

    @property
    def payload(self) -> bytes:
        return self._message.payload

    @property
    def qos(self) -> int:
        return self._message.qos

    @property
    def retain(self) -> bool:
        return self._message.retain

    @property
    def dup(self) -> bool:
        return self._message.dup

    @property
    def mid(self) -> int:
        return self._message.mid

    def ack(self) -> Any:
        if self._client is None:
            return mqtt.MQTT_ERR_NO_CONN
        return self._client.ack(self._message.mid, self._message.qos)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._message, name)

    def __repr__(self) -> str:
        return f"NamespacedMessage(topic={self.topic!r}, qos={self.qos}, retain={self.retain})"


def build_client(broker: BrokerConfig) -> mqtt.Client:
    """Create an unconnected paho client for a broker."""
    callback_kwargs: dict[str, object] = {}
    if hasattr(mqtt, "CallbackAPIVersion"):
        callback_kwargs["callback_api_version"] = mqtt.CallbackAPIVersion.VERSION2
    client = mqtt.Client(
        client_id=broker.client_id,
        clean_session=False,
        **callback_kwargs,
    )
    if broker.username:
        client.username_pw_set(broker.username, broker.password or "")
    if broker.tls:
        tls_kwargs: dict[str, object] = {}
        if broker.ca_cert:
            tls_kwargs["ca_certs"] = broker.ca_cert
        tls_kwargs["tls_version"] = getattr(ssl, "PROTOCOL_TLS_CLIENT", ssl.PROTOCOL_TLS)
        client.tls_set(**tls_kwargs)
    return client


class BrokerMux:
    def __init__(
        self,
        brokers: Sequence[BrokerConfig],
        *,
        client_factory: ClientFactory | None = None,
        retry_delay: float = CONNECT_RETRY_SECONDS,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or LOGGER
        self._client_factory = client_factory or build_client
        self._retry_delay = retry_delay
        self._connect_timeout = connect_timeout
        self._sleep = sleep
        self._brokers: dict[str, mqtt.Client] = {}

        for broker in brokers:
            client = self._client_factory(broker)
            self._connect(broker, client)
            self._logger.info("[bmux] new broker: %s=%s:%d", broker.name, broker.host, broker.port)
            self._brokers[broker.name] = client

    @property
    def broker_names(self) -> tuple[str, ...]:
        return tuple(self._brokers)

    def _connect(self, broker: BrokerConfig, client: mqtt.Client) -> None:
        connected = threading.Event()
        client.on_connect = functools.partial(self._on_connect, broker.name, connected)
        client.on_disconnect = functools.partial(self._on_disconnect, broker.name)
        while True:
            try:
                self._connect_once(broker, client, connected)
                return
            except ConnectivityError as exc:
                self._logger.info("[bmux] error connecting to broker %s at start: %s", broker.name, exc)
                self._sleep(self._retry_delay)

    def _connect_once(self, broker: BrokerConfig, client: mqtt.Client, connected: threading.Event) -> None:
        connected.clear()
        try:
            client.connect(broker.host, broker.port, keepalive=KEEPALIVE_SECONDS)
        except (OSError, ValueError) as exc:
            raise ConnectivityError(f"{broker.host}:{broker.port}: {exc}") from exc
        client.loop_start()
        if not connected.wait(self._connect_timeout):
            client.disconnect()
            client.loop_stop()
            raise ConnectivityError(f"{broker.host}:{broker.port}: no CONNACK within {self._connect_timeout:.0f}s")

    def _on_connect(
        self,
        name: str,
        connected: threading.Event,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if not _is_mqtt_success(reason_code):
            self._logger.info("[bmux] %s: connection refused (reason=%s)", name, reason_code)
            return
        self._logger.info("[bmux] %s: connected", name)
        connected.set()

    def _on_disconnect(
        self,
        name: str,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any = None,
        properties: Any = None,
    ) -> None:
        self._logger.info("[bmux] %s: disconnected (reason=%s)", name, reason_code)

    def publish(self, address: str, payload: Any = None, qos: int = 0, retain: bool = False) -> Any:
        broker, topic = split_mux_topic(address)
        client = self._brokers.get(broker)
        if client is None:
            return FailedResult(AddressingError(broker))
        return client.publish(topic, payload=payload, qos=qos, retain=retain)

    def subscribe(self, address: str, callback: MessageCallback, qos: int = 0) -> Any:
        broker, topic = split_mux_topic(address)
        client = self._brokers.get(broker)
        if client is None:
            return FailedResult(AddressingError(broker))

        def _deliver(delivering_client: mqtt.Client, _userdata: Any, message: mqtt.MQTTMessage) -> None:
            wrapped = NamespacedMessage(message, f"{broker}:{message.topic}", delivering_client)
            try:
                callback(wrapped)
            except Exception as exc:
                self._logger.error(
                    "[bmux] subscriber callback failed for '%s': %s", wrapped.topic, exc, exc_info=True
                )

        self._logger.debug("[bmux] subscribe: %s:%s", broker, topic)
        client.message_callback_add(topic, _deliver)
        return client.subscribe(topic, qos)


def wait_result(result: Any, timeout: float = DEFAULT_WAIT_SECONDS, logger: logging.Logger | None = None) -> bool:
    """Wait up to ``timeout`` seconds for a publish/subscribe result.

    Failures are logged and reported as ``False``; nothing is retried.
    """
    log = logger or LOGGER
    if isinstance(result, FailedResult):
        log.error("[bmux] %s", result.error)
        return False
    if isinstance(result, tuple):
        rc = result[0]
        if rc != mqtt.MQTT_ERR_SUCCESS:
            log.error("[bmux] subscribe failed (rc=%s)", rc)
            return False
        return True
    try:
        result.wait_for_publish(timeout)
    except (RuntimeError, ValueError) as exc:
        log.error("[bmux] publish failed (rc=%s): %s", result.rc, exc)
        return False
    if not result.is_published():
        log.warning("[bmux] publish not confirmed after %.0fs (mid=%s)", timeout, result.mid)
        return False
    return True


def dispatch(
    mux: BrokerMux,
    address: str,
    payload: Any,
    *,
    qos: int = 0,
    retain: bool = False,
    timeout: float = DEFAULT_WAIT_SECONDS,
    logger: logging.Logger | None = None,
) -> threading.Thread:
    """Publish on a worker thread so the caller never waits on a broker."""
    log = logger or LOGGER

    def _send() -> None:
        try:
            result = mux.publish(address, payload, qos=qos, retain=retain)
        except (TypeError, ValueError) as exc:
            log.error("[bmux] publish to %s rejected: %s", address, exc)
            return
        wait_result(result, timeout, log)

    thread = threading.Thread(target=_send, name="conduit-publish", daemon=True)
    thread.start()
    return thread
