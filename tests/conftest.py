"""Shared test fixtures for the Conduit test suite.

This module provides reusable fixtures for:
- Logger mocking
- Broker configuration factories
- Fake paho clients that "connect" synchronously
- A mocked broker multiplexer for consumer modules
"""

from __future__ import annotations

import logging
from typing import Any
from unittest.mock import MagicMock, Mock

import paho.mqtt.client as mqtt
import pytest
from conduit.broker_mux import BrokerMux
from conduit.config import BrokerConfig

# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Mock logger restricted to real logging.Logger methods."""
    return Mock(spec=logging.Logger)


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def make_broker_config():
    """Factory fixture for broker configs.

    Usage:
        broker = make_broker_config(name="cloud", tls=True)
    """

    def _create(**overrides: Any) -> BrokerConfig:
        defaults: dict[str, Any] = {
            "name": "local",
            "host": "localhost",
            "port": 1883,
            "tls": False,
            "username": None,
            "password": None,
            "client_id": "conduit-test-local",
            "ca_cert": None,
        }
        defaults.update(overrides)
        return BrokerConfig(**defaults)

    return _create


def _message_info(rc: int = mqtt.MQTT_ERR_SUCCESS) -> Mock:
    # Matches paho-mqtt's Client.publish() return value
    info = Mock(spec=mqtt.MQTTMessageInfo)
    info.rc = rc
    info.mid = 1
    info.wait_for_publish = Mock(return_value=None)
    info.is_published = Mock(return_value=True)
    return info


@pytest.fixture
def make_fake_client():
    """Factory for paho client mocks whose connect() immediately reports CONNACK.

    ``reason_codes`` feeds successive on_connect reason codes (0 = accepted).
    """

    def _create(reason_codes: list[int] | None = None) -> MagicMock:
        client = MagicMock(spec=mqtt.Client)
        codes = list(reason_codes or [0])

        def _connect(*_args: Any, **_kwargs: Any) -> int:
            code = codes.pop(0) if len(codes) > 1 else codes[0]
            client.on_connect(client, None, {}, code, None)
            return 0

        client.connect.side_effect = _connect
        client.publish.return_value = _message_info()
        client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        return client

    return _create


@pytest.fixture
def message_info():
    return _message_info()


@pytest.fixture
def mock_mux(message_info):
    """BrokerMux stand-in for consumer modules."""
    mux = Mock(spec=BrokerMux)
    mux.publish.return_value = message_info
    mux.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return mux
