"""
Pytest Configuration and Fixtures for the pi_mqtt_digitalout project.

This module provides:
- gpiozero's MockFactory as pin factory, so the gatekeeper's outputs can
  be tested on any development machine, not just a Raspberry Pi.
- An in-memory fake broker that stands in for `aiomqtt.Client` on the
  client side, so request/response round trips run without a network.
"""

import asyncio
import inspect
import json
import logging
import sys

import pytest
from aiomqtt import Topic
from gpiozero import Device
from gpiozero.pins.mock import MockFactory
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from pi_mqtt_digitalout.client.connection import Communicator

# --- Configure GPIO Zero to use MockFactory ---
# Any DigitalOutputDevice(pin) created during the tests is backed by a mock pin.
# Read https://gpiozero.readthedocs.io/en/stable/api_pins.html for more details on pin factories.
_mock_factory_instance = MockFactory()
Device.pin_factory = _mock_factory_instance


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture(autouse=True)
def reset_mock_gpio_pins_before_each_test():
    """
    Resets the MockFactory's pins and reservations before each test to ensure a clean state.
    """
    _mock_factory_instance.reset()


# --- Fake broker for the client side ---

class FakeMessage:
    """Mimics the parts of `aiomqtt.Message` the communicator reads."""
    def __init__(self, topic: str, payload: bytes, properties):
        self.topic = Topic(topic)
        self.payload = payload
        self.properties = properties


class FakeMQTTClient:
    """
    Async context manager with the `aiomqtt.Client` surface used by the
    communicator. Every publish is recorded on the broker and answered by
    the broker's responder.
    """
    def __init__(self, broker: "FakeBroker", hostname: str, port: int, **kwargs):
        self.broker = broker
        self.hostname = hostname
        self.port = port
        self.kwargs = kwargs
        self._inbox = None

    async def __aenter__(self):
        self.broker.connections.append((self.hostname, self.port))
        if self.broker.connect_error is not None:
            raise self.broker.connect_error
        self._inbox = asyncio.Queue()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def subscribe(self, topic, qos=0):
        self.broker.subscriptions.append(topic)

    async def publish(self, topic, payload=None, qos=0, retain=False, properties=None):
        request = json.loads(payload)
        self.broker.published.append((topic, request, properties))
        if self.broker.responder is None:
            return

        response = self.broker.responder(topic, request)
        if inspect.isawaitable(response):
            response = await response
        if response is None:
            return # never answered

        reply_properties = Properties(PacketTypes.PUBLISH)
        reply_properties.CorrelationData = properties.CorrelationData
        raw = response if isinstance(response, bytes) else response.to_bytes()
        await self._inbox.put(FakeMessage(properties.ResponseTopic, raw, reply_properties))

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            yield await self._inbox.get()


class FakeBroker:
    """
    In-memory stand-in for the board's broker.

    `responder(topic, request_dict)` returns an RPCResponsePayload, raw bytes,
    an awaitable of either, or None to leave the request unanswered.
    """
    def __init__(self):
        self.responder = None
        self.connect_error = None
        self.connections = []
        self.subscriptions = []
        self.published = []

    def client_factory(self, hostname, port, **kwargs):
        return FakeMQTTClient(self, hostname, port, **kwargs)


@pytest.fixture
def fake_broker(mocker):
    """Replaces aiomqtt's Client inside the client connection module."""
    broker = FakeBroker()
    mocker.patch("pi_mqtt_digitalout.client.connection.MQTTClient", side_effect=broker.client_factory)
    return broker


@pytest.fixture
def communicator(fake_broker):
    communicator = Communicator({"mqtt": {"timeout": 0.5}})
    yield communicator
    communicator.destroy()
