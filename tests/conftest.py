"""
Pytest Configuration and Fixtures for the mqtt_session project.

Provides a recording in-memory Transport so the Session Manager can be
exercised without a broker, plus the shared logging setup for test runs.
"""

import asyncio
import sys
import logging
from typing import List, Optional

import pytest

from mqtt_session.errors import NetworkError, SessionError
from mqtt_session.events import SessionEvent, SessionEventType
from mqtt_session.models import (
    ConnectionConfig,
    DisconnectReason,
    InboundMessage,
    OutboundMessage,
    SessionOptions,
    Subscription,
)
from mqtt_session.session import SessionManager
from mqtt_session.transport import Transport


class FakeTransport(Transport):
    """
    Records every call and lets a test script the outcome of each one.

    `connect_results` is consumed one entry per connect: None succeeds, an
    exception instance is raised. Gates (asyncio.Event) block an operation
    until the test sets them.
    """

    def __init__(self):
        super().__init__()
        self.calls: List[str] = []
        self.connect_configs: List[ConnectionConfig] = []
        self.connect_results: List[Optional[SessionError]] = []
        self.connect_gate: Optional[asyncio.Event] = None
        self.published: List[OutboundMessage] = []
        self.publish_error: Optional[SessionError] = None
        self.publish_gate: Optional[asyncio.Event] = None
        self.subscribe_requests: List[List[str]] = []
        self.subscribe_error: Optional[SessionError] = None
        self.disconnect_count = 0
        self.connected = False

    @property
    def connect_count(self) -> int:
        return self.calls.count("connect")

    async def connect(self, config: ConnectionConfig, timeout: float) -> None:
        self.calls.append("connect")
        self.connect_configs.append(config)
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_results:
            error = self.connect_results.pop(0)
            if error is not None:
                raise error
        self.connected = True

    async def publish(self, message: OutboundMessage, timeout: Optional[float] = None) -> None:
        self.calls.append("publish")
        if self.publish_gate is not None:
            await self.publish_gate.wait()
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(message)

    async def subscribe(self, subscriptions, timeout: Optional[float] = None) -> None:
        self.calls.append("subscribe")
        self.subscribe_requests.append([sub.topic_filter for sub in subscriptions])
        if self.subscribe_error is not None:
            raise self.subscribe_error

    async def disconnect(self) -> None:
        self.disconnect_count += 1
        self.connected = False

    def simulate_message(self, message: InboundMessage):
        self._notify_message(message)

    def simulate_link_loss(self, reason: DisconnectReason = DisconnectReason.NETWORK_ERROR):
        self.connected = False
        self._notify_disconnect(reason, NetworkError("connection reset by peer"))


class RecordingSink:
    """Event sink keeping every emitted event."""

    def __init__(self):
        self.events: List[SessionEvent] = []

    def __call__(self, event: SessionEvent):
        self.events.append(event)

    def of_type(self, event_type: SessionEventType) -> List[SessionEvent]:
        return [event for event in self.events if event.type is event_type]


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Tests bypass main.py, so this keeps log output readable during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def connection_config():
    return ConnectionConfig(
        client_id="C1",
        username="test",
        password="123456",
        host="localhost",
        port=1884,
    )


@pytest.fixture
def fast_options():
    """Short delays so reconnect paths finish within a test."""
    return SessionOptions(reconnect_delay=0.05, connect_timeout=1.0, operation_timeout=1.0)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def session(connection_config, fast_options, fake_transport, sink):
    return SessionManager(connection_config, fast_options, fake_transport, event_sink=sink)


@pytest.fixture
def wait_until():
    """Polls `predicate` on the running loop until it holds or the timeout expires."""
    async def _wait_until(predicate, timeout: float = 1.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.005)
        try:
            await asyncio.wait_for(_poll(), timeout)
        except asyncio.TimeoutError:
            pytest.fail(f"Condition not reached within {timeout}s")
    return _wait_until
