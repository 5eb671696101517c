"""
Data Models for the Session Manager.

Defines the immutable connection configuration, the session options,
the message envelopes exchanged with the transport and the states
the session moves through.
"""
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

from mqtt_session.errors import ConfigError, InvalidTopicError

DEFAULT_PORT = 1883
DEFAULT_KEEP_ALIVE = 60
DEFAULT_RECONNECT_DELAY = 5.0


class QoS(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class DisconnectReason(str, Enum):
    NETWORK_ERROR = "network_error"
    BROKER_CLOSED = "broker_closed"
    PROTOCOL_ERROR = "protocol_error"
    KEEP_ALIVE_TIMEOUT = "keep_alive_timeout"


# --- Configuration ---

@dataclass(frozen=True, kw_only=True)
class ConnectionConfig:
    """Identity, credentials and broker address of one session."""
    client_id: str
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    host: str = "localhost"
    port: int = DEFAULT_PORT
    keep_alive_seconds: int = DEFAULT_KEEP_ALIVE

    def __post_init__(self):
        if not self.host:
            raise ConfigError("Broker host must not be empty")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Broker port out of range: {self.port}")
        if not 0 <= self.keep_alive_seconds <= 65535:
            raise ConfigError(f"Keep-alive out of range: {self.keep_alive_seconds}")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, kw_only=True)
class SessionOptions:
    """Timing and behavior knobs of the Session Manager."""
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    connect_timeout: float = 10.0
    operation_timeout: float = 10.0
    # Subscribing while offline stores the filter for the next connect
    defer_subscriptions: bool = True
    # None retries forever
    max_reconnect_attempts: Optional[int] = None

    def __post_init__(self):
        if self.reconnect_delay < 0:
            raise ConfigError(f"reconnect_delay must not be negative: {self.reconnect_delay}")
        if self.connect_timeout <= 0 or self.operation_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ConfigError(f"max_reconnect_attempts must not be negative: {self.max_reconnect_attempts}")


# --- Messages ---

@dataclass(frozen=True)
class Subscription:
    topic_filter: str
    qos: QoS = QoS.AT_MOST_ONCE


@dataclass(frozen=True, kw_only=True)
class OutboundMessage:
    """A message handed to `SessionManager.publish`. Not persisted."""
    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    duplicate: bool = False

    @classmethod
    def from_text(cls, topic: str, text: str, **kwargs) -> "OutboundMessage":
        """Builds a message whose payload is the UTF-8 encoding of `text`."""
        return cls(topic=topic, payload=text.encode("utf-8"), **kwargs)


@dataclass(frozen=True, kw_only=True)
class InboundMessage:
    """A PUBLISH received from the broker, passed once to the message handler."""
    topic: str
    payload: bytes
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False

    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


# --- Topic validation ---

def validate_topic(topic: str) -> None:
    """Raises InvalidTopicError unless `topic` is usable as a publish topic."""
    if not topic:
        raise InvalidTopicError("Topic must not be empty")
    if "\x00" in topic:
        raise InvalidTopicError(f"Topic contains a NUL character: {topic!r}")
    if "#" in topic or "+" in topic:
        raise InvalidTopicError(f"Wildcards are not allowed in publish topics: {topic!r}")


def validate_topic_filter(topic_filter: str) -> None:
    """Raises InvalidTopicError unless `topic_filter` is a valid subscription filter."""
    if not topic_filter:
        raise InvalidTopicError("Topic filter must not be empty")
    if "\x00" in topic_filter:
        raise InvalidTopicError(f"Topic filter contains a NUL character: {topic_filter!r}")

    levels = topic_filter.split("/")
    for index, level in enumerate(levels):
        if "#" in level and (level != "#" or index != len(levels) - 1):
            raise InvalidTopicError(f"'#' must be the whole last level: {topic_filter!r}")
        if "+" in level and level != "+":
            raise InvalidTopicError(f"'+' must occupy a whole level: {topic_filter!r}")
