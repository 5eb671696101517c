"""
mqtt_session

This package provides an asynchronous MQTT client session core:
one broker connection with connect/subscribe/publish operations,
ordered delivery of inbound messages and automatic reconnection
with a fixed backoff after link loss.
"""
from mqtt_session.errors import (
    AuthError,
    ConfigError,
    ConnectInProgressError,
    InvalidTopicError,
    NetworkError,
    NotConnectedError,
    OperationResult,
    OperationTimeoutError,
    ProtocolError,
    SessionError,
)
from mqtt_session.events import LoggingEventSink, SessionEvent, SessionEventType
from mqtt_session.models import (
    ConnectionConfig,
    ConnectionState,
    DisconnectReason,
    InboundMessage,
    OutboundMessage,
    QoS,
    SessionOptions,
    Subscription,
)
from mqtt_session.session import SessionManager
from mqtt_session.transport import AiomqttTransport, Transport

__version__ = "0.1.0"

__all__ = [
    "AiomqttTransport",
    "AuthError",
    "ConfigError",
    "ConnectInProgressError",
    "ConnectionConfig",
    "ConnectionState",
    "DisconnectReason",
    "InboundMessage",
    "InvalidTopicError",
    "LoggingEventSink",
    "NetworkError",
    "NotConnectedError",
    "OperationResult",
    "OperationTimeoutError",
    "OutboundMessage",
    "ProtocolError",
    "QoS",
    "SessionError",
    "SessionEvent",
    "SessionEventType",
    "SessionManager",
    "SessionOptions",
    "Subscription",
    "Transport",
]
