"""
Observability Events.

Every state-relevant step of a session (connect, subscribe, publish,
receive, disconnect, reconnect, stop) is reported as a `SessionEvent`
to a sink. The default sink forwards events to the `logging` module;
tests and applications can pass any callable instead.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class SessionEventType(str, Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    SUBSCRIBED = "subscribed"
    SUBSCRIBE_FAILED = "subscribe_failed"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"
    MESSAGE_RECEIVED = "message_received"
    DISCONNECTED = "disconnected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    STOPPED = "stopped"


@dataclass(frozen=True, kw_only=True)
class SessionEvent:
    type: SessionEventType
    client_id: str
    state: str
    topic: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None
    detail: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        if self.error is not None:
            data["error"] = f"{type(self.error).__name__}: {self.error}"
        return data

    def to_json(self) -> str:
        """Converts the event to a JSON string."""
        return json.dumps(self.to_dict())


EventSink = Callable[[SessionEvent], None]

_WARNING_EVENTS = {
    SessionEventType.CONNECT_FAILED,
    SessionEventType.SUBSCRIBE_FAILED,
    SessionEventType.PUBLISH_FAILED,
    SessionEventType.DISCONNECTED,
}

_DEBUG_EVENTS = {
    SessionEventType.PUBLISHED,
    SessionEventType.MESSAGE_RECEIVED,
}


class LoggingEventSink:
    """Writes session events to a logger, failures as warnings."""

    def __init__(self, event_logger: Optional[logging.Logger] = None):
        self.logger = event_logger or logger

    def __call__(self, event: SessionEvent) -> None:
        if event.type in _WARNING_EVENTS:
            level = logging.WARNING
        elif event.type in _DEBUG_EVENTS:
            level = logging.DEBUG
        else:
            level = logging.INFO

        message = f"[{event.client_id}] {event.type.value} (state={event.state})"
        if event.topic:
            message += f" topic='{event.topic}'"
        if event.reason:
            message += f" reason={event.reason}"
        if event.detail:
            message += f" {event.detail}"
        if event.error is not None:
            message += f" error={type(event.error).__name__}: {event.error}"
        self.logger.log(level, message)
