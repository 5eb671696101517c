"""
Transport Layer.

This module is responsible for:
- Defining the `Transport` contract the Session Manager drives
  (connect, publish, subscribe, disconnect) and the two notifications
  a transport delivers back (inbound message, link loss).
- Implementing that contract on top of `aiomqtt`, which performs the
  actual MQTT framing, keep-alive and socket I/O.
- Translating `aiomqtt` failures into the session's error taxonomy.
"""
import abc
import asyncio
import logging
from typing import Callable, Iterable, Optional

from aiomqtt import Client as MQTTClient, MqttCodeError, MqttError, ProtocolVersion

from mqtt_session.errors import (
    AuthError,
    NetworkError,
    NotConnectedError,
    OperationTimeoutError,
    ProtocolError,
    SessionError,
)
from mqtt_session.models import (
    ConnectionConfig,
    DisconnectReason,
    InboundMessage,
    OutboundMessage,
    QoS,
    Subscription,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[InboundMessage], None]
DisconnectCallback = Callable[[DisconnectReason, Optional[SessionError]], None]

# CONNACK return codes: 3.1.1 (4, 5) and MQTT v5 reason codes (134, 135)
AUTH_FAILURE_CODES = {4, 5, 134, 135}
PROTOCOL_FAILURE_CODES = {129, 130}
KEEP_ALIVE_TIMEOUT_CODE = 141
SUBACK_FAILURE = 0x80


class Transport(abc.ABC):
    """
    The MQTT I/O collaborator of a session.

    Implementations raise `SessionError` subclasses from their coroutines and
    report inbound PUBLISH packets and link loss through the callbacks
    registered with `attach`.
    """

    def __init__(self):
        self._on_message: Optional[MessageCallback] = None
        self._on_disconnect: Optional[DisconnectCallback] = None

    def attach(self, on_message: MessageCallback, on_disconnect: DisconnectCallback) -> None:
        self._on_message = on_message
        self._on_disconnect = on_disconnect

    @abc.abstractmethod
    async def connect(self, config: ConnectionConfig, timeout: float) -> None:
        """Performs the CONNECT/CONNACK handshake."""

    @abc.abstractmethod
    async def publish(self, message: OutboundMessage, timeout: Optional[float] = None) -> None:
        """Sends one PUBLISH and returns once the send is acknowledged."""

    @abc.abstractmethod
    async def subscribe(self, subscriptions: Iterable[Subscription], timeout: Optional[float] = None) -> None:
        """Sends one SUBSCRIBE for all filters, in the given order."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Closes the connection. Must be safe to call when not connected."""

    def _notify_message(self, message: InboundMessage) -> None:
        if self._on_message is not None:
            self._on_message(message)

    def _notify_disconnect(self, reason: DisconnectReason, error: Optional[SessionError] = None) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect(reason, error)


def _code_value(rc) -> int:
    # paho hands out plain ints for 3.1.1 and ReasonCode objects for v5
    return getattr(rc, "value", rc)


def translate_error(exc: MqttError, operation: str) -> SessionError:
    """Maps an aiomqtt exception onto the session error taxonomy."""
    if isinstance(exc, MqttCodeError):
        code = _code_value(exc.rc)
        if operation == "connect" and code in AUTH_FAILURE_CODES:
            return AuthError(f"Broker rejected credentials: {exc}")
        return ProtocolError(f"{operation} refused by broker: {exc}")
    if "timed out" in str(exc).lower():
        return OperationTimeoutError(f"{operation} timed out: {exc}")
    return NetworkError(f"{operation} failed: {exc}")


def classify_disconnect(exc: Optional[MqttError]) -> DisconnectReason:
    if exc is None:
        return DisconnectReason.BROKER_CLOSED
    if isinstance(exc, MqttCodeError):
        code = _code_value(exc.rc)
        if code == KEEP_ALIVE_TIMEOUT_CODE:
            return DisconnectReason.KEEP_ALIVE_TIMEOUT
        if code in PROTOCOL_FAILURE_CODES:
            return DisconnectReason.PROTOCOL_ERROR
        return DisconnectReason.BROKER_CLOSED
    return DisconnectReason.NETWORK_ERROR


def _payload_bytes(payload) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


def _abandon(client: MQTTClient):
    """
    Tears down a client whose handshake never completed.

    `__aexit__` is not usable here: it waits for a clean DISCONNECT and
    releases a lock the interrupted `__aenter__` may never have taken.
    The underlying paho client is closed directly instead.
    """
    paho = getattr(client, "_client", None)
    if paho is None:
        return
    try:
        paho.disconnect()
    except Exception as e:
        logger.debug(f"Ignoring error while abandoning MQTT connection: {e}")
    # disconnect() closes the socket once DISCONNECT is written; force it otherwise
    if paho.socket() is not None:
        try:
            paho._sock_close()
        except OSError as e:
            logger.debug(f"Ignoring error while closing MQTT socket: {e}")


class AiomqttTransport(Transport):
    """
    Transport backed by one `aiomqtt.Client` per connection.

    The connection is entered by hand (`__aenter__`/`__aexit__`) because its
    lifetime is driven by the session's state machine rather than by a
    `with` block. A reader task iterates `client.messages` and turns a broken
    iteration into a disconnect notification.
    """
    _client: Optional[MQTTClient]
    _reader_task: Optional[asyncio.Task]

    def __init__(self, protocol: ProtocolVersion = ProtocolVersion.V311):
        super().__init__()
        self.protocol = protocol
        self._client = None
        self._reader_task = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self, config: ConnectionConfig, timeout: float) -> None:
        if self._client is not None:
            raise ProtocolError("Transport is already connected")

        client = MQTTClient(
            config.host,
            config.port,
            identifier=config.client_id,
            username=config.username or None,
            password=config.password or None,
            protocol=self.protocol,
            keepalive=config.keep_alive_seconds,
            timeout=timeout,
        )
        logger.debug(f"Opening MQTT connection to {config.address} as {config.client_id}")
        try:
            await asyncio.wait_for(client.__aenter__(), timeout)
        except asyncio.TimeoutError:
            _abandon(client)
            raise OperationTimeoutError(f"connect to {config.address} timed out after {timeout}s") from None
        except MqttError as exc:
            _abandon(client)
            raise translate_error(exc, "connect") from exc
        except asyncio.CancelledError:
            _abandon(client)
            raise

        self._client = client
        self._reader_task = asyncio.create_task(self._read_loop(client))

    async def publish(self, message: OutboundMessage, timeout: Optional[float] = None) -> None:
        client = self._require_client()
        try:
            await client.publish(
                message.topic,
                payload=message.payload,
                qos=int(message.qos),
                retain=message.retain,
                timeout=timeout,
            )
        except MqttError as exc:
            raise translate_error(exc, "publish") from exc

    async def subscribe(self, subscriptions: Iterable[Subscription], timeout: Optional[float] = None) -> None:
        client = self._require_client()
        filters = [(sub.topic_filter, int(sub.qos)) for sub in subscriptions]
        if not filters:
            return
        try:
            granted = await client.subscribe(filters, timeout=timeout)
        except MqttError as exc:
            raise translate_error(exc, "subscribe") from exc

        rejected = [
            topic for (topic, _), code in zip(filters, granted or [])
            if _code_value(code) >= SUBACK_FAILURE
        ]
        if rejected:
            raise ProtocolError(f"Broker rejected subscription(s): {', '.join(rejected)}")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        await self._cancel_reader()
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except MqttError as exc:
            logger.debug(f"Ignoring error while closing MQTT connection: {exc}")

    def _require_client(self) -> MQTTClient:
        if self._client is None:
            raise NotConnectedError("Transport is not connected")
        return self._client

    async def _cancel_reader(self):
        task, self._reader_task = self._reader_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _read_loop(self, client: MQTTClient):
        """Forwards inbound PUBLISH packets until the link breaks."""
        failure: Optional[MqttError] = None
        try:
            async for message in client.messages:
                self._notify_message(InboundMessage(
                    topic=message.topic.value,
                    payload=_payload_bytes(message.payload),
                    qos=QoS(message.qos),
                    retain=bool(message.retain),
                ))
        except MqttError as exc:
            failure = exc

        # Reached only on link loss; a local disconnect cancels this task first
        if self._client is not client:
            return
        self._client = None
        self._reader_task = None
        try:
            await client.__aexit__(None, None, None)
        except MqttError:
            pass
        reason = classify_disconnect(failure)
        logger.warning(f"MQTT connection lost ({reason.value}): {failure}")
        self._notify_disconnect(reason, NetworkError(str(failure)) if failure else None)
