"""
Session Manager.

This module contains the `SessionManager` class, which owns exactly one
broker connection through a `Transport` and is responsible for:
- Driving the connection state machine
  (DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...).
- Keeping the ordered set of subscriptions and re-applying it after every
  successful (re)connect.
- Publishing while connected and rejecting publishes otherwise (no queueing).
- Handing inbound messages to the application without blocking the
  transport's read path.
- Reconnecting after link loss with a fixed backoff, cancellable by `stop()`.

All transitions are serialized by one `asyncio.Lock`. Operations return an
`OperationResult` instead of raising, and every step is reported to the
event sink.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from mqtt_session.dispatcher import MessageDispatcher, MessageHandler
from mqtt_session.errors import (
    AuthError,
    ConnectInProgressError,
    InvalidTopicError,
    NetworkError,
    NotConnectedError,
    OperationResult,
    OperationTimeoutError,
    ProtocolError,
    SessionError,
)
from mqtt_session.events import EventSink, LoggingEventSink, SessionEvent, SessionEventType
from mqtt_session.models import (
    ConnectionConfig,
    ConnectionState,
    DisconnectReason,
    InboundMessage,
    OutboundMessage,
    QoS,
    SessionOptions,
    Subscription,
    validate_topic,
    validate_topic_filter,
)
from mqtt_session.transport import AiomqttTransport, Transport

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class SessionManager:
    """
    Manages one broker connection's lifecycle and mediates publish/subscribe calls.
    """
    options: SessionOptions
    on_connected: Optional[Callback]
    on_disconnected: Optional[Callback]

    def __init__(
        self,
        config: ConnectionConfig,
        options: Optional[SessionOptions] = None,
        transport: Optional[Transport] = None,
        *,
        on_connected: Optional[Callback] = None,
        on_message: Optional[MessageHandler] = None,
        on_disconnected: Optional[Callback] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self._config = config
        self.options = options or SessionOptions()
        self._transport = transport or AiomqttTransport()
        self._transport.attach(self.handle_message_received, self.handle_disconnected)

        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self._dispatcher = MessageDispatcher(on_message)
        self._event_sink = event_sink or LoggingEventSink()

        # Internal state
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Bumped by stop(); continuations from an older epoch discard their results
        self._epoch = 0
        self._reconnect_attempts = 0
        # Link loss reported before the handshake took the lock
        self._lost_while_connecting: Optional[Tuple[DisconnectReason, Optional[SessionError]]] = None
        self._backoff_task: Optional[asyncio.Task] = None
        self._pending_ops: Set[asyncio.Task] = set()
        self._background_tasks: Set[asyncio.Task] = set()

    # --- Read-only views ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> Tuple[str, ...]:
        """Topic filters in registration order."""
        return tuple(self._subscriptions)

    @property
    def on_message(self) -> Optional[MessageHandler]:
        return self._dispatcher.handler

    @on_message.setter
    def on_message(self, handler: Optional[MessageHandler]):
        self._dispatcher.handler = handler

    # --- Operations ---

    async def connect(self, config: Optional[ConnectionConfig] = None, timeout: Optional[float] = None) -> OperationResult:
        """
        Starts the handshake and waits for its outcome.

        A failed explicit connect lands in DISCONNECTED without retrying;
        the caller decides what to do next. `config` replaces the stored
        configuration and is only accepted while disconnected.
        """
        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                logger.debug("connect() ignored, session is already connected")
                return OperationResult.success()
            if self._state is not ConnectionState.DISCONNECTED:
                error = ConnectInProgressError(f"Connection attempt already in flight ({self._state.value})")
                return self._fail(SessionEventType.CONNECT_FAILED, error)

            if config is not None:
                self._config = config
            self._loop = asyncio.get_running_loop()
            self._reconnect_attempts = 0
            self._dispatcher.start()
            self._set_state(ConnectionState.CONNECTING)
            epoch = self._epoch

        logger.info(f"Connecting to {self._config.address} as {self._config.client_id}...")
        return await self._handshake(epoch, timeout, reconnecting=False)

    async def subscribe(self, topic_filter: str, qos: QoS = QoS.AT_MOST_ONCE, timeout: Optional[float] = None) -> OperationResult:
        """
        Adds `topic_filter` to the subscription set.

        Sent right away when connected, otherwise deferred until the next
        successful connect (unless `defer_subscriptions` is off, in which
        case NotConnectedError is returned and nothing is stored). A filter
        already in the set is left untouched.
        """
        try:
            validate_topic_filter(topic_filter)
        except InvalidTopicError as exc:
            return self._fail(SessionEventType.SUBSCRIBE_FAILED, exc, topic=topic_filter)

        async with self._lock:
            if topic_filter in self._subscriptions:
                logger.debug(f"Already subscribed to '{topic_filter}'")
                return OperationResult.success()

            connected = self._state is ConnectionState.CONNECTED
            if not connected and not self.options.defer_subscriptions:
                error = NotConnectedError(f"Cannot subscribe while {self._state.value}")
                return self._fail(SessionEventType.SUBSCRIBE_FAILED, error, topic=topic_filter)

            subscription = Subscription(topic_filter, QoS(qos))
            self._subscriptions[topic_filter] = subscription
            if not connected:
                logger.info(f"Subscription to '{topic_filter}' deferred until connected")
                return OperationResult.success()

            timeout = self.options.operation_timeout if timeout is None else timeout
            error = await self._call_transport(
                self._transport.subscribe([subscription], timeout), timeout, "subscribe", self._epoch
            )

        if error is not None:
            # The filter stays registered and is retried on the next reconnect
            return self._fail(SessionEventType.SUBSCRIBE_FAILED, error, topic=topic_filter)
        self._emit(SessionEventType.SUBSCRIBED, topic=topic_filter)
        return OperationResult.success()

    async def publish(self, message: OutboundMessage, timeout: Optional[float] = None) -> OperationResult:
        """
        Forwards `message` to the transport if connected.

        Not connected: the message is dropped and NotConnectedError returned,
        without touching the transport.
        """
        try:
            validate_topic(message.topic)
        except InvalidTopicError as exc:
            return self._fail(SessionEventType.PUBLISH_FAILED, exc, topic=message.topic)

        async with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                logger.warning(f"Client is not connected yet. Message to '{message.topic}' can not be published.")
                error = NotConnectedError(f"Cannot publish while {self._state.value}")
                return self._fail(SessionEventType.PUBLISH_FAILED, error, topic=message.topic)
            epoch = self._epoch

        # The send itself runs outside the lock
        timeout = self.options.operation_timeout if timeout is None else timeout
        error = await self._call_transport(self._transport.publish(message, timeout), timeout, "publish", epoch)
        if error is not None:
            return self._fail(SessionEventType.PUBLISH_FAILED, error, topic=message.topic)

        self._emit(SessionEventType.PUBLISHED, topic=message.topic, detail=f"qos={int(message.qos)} bytes={len(message.payload)}")
        return OperationResult.success()

    async def stop(self) -> None:
        """
        Shuts the session down. Idempotent.

        Cancels the backoff timer and every in-flight transport operation,
        moves to DISCONNECTED at once, then closes the transport and drains
        the inbound dispatcher.
        """
        self._epoch += 1
        backoff, self._backoff_task = self._backoff_task, None
        current = asyncio.current_task()
        for task in (backoff, *self._pending_ops, *self._background_tasks):
            if task is not None and task is not current and not task.done():
                task.cancel()

        was_active = self._state is not ConnectionState.DISCONNECTED
        self._set_state(ConnectionState.DISCONNECTED)

        async with self._lock:
            await self._close_transport()
        await self._dispatcher.stop()

        if was_active:
            logger.info(f"Session {self._config.client_id} stopped")
            self._emit(SessionEventType.STOPPED)

    # --- Transport notifications ---

    def handle_message_received(self, message: InboundMessage) -> None:
        """
        Called by the transport for every inbound PUBLISH. Safe to call from
        any thread; never blocks the caller.
        """
        if not self._loop_available():
            logger.warning(f"Dropping message on '{message.topic}': session loop is not running")
            return
        self._loop.call_soon_threadsafe(self._deliver, message)

    def handle_disconnected(self, reason: DisconnectReason, error: Optional[SessionError] = None) -> None:
        """
        Called by the transport on link loss. Safe to call from any thread.
        """
        if not self._loop_available():
            logger.warning(f"Ignoring disconnect ({reason.value}): session loop is not running")
            return
        self._loop.call_soon_threadsafe(self._spawn_link_lost, DisconnectReason(reason), error)

    # --- Internals ---

    def _loop_available(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def _deliver(self, message: InboundMessage):
        if self._state is ConnectionState.DISCONNECTED:
            logger.debug(f"Dropping message on '{message.topic}': session is stopped")
            return
        if self._dispatcher.submit(message):
            self._emit(SessionEventType.MESSAGE_RECEIVED, topic=message.topic)

    def _spawn_link_lost(self, reason: DisconnectReason, error: Optional[SessionError]):
        self._track(asyncio.ensure_future(self._on_link_lost(reason, error)))

    async def _on_link_lost(self, reason: DisconnectReason, error: Optional[SessionError]):
        async with self._lock:
            if self._state is ConnectionState.CONNECTING:
                # The transport came up and died before the handshake finished
                logger.warning(f"Connection lost ({reason.value}) while connecting")
                self._lost_while_connecting = (reason, error)
                return
            if self._state is not ConnectionState.CONNECTED:
                logger.debug(f"Ignoring disconnect ({reason.value}) while {self._state.value}")
                return

            self._emit(SessionEventType.DISCONNECTED, reason=reason.value, error=error)
            await self._close_transport()
            if self._can_retry():
                self._set_state(ConnectionState.RECONNECTING)
                self._schedule_reconnect()
            else:
                self._set_state(ConnectionState.DISCONNECTED)

        self._invoke_callback(self.on_disconnected, reason)

    def _can_retry(self) -> bool:
        limit = self.options.max_reconnect_attempts
        return limit is None or self._reconnect_attempts < limit

    def _schedule_reconnect(self):
        """Arms the single backoff timer. Caller holds the lock."""
        self._reconnect_attempts += 1
        delay = self.options.reconnect_delay
        self._backoff_task = asyncio.create_task(self._reconnect_after_backoff(self._epoch, delay))
        self._emit(
            SessionEventType.RECONNECT_SCHEDULED,
            detail=f"attempt {self._reconnect_attempts} in {delay}s",
        )

    async def _reconnect_after_backoff(self, epoch: int, delay: float):
        await asyncio.sleep(delay)
        async with self._lock:
            if epoch != self._epoch or self._state is not ConnectionState.RECONNECTING:
                return
            self._backoff_task = None
            self._set_state(ConnectionState.CONNECTING)

        logger.info(f"Reconnecting to {self._config.address} (attempt {self._reconnect_attempts})...")
        await self._handshake(epoch, None, reconnecting=True)

    async def _handshake(self, epoch: int, timeout: Optional[float], *, reconnecting: bool) -> OperationResult:
        timeout = self.options.connect_timeout if timeout is None else timeout
        self._lost_while_connecting = None
        try:
            error = await self._call_transport(
                self._transport.connect(self._config, timeout), timeout, "connect", epoch
            )
        except asyncio.CancelledError:
            # The caller gave up; leave the state machine usable
            if epoch == self._epoch and self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            raise

        async with self._lock:
            if epoch != self._epoch:
                if error is None:
                    await self._close_transport()
                error = NotConnectedError("Session stopped while connecting")
                return self._fail(SessionEventType.CONNECT_FAILED, error)

            if error is not None:
                return self._handshake_failed(error, reconnecting)

            lost, self._lost_while_connecting = self._lost_while_connecting, None
            if lost is not None:
                return await self._handshake_lost(*lost)

            self._set_state(ConnectionState.CONNECTED)
            self._reconnect_attempts = 0
            self._emit(SessionEventType.CONNECTED, detail=f"broker={self._config.address}")
            await self._resubscribe_all(epoch)

            if epoch != self._epoch:
                return OperationResult.failure(NotConnectedError("Session stopped while subscribing"))

        self._invoke_callback(self.on_connected)
        return OperationResult.success()

    def _handshake_failed(self, error: SessionError, reconnecting: bool) -> OperationResult:
        """Caller holds the lock."""
        result = self._fail(SessionEventType.CONNECT_FAILED, error)
        # AuthError is never retried
        if reconnecting and not isinstance(error, AuthError) and self._can_retry():
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        return result

    async def _handshake_lost(self, reason: DisconnectReason, cause: Optional[SessionError]) -> OperationResult:
        """
        The link dropped between CONNACK and the CONNECTED transition.

        Treated as a disconnect rather than a failed connect: the session
        always goes on to reconnect, whoever started the handshake.
        Caller holds the lock.
        """
        error = NetworkError(f"Connection lost while connecting ({reason.value})")
        if cause is not None:
            error.__cause__ = cause
        result = self._fail(SessionEventType.CONNECT_FAILED, error)
        await self._close_transport()
        if self._can_retry():
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        return result

    async def _resubscribe_all(self, epoch: int):
        """Re-applies the whole subscription set in one ordered request. Caller holds the lock."""
        if not self._subscriptions:
            return
        subscriptions = list(self._subscriptions.values())
        timeout = self.options.operation_timeout
        error = await self._call_transport(
            self._transport.subscribe(subscriptions, timeout), timeout, "subscribe", epoch
        )
        if error is not None:
            filters = ", ".join(sub.topic_filter for sub in subscriptions)
            self._emit(SessionEventType.SUBSCRIBE_FAILED, topic=filters, error=error)
            return
        for subscription in subscriptions:
            self._emit(SessionEventType.SUBSCRIBED, topic=subscription.topic_filter)

    async def _call_transport(self, operation: Awaitable, timeout: float, name: str, epoch: int) -> Optional[SessionError]:
        """
        Runs one transport operation as a tracked, timed task.

        Returns the failure instead of raising. A cancellation caused by
        stop() becomes NotConnectedError; any other cancellation belongs to
        the caller and propagates.
        """
        task = asyncio.ensure_future(operation)
        self._pending_ops.add(task)
        try:
            await asyncio.wait_for(task, timeout)
        except SessionError as exc:
            return exc
        except asyncio.TimeoutError:
            return OperationTimeoutError(f"{name} timed out after {timeout}s")
        except asyncio.CancelledError:
            if epoch == self._epoch:
                raise
            return NotConnectedError(f"{name} cancelled, session stopped")
        except Exception as exc:
            logger.exception(f"Unexpected transport failure during {name}")
            return ProtocolError(f"{name} failed: {exc}")
        finally:
            self._pending_ops.discard(task)
        return None

    async def _close_transport(self):
        try:
            await self._transport.disconnect()
        except Exception as e:
            logger.error(f"Error while closing transport: {e}")

    def _set_state(self, state: ConnectionState):
        if state is not self._state:
            logger.debug(f"State {self._state.value} -> {state.value}")
            self._state = state

    def _emit(self, event_type: SessionEventType, **fields):
        event = SessionEvent(
            type=event_type,
            client_id=self._config.client_id,
            state=self._state.value,
            **fields,
        )
        try:
            self._event_sink(event)
        except Exception:
            logger.exception(f"Event sink failed on {event_type.value}")

    def _fail(self, event_type: SessionEventType, error: SessionError, **fields) -> OperationResult:
        self._emit(event_type, error=error, **fields)
        return OperationResult.failure(error)

    def _invoke_callback(self, callback: Optional[Callback], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception(f"Session callback {getattr(callback, '__name__', callback)} failed")
            return
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Task):
        self._background_tasks.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background session task failed", exc_info=task.exception())
