"""
Inbound Message Dispatcher.

Decouples the transport's read path from user code: the transport
enqueues each received message and returns immediately, and a single
background task hands the messages to the handler in arrival order.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from mqtt_session.models import InboundMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Union[None, Awaitable[None]]]


class MessageDispatcher:
    queue: asyncio.Queue
    handler: Optional[MessageHandler]
    _task: Optional[asyncio.Task]

    def __init__(self, handler: Optional[MessageHandler] = None):
        self.handler = handler
        self.queue = asyncio.Queue()
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Launches the delivery loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._delivery_loop())

    async def stop(self, drain_timeout: float = 1.0):
        """Delivers what is already queued (bounded by `drain_timeout`), then cancels the loop."""
        if not self.running:
            return
        if self._task is asyncio.current_task():
            # Called from a handler: cancellation lands at its next await
            self._task.cancel()
            self._task = None
            self.queue = asyncio.Queue()
            return
        try:
            await asyncio.wait_for(self.queue.join(), drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self.queue.qsize()} undelivered message(s) on stop")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.queue = asyncio.Queue()

    def submit(self, message: InboundMessage) -> bool:
        """Non-blocking hand-off from the transport. Dropped unless the loop is running."""
        if not self.running:
            logger.debug(f"Dispatcher stopped, dropping message on '{message.topic}'")
            return False
        self.queue.put_nowait(message)
        return True

    async def _delivery_loop(self):
        while True:
            queue = self.queue
            message: InboundMessage = await queue.get()
            try:
                if self.handler is not None:
                    result = self.handler(message)
                    if inspect.isawaitable(result):
                        await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Message handler failed for topic '{message.topic}'")
            finally:
                queue.task_done()
