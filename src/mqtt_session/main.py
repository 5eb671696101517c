"""
Main entry point of the MQTT session demo.

This module is responsible for:
- Configuring logging and loading config.yaml.
- Building the SessionManager with its aiomqtt transport.
- Registering the configured topics and publishing the greeting once connected.
- Logging every received message.
- Handling SIGINT/SIGTERM with a graceful shutdown.
"""

import asyncio
import functools
import logging
import signal
import sys

from pathlib import Path
from typing import Any, Dict, Optional, Union

from mqtt_session.config_loader import (
    build_connection_config,
    build_greeting,
    build_session_options,
    get_protocol_version,
    get_topics,
    load_config,
)
from mqtt_session.errors import ConfigError, NetworkError, OperationTimeoutError
from mqtt_session.models import ConnectionState, InboundMessage, OutboundMessage
from mqtt_session.session import SessionManager
from mqtt_session.transport import AiomqttTransport


def setup_logging():
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)


def log_received_message(client_id: str, message: InboundMessage):
    """Logs an inbound message the way the console demo always printed it."""
    logger.info(
        f"### {client_id} RECEIVED MESSAGE ### "
        f"Topic = {message.topic}, Payload = {message.text()}, "
        f"QoS = {message.qos.name}, Retain = {message.retain}"
    )


async def publish_greeting(session: SessionManager, greeting: OutboundMessage):
    """on_connected hook: sends the configured test message."""
    result = await session.publish(greeting)
    if result.ok:
        logger.info(f"Message published : {greeting.payload.decode('utf-8', errors='replace')}")
    else:
        logger.warning(f"Greeting not published: {result.error}")


async def shutdown(signal_name: str, session: SessionManager, stop_event: asyncio.Event):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")
    await session.stop()
    stop_event.set()


async def connect_until_up(session: SessionManager, stop_event: asyncio.Event, retry_delay: float) -> bool:
    """
    Keeps trying the initial connect every `retry_delay` seconds while the
    broker is unreachable or slow. Gives up on any other failure, such as
    rejected credentials, and when shutdown begins.
    """
    while not stop_event.is_set():
        result = await session.connect()
        if result.ok:
            logger.info(f"### CONNECTED WITH SERVER {session.config.address} ###")
            return True

        logger.error(f"### CONNECTION FAILED ### {result.error}")
        if not isinstance(result.error, (NetworkError, OperationTimeoutError)):
            return False
        if session.state is not ConnectionState.DISCONNECTED:
            # The session is already reconnecting by itself
            return False

        logger.info(f"Retrying connection in {retry_delay}s...")
        try:
            await asyncio.wait_for(stop_event.wait(), retry_delay)
        except asyncio.TimeoutError:
            pass
    return False


async def main_application_runner(config_path: Optional[Union[str, Path]] = None):
    setup_logging()
    logger.info("Starting MQTT session demo...")

    # Load config
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    config: Dict[str, Any] = load_config(config_path)

    connection = build_connection_config(config)
    options = build_session_options(config)
    transport = AiomqttTransport(protocol=get_protocol_version(config))
    session = SessionManager(
        connection,
        options,
        transport,
        on_message=functools.partial(log_received_message, connection.client_id),
    )

    greeting = build_greeting(config)
    if greeting is not None:
        session.on_connected = functools.partial(publish_greeting, session, greeting)

    # Deferred until the connection is up, then re-applied after every reconnect
    for topic in get_topics(config):
        result = await session.subscribe(topic)
        if not result.ok:
            logger.error(f"Cannot subscribe to '{topic}': {result.error}")

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, session, stop_event))
        )

    connector = asyncio.create_task(connect_until_up(session, stop_event, options.reconnect_delay))

    logger.info("Session demo is running. Press Ctrl+C to exit.")
    try:
        await stop_event.wait()
    finally:
        connector.cancel()
        await session.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def run():
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(main_application_runner(config_path))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)


if __name__ == "__main__":
    run()
