import asyncio
from types import SimpleNamespace

import pytest
from unittest.mock import MagicMock, AsyncMock, patch

from aiomqtt import MqttCodeError, MqttError, ProtocolVersion

from mqtt_session.errors import (
    AuthError,
    NetworkError,
    NotConnectedError,
    OperationTimeoutError,
    ProtocolError,
)
from mqtt_session.models import ConnectionConfig, DisconnectReason, OutboundMessage, QoS, Subscription
from mqtt_session.transport import AiomqttTransport, classify_disconnect, translate_error

"""
AiomqttTransport against a mocked aiomqtt.Client: argument mapping,
error translation, the inbound reader and link-loss reporting.
"""


class FakeMessages:
    """Stands in for `client.messages`: yields queued items, raises queued exceptions."""

    def __init__(self):
        self.queue = asyncio.Queue()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


def make_message(topic, payload, qos=0, retain=False):
    return SimpleNamespace(topic=SimpleNamespace(value=topic), payload=payload, qos=qos, retain=retain)


@pytest.fixture
def mock_client(mocker):
    client = mocker.MagicMock()
    client.__aenter__ = mocker.AsyncMock(return_value=client)
    client.__aexit__ = mocker.AsyncMock(return_value=None)
    client.publish = mocker.AsyncMock()
    client.subscribe = mocker.AsyncMock(return_value=(0,))
    client.messages = FakeMessages()
    # The paho client underneath, torn down when a handshake is abandoned
    client._client.socket.return_value = None
    return client


@pytest.fixture
def connection_config():
    return ConnectionConfig(
        client_id="MqttClient",
        username="test",
        password="123456",
        host="localhost",
        port=1884,
        keep_alive_seconds=30,
    )


@pytest.fixture
def transport():
    transport = AiomqttTransport()
    transport.received = []
    transport.disconnects = []
    transport.attach(transport.received.append, lambda reason, error: transport.disconnects.append((reason, error)))
    return transport


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_connect_passes_identity_and_credentials(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client

    await transport.connect(connection_config, timeout=2.0)

    args, kwargs = MockClient.call_args
    assert args == ("localhost", 1884)
    assert kwargs['identifier'] == "MqttClient"
    assert kwargs['username'] == "test"
    assert kwargs['password'] == "123456"
    assert kwargs['keepalive'] == 30
    assert kwargs['protocol'] == ProtocolVersion.V311
    mock_client.__aenter__.assert_awaited_once()
    assert transport.connected
    await transport.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize("error, expected", [
    (MqttCodeError(5, "Not authorized"), AuthError),
    (MqttCodeError(134, "Bad user name or password"), AuthError),
    (MqttCodeError(2, "Identifier rejected"), ProtocolError),
    (MqttError("Operation timed out"), OperationTimeoutError),
    (MqttError("[Errno 111] Connection refused"), NetworkError),
])
@patch('mqtt_session.transport.MQTTClient')
async def test_connect_failures_are_translated(MockClient, error, expected, mock_client, transport, connection_config):
    mock_client.__aenter__.side_effect = error
    MockClient.return_value = mock_client

    with pytest.raises(expected):
        await transport.connect(connection_config, timeout=2.0)
    assert not transport.connected


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_connect_that_hangs_times_out_and_closes_the_client(MockClient, mock_client, transport, connection_config):
    async def never_connects():
        await asyncio.Event().wait()

    mock_client.__aenter__ = AsyncMock(side_effect=never_connects)
    MockClient.return_value = mock_client

    with pytest.raises(OperationTimeoutError):
        await transport.connect(connection_config, timeout=0.05)

    mock_client._client.disconnect.assert_called_once()
    assert not transport.connected


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_refused_connect_closes_the_client(MockClient, mock_client, transport, connection_config):
    mock_client.__aenter__.side_effect = MqttError("[Errno 111] Connection refused")
    mock_client._client.socket.return_value = MagicMock()
    MockClient.return_value = mock_client

    with pytest.raises(NetworkError):
        await transport.connect(connection_config, timeout=2.0)

    mock_client._client.disconnect.assert_called_once()
    mock_client._client._sock_close.assert_called_once()


@pytest.mark.asyncio
async def test_timed_out_connect_releases_the_socket():
    """
    A broker that accepts the TCP connection but never answers CONNECT
    must see the socket closed once the connect attempt times out.
    """
    closed = asyncio.Event()

    async def silent_broker(reader, writer):
        while await reader.read(1024):
            pass
        closed.set()
        writer.close()

    server = await asyncio.start_server(silent_broker, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    transport = AiomqttTransport()
    config = ConnectionConfig(client_id="MqttClient", host="127.0.0.1", port=port)

    try:
        with pytest.raises(OperationTimeoutError):
            await transport.connect(config, timeout=0.3)
        await transport.disconnect()

        await asyncio.wait_for(closed.wait(), 2.0)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_publish_forwards_message_fields(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    await transport.connect(connection_config, timeout=2.0)

    message = OutboundMessage.from_text("mqttServerTopic", "Test Message", qos=QoS.EXACTLY_ONCE)
    await transport.publish(message, timeout=1.0)

    mock_client.publish.assert_awaited_once_with(
        "mqttServerTopic", payload=b"Test Message", qos=2, retain=False, timeout=1.0
    )
    await transport.disconnect()


@pytest.mark.asyncio
async def test_publish_without_connection_raises_not_connected(transport):
    with pytest.raises(NotConnectedError):
        await transport.publish(OutboundMessage.from_text("a", "b"))


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_publish_failure_is_translated(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    mock_client.publish.side_effect = MqttError("Disconnected")
    await transport.connect(connection_config, timeout=2.0)

    with pytest.raises(NetworkError):
        await transport.publish(OutboundMessage.from_text("a", "b"))
    await transport.disconnect()


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_subscribe_sends_all_filters_in_order(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    mock_client.subscribe.return_value = (0, 1)
    await transport.connect(connection_config, timeout=2.0)

    await transport.subscribe([Subscription("b/#"), Subscription("a/+", QoS.AT_LEAST_ONCE)], timeout=1.0)

    mock_client.subscribe.assert_awaited_once_with([("b/#", 0), ("a/+", 1)], timeout=1.0)
    await transport.disconnect()


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_rejected_subscription_raises_protocol_error(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    mock_client.subscribe.return_value = (0, 0x80)
    await transport.connect(connection_config, timeout=2.0)

    with pytest.raises(ProtocolError, match="forbidden/#"):
        await transport.subscribe([Subscription("ok/#"), Subscription("forbidden/#")])
    await transport.disconnect()


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_reader_forwards_inbound_messages(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    await transport.connect(connection_config, timeout=2.0)

    mock_client.messages.queue.put_nowait(make_message("mqttServerTopic", b"hello", qos=2, retain=True))
    mock_client.messages.queue.put_nowait(make_message("mqttServerTopic", "text"))
    await asyncio.sleep(0.05)

    first, second = transport.received
    assert first.topic == "mqttServerTopic"
    assert first.payload == b"hello"
    assert first.qos is QoS.EXACTLY_ONCE
    assert first.retain is True
    assert second.payload == b"text"
    await transport.disconnect()


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_link_loss_is_reported_once(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    await transport.connect(connection_config, timeout=2.0)

    mock_client.messages.queue.put_nowait(MqttError("Disconnected during message iteration"))
    await asyncio.sleep(0.05)

    assert len(transport.disconnects) == 1
    reason, error = transport.disconnects[0]
    assert reason is DisconnectReason.NETWORK_ERROR
    assert isinstance(error, NetworkError)
    assert not transport.connected


@pytest.mark.asyncio
@patch('mqtt_session.transport.MQTTClient')
async def test_local_disconnect_is_not_reported_as_link_loss(MockClient, mock_client, transport, connection_config):
    MockClient.return_value = mock_client
    await transport.connect(connection_config, timeout=2.0)

    await transport.disconnect()
    await asyncio.sleep(0.01)

    mock_client.__aexit__.assert_awaited_once()
    assert transport.disconnects == []
    assert not transport.connected


@pytest.mark.asyncio
async def test_disconnect_without_connection_is_a_noop(transport):
    await transport.disconnect()
    assert transport.disconnects == []


@pytest.mark.parametrize("error, expected", [
    (None, DisconnectReason.BROKER_CLOSED),
    (MqttError("Disconnected during message iteration"), DisconnectReason.NETWORK_ERROR),
    (MqttCodeError(141, "Keep alive timeout"), DisconnectReason.KEEP_ALIVE_TIMEOUT),
    (MqttCodeError(130, "Protocol error"), DisconnectReason.PROTOCOL_ERROR),
    (MqttCodeError(139, "Server shutting down"), DisconnectReason.BROKER_CLOSED),
])
def test_classify_disconnect(error, expected):
    assert classify_disconnect(error) is expected


def test_auth_codes_only_map_to_auth_error_on_connect():
    assert isinstance(translate_error(MqttCodeError(5), "connect"), AuthError)
    assert isinstance(translate_error(MqttCodeError(5), "publish"), ProtocolError)
