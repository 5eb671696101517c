"""
Configuration Loader.

Responsible for reading the config.yaml file and turning its sections
into the immutable values the session is built from.
"""
import yaml
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from aiomqtt import ProtocolVersion

from mqtt_session.errors import ConfigError
from mqtt_session.models import ConnectionConfig, OutboundMessage, QoS, SessionOptions

logger = logging.getLogger(__name__)

PROTOCOL_VERSIONS = {
    "3.1": ProtocolVersion.V31,
    "3.1.1": ProtocolVersion.V311,
    "5": ProtocolVersion.V5,
    "3": ProtocolVersion.V31,
    "4": ProtocolVersion.V311,
}


def load_config(config_path: Union[str, Path] = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file: {e}")
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    logger.info(f"Loaded configuration from {path}")
    return config


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return section


def _flag(section: Dict[str, Any], key: str, default: bool, name: str) -> bool:
    """YAML booleans only; a quoted "false" is a string and is rejected."""
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{name}.{key}' must be true or false, got {value!r}")
    return value


def build_connection_config(config: Dict[str, Any]) -> ConnectionConfig:
    """Builds the connection identity from the `mqtt` section."""
    mqtt_conf = _section(config, 'mqtt')
    host = mqtt_conf.get('host', 'localhost')
    if not isinstance(host, str):
        raise ConfigError(f"'mqtt.host' must be a string, got {host!r}")
    try:
        return ConnectionConfig(
            client_id=str(mqtt_conf.get('client_id', 'MqttClient')),
            username=None if mqtt_conf.get('username') is None else str(mqtt_conf['username']),
            password=None if mqtt_conf.get('password') is None else str(mqtt_conf['password']),
            host=host,
            port=int(mqtt_conf.get('port', 1883)),  # Must be int
            keep_alive_seconds=int(mqtt_conf.get('keepalive', 60)),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid 'mqtt' section: {e}") from e


def build_session_options(config: Dict[str, Any]) -> SessionOptions:
    """Builds timing and reconnect behavior from the `session` section."""
    session_conf = _section(config, 'session')
    max_attempts = session_conf.get('max_reconnect_attempts')
    try:
        return SessionOptions(
            reconnect_delay=float(session_conf.get('reconnect_delay', 5.0)),
            connect_timeout=float(session_conf.get('connect_timeout', 10.0)),
            operation_timeout=float(session_conf.get('operation_timeout', 10.0)),
            defer_subscriptions=_flag(session_conf, 'defer_subscriptions', True, 'session'),
            max_reconnect_attempts=None if max_attempts is None else int(max_attempts),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid 'session' section: {e}") from e


def get_protocol_version(config: Dict[str, Any]) -> ProtocolVersion:
    version = str(_section(config, 'mqtt').get('protocol', '3.1.1'))
    try:
        return PROTOCOL_VERSIONS[version]
    except KeyError:
        raise ConfigError(f"Unsupported MQTT protocol version: {version}") from None


def get_topics(config: Dict[str, Any]) -> List[str]:
    topics = config.get('topics') or []
    if isinstance(topics, str):
        topics = [topics]
    if not isinstance(topics, list):
        raise ConfigError("'topics' must be a list of topic filters")
    return [str(topic) for topic in topics]


def build_greeting(config: Dict[str, Any]) -> Optional[OutboundMessage]:
    """The message published once the connection is up, if configured."""
    greeting_conf = _section(config, 'greeting')
    if not greeting_conf.get('topic'):
        return None
    try:
        return OutboundMessage.from_text(
            greeting_conf['topic'],
            str(greeting_conf.get('message', '')),
            qos=QoS(int(greeting_conf.get('qos', 0))),
            retain=_flag(greeting_conf, 'retain', False, 'greeting'),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid 'greeting' section: {e}") from e
