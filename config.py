# Dashboard Configuration
# File: config.py

"""
Configuration for the fleet dashboard session.

Defaults match the backend this dashboard talks to. Every field can be
overridden from FLEET_* environment variables (see ENV_OVERRIDES) and, for
the CLI, from command line flags.
"""

import os
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Dict

from errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class TopicConfig:
    """Logical channel names on the shared stream"""
    drone_updates: str = "/topic/drone-updates"
    system_state: str = "/topic/system-state"
    delivery_status: str = "/topic/delivery-status"

    def as_dict(self) -> Dict[str, str]:
        return {
            'drone_updates': self.drone_updates,
            'system_state': self.system_state,
            'delivery_status': self.delivery_status,
        }


@dataclass
class DashboardConfig:
    """Configuration for one dashboard session"""
    ws_url: str = "ws://localhost:8080/ws/websocket"  # raw WebSocket side of the SockJS endpoint
    stomp_host: str = "localhost"
    topics: TopicConfig = field(default_factory=TopicConfig)

    # Connection manager
    reconnect_base_delay: float = 5.0   # seconds
    reconnect_max_delay: float = 30.0   # seconds
    connect_timeout: float = 10.0       # seconds, covers socket open + STOMP CONNECTED
    liveness_interval: float = 30.0     # seconds
    stabilization_delay: float = 0.5    # seconds before "connected" is reported
    heartbeat_outgoing_ms: int = 10000
    heartbeat_incoming_ms: int = 10000

    # Reconciler / geometry
    grace_period: float = 3.0           # seconds between terminal state and removal
    delivery_history: int = 50

    # Ambient
    summary_interval: float = 10.0
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"

    def validate(self) -> "DashboardConfig":
        """
        Check value ranges

        Raises:
            ConfigError: on the first invalid value
        """
        if not self.ws_url.startswith(("ws://", "wss://")):
            raise ConfigError(f"ws_url must be a ws:// or wss:// URL, got {self.ws_url!r}")

        for name in ('reconnect_base_delay', 'reconnect_max_delay', 'connect_timeout',
                     'liveness_interval', 'grace_period', 'summary_interval'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")

        if self.stabilization_delay < 0:
            raise ConfigError("stabilization_delay must not be negative")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.heartbeat_outgoing_ms < 0 or self.heartbeat_incoming_ms < 0:
            raise ConfigError("heart-beat intervals must not be negative")
        if self.delivery_history < 1:
            raise ConfigError("delivery_history must be at least 1")
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ConfigError(f"Unknown log level: {self.log_level}")

        return self

    @classmethod
    def from_env(cls, environ: Dict[str, str] = None) -> "DashboardConfig":
        """
        Build configuration from defaults plus FLEET_* environment variables

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Validated configuration
        """
        environ = os.environ if environ is None else environ
        config = cls()
        overrides = {}
        topic_overrides = {}

        for env_name, attr in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None:
                continue
            if attr.startswith('topics.'):
                topic_overrides[attr.split('.', 1)[1]] = raw
            else:
                overrides[attr] = _coerce(config, attr, raw)
            logger.debug(f"Config override from {env_name}: {attr}={raw}")

        if topic_overrides:
            overrides['topics'] = replace(config.topics, **topic_overrides)

        return replace(config, **overrides).validate()


ENV_OVERRIDES = {
    'FLEET_WS_URL': 'ws_url',
    'FLEET_STOMP_HOST': 'stomp_host',
    'FLEET_TOPIC_DRONES': 'topics.drone_updates',
    'FLEET_TOPIC_SYSTEM': 'topics.system_state',
    'FLEET_TOPIC_DELIVERIES': 'topics.delivery_status',
    'FLEET_RECONNECT_BASE_DELAY': 'reconnect_base_delay',
    'FLEET_RECONNECT_MAX_DELAY': 'reconnect_max_delay',
    'FLEET_CONNECT_TIMEOUT': 'connect_timeout',
    'FLEET_LIVENESS_INTERVAL': 'liveness_interval',
    'FLEET_STABILIZATION_DELAY': 'stabilization_delay',
    'FLEET_HEARTBEAT_OUT_MS': 'heartbeat_outgoing_ms',
    'FLEET_HEARTBEAT_IN_MS': 'heartbeat_incoming_ms',
    'FLEET_GRACE_PERIOD': 'grace_period',
    'FLEET_DELIVERY_HISTORY': 'delivery_history',
    'FLEET_SUMMARY_INTERVAL': 'summary_interval',
    'FLEET_API_HOST': 'api_host',
    'FLEET_API_PORT': 'api_port',
    'FLEET_LOG_LEVEL': 'log_level',
}


def _coerce(config: DashboardConfig, attr: str, raw: str):
    """Convert an environment string to the type of the default value"""
    kinds = {f.name: type(getattr(config, f.name)) for f in fields(config)}
    kind = kinds[attr]
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"Invalid value for {attr}: {raw!r}") from None
