#!/usr/bin/env python3
"""Configuration defaults, environment overrides and validation"""

from dataclasses import replace

import pytest

from config import DashboardConfig
from errors import ConfigError
from main import build_parser, config_from_args


def test_defaults_match_backend_contract():
    config = DashboardConfig().validate()
    assert config.reconnect_base_delay == 5.0
    assert config.reconnect_max_delay == 30.0
    assert config.liveness_interval == 30.0
    assert config.stabilization_delay == 0.5
    assert config.grace_period == 3.0
    assert config.topics.drone_updates == "/topic/drone-updates"


def test_environment_overrides():
    config = DashboardConfig.from_env({
        'FLEET_WS_URL': 'wss://fleet.example/ws/websocket',
        'FLEET_GRACE_PERIOD': '1.5',
        'FLEET_API_PORT': '9000',
        'FLEET_TOPIC_DRONES': '/topic/drones',
    })
    assert config.ws_url == 'wss://fleet.example/ws/websocket'
    assert config.grace_period == 1.5
    assert config.api_port == 9000
    assert config.topics.drone_updates == '/topic/drones'
    assert config.topics.system_state == '/topic/system-state'


@pytest.mark.parametrize("env", [
    {'FLEET_WS_URL': 'http://localhost:8080/ws'},
    {'FLEET_GRACE_PERIOD': 'soon'},
    {'FLEET_RECONNECT_BASE_DELAY': '0'},
    {'FLEET_RECONNECT_MAX_DELAY': '1'},
    {'FLEET_LOG_LEVEL': 'CHATTY'},
])
def test_invalid_values_rejected(env):
    with pytest.raises(ConfigError):
        DashboardConfig.from_env(env)


def test_cli_flags_override(monkeypatch):
    monkeypatch.delenv('FLEET_WS_URL', raising=False)
    args = build_parser().parse_args(['serve', '--url', 'ws://h:1/ws/websocket', '--port', '8123'])
    config = config_from_args(args)
    assert args.command == 'serve'
    assert config.ws_url == 'ws://h:1/ws/websocket'
    assert config.api_port == 8123


def test_stabilization_delay_may_be_zero():
    assert replace(DashboardConfig(), stabilization_delay=0.0).validate()
