"""
Shared fixtures for gateway tests
"""
import sys
from pathlib import Path

# Make the project root importable without installation
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest

from gateway.config import (
    AuthConfig,
    DispatchConfig,
    GatewayConfig,
    RateLimitConfig,
    WebSocketConfig,
)
from gateway.protocol import Command, OriginKind


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep a developer's .env or shell settings out of the tests."""
    monkeypatch.chdir(tmp_path)
    for key in ("AUTH__ENABLED", "AUTH__TOKEN", "SERVER__PORT", "RATE_LIMIT__MAX_REQUESTS"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def gateway_config():
    """Config with background heartbeats off and a short default timeout."""
    return GatewayConfig(
        rate_limit=RateLimitConfig(window_ms=1000, max_requests=100),
        websocket=WebSocketConfig(heartbeat_interval_ms=0, idle_timeout_ms=1000),
        dispatch=DispatchConfig(default_timeout_ms=2000),
    )


@pytest.fixture
def auth_config(gateway_config):
    return gateway_config.model_copy(update={"auth": AuthConfig(enabled=True, token="secret")})


async def echo(command: Command):
    return command.parameters.get("text")


@pytest.fixture
def echo_handler():
    return echo


@pytest.fixture
def make_command():
    def _make(name: str, origin_id: str = "test", **parameters):
        return Command(
            name=name,
            parameters=parameters,
            origin_kind=OriginKind.REQUEST,
            origin_id=origin_id,
        )
    return _make
