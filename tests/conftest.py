"""Shared fixtures."""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from toolrelay.mcp.demo import build_demo_server
from toolrelay.mcp.http_app import create_app
from toolrelay.mcp.server import SessionStore
from toolrelay.validation.config import MCPServerConfig

STUB_SERVER = Path(__file__).parent / "stub_mcp_server.py"


def stub_command(*flags: str):
    return [sys.executable, str(STUB_SERVER), *flags]


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub():
    """Build the stub server command line with extra flags."""
    return stub_command


@pytest.fixture
def stub_server_config():
    return MCPServerConfig.stdio("stub", stub_command(), timeout=10)


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def demo_app(sessions):
    return create_app(build_demo_server(), sessions=sessions)


@pytest.fixture
def http_client(demo_app):
    """An httpx.Client bound to the demo app, usable as an HttpTransport client."""
    with TestClient(demo_app) as client:
        yield client
