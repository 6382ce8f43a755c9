"""
Shared fixtures for clawgate tests.

Settings are always built through ConfigManager with an explicit
environment mapping, so the developer's real environment never leaks in.
"""

import asyncio
import os
import socket
import sys
from dataclasses import replace

import pytest

from clawgate.config import ConfigManager


FAKE_BACKEND = os.path.join(os.path.dirname(__file__), "fixtures", "fake_backend.py")


def free_port() -> int:
    """Return a loopback port nobody is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def make_settings(tmp_path):
    """
    Factory for GatewaySettings rooted in tmp_path.

    Keyword arguments are environment overrides (OPENCLAW_*, GATEWAY_*);
    the special keyword `fields` is a dict applied with dataclasses.replace.
    """
    def _make(fields: dict | None = None, **env):
        environ = {
            "OPENCLAW_STATE_DIR": str(tmp_path / "state"),
            "INTERNAL_GATEWAY_PORT": str(free_port()),
        }
        environ.update({k: str(v) for k, v in env.items()})
        settings = ConfigManager(str(tmp_path), environ=environ).settings()
        return replace(settings, **(fields or {}))

    return _make


@pytest.fixture
def fake_backend_settings(make_settings):
    """Settings whose backend command runs tests/fixtures/fake_backend.py."""
    return make_settings(
        fields={
            "command": (sys.executable, FAKE_BACKEND),
            "args": (),
            "ready_interval_ms": 50,
            "startup_timeout_ms": 10000,
            "ready_endpoints": ("/health",),
        }
    )


def write_config(settings) -> None:
    """Simulate onboarding: create the backend configuration file."""
    os.makedirs(os.path.dirname(settings.config_path), exist_ok=True)
    with open(settings.config_path, "w", encoding="utf-8") as f:
        f.write("{}")


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll a predicate until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.02)


async def streamed(*chunks: bytes):
    """Async body for mock backend responses; the proxy relays raw streams."""
    for chunk in chunks:
        yield chunk
