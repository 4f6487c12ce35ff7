"""
Hostwire Test Configuration

Shared pytest fixtures and configuration for all test types.
"""

import os
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
import structlog

from hostwire.core.config import TransportConfig, reset_settings
from hostwire.session.host import Host

from fixtures.fake_agent import FakeAgent


# Configure pytest collection
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (real sockets against a local agent)")


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep tests away from the real ~/.hostwire and HOSTWIRE_* variables."""
    monkeypatch.setattr("hostwire.core.config.DEFAULT_CONFIG_DIR", tmp_path / ".hostwire")
    for name in [k for k in os.environ if k.startswith("HOSTWIRE_")]:
        monkeypatch.delenv(name)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Provide a temporary configuration directory for tests."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def transport_config() -> TransportConfig:
    """Short timeouts and small chunks so transfers span several chunks."""
    return TransportConfig(connect_timeout=5.0, handshake_timeout=5.0, chunk_size=1024)


@pytest_asyncio.fixture
async def agent() -> AsyncGenerator[FakeAgent, None]:
    """Provide a running in-memory agent on ephemeral localhost ports."""
    fake = FakeAgent()
    await fake.start()
    try:
        yield fake
    finally:
        await fake.stop()


@pytest_asyncio.fixture
async def host(agent: FakeAgent, transport_config: TransportConfig) -> AsyncGenerator[Host, None]:
    """Provide a Host connected to the fake agent."""
    managed = Host("test-host", agent.config(), transport_config)
    await managed.connect()
    try:
        yield managed
    finally:
        await managed.disconnect()


@pytest.fixture
def captured_logs() -> Generator[list, None, None]:
    """Capture structlog events emitted during a test."""
    with structlog.testing.capture_logs() as logs:
        yield logs
