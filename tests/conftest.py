"""Pytest configuration and shared fixtures."""

import pytest
import pytest_asyncio

from tests.fakes import TEST_TOKEN, FakeDockerClient, compose_container
from tools.config import AppConfig
from use_cases.terminal_session import TerminalSessionManager


@pytest.fixture
def fake_docker():
    client = FakeDockerClient()
    client.containers.items.append(compose_container("c0ffee" * 8, "demo", "web"))
    return client


@pytest_asyncio.fixture
async def manager(fake_docker):
    manager = TerminalSessionManager(fake_docker, max_sessions=8, probe_delay=0)
    yield manager
    await manager.shutdown(timeout=2)


@pytest.fixture
def app_config():
    return AppConfig(access_token=TEST_TOKEN)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {TEST_TOKEN}"}
