"""
Fixtures wiring a complete keeper over in-memory sessions and storage.
"""

import pytest

from fleetops.keeper_server.config import RetentionConfig, ServerConfig
from fleetops.keeper_server.issues import InMemoryIssueSink
from fleetops.keeper_server.main import build_keeper
from fleetops.keeper_server.session.memory import InMemorySessionProvider


@pytest.fixture
def sessions():
    return InMemorySessionProvider()


@pytest.fixture
def issues():
    return InMemoryIssueSink()


@pytest.fixture
def keeper_config(snapshot_config, gateway_config):
    return ServerConfig(
        snapshot=snapshot_config,
        gateway=gateway_config,
        retention=RetentionConfig(enabled=False),
    )


@pytest.fixture
def keeper(keeper_config, store, sessions, issues):
    return build_keeper(keeper_config, store, sessions, issues)


@pytest.fixture
def add_tenant(sessions, seed):
    """Register a tenant session with a seeded tree and (by default) a healthy gateway."""

    def _add(tenant_id, gateway=True):
        session = sessions.session(tenant_id)
        seed(session)
        if gateway:
            session.add_gateway()
        return session

    return _add
