"""
Shared fixtures for the session keeper tests.

Sessions and the object store are in-memory; every fixture is fresh per test.
"""

import json
import os

import pytest

from fleetops.keeper_server.config import GatewayConfig, SnapshotConfig, SyncConfig
from fleetops.keeper_server.session.memory import InMemorySession
from fleetops.keeper_server.store.memory import InMemoryObjectStore
from fleetops.keeper_server.sync.coordinator import SyncCoordinator
from fleetops.keeper_server.sync.history import SyncHistory

AGENT_CONFIG = {
    "agents": {"default": {"model": "sonnet"}},
    "channels": {"telegram": {"enabled": True}},
    "gateway": {"port": 18789},
}


class FakeClock:
    """Manually advanced clock (Unix seconds)."""

    def __init__(self, now: float = 1_760_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def seed_tree(session: InMemorySession, config: dict | None = AGENT_CONFIG) -> None:
    """Populate a session home large enough to clear the corruption floor."""
    if config is not None:
        session.files["/root/.openclaw/openclaw.json"] = json.dumps(config).encode()
    session.files["/root/.openclaw/devices/paired.json"] = b'{"devices": [{"id": "phone"}]}'
    session.files["/root/.openclaw/identity/device.json"] = b'{"deviceId": "dev_1"}'
    session.files["/root/workspace/memory.bin"] = os.urandom(2048)
    session.files["/root/workspace/node_modules/pkg/index.js"] = b"module.exports = {}"
    session.files["/root/.openclaw/logs/gateway.log"] = b"booted\n"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def seed():
    return seed_tree


@pytest.fixture
def session(clock):
    s = InMemorySession(clock=clock)
    seed_tree(s)
    return s


@pytest.fixture
def empty_session(clock):
    return InMemorySession(clock=clock)


@pytest.fixture
def snapshot_config():
    return SnapshotConfig(
        chunk_bytes=1024,
        archive_timeout_s=1.0,
        chunk_timeout_s=1.0,
        restore_timeout_s=2.0,
    )


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        startup_timeout_s=1.0,
        kill_settle_s=0.0,
        relaunch_timeout_s=5.0,
        pre_restart_backup_timeout_s=5.0,
    )


@pytest.fixture
def coordinator(clock):
    return SyncCoordinator(SyncConfig(), clock=clock)


@pytest.fixture
def history(clock):
    return SyncHistory(history_size=10, clock=clock)
