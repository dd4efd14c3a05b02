"""
Object key layout and session paths.

The key layout is shared with every deployed session and with historical
backups, so it must stay bit-exact:

    {tenant_prefix}/backup.tar.gz            primary snapshot archive
    {tenant_prefix}/backup-archive.tar.gz    safety-net copy of a larger archive
    {tenant_prefix}/.last-sync               "{sync_id}|{iso_timestamp}"
    {tenant_prefix}/.registered              first-boot registration marker
    {tenant_prefix}/root/...                 per-file layout (newest)
    {tenant_prefix}/openclaw/...             per-file layout (config dir only)
    {tenant_prefix}/clawdbot/...             per-file layout (oldest, pre-rename)

Historical layouts are tried as an ordered list of (layout, path mapper)
variants instead of a version tag.

How to change safely:
    - Never rename an existing key
    - New layouts go at the front of LEGACY_LAYOUTS
"""

from __future__ import annotations

from dataclasses import dataclass

BACKUP_KEY = "backup.tar.gz"
ARCHIVE_KEY = "backup-archive.tar.gz"
SYNC_MARKER_KEY = ".last-sync"
REGISTERED_KEY = ".registered"

SESSION_HOME = "/root"
AGENT_DIR = "/root/.openclaw"
CONFIG_NAME = "openclaw.json"

DEFAULT_TENANT_PREFIX = "users/{tenant_id}"


@dataclass(frozen=True)
class CriticalFile:
    """A small file the agent needs to boot into a correct state.

    Attributes:
        path: Path relative to the agent directory
        required: Whether its absence fails verification
    """

    path: str
    required: bool = False


# Ordered: restored ahead of bulk data, in this order.
DEFAULT_CRITICAL_FILES: tuple[CriticalFile, ...] = (
    CriticalFile(CONFIG_NAME, required=True),
    CriticalFile("devices/paired.json"),
    CriticalFile("devices/pending.json"),
    CriticalFile("credentials/telegram-pairing.json"),
    CriticalFile("identity/device.json"),
    CriticalFile("identity/device-auth.json"),
    CriticalFile("auth-profiles.json"),
    CriticalFile("telegram/update-offset-default.json"),
)


def tenant_prefix(tenant_id: str, template: str = DEFAULT_TENANT_PREFIX) -> str:
    """Object store namespace for a tenant."""
    if not tenant_id or "/" in tenant_id:
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    return template.format(tenant_id=tenant_id)


def backup_key(prefix: str) -> str:
    return f"{prefix}/{BACKUP_KEY}"


def archive_key(prefix: str) -> str:
    return f"{prefix}/{ARCHIVE_KEY}"


def sync_marker_key(prefix: str) -> str:
    return f"{prefix}/{SYNC_MARKER_KEY}"


def registered_key(prefix: str) -> str:
    return f"{prefix}/{REGISTERED_KEY}"


def format_sync_marker(sync_id: str, timestamp: str) -> str:
    return f"{sync_id}|{timestamp}"


def parse_sync_marker(body: str) -> tuple[str, str] | None:
    """Parse a .last-sync body into (sync_id, timestamp)."""
    sync_id, sep, timestamp = body.strip().partition("|")
    if not sep or not sync_id or not timestamp:
        return None
    return sync_id, timestamp


@dataclass(frozen=True)
class LegacyLayout:
    """One historical per-file layout.

    Attributes:
        name: Directory under the tenant prefix (e.g. "root")
        agent_dir: Remote directory holding the agent files, relative to
            the tenant prefix
        session_root: Session directory the layout directory maps onto
        legacy_config_name: Config file name used by this layout, when it
            predates the current name
    """

    name: str
    agent_dir: str
    session_root: str
    legacy_config_name: str | None = None

    def list_prefix(self, prefix: str) -> str:
        return f"{prefix}/{self.name}/"

    def critical_key(self, prefix: str, relative: str) -> str:
        """Remote key of a critical file (relative to the agent dir)."""
        if self.legacy_config_name and relative == CONFIG_NAME:
            relative = self.legacy_config_name
        return f"{prefix}/{self.agent_dir}/{relative}"

    def session_path(self, prefix: str, key: str) -> str:
        """Map a remote key under this layout back to a session path."""
        relative = key[len(self.list_prefix(prefix)):]
        if self.legacy_config_name and relative == self.legacy_config_name:
            relative = CONFIG_NAME
        return f"{self.session_root}/{relative}"


# Newest first.
LEGACY_LAYOUTS: tuple[LegacyLayout, ...] = (
    LegacyLayout(name="root", agent_dir="root/.openclaw", session_root=SESSION_HOME),
    LegacyLayout(name="openclaw", agent_dir="openclaw", session_root=AGENT_DIR),
    LegacyLayout(
        name="clawdbot",
        agent_dir="clawdbot",
        session_root=AGENT_DIR,
        legacy_config_name="clawdbot.json",
    ),
)
