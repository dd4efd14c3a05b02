"""
Tar snapshot backup of a session's data tree.

The Snapshotter turns the whole session home into one gzip tar inside the
session, pulls it out in bounded base64 chunks, and uploads it as a single
object. A single archive object replaces per-file sync so a backup is
either entirely new or entirely old.

Snapshot format:
    {tenant_prefix}/backup.tar.gz
        metadata: timestamp, syncId, sizeBytes
    {tenant_prefix}/backup-archive.tar.gz   (safety net)
        metadata: archivedAt, originalSize, reason
    {tenant_prefix}/.last-sync
        body: "{syncId}|{timestamp}"

Backup steps:
    0. Sync lock (skip on contention)
    1. Post-restore cooldown (skip while active)
    2. Validate the agent config
    3. tar czf inside the session (exit 0 and 1 are success)
    4. stat + chunked base64 reads, reassembled length must equal stat size
    5. Safety net: keep a much larger existing archive as the secondary
    6. Put the archive, then the sync marker
    7. Best-effort cleanup of the temp archive

Invariants:
    - Archives at or below the corruption floor are never uploaded
    - The sync marker is written strictly after the archive
    - backup() never raises; failures come back as BackupResult
    - The sync lock is released on every path

How to change safely:
    - Add metadata fields, don't remove existing ones
    - Keep the marker format; restore tooling parses it
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import secrets
import tarfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..config import SnapshotConfig
from ..errors import (
    ConfigInvalidError,
    FailureKind,
    KeeperError,
    LockContentionError,
    SessionFileNotFoundError,
    TransferError,
)
from ..layout import (
    DEFAULT_TENANT_PREFIX,
    archive_key,
    backup_key,
    format_sync_marker,
    sync_marker_key,
    tenant_prefix,
)
from ..session.base import SessionHandle, run_command
from ..session.commands import archive_command, read_chunk_command, remove_command, size_command
from ..store.base import ObjectStore
from ..sync.coordinator import SyncCoordinator
from ..sync.history import SyncHistory

logger = logging.getLogger(__name__)

# tar exits 1 when a file changed while being read; the archive is still usable.
TAR_OK_EXIT_CODES = (0, 1)


def utc_iso(epoch_seconds: float) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T00:00:00.000Z"""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def new_sync_id(epoch_seconds: float) -> str:
    return f"tar-{int(epoch_seconds * 1000)}-{secrets.token_hex(3)}"


def list_members(data: bytes) -> list[str]:
    """Names of the regular files in a gzip tar.

    Raises:
        TransferError: If the blob is not a readable gzip tar
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            return [m.name.removeprefix("./") for m in tar.getmembers() if m.isfile()]
    except (tarfile.TarError, OSError, EOFError) as e:
        raise TransferError(f"Unreadable archive: {e}") from e


@dataclass
class BackupResult:
    """Outcome of one backup.

    Attributes:
        tenant_id: Tenant identifier
        success: Whether a new archive was uploaded
        sync_id: Identifier of this attempt
        kind: Failure classification (None on success)
        error: Human-readable failure reason
        duration_ms: Wall time of the attempt
        size_bytes: Uploaded archive size
        safety_net: Whether the previous archive was preserved as the secondary
    """

    tenant_id: str
    success: bool
    sync_id: str | None = None
    kind: FailureKind | None = None
    error: str | None = None
    duration_ms: int = 0
    size_bytes: int = 0
    safety_net: bool = False

    @property
    def skipped(self) -> bool:
        return self.kind is not None and self.kind.is_skip

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "sync_id": self.sync_id,
            "kind": self.kind.value if self.kind else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "size_bytes": self.size_bytes,
            "safety_net": self.safety_net,
        }


class Snapshotter:
    """Backs up a session's data tree as one tar archive.

    Attributes:
        store: Object store for archives and markers
        coordinator: Sync lock and cooldown gate
        config: Snapshot configuration
        history: Optional SyncHistory every result is recorded into

    Example:
        >>> snapshotter = Snapshotter(store, coordinator)
        >>> result = await snapshotter.backup("tenant_1", session)
        >>> result.success, result.kind
        (True, None)
    """

    def __init__(
        self,
        store: ObjectStore,
        coordinator: SyncCoordinator,
        config: SnapshotConfig | None = None,
        history: SyncHistory | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.config = config or SnapshotConfig()
        self.history = history
        self.prefix_template = prefix_template
        self.clock = clock

    async def backup(self, tenant_id: str, session: SessionHandle) -> BackupResult:
        """Run one backup for a tenant. Never raises."""
        started = time.monotonic()
        sync_id = new_sync_id(self.clock())

        try:
            async with self.coordinator.hold(tenant_id):
                result = await self._backup_locked(tenant_id, session, sync_id)
        except LockContentionError as e:
            result = BackupResult(
                tenant_id=tenant_id,
                success=False,
                sync_id=sync_id,
                kind=FailureKind.LOCK_CONTENTION,
                error=e.message,
            )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._record(result)
        return result

    async def _backup_locked(self, tenant_id: str, session: SessionHandle, sync_id: str) -> BackupResult:
        remaining = await self.coordinator.cooldown_remaining(tenant_id, session)
        if remaining > 0:
            logger.info(
                f"Skipping backup for {tenant_id}: restore cooldown ({remaining:.0f}s left)",
                extra={"tenant_id": tenant_id, "cooldown_remaining_s": remaining},
            )
            return BackupResult(
                tenant_id=tenant_id,
                success=False,
                sync_id=sync_id,
                kind=FailureKind.COOLDOWN_ACTIVE,
                error=f"Restore cooldown active ({remaining:.0f}s remaining)",
            )

        archive_started = False
        try:
            await self.validate_config(session)

            archive_started = True
            data = await self.create_archive(session)

            prefix = tenant_prefix(tenant_id, self.prefix_template)
            timestamp = utc_iso(self.clock())
            safety_net = await self._safety_net(tenant_id, prefix, len(data), timestamp)

            await self.store.put(
                backup_key(prefix),
                data,
                metadata={
                    "timestamp": timestamp,
                    "syncId": sync_id,
                    "sizeBytes": str(len(data)),
                },
            )
            await self.store.put(sync_marker_key(prefix), format_sync_marker(sync_id, timestamp))

            logger.info(
                f"Backup complete for {tenant_id}",
                extra={"tenant_id": tenant_id, "sync_id": sync_id, "size_bytes": len(data)},
            )
            return BackupResult(
                tenant_id=tenant_id,
                success=True,
                sync_id=sync_id,
                size_bytes=len(data),
                safety_net=safety_net,
            )

        except ConfigInvalidError as e:
            logger.warning(
                f"Backup refused for {tenant_id}: {e.message}",
                extra={"tenant_id": tenant_id, "path": e.path},
            )
            return BackupResult(
                tenant_id=tenant_id,
                success=False,
                sync_id=sync_id,
                kind=FailureKind.CONFIG_INVALID,
                error=e.message,
            )
        except KeeperError as e:
            logger.error(
                f"Backup failed for {tenant_id}: {e.message}",
                extra={"tenant_id": tenant_id, "code": e.code},
            )
            return BackupResult(
                tenant_id=tenant_id,
                success=False,
                sync_id=sync_id,
                kind=FailureKind.TRANSFER_FAILURE,
                error=e.message,
            )
        except Exception as e:
            logger.error(f"Backup failed for {tenant_id}: {e}", exc_info=True)
            return BackupResult(
                tenant_id=tenant_id,
                success=False,
                sync_id=sync_id,
                kind=FailureKind.TRANSFER_FAILURE,
                error=str(e),
            )
        finally:
            if archive_started:
                await self._cleanup(tenant_id, session)

    async def validate_config(self, session: SessionHandle) -> dict[str, Any]:
        """Check the agent config is present, parseable and migrated.

        Raises:
            ConfigInvalidError: If the config must not be backed up
            SessionError: If the session could not be read
        """
        path = self.config.config_path
        try:
            raw = await session.read_file(path)
        except SessionFileNotFoundError:
            raise ConfigInvalidError("Agent config not found", path=path)

        try:
            parsed = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ConfigInvalidError(f"Agent config is not valid JSON: {e}", path=path)

        if not isinstance(parsed, dict):
            raise ConfigInvalidError("Agent config is not a JSON object", path=path)

        if not any(section in parsed for section in self.config.required_sections):
            raise ConfigInvalidError(
                f"Agent config has none of {', '.join(self.config.required_sections)}",
                path=path,
            )

        template_keys = [key for key in self.config.template_keys if key in parsed]
        if template_keys:
            raise ConfigInvalidError(
                f"Agent config still contains template keys: {', '.join(template_keys)}",
                path=path,
            )
        return parsed

    async def create_archive(self, session: SessionHandle) -> bytes:
        """Build the archive inside the session and read it out.

        Raises:
            TransferError: If tar fails or the transfer is incomplete
            SessionError: If the session call fails or times out
        """
        cfg = self.config
        command = archive_command(cfg.archive_path, cfg.data_tree, cfg.excludes)
        result = await run_command(session, command, timeout=cfg.archive_timeout_s)

        if result.exit_code not in TAR_OK_EXIT_CODES:
            raise TransferError(
                f"tar exited with {result.exit_code}",
                exit_code=result.exit_code,
                output=result.stderr[-500:],
            )
        if result.exit_code == 1:
            logger.warning(f"tar reported changes during archiving: {result.stderr.strip()[:200]}")

        size = await self._remote_size(session)
        if size <= cfg.corruption_floor_bytes:
            raise TransferError(
                f"Archive is {size} bytes, at or below the corruption floor ({cfg.corruption_floor_bytes})"
            )
        if size > cfg.large_backup_warn_bytes:
            logger.warning(f"Large backup archive: {size} bytes", extra={"size_bytes": size})

        data = await self._read_remote(session, size)
        if len(data) != size:
            raise TransferError(f"Reassembled archive is {len(data)} bytes, expected {size}")
        return data

    async def _remote_size(self, session: SessionHandle) -> int:
        result = await run_command(
            session, size_command(self.config.archive_path), timeout=self.config.chunk_timeout_s
        )
        if not result.ok:
            raise TransferError("Could not stat archive", exit_code=result.exit_code, output=result.stderr)
        try:
            return int(result.stdout.strip())
        except ValueError:
            raise TransferError(f"Unexpected stat output: {result.stdout.strip()[:100]!r}")

    async def _read_remote(self, session: SessionHandle, size: int) -> bytes:
        chunk_bytes = self.config.chunk_bytes
        chunks: list[bytes] = []
        for index in range((size + chunk_bytes - 1) // chunk_bytes):
            command = read_chunk_command(self.config.archive_path, chunk_bytes, index)
            result = await run_command(session, command, timeout=self.config.chunk_timeout_s)
            if not result.ok:
                raise TransferError(
                    f"Chunk {index} read failed", exit_code=result.exit_code, output=result.stderr
                )
            try:
                chunks.append(base64.b64decode(result.stdout.strip(), validate=True))
            except binascii.Error as e:
                raise TransferError(f"Chunk {index} is not valid base64: {e}")
        return b"".join(chunks)

    async def _safety_net(self, tenant_id: str, prefix: str, new_size: int, timestamp: str) -> bool:
        """Preserve the existing archive if it dwarfs the new one. Failures are logged only."""
        key = backup_key(prefix)
        try:
            existing = await self.store.head(key)
            if existing is None or existing.size <= self.config.safety_net_ratio * new_size:
                return False

            body = await self.store.get(key)
            if body is None:
                return False
            await self.store.put(
                archive_key(prefix),
                body,
                metadata={
                    "archivedAt": timestamp,
                    "originalSize": str(existing.size),
                    "reason": (
                        f"New backup ({new_size} bytes) is less than 1/{self.config.safety_net_ratio:g} "
                        f"of the existing backup ({existing.size} bytes)"
                    ),
                },
            )
            logger.warning(
                f"Backup for {tenant_id} shrank from {existing.size} to {new_size} bytes; "
                "previous archive preserved",
                extra={"tenant_id": tenant_id, "previous_size": existing.size, "new_size": new_size},
            )
            return True
        except KeeperError as e:
            logger.error(f"Safety net failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})
            return False

    async def _cleanup(self, tenant_id: str, session: SessionHandle) -> None:
        try:
            await run_command(
                session, remove_command([self.config.archive_path]), timeout=self.config.chunk_timeout_s
            )
        except KeeperError as e:
            logger.warning(f"Temp archive cleanup failed for {tenant_id}: {e.message}")

    def _record(self, result: BackupResult) -> None:
        if self.history is None:
            return
        self.history.record(
            result.tenant_id,
            result.success,
            sync_id=result.sync_id,
            kind=result.kind,
            error=result.error,
            duration_ms=result.duration_ms,
            size_bytes=result.size_bytes,
        )
