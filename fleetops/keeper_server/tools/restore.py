"""
Restore CLI tool for the session keeper.

Operator commands:
    keeper-restore restore --tenant-id <id>                  restore a live session now
    keeper-restore verify --tenant-id <id>                   durability report from the store
    keeper-restore list-dates                                dated backups, newest first
    keeper-restore restore-date --tenant-id <id> --date D    roll the tenant's objects back to a dated copy

Store and session settings come from the same environment variables as
the server; --s3-bucket / --s3-endpoint override them.

Invariants:
    - restore-date never touches the session; run `restore` afterwards to load it
    - --dry-run makes no writes

How to change safely:
    - Keep output lines stable; runbooks grep them
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..fleet.retention import RetentionManager
from ..layout import tenant_prefix
from ..session.base import SessionProvider
from ..session.http import HttpSessionProvider
from ..snapshot.restore import RestoreResolver, RestoreResult
from ..store.base import ObjectStore
from ..store.s3 import S3ObjectStore
from ..sync.coordinator import SyncCoordinator
from ..verify.verifier import VerificationEngine, VerificationResult

logger = logging.getLogger(__name__)


class RestoreTool:
    """Operator-facing restore operations over a store and session provider.

    Example:
        >>> tool = RestoreTool(config, store, sessions)
        >>> result = await tool.restore_session("tenant_1")
        >>> print(result.format)
    """

    def __init__(self, config: ServerConfig, store: ObjectStore, sessions: SessionProvider | None = None) -> None:
        self.config = config
        self.store = store
        self.sessions = sessions
        prefix = config.store.tenant_prefix
        self.restorer = RestoreResolver(
            store, SyncCoordinator(config.sync), config.snapshot, prefix_template=prefix
        )
        self.verifier = VerificationEngine(
            store, config.verification, config.snapshot, prefix_template=prefix
        )
        self.retention = RetentionManager(store, config.retention, prefix_template=prefix)

    async def restore_session(self, tenant_id: str) -> RestoreResult:
        if self.sessions is None:
            raise ValueError("A session provider is required to restore a live session")
        session = await self.sessions.get_session(tenant_id)
        return await self.restorer.restore(tenant_id, session)

    async def verify(self, tenant_id: str) -> VerificationResult:
        return await self.verifier.post_restart_check(tenant_id)

    async def list_dates(self) -> list[str]:
        return await self.retention.list_backup_dates()

    async def restore_date(self, tenant_id: str, day: str, dry_run: bool = False) -> int:
        if dry_run:
            source = f"{self.config.retention.backups_prefix}/{day}/"
            prefix = tenant_prefix(tenant_id, self.config.store.tenant_prefix)
            return len(await self.store.list(source + prefix + "/"))
        return await self.retention.restore_tenant_from_date(tenant_id, day)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run(args: argparse.Namespace, config: ServerConfig) -> int:
    sessions = HttpSessionProvider(config.session_api) if args.command == "restore" else None
    async with S3ObjectStore(config.store) as store:
        try:
            tool = RestoreTool(config, store, sessions)

            if args.command == "restore":
                if args.dry_run:
                    print(f"Dry run: would restore {args.tenant_id} into its session")
                    return 0
                result = await tool.restore_session(args.tenant_id)
                if result.success:
                    print("Restore completed successfully")
                    print(f"  Format: {result.format.value if result.format else 'none'}")
                    print(f"  Attempts: {' -> '.join(result.attempts)}")
                    print(f"  Files restored: {result.files_restored}")
                    print(f"  Duration: {result.duration_ms}ms")
                    return 0
                print(f"Restore failed: {result.error}")
                return 1

            if args.command == "verify":
                verification = await tool.verify(args.tenant_id)
                _print_json(verification.to_dict())
                return 0 if verification.passed else 1

            if args.command == "list-dates":
                for day in await tool.list_dates():
                    print(day)
                return 0

            if args.command == "restore-date":
                count = await tool.restore_date(args.tenant_id, args.date, dry_run=args.dry_run)
                if count == 0:
                    print(f"No backup for {args.tenant_id} on {args.date}")
                    return 1
                verb = "Would restore" if args.dry_run else "Restored"
                print(f"{verb} {count} objects for {args.tenant_id} from {args.date}")
                return 0
        finally:
            if sessions is not None:
                await sessions.close()
    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Restore and inspect tenant session backups")
    parser.add_argument("--s3-bucket", help="S3 bucket name (overrides S3_BUCKET)")
    parser.add_argument("--s3-endpoint", help="S3 endpoint URL (R2, MinIO)")
    parser.add_argument("--dry-run", action="store_true", help="Don't make changes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    restore = sub.add_parser("restore", help="Restore a tenant's live session from its backups")
    restore.add_argument("--tenant-id", required=True, help="Tenant ID to restore")

    verify = sub.add_parser("verify", help="Check a tenant's backups in the store")
    verify.add_argument("--tenant-id", required=True, help="Tenant ID to verify")

    sub.add_parser("list-dates", help="List dated daily backups")

    restore_date = sub.add_parser("restore-date", help="Roll a tenant back to a dated backup")
    restore_date.add_argument("--tenant-id", required=True, help="Tenant ID to roll back")
    restore_date.add_argument("--date", required=True, help="Backup date (YYYY-MM-DD)")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for restore tool."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    config = ServerConfig.from_env()
    if args.s3_bucket or args.s3_endpoint:
        config.store = dataclasses.replace(
            config.store,
            bucket=args.s3_bucket or config.store.bucket,
            endpoint_url=args.s3_endpoint or config.store.endpoint_url,
        )

    sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
