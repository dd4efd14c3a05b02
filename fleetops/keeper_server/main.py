"""
Session keeper - Main entry point.

This module wires and runs the keeper:
- Object store (S3-compatible)
- Session control API client
- Health monitor, circuit breaker, restart orchestrator
- Snapshotter, restore resolver, verification engine
- Fleet scheduler + retention, behind the HTTP API

The keeper has no timer of its own; an external scheduler triggers
fleet passes through POST /v1/fleet/pass.

Usage:
    python -m fleetops.keeper_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Components are built once and shared by the API and the scheduler
    - Graceful shutdown waits for outstanding relaunch tasks

How to change safely:
    - New components are wired in build_keeper() only
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

import json_log_formatter
from aiohttp import web

from .api import create_http_app, run_http_server
from .config import ServerConfig
from .fleet import FleetScheduler, RetentionManager
from .health import CircuitBreaker, GatewayLauncher, HealthMonitor, RestartOrchestrator
from .issues import IssueSink, SqliteIssueSink
from .session import HttpSessionProvider, SessionProvider
from .snapshot import RestoreResolver, Snapshotter
from .store import ObjectStore, S3ObjectStore
from .sync import SyncCoordinator, SyncHistory
from .verify import VerificationEngine

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


@dataclass
class Keeper:
    """The wired component graph."""

    config: ServerConfig
    store: ObjectStore
    sessions: SessionProvider
    issues: IssueSink
    coordinator: SyncCoordinator
    history: SyncHistory
    snapshotter: Snapshotter
    restorer: RestoreResolver
    verifier: VerificationEngine
    monitor: HealthMonitor
    breaker: CircuitBreaker
    launcher: GatewayLauncher
    orchestrator: RestartOrchestrator
    retention: RetentionManager
    scheduler: FleetScheduler


def build_keeper(
    config: ServerConfig,
    store: ObjectStore,
    sessions: SessionProvider,
    issues: IssueSink,
) -> Keeper:
    """Wire every component from configuration and the three external collaborators."""
    prefix = config.store.tenant_prefix

    coordinator = SyncCoordinator(config.sync)
    history = SyncHistory(history_size=config.sync.history_size)
    snapshotter = Snapshotter(store, coordinator, config.snapshot, history=history, prefix_template=prefix)
    restorer = RestoreResolver(store, coordinator, config.snapshot, prefix_template=prefix)
    verifier = VerificationEngine(store, config.verification, config.snapshot, prefix_template=prefix)
    monitor = HealthMonitor(config.health, config.gateway)
    breaker = CircuitBreaker(config.breaker)
    launcher = GatewayLauncher(store, restorer, config.gateway, prefix_template=prefix)
    orchestrator = RestartOrchestrator(
        monitor, breaker, snapshotter, launcher, verifier, issues, config.gateway
    )
    retention = RetentionManager(store, config.retention, prefix_template=prefix)
    scheduler = FleetScheduler(
        sessions=sessions,
        store=store,
        monitor=monitor,
        orchestrator=orchestrator,
        snapshotter=snapshotter,
        verifier=verifier,
        history=history,
        issues=issues,
        retention=retention,
        config=config.fleet,
        snapshot_config=config.snapshot,
        prefix_template=prefix,
    )
    return Keeper(
        config=config,
        store=store,
        sessions=sessions,
        issues=issues,
        coordinator=coordinator,
        history=history,
        snapshotter=snapshotter,
        restorer=restorer,
        verifier=verifier,
        monitor=monitor,
        breaker=breaker,
        launcher=launcher,
        orchestrator=orchestrator,
        retention=retention,
        scheduler=scheduler,
    )


class Server:
    """Keeper server orchestrator.

    Manages the lifecycle of:
    - S3 client
    - Session API client
    - SQLite issue store
    - HTTP API

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: S3ObjectStore | None = None
        self.sessions: HttpSessionProvider | None = None
        self.keeper: Keeper | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting session keeper")
        self.config.log_config()

        try:
            self.store = S3ObjectStore(self.config.store)
            await self.store.start()

            self.sessions = HttpSessionProvider(self.config.session_api)
            await self.sessions.start()

            issues = SqliteIssueSink(self.config.fleet.issue_db_path)
            await issues.initialize()

            self.keeper = build_keeper(self.config, self.store, self.sessions, issues)

            app = create_http_app(self.keeper, self.config.http)
            self._runner = await run_http_server(app, self.config.http)

            self._running = True
            logger.info("Session keeper started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping session keeper")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.keeper:
            try:
                await asyncio.wait_for(
                    self.keeper.orchestrator.drain(),
                    timeout=self.config.gateway.relaunch_timeout_s,
                )
            except asyncio.TimeoutError:
                logger.warning("Relaunch tasks still running at shutdown")

        if self.sessions:
            await self.sessions.close()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("Session keeper stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
