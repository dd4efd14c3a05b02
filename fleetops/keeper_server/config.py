"""
Configuration management for the session keeper.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the bucket and session API
    - Secrets are never logged or exposed in error messages
    - Thresholds and key layout are injected into components at construction time

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change layout defaults: deployed sessions and old backups depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .layout import AGENT_DIR, DEFAULT_CRITICAL_FILES, DEFAULT_TENANT_PREFIX, CriticalFile

logger = logging.getLogger(__name__)


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class StoreConfig:
    """S3-compatible object store configuration.

    Attributes:
        bucket: Bucket name
        region: Region
        endpoint_url: Custom endpoint URL (R2, MinIO)
        access_key_id: Access key ID (optional, uses the AWS credential chain)
        secret_access_key: Secret access key (optional)
        tenant_prefix: Namespace template for a tenant's objects
    """

    bucket: str = "keeper-data"
    region: str = "auto"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    tenant_prefix: str = DEFAULT_TENANT_PREFIX

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "keeper-data"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "auto")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            tenant_prefix=os.getenv("TENANT_PREFIX", DEFAULT_TENANT_PREFIX),
        )


@dataclass(frozen=True)
class SessionApiConfig:
    """Session control API configuration.

    Attributes:
        base_url: Base URL of the session control API
        token: Bearer token for the API (optional)
        request_timeout_s: Timeout for a single API request
        poll_interval_s: Interval between process status polls
        session_name: Session name template per tenant
    """

    base_url: str = "http://localhost:8787"
    token: str | None = None
    request_timeout_s: float = 10.0
    poll_interval_s: float = 0.25
    session_name: str = "openclaw-{tenant_id}"

    @classmethod
    def from_env(cls) -> SessionApiConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("SESSION_API_URL", "http://localhost:8787"),
            token=os.getenv("SESSION_API_TOKEN"),
            request_timeout_s=float(os.getenv("SESSION_API_TIMEOUT_S", "10")),
            poll_interval_s=float(os.getenv("SESSION_API_POLL_S", "0.25")),
            session_name=os.getenv("SESSION_NAME_TEMPLATE", "openclaw-{tenant_id}"),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot backup/restore configuration.

    Attributes:
        data_tree: Tree archived relative to "/" (the whole session home)
        archive_path: Temp archive path inside the session
        staging_path: Temp base64 staging path inside the session (restore)
        config_path: Primary agent config validated before every backup
        required_sections: Config must contain at least one of these keys
        template_keys: Config must contain none of these (unmigrated template)
        excludes: tar exclude patterns
        critical_files: Ordered critical file set
        archive_timeout_s: Budget for creating the archive
        restore_timeout_s: Budget for a full restore
        chunk_bytes: Bytes read out of the session per transfer call
        chunk_timeout_s: Budget per transfer call
        corruption_floor_bytes: Archives at or below this size are never valid
        safety_net_ratio: Existing primary is preserved if larger than ratio * new
        large_backup_warn_bytes: Log a warning above this archive size
    """

    data_tree: str = "root/"
    archive_path: str = "/tmp/backup.tar.gz"
    staging_path: str = "/tmp/backup.b64"
    config_path: str = f"{AGENT_DIR}/openclaw.json"
    required_sections: tuple[str, ...] = ("agents", "channels", "gateway")
    template_keys: tuple[str, ...] = ("providers",)
    excludes: tuple[str, ...] = (
        "node_modules",
        ".git",
        ".npm",
        ".cache",
        ".openclaw-templates",
        "*.lock",
        "*.log",
        "*.tmp",
    )
    critical_files: tuple[CriticalFile, ...] = DEFAULT_CRITICAL_FILES
    archive_timeout_s: float = 15.0
    restore_timeout_s: float = 15.0
    chunk_bytes: int = 512 * 1024
    chunk_timeout_s: float = 10.0
    corruption_floor_bytes: int = 200
    safety_net_ratio: float = 2.0
    large_backup_warn_bytes: int = 50 * 1024 * 1024

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            excludes=_env_list("SNAPSHOT_EXCLUDES", defaults.excludes),
            archive_timeout_s=float(os.getenv("SNAPSHOT_ARCHIVE_TIMEOUT_S", "15")),
            restore_timeout_s=float(os.getenv("SNAPSHOT_RESTORE_TIMEOUT_S", "15")),
            chunk_bytes=int(os.getenv("SNAPSHOT_CHUNK_BYTES", str(512 * 1024))),
            chunk_timeout_s=float(os.getenv("SNAPSHOT_CHUNK_TIMEOUT_S", "10")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync lock and cooldown configuration.

    Attributes:
        lock_max_age_s: Locks older than this are stale and discarded
        cooldown_s: Backups are suppressed this long after a restore
        restore_marker_path: Restore timestamp file inside the session
        history_size: Sync results remembered per tenant
    """

    lock_max_age_s: float = 60.0
    cooldown_s: float = 300.0
    restore_marker_path: str = f"{AGENT_DIR}/.restore-time"
    history_size: int = 10

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            lock_max_age_s=float(os.getenv("SYNC_LOCK_MAX_AGE_S", "60")),
            cooldown_s=float(os.getenv("SYNC_COOLDOWN_S", "300")),
            history_size=int(os.getenv("SYNC_HISTORY_SIZE", "10")),
        )


@dataclass(frozen=True)
class HealthConfig:
    """Health check configuration.

    Attributes:
        failures_before_restart: Consecutive failures that trigger a restart
        port_check_timeout_s: Budget for the port reachability check
        probe_timeout_s: Budget for the protocol-level probe
        process_list_timeout_s: Budget for listing processes
    """

    failures_before_restart: int = 3
    port_check_timeout_s: float = 5.0
    probe_timeout_s: float = 5.0
    process_list_timeout_s: float = 5.0

    @classmethod
    def from_env(cls) -> HealthConfig:
        """Load configuration from environment variables."""
        return cls(
            failures_before_restart=int(os.getenv("HEALTH_FAILURES_BEFORE_RESTART", "3")),
            port_check_timeout_s=float(os.getenv("HEALTH_PORT_TIMEOUT_S", "5")),
            probe_timeout_s=float(os.getenv("HEALTH_PROBE_TIMEOUT_S", "5")),
            process_list_timeout_s=float(os.getenv("HEALTH_LIST_TIMEOUT_S", "5")),
        )


@dataclass(frozen=True)
class BreakerConfig:
    """Restart circuit breaker configuration.

    Attributes:
        window_s: Sliding window length
        max_restarts: Restarts allowed in the window before tripping
    """

    window_s: float = 15 * 60.0
    max_restarts: int = 5

    @classmethod
    def from_env(cls) -> BreakerConfig:
        """Load configuration from environment variables."""
        return cls(
            window_s=float(os.getenv("BREAKER_WINDOW_S", str(15 * 60))),
            max_restarts=int(os.getenv("BREAKER_MAX_RESTARTS", "5")),
        )


@dataclass(frozen=True)
class GatewayConfig:
    """Agent gateway process configuration.

    Attributes:
        port: Port the gateway listens on inside the session
        command: Command that boots the gateway
        startup_timeout_s: Budget for the gateway port to open after start
        process_markers: Command fragments identifying the gateway process
        cli_markers: Command fragments of CLI invocations that are not the gateway
        stale_lock_paths: Lock artifacts cleared before a relaunch
        kill_settle_s: Pause after killing processes
        relaunch_timeout_s: Budget for the background relaunch task
        pre_restart_backup_timeout_s: Budget for the pre-restart backup
    """

    port: int = 18789
    command: str = "/usr/local/bin/start-moltbot.sh"
    startup_timeout_s: float = 180.0
    process_markers: tuple[str, ...] = (
        "start-moltbot.sh",
        "openclaw gateway",
        "clawdbot gateway",
    )
    cli_markers: tuple[str, ...] = (
        "openclaw devices",
        "openclaw --version",
        "clawdbot devices",
        "clawdbot --version",
    )
    stale_lock_paths: tuple[str, ...] = (
        "/tmp/openclaw-gateway.lock",
        f"{AGENT_DIR}/gateway.lock",
    )
    kill_settle_s: float = 2.0
    relaunch_timeout_s: float = 240.0
    pre_restart_backup_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Load configuration from environment variables."""
        return cls(
            port=int(os.getenv("GATEWAY_PORT", "18789")),
            command=os.getenv("GATEWAY_COMMAND", "/usr/local/bin/start-moltbot.sh"),
            startup_timeout_s=float(os.getenv("GATEWAY_STARTUP_TIMEOUT_S", "180")),
            kill_settle_s=float(os.getenv("GATEWAY_KILL_SETTLE_S", "2")),
            relaunch_timeout_s=float(os.getenv("GATEWAY_RELAUNCH_TIMEOUT_S", "240")),
            pre_restart_backup_timeout_s=float(os.getenv("GATEWAY_PRE_BACKUP_TIMEOUT_S", "30")),
        )


@dataclass(frozen=True)
class VerificationConfig:
    """Verification configuration.

    Attributes:
        cache_ttl_s: How long a verification result is reused per tenant
    """

    cache_ttl_s: float = 30.0

    @classmethod
    def from_env(cls) -> VerificationConfig:
        """Load configuration from environment variables."""
        return cls(cache_ttl_s=float(os.getenv("VERIFY_CACHE_TTL_S", "30")))


@dataclass(frozen=True)
class RetentionConfig:
    """Dated backup retention configuration.

    Attributes:
        enabled: Whether the retention pass runs at the end of a fleet pass
        retention_days: Dated backups older than this are deleted
        backups_prefix: Root prefix for dated copies
    """

    enabled: bool = True
    retention_days: int = 7
    backups_prefix: str = "backups"

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("RETENTION_ENABLED", "true").lower() == "true",
            retention_days=int(os.getenv("RETENTION_DAYS", "7")),
            backups_prefix=os.getenv("RETENTION_PREFIX", "backups"),
        )


@dataclass(frozen=True)
class FleetConfig:
    """Fleet pass configuration.

    Attributes:
        parallelism: Tenants processed concurrently within a pass
        sync_timeout_s: End-to-end budget for backup plus verification
        sync_failure_issue_threshold: Consecutive sync failures that open an issue
        verification_issue_threshold: Consecutive verification gaps that open an issue
        issue_db_path: SQLite file for durable issues
    """

    parallelism: int = 1
    sync_timeout_s: float = 60.0
    sync_failure_issue_threshold: int = 3
    verification_issue_threshold: int = 3
    issue_db_path: str = "/var/lib/keeper/issues.db"

    @classmethod
    def from_env(cls) -> FleetConfig:
        """Load configuration from environment variables."""
        return cls(
            parallelism=int(os.getenv("FLEET_PARALLELISM", "1")),
            sync_timeout_s=float(os.getenv("FLEET_SYNC_TIMEOUT_S", "60")),
            sync_failure_issue_threshold=int(os.getenv("FLEET_SYNC_ISSUE_THRESHOLD", "3")),
            verification_issue_threshold=int(os.getenv("FLEET_VERIFY_ISSUE_THRESHOLD", "3")),
            issue_db_path=os.getenv("ISSUE_DB_PATH", "/var/lib/keeper/issues.db"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        trigger_token: Shared secret required on the fleet-pass trigger (optional)
        cors_origins: Origins allowed to read the API from a browser dashboard
    """

    host: str = "0.0.0.0"
    port: int = 8081
    trigger_token: str | None = None
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            trigger_token=os.getenv("FLEET_TRIGGER_TOKEN"),
            cors_origins=_env_list("HTTP_CORS_ORIGINS", ("*",)),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete keeper configuration.

    This aggregates all configuration sections and provides validation.
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    session_api: SessionApiConfig = field(default_factory=SessionApiConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            session_api=SessionApiConfig.from_env(),
            snapshot=SnapshotConfig.from_env(),
            sync=SyncConfig.from_env(),
            health=HealthConfig.from_env(),
            breaker=BreakerConfig.from_env(),
            gateway=GatewayConfig.from_env(),
            verification=VerificationConfig.from_env(),
            retention=RetentionConfig.from_env(),
            fleet=FleetConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.store.bucket:
            raise ValueError("S3_BUCKET is required")
        if "{tenant_id}" not in self.store.tenant_prefix:
            raise ValueError("TENANT_PREFIX must contain '{tenant_id}'")
        if not self.session_api.base_url:
            raise ValueError("SESSION_API_URL is required")
        if self.snapshot.chunk_bytes <= 0:
            raise ValueError("SNAPSHOT_CHUNK_BYTES must be positive")
        if self.snapshot.safety_net_ratio <= 1.0:
            raise ValueError("Snapshot safety net ratio must be greater than 1")
        if self.health.failures_before_restart < 1:
            raise ValueError("HEALTH_FAILURES_BEFORE_RESTART must be at least 1")
        if self.breaker.max_restarts < 1:
            raise ValueError("BREAKER_MAX_RESTARTS must be at least 1")
        if self.fleet.parallelism < 1:
            raise ValueError("FLEET_PARALLELISM must be at least 1")

        budget = self.snapshot.archive_timeout_s + self.snapshot.chunk_timeout_s
        if self.fleet.sync_timeout_s < budget:
            logger.warning(
                f"FLEET_SYNC_TIMEOUT_S={self.fleet.sync_timeout_s} is below the archive "
                f"and transfer budget ({budget}s); large backups will time out"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Keeper configuration loaded",
            extra={
                "s3_bucket": self.store.bucket,
                "s3_endpoint": self.store.endpoint_url,
                "tenant_prefix": self.store.tenant_prefix,
                "session_api": self.session_api.base_url,
                "session_api_token": "set" if self.session_api.token else None,
                "failures_before_restart": self.health.failures_before_restart,
                "breaker_max_restarts": self.breaker.max_restarts,
                "breaker_window_s": self.breaker.window_s,
                "sync_cooldown_s": self.sync.cooldown_s,
                "fleet_parallelism": self.fleet.parallelism,
                "retention_enabled": self.retention.enabled,
                "log_level": self.observability.log_level,
            },
        )
