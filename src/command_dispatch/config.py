"""Runtime configuration for the coordinator and worker services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_HTTP_FETCH_MAX_BYTES = 10 * 1024 * 1024


@dataclass(slots=True)
class CoordinatorSettings:
    """Command store and HTTP listener settings."""

    db_path: Path = Path(".command_dispatch.db")
    host: str = "127.0.0.1"
    port: int = 3000
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RecoverySettings:
    """Crash reconciliation settings."""

    worker_url: str = "http://127.0.0.1:3001"
    request_timeout_seconds: float = 5.0
    retry_interval_seconds: float = 10.0
    max_attempts: int = 0


@dataclass(slots=True)
class WorkerSettings:
    """Agent pool, polling, and execution log settings."""

    db_path: Path = Path(".command_dispatch_worker.db")
    host: str = "127.0.0.1"
    port: int = 3001
    coordinator_url: str = "http://127.0.0.1:3000"
    agent_count: int = 1
    max_agent_count: int = 5
    poll_interval_seconds: float = 5.0
    request_timeout_seconds: float = 15.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class DispatchSettings:
    """Execution dispatcher settings."""

    random_failures: bool = False
    random_failure_rate: float = 0.3
    http_fetch_timeout_seconds: float = 30.0
    http_fetch_max_bytes: int = DEFAULT_HTTP_FETCH_MAX_BYTES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        worker_db_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            coordinator=CoordinatorSettings(
                db_path=db_path
                or Path(os.getenv("COMMAND_DISPATCH_DB_PATH", ".command_dispatch.db")),
                host=os.getenv("COMMAND_DISPATCH_HOST", "127.0.0.1"),
                port=int(os.getenv("COMMAND_DISPATCH_PORT", "3000")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("COMMAND_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            recovery=RecoverySettings(
                worker_url=os.getenv("COMMAND_DISPATCH_WORKER_URL", "http://127.0.0.1:3001"),
                request_timeout_seconds=float(
                    os.getenv("COMMAND_DISPATCH_WORKER_TIMEOUT_SECONDS", "5.0"),
                ),
                retry_interval_seconds=float(
                    os.getenv("COMMAND_DISPATCH_RECOVERY_RETRY_INTERVAL_SECONDS", "10.0"),
                ),
                max_attempts=int(os.getenv("COMMAND_DISPATCH_RECOVERY_MAX_ATTEMPTS", "0")),
            ),
            worker=WorkerSettings(
                db_path=worker_db_path
                or Path(
                    os.getenv("COMMAND_DISPATCH_WORKER_DB_PATH", ".command_dispatch_worker.db"),
                ),
                host=os.getenv("COMMAND_DISPATCH_WORKER_HOST", "127.0.0.1"),
                port=int(os.getenv("COMMAND_DISPATCH_WORKER_PORT", "3001")),
                coordinator_url=os.getenv(
                    "COMMAND_DISPATCH_COORDINATOR_URL",
                    "http://127.0.0.1:3000",
                ),
                agent_count=int(os.getenv("COMMAND_DISPATCH_AGENT_COUNT", "1")),
                max_agent_count=int(os.getenv("COMMAND_DISPATCH_MAX_AGENT_COUNT", "5")),
                poll_interval_seconds=float(
                    os.getenv("COMMAND_DISPATCH_POLL_INTERVAL_SECONDS", "5.0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("COMMAND_DISPATCH_COORDINATOR_TIMEOUT_SECONDS", "15.0"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("COMMAND_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            dispatch=DispatchSettings(
                random_failures=_env_bool("COMMAND_DISPATCH_RANDOM_FAILURES", default=False),
                random_failure_rate=float(
                    os.getenv("COMMAND_DISPATCH_RANDOM_FAILURE_RATE", "0.3"),
                ),
                http_fetch_timeout_seconds=float(
                    os.getenv("COMMAND_DISPATCH_HTTP_FETCH_TIMEOUT_SECONDS", "30.0"),
                ),
                http_fetch_max_bytes=int(
                    os.getenv(
                        "COMMAND_DISPATCH_HTTP_FETCH_MAX_BYTES",
                        str(DEFAULT_HTTP_FETCH_MAX_BYTES),
                    ),
                ),
            ),
        )

    def validate_for_coordinator(self) -> None:
        """Raise configuration error if coordinator settings are unusable."""

        _validate_base_url(self.recovery.worker_url, name="COMMAND_DISPATCH_WORKER_URL")
        if self.recovery.request_timeout_seconds <= 0:
            raise ValueError("COMMAND_DISPATCH_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.recovery.retry_interval_seconds <= 0:
            raise ValueError("COMMAND_DISPATCH_RECOVERY_RETRY_INTERVAL_SECONDS must be > 0.")
        if self.recovery.max_attempts < 0:
            raise ValueError("COMMAND_DISPATCH_RECOVERY_MAX_ATTEMPTS must be >= 0.")
        self._validate_poll_timeout()

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are unusable."""

        _validate_base_url(
            self.worker.coordinator_url,
            name="COMMAND_DISPATCH_COORDINATOR_URL",
        )
        if self.worker.max_agent_count <= 0:
            raise ValueError("COMMAND_DISPATCH_MAX_AGENT_COUNT must be a positive integer.")
        if self.worker.agent_count < 0:
            raise ValueError("COMMAND_DISPATCH_AGENT_COUNT must be >= 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("COMMAND_DISPATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.request_timeout_seconds <= 0:
            raise ValueError("COMMAND_DISPATCH_COORDINATOR_TIMEOUT_SECONDS must be > 0.")
        self._validate_poll_timeout()
        if not 0.0 <= self.dispatch.random_failure_rate <= 1.0:
            raise ValueError("COMMAND_DISPATCH_RANDOM_FAILURE_RATE must be within [0, 1].")
        if self.dispatch.http_fetch_max_bytes <= 0:
            raise ValueError("COMMAND_DISPATCH_HTTP_FETCH_MAX_BYTES must be a positive integer.")

    def _validate_poll_timeout(self) -> None:
        # A poll may wait on two worker queries (execution log, then liveness).
        minimum = 2 * self.recovery.request_timeout_seconds
        if self.worker.request_timeout_seconds <= minimum:
            raise ValueError(
                "COMMAND_DISPATCH_COORDINATOR_TIMEOUT_SECONDS must be greater than twice "
                f"COMMAND_DISPATCH_WORKER_TIMEOUT_SECONDS ({minimum:g}s), "
                f"got {self.worker.request_timeout_seconds:g}s.",
            )


def _validate_base_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
