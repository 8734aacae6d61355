"""Runtime configuration for the task coordinator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class StoreSettings:
    """Task store settings."""

    busy_timeout_ms: int = 5_000
    workspace_root: Path | None = None
    claim_attempts: int = 3


@dataclass(slots=True)
class ProtocolSettings:
    """Coordinator process and tool-call timing settings."""

    handshake_timeout_seconds: float = 10.0
    call_timeout_seconds: float = 30.0
    health_check_interval_seconds: float = 30.0
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class WorkerSettings:
    """Polling worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    poll_backoff_max_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_coordinator.db")
    log_level: str = "WARNING"
    store: StoreSettings = field(default_factory=StoreSettings)
    protocol: ProtocolSettings = field(default_factory=ProtocolSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_COORDINATOR_DB_PATH", ".task_coordinator.db")),
            log_level=os.getenv("TASK_COORDINATOR_LOG_LEVEL", "WARNING").strip().upper(),
            store=StoreSettings(
                busy_timeout_ms=int(os.getenv("TASK_COORDINATOR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                workspace_root=_optional_path(os.getenv("TASK_COORDINATOR_WORKSPACE_ROOT")),
                claim_attempts=int(os.getenv("TASK_COORDINATOR_CLAIM_ATTEMPTS", "3")),
            ),
            protocol=ProtocolSettings(
                handshake_timeout_seconds=float(
                    os.getenv("TASK_COORDINATOR_HANDSHAKE_TIMEOUT_SECONDS", "10"),
                ),
                call_timeout_seconds=float(
                    os.getenv("TASK_COORDINATOR_CALL_TIMEOUT_SECONDS", "30"),
                ),
                health_check_interval_seconds=float(
                    os.getenv("TASK_COORDINATOR_HEALTH_CHECK_INTERVAL_SECONDS", "30"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("TASK_COORDINATOR_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("TASK_COORDINATOR_WORKER_ID", "worker-local"),
                poll_interval_seconds=float(
                    os.getenv("TASK_COORDINATOR_POLL_INTERVAL_SECONDS", "2"),
                ),
                poll_backoff_max_seconds=float(
                    os.getenv("TASK_COORDINATOR_POLL_BACKOFF_MAX_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honor."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"TASK_COORDINATOR_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.store.busy_timeout_ms <= 0:
            raise ValueError("TASK_COORDINATOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.store.claim_attempts <= 0:
            raise ValueError("TASK_COORDINATOR_CLAIM_ATTEMPTS must be > 0.")
        positive = {
            "TASK_COORDINATOR_HANDSHAKE_TIMEOUT_SECONDS": self.protocol.handshake_timeout_seconds,
            "TASK_COORDINATOR_CALL_TIMEOUT_SECONDS": self.protocol.call_timeout_seconds,
            "TASK_COORDINATOR_HEALTH_CHECK_INTERVAL_SECONDS": (
                self.protocol.health_check_interval_seconds
            ),
            "TASK_COORDINATOR_POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.protocol.graceful_shutdown_seconds < 0:
            raise ValueError("TASK_COORDINATOR_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.poll_backoff_max_seconds < self.worker.poll_interval_seconds:
            raise ValueError(
                "TASK_COORDINATOR_POLL_BACKOFF_MAX_SECONDS must be >= "
                "TASK_COORDINATOR_POLL_INTERVAL_SECONDS.",
            )
        if not self.worker.worker_id.strip():
            raise ValueError("TASK_COORDINATOR_WORKER_ID must not be empty.")


def configure_logging(level: str) -> None:
    """Send log records to stderr; stdout is reserved for protocol frames."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _optional_path(value: str | None) -> Path | None:
    if value is None or not value.strip():
        return None
    return Path(value.strip())
