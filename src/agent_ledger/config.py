"""Runtime configuration for the ledger and the task coordinator."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from agent_ledger.ledger.repository import (
    DEFAULT_FEE_BPS,
    MAX_DAILY_LIMIT,
    MAX_FEE_BPS,
    MAX_LEASE_SECONDS,
    MIN_DAILY_LIMIT,
)

EXECUTOR_KINDS = ("echo", "command")


@dataclass(slots=True)
class LedgerSettings:
    """Reference ledger storage and policy settings."""

    platform_fee_bps: int = DEFAULT_FEE_BPS
    max_platform_fee_bps: int = MAX_FEE_BPS
    max_lease_seconds: int = MAX_LEASE_SECONDS
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class VaultSettings:
    """Vault daily-limit policy in base units (1 token = 1 000 000 units)."""

    min_daily_limit: int = MIN_DAILY_LIMIT
    max_daily_limit: int = MAX_DAILY_LIMIT
    limit_window_seconds: int = 86_400

    @property
    def limit_window(self) -> timedelta:
        return timedelta(seconds=self.limit_window_seconds)


@dataclass(slots=True)
class CoordinatorSettings:
    """Worker process tunables."""

    worker_id: str = field(default_factory=socket.gethostname)
    agent_ids: tuple[str, ...] = ()
    concurrency: int = 4
    lease_seconds: int = 300
    scan_interval_seconds: float = 15.0
    feed_poll_interval_seconds: float = 1.0
    queue_maxsize: int = 256
    claim_max_attempts: int = 3
    commit_max_attempts: int = 5
    retry_base_seconds: float = 0.5
    retry_max_seconds: float = 30.0
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


@dataclass(slots=True)
class ExecutorSettings:
    kind: str = "echo"
    command_template: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_ledger.db")
    admin_id: str = "admin"
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    vault: VaultSettings = field(default_factory=VaultSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_LEDGER_DB_PATH", ".agent_ledger.db")),
            admin_id=os.getenv("AGENT_LEDGER_ADMIN_ID", "admin"),
            ledger=LedgerSettings(
                platform_fee_bps=int(
                    os.getenv("AGENT_LEDGER_PLATFORM_FEE_BPS", str(DEFAULT_FEE_BPS)),
                ),
                max_platform_fee_bps=int(
                    os.getenv("AGENT_LEDGER_MAX_PLATFORM_FEE_BPS", str(MAX_FEE_BPS)),
                ),
                max_lease_seconds=int(
                    os.getenv("AGENT_LEDGER_MAX_LEASE_SECONDS", str(MAX_LEASE_SECONDS)),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("AGENT_LEDGER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            vault=VaultSettings(
                min_daily_limit=int(
                    os.getenv("AGENT_LEDGER_MIN_DAILY_LIMIT", str(MIN_DAILY_LIMIT)),
                ),
                max_daily_limit=int(
                    os.getenv("AGENT_LEDGER_MAX_DAILY_LIMIT", str(MAX_DAILY_LIMIT)),
                ),
                limit_window_seconds=int(
                    os.getenv("AGENT_LEDGER_LIMIT_WINDOW_SECONDS", "86400"),
                ),
            ),
            coordinator=CoordinatorSettings(
                worker_id=os.getenv("AGENT_LEDGER_WORKER_ID", "").strip()
                or socket.gethostname(),
                agent_ids=_collect_agent_ids(),
                concurrency=int(os.getenv("AGENT_LEDGER_CONCURRENCY", "4")),
                lease_seconds=int(os.getenv("AGENT_LEDGER_LEASE_SECONDS", "300")),
                scan_interval_seconds=float(
                    os.getenv("AGENT_LEDGER_SCAN_INTERVAL_SECONDS", "15"),
                ),
                feed_poll_interval_seconds=float(
                    os.getenv("AGENT_LEDGER_FEED_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                queue_maxsize=int(os.getenv("AGENT_LEDGER_QUEUE_MAXSIZE", "256")),
                claim_max_attempts=int(os.getenv("AGENT_LEDGER_CLAIM_MAX_ATTEMPTS", "3")),
                commit_max_attempts=int(os.getenv("AGENT_LEDGER_COMMIT_MAX_ATTEMPTS", "5")),
                retry_base_seconds=float(os.getenv("AGENT_LEDGER_RETRY_BASE_SECONDS", "0.5")),
                retry_max_seconds=float(os.getenv("AGENT_LEDGER_RETRY_MAX_SECONDS", "30")),
                reconnect_base_seconds=float(
                    os.getenv("AGENT_LEDGER_RECONNECT_BASE_SECONDS", "1.0"),
                ),
                reconnect_max_seconds=float(
                    os.getenv("AGENT_LEDGER_RECONNECT_MAX_SECONDS", "60"),
                ),
            ),
            executor=ExecutorSettings(
                kind=os.getenv("AGENT_LEDGER_EXECUTOR", "echo").strip().lower(),
                command_template=os.getenv("AGENT_LEDGER_EXECUTOR_COMMAND", ""),
            ),
        )

    def validate_for_ledger(self) -> None:
        """Raise configuration error if ledger policy values are inconsistent."""

        if not self.admin_id.strip():
            raise ValueError("AGENT_LEDGER_ADMIN_ID must not be empty.")
        if not 0 <= self.ledger.platform_fee_bps <= self.ledger.max_platform_fee_bps:
            raise ValueError(
                "AGENT_LEDGER_PLATFORM_FEE_BPS must be within "
                f"0..{self.ledger.max_platform_fee_bps}.",
            )
        if self.ledger.max_platform_fee_bps > 10_000:
            raise ValueError("AGENT_LEDGER_MAX_PLATFORM_FEE_BPS must be <= 10000.")
        if self.ledger.max_lease_seconds <= 0:
            raise ValueError("AGENT_LEDGER_MAX_LEASE_SECONDS must be > 0.")
        if self.vault.min_daily_limit <= 0:
            raise ValueError("AGENT_LEDGER_MIN_DAILY_LIMIT must be > 0.")
        if self.vault.max_daily_limit < self.vault.min_daily_limit:
            raise ValueError(
                "AGENT_LEDGER_MAX_DAILY_LIMIT must be >= AGENT_LEDGER_MIN_DAILY_LIMIT.",
            )
        if self.vault.limit_window_seconds <= 0:
            raise ValueError("AGENT_LEDGER_LIMIT_WINDOW_SECONDS must be > 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if coordinator settings cannot run a worker."""

        self.validate_for_ledger()
        coordinator = self.coordinator
        if not coordinator.worker_id.strip():
            raise ValueError("AGENT_LEDGER_WORKER_ID must not be empty.")
        if coordinator.concurrency <= 0:
            raise ValueError("AGENT_LEDGER_CONCURRENCY must be > 0.")
        if not 0 < coordinator.lease_seconds <= self.ledger.max_lease_seconds:
            raise ValueError(
                "AGENT_LEDGER_LEASE_SECONDS must be within "
                f"1..{self.ledger.max_lease_seconds}.",
            )
        if coordinator.scan_interval_seconds <= 0:
            raise ValueError("AGENT_LEDGER_SCAN_INTERVAL_SECONDS must be > 0.")
        if coordinator.feed_poll_interval_seconds <= 0:
            raise ValueError("AGENT_LEDGER_FEED_POLL_INTERVAL_SECONDS must be > 0.")
        if coordinator.queue_maxsize <= 0:
            raise ValueError("AGENT_LEDGER_QUEUE_MAXSIZE must be > 0.")
        if coordinator.claim_max_attempts <= 0 or coordinator.commit_max_attempts <= 0:
            raise ValueError("Claim and commit attempt limits must be > 0.")
        if coordinator.retry_base_seconds < 0 or coordinator.retry_max_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if coordinator.reconnect_base_seconds <= 0 or coordinator.reconnect_max_seconds <= 0:
            raise ValueError("Reconnect delays must be > 0.")

        if self.executor.kind not in EXECUTOR_KINDS:
            raise ValueError(
                f"Unsupported AGENT_LEDGER_EXECUTOR {self.executor.kind!r}; "
                f"expected one of: {', '.join(EXECUTOR_KINDS)}.",
            )
        if self.executor.kind == "command" and not self.executor.command_template.strip():
            raise ValueError(
                "AGENT_LEDGER_EXECUTOR_COMMAND is required for the command executor.",
            )


def _collect_agent_ids() -> tuple[str, ...]:
    raw = os.getenv("AGENT_LEDGER_AGENT_IDS", "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)
