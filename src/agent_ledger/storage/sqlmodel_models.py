"""SQLModel ORM tables for the ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
)
from sqlmodel import Field, SQLModel

PLATFORM_ACCOUNT_ID = 1
NATIVE_ASSET = "native"


class LedgerTask(SQLModel, table=True):
    __tablename__ = "ledger_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ledger_tasks_agent_status", "agent_id", "status"),
        Index("idx_ledger_tasks_lease", "status", "lease_expires_at"),
        {"sqlite_autoincrement": True},
    )

    task_id: int | None = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    requester: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    reward: int = Field(sa_column=Column(BigInteger, nullable=False))
    status: str = Field(index=True)
    escrow_status: str
    fee_charged: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    amount_paid: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    result: str | None = Field(default=None, sa_column=Column(Text))
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    claim_epoch: int = Field(default=0)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    reclaim_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class Vault(SQLModel, table=True):
    __tablename__ = "vaults"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    daily_limit: int = Field(sa_column=Column(BigInteger, nullable=False))
    daily_spent: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    window_reset_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))
    version: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class VaultBalance(SQLModel, table=True):
    __tablename__ = "vault_balances"  # type: ignore[bad-override]

    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("vaults.agent_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    asset: str = Field(default=NATIVE_ASSET, primary_key=True)
    balance: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlatformAccount(SQLModel, table=True):
    __tablename__ = "platform_account"  # type: ignore[bad-override]

    account_id: int = Field(default=PLATFORM_ACCOUNT_ID, primary_key=True)
    fee_bps: int
    accumulated_fees: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentExecutionStats(SQLModel, table=True):
    __tablename__ = "agent_execution_stats"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    total_executions: int = Field(default=0)
    successful_executions: int = Field(default=0)
    failed_executions: int = Field(default=0)
    total_execution_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    last_execution_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEvent(SQLModel, table=True):
    __tablename__ = "ledger_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ledger_events_agent_cursor", "agent_id", "event_id"),
        Index("idx_ledger_events_entity", "entity_type", "entity_id", "event_id"),
        {"sqlite_autoincrement": True},
    )

    event_id: int | None = Field(default=None, primary_key=True)
    entity_type: str
    entity_id: str
    agent_id: str | None = Field(default=None)
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
