"""Initial ledger schema: tasks, vaults, platform account, change feed."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ledger_tasks",
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("requester", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("reward", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("escrow_status", sa.String(), nullable=False),
        sa.Column("fee_charged", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_paid", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claim_epoch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reclaim_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_ledger_tasks_agent_id", "ledger_tasks", ["agent_id"])
    op.create_index("ix_ledger_tasks_requester", "ledger_tasks", ["requester"])
    op.create_index("ix_ledger_tasks_status", "ledger_tasks", ["status"])
    op.create_index("ix_ledger_tasks_worker_id", "ledger_tasks", ["worker_id"])
    op.create_index("idx_ledger_tasks_agent_status", "ledger_tasks", ["agent_id", "status"])
    op.create_index("idx_ledger_tasks_lease", "ledger_tasks", ["status", "lease_expires_at"])

    op.create_table(
        "vaults",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("daily_limit", sa.BigInteger(), nullable=False),
        sa.Column("daily_spent", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("window_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )

    op.create_table(
        "vault_balances",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("asset", sa.String(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["vaults.agent_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("agent_id", "asset"),
    )

    op.create_table(
        "platform_account",
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("fee_bps", sa.Integer(), nullable=False),
        sa.Column(
            "accumulated_fees",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "agent_execution_stats",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "successful_executions",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("failed_executions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "total_execution_ms",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "last_execution_ms",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )

    op.create_table(
        "ledger_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "idx_ledger_events_agent_cursor",
        "ledger_events",
        ["agent_id", "event_id"],
    )
    op.create_index(
        "idx_ledger_events_entity",
        "ledger_events",
        ["entity_type", "entity_id", "event_id"],
    )


def downgrade() -> None:
    op.drop_index("idx_ledger_events_entity", table_name="ledger_events")
    op.drop_index("idx_ledger_events_agent_cursor", table_name="ledger_events")
    op.drop_table("ledger_events")
    op.drop_table("agent_execution_stats")
    op.drop_table("platform_account")
    op.drop_table("vault_balances")
    op.drop_table("vaults")
    op.drop_index("idx_ledger_tasks_lease", table_name="ledger_tasks")
    op.drop_index("idx_ledger_tasks_agent_status", table_name="ledger_tasks")
    op.drop_index("ix_ledger_tasks_worker_id", table_name="ledger_tasks")
    op.drop_index("ix_ledger_tasks_status", table_name="ledger_tasks")
    op.drop_index("ix_ledger_tasks_requester", table_name="ledger_tasks")
    op.drop_index("ix_ledger_tasks_agent_id", table_name="ledger_tasks")
    op.drop_table("ledger_tasks")
