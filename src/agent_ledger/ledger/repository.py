"""SQLite-backed reference ledger with precondition-guarded transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import exc as sa_exc
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_ledger.ledger.amounts import checked_add, require_positive
from agent_ledger.ledger.errors import (
    InvalidFeeError,
    InvalidLimitError,
    LedgerRejectedError,
    LedgerUnavailableError,
    TaskNotFoundError,
    UnauthorizedError,
    VaultExistsError,
    VaultNotFoundError,
    VaultRejectedError,
)
from agent_ledger.ledger.models import (
    AgentMetrics,
    ClaimToken,
    EntityType,
    EscrowStatus,
    LedgerEventView,
    LedgerNotification,
    RejectionReason,
    TaskStatus,
    TaskView,
    VaultStatus,
)
from agent_ledger.ledger.vault_guard import (
    DEFAULT_WINDOW,
    GuardDecision,
    MovementKind,
    VaultSnapshot,
    effective_window,
    evaluate_movement,
    validate_limit,
)
from agent_ledger.storage.alembic_runner import upgrade_head
from agent_ledger.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_ledger.storage.sqlmodel_models import (
    NATIVE_ASSET,
    PLATFORM_ACCOUNT_ID,
    AgentExecutionStats,
    LedgerEvent,
    LedgerTask,
    PlatformAccount,
    Vault,
    VaultBalance,
)

logger = logging.getLogger(__name__)

BASIS_POINTS = 10_000
DEFAULT_FEE_BPS = 250
MAX_FEE_BPS = 1_000
MIN_DAILY_LIMIT = 10_000
MAX_DAILY_LIMIT = 100_000_000
MAX_LEASE_SECONDS = 3_600
_MAX_VERSION_CONFLICTS = 16


class _VersionConflict(Exception):
    """Vault row changed between read and guarded write."""


class LedgerRepository:
    """Ledger facade backed by SQLModel + SQLite.

    Every state transition is a single guarded ``UPDATE`` whose ``WHERE`` clause
    carries the precondition; ``rowcount != 1`` means the precondition failed
    and nothing was written. Fund movements additionally guard on the vault
    ``version`` column.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        admin_id: str = "admin",
        sqlite_busy_timeout_ms: int = 5_000,
        default_fee_bps: int = DEFAULT_FEE_BPS,
        max_fee_bps: int = MAX_FEE_BPS,
        min_daily_limit: int = MIN_DAILY_LIMIT,
        max_daily_limit: int = MAX_DAILY_LIMIT,
        limit_window: timedelta = DEFAULT_WINDOW,
        max_lease_seconds: int = MAX_LEASE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.admin_id = admin_id
        self.default_fee_bps = default_fee_bps
        self.max_fee_bps = max_fee_bps
        self.min_daily_limit = min_daily_limit
        self.max_daily_limit = max_daily_limit
        self.limit_window = limit_window
        self.max_lease_seconds = max_lease_seconds
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure the platform account exists."""

        upgrade_head(self.db_path)
        self._ensure_platform_account()

    def _ensure_platform_account(self) -> None:
        with self._session() as session:
            if session.get(PlatformAccount, PLATFORM_ACCOUNT_ID) is not None:
                return
            session.add(
                PlatformAccount(
                    account_id=PLATFORM_ACCOUNT_ID,
                    fee_bps=self.default_fee_bps,
                    accumulated_fees=0,
                    updated_at=to_db_datetime(self._now()),
                ),
            )
            try:
                session.commit()
            except sa_exc.IntegrityError:
                session.rollback()

    # -- tasks -----------------------------------------------------------------

    def create_task(
        self,
        *,
        requester: str,
        agent_id: str,
        payload: str,
        reward: int,
    ) -> TaskView:
        """Create a pending task whose reward is held in escrow."""

        require_positive(reward, name="reward")
        if not payload:
            raise ValueError("Task payload cannot be empty.")
        if not agent_id.strip() or not requester.strip():
            raise ValueError("Task agent_id and requester are required.")

        now = to_db_datetime(self._now())
        with self._session() as session:
            row = LedgerTask(
                agent_id=agent_id,
                requester=requester,
                payload=payload,
                reward=reward,
                status=TaskStatus.PENDING.value,
                escrow_status=EscrowStatus.HELD.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(row.task_id),
                agent_id=agent_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING.value,
                details={"requester": requester, "reward": reward},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_task(
        self,
        *,
        task_id: int,
        worker_id: str,
        lease_seconds: float,
    ) -> ClaimToken | None:
        """Move a pending task to in_progress; ``None`` if another claim won."""

        lease = self._validate_lease(lease_seconds)
        now = self._now()
        lease_expires_at = now + timedelta(seconds=lease)
        with self._session() as session:
            result = session.exec(
                sa_update(LedgerTask)
                .where(
                    col(LedgerTask.task_id) == task_id,
                    col(LedgerTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    worker_id=worker_id,
                    claim_epoch=col(LedgerTask.claim_epoch) + 1,
                    claimed_at=to_db_datetime(now),
                    lease_expires_at=to_db_datetime(lease_expires_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                self._get_task_row(session=session, task_id=task_id)
                return None

            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(task_id),
                agent_id=row.agent_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING.value,
                status_to=TaskStatus.IN_PROGRESS.value,
                details={
                    "worker_id": worker_id,
                    "claim_epoch": row.claim_epoch,
                    "lease_expires_at": lease_expires_at.isoformat(),
                },
            )
            session.commit()
            return ClaimToken(
                task_id=task_id,
                worker_id=worker_id,
                claim_epoch=row.claim_epoch,
                lease_expires_at=lease_expires_at,
            )

    def commit_success(self, *, claim: ClaimToken, result: str) -> TaskView | None:
        """Complete a claimed task and settle its reward into the agent vault.

        Returns ``None`` when the claim no longer holds the task. Raises
        ``VaultRejectedError`` when the payout is refused; nothing is applied
        in that case and the task stays in_progress.
        """

        now = self._now()
        with self._session() as session:
            updated = session.exec(
                sa_update(LedgerTask)
                .where(*_claim_guard(claim))
                .values(
                    status=TaskStatus.COMPLETED.value,
                    escrow_status=EscrowStatus.RELEASED.value,
                    result=result,
                    lease_expires_at=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                self._get_task_row(session=session, task_id=claim.task_id)
                return None

            row = self._get_task_row(session=session, task_id=claim.task_id)
            platform = self._get_platform_row(session=session)
            fee = row.reward * platform.fee_bps // BASIS_POINTS
            payout = row.reward - fee
            try:
                decision = self._settle_into_vault(
                    session=session,
                    agent_id=row.agent_id,
                    amount=payout,
                    now=now,
                )
            except VaultRejectedError:
                session.rollback()
                raise
            except _VersionConflict as error:
                session.rollback()
                raise LedgerUnavailableError(
                    f"Vault {row.agent_id} changed during settlement of task {claim.task_id}.",
                ) from error

            session.exec(
                sa_update(LedgerTask)
                .where(col(LedgerTask.task_id) == claim.task_id)
                .values(fee_charged=fee, amount_paid=payout),
            )
            session.exec(
                sa_update(PlatformAccount)
                .where(col(PlatformAccount.account_id) == PLATFORM_ACCOUNT_ID)
                .values(
                    accumulated_fees=col(PlatformAccount.accumulated_fees) + fee,
                    updated_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(claim.task_id),
                agent_id=row.agent_id,
                event_type="completed",
                status_from=TaskStatus.IN_PROGRESS.value,
                status_to=TaskStatus.COMPLETED.value,
                details={
                    "worker_id": claim.worker_id,
                    "claim_epoch": claim.claim_epoch,
                    "payout": payout,
                    "fee": fee,
                },
            )
            self._add_event(
                session=session,
                entity_type=EntityType.VAULT,
                entity_id=row.agent_id,
                agent_id=row.agent_id,
                event_type="settlement",
                status_from=None,
                status_to=None,
                details={
                    "task_id": claim.task_id,
                    "amount": payout,
                    "daily_spent": decision.daily_spent,
                    "window_rolled": decision.window_rolled,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def commit_failure(self, *, claim: ClaimToken, reason: str) -> TaskView | None:
        """Fail a claimed task and refund the escrowed reward to the requester."""

        now = self._now()
        with self._session() as session:
            updated = session.exec(
                sa_update(LedgerTask)
                .where(*_claim_guard(claim))
                .values(
                    status=TaskStatus.FAILED.value,
                    escrow_status=EscrowStatus.REFUNDED.value,
                    failure_reason=reason,
                    lease_expires_at=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                self._get_task_row(session=session, task_id=claim.task_id)
                return None

            row = self._get_task_row(session=session, task_id=claim.task_id)
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(claim.task_id),
                agent_id=row.agent_id,
                event_type="failed",
                status_from=TaskStatus.IN_PROGRESS.value,
                status_to=TaskStatus.FAILED.value,
                details={
                    "worker_id": claim.worker_id,
                    "claim_epoch": claim.claim_epoch,
                    "reason": reason,
                    "refund": row.reward,
                    "refund_to": row.requester,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def cancel_task(self, *, task_id: int, caller: str) -> bool:
        """Cancel a still-pending task on behalf of its requester."""

        now = self._now()
        with self._session() as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.requester != caller:
                raise UnauthorizedError(f"Only the requester can cancel task {task_id}.")
            requester = row.requester
            agent_id = row.agent_id
            reward = row.reward

            result = session.exec(
                sa_update(LedgerTask)
                .where(
                    col(LedgerTask.task_id) == task_id,
                    col(LedgerTask.requester) == caller,
                    col(LedgerTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    escrow_status=EscrowStatus.REFUNDED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(task_id),
                agent_id=agent_id,
                event_type="cancelled",
                status_from=TaskStatus.PENDING.value,
                status_to=TaskStatus.CANCELLED.value,
                details={"refund": reward, "refund_to": requester},
            )
            session.commit()
            return True

    def reclaim_expired_task(self, *, task_id: int) -> bool:
        """Return an in_progress task whose lease expired to pending."""

        now = self._now()
        with self._session() as session:
            previous = self._get_task_row(session=session, task_id=task_id)
            previous_worker = previous.worker_id
            previous_epoch = previous.claim_epoch
            agent_id = previous.agent_id

            result = session.exec(
                sa_update(LedgerTask)
                .where(
                    col(LedgerTask.task_id) == task_id,
                    col(LedgerTask.status) == TaskStatus.IN_PROGRESS.value,
                    col(LedgerTask.lease_expires_at).is_not(None),
                    col(LedgerTask.lease_expires_at) <= to_db_datetime(now),
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    worker_id=None,
                    claimed_at=None,
                    lease_expires_at=None,
                    reclaim_count=col(LedgerTask.reclaim_count) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                entity_type=EntityType.TASK,
                entity_id=str(task_id),
                agent_id=agent_id,
                event_type="lease_reclaimed",
                status_from=TaskStatus.IN_PROGRESS.value,
                status_to=TaskStatus.PENDING.value,
                details={"previous_worker_id": previous_worker, "claim_epoch": previous_epoch},
            )
            session.commit()
            return True

    def get_task(self, *, task_id: int) -> TaskView:
        with self._session() as session:
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def list_tasks(  # noqa: PLR0913
        self,
        *,
        agent_ids: Sequence[str] | None = None,
        status: TaskStatus | None = None,
        worker_id: str | None = None,
        lease_expired_before: datetime | None = None,
        limit: int = 100,
    ) -> list[TaskView]:
        """List tasks in id order, optionally filtered."""

        with self._session() as session:
            statement = select(LedgerTask).order_by(col(LedgerTask.task_id).asc()).limit(limit)
            if agent_ids is not None:
                statement = statement.where(col(LedgerTask.agent_id).in_(list(agent_ids)))
            if status is not None:
                statement = statement.where(LedgerTask.status == status.value)
            if worker_id is not None:
                statement = statement.where(LedgerTask.worker_id == worker_id)
            if lease_expired_before is not None:
                statement = statement.where(
                    col(LedgerTask.lease_expires_at).is_not(None),
                    col(LedgerTask.lease_expires_at) <= to_db_datetime(lease_expired_before),
                )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks(self, *, status: TaskStatus | None = None) -> int:
        with self._session() as session:
            statement = select(func.count()).select_from(LedgerTask)
            if status is not None:
                statement = statement.where(LedgerTask.status == status.value)
            return int(session.exec(statement).one())

    def list_task_events(self, *, task_id: int) -> list[LedgerEventView]:
        with self._session() as session:
            rows = session.exec(
                select(LedgerEvent)
                .where(
                    LedgerEvent.entity_type == EntityType.TASK.value,
                    LedgerEvent.entity_id == str(task_id),
                )
                .order_by(col(LedgerEvent.event_id).asc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    # -- change feed -------------------------------------------------------------

    def latest_event_id(self) -> int:
        with self._session() as session:
            value = session.exec(select(func.max(LedgerEvent.event_id))).one()
        return int(value or 0)

    def changes_since(
        self,
        *,
        after_event_id: int,
        agent_ids: Sequence[str] | None = None,
        limit: int = 100,
    ) -> list[LedgerNotification]:
        """Return change notifications newer than ``after_event_id``."""

        with self._session() as session:
            statement = (
                select(LedgerEvent)
                .where(col(LedgerEvent.event_id) > after_event_id)
                .order_by(col(LedgerEvent.event_id).asc())
                .limit(limit)
            )
            if agent_ids is not None:
                statement = statement.where(col(LedgerEvent.agent_id).in_(list(agent_ids)))
            rows = session.exec(statement).all()
        return [
            LedgerNotification(
                event_id=row.event_id or 0,
                entity_type=EntityType(row.entity_type),
                entity_id=row.entity_id,
                agent_id=row.agent_id,
                event_type=row.event_type,
                new_status=row.status_to,
            )
            for row in rows
        ]

    # -- vaults --------------------------------------------------------------------

    def create_vault(self, *, caller: str, agent_id: str, daily_limit: int) -> VaultStatus:
        """Create the vault for an agent (admin only)."""

        self._require_admin(caller)
        if not agent_id.strip():
            raise ValueError("Invalid agent address.")
        self._validate_limit(daily_limit)

        now = to_db_datetime(self._now())
        with self._session() as session:
            if session.get(Vault, agent_id) is not None:
                raise VaultExistsError(agent_id)
            session.add(
                Vault(
                    agent_id=agent_id,
                    daily_limit=daily_limit,
                    daily_spent=0,
                    window_reset_at=now,
                    active=True,
                    version=0,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.add(
                VaultBalance(agent_id=agent_id, asset=NATIVE_ASSET, balance=0, updated_at=now),
            )
            self._add_event(
                session=session,
                entity_type=EntityType.VAULT,
                entity_id=agent_id,
                agent_id=agent_id,
                event_type="vault_created",
                status_from=None,
                status_to="active",
                details={"daily_limit": daily_limit},
            )
            try:
                session.commit()
            except sa_exc.IntegrityError as error:
                session.rollback()
                raise VaultExistsError(agent_id) from error
        return self.get_vault_status(agent_id=agent_id)

    def deposit(
        self,
        *,
        agent_id: str,
        amount: int,
        depositor: str = "anonymous",
        asset: str = NATIVE_ASSET,
    ) -> VaultStatus:
        """Credit a vault; anyone may fund any existing vault."""

        require_positive(amount)
        for _ in range(_MAX_VERSION_CONFLICTS):
            now = self._now()
            with self._session() as session:
                vault = self._get_vault_row(session=session, agent_id=agent_id)
                balance = _balance_of(session, agent_id=agent_id, asset=asset)
                new_balance = checked_add(balance, amount)
                try:
                    self._bump_vault(session=session, vault=vault, now=now, values={})
                except _VersionConflict:
                    session.rollback()
                    continue
                self._write_balance(
                    session=session,
                    agent_id=agent_id,
                    asset=asset,
                    balance=new_balance,
                    now=now,
                )
                self._add_event(
                    session=session,
                    entity_type=EntityType.VAULT,
                    entity_id=agent_id,
                    agent_id=agent_id,
                    event_type="deposit",
                    status_from=None,
                    status_to=None,
                    details={"depositor": depositor, "amount": amount, "asset": asset},
                )
                session.commit()
            return self.get_vault_status(agent_id=agent_id, asset=asset)
        raise LedgerUnavailableError(f"Vault {agent_id} is under contention; retry deposit.")

    def withdraw(  # noqa: PLR0913
        self,
        *,
        caller: str,
        agent_id: str,
        recipient: str,
        amount: int,
        asset: str = NATIVE_ASSET,
    ) -> VaultStatus:
        """Move funds out of a vault, gated by the rolling daily limit."""

        require_positive(amount)
        for _ in range(_MAX_VERSION_CONFLICTS):
            now = self._now()
            with self._session() as session:
                vault = self._get_vault_row(session=session, agent_id=agent_id)
                if caller not in {agent_id, self.admin_id}:
                    raise UnauthorizedError(
                        f"Unauthorized: {caller} cannot withdraw from vault {agent_id}.",
                    )
                snapshot = _snapshot(
                    vault,
                    balance=_balance_of(session, agent_id=agent_id, asset=asset),
                )
                decision = evaluate_movement(
                    snapshot,
                    amount=amount,
                    kind=MovementKind.DEBIT,
                    now=now,
                    window=self.limit_window,
                )
                if not decision.allowed or decision.reason is not None:
                    raise VaultRejectedError(
                        agent_id,
                        decision.reason or RejectionReason.DAILY_LIMIT_EXCEEDED,
                        amount=amount,
                    )
                try:
                    self._apply_decision(
                        session=session,
                        vault=vault,
                        asset=asset,
                        decision=decision,
                        now=now,
                    )
                except _VersionConflict:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    entity_type=EntityType.VAULT,
                    entity_id=agent_id,
                    agent_id=agent_id,
                    event_type="withdraw",
                    status_from=None,
                    status_to=None,
                    details={
                        "caller": caller,
                        "recipient": recipient,
                        "amount": amount,
                        "asset": asset,
                        "daily_spent": decision.daily_spent,
                        "window_rolled": decision.window_rolled,
                    },
                )
                session.commit()
            logger.debug("Withdrew %d %s from vault %s to %s", amount, asset, agent_id, recipient)
            return self.get_vault_status(agent_id=agent_id, asset=asset)
        raise LedgerUnavailableError(f"Vault {agent_id} is under contention; retry withdrawal.")

    def get_vault_status(self, *, agent_id: str, asset: str = NATIVE_ASSET) -> VaultStatus:
        """Report balance and the effective limit window without mutating it."""

        now = self._now()
        with self._session() as session:
            vault = self._get_vault_row(session=session, agent_id=agent_id)
            balance = _balance_of(session, agent_id=agent_id, asset=asset)
            window = effective_window(
                daily_spent=vault.daily_spent,
                window_reset_at=to_utc_aware_datetime(vault.window_reset_at),
                now=now,
                window=self.limit_window,
            )
            return VaultStatus(
                agent_id=agent_id,
                asset=asset,
                balance=balance,
                daily_limit=vault.daily_limit,
                daily_spent=window.daily_spent,
                remaining=max(0, vault.daily_limit - window.daily_spent),
                window_started_at=window.window_reset_at,
                resets_at=window.window_reset_at + self.limit_window,
                active=vault.active,
            )

    def update_daily_limit(self, *, caller: str, agent_id: str, daily_limit: int) -> VaultStatus:
        self._require_admin(caller)
        self._validate_limit(daily_limit)
        for _ in range(_MAX_VERSION_CONFLICTS):
            now = self._now()
            with self._session() as session:
                vault = self._get_vault_row(session=session, agent_id=agent_id)
                old_limit = vault.daily_limit
                try:
                    self._bump_vault(
                        session=session,
                        vault=vault,
                        now=now,
                        values={"daily_limit": daily_limit},
                    )
                except _VersionConflict:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    entity_type=EntityType.VAULT,
                    entity_id=agent_id,
                    agent_id=agent_id,
                    event_type="daily_limit_updated",
                    status_from=None,
                    status_to=None,
                    details={"old_limit": old_limit, "new_limit": daily_limit},
                )
                session.commit()
            return self.get_vault_status(agent_id=agent_id)
        raise LedgerUnavailableError(f"Vault {agent_id} is under contention; retry update.")

    def set_vault_active(self, *, caller: str, agent_id: str, active: bool) -> VaultStatus:
        """Activate or deactivate a vault (admin only)."""

        self._require_admin(caller)
        for _ in range(_MAX_VERSION_CONFLICTS):
            now = self._now()
            with self._session() as session:
                vault = self._get_vault_row(session=session, agent_id=agent_id)
                previous = "active" if vault.active else "inactive"
                try:
                    self._bump_vault(
                        session=session,
                        vault=vault,
                        now=now,
                        values={"active": active},
                    )
                except _VersionConflict:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    entity_type=EntityType.VAULT,
                    entity_id=agent_id,
                    agent_id=agent_id,
                    event_type="vault_activated" if active else "vault_deactivated",
                    status_from=previous,
                    status_to="active" if active else "inactive",
                    details={},
                )
                session.commit()
            return self.get_vault_status(agent_id=agent_id)
        raise LedgerUnavailableError(f"Vault {agent_id} is under contention; retry update.")

    # -- platform fees -------------------------------------------------------------

    def get_platform_fee_bps(self) -> int:
        with self._session() as session:
            return self._get_platform_row(session=session).fee_bps

    def get_accumulated_fees(self) -> int:
        with self._session() as session:
            return self._get_platform_row(session=session).accumulated_fees

    def set_platform_fee(self, *, caller: str, fee_bps: int) -> int:
        self._require_admin(caller)
        if fee_bps < 0 or fee_bps > self.max_fee_bps:
            raise InvalidFeeError(
                f"Fee cannot exceed {self.max_fee_bps} basis points, got {fee_bps}.",
            )
        now = self._now()
        with self._session() as session:
            session.exec(
                sa_update(PlatformAccount)
                .where(col(PlatformAccount.account_id) == PLATFORM_ACCOUNT_ID)
                .values(fee_bps=fee_bps, updated_at=to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                entity_type=EntityType.PLATFORM,
                entity_id=str(PLATFORM_ACCOUNT_ID),
                agent_id=None,
                event_type="platform_fee_updated",
                status_from=None,
                status_to=None,
                details={"fee_bps": fee_bps},
            )
            session.commit()
        return fee_bps

    def withdraw_fees(self, *, caller: str, recipient: str) -> int:
        """Pay out all accumulated platform fees and reset the counter."""

        self._require_admin(caller)
        now = self._now()
        with self._session() as session:
            amount = self._get_platform_row(session=session).accumulated_fees
            if amount <= 0:
                raise LedgerRejectedError("No fees to withdraw.")
            result = session.exec(
                sa_update(PlatformAccount)
                .where(
                    col(PlatformAccount.account_id) == PLATFORM_ACCOUNT_ID,
                    col(PlatformAccount.accumulated_fees) == amount,
                )
                .values(accumulated_fees=0, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LedgerUnavailableError("Platform fees changed concurrently; retry.")
            self._add_event(
                session=session,
                entity_type=EntityType.PLATFORM,
                entity_id=str(PLATFORM_ACCOUNT_ID),
                agent_id=None,
                event_type="fees_withdrawn",
                status_from=None,
                status_to=None,
                details={"amount": amount, "recipient": recipient},
            )
            session.commit()
        return amount

    # -- execution metrics ---------------------------------------------------------

    def record_execution(self, *, agent_id: str, success: bool, duration_ms: int) -> None:
        """Accumulate one execution outcome into the agent's statistics."""

        duration = max(0, int(duration_ms))
        now = to_db_datetime(self._now())
        with self._session() as session:
            if session.get(AgentExecutionStats, agent_id) is None:
                session.add(
                    AgentExecutionStats(
                        agent_id=agent_id,
                        total_executions=0,
                        successful_executions=0,
                        failed_executions=0,
                        total_execution_ms=0,
                        last_execution_ms=0,
                        updated_at=now,
                    ),
                )
                try:
                    session.commit()
                except sa_exc.IntegrityError:
                    session.rollback()
            session.exec(
                sa_update(AgentExecutionStats)
                .where(col(AgentExecutionStats.agent_id) == agent_id)
                .values(
                    total_executions=col(AgentExecutionStats.total_executions) + 1,
                    successful_executions=col(AgentExecutionStats.successful_executions)
                    + (1 if success else 0),
                    failed_executions=col(AgentExecutionStats.failed_executions)
                    + (0 if success else 1),
                    total_execution_ms=col(AgentExecutionStats.total_execution_ms) + duration,
                    last_execution_ms=duration,
                    updated_at=now,
                ),
            )
            session.commit()

    def get_agent_metrics(self, *, agent_id: str) -> AgentMetrics:
        with self._session() as session:
            row = session.get(AgentExecutionStats, agent_id)
            if row is None:
                return AgentMetrics(
                    agent_id=agent_id,
                    total_executions=0,
                    successful_executions=0,
                    failed_executions=0,
                    average_execution_ms=0.0,
                    last_execution_ms=0,
                    success_rate=0.0,
                )
            total = row.total_executions
            return AgentMetrics(
                agent_id=agent_id,
                total_executions=total,
                successful_executions=row.successful_executions,
                failed_executions=row.failed_executions,
                average_execution_ms=(row.total_execution_ms / total) if total else 0.0,
                last_execution_ms=row.last_execution_ms,
                success_rate=(row.successful_executions / total) if total else 0.0,
            )

    # -- internals -----------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except sa_exc.OperationalError as error:
            raise LedgerUnavailableError(f"Ledger unavailable: {error}") from error

    def _now(self) -> datetime:
        return to_utc_aware_datetime(self._clock())

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin_id:
            raise UnauthorizedError(f"Admin privileges required, caller={caller}.")

    def _validate_limit(self, daily_limit: int) -> None:
        if not validate_limit(
            daily_limit,
            min_limit=self.min_daily_limit,
            max_limit=self.max_daily_limit,
        ):
            raise InvalidLimitError(
                f"Invalid daily limit {daily_limit}: expected "
                f"{self.min_daily_limit}..{self.max_daily_limit}.",
            )

    def _validate_lease(self, lease_seconds: float) -> float:
        if lease_seconds <= 0 or lease_seconds > self.max_lease_seconds:
            raise ValueError(
                f"Lease must be within (0, {self.max_lease_seconds}] seconds, got {lease_seconds}.",
            )
        return float(lease_seconds)

    def _get_task_row(self, *, session: Session, task_id: int) -> LedgerTask:
        row = session.exec(select(LedgerTask).where(LedgerTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _get_vault_row(self, *, session: Session, agent_id: str) -> Vault:
        row = session.get(Vault, agent_id)
        if row is None:
            raise VaultNotFoundError(agent_id)
        return row

    def _get_platform_row(self, *, session: Session) -> PlatformAccount:
        row = session.get(PlatformAccount, PLATFORM_ACCOUNT_ID)
        if row is None:
            raise RuntimeError("Platform account missing; run init_schema() first.")
        return row

    def _settle_into_vault(
        self,
        *,
        session: Session,
        agent_id: str,
        amount: int,
        now: datetime,
    ) -> GuardDecision:
        vault = session.get(Vault, agent_id)
        if vault is None:
            raise VaultRejectedError(agent_id, RejectionReason.VAULT_NOT_FOUND, amount=amount)
        snapshot = _snapshot(vault, balance=_balance_of(session, agent_id=agent_id))
        decision = evaluate_movement(
            snapshot,
            amount=amount,
            kind=MovementKind.SETTLEMENT,
            now=now,
            window=self.limit_window,
        )
        if not decision.allowed or decision.reason is not None:
            raise VaultRejectedError(
                agent_id,
                decision.reason or RejectionReason.DAILY_LIMIT_EXCEEDED,
                amount=amount,
            )
        self._apply_decision(
            session=session,
            vault=vault,
            asset=NATIVE_ASSET,
            decision=decision,
            now=now,
        )
        return decision

    def _apply_decision(
        self,
        *,
        session: Session,
        vault: Vault,
        asset: str,
        decision: GuardDecision,
        now: datetime,
    ) -> None:
        self._bump_vault(
            session=session,
            vault=vault,
            now=now,
            values={
                "daily_spent": decision.daily_spent,
                "window_reset_at": to_db_datetime(decision.window_reset_at),
            },
        )
        self._write_balance(
            session=session,
            agent_id=vault.agent_id,
            asset=asset,
            balance=decision.balance,
            now=now,
        )

    def _bump_vault(
        self,
        *,
        session: Session,
        vault: Vault,
        now: datetime,
        values: dict[str, object],
    ) -> None:
        result = session.exec(
            sa_update(Vault)
            .where(
                col(Vault.agent_id) == vault.agent_id,
                col(Vault.version) == vault.version,
            )
            .values(
                version=vault.version + 1,
                updated_at=to_db_datetime(now),
                **values,
            ),
        )
        if result.rowcount != 1:
            raise _VersionConflict(vault.agent_id)

    def _write_balance(
        self,
        *,
        session: Session,
        agent_id: str,
        asset: str,
        balance: int,
        now: datetime,
    ) -> None:
        if balance < 0:
            raise RuntimeError(f"Refusing negative balance for vault {agent_id}: {balance}")
        row = session.get(VaultBalance, (agent_id, asset))
        if row is None:
            session.add(
                VaultBalance(
                    agent_id=agent_id,
                    asset=asset,
                    balance=balance,
                    updated_at=to_db_datetime(now),
                ),
            )
            return
        row.balance = balance
        row.updated_at = to_db_datetime(now)
        session.add(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        entity_type: EntityType,
        entity_id: str,
        agent_id: str | None,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            LedgerEvent(
                entity_type=entity_type.value,
                entity_id=entity_id,
                agent_id=agent_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._now()),
            ),
        )


def _claim_guard(claim: ClaimToken) -> tuple[object, ...]:
    return (
        col(LedgerTask.task_id) == claim.task_id,
        col(LedgerTask.status) == TaskStatus.IN_PROGRESS.value,
        col(LedgerTask.worker_id) == claim.worker_id,
        col(LedgerTask.claim_epoch) == claim.claim_epoch,
    )


def _balance_of(session: Session, *, agent_id: str, asset: str = NATIVE_ASSET) -> int:
    row = session.get(VaultBalance, (agent_id, asset))
    return 0 if row is None else row.balance


def _snapshot(vault: Vault, *, balance: int) -> VaultSnapshot:
    return VaultSnapshot(
        daily_limit=vault.daily_limit,
        daily_spent=vault.daily_spent,
        window_reset_at=to_utc_aware_datetime(vault.window_reset_at),
        active=vault.active,
        balance=balance,
    )


def _to_task_view(row: LedgerTask) -> TaskView:
    return TaskView(
        task_id=row.task_id or 0,
        agent_id=row.agent_id,
        requester=row.requester,
        payload=row.payload,
        reward=row.reward,
        status=TaskStatus(row.status),
        escrow_status=EscrowStatus(row.escrow_status),
        fee_charged=row.fee_charged,
        amount_paid=row.amount_paid,
        result=row.result,
        failure_reason=row.failure_reason,
        worker_id=row.worker_id,
        claim_epoch=row.claim_epoch,
        claimed_at=optional_utc(row.claimed_at),
        lease_expires_at=optional_utc(row.lease_expires_at),
        reclaim_count=row.reclaim_count,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_event_view(row: LedgerEvent) -> LedgerEventView:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return LedgerEventView(
        event_id=row.event_id or 0,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        agent_id=row.agent_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
