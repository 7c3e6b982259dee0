"""Controllers for ledger and worker CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_ledger.config import Settings
from agent_ledger.coordinator.dispatcher import DispatchCoordinator
from agent_ledger.coordinator.executor import CommandExecutor, EchoExecutor, Executor
from agent_ledger.coordinator.models import AttemptEvent
from agent_ledger.ledger.amounts import format_amount, parse_amount
from agent_ledger.ledger.models import TaskStatus, TaskView, VaultStatus
from agent_ledger.ledger.repository import LedgerRepository
from agent_ledger.storage.sqlmodel_models import NATIVE_ASSET

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    requester: str
    agent_id: str
    payload: str
    reward: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    agent_ids: tuple[str, ...]
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskCancelCommand:
    """CLI input for requester cancellation."""

    db_path: Path | None
    task_id: int
    caller: str


@dataclass(slots=True)
class VaultCreateCommand:
    db_path: Path | None
    caller: str | None
    agent_id: str
    daily_limit: str


@dataclass(slots=True)
class VaultDepositCommand:
    db_path: Path | None
    agent_id: str
    amount: str
    depositor: str
    asset: str = NATIVE_ASSET


@dataclass(slots=True)
class VaultWithdrawCommand:
    """CLI input for a guarded vault withdrawal."""

    db_path: Path | None
    caller: str | None
    agent_id: str
    recipient: str
    amount: str
    asset: str = NATIVE_ASSET


@dataclass(slots=True)
class VaultStatusCommand:
    db_path: Path | None
    agent_id: str
    asset: str = NATIVE_ASSET


@dataclass(slots=True)
class VaultLimitCommand:
    db_path: Path | None
    caller: str | None
    agent_id: str
    daily_limit: str


@dataclass(slots=True)
class VaultActiveCommand:
    db_path: Path | None
    caller: str | None
    agent_id: str
    active: bool


@dataclass(slots=True)
class PlatformCommand:
    """CLI input for platform fee inspection."""

    db_path: Path | None


@dataclass(slots=True)
class PlatformSetFeeCommand:
    db_path: Path | None
    caller: str | None
    fee_bps: int


@dataclass(slots=True)
class PlatformWithdrawFeesCommand:
    db_path: Path | None
    caller: str | None
    recipient: str


@dataclass(slots=True)
class AgentMetricsCommand:
    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for coordinator execution."""

    db_path: Path | None
    once: bool
    executor: str | None = None
    command_template: str | None = None
    agent_ids: tuple[str, ...] = ()
    worker_id: str | None = None
    concurrency: int | None = None


class LedgerCliController:
    """Coordinates task, vault, platform and worker CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                requester=command.requester,
                agent_id=command.agent_id,
                payload=command.payload,
                reward=parse_amount(command.reward),
            )
        return [
            f"Task created: task_id={task.task_id} agent={task.agent_id} "
            f"reward={format_amount(task.reward)} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                agent_ids=command.agent_ids or None,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(task_id=command.task_id)
            events = repository.list_task_events(task_id=command.task_id)

        lease = task.lease_expires_at.isoformat() if task.lease_expires_at else "-"
        lines = [
            f"Task: {task.task_id}",
            f"Agent: {task.agent_id}",
            f"Requester: {task.requester}",
            f"Status: {task.status.value}",
            f"Escrow: {task.escrow_status.value}",
            f"Reward: {format_amount(task.reward)}",
            f"Paid: {format_amount(task.amount_paid)} fee={format_amount(task.fee_charged)}",
            f"Worker: {task.worker_id or '-'} epoch={task.claim_epoch} lease_expires_at={lease}",
            f"Reclaims: {task.reclaim_count}",
            f"Result: {task.result if task.result is not None else '-'}",
            f"Failure: {task.failure_reason or '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def cancel_task(self, command: TaskCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            cancelled = repository.cancel_task(task_id=command.task_id, caller=command.caller)
        if not cancelled:
            return [f"Task not cancelled (no longer pending): {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def reclaim_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            reclaimed = repository.reclaim_expired_task(task_id=command.task_id)
        if not reclaimed:
            return [f"Task not reclaimed (not in progress or lease still valid): {command.task_id}"]
        return [f"Task reclaimed: {command.task_id}"]

    def create_vault(self, command: VaultCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.create_vault(
                caller=command.caller or settings.admin_id,
                agent_id=command.agent_id,
                daily_limit=parse_amount(command.daily_limit),
            )
        return [f"Vault created: {command.agent_id}", *_vault_lines(status)]

    def deposit(self, command: VaultDepositCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.deposit(
                agent_id=command.agent_id,
                amount=parse_amount(command.amount),
                depositor=command.depositor,
                asset=command.asset,
            )
        return [
            f"Deposited {command.amount} {command.asset} into {command.agent_id}",
            *_vault_lines(status),
        ]

    def withdraw(self, command: VaultWithdrawCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.withdraw(
                caller=command.caller or command.agent_id,
                agent_id=command.agent_id,
                recipient=command.recipient,
                amount=parse_amount(command.amount),
                asset=command.asset,
            )
        return [
            f"Withdrew {command.amount} {command.asset} from {command.agent_id} "
            f"to {command.recipient}",
            *_vault_lines(status),
        ]

    def vault_status(self, command: VaultStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.get_vault_status(agent_id=command.agent_id, asset=command.asset)
        return [f"Vault: {command.agent_id}", *_vault_lines(status)]

    def update_limit(self, command: VaultLimitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.update_daily_limit(
                caller=command.caller or settings.admin_id,
                agent_id=command.agent_id,
                daily_limit=parse_amount(command.daily_limit),
            )
        return [f"Daily limit updated: {command.agent_id}", *_vault_lines(status)]

    def set_active(self, command: VaultActiveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = repository.set_vault_active(
                caller=command.caller or settings.admin_id,
                agent_id=command.agent_id,
                active=command.active,
            )
        state = "activated" if status.active else "deactivated"
        return [f"Vault {state}: {command.agent_id}"]

    def platform_fee(self, command: PlatformCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            fee_bps = repository.get_platform_fee_bps()
            accumulated = repository.get_accumulated_fees()
        return [
            f"Platform fee: {fee_bps} bps ({fee_bps / 100:.2f}%)",
            f"Accumulated fees: {format_amount(accumulated)}",
        ]

    def set_platform_fee(self, command: PlatformSetFeeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            fee_bps = repository.set_platform_fee(
                caller=command.caller or settings.admin_id,
                fee_bps=command.fee_bps,
            )
        return [f"Platform fee updated: {fee_bps} bps"]

    def withdraw_fees(self, command: PlatformWithdrawFeesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            amount = repository.withdraw_fees(
                caller=command.caller or settings.admin_id,
                recipient=command.recipient,
            )
        return [f"Platform fees withdrawn: {format_amount(amount)} to {command.recipient}"]

    def agent_metrics(self, command: AgentMetricsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            metrics = repository.get_agent_metrics(agent_id=command.agent_id)
        return [
            f"Agent: {metrics.agent_id}",
            f"Executions: total={metrics.total_executions} "
            f"succeeded={metrics.successful_executions} failed={metrics.failed_executions}",
            f"Success rate: {metrics.success_rate * 100:.1f}%",
            f"Execution time: avg={metrics.average_execution_ms:.0f}ms "
            f"last={metrics.last_execution_ms}ms",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        _apply_worker_overrides(settings, command)
        settings.validate_for_worker()
        coordinator_settings = settings.coordinator

        with _repository(settings) as repository:
            coordinator = DispatchCoordinator(
                ledger=repository,
                executor=_build_executor(settings),
                worker_id=coordinator_settings.worker_id,
                agent_ids=coordinator_settings.agent_ids or None,
                concurrency=coordinator_settings.concurrency,
                lease_seconds=coordinator_settings.lease_seconds,
                scan_interval_seconds=coordinator_settings.scan_interval_seconds,
                feed_poll_interval_seconds=coordinator_settings.feed_poll_interval_seconds,
                queue_maxsize=coordinator_settings.queue_maxsize,
                claim_max_attempts=coordinator_settings.claim_max_attempts,
                commit_max_attempts=coordinator_settings.commit_max_attempts,
                retry_base_seconds=coordinator_settings.retry_base_seconds,
                retry_max_seconds=coordinator_settings.retry_max_seconds,
                reconnect_base_seconds=coordinator_settings.reconnect_base_seconds,
                reconnect_max_seconds=coordinator_settings.reconnect_max_seconds,
                on_event=_log_attempt_event,
            )
            summary = coordinator.run_once() if command.once else coordinator.run_forever()

        return [
            "Worker summary: "
            f"notices={summary.notices} claimed={summary.claimed} "
            f"claim_lost={summary.claim_lost} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"settlement_rejected={summary.settlement_rejected} "
            f"abandoned={summary.abandoned} reclaimed={summary.reclaimed} "
            f"recovered={summary.recovered} dropped={summary.dropped}",
        ]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} agent={task.agent_id} status={task.status.value} "
        f"reward={format_amount(task.reward)} worker={task.worker_id or '-'} "
        f"epoch={task.claim_epoch}"
    )


def _vault_lines(status: VaultStatus) -> list[str]:
    return [
        f"  asset={status.asset} balance={format_amount(status.balance)} "
        f"active={'yes' if status.active else 'no'}",
        f"  daily_limit={format_amount(status.daily_limit)} "
        f"spent={format_amount(status.daily_spent)} "
        f"remaining={format_amount(status.remaining)} "
        f"resets_at={status.resets_at.isoformat()}",
    ]


def _apply_worker_overrides(settings: Settings, command: WorkerRunCommand) -> None:
    if command.executor is not None:
        settings.executor.kind = command.executor
    if command.command_template is not None:
        settings.executor.command_template = command.command_template
    if command.agent_ids:
        settings.coordinator.agent_ids = command.agent_ids
    if command.worker_id is not None:
        settings.coordinator.worker_id = command.worker_id
    if command.concurrency is not None:
        settings.coordinator.concurrency = command.concurrency


def _build_executor(settings: Settings) -> Executor:
    if settings.executor.kind == "command":
        return CommandExecutor(command_template=settings.executor.command_template)
    return EchoExecutor()


def _log_attempt_event(event: AttemptEvent) -> None:
    logger.error("Attempt event %s for task %s: %s", event.kind, event.task_id, event.details)


@contextmanager
def _repository(settings: Settings) -> Iterator[LedgerRepository]:
    settings.validate_for_ledger()
    repository = LedgerRepository(
        db_path=settings.db_path,
        admin_id=settings.admin_id,
        sqlite_busy_timeout_ms=settings.ledger.sqlite_busy_timeout_ms,
        default_fee_bps=settings.ledger.platform_fee_bps,
        max_fee_bps=settings.ledger.max_platform_fee_bps,
        min_daily_limit=settings.vault.min_daily_limit,
        max_daily_limit=settings.vault.max_daily_limit,
        limit_window=settings.vault.limit_window,
        max_lease_seconds=settings.ledger.max_lease_seconds,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
