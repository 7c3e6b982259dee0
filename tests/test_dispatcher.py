from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any

import allure

from agent_ledger.coordinator.dispatcher import DispatchCoordinator
from agent_ledger.coordinator.executor.base import ExecutorContext, ExecutorResult
from agent_ledger.coordinator.executor.echo import EchoExecutor
from agent_ledger.coordinator.models import (
    AttemptEvent,
    NoticeSource,
    ReconcileStatus,
    TaskNotice,
)
from agent_ledger.ledger.errors import LedgerUnavailableError
from agent_ledger.ledger.models import ClaimToken, EscrowStatus, TaskStatus, TaskView
from agent_ledger.ledger.repository import LedgerRepository
from tests.conftest import TOKEN, FakeClock

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Dispatch"),
]


class _RaisingExecutor:
    def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
        raise RuntimeError("model crashed")


class _BlockingExecutor:
    """Blocks until released; used to overrun the lease budget."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
        self.release.wait(timeout=10)
        return ExecutorResult(success=True, result="too late")


class _LosingLedger(LedgerRepository):
    """Ledger whose claims always lose the race."""

    claim_calls = 0

    def claim_task(
        self,
        *,
        task_id: int,
        worker_id: str,
        lease_seconds: float,
    ) -> ClaimToken | None:
        self.claim_calls += 1
        return None


class _UnreachableCommitLedger(LedgerRepository):
    """Ledger that accepts claims but cannot be reached for commits."""

    def commit_success(self, *, claim: ClaimToken, result: str) -> TaskView | None:
        raise LedgerUnavailableError("ledger connection lost")


def _coordinator(
    ledger: LedgerRepository,
    clock: FakeClock,
    *,
    worker_id: str = "worker-a",
    executor: object | None = None,
    **overrides: Any,
) -> DispatchCoordinator:
    options: dict[str, Any] = {
        "lease_seconds": 300.0,
        "scan_interval_seconds": 0.05,
        "feed_poll_interval_seconds": 0.05,
        "retry_base_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    options.update(overrides)
    return DispatchCoordinator(
        ledger=ledger,
        executor=executor or EchoExecutor(),  # type: ignore[arg-type]
        worker_id=worker_id,
        clock=clock,
        **options,
    )


def _pull(task: TaskView) -> TaskNotice:
    return TaskNotice(task_id=task.task_id, agent_id=task.agent_id, source=NoticeSource.PULL)


def _task(ledger: LedgerRepository, *, agent_id: str = "agent-a", reward: int = TOKEN) -> TaskView:
    return ledger.create_task(
        requester="alice",
        agent_id=agent_id,
        payload='{"prompt": "summarize"}',
        reward=reward,
    )


def test_winning_coordinator_settles_reward_and_loser_does_nothing(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    task = _task(ledger, reward=100 * TOKEN)
    first = _coordinator(ledger, clock, worker_id="worker-a")
    second = _coordinator(ledger, clock, worker_id="worker-b")

    assert first.process_notice(_pull(task)) == ReconcileStatus.COMMITTED
    assert second.process_notice(_pull(task)) is None

    done = ledger.get_task(task_id=task.task_id)
    assert done.status == TaskStatus.COMPLETED
    assert done.worker_id == "worker-a"
    assert done.result == '{"prompt": "summarize"}'
    assert ledger.get_vault_status(agent_id="agent-a").balance == 100 * TOKEN - 2_500_000
    assert first.summary.succeeded == 1
    assert second.summary.claimed == 0
    assert ledger.get_agent_metrics(agent_id="agent-a").successful_executions == 1


def test_racing_coordinators_execute_task_once(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    task = _task(ledger, reward=10 * TOKEN)
    coordinators = [
        _coordinator(ledger, clock, worker_id=f"worker-{index}") for index in range(4)
    ]
    barrier = threading.Barrier(len(coordinators))
    statuses: list[ReconcileStatus | None] = []
    lock = threading.Lock()

    def _run(coordinator: DispatchCoordinator) -> None:
        barrier.wait(timeout=5)
        status = coordinator.process_notice(_pull(task))
        with lock:
            statuses.append(status)

    threads = [threading.Thread(target=_run, args=(c,)) for c in coordinators]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert statuses.count(ReconcileStatus.COMMITTED) == 1
    assert statuses.count(None) == len(coordinators) - 1
    assert sum(c.summary.claimed for c in coordinators) == 1
    assert ledger.get_vault_status(agent_id="agent-a").balance == 9_750_000
    assert ledger.get_agent_metrics(agent_id="agent-a").total_executions == 1


def test_executor_exception_fails_task_and_refunds(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    task = _task(ledger)
    coordinator = _coordinator(ledger, clock, executor=_RaisingExecutor())

    status = coordinator.process_notice(_pull(task))

    failed = ledger.get_task(task_id=task.task_id)
    assert status == ReconcileStatus.COMMITTED
    assert failed.status == TaskStatus.FAILED
    assert failed.escrow_status == EscrowStatus.REFUNDED
    assert failed.failure_reason == "executor_error:RuntimeError: model crashed"
    assert coordinator.summary.failed == 1
    assert ledger.get_agent_metrics(agent_id="agent-a").failed_executions == 1


def test_executor_overrunning_lease_is_failed_as_timeout(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    executor = _BlockingExecutor()
    task = _task(ledger)
    coordinator = _coordinator(ledger, clock, executor=executor, lease_seconds=0.3)

    try:
        status = coordinator.process_notice(_pull(task))
    finally:
        executor.release.set()

    failed = ledger.get_task(task_id=task.task_id)
    assert status == ReconcileStatus.COMMITTED
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_reason == "timeout"
    assert coordinator.summary.timeouts == 1
    assert coordinator.summary.failed == 1


def test_rejected_settlement_fails_task_with_typed_reason(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=TOKEN)
    task = _task(ledger, reward=10 * TOKEN)
    coordinator = _coordinator(ledger, clock)

    status = coordinator.process_notice(_pull(task))

    failed = ledger.get_task(task_id=task.task_id)
    assert status == ReconcileStatus.SETTLEMENT_REJECTED
    assert failed.status == TaskStatus.FAILED
    assert failed.escrow_status == EscrowStatus.REFUNDED
    assert failed.failure_reason == "settlement_rejected:daily_limit_exceeded"
    assert ledger.get_vault_status(agent_id="agent-a").balance == 0
    assert coordinator.summary.settlement_rejected == 1


def test_restarted_coordinator_recovers_its_held_attempts(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    held = _task(ledger)
    foreign = _task(ledger)
    ledger.claim_task(task_id=held.task_id, worker_id="worker-a", lease_seconds=300)
    ledger.claim_task(task_id=foreign.task_id, worker_id="worker-b", lease_seconds=300)
    restarted = _coordinator(ledger, clock, worker_id="worker-a")

    assert restarted.recover_attempts() == 1

    assert ledger.get_task(task_id=held.task_id).status == TaskStatus.COMPLETED
    assert ledger.get_task(task_id=foreign.task_id).status == TaskStatus.IN_PROGRESS
    assert restarted.summary.recovered == 1
    assert restarted.summary.succeeded == 1


def test_run_once_reclaims_expired_leases_and_serves_owned_agents(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    stalled = _task(ledger)
    fresh = _task(ledger)
    other = _task(ledger, agent_id="agent-b")
    ledger.claim_task(task_id=stalled.task_id, worker_id="crashed-worker", lease_seconds=60)
    clock.advance(seconds=61)
    coordinator = _coordinator(ledger, clock, agent_ids=["agent-a"])

    summary = coordinator.run_once()

    assert summary.reclaimed == 1
    assert summary.succeeded == 2
    recovered = ledger.get_task(task_id=stalled.task_id)
    assert recovered.status == TaskStatus.COMPLETED
    assert recovered.claim_epoch == 2
    assert recovered.reclaim_count == 1
    assert ledger.get_task(task_id=fresh.task_id).status == TaskStatus.COMPLETED
    assert ledger.get_task(task_id=other.task_id).status == TaskStatus.PENDING


def test_lost_claim_is_cached_for_pull_notices_but_not_push(
    tmp_path: Path,
    clock: FakeClock,
) -> None:
    ledger = _LosingLedger(tmp_path / "losing.db", clock=clock)
    ledger.init_schema()
    try:
        task = _task(ledger)
        coordinator = _coordinator(ledger, clock)

        assert coordinator.process_notice(_pull(task)) is None
        assert coordinator.process_notice(_pull(task)) is None
        assert ledger.claim_calls == 1
        push = TaskNotice(task_id=task.task_id, agent_id="agent-a", source=NoticeSource.PUSH)
        assert coordinator.process_notice(push) is None
        assert ledger.claim_calls == 2
        assert coordinator.summary.claim_lost == 2
        assert coordinator.summary.notices == 3
    finally:
        ledger.close()


def test_unreachable_ledger_abandons_attempt_for_lease_recovery(
    tmp_path: Path,
    clock: FakeClock,
) -> None:
    ledger = _UnreachableCommitLedger(tmp_path / "offline.db", clock=clock)
    ledger.init_schema()
    events: list[AttemptEvent] = []
    try:
        task = _task(ledger)
        coordinator = _coordinator(
            ledger,
            clock,
            commit_max_attempts=2,
            on_event=events.append,
        )

        status = coordinator.process_notice(_pull(task))

        assert status == ReconcileStatus.ABANDONED
        assert [event.kind for event in events] == ["attempt_abandoned"]
        assert coordinator.summary.abandoned == 1
        assert coordinator.active_attempts() == []
        stuck = ledger.get_task(task_id=task.task_id)
        assert stuck.status == TaskStatus.IN_PROGRESS
        assert stuck.escrow_status == EscrowStatus.HELD
    finally:
        ledger.close()


def test_started_coordinator_processes_new_tasks_until_stopped(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    coordinator = _coordinator(ledger, clock, concurrency=2)
    coordinator.start()
    try:
        task = _task(ledger)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if ledger.get_task(task_id=task.task_id).status == TaskStatus.COMPLETED:
                break
            time.sleep(0.05)
    finally:
        summary = coordinator.stop(timeout=5)

    assert ledger.get_task(task_id=task.task_id).status == TaskStatus.COMPLETED
    assert summary.succeeded == 1
    assert coordinator.stop_requested


def test_lost_claims_on_finished_tasks_do_not_accumulate(
    tmp_path: Path,
    clock: FakeClock,
) -> None:
    db_path = tmp_path / "shared.db"
    losing = _LosingLedger(db_path, clock=clock)
    losing.init_schema()
    shared = LedgerRepository(db_path, clock=clock)
    try:
        shared.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
        winner = _coordinator(shared, clock, worker_id="worker-a")
        loser = _coordinator(losing, clock, worker_id="worker-b", lease_seconds=1.0)
        tasks = [_task(shared) for _ in range(12)]

        for task in tasks:
            assert loser.process_notice(_pull(task)) is None
        assert loser.lost_claim_count() == len(tasks)
        for task in tasks:
            assert winner.process_notice(_pull(task)) == ReconcileStatus.COMMITTED

        time.sleep(1.1)
        assert loser.process_notice(_pull(_task(shared))) is None

        assert loser.lost_claim_count() == 1
        assert loser.summary.claim_lost == len(tasks) + 1
    finally:
        shared.close()
        losing.close()


def test_lost_claim_cache_is_capped_by_queue_size(
    tmp_path: Path,
    clock: FakeClock,
) -> None:
    ledger = _LosingLedger(tmp_path / "capped.db", clock=clock)
    ledger.init_schema()
    try:
        coordinator = _coordinator(ledger, clock, queue_maxsize=5)
        for _ in range(12):
            assert coordinator.process_notice(_pull(_task(ledger))) is None

        assert coordinator.lost_claim_count() == 5
        assert coordinator.summary.claim_lost == 12
    finally:
        ledger.close()


def test_stored_payload_text_is_settled_as_result_unchanged(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    quoted = ledger.create_task(
        requester="alice",
        agent_id="agent-a",
        payload='"quoted text"',
        reward=TOKEN,
    )
    exponent = ledger.create_task(
        requester="alice",
        agent_id="agent-a",
        payload='{"n": 1e2, "b": 1, "a": 2}',
        reward=TOKEN,
    )
    coordinator = _coordinator(ledger, clock)

    for task in (quoted, exponent):
        assert coordinator.process_notice(_pull(task)) == ReconcileStatus.COMMITTED

    assert ledger.get_task(task_id=quoted.task_id).result == '"quoted text"'
    assert ledger.get_task(task_id=exponent.task_id).result == '{"n": 1e2, "b": 1, "a": 2}'


def test_recovery_notice_resumes_only_attempts_still_held(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    held = _task(ledger)
    pending = _task(ledger)
    ledger.claim_task(task_id=held.task_id, worker_id="worker-a", lease_seconds=300)
    coordinator = _coordinator(ledger, clock, worker_id="worker-a")

    def _recovery(task: TaskView) -> TaskNotice:
        return TaskNotice(task_id=task.task_id, agent_id="agent-a", source=NoticeSource.RECOVERY)

    assert coordinator.process_notice(_recovery(pending)) is None
    assert ledger.get_task(task_id=pending.task_id).status == TaskStatus.PENDING

    assert coordinator.process_notice(_recovery(held)) == ReconcileStatus.COMMITTED
    assert coordinator.process_notice(_recovery(held)) is None
    assert coordinator.summary.recovered == 1


def test_started_coordinator_recovers_held_attempts_within_worker_pool(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=100 * TOKEN)
    held = [_task(ledger) for _ in range(3)]
    for task in held:
        ledger.claim_task(task_id=task.task_id, worker_id="worker-a", lease_seconds=300)
    running: list[int] = []
    peak: list[int] = [0]
    lock = threading.Lock()

    class _CountingExecutor:
        def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
            with lock:
                running.append(context.task_id)
                peak[0] = max(peak[0], len(running))
            time.sleep(0.05)
            with lock:
                running.remove(context.task_id)
            return ExecutorResult(success=True, result="done")

    coordinator = _coordinator(
        ledger,
        clock,
        worker_id="worker-a",
        executor=_CountingExecutor(),
        concurrency=1,
    )
    coordinator.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            statuses = {ledger.get_task(task_id=task.task_id).status for task in held}
            if statuses == {TaskStatus.COMPLETED}:
                break
            time.sleep(0.05)
    finally:
        summary = coordinator.stop(timeout=5)

    assert summary.recovered == 3
    assert summary.succeeded == 3
    assert peak[0] == 1
