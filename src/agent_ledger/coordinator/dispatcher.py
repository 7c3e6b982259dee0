"""Claim protocol, executor invocation and the pool of execution workers."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from agent_ledger.coordinator.backoff import full_jitter_delay
from agent_ledger.coordinator.detector import NoticeQueue, TaskDetector
from agent_ledger.coordinator.executor.base import (
    Executor,
    ExecutorContext,
    ExecutorResult,
    decode_payload,
)
from agent_ledger.coordinator.interfaces import CoordinatorLedger
from agent_ledger.coordinator.models import (
    AttemptEvent,
    CoordinatorRunSummary,
    ExecutionAttempt,
    NoticeSource,
    ReconcileStatus,
    TaskNotice,
)
from agent_ledger.coordinator.reconciler import ResultReconciler
from agent_ledger.ledger.errors import LedgerError, LedgerUnavailableError, TaskNotFoundError
from agent_ledger.ledger.models import ClaimToken, TaskStatus, TaskView
from agent_ledger.storage.common import utc_now

logger = logging.getLogger(__name__)
executor_logger = logging.getLogger(f"{__name__}.executor")

_QUEUE_POLL_SECONDS = 0.2


class DispatchCoordinator:
    """Consumes task notices, claims tasks and runs them under their lease.

    Every claimed task becomes an ``ExecutionAttempt`` owned by this process
    until the reconciler commits or abandons it. The executor runs in its own
    thread with a wall-clock budget equal to the remaining lease; overrunning
    it is a failure even if the executor returns later.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: CoordinatorLedger,
        executor: Executor,
        worker_id: str,
        agent_ids: Sequence[str] | None = None,
        concurrency: int = 4,
        lease_seconds: float = 300.0,
        scan_interval_seconds: float = 15.0,
        feed_poll_interval_seconds: float = 1.0,
        queue_maxsize: int = 256,
        claim_max_attempts: int = 3,
        commit_max_attempts: int = 5,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 30.0,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 60.0,
        on_event: Callable[[AttemptEvent], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.worker_id = worker_id
        self.agent_ids = tuple(agent_ids) if agent_ids is not None else None
        self.concurrency = max(1, concurrency)
        self.lease_seconds = lease_seconds
        self.claim_max_attempts = max(1, claim_max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self._on_event = on_event
        self._stop_event = threading.Event()

        self.notices = NoticeQueue(maxsize=queue_maxsize)
        self.detector = TaskDetector(
            ledger=ledger,
            notices=self.notices,
            agent_ids=self.agent_ids,
            stop_event=self._stop_event,
            scan_interval_seconds=scan_interval_seconds,
            feed_poll_interval_seconds=feed_poll_interval_seconds,
            reconnect_base_seconds=reconnect_base_seconds,
            reconnect_max_seconds=reconnect_max_seconds,
            clock=clock,
        )
        self.reconciler = ResultReconciler(
            ledger=ledger,
            max_attempts=commit_max_attempts,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            stop_event=self._stop_event,
            on_event=self._emit_event,
            rng=self._random,
        )

        self._attempts: dict[int, ExecutionAttempt] = {}
        self._lost_claims: dict[int, float] = {}
        self._lost_claims_limit = max(1, queue_maxsize)
        self._state_lock = threading.Lock()
        self._summary = CoordinatorRunSummary()
        self._threads: list[threading.Thread] = []

    # -- lifecycle -----------------------------------------------------------------

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def summary(self) -> CoordinatorRunSummary:
        with self._state_lock:
            return replace(self._summary)

    def active_attempts(self) -> list[ExecutionAttempt]:
        with self._state_lock:
            return list(self._attempts.values())

    def lost_claim_count(self) -> int:
        with self._state_lock:
            return len(self._lost_claims)

    def start(self) -> None:
        """Start detector streams and ``concurrency`` execution workers.

        Attempts held from a previous run are queued as recovery notices and
        executed by the same worker pool, so ``concurrency`` bounds them too.
        """

        self._stop_event.clear()
        self.detector.start()
        self._threads = [
            threading.Thread(
                target=self._queue_recovery,
                daemon=True,
                name="agent-ledger-recovery",
            ),
        ]
        self._threads.extend(
            threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"agent-ledger-exec-{index}",
            )
            for index in range(self.concurrency)
        )
        for thread in self._threads:
            thread.start()
        logger.info(
            "Coordinator %s started: concurrency=%d lease=%ss",
            self.worker_id,
            self.concurrency,
            self.lease_seconds,
        )

    def stop(self, *, timeout: float | None = 30.0) -> CoordinatorRunSummary:
        self._stop_event.set()
        self.detector.join(timeout=timeout)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Coordinator %s stopped", self.worker_id)
        return self.summary

    def run_forever(self) -> CoordinatorRunSummary:
        """Run until SIGINT/SIGTERM or ``stop()``."""

        with self._signal_handlers():
            self.start()
            while not self._stop_event.wait(timeout=0.5):
                pass
        return self.stop()

    def run_once(self) -> CoordinatorRunSummary:
        """Recover own attempts, run one catch-up scan and process it synchronously."""

        self.recover_attempts()
        try:
            scanned = self.detector.scan()
        except LedgerError as error:
            logger.warning("Catch-up scan failed: %s", error)
            return self.summary
        self._count(reclaimed=scanned.reclaimed)
        for notice in scanned.notices:
            if self._stop_event.is_set():
                break
            self._process_isolated(notice)
        return self.summary

    def request_stop(self) -> None:
        self._stop_event.set()

    # -- claim protocol ------------------------------------------------------------

    def process_notice(self, notice: TaskNotice) -> ReconcileStatus | None:
        """Claim and run the task behind ``notice``; ``None`` if nothing was claimed."""

        self._count(notices=1)
        if self._claim_cached(notice):
            return None

        task = self._lookup(notice)
        if task is None:
            return None
        if notice.source == NoticeSource.RECOVERY:
            return self._resume_held(task)
        if task.status != TaskStatus.PENDING:
            logger.debug("Task %s is %s, notice skipped", task.task_id, task.status.value)
            return None

        claim = self._claim_with_retries(task)
        if claim is None:
            return None

        self._count(claimed=1)
        attempt = ExecutionAttempt(
            task_id=task.task_id,
            agent_id=task.agent_id,
            requester=task.requester,
            payload=task.payload,
            claim=claim,
            started_at=self._clock(),
            lease_deadline=claim.lease_expires_at,
        )
        return self._run_attempt(attempt)

    def recover_attempts(self) -> int:
        """Re-run in-progress tasks this worker still holds an unexpired lease on."""

        recovered = 0
        for notice in self._held_notices():
            if self._stop_event.is_set():
                break
            try:
                if self.process_notice(notice) is not None:
                    recovered += 1
            except Exception:
                logger.exception("Recovered task %s processing failed", notice.task_id)
        return recovered

    def _held_notices(self) -> list[TaskNotice]:
        try:
            held = self.ledger.list_tasks(
                agent_ids=self.agent_ids,
                status=TaskStatus.IN_PROGRESS,
                worker_id=self.worker_id,
            )
        except LedgerError as error:
            logger.warning("Attempt recovery failed: %s", error)
            return []
        now = self._clock()
        return [
            TaskNotice(task_id=task.task_id, agent_id=task.agent_id, source=NoticeSource.RECOVERY)
            for task in held
            if task.lease_expires_at is not None and task.lease_expires_at > now
        ]

    def _lookup(self, notice: TaskNotice) -> TaskView | None:
        try:
            return self.ledger.get_task(task_id=notice.task_id)
        except TaskNotFoundError:
            logger.warning("Notice for unknown task %s dropped", notice.task_id)
        except LedgerUnavailableError as error:
            logger.info("Task %s lookup failed transiently, dropping notice: %s", notice.task_id, error)
        self._count(dropped=1)
        return None

    def _resume_held(self, task: TaskView) -> ReconcileStatus | None:
        now = self._clock()
        if (
            task.status != TaskStatus.IN_PROGRESS
            or task.worker_id != self.worker_id
            or task.lease_expires_at is None
            or task.lease_expires_at <= now
        ):
            logger.debug("Task %s is no longer held by %s", task.task_id, self.worker_id)
            return None
        attempt = _recovered_attempt(task, worker_id=self.worker_id, now=now)
        logger.info(
            "Recovering task %s under claim epoch %d",
            task.task_id,
            attempt.claim.claim_epoch,
        )
        return self._run_attempt(attempt)

    def _claim_cached(self, notice: TaskNotice) -> bool:
        with self._state_lock:
            if notice.task_id in self._attempts:
                return True
            if notice.source == NoticeSource.RECOVERY:
                return False
            if notice.source == NoticeSource.PUSH:
                self._lost_claims.pop(notice.task_id, None)
                return False
            expires = self._lost_claims.get(notice.task_id)
            if expires is None:
                return False
            if expires <= time.monotonic():
                del self._lost_claims[notice.task_id]
                return False
            return True

    def _claim_with_retries(self, task: TaskView) -> ClaimToken | None:
        for retry_number in range(1, self.claim_max_attempts + 1):
            try:
                claim = self.ledger.claim_task(
                    task_id=task.task_id,
                    worker_id=self.worker_id,
                    lease_seconds=self.lease_seconds,
                )
            except LedgerUnavailableError as error:
                if retry_number >= self.claim_max_attempts or self._stop_event.is_set():
                    logger.warning(
                        "Claim of task %s dropped after %d attempts: %s",
                        task.task_id,
                        retry_number,
                        error,
                    )
                    self._count(dropped=1)
                    return None
                delay = full_jitter_delay(
                    retry_number=retry_number,
                    base_seconds=self.retry_base_seconds,
                    max_seconds=self.retry_max_seconds,
                    rng=self._random,
                )
                self._stop_event.wait(timeout=delay)
                continue

            if claim is None:
                logger.debug("Task %s already claimed elsewhere", task.task_id)
                self._remember_lost_claim(task.task_id)
                self._count(claim_lost=1)
                return None
            return claim
        return None

    def _remember_lost_claim(self, task_id: int) -> None:
        now = time.monotonic()
        with self._state_lock:
            lost = self._lost_claims
            for expired in [key for key, expires in lost.items() if expires <= now]:
                del lost[expired]
            lost.pop(task_id, None)
            lost[task_id] = now + self.lease_seconds
            # Oldest entries expire first.
            while len(lost) > self._lost_claims_limit:
                del lost[next(iter(lost))]

    # -- execution -----------------------------------------------------------------

    def _run_attempt(self, attempt: ExecutionAttempt) -> ReconcileStatus:
        with self._state_lock:
            self._attempts[attempt.task_id] = attempt
        if attempt.recovered:
            self._count(recovered=1)
        try:
            started = time.monotonic()
            outcome, timed_out = self._execute(attempt)
            duration_ms = int((time.monotonic() - started) * 1000)
            if timed_out:
                self._count(timeouts=1)
            self._record_execution(attempt, success=outcome.success, duration_ms=duration_ms)

            status = self.reconciler.reconcile(attempt, outcome)
            if status == ReconcileStatus.COMMITTED:
                self._count(**({"succeeded": 1} if outcome.success else {"failed": 1}))
            elif status == ReconcileStatus.SETTLEMENT_REJECTED:
                self._count(settlement_rejected=1)
            return status
        finally:
            with self._state_lock:
                self._attempts.pop(attempt.task_id, None)

    def _execute(self, attempt: ExecutionAttempt) -> tuple[ExecutorResult, bool]:
        budget = (attempt.lease_deadline - self._clock()).total_seconds()
        if budget <= 0:
            return ExecutorResult(success=False, reason="lease_expired"), True

        context = ExecutorContext(
            task_id=attempt.task_id,
            agent_id=attempt.agent_id,
            requester=attempt.requester,
            deadline=attempt.lease_deadline,
            cancel_requested=self._stop_event.is_set,
            logger=executor_logger,
            clock=self._clock,
            raw_payload=attempt.payload,
        )
        payload = decode_payload(attempt.payload)
        holder: dict[str, object] = {}

        def _target() -> None:
            try:
                holder["result"] = self.executor.execute(payload, context)
            except Exception as error:  # noqa: BLE001
                holder["error"] = error

        thread = threading.Thread(
            target=_target,
            daemon=True,
            name=f"agent-ledger-task-{attempt.task_id}",
        )
        thread.start()
        thread.join(timeout=budget)
        if thread.is_alive():
            logger.warning(
                "Task %s exceeded its %.1fs lease budget; failing it",
                attempt.task_id,
                budget,
            )
            return ExecutorResult(success=False, reason="timeout"), True

        error = holder.get("error")
        if isinstance(error, Exception):
            logger.error(
                "Executor raised for task %s",
                attempt.task_id,
                exc_info=(type(error), error, error.__traceback__),
            )
            return (
                ExecutorResult(
                    success=False,
                    reason=f"executor_error:{type(error).__name__}: {error}",
                ),
                False,
            )
        result = holder.get("result")
        if not isinstance(result, ExecutorResult):
            return (
                ExecutorResult(success=False, reason="executor_error:invalid_result"),
                False,
            )
        return result, False

    def _record_execution(self, attempt: ExecutionAttempt, *, success: bool, duration_ms: int) -> None:
        try:
            self.ledger.record_execution(
                agent_id=attempt.agent_id,
                success=success,
                duration_ms=duration_ms,
            )
        except LedgerError as error:
            logger.warning("Execution metrics for task %s not recorded: %s", attempt.task_id, error)

    # -- worker pool ---------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            notice = self.notices.get(timeout=_QUEUE_POLL_SECONDS)
            if notice is None:
                continue
            self._process_isolated(notice)

    def _queue_recovery(self) -> None:
        try:
            for notice in self._held_notices():
                if not self.notices.put(notice, stop_event=self._stop_event):
                    break
        except Exception:
            logger.exception("Attempt recovery error")

    def _process_isolated(self, notice: TaskNotice) -> None:
        try:
            self.process_notice(notice)
        except Exception:
            logger.exception("Task %s processing failed", notice.task_id)

    def _emit_event(self, event: AttemptEvent) -> None:
        if event.kind == "attempt_abandoned":
            self._count(abandoned=1)
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Attempt event observer failed for task %s", event.task_id)

    def _count(self, **increments: int) -> None:
        with self._state_lock:
            for name, value in increments.items():
                setattr(self._summary, name, getattr(self._summary, name) + value)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Stop requested by %s", name)
            self._stop_event.set()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _recovered_attempt(task: TaskView, *, worker_id: str, now: datetime) -> ExecutionAttempt:
    lease_expires_at = task.lease_expires_at or now
    return ExecutionAttempt(
        task_id=task.task_id,
        agent_id=task.agent_id,
        requester=task.requester,
        payload=task.payload,
        claim=ClaimToken(
            task_id=task.task_id,
            worker_id=worker_id,
            claim_epoch=task.claim_epoch,
            lease_expires_at=lease_expires_at,
        ),
        started_at=now,
        lease_deadline=lease_expires_at,
        recovered=True,
    )
