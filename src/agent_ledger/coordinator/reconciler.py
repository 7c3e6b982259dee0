"""Turn a finished execution attempt into exactly one terminal ledger commit."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable

from agent_ledger.coordinator.backoff import full_jitter_delay
from agent_ledger.coordinator.executor.base import ExecutorResult
from agent_ledger.coordinator.interfaces import TaskLedger
from agent_ledger.coordinator.models import (
    AttemptEvent,
    AttemptOutcome,
    ExecutionAttempt,
    ReconcileStatus,
)
from agent_ledger.ledger.errors import LedgerUnavailableError, VaultRejectedError
from agent_ledger.ledger.models import ClaimToken, TaskView

logger = logging.getLogger(__name__)


class ResultReconciler:
    """Commit attempt outcomes, retrying transient ledger errors with jittered backoff.

    Precondition failures mean another actor already moved the task; they are
    dropped. A settlement refused by the vault guard is converted into a
    failure commit so the requester is refunded. When retries run out the
    attempt is abandoned and the task waits for lease recovery.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: TaskLedger,
        max_attempts: int = 5,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 30.0,
        stop_event: threading.Event | None = None,
        on_event: Callable[[AttemptEvent], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.ledger = ledger
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._stop_event = stop_event or threading.Event()
        self._on_event = on_event or (lambda _event: None)
        self._random = rng or random.Random()  # noqa: S311

    def reconcile(self, attempt: ExecutionAttempt, outcome: ExecutorResult) -> ReconcileStatus:
        attempt.outcome = AttemptOutcome.SUCCESS if outcome.success else AttemptOutcome.FAILURE
        claim = attempt.claim
        if outcome.success:
            try:
                committed = self._with_retries(
                    attempt,
                    lambda: self.ledger.commit_success(claim=claim, result=outcome.result),
                )
            except VaultRejectedError as error:
                logger.warning(
                    "Settlement for task %s rejected by vault %s: %s",
                    attempt.task_id,
                    error.agent_id,
                    error.reason.value,
                )
                return self._commit_rejected_settlement(attempt, claim, error)
            return self._finish(attempt, committed, kind="success")

        reason = outcome.reason or "executor_failed"
        committed = self._with_retries(
            attempt,
            lambda: self.ledger.commit_failure(claim=claim, reason=reason),
        )
        return self._finish(attempt, committed, kind="failure")

    def _commit_rejected_settlement(
        self,
        attempt: ExecutionAttempt,
        claim: ClaimToken,
        error: VaultRejectedError,
    ) -> ReconcileStatus:
        reason = f"settlement_rejected:{error.reason.value}"
        committed = self._with_retries(
            attempt,
            lambda: self.ledger.commit_failure(claim=claim, reason=reason),
        )
        status = self._finish(attempt, committed, kind="failure")
        if status == ReconcileStatus.COMMITTED:
            return ReconcileStatus.SETTLEMENT_REJECTED
        return status

    def _with_retries(
        self,
        attempt: ExecutionAttempt,
        commit: Callable[[], TaskView | None],
    ) -> TaskView | None | ReconcileStatus:
        last_error: LedgerUnavailableError | None = None
        for retry_number in range(1, self.max_attempts + 1):
            try:
                return commit()
            except LedgerUnavailableError as error:
                last_error = error
                attempt.retry_count += 1
                if retry_number >= self.max_attempts or self._stop_event.is_set():
                    break
                delay = full_jitter_delay(
                    retry_number=retry_number,
                    base_seconds=self.retry_base_seconds,
                    max_seconds=self.retry_max_seconds,
                    rng=self._random,
                )
                logger.info(
                    "Commit for task %s failed transiently (%s); retry %d in %.2fs",
                    attempt.task_id,
                    error,
                    retry_number,
                    delay,
                )
                if self._stop_event.wait(timeout=delay):
                    break

        logger.error(
            "Abandoning commit for task %s after %d attempts: %s",
            attempt.task_id,
            attempt.retry_count,
            last_error,
        )
        self._on_event(
            AttemptEvent(
                kind="attempt_abandoned",
                task_id=attempt.task_id,
                details={
                    "worker_id": attempt.claim.worker_id,
                    "claim_epoch": attempt.claim.claim_epoch,
                    "retry_count": attempt.retry_count,
                    "error": str(last_error),
                },
            ),
        )
        return ReconcileStatus.ABANDONED

    def _finish(
        self,
        attempt: ExecutionAttempt,
        committed: TaskView | None | ReconcileStatus,
        *,
        kind: str,
    ) -> ReconcileStatus:
        if committed is ReconcileStatus.ABANDONED:
            return ReconcileStatus.ABANDONED
        if committed is None:
            logger.debug(
                "Commit %s for task %s dropped: claim epoch %d no longer holds the task",
                kind,
                attempt.task_id,
                attempt.claim.claim_epoch,
            )
            return ReconcileStatus.PRECONDITION_FAILED
        logger.info("Task %s committed as %s", attempt.task_id, kind)
        return ReconcileStatus.COMMITTED
