"""Push and pull discovery of claimable tasks."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from agent_ledger.coordinator.backoff import ReconnectBackoff
from agent_ledger.coordinator.interfaces import CoordinatorLedger
from agent_ledger.coordinator.models import NoticeSource, TaskNotice
from agent_ledger.ledger.errors import LedgerError, LedgerUnavailableError
from agent_ledger.ledger.models import EntityType, TaskStatus
from agent_ledger.storage.common import utc_now

logger = logging.getLogger(__name__)

_PUT_WAIT_SECONDS = 0.1


class NoticeQueue:
    """Bounded notice queue that blocks producers while full.

    Task ids already waiting in the queue are not enqueued twice; once a notice
    is taken by a consumer the same task may be queued again.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: queue.Queue[TaskNotice] = queue.Queue(maxsize=maxsize)
        self._queued_ids: set[int] = set()
        self._lock = threading.Lock()

    def put(self, notice: TaskNotice, *, stop_event: threading.Event) -> bool:
        """Enqueue ``notice``; ``False`` if it was a duplicate or a stop was requested."""

        with self._lock:
            if notice.task_id in self._queued_ids:
                return False
            self._queued_ids.add(notice.task_id)

        while not stop_event.is_set():
            try:
                self._queue.put(notice, timeout=_PUT_WAIT_SECONDS)
            except queue.Full:
                continue
            return True

        with self._lock:
            self._queued_ids.discard(notice.task_id)
        return False

    def get(self, *, timeout: float) -> TaskNotice | None:
        try:
            notice = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            self._queued_ids.discard(notice.task_id)
        return notice

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass(slots=True)
class ScanResult:
    reclaimed: int = 0
    notices: list[TaskNotice] = field(default_factory=list)


class TaskDetector:
    """Feeds task notices from the ledger change feed and periodic scans.

    The push stream tails ``changes_since`` from the feed head observed at
    start. The pull stream first returns expired leases of owned agents to
    pending and then lists every pending task of owned agents, so a missed or
    broken push stream only delays work by one scan interval.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: CoordinatorLedger,
        notices: NoticeQueue,
        agent_ids: Sequence[str] | None,
        stop_event: threading.Event,
        scan_interval_seconds: float = 15.0,
        feed_poll_interval_seconds: float = 1.0,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 60.0,
        feed_batch_size: int = 100,
        scan_limit: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.notices = notices
        self.agent_ids = tuple(agent_ids) if agent_ids is not None else None
        self.scan_interval_seconds = scan_interval_seconds
        self.feed_poll_interval_seconds = feed_poll_interval_seconds
        self.feed_batch_size = feed_batch_size
        self.scan_limit = scan_limit
        self._stop_event = stop_event
        self._clock = clock
        self._backoff = ReconnectBackoff(
            base_seconds=reconnect_base_seconds,
            max_seconds=reconnect_max_seconds,
        )
        self._cursor: int | None = None
        self._last_batch_full = False
        self._threads: list[threading.Thread] = []

    @property
    def cursor(self) -> int | None:
        return self._cursor

    def start(self) -> None:
        try:
            self._cursor = self.ledger.latest_event_id()
        except LedgerUnavailableError as error:
            logger.warning("Change feed head unavailable at start: %s", error)
        self._threads = [
            threading.Thread(target=self._push_loop, daemon=True, name="agent-ledger-push"),
            threading.Thread(target=self._pull_loop, daemon=True, name="agent-ledger-pull"),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Task detector started for agents=%s", self.agent_ids or "all")

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def poll_feed_once(self) -> list[TaskNotice]:
        """Read the next feed batch and return notices for tasks that became pending."""

        if self._cursor is None:
            self._cursor = self.ledger.latest_event_id()
            logger.debug("Change feed cursor initialised at event %d", self._cursor)
            return []

        changes = self.ledger.changes_since(
            after_event_id=self._cursor,
            agent_ids=self.agent_ids,
            limit=self.feed_batch_size,
        )
        self._last_batch_full = len(changes) >= self.feed_batch_size
        result: list[TaskNotice] = []
        for change in changes:
            self._cursor = max(self._cursor, change.event_id)
            if change.entity_type != EntityType.TASK:
                continue
            if change.new_status != TaskStatus.PENDING.value or change.agent_id is None:
                continue
            result.append(
                TaskNotice(
                    task_id=int(change.entity_id),
                    agent_id=change.agent_id,
                    source=NoticeSource.PUSH,
                ),
            )
        return result

    def scan(self) -> ScanResult:
        """Reclaim expired leases of owned agents, then list their pending tasks."""

        result = ScanResult()
        expired = self.ledger.list_tasks(
            agent_ids=self.agent_ids,
            status=TaskStatus.IN_PROGRESS,
            lease_expired_before=self._clock(),
            limit=self.scan_limit,
        )
        for task in expired:
            if self.ledger.reclaim_expired_task(task_id=task.task_id):
                result.reclaimed += 1
                logger.warning(
                    "Reclaimed task %s: lease of worker %s expired",
                    task.task_id,
                    task.worker_id,
                )

        pending = self.ledger.list_tasks(
            agent_ids=self.agent_ids,
            status=TaskStatus.PENDING,
            limit=self.scan_limit,
        )
        result.notices = [
            TaskNotice(task_id=task.task_id, agent_id=task.agent_id, source=NoticeSource.PULL)
            for task in pending
        ]
        return result

    def _push_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                batch = self.poll_feed_once()
            except LedgerUnavailableError as error:
                delay = self._backoff.next_delay()
                logger.warning(
                    "Change feed unavailable (%s); reconnecting in %.1fs (failure %d)",
                    error,
                    delay,
                    self._backoff.failures,
                )
                self._stop_event.wait(timeout=delay)
                continue
            except Exception:
                logger.exception("Change feed reader error")
                self._stop_event.wait(timeout=self._backoff.next_delay())
                continue

            self._backoff.reset()
            for notice in batch:
                self.notices.put(notice, stop_event=self._stop_event)
            if not self._last_batch_full:
                self._stop_event.wait(timeout=self.feed_poll_interval_seconds)

    def _pull_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                scanned = self.scan()
            except LedgerError as error:
                logger.warning("Catch-up scan failed: %s", error)
            except Exception:
                logger.exception("Catch-up scan error")
            else:
                for notice in scanned.notices:
                    if not self.notices.put(notice, stop_event=self._stop_event):
                        if self._stop_event.is_set():
                            break
                logger.debug(
                    "Catch-up scan: %d reclaimed, %d pending",
                    scanned.reclaimed,
                    len(scanned.notices),
                )
            self._stop_event.wait(timeout=self.scan_interval_seconds)
