from __future__ import annotations

import random
import threading
from collections.abc import Sequence

import allure
import pytest

from agent_ledger.coordinator.backoff import ReconnectBackoff, full_jitter_delay
from agent_ledger.coordinator.detector import NoticeQueue, TaskDetector
from agent_ledger.coordinator.models import NoticeSource, TaskNotice
from agent_ledger.ledger.errors import LedgerUnavailableError
from agent_ledger.ledger.models import LedgerNotification
from agent_ledger.ledger.repository import LedgerRepository
from tests.conftest import TOKEN, FakeClock

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Task Detection"),
]


class _FlakyFeed:
    """Ledger wrapper whose change feed fails a fixed number of times."""

    def __init__(self, ledger: LedgerRepository, *, failures: int) -> None:
        self._ledger = ledger
        self.failures = failures

    def __getattr__(self, name: str) -> object:
        return getattr(self._ledger, name)

    def changes_since(
        self,
        *,
        after_event_id: int,
        agent_ids: Sequence[str] | None = None,
        limit: int = 100,
    ) -> list[LedgerNotification]:
        if self.failures > 0:
            self.failures -= 1
            raise LedgerUnavailableError("feed connection reset")
        return self._ledger.changes_since(
            after_event_id=after_event_id,
            agent_ids=agent_ids,
            limit=limit,
        )


def _detector(
    ledger: object,
    clock: FakeClock,
    *,
    agent_ids: Sequence[str] | None = None,
    maxsize: int = 16,
    stop_event: threading.Event | None = None,
) -> TaskDetector:
    return TaskDetector(
        ledger=ledger,  # type: ignore[arg-type]
        notices=NoticeQueue(maxsize=maxsize),
        agent_ids=agent_ids,
        stop_event=stop_event or threading.Event(),
        scan_interval_seconds=0.05,
        feed_poll_interval_seconds=0.05,
        reconnect_base_seconds=0.01,
        reconnect_max_seconds=0.05,
        clock=clock,
    )


def _notice(task_id: int, source: NoticeSource = NoticeSource.PULL) -> TaskNotice:
    return TaskNotice(task_id=task_id, agent_id="agent-a", source=source)


def test_full_jitter_delay_stays_within_capped_exponential_bound() -> None:
    rng = random.Random(7)

    delays = [
        full_jitter_delay(retry_number=n, base_seconds=0.5, max_seconds=4.0, rng=rng)
        for n in range(1, 10)
    ]

    bounds = [min(4.0, 0.5 * 2 ** (n - 1)) for n in range(1, 10)]
    assert all(0.0 <= delay <= bound for delay, bound in zip(delays, bounds, strict=True))


def test_reconnect_backoff_doubles_until_cap_and_resets() -> None:
    backoff = ReconnectBackoff(base_seconds=1.0, max_seconds=5.0)

    assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert backoff.failures == 5
    backoff.reset()
    assert backoff.failures == 0
    assert backoff.next_delay() == 1.0


def test_notice_queue_skips_ids_already_waiting() -> None:
    notices = NoticeQueue(maxsize=4)
    stop = threading.Event()

    assert notices.put(_notice(1), stop_event=stop)
    assert not notices.put(_notice(1, NoticeSource.PUSH), stop_event=stop)
    assert notices.qsize() == 1

    taken = notices.get(timeout=0.1)
    assert taken == _notice(1)
    assert notices.put(_notice(1), stop_event=stop)


def test_notice_queue_blocks_when_full_until_stop() -> None:
    notices = NoticeQueue(maxsize=1)
    stop = threading.Event()
    assert notices.put(_notice(1), stop_event=stop)

    timer = threading.Timer(0.2, stop.set)
    timer.start()
    accepted = notices.put(_notice(2), stop_event=stop)
    timer.join()

    assert not accepted
    assert notices.qsize() == 1
    assert notices.get(timeout=0.1) == _notice(1)
    assert notices.get(timeout=0.05) is None
    stop.clear()
    assert notices.put(_notice(2), stop_event=stop)


def test_first_feed_poll_only_initialises_cursor(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    ledger.create_task(requester="alice", agent_id="agent-a", payload="old", reward=TOKEN)
    detector = _detector(ledger, clock)

    assert detector.poll_feed_once() == []
    assert detector.cursor == ledger.latest_event_id()

    task = ledger.create_task(requester="alice", agent_id="agent-a", payload="new", reward=TOKEN)
    assert detector.poll_feed_once() == [
        TaskNotice(task_id=task.task_id, agent_id="agent-a", source=NoticeSource.PUSH),
    ]
    assert detector.poll_feed_once() == []


def test_feed_reports_only_transitions_back_to_pending(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    detector = _detector(ledger, clock, agent_ids=["agent-a"])
    detector.poll_feed_once()
    ledger.create_vault(caller="admin", agent_id="agent-a", daily_limit=TOKEN)
    own = ledger.create_task(requester="alice", agent_id="agent-a", payload="x", reward=TOKEN)
    ledger.create_task(requester="alice", agent_id="agent-b", payload="y", reward=TOKEN)
    ledger.claim_task(task_id=own.task_id, worker_id="worker-a", lease_seconds=10)

    first = detector.poll_feed_once()

    assert [notice.task_id for notice in first] == [own.task_id]
    clock.advance(seconds=10)
    assert ledger.reclaim_expired_task(task_id=own.task_id)
    second = detector.poll_feed_once()
    assert [(notice.task_id, notice.source) for notice in second] == [
        (own.task_id, NoticeSource.PUSH),
    ]


def test_feed_failure_keeps_cursor_and_loses_nothing(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    flaky = _FlakyFeed(ledger, failures=2)
    detector = _detector(flaky, clock)
    detector.poll_feed_once()
    cursor = detector.cursor
    task = ledger.create_task(requester="alice", agent_id="agent-a", payload="x", reward=TOKEN)

    for _ in range(2):
        with pytest.raises(LedgerUnavailableError):
            detector.poll_feed_once()
        assert detector.cursor == cursor

    assert [notice.task_id for notice in detector.poll_feed_once()] == [task.task_id]


def test_scan_reclaims_expired_leases_of_owned_agents_only(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    own = ledger.create_task(requester="alice", agent_id="agent-a", payload="x", reward=TOKEN)
    other = ledger.create_task(requester="alice", agent_id="agent-b", payload="y", reward=TOKEN)
    waiting = ledger.create_task(requester="alice", agent_id="agent-a", payload="z", reward=TOKEN)
    ledger.claim_task(task_id=own.task_id, worker_id="crashed", lease_seconds=30)
    ledger.claim_task(task_id=other.task_id, worker_id="crashed", lease_seconds=30)
    clock.advance(seconds=31)
    detector = _detector(ledger, clock, agent_ids=["agent-a"])

    scanned = detector.scan()

    assert scanned.reclaimed == 1
    assert [notice.task_id for notice in scanned.notices] == [own.task_id, waiting.task_id]
    assert all(notice.source == NoticeSource.PULL for notice in scanned.notices)
    assert ledger.get_task(task_id=other.task_id).worker_id == "crashed"


def test_background_streams_deliver_notices(
    ledger: LedgerRepository,
    clock: FakeClock,
) -> None:
    stop = threading.Event()
    detector = _detector(_FlakyFeed(ledger, failures=1), clock, stop_event=stop)
    detector.start()
    try:
        task = ledger.create_task(requester="alice", agent_id="agent-a", payload="x", reward=TOKEN)
        notice = detector.notices.get(timeout=5.0)
    finally:
        stop.set()
        detector.join(timeout=5.0)

    assert notice is not None
    assert notice.task_id == task.task_id
