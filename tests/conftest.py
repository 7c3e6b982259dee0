"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_ledger.ledger.amounts import UNITS_PER_TOKEN
from agent_ledger.ledger.repository import LedgerRepository

TOKEN = UNITS_PER_TOKEN


class FakeClock:
    """Controllable UTC clock shared by the ledger and coordinator under test."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture()
def ledger(tmp_path: Path, clock: FakeClock) -> Iterator[LedgerRepository]:
    repository = LedgerRepository(tmp_path / "ledger.db", clock=clock)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
