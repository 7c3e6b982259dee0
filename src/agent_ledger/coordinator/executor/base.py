"""Executor interface for task work."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from agent_ledger.storage.common import utc_now


@dataclass(slots=True)
class ExecutorContext:
    """Per-attempt information handed to an executor.

    ``raw_payload`` is the payload text exactly as stored on the task; executors
    that forward the payload verbatim use it instead of re-encoding the decoded value.
    """

    task_id: int
    agent_id: str
    requester: str
    deadline: datetime
    cancel_requested: Callable[[], bool]
    logger: logging.Logger
    clock: Callable[[], datetime] = utc_now
    raw_payload: str | None = None

    def remaining_seconds(self, now: datetime | None = None) -> float:
        current = now or self.clock()
        return max(0.0, (self.deadline - current).total_seconds())


@dataclass(slots=True)
class ExecutorResult:
    """Outcome reported by an executor."""

    success: bool
    result: str = ""
    reason: str | None = None


class Executor(Protocol):
    """Protocol implemented by task executors."""

    def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
        """Run the task and report success with a result or failure with a reason."""


def decode_payload(raw: str) -> Any:
    """Return the payload decoded from JSON, or the raw text when it is not JSON."""

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw
