"""Deterministic demo executor."""

from __future__ import annotations

import json
from typing import Any

from agent_ledger.coordinator.executor.base import ExecutorContext, ExecutorResult


class EchoExecutor:
    """Succeed with the payload echoed back as the result."""

    def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
        context.logger.debug("Echoing payload of task %s", context.task_id)
        if context.raw_payload is not None:
            return ExecutorResult(success=True, result=context.raw_payload)
        if isinstance(payload, str):
            return ExecutorResult(success=True, result=payload)
        return ExecutorResult(
            success=True,
            result=json.dumps(payload, ensure_ascii=False, sort_keys=True),
        )
