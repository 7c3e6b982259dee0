"""Task executor implementations."""

from agent_ledger.coordinator.executor.base import (
    Executor,
    ExecutorContext,
    ExecutorResult,
    decode_payload,
)
from agent_ledger.coordinator.executor.command import CommandExecutor, CommandExecutorError
from agent_ledger.coordinator.executor.echo import EchoExecutor

__all__ = [
    "CommandExecutor",
    "CommandExecutorError",
    "EchoExecutor",
    "Executor",
    "ExecutorContext",
    "ExecutorResult",
    "decode_payload",
]
