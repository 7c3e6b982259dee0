from __future__ import annotations

import logging
import shlex
import sys
from datetime import timedelta

import allure
import pytest

from agent_ledger.coordinator.executor import (
    CommandExecutor,
    CommandExecutorError,
    EchoExecutor,
    ExecutorContext,
    decode_payload,
)
from agent_ledger.storage.common import utc_now

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Executors"),
]

PYTHON = shlex.quote(sys.executable)


def _context(
    *,
    seconds: float = 30.0,
    cancel: bool = False,
    raw_payload: str | None = None,
) -> ExecutorContext:
    return ExecutorContext(
        task_id=12,
        agent_id="agent-a",
        requester="alice",
        deadline=utc_now() + timedelta(seconds=seconds),
        cancel_requested=lambda: cancel,
        logger=logging.getLogger("tests.executor"),
        raw_payload=raw_payload,
    )


def test_decode_payload_falls_back_to_raw_text() -> None:
    assert decode_payload('{"prompt": "hi", "n": 2}') == {"prompt": "hi", "n": 2}
    assert decode_payload("plain words") == "plain words"


def test_echo_executor_returns_text_and_canonical_json() -> None:
    executor = EchoExecutor()

    assert executor.execute("hello", _context()).result == "hello"
    echoed = executor.execute({"b": 1, "a": [1, 2]}, _context())
    assert echoed.success
    assert echoed.result == '{"a": [1, 2], "b": 1}'


def test_command_executor_pipes_payload_and_renders_placeholders() -> None:
    executor = CommandExecutor(
        command_template=(
            f'{PYTHON} -c "import os, sys; '
            "print(sys.argv[1], sys.argv[2], os.environ['AGENT_LEDGER_REQUESTER'], "
            'sys.stdin.read().upper())" {task_id} {agent_id}'
        ),
    )

    result = executor.execute({"prompt": "go"}, _context())

    assert result.success
    assert result.result == '12 agent-a alice {"PROMPT": "GO"}'


def test_command_executor_forwards_stored_payload_text_unchanged() -> None:
    executor = CommandExecutor(
        command_template=f'{PYTHON} -c "import sys; sys.stdout.write(sys.stdin.read())"',
    )

    for raw in ('"quoted text"', '{"n": 1e2, "b": 1, "a": 2}'):
        result = executor.execute(decode_payload(raw), _context(raw_payload=raw))

        assert result.success
        assert result.result == raw


def test_echo_executor_prefers_stored_payload_text() -> None:
    raw = '{"n": 1e2, "b": 1}'

    result = EchoExecutor().execute(decode_payload(raw), _context(raw_payload=raw))

    assert result.result == raw


def test_command_executor_reports_exit_code_and_stderr_tail() -> None:
    executor = CommandExecutor(
        command_template=(
            f"{PYTHON} -c \"import sys; sys.stderr.write('quota exhausted'); sys.exit(3)\""
        ),
    )

    result = executor.execute("payload", _context())

    assert not result.success
    assert result.reason == "exit_code=3: quota exhausted"


def test_command_executor_stops_process_past_deadline() -> None:
    executor = CommandExecutor(
        command_template=f'{PYTHON} -c "import time; time.sleep(30)"',
        poll_interval_seconds=0.02,
    )

    result = executor.execute("payload", _context(seconds=0.3))

    assert not result.success
    assert result.reason == "timeout"


def test_command_executor_stops_process_on_shutdown() -> None:
    executor = CommandExecutor(
        command_template=f'{PYTHON} -c "import time; time.sleep(30)"',
        poll_interval_seconds=0.02,
    )

    result = executor.execute("payload", _context(cancel=True))

    assert not result.success
    assert result.reason == "timeout"


def test_command_executor_rejects_missing_binary_as_permanent() -> None:
    executor = CommandExecutor(command_template="agent-ledger-no-such-binary-xyz --flag")

    with pytest.raises(CommandExecutorError) as excinfo:
        executor.execute("payload", _context())

    assert not excinfo.value.transient
    assert "not found" in str(excinfo.value)


def test_command_executor_rejects_unknown_placeholder() -> None:
    executor = CommandExecutor(command_template="echo {prompt_file}")

    with pytest.raises(CommandExecutorError, match="placeholder"):
        executor.execute("payload", _context())
