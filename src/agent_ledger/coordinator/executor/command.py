"""Subprocess-based executor running a shell command template per task."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import tempfile
import time
from typing import IO, Any

from agent_ledger.coordinator.executor.base import ExecutorContext, ExecutorResult

_STDERR_TAIL_CHARS = 500


class CommandExecutorError(RuntimeError):
    """Command could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandExecutor:
    """Run ``command_template`` with the raw payload on stdin; stdout is the result.

    Supported placeholders: ``{task_id}``, ``{agent_id}``, ``{requester}``.
    A nonzero exit code, the lease deadline or a stop request end the attempt
    as a failure.
    """

    def __init__(self, *, command_template: str, poll_interval_seconds: float = 0.1) -> None:
        self.command_template = command_template
        self.poll_interval_seconds = poll_interval_seconds

    def execute(self, payload: Any, context: ExecutorContext) -> ExecutorResult:
        run_args = _build_run_args(command_template=self.command_template, context=context)
        env = os.environ.copy()
        env["AGENT_LEDGER_TASK_ID"] = str(context.task_id)
        env["AGENT_LEDGER_AGENT_ID"] = context.agent_id
        env["AGENT_LEDGER_REQUESTER"] = context.requester

        if context.raw_payload is not None:
            stdin_text = context.raw_payload
        elif isinstance(payload, str):
            stdin_text = payload
        else:
            stdin_text = _dump_payload(payload)
        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdin_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
            ):
                stdin_handle.write(stdin_text)
                stdin_handle.flush()
                stdin_handle.seek(0)
                exit_code, timed_out = self._run(
                    run_args=run_args,
                    env=env,
                    context=context,
                    stdin_handle=stdin_handle,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
                stdout_handle.seek(0)
                stderr_handle.seek(0)
                stdout = stdout_handle.read()
                stderr = stderr_handle.read()
        except FileNotFoundError as error:
            raise CommandExecutorError(
                f"Executor command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise CommandExecutorError(
                f"Executor command failed to start: {error}",
                transient=True,
            ) from error

        if timed_out:
            return ExecutorResult(success=False, reason="timeout")
        if exit_code != 0:
            tail = stderr.strip()[-_STDERR_TAIL_CHARS:]
            reason = f"exit_code={exit_code}"
            if tail:
                reason = f"{reason}: {tail}"
            return ExecutorResult(success=False, reason=reason)
        return ExecutorResult(success=True, result=stdout.rstrip("\n"))

    def _run(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        context: ExecutorContext,
        stdin_handle: IO[str],
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> tuple[int, bool]:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            env=env,
            stdin=stdin_handle,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        deadline = time.monotonic() + context.remaining_seconds()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False
            if time.monotonic() >= deadline:
                context.logger.warning("Task %s command exceeded its lease", context.task_id)
                _terminate_process(process)
                return 124, True
            if context.cancel_requested():
                context.logger.info("Task %s command stopped on shutdown", context.task_id)
                _terminate_process(process)
                return 143, True
            time.sleep(self.poll_interval_seconds)


def _build_run_args(*, command_template: str, context: ExecutorContext) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise CommandExecutorError("Executor command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            task_id=context.task_id,
            agent_id=shlex.quote(context.agent_id),
            requester=shlex.quote(context.requester),
        )
    except (KeyError, IndexError) as error:
        raise CommandExecutorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise CommandExecutorError(
            "Executor command template rendered empty command.",
            transient=False,
        )
    return argv


def _dump_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
