from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_ledger.main import agent_ledger

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Ledger Operations"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_LEDGER_DB_PATH",
        "AGENT_LEDGER_ADMIN_ID",
        "AGENT_LEDGER_AGENT_IDS",
        "AGENT_LEDGER_EXECUTOR",
        "AGENT_LEDGER_EXECUTOR_COMMAND",
        "AGENT_LEDGER_PLATFORM_FEE_BPS",
    ):
        monkeypatch.delenv(name, raising=False)


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> tuple[int, str]:
    group, command, *rest = args
    result = runner.invoke(agent_ledger, [group, command, "--db-path", str(db_path), *rest])
    return result.exit_code, result.output


def test_vault_withdrawals_follow_rolling_daily_limit(tmp_path: Path) -> None:
    db_path = tmp_path / "cli-vault.db"
    runner = CliRunner()

    code, output = _invoke(runner, db_path, "vault", "create", "agent-a", "--daily-limit", "1")
    assert code == 0, output
    assert "Vault created: agent-a" in output
    code, output = _invoke(runner, db_path, "vault", "deposit", "agent-a", "--amount", "5")
    assert code == 0, output
    assert "balance=5 " in output

    for amount in ("0.5", "0.4"):
        code, output = _invoke(
            runner,
            db_path,
            "vault",
            "withdraw",
            "agent-a",
            "--recipient",
            "bob",
            "--amount",
            amount,
        )
        assert code == 0, output

    code, output = _invoke(
        runner,
        db_path,
        "vault",
        "withdraw",
        "agent-a",
        "--recipient",
        "bob",
        "--amount",
        "0.2",
    )
    assert code != 0
    assert "daily_limit_exceeded" in output

    code, output = _invoke(runner, db_path, "vault", "status", "agent-a")
    assert code == 0, output
    assert "balance=4.1 " in output
    assert "spent=0.9 remaining=0.1 " in output


def test_admin_operations_require_admin_caller(tmp_path: Path) -> None:
    db_path = tmp_path / "cli-admin.db"
    runner = CliRunner()

    code, _ = _invoke(
        runner,
        db_path,
        "vault",
        "create",
        "agent-a",
        "--daily-limit",
        "1",
        "--caller",
        "mallory",
    )
    assert code != 0

    code, output = _invoke(runner, db_path, "platform", "set-fee", "1500")
    assert code != 0
    assert "1000" in output

    code, output = _invoke(runner, db_path, "platform", "set-fee", "100")
    assert code == 0, output
    code, output = _invoke(runner, db_path, "platform", "fee")
    assert code == 0, output
    assert "Platform fee: 100 bps (1.00%)" in output


def test_task_lifecycle_through_worker_once(tmp_path: Path) -> None:
    db_path = tmp_path / "cli-tasks.db"
    runner = CliRunner()
    _invoke(runner, db_path, "vault", "create", "agent-b", "--daily-limit", "100")

    code, output = _invoke(
        runner,
        db_path,
        "task",
        "create",
        "--requester",
        "alice",
        "--agent-id",
        "agent-b",
        "--payload",
        '{"prompt": "summarize"}',
        "--reward",
        "0.5",
    )
    assert code == 0, output
    match = re.search(r"task_id=(\d+)", output)
    assert match is not None
    task_id = match.group(1)
    assert "status=pending" in output

    code, output = _invoke(runner, db_path, "task", "cancel", task_id, "--caller", "mallory")
    assert code != 0

    code, output = _invoke(runner, db_path, "worker", "run", "--once", "--worker-id", "w1")
    assert code == 0, output
    assert "claimed=1" in output
    assert "succeeded=1" in output

    code, output = _invoke(runner, db_path, "task", "list", "--status", "completed")
    assert code == 0, output
    assert "Tasks: 1" in output
    assert f"{task_id} agent=agent-b status=completed" in output

    code, output = _invoke(runner, db_path, "task", "inspect", task_id)
    assert code == 0, output
    assert "Status: completed" in output
    assert "Paid: 0.4875 fee=0.0125" in output
    assert "claimed" in output

    code, output = _invoke(runner, db_path, "agent", "metrics", "agent-b")
    assert code == 0, output
    assert "total=1 succeeded=1 failed=0" in output

    code, output = _invoke(runner, db_path, "platform", "withdraw-fees", "--recipient", "treasury")
    assert code == 0, output
    assert "Platform fees withdrawn: 0.0125 to treasury" in output


def test_cancel_pending_task_by_requester(tmp_path: Path) -> None:
    db_path = tmp_path / "cli-cancel.db"
    runner = CliRunner()
    code, output = _invoke(
        runner,
        db_path,
        "task",
        "create",
        "--requester",
        "alice",
        "--agent-id",
        "agent-a",
        "--payload",
        "do it",
        "--reward",
        "1",
    )
    assert code == 0, output

    code, output = _invoke(runner, db_path, "task", "cancel", "1", "--caller", "alice")
    assert code == 0, output
    assert "Task cancelled: 1" in output

    code, output = _invoke(runner, db_path, "task", "cancel", "1", "--caller", "alice")
    assert code == 0, output
    assert "no longer pending" in output
