"""CLI entrypoint for agent-ledger."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_ledger import __version__
from agent_ledger.config import EXECUTOR_KINDS
from agent_ledger.controllers import (
    AgentMetricsCommand,
    LedgerCliController,
    PlatformCommand,
    PlatformSetFeeCommand,
    PlatformWithdrawFeesCommand,
    TaskCancelCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    VaultActiveCommand,
    VaultCreateCommand,
    VaultDepositCommand,
    VaultLimitCommand,
    VaultStatusCommand,
    VaultWithdrawCommand,
    WorkerRunCommand,
)
from agent_ledger.ledger.errors import LedgerError
from agent_ledger.ledger.models import TaskStatus
from agent_ledger.storage.sqlmodel_models import NATIVE_ASSET

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LedgerCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
caller_option = click.option(
    "--caller",
    default=None,
    help="Acting principal. Defaults to AGENT_LEDGER_ADMIN_ID for admin operations.",
)
asset_option = click.option("--asset", default=NATIVE_ASSET, show_default=True, help="Asset id.")


@click.group()
@click.version_option(version=__version__, prog_name="agent-ledger")
def agent_ledger() -> None:
    """Task and fund lifecycle coordinator for autonomous agents.

    Amounts are decimal token strings, for example `0.5`.
    """


@agent_ledger.group()
def task() -> None:
    """Task lifecycle commands."""


@task.command("create")
@db_path_option
@click.option("--requester", required=True, help="Principal paying the reward.")
@click.option("--agent-id", required=True, help="Agent expected to perform the task.")
@click.option("--payload", required=True, help="Opaque task payload, JSON or text.")
@click.option("--reward", required=True, help="Reward held in escrow, in tokens.")
def task_create(
    db_path: Path | None,
    requester: str,
    agent_id: str,
    payload: str,
    reward: str,
) -> None:
    """Create a pending task with its reward in escrow."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                requester=requester,
                agent_id=agent_id,
                payload=payload,
                reward=reward,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option("--agent-id", "agent_ids", multiple=True, help="Agent filter. Can be repeated.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def task_list(
    db_path: Path | None,
    agent_ids: tuple[str, ...],
    status: str | None,
    limit: int,
) -> None:
    """List tasks in creation order."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, agent_ids=agent_ids, status=status, limit=limit),
        ),
    )


@task.command("inspect")
@db_path_option
@click.argument("task_id", type=int)
def task_inspect(db_path: Path | None, task_id: int) -> None:
    """Show task state and its transition history."""

    _run(lambda: CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@task.command("cancel")
@db_path_option
@click.argument("task_id", type=int)
@click.option("--caller", required=True, help="Requester of the task.")
def task_cancel(db_path: Path | None, task_id: int, caller: str) -> None:
    """Cancel a pending task and refund its reward."""

    _run(
        lambda: CONTROLLER.cancel_task(
            TaskCancelCommand(db_path=db_path, task_id=task_id, caller=caller),
        ),
    )


@task.command("reclaim")
@db_path_option
@click.argument("task_id", type=int)
def task_reclaim(db_path: Path | None, task_id: int) -> None:
    """Return an in-progress task with an expired lease to pending."""

    _run(lambda: CONTROLLER.reclaim_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@agent_ledger.group()
def vault() -> None:
    """Agent vault commands."""


@vault.command("create")
@db_path_option
@caller_option
@click.argument("agent_id")
@click.option("--daily-limit", required=True, help="Rolling 24h spending limit, in tokens.")
def vault_create(
    db_path: Path | None,
    caller: str | None,
    agent_id: str,
    daily_limit: str,
) -> None:
    """Create the vault of an agent (admin only)."""

    _run(
        lambda: CONTROLLER.create_vault(
            VaultCreateCommand(
                db_path=db_path,
                caller=caller,
                agent_id=agent_id,
                daily_limit=daily_limit,
            ),
        ),
    )


@vault.command("deposit")
@db_path_option
@click.argument("agent_id")
@click.option("--amount", required=True, help="Amount in tokens.")
@click.option("--depositor", default="anonymous", show_default=True)
@asset_option
def vault_deposit(
    db_path: Path | None,
    agent_id: str,
    amount: str,
    depositor: str,
    asset: str,
) -> None:
    """Fund an agent vault."""

    _run(
        lambda: CONTROLLER.deposit(
            VaultDepositCommand(
                db_path=db_path,
                agent_id=agent_id,
                amount=amount,
                depositor=depositor,
                asset=asset,
            ),
        ),
    )


@vault.command("withdraw")
@db_path_option
@click.option(
    "--caller",
    default=None,
    help="Acting principal. Defaults to the vault's agent.",
)
@click.argument("agent_id")
@click.option("--recipient", required=True)
@click.option("--amount", required=True, help="Amount in tokens.")
@asset_option
def vault_withdraw(  # noqa: PLR0913
    db_path: Path | None,
    caller: str | None,
    agent_id: str,
    recipient: str,
    amount: str,
    asset: str,
) -> None:
    """Withdraw from a vault within its rolling daily limit."""

    _run(
        lambda: CONTROLLER.withdraw(
            VaultWithdrawCommand(
                db_path=db_path,
                caller=caller,
                agent_id=agent_id,
                recipient=recipient,
                amount=amount,
                asset=asset,
            ),
        ),
    )


@vault.command("status")
@db_path_option
@click.argument("agent_id")
@asset_option
def vault_status(db_path: Path | None, agent_id: str, asset: str) -> None:
    """Show balance and the effective daily limit window."""

    _run(
        lambda: CONTROLLER.vault_status(
            VaultStatusCommand(db_path=db_path, agent_id=agent_id, asset=asset),
        ),
    )


@vault.command("limit")
@db_path_option
@caller_option
@click.argument("agent_id")
@click.option("--daily-limit", required=True, help="New daily limit, in tokens.")
def vault_limit(
    db_path: Path | None,
    caller: str | None,
    agent_id: str,
    daily_limit: str,
) -> None:
    """Change the daily limit of a vault (admin only)."""

    _run(
        lambda: CONTROLLER.update_limit(
            VaultLimitCommand(
                db_path=db_path,
                caller=caller,
                agent_id=agent_id,
                daily_limit=daily_limit,
            ),
        ),
    )


@vault.command("activate")
@db_path_option
@caller_option
@click.argument("agent_id")
def vault_activate(db_path: Path | None, caller: str | None, agent_id: str) -> None:
    """Reactivate a vault (admin only)."""

    _run(
        lambda: CONTROLLER.set_active(
            VaultActiveCommand(db_path=db_path, caller=caller, agent_id=agent_id, active=True),
        ),
    )


@vault.command("deactivate")
@db_path_option
@caller_option
@click.argument("agent_id")
def vault_deactivate(db_path: Path | None, caller: str | None, agent_id: str) -> None:
    """Deactivate a vault; all fund movements are refused (admin only)."""

    _run(
        lambda: CONTROLLER.set_active(
            VaultActiveCommand(db_path=db_path, caller=caller, agent_id=agent_id, active=False),
        ),
    )


@agent_ledger.group()
def platform() -> None:
    """Platform fee commands."""


@platform.command("fee")
@db_path_option
def platform_fee(db_path: Path | None) -> None:
    """Show the platform fee and accumulated fees."""

    _run(lambda: CONTROLLER.platform_fee(PlatformCommand(db_path=db_path)))


@platform.command("set-fee")
@db_path_option
@caller_option
@click.argument("fee_bps", type=click.IntRange(min=0))
def platform_set_fee(db_path: Path | None, caller: str | None, fee_bps: int) -> None:
    """Set the platform fee in basis points (admin only)."""

    _run(
        lambda: CONTROLLER.set_platform_fee(
            PlatformSetFeeCommand(db_path=db_path, caller=caller, fee_bps=fee_bps),
        ),
    )


@platform.command("withdraw-fees")
@db_path_option
@caller_option
@click.option("--recipient", required=True)
def platform_withdraw_fees(db_path: Path | None, caller: str | None, recipient: str) -> None:
    """Pay out accumulated platform fees (admin only)."""

    _run(
        lambda: CONTROLLER.withdraw_fees(
            PlatformWithdrawFeesCommand(db_path=db_path, caller=caller, recipient=recipient),
        ),
    )


@agent_ledger.group()
def agent() -> None:
    """Agent commands."""


@agent.command("metrics")
@db_path_option
@click.argument("agent_id")
def agent_metrics(db_path: Path | None, agent_id: str) -> None:
    """Show execution statistics of an agent."""

    _run(
        lambda: CONTROLLER.agent_metrics(AgentMetricsCommand(db_path=db_path, agent_id=agent_id)),
    )


@agent_ledger.group()
def worker() -> None:
    """Task coordinator commands."""


@worker.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one catch-up scan and exit, or run until SIGINT/SIGTERM.",
)
@click.option(
    "--executor",
    type=click.Choice(list(EXECUTOR_KINDS), case_sensitive=False),
    default=None,
    help="Executor kind. Defaults to AGENT_LEDGER_EXECUTOR.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Command template for the command executor. Supports {task_id}, {agent_id} "
        "and {requester}; the payload is passed on stdin."
    ),
)
@click.option("--agent-id", "agent_ids", multiple=True, help="Owned agent. Can be repeated.")
@click.option("--worker-id", default=None, help="Stable worker identity used for claims.")
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    executor: str | None,
    command_template: str | None,
    agent_ids: tuple[str, ...],
    worker_id: str | None,
    concurrency: int | None,
    log_level: str,
) -> None:
    """Detect, claim, execute and settle tasks."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    _run(
        lambda: CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                executor=executor.lower() if executor else None,
                command_template=command_template,
                agent_ids=agent_ids,
                worker_id=worker_id,
                concurrency=concurrency,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (LedgerError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_ledger()
