import sys
from typing import List, Optional

import click
import toml
from colorama import Fore, Style, init
from tabulate import tabulate

from careline.config import CarelineConfig, get_careline_config
from careline.engine import Engine, build_postgres_engine
from careline.errors import NotFoundError
from careline.models import Lane, StepStatus

RESET = Style.RESET_ALL

STATUS_COLORS = {
    StepStatus.PENDING: Fore.WHITE,
    StepStatus.QUEUED: Fore.CYAN,
    StepStatus.WAITING_CONDITION: Fore.YELLOW,
    StepStatus.COMPLETED: Fore.GREEN,
    StepStatus.FAILED: Fore.RED,
    StepStatus.SKIPPED: Fore.MAGENTA,
}


def _header(*names: str) -> List[str]:
    return [Fore.GREEN + Style.BRIGHT + name + RESET for name in names]


def open_engine(config: CarelineConfig) -> Engine:
    return build_postgres_engine(config)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    init(autoreset=True)
    ctx.ensure_object(dict)


def _config(ctx: click.Context) -> CarelineConfig:
    if "config" not in ctx.obj:
        ctx.obj["config"] = get_careline_config()
    return ctx.obj["config"]


@cli.command()
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Run the lane workers until interrupted."""
    from careline.worker.runner import run_from_env

    run_from_env(_config(ctx))


@cli.command()
@click.argument("workflow_id")
@click.pass_context
def steps(ctx: click.Context, workflow_id: str) -> None:
    """Show the steps of a workflow."""
    engine = open_engine(_config(ctx))
    try:
        view = engine.service.get_workflow(workflow_id)
    except NotFoundError:
        click.echo(f"{Fore.RED}ERROR!{RESET} Workflow `{workflow_id}` not found.")
        sys.exit(1)
    finally:
        engine.close()

    table_data: List[List[str]] = []
    for step in view.steps:
        color = STATUS_COLORS.get(step.status, "")
        last: Optional[str] = step.execution_logs[-1].message if step.execution_logs else ""
        table_data.append(
            [
                str(step.order),
                Fore.CYAN + step.name + RESET,
                step.type.value,
                color + step.status.value + RESET,
                str(len(step.dependencies)),
                last,
            ]
        )
    headers = _header("Order", "Step", "Type", "Status", "Deps", "Last Log")
    click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))
    workflow = view.workflow
    click.echo(f"\n{Fore.BLUE}Workflow: {Fore.WHITE}{workflow.name} [{workflow.status.value}]{RESET}")


@cli.command()
@click.option("--dead", is_flag=True, help="List dead-lettered jobs.")
@click.pass_context
def lanes(ctx: click.Context, dead: bool) -> None:
    """Show queue depth per lane."""
    config = _config(ctx)
    engine = open_engine(config)
    try:
        table_data = []
        dead_letters = []
        for lane in Lane:
            stats = engine.broker.stats(lane)
            policy = engine.lanes[lane]
            table_data.append(
                [
                    Fore.CYAN + lane.value + RESET,
                    stats.waiting,
                    stats.delayed,
                    stats.reserved,
                    (Fore.RED if stats.dead else "") + str(stats.dead) + RESET,
                    policy.concurrency,
                    policy.attempts,
                ]
            )
            if dead:
                dead_letters.extend(engine.broker.dead_letters(lane))
    finally:
        engine.close()

    headers = _header("Lane", "Waiting", "Delayed", "Reserved", "Dead", "Workers", "Attempts")
    click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))
    if dead:
        rows = [[d.lane.value, d.job.step_id, d.job.patient_id, d.failed_at.isoformat(), d.error] for d in dead_letters]
        click.echo(tabulate(rows, headers=_header("Lane", "Step", "Patient", "Failed At", "Error"), tablefmt="grid"))


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration."""
    config = _config(ctx)
    data = config.model_dump(mode="json", exclude_none=True)
    if "database_url" in data:
        data["database_url"] = "***"
    click.echo(toml.dumps({"tool": {"careline": data}}))


if __name__ == "__main__":
    cli()
