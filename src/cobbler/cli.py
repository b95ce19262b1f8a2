from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import click

from cobbler.backends import BackendExecutionError
from cobbler.config import DEFAULT_CONFIG_FILE, ensure_config, load_config
from cobbler.cycle import CycleRecord
from cobbler.errors import CobblerError
from cobbler.orchestrator import Operation, Orchestrator

config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_orchestrator(config_value: str, *, create: bool = True) -> Orchestrator:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if not create:
        return Orchestrator(load_config(config_path), repo_root)
    config, created = ensure_config(config_path)
    if created:
        click.echo(f"Created default {config_path.name}", err=True)
    return Orchestrator(config, repo_root)


def _dispatch(config_value: str, operation: Operation, **kwargs: Any) -> Any:
    try:
        return _load_orchestrator(config_value).dispatch(operation, **kwargs)
    except (CobblerError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_cycles(records: list[CycleRecord]) -> None:
    for record in records:
        done = sum(1 for outcome in record.outcomes.values() if outcome == "done")
        failed = sum(1 for outcome in record.outcomes.values() if outcome == "failed")
        click.echo(
            f"Cycle {record.index}: {record.status} "
            f"({len(record.proposed)} proposed, {done} done, {failed} failed)"
        )


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Cobbler generation-trail orchestrator."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    result = _dispatch(config_value, Operation.INIT)
    click.echo(f"Initialized cobbler in {result.repo_root}")
    click.echo(f"State: {result.state_dir}")
    if not result.tracker_created:
        click.echo("Task tracker already initialized.")


@cli.command("reset")
@config_option
def reset_command(config_value: str) -> None:
    """Reset every trail, archive task history and clear scratch files."""
    result = _dispatch(config_value, Operation.FULL_RESET)
    click.echo(f"Reset trails: {', '.join(result.trails) or 'none'}")
    if result.archived_tasks:
        click.echo(f"Task history archived to {result.archived_tasks}")


@cli.command("analyze")
@config_option
def analyze_command(config_value: str) -> None:
    report = _dispatch(config_value, Operation.ANALYZE)
    issues = report.issues()
    for issue in issues:
        click.echo(issue)
    if issues:
        raise click.ClickException(f"{len(issues)} consistency issue(s) found.")
    click.echo("No consistency issues found.")


@cli.command("tag")
@config_option
def tag_command(config_value: str) -> None:
    """Tag the main branch as a documentation release (v0.YYYYMMDD.N)."""
    result = _dispatch(config_value, Operation.TAG)
    click.echo(f"Tagged {result.name} at {result.commit[:12]}")


@cli.group("scaffold")
def scaffold_group() -> None:
    """Cobbler files inside a repository."""


@scaffold_group.command("pop")
@click.argument("target", required=False, default=".")
@config_option
def scaffold_pop(target: str, config_value: str) -> None:
    """Remove cobbler.toml and the .cobbler/ directories from TARGET."""
    try:
        result = _load_orchestrator(config_value, create=False).dispatch(
            Operation.SCAFFOLD_POP, target=target
        )
    except CobblerError as exc:
        raise click.ClickException(str(exc)) from exc
    for path in result.removed:
        click.echo(f"Removed {path}")
    if not result.removed:
        click.echo(f"Nothing to remove in {result.target}")


@cli.group("generator")
def generator_group() -> None:
    """Generation trail lifecycle."""


@generator_group.command("start")
@click.argument("name")
@config_option
def generator_start(name: str, config_value: str) -> None:
    trail = _dispatch(config_value, Operation.GENERATOR_START, name=name)
    click.echo(f"Started {trail.name} on {trail.branch}")
    click.echo(f"Worktree: {trail.worktree_path}")


@generator_group.command("run")
@click.argument("cycles", type=int, required=False, default=0)
@config_option
def generator_run(cycles: int, config_value: str) -> None:
    report = _dispatch(config_value, Operation.GENERATOR_RUN, cycles=cycles)
    _echo_cycles(report.cycles)
    click.echo(
        f"{report.trail.name}: {report.trail.cycles_completed} cycle(s) completed "
        f"(budget {report.trail.cycle_budget})"
    )


@generator_group.command("resume")
@click.option("--force", is_flag=True, default=False, help="Adopt the current HEAD.")
@config_option
def generator_resume(force: bool, config_value: str) -> None:
    report = _dispatch(config_value, Operation.GENERATOR_RESUME, force=force)
    click.echo(report.describe())
    _echo_cycles(report.cycles)
    click.echo(f"{report.trail.name}: {report.trail.cycles_completed} cycle(s) completed")


@generator_group.command("stop")
@click.argument("name", required=False)
@config_option
def generator_stop(name: str | None, config_value: str) -> None:
    trail = _dispatch(config_value, Operation.GENERATOR_STOP, name=name)
    click.echo(
        f"Stopped {trail.name}: merged into {trail.base_branch} at {trail.merge_commit[:10]}"
    )


@generator_group.command("list")
@config_option
def generator_list(config_value: str) -> None:
    try:
        orchestrator = _load_orchestrator(config_value)
        trails = orchestrator.dispatch(Operation.GENERATOR_LIST)
        active = orchestrator.trails.active()
    except CobblerError as exc:
        raise click.ClickException(str(exc)) from exc
    if not trails:
        click.echo("No trails.")
        return
    for trail in trails:
        marker = "*" if active is not None and active.id == trail.id else " "
        click.echo(
            f"{marker} {trail.name:<20} {trail.state:<12} "
            f"{trail.cycles_completed}/{trail.cycle_budget:<4} {trail.branch} {trail.created_at}"
        )


@generator_group.command("switch")
@click.argument("name")
@config_option
def generator_switch(name: str, config_value: str) -> None:
    trail = _dispatch(config_value, Operation.GENERATOR_SWITCH, name=name)
    click.echo(f"Switched to {trail.name} ({trail.worktree_path})")


@generator_group.command("reset")
@click.argument("name")
@config_option
def generator_reset(name: str, config_value: str) -> None:
    if _dispatch(config_value, Operation.GENERATOR_RESET, name=name):
        click.echo(f"Reset {name}")
    else:
        click.echo(f"Trail {name} not found; nothing to reset.")


@cli.group("cobbler")
def cobbler_group() -> None:
    """Single measure and stitch steps."""


@cobbler_group.command("measure")
@config_option
def cobbler_measure(config_value: str) -> None:
    tasks = _dispatch(config_value, Operation.COBBLER_MEASURE)
    if not tasks:
        click.echo("Measure proposed no tasks.")
    for task in tasks:
        deps = f" (after {', '.join(task.depends_on)})" if task.depends_on else ""
        click.echo(f"{task.id} {task.title}{deps}")


@cobbler_group.command("stitch")
@config_option
def cobbler_stitch(config_value: str) -> None:
    outcomes = _dispatch(config_value, Operation.COBBLER_STITCH)
    if not outcomes:
        click.echo("No ready tasks.")
    for task_id, outcome in outcomes.items():
        click.echo(f"{task_id} {outcome}")


@cobbler_group.command("reset")
@config_option
def cobbler_reset(config_value: str) -> None:
    if _dispatch(config_value, Operation.COBBLER_RESET):
        click.echo("Removed scratch directory.")
    else:
        click.echo("Scratch directory already clean.")


@cli.group("tracker")
def tracker_group() -> None:
    """Task tracker lifecycle."""


@tracker_group.command("init")
@config_option
def tracker_init(config_value: str) -> None:
    if _dispatch(config_value, Operation.TRACKER_INIT):
        click.echo("Initialized task tracker.")
    else:
        click.echo("Task tracker already initialized.")


@tracker_group.command("reset")
@config_option
def tracker_reset(config_value: str) -> None:
    archived = _dispatch(config_value, Operation.TRACKER_RESET)
    click.echo(f"Task history archived to {archived}" if archived else "Task tracker reset.")


@cli.group("prompt")
def prompt_group() -> None:
    """Render agent prompts without executing them."""


@prompt_group.command("measure")
@config_option
def prompt_measure(config_value: str) -> None:
    click.echo(_dispatch(config_value, Operation.PROMPT_MEASURE), nl=False)


@prompt_group.command("stitch")
@config_option
def prompt_stitch(config_value: str) -> None:
    click.echo(_dispatch(config_value, Operation.PROMPT_STITCH), nl=False)


@cli.group("stats")
def stats_group() -> None:
    """Line and token counts."""


@stats_group.command("loc")
@config_option
def stats_loc(config_value: str) -> None:
    report = _dispatch(config_value, Operation.STATS_LOC)
    click.echo(f"Production lines: {report.production_lines}")
    click.echo(f"Test lines: {report.test_lines}")
    click.echo(f"Documentation words: {report.doc_words}")


@stats_group.command("tokens")
@config_option
def stats_tokens(config_value: str) -> None:
    report = _dispatch(config_value, Operation.STATS_TOKENS)
    for path, tokens in sorted(report.files.items()):
        click.echo(f"{tokens:>8} {path}")
    click.echo(f"{report.total:>8} total (estimated)")
