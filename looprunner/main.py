"""
looprunner: drive an agent CLI to completion.

Commands: looprunner run | parallel | workflow run/validate | resume | list | purge
"""

import sys
from pathlib import Path
from typing import List, Optional

import click
import yaml
from rich.console import Console

from . import __version__
from .config import Config, ParallelConfig
from .errors import ConfigurationError, OrchestratorError
from .logger import setup_logger
from .models import Task
from .orchestrator import ExitCode, Orchestrator, exit_code_for, exit_code_for_error
from .rendering import (
    ProgressPrinter,
    render_loop_result,
    render_parallel_result,
    render_snapshots,
    render_validation,
    render_workflow_result,
)
from .workflow.runner import WorkflowResult
from .workflow.scheduler import DagScheduler

console = Console()
BANNER = (
    f"[bold #7FA6D9]looprunner[/bold #7FA6D9] "
    f"[dim]v{__version__} · iterative agent orchestration[/dim]"
)


def _load_config(project_dir: str, verbose: bool) -> Config:
    config = Config.load(project_dir)
    if verbose:
        config.verbose = True
    setup_logger("looprunner", verbose=config.verbose, log_file=config.log_file,
                 state_dir=config.state_path)
    return config


def _build(config: Config) -> Orchestrator:
    orchestrator = Orchestrator(config)
    ProgressPrinter(console, verbose=config.verbose).attach(orchestrator.events)
    return orchestrator


def _fail(error: Exception):
    console.print(f"[red]Error: {error}[/red]")
    sys.exit(int(exit_code_for_error(error)))


def _load_tasks_file(path: str, orchestrator: Orchestrator) -> List[Task]:
    """Tasks file: a YAML list of prompts or of mappings with ``prompt`` and overrides."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read tasks file {path}: {e}")
    if isinstance(data, dict):
        data = data.get("tasks") or []
    if not isinstance(data, list):
        raise ConfigurationError(f"{path}: expected a list of tasks")

    tasks = []
    for i, entry in enumerate(data):
        if isinstance(entry, str):
            tasks.append(orchestrator.new_task(entry))
            continue
        if not isinstance(entry, dict) or not entry.get("prompt"):
            raise ConfigurationError(f"{path}: task #{i + 1} needs a prompt")
        budget = entry.get("budget-usd", entry.get("budget_usd"))
        tasks.append(orchestrator.new_task(
            str(entry["prompt"]),
            model=entry.get("model"),
            max_iterations=entry.get("max-iterations", entry.get("max_iterations")),
            budget_usd=float(budget) if budget is not None else None,
            name=entry.get("name"),
        ))
    return tasks


@click.group()
@click.version_option(__version__, prog_name="looprunner")
def cli():
    """looprunner: run an agent in a loop until the task is done."""


@cli.command()
@click.argument("prompt", nargs=-1, required=True)
@click.option("--model", "-m", default=None, help="Model alias or id")
@click.option("--max-iterations", "-n", type=int, default=None, help="Iteration cap")
@click.option("--budget", "-b", type=float, default=None, help="Task budget in USD")
@click.option("--name", default=None, help="Task name")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(prompt, model, max_iterations, budget, name, project_dir, verbose):
    """Run one task until it completes or a limit is hit."""
    console.print(BANNER)
    try:
        config = _load_config(project_dir, verbose)
        orchestrator = _build(config)
        task = orchestrator.new_task(" ".join(prompt), model=model, max_iterations=max_iterations,
                                     budget_usd=budget, name=name)
        result = orchestrator.run(task)
    except OrchestratorError as e:
        _fail(e)
        return
    render_loop_result(console, task, result)
    sys.exit(int(exit_code_for(result)))


@cli.command()
@click.argument("prompts", nargs=-1)
@click.option("--tasks-file", "-f", type=click.Path(exists=True, dir_okay=False), default=None,
              help="YAML list of tasks")
@click.option("--workers", "-w", type=int, default=None, help="Concurrent workers")
@click.option("--budget", "-b", type=float, default=None, help="Shared budget in USD")
@click.option("--fail-fast", is_flag=True, default=None, help="Stop dispatching after a failure")
@click.option("--isolate", is_flag=True, default=None, help="One workspace copy per task")
@click.option("--model", "-m", default=None, help="Model alias or id")
@click.option("--max-iterations", "-n", type=int, default=None, help="Per-task iteration cap")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def parallel(prompts, tasks_file, workers, budget, fail_fast, isolate, model, max_iterations,
             project_dir, verbose):
    """Run independent tasks concurrently."""
    console.print(BANNER)
    try:
        config = _load_config(project_dir, verbose)
        orchestrator = _build(config)
        tasks = [orchestrator.new_task(p, model=model, max_iterations=max_iterations)
                 for p in prompts]
        if tasks_file:
            tasks.extend(_load_tasks_file(tasks_file, orchestrator))
        if not tasks:
            raise ConfigurationError("No tasks given; pass prompts or --tasks-file")

        base = config.parallel
        parallel_config = ParallelConfig(
            worker_count=workers if workers is not None else base.worker_count,
            global_budget_usd=budget if budget is not None else base.global_budget_usd,
            fail_fast=base.fail_fast if fail_fast is None else fail_fast,
            isolate_workspaces=base.isolate_workspaces if isolate is None else isolate,
        )
        result = orchestrator.parallel(tasks, parallel_config)
    except OrchestratorError as e:
        _fail(e)
        return
    render_parallel_result(console, tasks, result)
    sys.exit(int(exit_code_for(result)))


@cli.group()
def workflow():
    """Run or validate a multi-step workflow."""


@workflow.command("run")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def workflow_run(file, project_dir, verbose):
    """Execute a workflow file in dependency order."""
    console.print(BANNER)
    try:
        config = _load_config(project_dir, verbose)
        result = _build(config).workflow_run(Path(file))
    except OrchestratorError as e:
        _fail(e)
        return
    render_workflow_result(console, result)
    sys.exit(int(exit_code_for(result)))


@workflow.command("validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def workflow_validate(file):
    """Check a workflow file and show its execution groups."""
    try:
        definition = Orchestrator.load_workflow(Path(file))
    except ConfigurationError as e:
        _fail(e)
        return
    result = DagScheduler.validate(definition)
    render_validation(console, definition, result)
    sys.exit(int(exit_code_for(result)))


@cli.command()
@click.argument("identifier")
@click.option("--from-step", default=None, help="Restart a workflow from this step")
@click.option("--max-iterations", "-n", type=int, default=None, help="Raise a task's iteration cap")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def resume(identifier, from_step, max_iterations, project_dir, verbose):
    """Resume a task or workflow by id or unique id prefix."""
    console.print(BANNER)
    try:
        config = _load_config(project_dir, verbose)
        orchestrator = _build(config)
        result = orchestrator.resume(identifier, from_step=from_step, max_iterations=max_iterations)
    except OrchestratorError as e:
        _fail(e)
        return

    if isinstance(result, WorkflowResult):
        render_workflow_result(console, result)
    else:
        snapshot = orchestrator.store.load_task(result.task_id)
        render_loop_result(console, Task(prompt=snapshot.prompt, id=snapshot.id, name=snapshot.name),
                           result)
    sys.exit(int(exit_code_for(result)))


@cli.command("list")
@click.option("--history", "history", is_flag=True, help="Show finished runs instead")
@click.option("--limit", type=int, default=10, help="History entries to show")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def list_cmd(history, limit, project_dir):
    """List resumable tasks and workflows."""
    try:
        config = _load_config(project_dir, verbose=False)
        orchestrator = Orchestrator(config)
        if history:
            render_snapshots(console, orchestrator.list_history(limit), "History")
        else:
            render_snapshots(console, orchestrator.list_resumable(), "Resumable")
    except OrchestratorError as e:
        _fail(e)


@cli.command()
@click.option("--days", type=int, default=None, help="Retention in days (default from config)")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def purge(days, project_dir):
    """Delete finished snapshots older than the retention period."""
    try:
        config = _load_config(project_dir, verbose=False)
        removed = Orchestrator(config).purge(days)
    except OrchestratorError as e:
        _fail(e)
        return
    console.print(f"  [dim]Removed {len(removed)} snapshot(s).[/dim]")
    sys.exit(int(ExitCode.OK))


if __name__ == "__main__":
    cli()
