"""CLI commands for creating task records and reporting stage outcomes."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer
import yaml

from .errors import ConcurrentModificationError, LifecycleError
from .lifecycle.iterations import IterationManager
from .lifecycle.machine import EDGES, allowed_events
from .orchestrator import DEFAULT_MAX_REVIEW_ROUNDS, Orchestrator
from .records.schema import TaskRecord
from .records.store import record_to_document
from .tools.vcs import GitError
from .utils.slug import derive_task_id

APP_HELP = "Track AI-assisted development tasks through planning, implementation and review."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "lifecycle": {
        "max_review_rounds": DEFAULT_MAX_REVIEW_ROUNDS,
    },
    "git": {
        "create_branches": True,
        "base_ref": "",
    },
    "paths": {
        "data": "data",
        "tasks": "data/tasks",
        "config": DEFAULT_CONFIG_NAME,
    },
    "logging": {
        "level": "INFO",
    },
}

EXIT_FAILURE = 1
EXIT_CONFLICT = 2

app = typer.Typer(help=APP_HELP)


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=EXIT_FAILURE) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=EXIT_FAILURE)

    return data


def _apply_logging_config(config: Dict[str, Any]) -> None:
    """Honour ``logging.level`` from the config unless ``--verbose`` already set a level."""
    package_logger = logging.getLogger("flowstage")
    if package_logger.level != logging.NOTSET:
        return
    logging_cfg = config.get("logging") or {}
    level_name = str(logging_cfg.get("level") or "").strip().upper()
    if not level_name:
        return
    level = logging.getLevelName(level_name)
    if isinstance(level, int):
        package_logger.setLevel(level)
    else:
        typer.echo(f"Warning: unknown logging level '{level_name}' in config; ignoring.")


def _load_orchestrator(config: str) -> Orchestrator:
    """Build an orchestrator from the config file at ``config``."""
    config_path = Path(config)
    config_data = load_config(config_path)
    _apply_logging_config(config_data)
    try:
        return Orchestrator.from_config(config_data, config_path=config_path)
    except GitError as error:
        typer.echo(f"Failed to open repository for branch creation: {error}")
        typer.echo("Set git.create_branches to false to track tasks without git.")
        raise typer.Exit(code=EXIT_FAILURE)
    except LifecycleError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=EXIT_FAILURE)


def _fail(error: LifecycleError) -> NoReturn:
    """Report ``error`` and exit; conflicts get their own exit code so drivers can retry."""
    typer.echo(f"Error ({type(error).__name__}): {error}", err=True)
    if isinstance(error, ConcurrentModificationError):
        typer.echo("Reload the task and retry with the current version.", err=True)
        raise typer.Exit(code=EXIT_CONFLICT)
    raise typer.Exit(code=EXIT_FAILURE)


def _resolve_version(orchestrator: Orchestrator, task_id: str, expected_version: Optional[int]) -> int:
    """Use ``expected_version`` when given, otherwise the currently stored version."""
    if expected_version is not None:
        return expected_version
    return orchestrator.get(task_id).version


def _build_payload(
    *,
    payload_json: Optional[str],
    hint: Optional[str],
    summary: Optional[str],
    iterations: Optional[List[str]],
    decision: Optional[str],
    note: Optional[str],
) -> Dict[str, Any]:
    """Merge the ``--payload`` JSON with the convenience flags into one mapping."""
    payload: Dict[str, Any] = {}
    if payload_json:
        try:
            decoded = json.loads(payload_json)
        except json.JSONDecodeError as error:
            raise typer.BadParameter(f"--payload is not valid JSON: {error}") from error
        if not isinstance(decoded, dict):
            raise typer.BadParameter("--payload must be a JSON object")
        payload.update(decoded)
    if hint is not None:
        payload["hint"] = hint
    if summary is not None:
        payload["summary"] = summary
    if iterations:
        payload["iterations"] = list(iterations)
    if decision is not None:
        payload["decision"] = decision
    if note is not None:
        payload["note"] = note
    return payload


def _render_record(record: TaskRecord) -> None:
    """Display a concise summary of ``record``."""
    typer.echo(f"Task {record.task_id} [{record.stage.value}] v{record.version}")
    typer.echo(f"- Branch: {record.branch_name}")
    if record.next_stage_hint:
        typer.echo(f"- Next stage hint: {record.next_stage_hint.value}")
    cycle = record.review_cycle
    ceiling = "unbounded" if cycle.max_rounds is None else str(cycle.max_rounds)
    typer.echo(
        f"- Review: round {cycle.round}/{ceiling}, last decision {cycle.last_decision.value}"
    )
    if record.iterations:
        manager = IterationManager(record.iterations)
        typer.echo(f"- Iterations: {manager.done_count}/{len(record.iterations)} done")
        for item in record.iterations:
            summary = f" {item.summary}" if item.summary else ""
            typer.echo(f"    {item.index}. [{item.status.value}]{summary}")
    typer.echo(f"- Updated: {record.updated_at.isoformat()}")


def _emit(record: TaskRecord, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(record_to_document(record), indent=2))
    else:
        _render_record(record)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging before any command runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if verbose:
        logging.getLogger("flowstage").setLevel(logging.DEBUG)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Project name recorded in the config."),
    max_rounds: Optional[int] = typer.Option(
        None,
        "--max-rounds",
        min=0,
        help="Default ceiling on review/fix rounds for new tasks.",
    ),
    no_git: bool = typer.Option(False, "--no-git", help="Disable branch creation for new tasks."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=EXIT_FAILURE)

    config_data = _copy_config_template()
    config_data["paths"]["config"] = config_path.name
    if name:
        config_data["project"]["name"] = name
    if max_rounds is not None:
        config_data["lifecycle"]["max_review_rounds"] = max_rounds
    if no_git:
        config_data["git"]["create_branches"] = False
    _write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def create(
    branch: str = typer.Option(..., "--branch", "-b", help="Branch associated with the task."),
    task_id: Optional[str] = typer.Option(
        None,
        "--task-id",
        "-t",
        help="Task identifier; derived from the branch name when omitted.",
    ),
    max_rounds: Optional[int] = typer.Option(
        None,
        "--max-rounds",
        min=0,
        help="Override the configured review/fix round ceiling.",
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the stored record as JSON."),
) -> None:
    """Create a task record and its branch."""
    orchestrator = _load_orchestrator(config)
    identifier = task_id or derive_task_id(branch)
    try:
        if max_rounds is None:
            record = orchestrator.create(identifier, branch)
        else:
            record = orchestrator.create(identifier, branch, max_rounds=max_rounds)
    except LifecycleError as error:
        _fail(error)
    _emit(record, as_json)


@app.command()
def advance(
    task_id: str = typer.Argument(..., help="Task identifier."),
    event: str = typer.Argument(..., help="Outcome event reported by the driver."),
    expected_version: Optional[int] = typer.Option(
        None,
        "--expected-version",
        "-e",
        help="Version the caller last observed; defaults to the stored version.",
    ),
    hint: Optional[str] = typer.Option(None, "--hint", help="plan_completed: implement or decompose."),
    iteration: List[str] = typer.Option(
        None,
        "--iteration",
        "-i",
        help="iterations_defined: description of one iteration (repeatable).",
    ),
    summary: Optional[str] = typer.Option(None, "--summary", help="Summary for completed work."),
    decision: Optional[str] = typer.Option(
        None,
        "--decision",
        help="review_decided: approved or requires_fixes.",
    ),
    note: Optional[str] = typer.Option(None, "--note", help="Free-form note stored in the history."),
    payload: Optional[str] = typer.Option(None, "--payload", help="Raw JSON payload for the event."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the stored record as JSON."),
) -> None:
    """Report an outcome event and move the task to its next stage."""
    orchestrator = _load_orchestrator(config)
    body = _build_payload(
        payload_json=payload,
        hint=hint,
        summary=summary,
        iterations=iteration,
        decision=decision,
        note=note,
    )
    try:
        version = _resolve_version(orchestrator, task_id, expected_version)
        record = orchestrator.advance(task_id, event, body, expected_version=version)
    except LifecycleError as error:
        _fail(error)
    _emit(record, as_json)


@app.command()
def show(
    task_id: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the stored record as JSON."),
) -> None:
    """Print the stored record for a task."""
    orchestrator = _load_orchestrator(config)
    try:
        record = orchestrator.get(task_id)
    except LifecycleError as error:
        _fail(error)
    _emit(record, as_json)


@app.command(name="list")
def list_tasks(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """List every task with its stage and version."""
    orchestrator = _load_orchestrator(config)
    try:
        records = orchestrator.list()
    except LifecycleError as error:
        _fail(error)
    if not records:
        typer.echo("No tasks recorded.")
        return
    for record in records:
        typer.echo(f"- {record.task_id} [{record.stage.value}] v{record.version} ({record.branch_name})")


@app.command()
def status(
    task_id: str = typer.Argument(..., help="Task identifier."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Report the current stage and the events that may happen next."""
    orchestrator = _load_orchestrator(config)
    try:
        record = orchestrator.get(task_id)
    except LifecycleError as error:
        _fail(error)

    typer.echo(f"Task {record.task_id} is in stage '{record.stage.value}' (version {record.version}).")
    current = IterationManager(record.iterations).current()
    if current is not None:
        label = f": {current.summary}" if current.summary else ""
        typer.echo(f"Current iteration: {current.index}{label}")
    events = allowed_events(record.stage)
    if events:
        typer.echo("Next events: " + ", ".join(event.value for event in events))
        for event in events:
            targets = " or ".join(stage.value for stage in EDGES[(record.stage, event)])
            typer.echo(f"- {event.value} leads to {targets}")
    else:
        typer.echo("Task is complete; no further events are accepted.")
    if record.review_cycle.exhausted and not record.is_terminal:
        typer.echo(
            "Review cycle exhausted: raise the ceiling with set-max-rounds or use force-approve."
        )


@app.command()
def hint(
    task_id: str = typer.Argument(..., help="Task identifier."),
    value: str = typer.Argument(..., help="implement or decompose."),
    expected_version: Optional[int] = typer.Option(None, "--expected-version", "-e"),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Record the planner's suggested next stage while the task is in planning."""
    orchestrator = _load_orchestrator(config)
    try:
        version = _resolve_version(orchestrator, task_id, expected_version)
        record = orchestrator.suggest_next_stage(task_id, value, expected_version=version)
    except LifecycleError as error:
        _fail(error)
    _render_record(record)


@app.command(name="set-max-rounds")
def set_max_rounds(
    task_id: str = typer.Argument(..., help="Task identifier."),
    max_rounds: Optional[int] = typer.Option(None, "--max-rounds", min=0, help="New ceiling."),
    unbounded: bool = typer.Option(False, "--unbounded", help="Remove the ceiling entirely."),
    expected_version: Optional[int] = typer.Option(None, "--expected-version", "-e"),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Change the review/fix round ceiling of a task."""
    if unbounded == (max_rounds is not None):
        raise typer.BadParameter("Pass exactly one of --max-rounds or --unbounded.")
    orchestrator = _load_orchestrator(config)
    try:
        version = _resolve_version(orchestrator, task_id, expected_version)
        record = orchestrator.set_max_rounds(task_id, max_rounds, expected_version=version)
    except LifecycleError as error:
        _fail(error)
    _render_record(record)


@app.command(name="force-approve")
def force_approve(
    task_id: str = typer.Argument(..., help="Task identifier."),
    note: str = typer.Option("", "--note", help="Why the review is being overridden."),
    expected_version: Optional[int] = typer.Option(None, "--expected-version", "-e"),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Approve a task parked in review without another fix round."""
    orchestrator = _load_orchestrator(config)
    try:
        version = _resolve_version(orchestrator, task_id, expected_version)
        record = orchestrator.force_approve(task_id, expected_version=version, note=note)
    except LifecycleError as error:
        _fail(error)
    _render_record(record)


if __name__ == "__main__":
    app()
