"""CLI commands for validating, assessing and running task plans."""

from __future__ import annotations

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from pydantic import ValidationError

from .memory.schema import Snapshot
from .orchestrator import PlanOrchestrator, PlanRunOutcome
from .planning.plan import RiskLevel, parse_plan, validate_plan
from .planning.validation import PlanValidationError
from .policy.gate import PolicyConfig, validate_policy
from .serialization import dump_json, load_document

APP_HELP = "Plan compilation and transactional execution for task-list instructions."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "policy": {
        "max_steps": 8,
        "max_write_steps": 4,
        "require_confirm_for_destructive": True,
        "auto_inject_confirm": True,
    },
    "sessions": {
        "ttl_seconds": 300,
    },
    "logging": {
        "level": "INFO",
    },
}

_EXIT_CODES: Dict[str, int] = {
    "completed": 0,
    "confirm_required": 0,
    "needs_clarification": 2,
    "invalid": 1,
    "rolled_back": 1,
    "expired": 1,
}

app = typer.Typer(help=APP_HELP)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _optional_config(config: Optional[Path]) -> Dict[str, Any]:
    if config is None:
        default_path = Path(DEFAULT_CONFIG_NAME)
        return load_config(default_path) if default_path.exists() else {}
    return load_config(config)


def _configure_logging(config_data: Dict[str, Any], verbose: bool) -> None:
    section = config_data.get("logging") or {}
    level_name = "DEBUG" if verbose else str(section.get("level", "WARNING")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        typer.echo(f"Unknown logging level: {level_name}")
        raise typer.Exit(code=1)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _read_document(path: Path, label: str) -> Any:
    if not path.exists():
        raise typer.BadParameter(f"{label} file not found: {path}")
    try:
        return load_document(path)
    except (ValueError, yaml.YAMLError) as error:
        typer.echo(f"Failed to parse {label.lower()}: {error}")
        raise typer.Exit(code=1) from error


def _policy_from(config_data: Dict[str, Any]) -> PolicyConfig:
    try:
        return PolicyConfig.from_config(config_data)
    except ValueError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error


@app.command()
def validate(
    plan_path: Path = typer.Argument(..., help="Plan document (JSON or YAML)."),
) -> None:
    """Check a plan's structure and report errors and warnings."""
    report = validate_plan(_read_document(plan_path, "Plan"))
    for warning in report.warnings:
        typer.echo(f"warning: {warning}")
    if not report.valid:
        for error in report.errors:
            typer.echo(f"error: {error}")
        raise typer.Exit(code=1)
    typer.echo("Plan is valid.")


@app.command()
def risk(
    plan_path: Path = typer.Argument(..., help="Plan document (JSON or YAML)."),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Print the risk assessment and policy verdict for a plan."""
    config_data = _optional_config(config)
    try:
        plan = parse_plan(_read_document(plan_path, "Plan"))
    except PlanValidationError as error:
        for message in error.errors:
            typer.echo(f"error: {message}")
        raise typer.Exit(code=1) from error

    result = validate_policy(plan, _policy_from(config_data))
    assessment = result.risk
    typer.echo(f"Risk: {RiskLevel(assessment.level).value}")
    for reason in assessment.reasons:
        typer.echo(f"- {reason}")
    typer.echo(
        f"Steps: {assessment.total_step_count} total | {assessment.write_step_count} writes"
        f" | destructive: {'yes' if assessment.has_destructive else 'no'}"
    )
    for violation in result.violations:
        typer.echo(f"{violation.severity}: [{violation.code}] {violation.message}")
    if result.normalized_plan is not None:
        typer.echo("Confirmation steps would be injected before destructive operations.")
    if not result.valid:
        raise typer.Exit(code=1)


async def _run_pipeline(
    orchestrator: PlanOrchestrator,
    raw_plan: Any,
    snapshot: Snapshot,
    instruction: str,
    approve: Optional[bool],
) -> PlanRunOutcome:
    outcome = await orchestrator.handle_plan(raw_plan, snapshot, instruction)
    if outcome.status == "confirm_required" and approve is not None and outcome.session_id:
        typer.echo(f"Confirm: {outcome.confirm_message} -> {'approved' if approve else 'rejected'}", err=True)
        outcome = await orchestrator.resume_confirmation(outcome.session_id, approve)
    return outcome


@app.command()
def run(
    plan_path: Path = typer.Argument(..., help="Plan document (JSON or YAML)."),
    snapshot_path: Path = typer.Option(
        ...,
        "--snapshot",
        "-s",
        help="Snapshot document the plan acts on.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    approve: Optional[bool] = typer.Option(
        None,
        "--approve/--reject",
        help="Answer a pending confirmation immediately.",
    ),
    instruction: str = typer.Option(
        "",
        "--instruction",
        "-i",
        help="Original user instruction, kept with any session.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the outcome JSON to this file instead of stdout.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a plan against a snapshot and print the outcome as JSON."""
    config_data = _optional_config(config)
    _configure_logging(config_data, verbose)

    raw_plan = _read_document(plan_path, "Plan")
    raw_snapshot = _read_document(snapshot_path, "Snapshot")
    try:
        snapshot = Snapshot.model_validate(raw_snapshot or {})
    except ValidationError as error:
        typer.echo(f"Invalid snapshot: {error}")
        raise typer.Exit(code=1) from error

    try:
        orchestrator = PlanOrchestrator.from_config(config_data)
    except ValueError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error

    outcome = asyncio.run(_run_pipeline(orchestrator, raw_plan, snapshot, instruction, approve))
    rendered = dump_json(outcome)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.echo(f"Outcome: {outcome.status} (written to {output})")
    else:
        typer.echo(rendered)

    exit_code = _EXIT_CODES.get(outcome.status, 1)
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path(DEFAULT_CONFIG_NAME), help="Where to write the configuration."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write the default configuration file."""
    if path.exists() and not force:
        typer.echo(f"Config already exists: {path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(copy.deepcopy(DEFAULT_CONFIG_TEMPLATE), handle, sort_keys=False)
    typer.echo(f"Wrote default configuration to {path}")


if __name__ == "__main__":
    app()
