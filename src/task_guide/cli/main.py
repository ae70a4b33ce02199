"""Main CLI for task-guide."""

import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, Tuple

import click
from rich.console import Console
from rich.table import Table

from ..core.config import DEFAULT_CONFIG_PATH, load_config
from ..core.errors import InvalidStepInput, TaskGuideError, TemplateValidationError
from ..core.session import WorkflowStatus
from ..core.session_manager import SessionManager
from ..core.template import load_template
from ..core.values import decode_mapping
from ..utils.rich_logging import setup_logging
from ..workflow.dag import InputSpec, InputType, Step
from ..workflow.engine import ChecklistStatus, StepDecision
from ..workflow.rules import pick_text


console = Console()


@click.group()
@click.option("--config", "-c", "config_path", default=str(DEFAULT_CONFIG_PATH), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Task Guide - rule-gated, resumable step-by-step task workflows."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path))
    setup_logging(
        log_level="DEBUG" if verbose else config.logging.level,
        use_colors=config.logging.use_colors,
        log_file=config.logging.log_file,
    )
    ctx.obj["config"] = config


def _manager(ctx) -> SessionManager:
    if "manager" not in ctx.obj:
        ctx.obj["manager"] = SessionManager.from_config(ctx.obj["config"])
    return ctx.obj["manager"]


def _fail(ctx, error: TaskGuideError):
    console.print(f"[red]Error ({error.code}): {error.message}[/]")
    ctx.exit(1)


def _parse_assignments(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """Parse ``name=value`` pairs; values are JSON when they parse as JSON."""
    raw = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected name=value, got '{pair}'")
        name, value = pair.split("=", 1)
        try:
            raw[name.strip()] = json.loads(value)
        except json.JSONDecodeError:
            raw[name.strip()] = value
    return decode_mapping(raw)


def _parse_input(raw: str, spec: InputSpec, step_id: str) -> Any:
    """Turn command-line text into the value type a step declares."""
    try:
        if spec.type == InputType.NUMBER:
            return float(raw) if "." in raw else int(raw)
        if spec.type == InputType.BOOLEAN:
            if raw.lower() not in ("true", "false", "yes", "no"):
                raise ValueError(raw)
            return raw.lower() in ("true", "yes")
        if spec.type == InputType.DATE:
            return date.fromisoformat(raw)
    except ValueError:
        raise InvalidStepInput(step_id, "wrong_type", spec.expected) from None
    if spec.type == InputType.MULTI_CHOICE:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _print_step(step: Step, language: str, decision: StepDecision):
    console.print(f"[bold]Next step:[/] {step.title_for(language)} [dim]({step.id})[/]")
    instructions = step.instructions_for(language)
    if instructions:
        console.print(instructions)
    if step.input.type != InputType.NONE:
        console.print(f"  Input: {step.input.expected}")
    for document in step.documents:
        console.print(f"  Document: {document.name_for(language)}")
    if decision.needs_confirmation:
        console.print(
            f"[yellow]Applicability unconfirmed; missing: {', '.join(decision.missing_variables)}[/]"
        )
    if len(decision.available) > 1:
        console.print(f"[dim]Also available: {', '.join(decision.available[1:])}[/]")


def _print_decision(decision: StepDecision, language: str):
    if decision.skipped:
        console.print(f"[dim]Skipped: {', '.join(decision.skipped)}[/]")
    if decision.step is not None:
        _print_step(decision.step, language, decision)
    elif decision.status == WorkflowStatus.COMPLETED:
        console.print("[green]✓ All steps completed[/]")
    elif decision.status == WorkflowStatus.DEADLOCKED:
        console.print(
            f"[red]No step can proceed (template defect). Locked: {', '.join(decision.blocked)}[/]"
        )
    else:
        console.print(f"Session is {decision.status.value}")


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, path_type=Path))
@click.pass_context
def validate(ctx, paths):
    """Validate template files."""
    failed = 0
    for path in paths:
        try:
            template = load_template(path)
        except TemplateValidationError as e:
            failed += 1
            console.print(f"[red]✗ {path}: {e.message}[/]")
            continue
        console.print(
            f"[green]✓[/] {path}: {template.task_type} v{template.version} "
            f"({len(template.steps)} steps, {len(template.rules)} rules)"
        )
    if failed:
        ctx.exit(1)


@cli.command()
@click.pass_context
def templates(ctx):
    """List published templates."""
    registry = _manager(ctx).registry
    table = Table()
    table.add_column("Task type")
    table.add_column("Versions")
    table.add_column("Steps (latest)")
    table.add_column("Rules (latest)")

    for task_type in registry.task_types():
        latest = registry.get(task_type)
        table.add_row(
            task_type,
            ", ".join(str(v) for v in registry.versions(task_type)),
            str(len(latest.steps)),
            str(len(latest.rules)),
        )
    console.print(table)


@cli.command()
@click.argument("task_type")
@click.option("--user", "-u", help="User identifier")
@click.option("--language", "-l", help="Language code")
@click.option("--version", type=int, help="Template version (default: latest)")
@click.option("--set", "assignments", multiple=True, help="Initial context value name=value")
@click.pass_context
def start(ctx, task_type, user, language, version, assignments):
    """Start a session for a confirmed task type."""
    manager = _manager(ctx)
    try:
        transition = manager.create_session(
            task_type, user_id=user, language_code=language, version=version,
            variables=_parse_assignments(assignments),
        )
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    session = transition.session
    console.print(f"[green]✓[/] Session [bold]{session.session_id}[/] ({task_type} v{session.template_version})")
    _print_decision(transition.decision, session.language_code)


@cli.command(name="next")
@click.argument("session_id")
@click.pass_context
def next_step(ctx, session_id):
    """Show the next step of a session."""
    try:
        transition = _manager(ctx).resume(session_id)
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    _print_decision(transition.decision, transition.session.language_code)


@cli.command()
@click.argument("session_id")
@click.argument("step_id")
@click.option("--value", help="Step input")
@click.option("--issue", help="Report a problem with this step")
@click.pass_context
def complete(ctx, session_id, step_id, value, issue):
    """Complete a step."""
    manager = _manager(ctx)
    try:
        state = manager.load(session_id)
        step = manager.engine_for(state.task_type, state.template_version).graph.get(step_id)
        parsed = None
        if value is not None and step is not None:
            parsed = _parse_input(value, step.input, step_id)
        transition = manager.complete_step(session_id, step_id, parsed, issue=issue)
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    console.print(f"[green]✓[/] Completed {step_id}")
    _print_decision(transition.decision, transition.session.language_code)


@cli.command()
@click.argument("session_id")
@click.argument("assignments", nargs=-1)
@click.option("--unset", multiple=True, help="Remove a context value")
@click.pass_context
def context(ctx, session_id, assignments, unset):
    """Set context values (name=value) and show the next step."""
    updates = _parse_assignments(assignments)
    for name in unset:
        updates[name] = None
    try:
        transition = _manager(ctx).update_context(session_id, updates)
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    console.print(f"[green]✓[/] Updated {', '.join(sorted(updates)) or 'nothing'}")
    _print_decision(transition.decision, transition.session.language_code)


@cli.command()
@click.argument("session_id")
@click.pass_context
def progress(ctx, session_id):
    """Show session progress."""
    try:
        info = _manager(ctx).progress(session_id)
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    console.print(
        f"[bold]{info.completed_steps}/{info.total_steps}[/] steps "
        f"({info.percent_complete:.0f}%), ~{info.estimated_time_remaining} min remaining, "
        f"status: {info.status.value}"
    )


@cli.command()
@click.argument("session_id")
@click.pass_context
def checklist(ctx, session_id):
    """Show the document checklist."""
    manager = _manager(ctx)
    try:
        state = manager.load(session_id)
        result = manager.checklist(session_id)
    except TaskGuideError as e:
        _fail(ctx, e)
        return

    table = Table()
    table.add_column("Document")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Missing information")
    for item in result.items:
        status = (
            "[green]required[/]" if item.status == ChecklistStatus.REQUIRED
            else "[yellow]pending confirmation[/]"
        )
        name = pick_text(item.name, state.language_code) or item.document_id
        table.add_row(name, item.step_id, status, ", ".join(item.missing_variables))
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.option("--as-of", type=click.DateTime(formats=["%Y-%m-%d"]), help="Evaluation date")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def eligibility(ctx, session_id, as_of, as_json):
    """Evaluate eligibility rules."""
    try:
        result = _manager(ctx).eligibility(session_id, as_of.date() if as_of else None)
    except TaskGuideError as e:
        _fail(ctx, e)
        return

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    verdict = "[green]eligible[/]" if result.overall_eligible else "[red]not eligible[/]"
    console.print(f"[bold]Overall:[/] {verdict} (as of {result.as_of})")
    table = Table()
    table.add_column("Rule")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Source")
    for requirement in result.requirements:
        table.add_row(requirement.rule_id, requirement.kind.value, requirement.status.value, requirement.source)
    console.print(table)
    for notice in result.warnings:
        console.print(f"[yellow]Warning:[/] {notice.rule_id} {notice.reason}")
    for notice in result.recommendations:
        console.print(f"[cyan]Recommendation:[/] {notice.rule_id} {notice.reason} ({notice.days_remaining} days)")
    missing = result.missing_information()
    if missing:
        console.print(f"Missing information: {', '.join(missing)}")


@cli.command()
@click.argument("session_id")
@click.pass_context
def recommend(ctx, session_id):
    """Recommend an alternative at the next open choice."""
    try:
        recommendation = _manager(ctx).recommend_path(session_id)
    except TaskGuideError as e:
        _fail(ctx, e)
        return

    if recommendation is None:
        console.print("No open choice to make right now")
        return
    if recommendation.step_id is None:
        console.print(f"[red]No alternative in '{recommendation.choice_group}' keeps you eligible[/]")
    else:
        console.print(
            f"[bold]Recommended:[/] {recommendation.step_id} "
            f"(~{recommendation.estimated_time_remaining} min remaining)"
        )
    for option in recommendation.options:
        marker = "✓" if option.keeps_eligible else "✗"
        console.print(f"  {marker} {option.step_id}: ~{option.estimated_time_remaining} min")


@cli.command()
@click.argument("user_id")
@click.pass_context
def sessions(ctx, user_id):
    """List a user's sessions."""
    summaries = _manager(ctx).list_sessions(user_id)
    table = Table()
    table.add_column("Session")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Current step")
    table.add_column("Last accessed")
    for summary in summaries:
        table.add_row(
            summary.session_id,
            f"{summary.task_type} v{summary.template_version}",
            summary.status.value,
            summary.current_step_id or "-",
            summary.last_accessed_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.pass_context
def abandon(ctx, session_id):
    """Abandon a session."""
    try:
        _manager(ctx).abandon(session_id)
    except TaskGuideError as e:
        _fail(ctx, e)
        return
    console.print(f"[yellow]Session {session_id} abandoned[/]")


@cli.command()
@click.pass_context
def expire(ctx):
    """Expire sessions past their retention window."""
    count = _manager(ctx).expire()
    console.print(f"[green]✓[/] Expired {count} session(s)")


if __name__ == "__main__":
    cli()
