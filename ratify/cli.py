"""Command line interface for operating ratify workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from ratify.config import load_config
from ratify.contracts import BusinessObjectRef, Decision, WorkflowDefinition
from ratify.engine import WorkflowEngine
from ratify.exceptions import RatifyError
from ratify.persistence import get_repository
from ratify.roster import InMemoryRoster

app = typer.Typer(help="CLI for ratify approval workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
workflow_app = typer.Typer(help="Commands for inspecting and controlling instances")
approval_app = typer.Typer(help="Commands for approvers")
escalation_app = typer.Typer(help="Commands for the escalation sweep")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")
app.add_typer(approval_app, name="approval")
app.add_typer(escalation_app, name="escalation")


@app.callback()
def main() -> None:
    """ratify CLI entry point."""
    config = load_config()
    logging.basicConfig(level=config.log_level.upper())


def _build_engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine.from_config(
        config,
        repository=get_repository(),
        roster=InMemoryRoster(config.roster),
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@definition_app.command("register")
def definition_register(path: Path) -> None:
    """
    Register a workflow definition from a YAML file.

    Registering a name that already exists in the company stores a new
    version; running instances keep the version they started with.

    Example:
        ratify definition register purchase_order.yaml
    """
    if not path.exists():
        _fail("Specified path does not exist")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        definition = WorkflowDefinition(**data)
    except ValidationError as e:
        _fail(f"Invalid definition: {e}")
    stored = asyncio.run(_build_engine().register_definition(definition))
    typer.echo(f"Registered {stored.name} v{stored.version}\t{stored.id}")


@definition_app.command("list")
def definition_list(company: Optional[str] = None) -> None:
    """List the latest version of every definition."""
    repo = get_repository()
    definitions = asyncio.run(repo.list_definitions(company))
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        state = "active" if d.is_active else "inactive"
        typer.echo(f"{d.id}\t{d.name}\tv{d.version}\t{len(d.steps)} steps\t{state}")


@workflow_app.command("start")
def workflow_start(
    definition_id: str,
    object_type: str = typer.Option(..., "--type", help="Business object type"),
    object_id: str = typer.Option(..., "--id", help="Business object id"),
    actor: str = typer.Option(..., help="User starting the workflow"),
    data: Optional[str] = typer.Option(None, help="JSON object of business data"),
) -> None:
    """Start a workflow for a business object."""
    engine = _build_engine()
    try:
        instance = asyncio.run(
            engine.start_workflow(
                definition_id,
                BusinessObjectRef(type=object_type, id=object_id),
                actor,
                json.loads(data) if data else None,
            )
        )
    except RatifyError as e:
        _fail(str(e))
    typer.echo(f"{instance.id}\t{instance.status.value}")


@workflow_app.command("list")
def workflow_list(company: Optional[str] = None) -> None:
    """
    List workflow instances with their current status.

    Example:
        ratify workflow list
        # Output: 3f2c...    purchase_order:PO-1    in_progress
    """
    repo = get_repository()
    instances = asyncio.run(repo.list_instances(company))
    if not instances:
        typer.echo("No workflows found")
        return
    for i in instances:
        typer.echo(f"{i.id}\t{i.business_object}\t{i.status.value}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show an instance and the history of its step executions.

    Example:
        ratify workflow show 3f2c...
        # Output: Workflow 3f2c... (Purchase approval): in_progress
        #         - [1] Manager review: approved by u1
        #         - [2] Finance review: pending (role finance, due 2024-01-02T12:00:00+00:00)
    """
    engine = _build_engine()
    try:
        state = asyncio.run(engine.get_instance_state(instance_id))
    except RatifyError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    instance = state.instance
    typer.echo(f"Workflow {instance.id} ({state.definition_name}): {instance.status.value}")
    typer.echo(f"Object: {instance.business_object}  Requested by: {instance.triggered_by}")
    for step in state.steps:
        line = f"- [{step.step_index + 1}] {step.step_name}: {step.status.value}"
        if step.completed_by:
            line += f" by {step.completed_by}"
        if step.is_pending:
            assignee = step.assigned_user_id or f"role {step.assigned_role}"
            line += f" ({assignee}, due {step.due_at.isoformat()})"
        if step.notes:
            line += f" - {step.notes}"
        typer.echo(line)
    for comment in asyncio.run(engine.list_comments(instance_id)):
        marker = " (internal)" if comment.internal else ""
        typer.echo(f"  > {comment.author_id}{marker}: {comment.text}")


@workflow_app.command("cancel")
def workflow_cancel(
    instance_id: str,
    actor: str = typer.Option(..., help="Requester or admin cancelling the workflow"),
    reason: Optional[str] = None,
) -> None:
    """Cancel a running workflow instance."""
    engine = _build_engine()
    try:
        instance = asyncio.run(engine.cancel_workflow(instance_id, actor, reason))
    except RatifyError as e:
        _fail(str(e))
    typer.echo(f"{instance.id}\t{instance.status.value}")


@approval_app.command("decide")
def approval_decide(
    step_execution_id: str,
    actor: str = typer.Option(..., help="User submitting the decision"),
    decision: Decision = typer.Option(..., help="approve, reject or request_changes"),
    notes: Optional[str] = None,
) -> None:
    """
    Submit a decision on a pending step.

    Example:
        ratify approval decide 8a1b... --actor u1 --decision approve --notes "Looks good"
    """
    engine = _build_engine()
    try:
        execution = asyncio.run(
            engine.submit_decision(step_execution_id, actor, decision, notes)
        )
    except RatifyError as e:
        _fail(f"{e.code}: {e}")
    typer.echo(f"{execution.id}\t{execution.status.value}")


@approval_app.command("pending")
def approval_pending(
    company: str = typer.Option(..., help="Company id"),
    user: str = typer.Option(..., help="Approver user id"),
) -> None:
    """List pending steps a user may act on."""
    engine = _build_engine()
    executions = asyncio.run(engine.pending_approvals(company, user))
    if not executions:
        typer.echo("No pending approvals")
        return
    for e in executions:
        typer.echo(f"{e.id}\t{e.step_name}\t{e.instance_id}\tdue {e.due_at.isoformat()}")


@approval_app.command("comment")
def approval_comment(
    step_execution_id: str,
    actor: str = typer.Option(..., help="User leaving the comment"),
    text: str = typer.Option(..., help="Comment text"),
    internal: bool = typer.Option(False, help="Visible to approvers only"),
) -> None:
    """Comment on a step execution."""
    engine = _build_engine()
    try:
        comment = asyncio.run(engine.add_comment(step_execution_id, actor, text, internal))
    except (RatifyError, ValidationError) as e:
        _fail(str(e))
    typer.echo(f"{comment.id}\t{comment.author_id}")


@approval_app.command("digest")
def approval_digest(company: str = typer.Option(..., help="Company id")) -> None:
    """
    Summarise pending approvals per approver.

    Example:
        ratify approval digest --company acme
        # Output: u1    2 pending    oldest due 2024-01-02T12:00:00+00:00
    """
    engine = _build_engine()
    digest = asyncio.run(engine.approval_digest(company))
    if not digest:
        typer.echo("No pending approvals")
        return
    for user_id in sorted(digest):
        executions = digest[user_id]
        typer.echo(
            f"{user_id}\t{len(executions)} pending\toldest due {executions[0].due_at.isoformat()}"
        )


@escalation_app.command("sweep")
def escalation_sweep(
    now: Optional[datetime] = typer.Option(None, help="Evaluate as of this ISO timestamp"),
) -> None:
    """
    Run one escalation sweep over pending steps.

    Meant to be called from cron or another scheduler.

    Example:
        ratify escalation sweep
        ratify escalation sweep --now 2024-01-03T12:00:00
    """
    engine = _build_engine()
    report = asyncio.run(engine.run_escalation_sweep(now))
    typer.echo(
        f"scanned={report.scanned} reminders={report.reminders} "
        f"urgent={report.urgent_reminders} expired={report.expired} "
        f"orphaned={report.orphaned} stale={report.stale} failed={report.failed}"
    )
    if report.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
