"""Command line interface for operating dripline workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from dripline import AutomationEngine, get_repository
from dripline.config import load_config
from dripline.contracts import Workflow, validate_workflow
from dripline.exceptions import StepConfigurationError, WorkflowNotFoundError

app = typer.Typer(help="CLI for dripline automation workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override configured log level"),
) -> None:
    """Dripline CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_json(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("JSON payload must be an object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List stored workflows.

    Example:
        dripline workflow list
        # Output: 1f2e...    Welcome sequence    NEW_COURSE_ENROLLMENT    ACTIVE    runs=3/4
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = wf.status.value if wf.enabled else f"{wf.status.value} (disabled)"
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.trigger.trigger_type.value}\t{state}"
            f"\truns={wf.successful_runs}/{wf.total_runs}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's trigger and ordered steps."""
    repo = get_repository()
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.name} [{wf.status.value}]")
    typer.echo(f"Trigger: {wf.trigger.trigger_type.value}")
    if wf.trigger.filters:
        typer.echo(f"Filters: {wf.trigger.filters}")
    for step in wf.steps:
        delay = f" after {step.delay_amount:g} {step.delay_unit}" if step.has_delay else ""
        typer.echo(f"- {step.order}. {step.type.value}{delay} {step.config}")


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Validate and store workflow definitions from a YAML or JSON file.

    The file holds one workflow mapping or a list of them.

    Example:
        dripline workflow load ./workflows/welcome.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    data = yaml.safe_load(path.read_text()) or []
    documents = data if isinstance(data, list) else [data]

    workflows = []
    for doc in documents:
        try:
            workflow = Workflow.model_validate(doc)
            validate_workflow(workflow)
        except (ValidationError, StepConfigurationError) as exc:
            typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        workflows.append(workflow)

    repo = get_repository()
    for workflow in workflows:
        asyncio.run(repo.save_workflow(workflow))
        typer.echo(f"Saved workflow {workflow.id} ({workflow.name})")


@workflow_app.command("stats")
def workflow_stats(workflow_id: str) -> None:
    """Show run statistics for a workflow."""
    repo = get_repository()
    stats = asyncio.run(repo.get_workflow_analytics(workflow_id))
    if stats is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {stats.workflow_name}")
    typer.echo(f"Total runs: {stats.total_runs}")
    typer.echo(f"Successful: {stats.successful_runs}")
    typer.echo(f"Failed: {stats.failed_runs}")
    typer.echo(f"Success rate: {stats.success_rate:.1f}%")
    typer.echo(f"Last run: {stats.last_run_at or 'never'}")


@workflow_app.command("test")
def workflow_test(
    workflow_id: str,
    data: Optional[str] = typer.Option(None, help="JSON test payload"),
) -> None:
    """
    Dry-run a workflow without sending email or touching subscribers.

    Example:
        dripline workflow test 1f2e... --data '{"email": "a@example.com"}'
    """
    payload = _parse_json(data)
    engine = AutomationEngine(repository=get_repository())
    try:
        result = asyncio.run(engine.test_execution(workflow_id, payload))
    except WorkflowNotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    for step in result.steps:
        line = f"- {step.step_type}: {step.status.value}"
        if step.error:
            line += f" ({step.error})"
        typer.echo(line)
    typer.echo(
        f"Test execution {result.execution_id}: {result.status.value} "
        f"({result.steps_executed}/{result.total_steps} steps)"
    )
    if not result.success:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Executions


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
) -> None:
    """List executions with their current status."""
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(workflow_id))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        mode = "\ttest" if ex.test_mode else ""
        typer.echo(f"{ex.id}\t{ex.workflow_id}\t{ex.status.value}{mode}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution and its step log history.

    Example:
        dripline execution show abc123
        # Output: Execution abc123: FAILED
        #         Error: Invalid ADD_TAG configuration: missing or invalid tag
        #         - 1 ADD_TAG: FAILED (...)
    """
    repo = get_repository()
    ex = asyncio.run(repo.get_execution(execution_id))
    if ex is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {ex.id}: {ex.status.value}")
    typer.echo(f"Workflow: {ex.workflow_id}")
    if ex.trigger_data:
        typer.echo(f"Payload: {ex.trigger_data}")
    if ex.error:
        typer.echo(f"Error: {ex.error}")
    for log in asyncio.run(repo.list_step_logs(execution_id)):
        typer.echo(
            f"- {log.step_order} {log.step_type}: {log.status.value}"
            + (f" ({log.started_at} -> {log.completed_at})" if log.completed_at else "")
            + (f" error={log.error}" if log.error else "")
        )


@execution_app.command("reconcile")
def execution_reconcile(
    stale_after: Optional[float] = typer.Option(
        None, help="Seconds without heartbeat before a RUNNING execution is abandoned"
    ),
) -> None:
    """Mark executions abandoned by a crashed process as FAILED."""
    engine = AutomationEngine(repository=get_repository())
    reconciled = asyncio.run(engine.reconcile(stale_after))
    if not reconciled:
        typer.echo("No abandoned executions")
        return
    for execution_id in reconciled:
        typer.echo(f"Marked {execution_id} FAILED")


# ----------------------------------------------------------------------
# Events


@app.command("trigger")
def trigger(
    trigger_type: str,
    payload: Optional[str] = typer.Option(None, help="JSON event payload"),
) -> None:
    """
    Raise a business event and run the matching workflows to completion.

    Example:
        dripline trigger NEW_COURSE_ENROLLMENT --payload '{"email": "s@x.com", "courseId": "c1"}'
    """
    data = _parse_json(payload)
    repo = get_repository()

    async def _run() -> int:
        engine = AutomationEngine(repository=repo)
        try:
            before = len(await repo.list_executions())
            await engine.trigger_workflows(trigger_type, data)
            await engine.drain()
            return len(await repo.list_executions()) - before
        finally:
            await engine.shutdown()

    started = asyncio.run(_run())
    typer.echo(f"Started {started} execution(s) for {trigger_type}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
