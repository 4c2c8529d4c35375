"""Command line interface for the inkflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
import yaml

from inkflow.config import load_config
from inkflow.documents import InMemoryDocumentService
from inkflow.errors import WorkflowError
from inkflow.orchestrator import WorkflowExecutor
from inkflow.persistence import get_repository
from inkflow.state_machine import ExecutionStatus

T = TypeVar("T")

app = typer.Typer(help="CLI for inkflow document workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for running and controlling executions")
approval_app = typer.Typer(help="Commands for approval requests")
document_app = typer.Typer(help="Commands for document events")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(approval_app, name="approval")
app.add_typer(document_app, name="document")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (defaults to log_level from config)"
    ),
) -> None:
    """inkflow CLI entry point."""
    setup_logging(log_level or load_config().log_level)


def _run(action: Callable[[WorkflowExecutor], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh executor and wait for its step loops.

    Timers are not awaited; ``execution sweep`` picks up due waits later.
    """

    async def runner() -> T:
        executor = WorkflowExecutor.from_config(
            load_config(), repository=get_repository()
        )
        try:
            return await action(executor)
        finally:
            await executor.drain(include_timers=False)
            await executor.aclose()

    try:
        return asyncio.run(runner())
    except WorkflowError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_vars(values: List[str]) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep:
            typer.secho(f"Expected KEY=VALUE, got: {item}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        try:
            variables[key] = json.loads(raw)
        except json.JSONDecodeError:
            variables[key] = raw
    return variables


# ---------------------------------------------------------------------------
# workflow


@workflow_app.command("register")
def workflow_register(
    definition_path: Path,
    name: str = typer.Option("", help="Display name for the workflow"),
    workflow_id: Optional[str] = typer.Option(None, "--id", help="Explicit workflow id"),
) -> None:
    """
    Register a workflow definition from a JSON or YAML file.

    The definition is validated (unique step ids, resolvable references,
    parseable conditions) before it is stored.

    Example:
        inkflow workflow register ./nda.yaml --name "NDA signing"
    """
    if not definition_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(definition_path) as f:
        data = yaml.safe_load(f) or {}

    record = _run(
        lambda ex: ex.register_workflow(data, name=name, workflow_id=workflow_id)
    )
    typer.echo(f"Workflow registered: {record.id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List registered workflows with their status and step count."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.id}\t{wf.status.value}\t{len(wf.definition.steps)} steps\t{wf.name}"
        )


# ---------------------------------------------------------------------------
# execution


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    document_id: str = typer.Option(..., "--document", help="Document to route"),
    user_id: str = typer.Option(..., "--user", help="Owner of the execution"),
    var: List[str] = typer.Option([], "--var", help="Initial variable as KEY=VALUE"),
) -> None:
    """
    Start an execution and run it until it completes, fails or suspends.

    Values given with --var are parsed as JSON when possible.

    Example:
        inkflow execution start wf-1 --document doc-9 --user u-1 --var amount=5000
    """
    variables = _parse_vars(var)

    async def start(executor: WorkflowExecutor):
        execution_id = await executor.start(workflow_id, document_id, user_id, variables)
        await executor.drain(include_timers=False)
        return await executor.get_execution(execution_id)

    execution = _run(start)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List executions, optionally filtered by status."""
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(status))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.status.value}\t{execution.workflow_id}"
            f"\tstep {execution.current_step_index}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution with its step history and approval requests.

    Example:
        inkflow execution show 1f0c...
        # Output: Execution 1f0c...: paused (step 2)
        #         - send: completed (2024-01-01 10:00 -> 10:00)
        #         - legal-approval: completed
        #         Approval 7ab2...: pending (1/2 approved, 0 rejected)
    """
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Execution {execution.id}: {execution.status.value} "
        f"(step {execution.current_step_index})"
    )
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    variables = execution.context.get("variables")
    if variables:
        typer.echo(f"Variables: {json.dumps(variables, default=str)}")
    for step in asyncio.run(repo.list_step_records(execution_id)):
        typer.echo(
            f"- {step.step_id}: {step.status.value}"
            + (f" ({step.created_at} -> {step.completed_at})" if step.completed_at else "")
            + (f" error: {step.error_message}" if step.error_message else "")
        )
    for request in asyncio.run(repo.list_approval_requests(execution_id)):
        typer.echo(
            f"Approval {request.id}: {request.status.value} "
            f"({request.current_approvals}/{request.required_approvals} approved, "
            f"{request.current_rejections} rejected)"
        )


@execution_app.command("advance")
def execution_advance(execution_id: str) -> None:
    """Re-check a paused execution and continue it if its wait is over."""
    advanced = _run(lambda ex: ex.advance(execution_id))
    typer.echo("Execution advanced" if advanced else "Execution is still waiting")


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Pause a running execution at its next step boundary."""
    _run(lambda ex: ex.pause(execution_id))
    typer.echo(f"Execution {execution_id} paused")


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution."""
    resumed = _run(lambda ex: ex.resume(execution_id))
    typer.echo("Execution resumed" if resumed else "Execution is still waiting")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel an execution; it stops at its next step boundary."""
    _run(lambda ex: ex.cancel(execution_id))
    typer.echo(f"Execution {execution_id} cancelled")


@execution_app.command("retry")
def execution_retry(execution_id: str) -> None:
    """Retry a failed execution from the step it failed on."""
    _run(lambda ex: ex.retry(execution_id))
    typer.echo(f"Execution {execution_id} retried")


@execution_app.command("sweep")
def execution_sweep() -> None:
    """Advance all paused executions whose timer is due or approval settled."""
    advanced = _run(lambda ex: ex.sweep())
    if not advanced:
        typer.echo("Nothing to advance")
        return
    for execution_id in advanced:
        typer.echo(f"Advanced {execution_id}")


# ---------------------------------------------------------------------------
# approval


@approval_app.command("respond")
def approval_respond(
    request_id: str,
    approver: str = typer.Option(..., help="Id of the responding approver"),
    decision: str = typer.Option(..., help="approved or rejected"),
    comment: Optional[str] = typer.Option(None, help="Optional comment"),
) -> None:
    """
    Record an approver's decision on an approval request.

    Example:
        inkflow approval respond 7ab2... --approver legal --decision approved
    """
    if decision not in ("approved", "rejected"):
        typer.secho("Decision must be 'approved' or 'rejected'", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    request = _run(
        lambda ex: ex.record_approval_response(request_id, approver, decision, comment)
    )
    typer.echo(
        f"Approval {request.id}: {request.status.value} "
        f"({request.current_approvals}/{request.required_approvals} approved, "
        f"{request.current_rejections} rejected)"
    )


@approval_app.command("show")
def approval_show(request_id: str) -> None:
    """Show an approval request and the responses it received."""
    repo = get_repository()
    request = asyncio.run(repo.get_approval_request(request_id))
    if request is None:
        typer.echo("Approval request not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Approval {request.id}: {request.status.value} ({request.mode.value}, "
        f"{request.required_approvals} of {len(request.approvers)} required)"
    )
    if request.expires_at:
        typer.echo(f"Expires: {request.expires_at}")
    for response in asyncio.run(repo.list_approval_responses(request_id)):
        typer.echo(
            f"- {response.approver_id}: {response.decision.value}"
            + (f" ({response.comment})" if response.comment else "")
        )


# ---------------------------------------------------------------------------
# document


@document_app.command("signed")
def document_signed(document_id: str, recipient_id: str) -> None:
    """Record that a recipient signed a document and resume waiting executions."""

    async def signed(executor: WorkflowExecutor):
        if isinstance(executor.documents, InMemoryDocumentService):
            executor.documents.mark_signed(document_id, recipient_id)
        return await executor.notify_document_signed(document_id, recipient_id)

    resumed = _run(signed)
    if not resumed:
        typer.echo("No executions were waiting on this signature")
        return
    for execution_id in resumed:
        typer.echo(f"Resumed {execution_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
