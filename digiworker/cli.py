"""Command line interface for managing and running digital worker workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from digiworker import WorkflowEngine, get_repository, load_config
from digiworker.config import DigiworkerConfig
from digiworker.contracts import (
    ChatMessage,
    ControlRoomUpdate,
    ControlRoomUpdateType,
    ReviewItem,
    Workflow,
)
from digiworker.errors import DigiworkerError

app = typer.Typer(help="CLI for digital worker workflows")

workflow_app = typer.Typer(help="Commands for managing workflows")

app.add_typer(workflow_app, name="workflow")

_STATUS_COLORS = {
    "draft": typer.colors.YELLOW,
    "active": typer.colors.GREEN,
    "paused": typer.colors.BLUE,
}


@app.callback()
def main() -> None:
    """digiworker CLI entry point."""
    logging.basicConfig(
        level=load_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_engine(config: DigiworkerConfig) -> WorkflowEngine:
    return WorkflowEngine.from_config(config, repository=get_repository())


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """
    Import a workflow definition from a YAML or JSON file.

    Keys may be written in camelCase or snake_case. Importing a workflow with
    an existing id replaces the stored definition.

    Example:
        digiworker workflow import ./workflows/inbox_triage.yaml
    """
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        workflow = Workflow.model_validate(data)
    except (yaml.YAMLError, ValidationError) as exc:
        typer.secho(f"Invalid workflow document: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    asyncio.run(get_repository().save_workflow(workflow))
    typer.echo(f"Imported workflow {workflow.id} ({len(workflow.steps)} steps)")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all stored workflows with their status.

    Example:
        digiworker workflow list
        # Output: inbox-triage    active    Inbox triage
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow definition step by step.

    Example:
        digiworker workflow show inbox-triage
        # Output: Workflow inbox-triage: Inbox triage (active)
        #         1. [trigger] New email arrives
        #         2. [action] Sort the inbox (Gmail)
    """
    repo = get_repository()
    wf = asyncio.run(repo.get_workflow_by_id(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value})")
    if wf.description:
        typer.echo(wf.description)
    if wf.assigned_to:
        typer.echo(f"Assigned to: {wf.assigned_to.stakeholder_name}")
    for step in wf.steps:
        extras = []
        if step.is_human:
            extras.append(f"human: {step.assigned_to.human_name or step.assigned_to.human_id}")
        if step.integrations.gmail:
            extras.append("Gmail")
        typer.echo(
            f"{step.order}. [{step.type.value}] {step.label}"
            + (f" ({', '.join(extras)})" if extras else "")
        )


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Mark a draft or paused workflow as active so it can be run."""
    engine = _build_engine(load_config())
    try:
        workflow = asyncio.run(engine.activate(workflow_id))
    except DigiworkerError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.secho(
        f"Workflow {workflow.id} is {workflow.status.value}",
        fg=_STATUS_COLORS[workflow.status.value],
    )


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    worker: Optional[str] = typer.Option(
        None, help="Digital worker the run is attributed to"
    ),
    auto_activate: bool = typer.Option(
        False, help="Activate a draft workflow before running it"
    ),
) -> None:
    """
    Run a workflow and answer its reviews interactively.

    Control Room updates are printed as they happen. Whenever the run pauses,
    the review is shown and you can approve it (optionally with a message for
    the agent), reject it with feedback so the step is redone, or dismiss it.
    Dismissing leaves the run paused and ends the command.

    Example:
        digiworker workflow run inbox-triage --worker Ava --auto-activate
    """
    engine = _build_engine(load_config())
    try:
        asyncio.run(_run_interactive(engine, workflow_id, worker, auto_activate))
    except DigiworkerError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


async def _run_interactive(
    engine: WorkflowEngine,
    workflow_id: str,
    worker: Optional[str],
    auto_activate: bool,
) -> None:
    updates: asyncio.Queue[ControlRoomUpdate] = asyncio.Queue()

    def on_update(update: ControlRoomUpdate) -> None:
        _echo_update(update)
        updates.put_nowait(update)

    engine.subscribe(on_update)
    await engine.start(workflow_id, worker, auto_activate=auto_activate)
    try:
        while True:
            update = await updates.get()
            if update.type == ControlRoomUpdateType.COMPLETED:
                break
            if update.type == ControlRoomUpdateType.REVIEW_NEEDED:
                if not await _answer_review(engine, update.review_item):
                    typer.echo("Review dismissed; the run stays paused")
                    break
            elif update.message.startswith("Workflow stopped"):
                break
    finally:
        await engine.shutdown()


async def _answer_review(engine: WorkflowEngine, review: ReviewItem) -> bool:
    """Prompt for a decision on ``review``; return ``False`` if it was dismissed."""
    for msg in review.chat_history:
        typer.echo(f"  {msg.sender}: {msg.text}")
    choice = typer.prompt(
        "[a]pprove, [r]eject with feedback or [d]ismiss",
        default="a",
    ).strip().lower()

    if choice.startswith("r"):
        feedback = typer.prompt("Feedback")
        review.chat_history.append(ChatMessage(sender="user", text=feedback))
        await engine.reject(review, retry_with_feedback=True)
        return True
    if choice.startswith("d"):
        await engine.reject(review)
        return False

    message = typer.prompt("Message for the agent", default="", show_default=False)
    if message:
        review.chat_history.append(ChatMessage(sender="user", text=message))
    await engine.approve(review)
    return True


def _echo_update(update: ControlRoomUpdate) -> None:
    prefix = f"[{update.digital_worker_name}] " if update.digital_worker_name else ""
    if update.type == ControlRoomUpdateType.REVIEW_NEEDED:
        typer.secho(f"{prefix}Review needed: {update.message}", fg=typer.colors.YELLOW)
    elif update.type == ControlRoomUpdateType.COMPLETED:
        typer.secho(f"{prefix}{update.message}", fg=typer.colors.GREEN)
    else:
        typer.echo(f"{prefix}{update.message}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
