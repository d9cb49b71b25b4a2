"""Command line interface for opsflow."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from opsflow.config import settings

app = typer.Typer(
    name="opsflow",
    help="opsflow - durable workflow execution engine",
    add_completion=False,
)

console = Console()


@app.command("version")
def version():
    """Show version information."""
    version_info = f"""
opsflow v{settings.app_version}

Environment: {settings.environment}
Python: {sys.version}
"""
    console.print(Panel(version_info.strip(), title="Version Information", border_style="green"))


@app.command("server")
def start_server(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Server host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Number of workers"),
):
    """Start the HTTP server."""
    from opsflow.server import serve

    serve(host=host, port=port, reload=reload or None, workers=workers)


@app.command("worker")
def start_worker():
    """Start a Celery worker with the schedule beat."""
    from opsflow.server import setup_logging
    from opsflow.worker import main as worker_main

    setup_logging()
    worker_main()


@app.command("config")
def show_config():
    """Show current configuration."""
    config_table = Table(title="opsflow Configuration")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    config_items = [
        ("App Name", settings.app_name),
        ("Version", settings.app_version),
        ("Environment", settings.environment),
        ("Database URL", settings.database_url),
        ("Redis URL", settings.redis_url),
        ("Retry Attempts", str(settings.retry_max_attempts)),
        ("Inline Sleep Threshold (ms)", str(settings.inline_sleep_threshold_ms)),
        ("Bundle Concurrency", str(settings.bundle_max_concurrency)),
        ("Max Sub-workflow Depth", str(settings.max_subworkflow_depth)),
        ("Workflows Path", settings.workflows_path or "-"),
    ]
    for setting, value in config_items:
        config_table.add_row(setting, value)

    console.print(config_table)


@app.command("validate")
def validate(path: Path = typer.Argument(..., exists=True, help="Workflow JSON file")):
    """Validate a workflow definition."""
    from opsflow.executor.errors import ConfigurationError, WorkflowValidationError
    from opsflow.services import build_memory_services
    from opsflow.workflows.repository import load_workflow_file

    try:
        workflow = load_workflow_file(path)
        graph = build_memory_services().orchestrator.validate_workflow(workflow)
    except WorkflowValidationError as e:
        console.print(f"[red]Workflow is invalid:[/red] {e.message}")
        for problem in e.validation_errors:
            console.print(f"  - {problem}")
        raise typer.Exit(1)
    except ConfigurationError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[green]Workflow {workflow.id} is valid[/green] "
        f"({len(workflow.nodes)} nodes, order: {' -> '.join(graph.execution_order())})"
    )


def _parse_data(data: Optional[str]) -> Dict[str, Any]:
    if not data:
        return {}
    try:
        payload = json.loads(data)
    except ValueError as e:
        raise typer.BadParameter(f"--data must be JSON: {e}")
    if not isinstance(payload, dict):
        raise typer.BadParameter("--data must be a JSON object")
    return payload


async def _run_workflow(path: Path, data: Dict[str, Any], workflows_dir: Optional[Path], wait: bool):
    from opsflow.runs.schemas import RunStatus
    from opsflow.services import build_memory_services
    from opsflow.workflows.repository import (
        InMemoryWorkflowRepository,
        load_workflow_directory,
        load_workflow_file,
    )

    repository = load_workflow_directory(workflows_dir) if workflows_dir else InMemoryWorkflowRepository()
    workflow = load_workflow_file(path)
    repository.add(workflow)

    services = build_memory_services(repository)
    orchestrator = services.orchestrator
    try:
        record = await orchestrator.start_run(workflow.id, data, trigger_type="MANUAL_TRIGGER")
        while wait and record.status == RunStatus.WAITING:
            delay = (record.wake_at - orchestrator.clock()).total_seconds()
            console.print(f"[yellow]Waiting until {record.wake_at.isoformat()}[/yellow]")
            await asyncio.sleep(max(delay, 0))
            record = await orchestrator.resume_run(record.id)
        return record, orchestrator.publisher
    finally:
        await services.close()


@app.command("run")
def run(
    path: Path = typer.Argument(..., exists=True, help="Workflow JSON file"),
    data: Optional[str] = typer.Option(None, "--data", "-d", help="Trigger payload as JSON"),
    workflows_dir: Optional[Path] = typer.Option(
        None, "--workflows", help="Directory with workflows referenced by sub-workflow nodes"
    ),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Sleep through wait nodes"),
):
    """Run a workflow once with in-memory stores."""
    from opsflow.server import setup_logging

    setup_logging()
    record, publisher = asyncio.run(_run_workflow(path, _parse_data(data), workflows_dir, wait))

    table = Table(title=f"Run {record.id}")
    table.add_column("Node", style="cyan")
    table.add_column("Status", style="green")
    for channel, event in publisher.events:
        if event.run_id == record.id:
            table.add_row(event.node_id, event.status.value)
    console.print(table)

    style = {"succeeded": "green", "failed": "red"}.get(record.status.value, "yellow")
    console.print(f"Status: [{style}]{record.status.value}[/{style}]")
    if record.failure:
        console.print(
            f"Failed at node {record.failure.node_id} "
            f"({record.failure.kind}, {record.failure.attempts} attempt(s)): {record.failure.message}"
        )
        raise typer.Exit(1)
    console.print_json(json.dumps(record.context, default=str))


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
