"""
Command Line Interface for the phase orchestrator.

Exit codes for every command:

    0  committed / ok
    1  rejected (handoff, gates, agent failure) or workflow failed
    2  usage or state error (unknown token, stale state, not found, ...)
    3  storage or internal failure
"""

import asyncio
import json
from pathlib import Path
from typing import Dict, List, NoReturn, Optional

import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import Settings, get_settings
from ..core.factory import build_controller, build_registry
from ..data.models.phases import Phase
from ..data.models.workflows import Workflow, workflow_id_for_issue
from ..db.base import create_db_engine, init_database
from ..errors import GateFailure, OrchestratorError
from ..gates.builtin import register_default_gates
from ..gates.framework import QualityGateFramework
from ..logging_config import configure_logging

app = typer.Typer(help="Phase orchestrator - drive an issue through PLAN, APPLY, TEST, PR and MERGE")
console = Console()
err_console = Console(stderr=True)

PHASE_STYLE = {
    "INIT": "dim",
    "DONE": "bold green",
    "FAILED": "bold red",
}


def _settings(work_dir: Optional[Path] = None) -> Settings:
    settings = get_settings()
    if work_dir is not None:
        settings = settings.model_copy(update={"work_dir": work_dir})
    configure_logging(settings)
    return settings


def _fail(exc: OrchestratorError, as_json: bool = False) -> NoReturn:
    if as_json:
        typer.echo(json.dumps(exc.to_dict(), indent=2, default=str))
    else:
        err_console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc.message}")
        if isinstance(exc, GateFailure):
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Gate", style="cyan")
            table.add_column("Result")
            table.add_column("Diagnostics")
            for result in exc.results:
                table.add_row(
                    result.name,
                    "[green]pass[/green]" if result.passed else "[red]fail[/red]",
                    "\n".join(result.diagnostics),
                )
            err_console.print(table)
        else:
            for line in exc.context.get("diagnostics", []):
                err_console.print(f"  - {line}")
    raise typer.Exit(exc.exit_code)


def _internal_error(exc: Exception, as_json: bool = False) -> NoReturn:
    if as_json:
        typer.echo(json.dumps({"error": type(exc).__name__, "code": "INTERNAL_ERROR", "message": str(exc)}, indent=2))
    else:
        err_console.print(f"[bold red]Internal error:[/bold red] {exc}")
    raise typer.Exit(3)


def _phase(phase: str) -> str:
    style = PHASE_STYLE.get(phase, "bold yellow")
    return f"[{style}]{phase}[/{style}]"


def _workflow_panel(workflow: Workflow) -> Panel:
    lines = [
        f"Phase: {_phase(workflow.phase.value)}",
        f"Next token: {workflow.next_token or '-'}",
        f"Version: {workflow.version}",
    ]
    if workflow.artifacts:
        lines.append("Artifacts:")
        lines.extend(f"  {kind}: {ref}" for kind, ref in sorted(workflow.artifacts.items()))
    if workflow.blockers:
        lines.append("Blockers:")
        for blocker in workflow.blockers:
            lines.append(f"  [red]{blocker.phase.value} {blocker.source.value}:{blocker.name}[/red]")
            lines.extend(f"    {d}" for d in blocker.diagnostics)
    return Panel("\n".join(lines), title=f"Workflow {workflow.id}", expand=False)


@app.command()
def advance(
    issue: str = typer.Option(..., "--issue", "-i", help="Issue number or workflow id"),
    token: str = typer.Option(..., "--token", "-t", help="APPROVE PLAN, APPLY, TEST, PR or MERGE"),
    work_dir: Optional[Path] = typer.Option(None, help="Repository checkout to work in"),
    as_json: bool = typer.Option(False, "--json", help="Print the structured result"),
):
    """Advance a workflow into the phase named by TOKEN."""
    try:
        settings = _settings(work_dir)
        workflow_id = workflow_id_for_issue(issue)
        controller = build_controller(settings)
        result = asyncio.run(controller.advance(workflow_id, token))
    except OrchestratorError as exc:
        _fail(exc, as_json)
    except KeyboardInterrupt:
        err_console.print("[yellow]Cancelled; the attempt was recorded.[/yellow]")
        raise typer.Exit(1)
    except ValueError as exc:
        err_console.print(f"[bold red]Invalid input:[/bold red] {exc}")
        raise typer.Exit(2)
    except Exception as exc:
        _internal_error(exc, as_json)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    console.print(f"✅ Committed {_phase(result.phase.value)} for workflow {result.workflow.id}")
    for gate in result.gate_results:
        console.print(f"  gate {gate.name}: [green]pass[/green] ({gate.duration_ms}ms)")
    if result.workflow.next_token:
        console.print(f"🎯 Ready for {result.workflow.next_token} token")
    else:
        console.print(f"🎉 Workflow {result.workflow.id} is {_phase(result.workflow.phase.value)}")


@app.command()
def status(
    issue: Optional[str] = typer.Option(None, "--issue", "-i", help="Show a single workflow"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Show the current phase of one or all workflows."""
    try:
        registry = build_registry(_settings())
        if issue is not None:
            workflow = registry.get(workflow_id_for_issue(issue))
            if as_json:
                typer.echo(json.dumps(workflow.to_dict(), indent=2, default=str))
            else:
                console.print(_workflow_panel(workflow))
            return
        workflows = registry.list_workflows()
    except OrchestratorError as exc:
        _fail(exc, as_json)

    if as_json:
        typer.echo(json.dumps([w.to_dict() for w in workflows], indent=2, default=str))
        return
    if not workflows:
        console.print("No workflows registered")
        return

    table = Table(title="Workflows", show_header=True, header_style="bold magenta")
    table.add_column("Id", style="cyan")
    table.add_column("Phase")
    table.add_column("Next token", style="yellow")
    table.add_column("Blockers", style="red")
    table.add_column("Updated")
    for workflow in workflows:
        table.add_row(
            workflow.id,
            _phase(workflow.phase.value),
            workflow.next_token or "-",
            str(len(workflow.blockers)),
            workflow.updated_at.isoformat() if workflow.updated_at else "",
        )
    console.print(table)


@app.command()
def history(
    issue: str = typer.Option(..., "--issue", "-i", help="Issue number or workflow id"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Show the audit trail of a workflow."""
    try:
        entries = build_registry(_settings()).history(workflow_id_for_issue(issue))
    except OrchestratorError as exc:
        _fail(exc, as_json)

    if as_json:
        typer.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    table = Table(title=f"History of {workflow_id_for_issue(issue)}", show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim")
    table.add_column("Phase")
    table.add_column("Outcome")
    table.add_column("Agent", style="blue")
    table.add_column("Exited")
    table.add_column("Reason")
    for entry in entries:
        outcome_style = "green" if entry.outcome.value == "completed" else "red"
        table.add_row(
            str(entry.sequence),
            _phase(entry.phase.value),
            f"[{outcome_style}]{entry.outcome.value}[/{outcome_style}]",
            entry.agent or "",
            entry.exited_at.isoformat() if entry.exited_at else "",
            entry.reason or "",
        )
    console.print(table)


@app.command()
def export(
    issue: Optional[str] = typer.Option(None, "--issue", "-i", help="Limit to one workflow"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write JSON lines here"),
):
    """Export history rows as JSON lines."""
    try:
        workflow_id = workflow_id_for_issue(issue) if issue is not None else None
        rows = build_registry(_settings()).export_history(workflow_id)
    except OrchestratorError as exc:
        _fail(exc)

    lines = [json.dumps(row, default=str) for row in rows]
    if output is None:
        for line in lines:
            typer.echo(line)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    err_console.print(f"Exported {len(lines)} history rows to {output}")


@app.command()
def report(issue: str = typer.Option(..., "--issue", "-i", help="Issue number or workflow id")):
    """Print the execution report of a workflow as JSON."""
    try:
        data = build_controller(_settings()).report(workflow_id_for_issue(issue))
    except OrchestratorError as exc:
        _fail(exc, True)
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def abort(
    issue: str = typer.Option(..., "--issue", "-i", help="Issue number or workflow id"),
    reason: str = typer.Option(..., "--reason", "-r", help="Recorded in the history"),
):
    """Move a workflow to FAILED."""
    try:
        workflow = build_controller(_settings()).abort(workflow_id_for_issue(issue), reason)
    except OrchestratorError as exc:
        _fail(exc)
    console.print(f"Workflow {workflow.id} is now {_phase(workflow.phase.value)}")


@app.command()
def gates(phase: Optional[str] = typer.Option(None, "--phase", "-p", help="Only this phase")):
    """List the quality gates registered for each phase."""
    settings = _settings()
    framework = register_default_gates(QualityGateFramework(), settings)
    registered: Dict[Phase, List[str]] = framework.registered()
    if phase is not None:
        try:
            selected = Phase(phase.upper())
        except ValueError:
            err_console.print(f"[bold red]Unknown phase:[/bold red] {phase}")
            raise typer.Exit(2)
        registered = {selected: registered.get(selected, [])}

    table = Table(title="Quality gates", show_header=True, header_style="bold magenta")
    table.add_column("Phase", style="cyan")
    table.add_column("Gates")
    for gate_phase, names in registered.items():
        table.add_row(gate_phase.value, ", ".join(names) or "-")
    console.print(table)


@app.command("init-db")
def init_db():
    """Create the database tables."""
    settings = _settings()
    url = settings.resolved_database_url()
    try:
        init_database(create_db_engine(url))
    except Exception as exc:
        _internal_error(exc)
    console.print(f"✅ Database ready at {url}")


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the status API on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Serve the read-only status API."""
    settings = _settings()
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(Panel.fit(f"Status API on http://{host}:{port}", style="bold blue"))
    uvicorn.run(
        "phase_orchestrator.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    console.print(Panel.fit(f"Phase Orchestrator v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
