"""
flowsim command line

    flowsim solve plant.json --tolerance 1e-6 --output report.json
    flowsim validate plant.json
    flowsim serve --port 8000

The exit code of ``solve`` is the report status: 0 converged, 1 diverged,
2 validation error, 3 infeasible, 4 cancelled.
"""

from __future__ import annotations

import signal
import sys
from pathlib import Path
from typing import Optional

import pydantic
import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.table import Table

from . import __version__, schemas
from .cancellation import CancellationToken
from .simulation_service import SimulationService, load_definition

app = typer.Typer(help="Steady-state sequential-modular flowsheet simulation", no_args_is_help=True)
console = Console()

_STATUS_STYLE = {
    schemas.SolveStatus.CONVERGED: "bold green",
    schemas.SolveStatus.DIVERGED: "bold yellow",
    schemas.SolveStatus.INFEASIBLE: "bold red",
    schemas.SolveStatus.VALIDATION_ERROR: "bold red",
    schemas.SolveStatus.CANCELLED: "bold magenta",
}


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _load(path: Path) -> Optional[schemas.FlowsheetDefinition]:
    try:
        return load_definition(path)
    except pydantic.ValidationError as exc:
        console.print(f"[bold red]Invalid flowsheet definition[/bold red] {path}:\n{exc}")
        return None


def _print_report(report: schemas.SolveReport) -> None:
    style = _STATUS_STYLE[report.status]
    console.print(f"[{style}]{report.status.value}[/{style}] {report.flowsheet_name}: {report.message}")
    if report.operation_id:
        console.print(f"  operation: {report.operation_id}")
    if report.status != schemas.SolveStatus.CONVERGED:
        return

    table = Table(title="Streams", box=box.SIMPLE)
    for column in ("Stream", "T [K]", "P [kPa]", "Flow [mol/s]", "Mass [kg/s]", "Phase", "VF"):
        table.add_column(column, justify="left" if column in ("Stream", "Phase") else "right")
    for s in report.streams:
        name = f"{s.id} (tear)" if s.is_tear else s.id
        table.add_row(
            name,
            f"{s.temperature:.2f}",
            f"{s.pressure / 1000.0:.2f}",
            f"{s.molar_flow:.6g}",
            f"{s.mass_flow:.6g}",
            s.phase or "",
            f"{s.vapor_fraction:.4f}" if s.vapor_fraction is not None else "",
        )
    console.print(table)

    duties = [op for op in report.operations if op.duty]
    if duties:
        ops = Table(title="Duties", box=box.SIMPLE)
        ops.add_column("Operation")
        ops.add_column("Kind")
        ops.add_column("Duty [kW]", justify="right")
        for op in duties:
            ops.add_row(op.id, op.kind, f"{op.duty / 1000.0:.3f}")
        console.print(ops)

    console.print(
        f"iterations: {report.iterations}  "
        f"mass balance error: {report.mass_balance_error:.2e}  "
        f"energy balance error: {report.energy_balance_error:.2e}"
    )
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command()
def solve(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Flowsheet definition (JSON)"),
    tolerance: Optional[float] = typer.Option(None, "--tolerance", "-t", min=0.0, help="Relative tear tolerance"),
    max_iter: Optional[int] = typer.Option(None, "--max-iter", min=1, help="Outer iteration cap"),
    method: Optional[str] = typer.Option(None, "--method", help="direct, wegstein or broyden"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", min=1, help="Parallel operation evaluation"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for flash retry perturbations"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the JSON report here"),
    json_output: bool = typer.Option(False, "--json", help="Print the JSON report instead of tables"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for stderr"),
) -> None:
    """Solve a flowsheet and exit with the report status code."""
    configure_logging(log_level)
    definition = _load(path)
    if definition is None:
        raise typer.Exit(schemas.EXIT_CODES[schemas.SolveStatus.VALIDATION_ERROR])

    cancel = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.cancel("interrupted"))
    try:
        report = SimulationService().solve(
            definition,
            cancel=cancel,
            tolerance=tolerance,
            max_iterations=max_iter,
            method=method,
            max_workers=max_workers,
            seed=seed,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if output is not None:
        output.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    if json_output:
        console.print_json(report.model_dump_json())
    else:
        _print_report(report)
    raise typer.Exit(report.exit_code)


@app.command()
def validate(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Flowsheet definition (JSON)"),
    log_level: str = typer.Option("WARNING", "--log-level"),
) -> None:
    """Check structure, degrees of freedom and tear selection without solving."""
    configure_logging(log_level)
    definition = _load(path)
    if definition is None:
        raise typer.Exit(schemas.EXIT_CODES[schemas.SolveStatus.VALIDATION_ERROR])

    result = SimulationService().validate(definition)
    if result.valid:
        console.print(f"[bold green]valid[/bold green] {result.flowsheet_name}")
        console.print(f"  order: {' -> '.join(result.calculation_order)}")
        for loop in result.recycles:
            console.print(f"  recycle: {', '.join(loop)}")
        if result.tear_streams:
            console.print(f"  tear streams: {', '.join(result.tear_streams)}")
    else:
        where = f" [{result.operation_id}]" if result.operation_id else ""
        console.print(f"[bold red]invalid[/bold red] {result.flowsheet_name}{where}: {result.message}")
    raise typer.Exit(result.exit_code)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port", min=1, max=65535),
    log_level: str = typer.Option("INFO", "--log-level"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    configure_logging(log_level)
    uvicorn.run("flowsim.main:app", host=host, port=port, log_level=log_level.lower())


@app.command()
def version() -> None:
    console.print(f"flowsim {__version__}")


if __name__ == "__main__":
    app()
