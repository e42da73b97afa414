"""Command Line Interface for the Clinical Intake pipeline.

This module provides a CLI using Typer for validating exports, previewing chunk
plans and running (or resuming) checkpointed ingestion jobs.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_intake.adapters.ingesters import get_source
from clinical_intake.adapters.resources import PsutilResourceProbe, StaticResourceProbe
from clinical_intake.domain.models import InvalidRecordPolicy
from clinical_intake.domain.ports import IngestionError
from clinical_intake.infrastructure.config_manager import ConfigManager, PipelineConfig
from clinical_intake.infrastructure.logging_config import setup_logging
from clinical_intake.infrastructure.report_writer import (
    print_report_summary,
    save_job_result,
    save_validation_report,
)
from clinical_intake.infrastructure.settings import settings
from clinical_intake.main import (
    default_output_path,
    derive_job_id,
    plan_source,
    run_pipeline,
    validate_source,
)

app = typer.Typer(
    name="clinical-intake",
    help="Clinical Intake: fault-tolerant chunked ingestion of healthcare exports",
    add_completion=False
)
console = Console()


def _parse_fields(fields: Optional[List[str]]) -> Optional[Dict[str, str]]:
    """Parse repeated ``--field name=type`` options into an ordered schema."""
    if not fields:
        return None
    schema: Dict[str, str] = {}
    for item in fields:
        name, separator, semantic_type = item.partition("=")
        if not separator or not name.strip() or not semantic_type.strip():
            console.print(f"[red]✗[/red] Invalid --field '{item}', expected name=type")
            raise typer.Exit(code=2)
        schema[name.strip()] = semantic_type.strip()
    return schema


def _load_config(config_path: Optional[Path], overrides: Dict[str, Any]) -> PipelineConfig:
    try:
        manager = ConfigManager.from_file(str(config_path)) if config_path else settings.config_manager
        return manager.with_overrides(overrides).get_pipeline_config()
    except (IngestionError, FileNotFoundError) as e:
        console.print(f"[red]✗[/red] {str(e)}")
        raise typer.Exit(code=2)


def _configure_logging(verbose: bool) -> None:
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)


@app.command()
def validate(
    input_file: Path = typer.Argument(..., help="Input file path (CSV or TSV)", exists=True, dir_okay=False),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline configuration JSON file"),
    field: Optional[List[str]] = typer.Option(None, "--field", "-f", help="Expected field as name=type (repeatable)"),
    date_layout: Optional[str] = typer.Option(None, "--date-layout", help="Preferred layout for ambiguous dates, e.g. %d/%m/%Y"),
    rows: Optional[int] = typer.Option(None, "--rows", "-n", help="Only scan the first N records"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save the report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Validate a file against the expected schema without ingesting it.

    Exits with code 1 when the report contains critical errors.

    Examples:
        clinical-intake validate labs.csv -f patient_id=identifier -f collected=date
        clinical-intake validate labs.csv --config intake.json --rows 10000 -o report.json
    """
    _configure_logging(verbose)
    pipeline_config = _load_config(config, {
        "expected_schema": _parse_fields(field),
        "preferred_date_layout": date_layout,
    })

    try:
        source = get_source(str(input_file))
        with console.status("[bold green]Scanning records..."):
            report = validate_source(source, pipeline_config, max_rows=rows)
    except (IngestionError, OSError) as e:
        console.print(f"[red]✗[/red] Validation failed: {str(e)}")
        raise typer.Exit(code=1)

    print_report_summary(report, console=console)

    if output:
        save_result = save_validation_report(report, str(output))
        if save_result.is_success():
            console.print(f"\n[green]✓[/green] Report saved: {save_result.value}")
        else:
            console.print(f"[yellow]⚠[/yellow] {save_result.error}")

    if report.has_critical_errors:
        raise typer.Exit(code=1)


@app.command()
def plan(
    input_file: Path = typer.Argument(..., help="Input file path (CSV or TSV)", exists=True, dir_okay=False),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline configuration JSON file"),
    memory_mb: Optional[float] = typer.Option(None, "--memory-mb", help="Plan for this much memory instead of the host's"),
    cores: Optional[int] = typer.Option(None, "--cores", help="Plan for this many CPU cores instead of the host's"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the chunk plan for a file on this host (or for given resources)."""
    _configure_logging(verbose)
    pipeline_config = _load_config(config, {})

    probe = PsutilResourceProbe()
    if memory_mb is not None or cores is not None:
        probe = StaticResourceProbe(
            available_memory_bytes=(memory_mb * 1024 * 1024) if memory_mb is not None else probe.available_memory_bytes(),
            cpu_core_count=cores if cores is not None else probe.cpu_core_count(),
        )

    try:
        metadata, chunk_plan = plan_source(get_source(str(input_file)), pipeline_config, probe=probe)
    except (IngestionError, OSError) as e:
        console.print(f"[red]✗[/red] Planning failed: {str(e)}")
        raise typer.Exit(code=1)

    plan_table = Table(show_header=False, box=None, padding=(0, 2))
    plan_table.add_row("Records:", f"{metadata.total_records:,}")
    plan_table.add_row("Avg record size:", f"{metadata.average_record_size_bytes:,.0f} bytes")
    plan_table.add_row("Memory budget:", f"{chunk_plan.memory_budget_bytes / (1024 * 1024):,.1f} MB")
    plan_table.add_row("Chunk size:", f"{chunk_plan.chunk_size:,} records")
    plan_table.add_row("Chunks:", f"{chunk_plan.estimated_chunk_count:,}")
    plan_table.add_row("Parallel workers:", str(chunk_plan.parallel_process_count))
    plan_table.add_row("Memory per chunk:", f"{chunk_plan.estimated_memory_per_chunk_bytes / (1024 * 1024):,.2f} MB")
    console.print(plan_table)


@app.command()
def ingest(
    input_file: Path = typer.Argument(..., help="Input file path (CSV or TSV)", exists=True, dir_okay=False),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Pipeline configuration JSON file"),
    field: Optional[List[str]] = typer.Option(None, "--field", "-f", help="Expected field as name=type (repeatable)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Cleaned records file (JSON Lines)"),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Resume or name a specific job"),
    checkpoint_db: Optional[Path] = typer.Option(None, "--checkpoint-db", help="DuckDB checkpoint file"),
    policy: Optional[InvalidRecordPolicy] = typer.Option(None, "--policy", help="Invalid record policy"),
    checkpoint_interval: Optional[int] = typer.Option(None, "--checkpoint-interval", help="Records per checkpoint"),
    strict: bool = typer.Option(False, "--strict", help="Fail chunks on critical errors"),
    require_schema: bool = typer.Option(False, "--require-schema", help="Fail when an expected field is missing or ambiguous"),
    no_report: bool = typer.Option(False, "--no-report", help="Skip saving the job report"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Ingest a file in checkpointed chunks; re-running the same command resumes it.

    Examples:
        clinical-intake ingest labs.csv --config intake.json
        clinical-intake ingest labs.csv --config intake.json --policy quarantine -o clean/labs.jsonl
    """
    _configure_logging(verbose)

    checkpoint_overrides: Dict[str, Any] = {}
    if checkpoint_db:
        checkpoint_overrides = {"backend": "duckdb", "db_path": str(checkpoint_db)}
    pipeline_config = _load_config(config, {
        "expected_schema": _parse_fields(field),
        "invalid_record_policy": policy.value if policy else None,
        "checkpoint_interval": checkpoint_interval,
        "escalate_critical_errors": True if strict else None,
        "require_complete_schema": True if require_schema else None,
        "checkpoint": checkpoint_overrides or None,
    })
    if pipeline_config.checkpoint.backend == "duckdb" and not pipeline_config.checkpoint.db_path:
        Path(settings.checkpoint_dir).mkdir(parents=True, exist_ok=True)
        pipeline_config = pipeline_config.model_copy(update={
            "checkpoint": pipeline_config.checkpoint.model_copy(update={"db_path": settings.default_checkpoint_path()})
        })

    output_path = str(output) if output else default_output_path(str(input_file))
    job_id = job_id or derive_job_id(str(input_file), pipeline_config)

    console.print("\n[bold blue]Clinical Intake[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print(f"[dim]Output:[/dim] {output_path}")
    console.print(f"[dim]Job ID:[/dim] {job_id}")
    console.print(f"[dim]Checkpoints:[/dim] {pipeline_config.checkpoint.backend} "
                  f"{pipeline_config.checkpoint.db_path or ''}")
    console.print()

    try:
        with console.status("[bold green]Processing chunks..."):
            result = run_pipeline(str(input_file), pipeline_config, output_path=output_path, job_id=job_id)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]⚠[/yellow] Ingestion interrupted; re-run with --job-id {job_id} to resume")
        raise typer.Exit(code=130)
    except (IngestionError, OSError) as e:
        console.print(f"\n[red]✗[/red] Ingestion failed: {str(e)}")
        raise typer.Exit(code=1)

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Status:", f"[green]{result.status.value}[/green]" if result.succeeded
                          else f"[red]{result.status.value}[/red]")
    summary_table.add_row("Chunks:", f"{result.chunks_completed}/{result.chunks_total}")
    summary_table.add_row("Records emitted:", f"{result.records_emitted:,}")
    summary_table.add_row("Records dropped:", f"{result.records_dropped:,}")
    summary_table.add_row("Records quarantined:", f"{result.records_quarantined:,}")
    console.print(summary_table)

    print_report_summary(result.report, console=console)

    if not no_report:
        report_file = Path(settings.report_dir) / f"job_report_{job_id}.json"
        save_result = save_job_result(result, str(report_file))
        if save_result.is_success():
            console.print(f"\n[green]✓[/green] Job report saved: {save_result.value}")
        else:
            console.print(f"[yellow]⚠[/yellow] {save_result.error}")

    if not result.succeeded:
        console.print("\n[red]✗[/red] Job failed:")
        for line in result.error_summary:
            console.print(f"  • {line}")
        console.print(f"[dim]Re-run with --job-id {job_id} to resume from the last verified checkpoints.[/dim]")
        raise typer.Exit(code=1)

    console.print("\n[green]✓[/green] Ingestion completed successfully")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    probe = PsutilResourceProbe()
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} v{settings.app_version}")
    info_table.add_row("Available memory:", f"{probe.available_memory_bytes() / (1024 * 1024):,.0f} MB")
    info_table.add_row("CPU cores:", str(probe.cpu_core_count()))
    info_table.add_row("Log level:", settings.log_level)
    info_table.add_row("Report directory:", settings.report_dir)
    info_table.add_row("Checkpoint file:", settings.default_checkpoint_path())
    info_table.add_row("Config file:", settings.config_path or "(environment)")
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Clinical Intake: fault-tolerant chunked ingestion of healthcare exports."""
    if version:
        console.print(f"{settings.app_name} v{settings.app_version}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
