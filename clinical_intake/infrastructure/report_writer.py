"""Validation Report Writer.

This module saves ValidationReports and job outcomes as JSON documents and prints
human-readable summaries of them.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from clinical_intake.domain.models import JobResult, ValidationReport
from clinical_intake.domain.ports import Result


def _save_model(model: BaseModel, output_path: str) -> Result[str]:
    try:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(model.model_dump(mode="json"), f, indent=2)
        return Result.success_result(str(output_file))
    except (OSError, TypeError, ValueError) as e:
        return Result.failure_result(
            ValueError(f"Failed to save report to {output_path}: {str(e)}"),
            error_type="ValueError"
        )


def save_validation_report(report: ValidationReport, output_path: str) -> Result[str]:
    """Save a ValidationReport as JSON.

    Returns:
        Result[str]: Path of the saved file, or the error
    """
    return _save_model(report, output_path)


def save_job_result(result: JobResult, output_path: str) -> Result[str]:
    """Save a job outcome (status, plan, reports, error summary, offsets) as JSON."""
    return _save_model(result, output_path)


def print_report_summary(report: ValidationReport, console: Optional[Console] = None) -> None:
    """Print a human-readable summary of a ValidationReport.

    Parameters:
        report: Report to summarise
        console: Rich console to print to (default: a new stdout console)
    """
    console = console or Console()
    console.print(f"\n[bold]Validation Report[/bold] ({report.records_scanned:,} records scanned)")

    if report.is_clean:
        console.print("[green]✓[/green] No schema, data quality or critical issues")
        return

    if report.schema_issues:
        table = Table(title="Schema Issues", show_header=True, header_style="bold")
        table.add_column("Field", style="cyan")
        table.add_column("Issue")
        table.add_column("Candidates")
        for issue in report.schema_issues:
            table.add_row(issue.field, issue.kind.value, ", ".join(issue.candidates))
        console.print(table)

    if report.data_quality_issues:
        table = Table(title="Data Quality Issues", show_header=True, header_style="bold")
        table.add_column("Field", style="cyan")
        table.add_column("Column")
        table.add_column("Type")
        table.add_column("Violations", justify="right")
        table.add_column("Samples")
        for issue in report.data_quality_issues:
            table.add_row(
                issue.field,
                issue.column,
                issue.expected_type.value,
                f"{issue.violation_count:,}",
                ", ".join(repr(value) for value in issue.sample_violations),
            )
        console.print(table)

    if report.critical_errors:
        table = Table(title="Critical Errors", show_header=True, header_style="bold red")
        table.add_column("Field", style="cyan")
        table.add_column("Kind", style="red")
        table.add_column("Count", justify="right")
        table.add_column("Message")
        for error in report.critical_errors:
            table.add_row(error.field or "-", error.kind.value, f"{error.count:,}", error.message)
        console.print(table)
