"""End-to-End Example: Lab Export to Cleaned JSON Lines.

This example demonstrates the complete data flow:
1. Pre-flight validation of a CSV export against an expected schema
2. Chunk planning from the file size and the machine's resources
3. Checkpointed ingestion into a JSON Lines file, with invalid rows quarantined
4. Resuming the same job after an interruption

Run it with ``python examples/end_to_end_flow.py`` after ``pip install -e .``.
"""

import csv
import tempfile
import threading
from pathlib import Path

from clinical_intake.adapters.ingesters import get_source
from clinical_intake.infrastructure.config_manager import ConfigManager
from clinical_intake.infrastructure.logging_config import setup_logging
from clinical_intake.infrastructure.report_writer import print_report_summary
from clinical_intake.main import plan_source, run_pipeline, validate_source


def create_sample_csv(file_path: Path) -> None:
    """Create a sample lab export with a few bad values."""
    rows = [
        ["Patient ID", "Collected", "Glucose", "Phone"],
        ["MRN001", "2023-01-15", "95 mg/dL", "555-123-4567"],
        ["MRN002", "2023-01-16", "1.1 g/L", "(555) 987-6543"],
        ["MRN003", "2023-01-17", "<0.5 g/L", ""],
        ["MRN004", "2023-01-18", "high", "555-111-2222"],
        ["MRN005", "2023-01-19", "110 mg/dL", "12345"],
        ["MRN006", "2023-01-20", "", "555-333-4444"],
    ]
    with open(file_path, "w", newline="", encoding="utf-8") as f:
        csv.writer(f).writerows(rows)
    print(f"SUCCESS: Created CSV file: {file_path} ({len(rows) - 1} records)")


def main():
    setup_logging(log_level="WARNING")

    with tempfile.TemporaryDirectory() as tmp_dir:
        tmp = Path(tmp_dir)
        csv_path = tmp / "labs.csv"
        create_sample_csv(csv_path)

        config = ConfigManager({
            "expected_schema": {
                "patient_id": "identifier",
                "collected": "date",
                "glucose": "measurement",
                "phone": "phone",
            },
            "unit_conversions": {"mg/dL": {"canonical_unit": "g/L", "factor": 0.01}},
            "max_chunk_size": 2,
            "invalid_record_policy": "quarantine",
            "checkpoint": {"backend": "duckdb", "db_path": str(tmp / "checkpoints.duckdb")},
        }).get_pipeline_config()

        print("\n=== Step 1: Pre-flight validation ===")
        source = get_source(str(csv_path))
        print_report_summary(validate_source(source, config))

        print("\n=== Step 2: Chunk plan ===")
        metadata, plan = plan_source(source, config)
        print(f"  Records: {metadata.total_records}")
        print(f"  Chunk size: {plan.chunk_size}, chunks: {plan.estimated_chunk_count}, "
              f"workers: {plan.parallel_process_count}")

        print("\n=== Step 3: Interrupted ingestion ===")
        output_path = tmp / "labs.clean.jsonl"
        cancel_event = threading.Event()
        cancel_event.set()
        first = run_pipeline(str(csv_path), config, output_path=str(output_path), cancel_event=cancel_event)
        print(f"  Job {first.job_id}: {first.status.value} "
              f"({first.chunks_completed}/{first.chunks_total} chunks)")

        print("\n=== Step 4: Resume ===")
        second = run_pipeline(str(csv_path), config, output_path=str(output_path))
        print(f"  Job {second.job_id}: {second.status.value} "
              f"({second.chunks_completed}/{second.chunks_total} chunks)")
        print(f"  Emitted: {second.records_emitted}, quarantined: {second.records_quarantined}")

        print("\n=== Cleaned records ===")
        print(output_path.read_text(encoding="utf-8"))
        quarantine_path = tmp / "labs.clean.quarantine.jsonl"
        if quarantine_path.exists():
            print("=== Quarantined records ===")
            print(quarantine_path.read_text(encoding="utf-8"))


if __name__ == "__main__":
    main()
