"""End-to-end tests: CSV export in, cleaned JSON Lines out.

Tests cover:
- Column reconciliation, date parsing and unit conversion through the whole pipeline
- Resumption of a job by its derived id
- DuckDB-backed checkpoints created from configuration
- Pre-ingestion validation and planning helpers
"""

import csv
import json
import threading

import pytest

from clinical_intake.adapters.resources import StaticResourceProbe
from clinical_intake.adapters.storage.memory_medium import InMemoryCheckpointMedium
from clinical_intake.domain.models import JobState
from clinical_intake.domain.ports import ConfigurationError
from clinical_intake.infrastructure.config_manager import PipelineConfig
from clinical_intake.main import derive_job_id, plan_source, run_pipeline, validate_source
from clinical_intake.adapters.ingesters import get_source

PROBE = StaticResourceProbe(1024 ** 3, cpu_core_count=2)


def make_config(**overrides):
    data = {
        "expected_schema": {"patient_id": "identifier", "collected": "date", "glucose": "measurement"},
        "unit_conversions": {"mg/dL": {"canonical_unit": "g/L", "factor": 0.01}},
        "max_chunk_size": 2,
        "checkpoint": {"backend": "memory"},
    }
    data.update(overrides)
    return PipelineConfig(**data)


def write_export(path, rows):
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["patientid", "Collected", "Glucose"])
        writer.writerows(rows)
    return str(path)


def read_jsonl(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


ROWS = [
    ["MRN001", "13/02/2023", "150 mg/dL"],
    ["MRN002", "2023-02-14", ">400"],
    ["MRN003", "", "90 mg/dL"],
    ["MRN004", "garbage", "120 mg/dL"],
    ["MRN005", "2023-02-15", "1.1 g/L"],
]


class TestEndToEnd:
    """Test a complete ingestion."""

    def test_export_is_cleaned(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        result = run_pipeline(path, make_config(), medium=InMemoryCheckpointMedium(), probe=PROBE)

        assert result.status == JobState.COMPLETE
        assert result.chunks_total == 3
        assert result.records_emitted == 5

        records = sorted(read_jsonl(tmp_path / "labs.clean.jsonl"), key=lambda r: r["_offset"])
        assert [r["_offset"] for r in records] == [0, 1, 2, 3, 4]

        first = records[0]
        assert first["patient_id"] == "MRN001"
        assert first["collected"] == "2023-02-13"
        assert first["glucose"]["magnitude"] == pytest.approx(1.5)
        assert first["glucose"]["unit"] == "g/L"
        assert first["glucose"]["operator"] is None

        assert records[1]["glucose"] == {"magnitude": 400.0, "unit": None, "operator": ">"}
        assert records[2]["collected"] is None
        assert "_issues" not in records[2]
        assert records[3]["_issues"] == [
            {"field": "collected", "error_type": "DataQualityError", "raw_value": "garbage"}
        ]
        assert records[4]["glucose"]["magnitude"] == pytest.approx(1.1)

        assert result.report.data_quality_issues[0].field == "collected"
        assert result.report.data_quality_issues[0].violation_count == 1

    def test_rerun_resumes_the_same_job(self, tmp_path):
        """Test re-running after a cancelled run finishes the job without duplicates."""
        path = write_export(tmp_path / "labs.csv", ROWS)
        medium = InMemoryCheckpointMedium()
        config = make_config()

        cancel = threading.Event()
        cancel.set()
        cancelled = run_pipeline(path, config, medium=medium, probe=PROBE, cancel_event=cancel)
        assert cancelled.status == JobState.FAILED
        assert cancelled.job_id == derive_job_id(path, config)

        resumed = run_pipeline(path, config, medium=medium, probe=PROBE)
        again = run_pipeline(path, config, medium=medium, probe=PROBE)

        assert resumed.succeeded
        assert again.succeeded
        assert again.records_emitted == 0
        offsets = [r["_offset"] for r in read_jsonl(tmp_path / "labs.clean.jsonl")]
        assert sorted(offsets) == [0, 1, 2, 3, 4]

    def test_duckdb_checkpoints_from_configuration(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        db_path = str(tmp_path / "checkpoints.duckdb")
        config = make_config(checkpoint={"backend": "duckdb", "db_path": db_path})

        first = run_pipeline(path, config, output_path=str(tmp_path / "out.jsonl"), probe=PROBE)
        second = run_pipeline(path, config, output_path=str(tmp_path / "out.jsonl"), probe=PROBE)

        assert first.succeeded
        assert second.records_emitted == 0
        assert len(read_jsonl(tmp_path / "out.jsonl")) == 5
        assert (tmp_path / "checkpoints.duckdb").exists()

    def test_quarantine_policy(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        result = run_pipeline(
            path,
            make_config(invalid_record_policy="quarantine"),
            medium=InMemoryCheckpointMedium(),
            probe=PROBE,
        )
        assert result.records_quarantined == 1
        quarantined = read_jsonl(tmp_path / "labs.clean.quarantine.jsonl")
        assert quarantined[0]["Collected"] == "garbage"
        assert quarantined[0]["_offset"] == 3

    def test_missing_schema(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        with pytest.raises(ConfigurationError):
            run_pipeline(path, PipelineConfig(checkpoint={"backend": "memory"}), probe=PROBE)


class TestJobIds:

    def test_job_id_depends_on_configuration(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        assert derive_job_id(path, make_config()) == derive_job_id(path, make_config())
        assert derive_job_id(path, make_config()) != derive_job_id(path, make_config(max_chunk_size=3))
        assert derive_job_id(path, make_config()).startswith("job-")

    def test_checkpoint_location_does_not_change_job_id(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        other = make_config(checkpoint={"backend": "duckdb", "db_path": str(tmp_path / "c.duckdb")})
        assert derive_job_id(path, make_config()) == derive_job_id(path, other)


class TestValidateAndPlan:

    def test_validate_source(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        report = validate_source(get_source(path), make_config())
        assert report.records_scanned == 5
        assert report.total_violations == 1

    def test_validate_source_row_limit(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        report = validate_source(get_source(path), make_config(), max_rows=3)
        assert report.records_scanned == 3
        assert report.is_clean

    def test_validate_reports_ambiguous_dates(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", [["MRN001", "01/02/2023", "150 mg/dL"]])
        assert validate_source(get_source(path), make_config()).has_critical_errors
        resolved = validate_source(get_source(path), make_config(preferred_date_layout="%d/%m/%Y"))
        assert resolved.is_clean

    def test_validate_source_classifies_identifiers_per_column(self, tmp_path):
        """Test a bad identifier in one-record windows is a violation, not an incompatible column."""
        rows = [list(row) for row in ROWS]
        rows[2][0] = "bad id!"
        path = write_export(tmp_path / "labs.csv", rows)
        report = validate_source(get_source(path), make_config(max_chunk_size=1))
        assert not report.has_critical_errors
        assert [(i.field, i.violation_count) for i in report.data_quality_issues] == [
            ("patient_id", 1),
            ("collected", 1),
        ]

    def test_plan_source(self, tmp_path):
        path = write_export(tmp_path / "labs.csv", ROWS)
        metadata, plan = plan_source(get_source(path), make_config(), probe=PROBE)
        assert metadata.total_records == 5
        assert plan.chunk_size == 2
        assert plan.estimated_chunk_count == 3
        assert plan.parallel_process_count == 1
