"""Tests for PipelineCoordinator.

Tests cover:
- State machine ordering and terminal states
- Invalid record policies (flag, drop, quarantine)
- Crash and resume without re-emitting checkpointed records
- Retries of transient chunk errors, and retry exhaustion
- Cooperative chunk timeouts
- Cancellation between chunks
- Escalation of critical errors
- Deterministic reports under parallel processing
"""

import threading

import pandas as pd
import pytest

from clinical_intake.adapters.ingesters.csv_source import DataFrameRecordSource
from clinical_intake.adapters.resources import StaticResourceProbe
from clinical_intake.adapters.sinks import ListRecordSink
from clinical_intake.adapters.storage.memory_medium import InMemoryCheckpointMedium
from clinical_intake.domain.checkpoint_store import CheckpointStore
from clinical_intake.domain.chunk_planner import ChunkPlanner, ChunkPlannerConfig
from clinical_intake.domain.models import (
    ConversionRule,
    CriticalErrorKind,
    InvalidRecordPolicy,
    JobState,
    ProcessingMetadata,
    SchemaIssueKind,
    SemanticType,
)
from clinical_intake.domain.pipeline_coordinator import (
    ISSUES_FIELD,
    JOB_CANCELLED,
    OFFSET_FIELD,
    CoordinatorConfig,
    PipelineCoordinator,
)
from clinical_intake.domain.ports import JobFailure, RecordSourcePort
from clinical_intake.domain.quality_scanner import DataQualityScanner
from clinical_intake.domain.validators import ValidatorContext

GB = 1024 ** 3

SCHEMA = {
    "patient_id": SemanticType.IDENTIFIER,
    "collected": SemanticType.DATE,
    "glucose": SemanticType.MEASUREMENT,
}

CONTEXT = ValidatorContext(unit_conversions={"mg/dL": ConversionRule(canonical_unit="g/L", factor=0.01)})


def lab_frame(count=25, overrides=None):
    """Lab results with one row per patient; ``overrides`` maps (row, column) to a value."""
    rows = [[f"MRN{i:05d}", "2023-02-13", "150 mg/dL"] for i in range(count)]
    frame = pd.DataFrame(rows, columns=["PatientID", "collected", "glucose"])
    for (row, column), value in (overrides or {}).items():
        frame.loc[row, column] = value
    return frame


class ScriptedSource(RecordSourcePort):
    """Wraps a source and runs ``hook(start, stop, read_number)`` before every read.

    The hook may raise to simulate failures, or return a DataFrame to replace the read.
    """

    def __init__(self, inner, hook=None):
        self.inner = inner
        self.hook = hook
        self.reads = []
        self._lock = threading.Lock()

    def column_names(self):
        return self.inner.column_names()

    def file_metadata(self, sample_size=100):
        return self.inner.file_metadata(sample_size)

    def read_records(self, start, stop):
        with self._lock:
            self.reads.append((start, stop))
            read_number = len(self.reads)
        if self.hook is not None:
            replacement = self.hook(start, stop, read_number)
            if replacement is not None:
                return replacement
        return self.inner.read_records(start, stop)


class CancellingSink(ListRecordSink):
    """Sets a cancel event after the first write."""

    def __init__(self, event):
        super().__init__()
        self.event = event

    def write(self, records):
        super().write(records)
        self.event.set()


def build(source, cores=2, medium=None, sink=None, job_id="job-test", clock=None, **config):
    medium = medium if medium is not None else InMemoryCheckpointMedium()
    sink = sink if sink is not None else ListRecordSink()
    kwargs = {"clock": clock} if clock is not None else {}
    coordinator = PipelineCoordinator(
        source=source,
        expected_schema=SCHEMA,
        planner=ChunkPlanner(ChunkPlannerConfig(max_chunk_size=10)),
        probe=StaticResourceProbe(GB, cores),
        store=CheckpointStore(medium, namespace=job_id),
        sink=sink,
        scanner=DataQualityScanner(context=CONTEXT),
        config=CoordinatorConfig(**config),
        **kwargs,
    )
    return coordinator, sink, medium


class TestCompleteRun:
    """Test a run without failures."""

    def test_every_record_is_emitted_once(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame()))
        result = coordinator.run()

        assert result.status == JobState.COMPLETE
        assert result.succeeded
        assert result.chunks_total == 3
        assert result.chunks_completed == 3
        assert result.records_emitted == 25
        assert sink.offsets() == list(range(25))
        assert result.last_verified_offsets == {
            "chunk-000000": 10,
            "chunk-000001": 20,
            "chunk-000002": 25,
        }
        assert result.report.is_clean
        assert result.report.records_scanned == 25

    def test_records_are_normalised(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame(3)))
        coordinator.run()

        record = sorted(sink.records, key=lambda r: r[OFFSET_FIELD])[0]
        assert record["patient_id"] == "MRN00000"
        assert record["collected"].isoformat() == "2023-02-13"
        assert record["glucose"].magnitude == pytest.approx(1.5)
        assert record["glucose"].unit == "g/L"
        assert ISSUES_FIELD not in record

    def test_state_order(self):
        """Test planning, validation and recovery precede any chunk processing."""
        coordinator, _, _ = build(DataFrameRecordSource(lab_frame()), checkpoint_interval=5)
        coordinator.run()
        history = coordinator.state_history

        assert history[:3] == [
            (JobState.PLANNING, None),
            (JobState.VALIDATING, None),
            (JobState.RECOVERING, None),
        ]
        assert history[3] == (JobState.PROCESSING, "chunk-000000")
        assert history[-1] == (JobState.COMPLETE, None)
        assert coordinator.state == JobState.COMPLETE

        chunk_states = history[3:-1]
        for (state, chunk_id), (next_state, next_chunk) in zip(chunk_states[::2], chunk_states[1::2]):
            assert state == JobState.PROCESSING
            assert next_state == JobState.CHECKPOINTING
            assert next_chunk == chunk_id

    def test_parallel_workers(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame()), cores=8, checkpoint_interval=3)
        result = coordinator.run()
        assert result.plan.parallel_process_count == 7
        assert result.succeeded
        assert sink.offsets() == list(range(25))

    def test_empty_source(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame(0)))
        result = coordinator.run()
        assert result.status == JobState.COMPLETE
        assert result.chunks_total == 0
        assert sink.records == []

    def test_schema_issues_reach_the_report(self):
        frame = lab_frame().drop(columns=["glucose"])
        coordinator, sink, _ = build(DataFrameRecordSource(frame))
        result = coordinator.run()

        assert result.succeeded
        assert [(i.kind, i.field) for i in result.report.schema_issues] == [(SchemaIssueKind.MISSING, "glucose")]
        assert result.preflight_report.schema_issues == result.report.schema_issues
        assert len(sink.records) == 25

    def test_incomplete_schema_fails_when_required(self):
        """Test a missing field stops the job before any chunk is dispatched."""
        frame = lab_frame().drop(columns=["glucose"])
        coordinator, sink, medium = build(DataFrameRecordSource(frame), require_complete_schema=True)
        result = coordinator.run()

        assert result.status == JobState.FAILED
        assert result.error_summary[0].startswith("SchemaError: ")
        assert "glucose (missing)" in result.error_summary[0]
        assert sink.records == []
        assert CheckpointStore(medium, namespace="job-test").load_layout() is None

    def test_complete_schema_passes_when_required(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame()), require_complete_schema=True)
        assert coordinator.run().succeeded
        assert len(sink.records) == 25

    def test_reports_do_not_depend_on_parallelism(self):
        """Test identical input gives a byte-identical report with 1 or many workers."""
        overrides = {(3, "glucose"): "150", (12, "collected"): "garbage", (21, "glucose"): "9 furlongs"}
        sequential, _, _ = build(DataFrameRecordSource(lab_frame(overrides=overrides)), cores=2)
        parallel, _, _ = build(DataFrameRecordSource(lab_frame(overrides=overrides)), cores=8, checkpoint_interval=4)

        first = sequential.run().report
        second = parallel.run().report
        assert first.model_dump_json() == second.model_dump_json()
        assert first.total_violations == 3


class TestInvalidRecordPolicy:
    """Test routing of records with field failures."""

    OVERRIDES = {(3, "glucose"): "150", (17, "glucose"): "150"}

    def test_flag(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)))
        result = coordinator.run()

        assert result.records_emitted == 25
        flagged = {r[OFFSET_FIELD]: r for r in sink.records if ISSUES_FIELD in r}
        assert sorted(flagged) == [3, 17]
        assert flagged[3][ISSUES_FIELD] == [
            {"field": "glucose", "error_type": "DataQualityError", "raw_value": "150"}
        ]
        assert flagged[3]["glucose"] is None
        assert result.report.data_quality_issues[0].violation_count == 2

    def test_drop(self):
        coordinator, sink, _ = build(
            DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)),
            invalid_record_policy=InvalidRecordPolicy.DROP,
        )
        result = coordinator.run()

        assert result.succeeded
        assert result.records_emitted == 23
        assert result.records_dropped == 2
        assert sink.offsets() == [i for i in range(25) if i not in (3, 17)]

    def test_quarantine(self):
        coordinator, sink, _ = build(
            DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)),
            invalid_record_policy="quarantine",
        )
        result = coordinator.run()

        assert result.records_emitted == 23
        assert result.records_quarantined == 2
        quarantined = sorted(sink.quarantined, key=lambda r: r[OFFSET_FIELD])
        assert quarantined[0]["PatientID"] == "MRN00003"
        assert quarantined[0]["glucose"] == "150"
        assert quarantined[0][OFFSET_FIELD] == 3
        assert quarantined[0][ISSUES_FIELD][0]["field"] == "glucose"

    def test_error_counts_are_checkpointed(self):
        coordinator, _, medium = build(DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)))
        coordinator.run()

        store = CheckpointStore(medium, namespace="job-test")
        assert store.latest("chunk-000000").processing_metadata.error_counts == {"DataQualityError": 1}
        assert store.latest("chunk-000002").processing_metadata.error_counts == {}


class TestCrashAndResume:
    """Test that a resumed job continues from its checkpoints."""

    def test_resume_emits_remaining_records_only(self):
        medium = InMemoryCheckpointMedium()
        base = DataFrameRecordSource(lab_frame())

        def crash(start, stop, read_number):
            if start >= 15:
                raise RuntimeError("simulated crash")

        first, first_sink, _ = build(ScriptedSource(base, crash), medium=medium, checkpoint_interval=5)
        crashed = first.run()

        assert crashed.status == JobState.FAILED
        assert first_sink.offsets() == list(range(15))
        assert crashed.last_verified_offsets == {
            "chunk-000000": 10,
            "chunk-000001": 15,
            "chunk-000002": 20,
        }
        assert any("RuntimeError" in error for error in crashed.error_summary)

        second, second_sink, _ = build(base, medium=medium, checkpoint_interval=5)
        resumed = second.run()

        assert resumed.status == JobState.COMPLETE
        assert second_sink.offsets() == list(range(15, 25))
        combined = first_sink.offsets() + second_sink.offsets()
        assert sorted(combined) == list(range(25))
        assert len(set(combined)) == 25

    def test_resume_keeps_original_chunk_size(self):
        """Test a resumed job keeps its chunk boundaries when resources change."""
        medium = InMemoryCheckpointMedium()
        source = DataFrameRecordSource(lab_frame())
        store = CheckpointStore(medium, namespace="job-test")
        store.save_layout(chunk_size=7, total_records=25)

        coordinator, sink, _ = build(source, medium=medium)
        result = coordinator.run()
        assert result.plan.chunk_size == 7
        assert result.chunks_total == 4
        assert sink.offsets() == list(range(25))

    def test_completed_job_emits_nothing_again(self):
        medium = InMemoryCheckpointMedium()
        source = DataFrameRecordSource(lab_frame())
        build(source, medium=medium)[0].run()

        coordinator, sink, _ = build(source, medium=medium)
        result = coordinator.run()
        assert result.succeeded
        assert result.chunks_completed == 3
        assert sink.records == []

    def test_corrupted_checkpoint_index_restarts_its_chunk(self):
        """Test unreadable stored progress falls back to the chunk start instead of aborting."""
        medium = InMemoryCheckpointMedium()
        source = DataFrameRecordSource(lab_frame())
        CheckpointStore(medium, namespace="job-test").save("chunk-000000", 5, ProcessingMetadata(
            records_processed=5,
            chunk_total_records=10,
        ))
        medium.put("job-test/chunk-000000/index", '["x"]')

        coordinator, sink, _ = build(source, medium=medium)
        result = coordinator.run()
        assert result.succeeded
        assert sink.offsets() == list(range(25))

    def test_layout_mismatch_fails(self):
        medium = InMemoryCheckpointMedium()
        CheckpointStore(medium, namespace="job-test").save_layout(chunk_size=10, total_records=99)

        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame()), medium=medium)
        result = coordinator.run()
        assert result.status == JobState.FAILED
        assert result.error_summary[0].startswith("CheckpointIntegrityError")
        assert sink.records == []

        coordinator, _, _ = build(DataFrameRecordSource(lab_frame()), medium=medium)
        with pytest.raises(JobFailure):
            coordinator.run(raise_on_failure=True)


class TestRetries:
    """Test transient chunk failures."""

    def test_transient_read_error_is_retried(self):
        failed = []

        def flaky(start, stop, read_number):
            if start == 10 and not failed:
                failed.append(start)
                raise OSError("device not ready")

        source = ScriptedSource(DataFrameRecordSource(lab_frame()), flaky)
        coordinator, sink, _ = build(source)
        result = coordinator.run()

        assert result.succeeded
        assert source.reads.count((10, 20)) == 2
        assert sink.offsets() == list(range(25))

    def test_retry_exhaustion_fails_the_job(self):
        def broken(start, stop, read_number):
            if start == 0:
                raise OSError("permanently unreadable")

        source = ScriptedSource(DataFrameRecordSource(lab_frame()), broken)
        coordinator, sink, _ = build(source, max_chunk_retries=3)

        with pytest.raises(JobFailure) as exc_info:
            coordinator.run(raise_on_failure=True)

        assert source.reads == [(0, 10)] * 4
        assert "chunk-000000" in exc_info.value.error_summary[0]
        assert "ChunkProcessingError" in exc_info.value.error_summary[0]
        assert exc_info.value.last_verified_offsets == {
            "chunk-000000": 0,
            "chunk-000001": 10,
            "chunk-000002": 20,
        }
        assert sink.records == []
        assert coordinator.state == JobState.FAILED

    def test_short_read_is_retried(self):
        base = DataFrameRecordSource(lab_frame())

        def short(start, stop, read_number):
            if read_number == 1:
                return base.read_records(start, stop - 1)
            return None

        source = ScriptedSource(base, short)
        coordinator, sink, _ = build(source)
        result = coordinator.run()

        assert result.succeeded
        assert source.reads[:2] == [(0, 10), (0, 10)]
        assert sink.offsets() == list(range(25))

    def test_retry_resumes_from_last_checkpoint(self):
        """Test a retried chunk does not re-emit its committed batches."""
        failed = []

        def flaky(start, stop, read_number):
            if start == 5 and not failed:
                failed.append(start)
                raise OSError("transient")

        source = ScriptedSource(DataFrameRecordSource(lab_frame()), flaky)
        coordinator, sink, _ = build(source, checkpoint_interval=5)
        result = coordinator.run()

        assert result.succeeded
        assert source.reads[:3] == [(0, 5), (5, 10), (5, 10)]
        assert sink.offsets() == list(range(25))


class ManualClock:
    """Clock that only moves when ``advance`` is called."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTimeout:

    def advancing_source(self, clock, seconds_per_read):
        def slow(start, stop, read_number):
            clock.advance(seconds_per_read)

        return ScriptedSource(DataFrameRecordSource(lab_frame()), slow)

    def test_single_batch_chunk_times_out(self):
        """Test a chunk processed as one batch still fails when its read overruns."""
        clock = ManualClock()
        source = self.advancing_source(clock, 100)
        coordinator, sink, _ = build(source, clock=clock, chunk_timeout_seconds=1, max_chunk_retries=0)
        result = coordinator.run()

        assert result.status == JobState.FAILED
        assert "ChunkTimeoutError" in result.error_summary[0]
        assert result.last_verified_offsets["chunk-000000"] == 0
        assert sink.records == []

    def test_overrunning_batch_is_not_committed(self):
        """Test a chunk fails at its last checkpoint when a later batch overruns."""
        clock = ManualClock()
        source = self.advancing_source(clock, 100)
        coordinator, sink, _ = build(
            source,
            clock=clock,
            chunk_timeout_seconds=150,
            checkpoint_interval=5,
            max_chunk_retries=0,
        )
        result = coordinator.run()

        assert result.status == JobState.FAILED
        assert "ChunkTimeoutError" in result.error_summary[0]
        assert result.last_verified_offsets["chunk-000000"] == 5
        assert sink.offsets() == list(range(5))

    def test_timed_out_chunk_is_retried(self):
        clock = ManualClock()
        calls = []

        def slow_once(start, stop, read_number):
            if start == 0 and not calls:
                calls.append(start)
                clock.advance(100)

        source = ScriptedSource(DataFrameRecordSource(lab_frame()), slow_once)
        coordinator, sink, _ = build(source, clock=clock, chunk_timeout_seconds=1, max_chunk_retries=1)
        result = coordinator.run()

        assert result.succeeded
        assert source.reads.count((0, 10)) == 2
        assert sink.offsets() == list(range(25))


class TestCancellation:

    def test_cancel_before_dispatch_then_resume(self):
        medium = InMemoryCheckpointMedium()
        source = DataFrameRecordSource(lab_frame())
        event = threading.Event()
        event.set()

        coordinator, sink, _ = build(source, medium=medium)
        result = coordinator.run(cancel_event=event)

        assert result.status == JobState.FAILED
        assert result.error_summary[-1].startswith(JOB_CANCELLED)
        assert result.chunks_completed == 0
        assert sink.records == []

        coordinator, sink, _ = build(source, medium=medium)
        resumed = coordinator.run()
        assert resumed.succeeded
        assert sink.offsets() == list(range(25))

    def test_cancel_between_chunks(self):
        """Test the chunk in flight finishes and later chunks are not started."""
        event = threading.Event()
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame()), sink=CancellingSink(event))
        result = coordinator.run(cancel_event=event)

        assert result.status == JobState.FAILED
        assert result.chunks_completed == 1
        assert sink.offsets() == list(range(10))
        assert result.last_verified_offsets == {
            "chunk-000000": 10,
            "chunk-000001": 10,
            "chunk-000002": 20,
        }
        assert "chunk-000001" in result.error_summary[-1]


class TestCriticalErrors:

    OVERRIDES = {(12, "PatientID"): "MRN\ufffd12"}

    def test_critical_errors_are_recorded_without_escalation(self):
        coordinator, sink, _ = build(DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)))
        result = coordinator.run()

        assert result.succeeded
        assert result.report.critical_errors[0].kind == CriticalErrorKind.ENCODING_CORRUPTION
        assert result.chunk_reports["chunk-000001"].has_critical_errors
        assert not result.chunk_reports["chunk-000000"].has_critical_errors
        flagged = [r for r in sink.records if ISSUES_FIELD in r]
        assert flagged[0][ISSUES_FIELD][0]["error_type"] == "EncodingCorruptionError"

    def test_single_bad_identifier_stays_recoverable_in_small_batches(self):
        """Test one bad identifier in a valid column is a violation whatever the batch size."""
        frame = lab_frame(overrides={(3, "PatientID"): "bad id!"})
        coordinator, sink, _ = build(
            DataFrameRecordSource(frame), checkpoint_interval=1, escalate_critical_errors=True
        )
        result = coordinator.run()

        assert result.succeeded
        assert not result.report.has_critical_errors
        issue = result.report.data_quality_issues[0]
        assert (issue.field, issue.violation_count) == ("patient_id", 1)
        assert sink.offsets() == list(range(25))

    def test_incompatible_identifier_column_is_critical_in_every_batch(self):
        frame = lab_frame()
        frame["PatientID"] = "hello world"
        coordinator, _, _ = build(DataFrameRecordSource(frame), checkpoint_interval=1)
        result = coordinator.run()

        assert result.succeeded
        assert result.preflight_report.critical_errors[0].kind == CriticalErrorKind.INCOMPATIBLE_TYPE
        error = result.report.critical_errors[0]
        assert (error.kind, error.count) == (CriticalErrorKind.INCOMPATIBLE_TYPE, 25)
        assert result.report.data_quality_issues == ()

    def test_escalated_critical_error_fails_without_retry(self):
        source = ScriptedSource(DataFrameRecordSource(lab_frame(overrides=self.OVERRIDES)))
        coordinator, sink, _ = build(source, escalate_critical_errors=True)
        result = coordinator.run()

        assert result.status == JobState.FAILED
        assert source.reads.count((10, 20)) == 1
        assert "CriticalDataError" in result.error_summary[0]
        kinds = {e.kind for e in result.chunk_reports["chunk-000001"].critical_errors}
        assert kinds == {CriticalErrorKind.ENCODING_CORRUPTION, CriticalErrorKind.PROCESSING}
        assert sink.offsets() == list(range(10))


class TestCoordinatorConfig:

    @pytest.mark.parametrize("kwargs", [
        {"max_chunk_retries": -1},
        {"checkpoint_interval": 0},
        {"chunk_timeout_seconds": 0},
        {"invalid_record_policy": "shred"},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            CoordinatorConfig(**kwargs)
