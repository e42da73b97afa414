"""Pipeline Coordinator - resumable, chunked processing of one file.

State machine:
    PLANNING -> VALIDATING -> RECOVERING -> PROCESSING(i) -> CHECKPOINTING(i) -> ... -> COMPLETE
    any state -> FAILED

Each chunk is processed in commit batches. A batch is read, validated, routed by the
invalid record policy, written to the sink and then checkpointed, so a checkpoint
always marks the end of output that has been fully emitted. After a crash the chunk
resumes at its last verified checkpoint; records before it are never emitted again.

Concurrency:
    Chunks run on a ThreadPoolExecutor. Every worker owns a disjoint, contiguous range
    of chunks, so checkpoint writes for a chunk have a single writer. Cancellation is
    observed between chunks; chunks already in flight run to completion.
"""

import logging
import math
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from clinical_intake.domain.checkpoint_store import CheckpointStore
from clinical_intake.domain.chunk_planner import ChunkPlanner
from clinical_intake.domain.models import (
    ChunkPlan,
    ChunkSpec,
    CriticalError,
    CriticalErrorKind,
    InvalidRecordPolicy,
    JobResult,
    JobState,
    ProcessingMetadata,
    SemanticType,
    ValidationReport,
)
from clinical_intake.domain.ports import (
    CheckpointIntegrityError,
    ChunkProcessingError,
    ChunkTimeoutError,
    CriticalDataError,
    IngestionError,
    JobFailure,
    RecordSinkPort,
    RecordSourcePort,
    ResourceProbePort,
    SchemaError,
    StorageError,
)
from clinical_intake.domain.quality_scanner import (
    DataQualityScanner,
    FieldFailure,
    FrameValidation,
    coerce_expected_schema,
)
from clinical_intake.domain.schema_reconciler import ReconciliationResult

logger = logging.getLogger(__name__)

OFFSET_FIELD = "_offset"
ISSUES_FIELD = "_issues"
JOB_CANCELLED = "JobCancelled"


@dataclass
class CoordinatorConfig:
    """Configuration for PipelineCoordinator behavior.

    Attributes:
        max_chunk_retries: Retries of a chunk after a recoverable error before the job fails
        chunk_timeout_seconds: Cooperative per-attempt time budget of a chunk (None disables)
        checkpoint_interval: Records per commit batch (None checkpoints once per chunk)
        invalid_record_policy: What happens to records with field failures
        escalate_critical_errors: Fail a chunk (without retry) on any critical error
        preflight_sample_size: Leading records validated before any chunk is dispatched
        require_complete_schema: Fail the job before dispatch when an expected field is missing or ambiguous
    """
    max_chunk_retries: int = 3
    chunk_timeout_seconds: Optional[float] = None
    checkpoint_interval: Optional[int] = None
    invalid_record_policy: InvalidRecordPolicy = InvalidRecordPolicy.FLAG
    escalate_critical_errors: bool = False
    preflight_sample_size: int = 100
    require_complete_schema: bool = False

    def __post_init__(self):
        self.invalid_record_policy = InvalidRecordPolicy(self.invalid_record_policy)
        if self.max_chunk_retries < 0:
            raise ValueError(f"max_chunk_retries must be >= 0, got {self.max_chunk_retries}")
        if self.checkpoint_interval is not None and self.checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}")
        if self.chunk_timeout_seconds is not None and self.chunk_timeout_seconds <= 0:
            raise ValueError(f"chunk_timeout_seconds must be > 0, got {self.chunk_timeout_seconds}")


@dataclass
class ChunkProgress:
    """Mutable progress of one chunk, mirroring its last committed checkpoint."""
    spec: ChunkSpec
    offset: int
    report: ValidationReport = field(default_factory=ValidationReport)
    error_counts: Dict[str, int] = field(default_factory=dict)
    records_emitted: int = 0
    records_dropped: int = 0
    records_quarantined: int = 0
    attempts: int = 0
    completed: bool = False
    error: Optional[str] = None

    @property
    def resumed(self) -> bool:
        return self.offset > self.spec.start


class PipelineCoordinator:
    """Drives a file through planning, validation, recovery and chunk processing.

    Parameters:
        source: Record source for the file
        expected_schema: Ordered ``{field: semantic type}`` mapping
        planner: ChunkPlanner for chunk sizing
        probe: Resource probe queried once while planning
        store: CheckpointStore scoped to this job
        sink: Destination of cleaned and quarantined records
        scanner: DataQualityScanner (defaults to one with default validators)
        config: CoordinatorConfig (uses defaults if None)
        job_id: Job identifier (defaults to the checkpoint namespace)
        clock: Monotonic clock used for chunk timeouts

    Example Usage:
        ```python
        coordinator = PipelineCoordinator(
            source=CSVRecordSource("labs.csv"),
            expected_schema={"patient_id": "identifier", "glucose": "measurement"},
            planner=ChunkPlanner(),
            probe=PsutilResourceProbe(),
            store=CheckpointStore(medium, namespace=job_id),
            sink=JsonLinesRecordSink("labs.clean.jsonl"),
        )
        result = coordinator.run(raise_on_failure=True)
        ```
    """

    def __init__(
        self,
        source: RecordSourcePort,
        expected_schema: Mapping[str, Union[SemanticType, str]],
        planner: ChunkPlanner,
        probe: ResourceProbePort,
        store: CheckpointStore,
        sink: RecordSinkPort,
        scanner: Optional[DataQualityScanner] = None,
        config: Optional[CoordinatorConfig] = None,
        job_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.expected_schema = expected_schema
        self.planner = planner
        self.probe = probe
        self.store = store
        self.sink = sink
        self.scanner = scanner or DataQualityScanner()
        self.config = config or CoordinatorConfig()
        self.job_id = job_id or store.namespace
        self.clock = clock

        self._transitions: List[Tuple[JobState, Optional[str]]] = []
        self._transitions_lock = threading.Lock()
        self._abort = threading.Event()

        self._schema: Dict[str, SemanticType] = {}
        self._reconciliation: Optional[ReconciliationResult] = None
        self._incompatible_fields: FrozenSet[str] = frozenset()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, state: JobState, chunk_id: Optional[str] = None) -> None:
        with self._transitions_lock:
            self._transitions.append((state, chunk_id))
        if chunk_id is None:
            logger.info(f"Job {self.job_id}: {state.value}")
        else:
            logger.debug(f"Job {self.job_id}: {state.value} {chunk_id}")

    @property
    def state(self) -> Optional[JobState]:
        with self._transitions_lock:
            return self._transitions[-1][0] if self._transitions else None

    @property
    def state_history(self) -> List[Tuple[JobState, Optional[str]]]:
        with self._transitions_lock:
            return list(self._transitions)

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(
        self,
        cancel_event: Optional[threading.Event] = None,
        raise_on_failure: bool = False,
    ) -> JobResult:
        """Run (or resume) the job and return its terminal outcome.

        Parameters:
            cancel_event: Set to stop dispatching further chunks; the job ends FAILED
                          and can be resumed later
            raise_on_failure: Raise JobFailure instead of returning a FAILED result

        Raises:
            JobFailure: If ``raise_on_failure`` is set and the job did not complete
        """
        cancel_event = cancel_event or threading.Event()
        self._abort.clear()

        self._transition(JobState.PLANNING)
        try:
            self._schema = coerce_expected_schema(self.expected_schema)
            metadata = self.source.file_metadata(sample_size=self.config.preflight_sample_size)
            layout = self.store.load_layout()
            fixed_chunk_size = None
            if layout is not None:
                if layout["total_records"] != metadata.total_records:
                    raise CheckpointIntegrityError(
                        f"Checkpoints of job {self.job_id} cover {layout['total_records']} records "
                        f"but the source now has {metadata.total_records}"
                    )
                fixed_chunk_size = layout["chunk_size"]
                logger.info(f"Resuming job {self.job_id} with its original chunk size {fixed_chunk_size}")
            plan = self.planner.plan_for(metadata, self.probe, chunk_size=fixed_chunk_size)
        except (IngestionError, OSError) as e:
            logger.error(f"Planning failed for job {self.job_id}: {e}")
            return self._finish_failed([f"{type(e).__name__}: {e}"], raise_on_failure)

        self._transition(JobState.VALIDATING)
        try:
            preflight_report = self._preflight(metadata.sample_records)
        except (IngestionError, OSError) as e:
            logger.error(f"Pre-flight validation failed for job {self.job_id}: {e}")
            return self._finish_failed([f"{type(e).__name__}: {e}"], raise_on_failure, plan=plan)

        if preflight_report.has_critical_errors:
            logger.warning(
                f"Pre-flight sample of job {self.job_id} has "
                f"{len(preflight_report.critical_errors)} critical errors"
            )

        self._transition(JobState.RECOVERING)
        specs = plan.chunk_specs(metadata.total_records)
        try:
            progress = self._recover(specs)
            if layout is None:
                self.store.save_layout(plan.chunk_size, metadata.total_records)
        except (IngestionError, OSError) as e:
            logger.error(f"Recovery failed for job {self.job_id}: {e}")
            return self._finish_failed(
                [f"{type(e).__name__}: {e}"], raise_on_failure, plan=plan, preflight_report=preflight_report
            )

        pending = [spec for spec in specs if not progress[spec.chunk_id].completed]
        cancelled: List[str] = []
        if pending:
            self._dispatch(plan, pending, progress, cancel_event, cancelled)

        return self._finish(plan, specs, progress, preflight_report, cancelled, raise_on_failure)

    def _preflight(self, sample_records: Sequence[Dict[str, Any]]) -> ValidationReport:
        """Validate the leading sample and fix the column-level type decisions for every batch."""
        columns = self.source.column_names()
        self._reconciliation = self.scanner.reconciler.reconcile(list(self._schema), columns)
        sample = pd.DataFrame(list(sample_records), columns=columns)
        validation = self.scanner.validate_frame(sample, self._schema, self._reconciliation)
        self._incompatible_fields = validation.incompatible_fields
        logger.info(
            f"Pre-flight of job {self.job_id}: {len(sample)} sample records, "
            f"{len(validation.report.schema_issues)} schema issues, "
            f"{validation.report.total_violations} violations"
        )
        if self.config.require_complete_schema and validation.report.schema_issues:
            unresolved = ", ".join(f"{issue.field} ({issue.kind.value})" for issue in validation.report.schema_issues)
            raise SchemaError(
                f"Job {self.job_id} requires a complete schema; unresolved fields: {unresolved}",
                details={"fields": [issue.field for issue in validation.report.schema_issues]},
            )
        return validation.report

    def _recover(self, specs: Sequence[ChunkSpec]) -> Dict[str, ChunkProgress]:
        """Load the last verified checkpoint of every chunk before anything is dispatched."""
        progress: Dict[str, ChunkProgress] = {}
        resumed = 0
        for spec in specs:
            checkpoint = self.store.latest(spec.chunk_id)
            chunk = ChunkProgress(spec=spec, offset=spec.start)
            if checkpoint is not None:
                offset = checkpoint.last_processed_record_offset
                if spec.start <= offset <= spec.stop:
                    chunk.offset = offset
                    chunk.report = checkpoint.processing_metadata.validation_state
                    chunk.error_counts = dict(checkpoint.processing_metadata.error_counts)
                    resumed += 1
                else:
                    logger.warning(
                        f"Checkpoint offset {offset} of {spec.chunk_id} lies outside "
                        f"[{spec.start}, {spec.stop}); restarting the chunk",
                        extra={"chunk_id": spec.chunk_id},
                    )
            chunk.completed = chunk.offset >= spec.stop
            progress[spec.chunk_id] = chunk

        if resumed:
            completed = sum(1 for chunk in progress.values() if chunk.completed)
            logger.info(f"Job {self.job_id}: resuming {resumed} chunks from checkpoints ({completed} complete)")
        return progress

    def _dispatch(
        self,
        plan: ChunkPlan,
        pending: List[ChunkSpec],
        progress: Dict[str, ChunkProgress],
        cancel_event: threading.Event,
        cancelled: List[str],
    ) -> None:
        workers = max(1, min(plan.parallel_process_count, len(pending)))
        per_worker = math.ceil(len(pending) / workers)
        ranges = [pending[i:i + per_worker] for i in range(0, len(pending), per_worker)]
        cancelled_lock = threading.Lock()

        def run_range(chunk_range: List[ChunkSpec]) -> None:
            for index, spec in enumerate(chunk_range):
                if cancel_event.is_set() or self._abort.is_set():
                    skipped = [s.chunk_id for s in chunk_range[index:]]
                    if cancel_event.is_set():
                        with cancelled_lock:
                            cancelled.extend(skipped)
                    return
                if not self._process_with_retries(progress[spec.chunk_id]):
                    self._abort.set()

        logger.info(f"Job {self.job_id}: dispatching {len(pending)} chunks to {len(ranges)} workers")
        with ThreadPoolExecutor(max_workers=len(ranges), thread_name_prefix="chunk-worker") as executor:
            futures = [executor.submit(run_range, chunk_range) for chunk_range in ranges]
            for future in futures:
                future.result()

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def _process_with_retries(self, chunk: ChunkProgress) -> bool:
        """Process a chunk, retrying recoverable errors from its last checkpoint."""
        chunk_id = chunk.spec.chunk_id
        while True:
            chunk.attempts += 1
            try:
                self._process_chunk(chunk)
                chunk.completed = True
                return True
            except ChunkProcessingError as e:
                retries_used = chunk.attempts - 1
                if retries_used >= self.config.max_chunk_retries:
                    logger.error(
                        f"Chunk {chunk_id} failed after {chunk.attempts} attempts: {e}",
                        extra={"chunk_id": chunk_id, "offset": chunk.offset},
                    )
                    self._mark_failed(chunk, e)
                    return False
                logger.warning(
                    f"Chunk {chunk_id} attempt {chunk.attempts} failed ({type(e).__name__}: {e}); "
                    f"retrying from offset {chunk.offset}",
                    extra={"chunk_id": chunk_id, "offset": chunk.offset},
                )
            except (CriticalDataError, CheckpointIntegrityError) as e:
                logger.error(f"Chunk {chunk_id} failed: {e}", extra={"chunk_id": chunk_id})
                self._mark_failed(chunk, e)
                return False
            except Exception as e:
                logger.error(
                    f"Unexpected error processing chunk {chunk_id}: {e}",
                    exc_info=True,
                    extra={"chunk_id": chunk_id},
                )
                self._mark_failed(chunk, e)
                return False

    def _mark_failed(self, chunk: ChunkProgress, error: Exception) -> None:
        chunk.error = f"{chunk.spec.chunk_id}: {type(error).__name__}: {error}"
        processing_error = ValidationReport(critical_errors=(CriticalError(
            kind=CriticalErrorKind.PROCESSING,
            message=chunk.error,
        ),))
        chunk.report = ValidationReport.merge([chunk.report, processing_error], field_order=list(self._schema))

    def _process_chunk(self, chunk: ChunkProgress) -> None:
        spec = chunk.spec
        interval = self.config.checkpoint_interval or max(spec.size, 1)
        started = self.clock()

        while chunk.offset < spec.stop:
            self._check_timeout(chunk, started)
            self._process_batch(chunk, min(chunk.offset + interval, spec.stop), started)

    def _check_timeout(self, chunk: ChunkProgress, started: float) -> None:
        """Raise ChunkTimeoutError once the attempt has run longer than the chunk timeout."""
        timeout = self.config.chunk_timeout_seconds
        if timeout is None:
            return
        elapsed = self.clock() - started
        if elapsed > timeout:
            raise ChunkTimeoutError(
                f"Chunk exceeded {timeout}s ({elapsed:.1f}s elapsed) at offset {chunk.offset}",
                chunk_id=chunk.spec.chunk_id,
                details={"offset": chunk.offset},
            )

    def _process_batch(self, chunk: ChunkProgress, batch_stop: int, started: float) -> None:
        spec = chunk.spec
        batch_start = chunk.offset
        self._transition(JobState.PROCESSING, spec.chunk_id)

        try:
            frame = self.source.read_records(batch_start, batch_stop)
        except OSError as e:
            raise ChunkProcessingError(
                f"Failed to read records [{batch_start}, {batch_stop}): {e}",
                chunk_id=spec.chunk_id,
            ) from e
        if len(frame) != batch_stop - batch_start:
            raise ChunkProcessingError(
                f"Short read: expected {batch_stop - batch_start} records from offset "
                f"{batch_start}, got {len(frame)}",
                chunk_id=spec.chunk_id,
            )

        frame = frame.reset_index(drop=True)
        validation = self.scanner.validate_frame(
            frame, self._schema, self._reconciliation, self._incompatible_fields
        )
        field_order = list(self._schema)

        if self.config.escalate_critical_errors and validation.report.has_critical_errors:
            chunk.report = ValidationReport.merge([chunk.report, validation.report], field_order=field_order)
            kinds = sorted({error.kind.value for error in validation.report.critical_errors})
            raise CriticalDataError(
                f"Critical errors ({', '.join(kinds)}) in records [{batch_start}, {batch_stop})",
                details={"chunk_id": spec.chunk_id},
            )

        # Nothing of this batch is written or checkpointed once the attempt overruns
        self._check_timeout(chunk, started)

        emitted, quarantined, dropped = self._route(frame, validation, batch_start)
        try:
            if emitted:
                self.sink.write(emitted)
            if quarantined:
                self.sink.quarantine(quarantined)
        except OSError as e:
            raise ChunkProcessingError(f"Failed to write records: {e}", chunk_id=spec.chunk_id) from e

        report = ValidationReport.merge([chunk.report, validation.report], field_order=field_order)
        error_counts = Counter(chunk.error_counts)
        error_counts.update(failure.error_type for failures in validation.failures for failure in failures)
        metadata = ProcessingMetadata(
            records_processed=batch_stop - spec.start,
            chunk_total_records=spec.size,
            validation_state=report,
            error_counts=dict(sorted(error_counts.items())),
        )

        self._transition(JobState.CHECKPOINTING, spec.chunk_id)
        try:
            self.store.save(spec.chunk_id, batch_stop, metadata)
        except StorageError as e:
            raise ChunkProcessingError(f"Failed to save checkpoint: {e}", chunk_id=spec.chunk_id) from e

        chunk.offset = batch_stop
        chunk.report = report
        chunk.error_counts = metadata.error_counts
        chunk.records_emitted += len(emitted)
        chunk.records_quarantined += len(quarantined)
        chunk.records_dropped += dropped

    def _route(
        self,
        frame: pd.DataFrame,
        validation: FrameValidation,
        batch_start: int,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], int]:
        """Apply the invalid record policy; returns (emitted, quarantined, dropped count)."""
        policy = self.config.invalid_record_policy
        raw_rows = frame.to_dict(orient="records") if policy == InvalidRecordPolicy.QUARANTINE else None
        emitted: List[Dict[str, Any]] = []
        quarantined: List[Dict[str, Any]] = []
        dropped = 0

        for row_index, record in enumerate(validation.records):
            offset = batch_start + row_index
            failures: List[FieldFailure] = validation.failures[row_index]
            if not failures:
                emitted.append({**record, OFFSET_FIELD: offset})
            elif policy == InvalidRecordPolicy.FLAG:
                emitted.append({
                    **record,
                    OFFSET_FIELD: offset,
                    ISSUES_FIELD: [failure.as_flag() for failure in failures],
                })
            elif policy == InvalidRecordPolicy.QUARANTINE:
                quarantined.append({
                    **raw_rows[row_index],
                    OFFSET_FIELD: offset,
                    ISSUES_FIELD: [failure.as_flag() for failure in failures],
                })
            else:
                dropped += 1
        return emitted, quarantined, dropped

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def _seed_report(self, preflight_report: ValidationReport) -> ValidationReport:
        return ValidationReport(schema_issues=preflight_report.schema_issues)

    def _finish(
        self,
        plan: ChunkPlan,
        specs: Sequence[ChunkSpec],
        progress: Dict[str, ChunkProgress],
        preflight_report: ValidationReport,
        cancelled: List[str],
        raise_on_failure: bool,
    ) -> JobResult:
        ordered = [progress[spec.chunk_id] for spec in sorted(specs, key=lambda s: s.chunk_id)]
        report = ValidationReport.merge(
            [self._seed_report(preflight_report)] + [chunk.report for chunk in ordered],
            field_order=list(self._schema),
        )

        error_summary = [chunk.error for chunk in ordered if chunk.error]
        if cancelled:
            error_summary.append(
                f"{JOB_CANCELLED}: {len(cancelled)} chunks not processed ({', '.join(sorted(cancelled))})"
            )
        failed = bool(error_summary) or not all(chunk.completed for chunk in ordered)
        status = JobState.FAILED if failed else JobState.COMPLETE

        stored_offsets = self.store.latest_offsets(chunk.spec.chunk_id for chunk in ordered)
        result = JobResult(
            job_id=self.job_id,
            status=status,
            plan=plan,
            preflight_report=preflight_report,
            report=report,
            chunk_reports={chunk.spec.chunk_id: chunk.report for chunk in ordered},
            records_emitted=sum(chunk.records_emitted for chunk in ordered),
            records_dropped=sum(chunk.records_dropped for chunk in ordered),
            records_quarantined=sum(chunk.records_quarantined for chunk in ordered),
            chunks_completed=sum(1 for chunk in ordered if chunk.completed),
            chunks_total=len(ordered),
            error_summary=error_summary,
            last_verified_offsets={
                chunk.spec.chunk_id: stored_offsets.get(chunk.spec.chunk_id, chunk.spec.start)
                for chunk in ordered
            },
        )

        self._transition(status)
        if failed:
            logger.error(
                f"Job {self.job_id} FAILED: {result.chunks_completed}/{result.chunks_total} chunks complete; "
                f"{'; '.join(error_summary)}"
            )
            if raise_on_failure:
                raise JobFailure(
                    f"Job {self.job_id} failed",
                    error_summary=error_summary,
                    last_verified_offsets=result.last_verified_offsets,
                )
        else:
            logger.info(
                f"Job {self.job_id} COMPLETE: {result.records_emitted} records emitted, "
                f"{result.records_dropped} dropped, {result.records_quarantined} quarantined"
            )
        return result

    def _finish_failed(
        self,
        error_summary: List[str],
        raise_on_failure: bool,
        plan: Optional[ChunkPlan] = None,
        preflight_report: Optional[ValidationReport] = None,
    ) -> JobResult:
        self._transition(JobState.FAILED)
        if raise_on_failure:
            raise JobFailure(f"Job {self.job_id} failed", error_summary=error_summary)
        return JobResult(
            job_id=self.job_id,
            status=JobState.FAILED,
            plan=plan,
            preflight_report=preflight_report or ValidationReport(),
            report=self._seed_report(preflight_report or ValidationReport()),
            error_summary=error_summary,
        )
