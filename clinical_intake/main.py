"""Composition root for the Clinical Intake pipeline.

This module wires adapters (record source, checkpoint medium, record sink, resource
probe) to the domain services according to a PipelineConfig. The CLI and library
callers both go through these functions.

Architecture:
    - Follows Hexagonal Architecture principles
    - Record sources are selected automatically from the file extension
    - The checkpoint medium is selected by the checkpoint storage configuration
    - Job ids are derived from the file and configuration, so re-running the same
      command resumes the same job
"""

import hashlib
import logging
import threading
from pathlib import Path
from typing import Optional, Tuple

import pandas as pd

from clinical_intake.adapters.ingesters import get_source
from clinical_intake.adapters.resources import PsutilResourceProbe
from clinical_intake.adapters.sinks import JsonLinesRecordSink
from clinical_intake.adapters.storage import create_checkpoint_medium
from clinical_intake.domain.checkpoint_store import CheckpointStore
from clinical_intake.domain.chunk_planner import ChunkPlanner
from clinical_intake.domain.models import ChunkPlan, FileMetadata, JobResult, ValidationReport
from clinical_intake.domain.pipeline_coordinator import PipelineCoordinator
from clinical_intake.domain.ports import (
    CheckpointMediumPort,
    ConfigurationError,
    RecordSinkPort,
    RecordSourcePort,
    ResourceProbePort,
)
from clinical_intake.domain.quality_scanner import DataQualityScanner
from clinical_intake.domain.schema_reconciler import SchemaReconciler
from clinical_intake.infrastructure.config_manager import PipelineConfig

logger = logging.getLogger(__name__)


def derive_job_id(source_path: str, config: PipelineConfig) -> str:
    """Stable job id for a file and configuration.

    The id covers the file's path, size and modification time plus every setting
    that changes the output, so checkpoints are only reused for the same job.
    """
    path = Path(source_path).resolve()
    stat = path.stat()
    digest = hashlib.sha256()
    digest.update(str(path).encode("utf-8"))
    digest.update(f"{stat.st_size}:{stat.st_mtime_ns}".encode("utf-8"))
    digest.update(config.model_dump_json(exclude={"checkpoint"}).encode("utf-8"))
    return f"job-{digest.hexdigest()[:16]}"


def build_scanner(config: PipelineConfig) -> DataQualityScanner:
    return DataQualityScanner(
        reconciler=SchemaReconciler(config.similarity_threshold),
        context=config.validator_context(),
        max_scan_rows=config.max_scan_rows,
    )


def _require_schema(config: PipelineConfig) -> None:
    if not config.expected_schema:
        raise ConfigurationError("No expected schema configured")


def validate_source(
    source: RecordSourcePort,
    config: PipelineConfig,
    max_rows: Optional[int] = None,
) -> ValidationReport:
    """Scan a source (or its first ``max_rows`` records) and return a ValidationReport.

    Records are read in windows of ``max_chunk_size`` so the whole file is never
    loaded at once; window reports are merged in file order. Whether an identifier
    column is the wrong type is decided once, from the same leading sample an
    ingestion job validates before dispatching chunks.
    """
    _require_schema(config)
    scanner = build_scanner(config)
    schema = dict(config.expected_schema)
    columns = source.column_names()
    reconciliation = scanner.reconciler.reconcile(list(schema), columns)

    metadata = source.file_metadata(sample_size=config.preflight_sample_size)
    sample = pd.DataFrame(list(metadata.sample_records), columns=columns)
    incompatible_fields = scanner.validate_frame(sample, schema, reconciliation).incompatible_fields
    limit = metadata.total_records
    for cap in (max_rows, config.max_scan_rows):
        if cap is not None:
            limit = min(limit, cap)

    reports = [scanner.validate_frame(source.read_records(0, 0), schema, reconciliation).report]
    for start in range(0, limit, config.max_chunk_size):
        frame = source.read_records(start, min(start + config.max_chunk_size, limit))
        reports.append(scanner.validate_frame(frame, schema, reconciliation, incompatible_fields).report)
    return ValidationReport.merge(reports, field_order=list(schema))


def plan_source(
    source: RecordSourcePort,
    config: PipelineConfig,
    probe: Optional[ResourceProbePort] = None,
) -> Tuple[FileMetadata, ChunkPlan]:
    """Derive file metadata and the chunk plan for a source."""
    metadata = source.file_metadata(sample_size=0)
    plan = ChunkPlanner(config.planner_config()).plan_for(metadata, probe or PsutilResourceProbe())
    return metadata, plan


def build_coordinator(
    source: RecordSourcePort,
    config: PipelineConfig,
    sink: RecordSinkPort,
    medium: CheckpointMediumPort,
    job_id: str,
    probe: Optional[ResourceProbePort] = None,
) -> PipelineCoordinator:
    """Wire a PipelineCoordinator for one job."""
    _require_schema(config)
    store = CheckpointStore(medium, namespace=job_id, retention=config.checkpoint.retention)
    return PipelineCoordinator(
        source=source,
        expected_schema=config.expected_schema,
        planner=ChunkPlanner(config.planner_config()),
        probe=probe or PsutilResourceProbe(),
        store=store,
        sink=sink,
        scanner=build_scanner(config),
        config=config.coordinator_config(),
        job_id=job_id,
    )


def default_output_path(source_path: str) -> str:
    path = Path(source_path)
    return str(path.with_name(f"{path.stem}.clean.jsonl"))


def run_pipeline(
    source_path: str,
    config: PipelineConfig,
    output_path: Optional[str] = None,
    job_id: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    medium: Optional[CheckpointMediumPort] = None,
    probe: Optional[ResourceProbePort] = None,
    raise_on_failure: bool = False,
) -> JobResult:
    """Run or resume ingestion of ``source_path`` into a JSON Lines output.

    Parameters:
        source_path: CSV/TSV export
        config: Validated pipeline configuration
        output_path: Cleaned records file (default ``<stem>.clean.jsonl`` beside the input)
        job_id: Explicit job id (default derived from file and configuration)
        cancel_event: Event that stops dispatch of further chunks when set
        medium: Checkpoint medium (default built from ``config.checkpoint``; closed on exit)
        probe: Resource probe (default psutil)
        raise_on_failure: Raise JobFailure instead of returning a FAILED result

    Returns:
        JobResult: Terminal status, reports, counters and last verified offsets
    """
    source = get_source(source_path)
    job_id = job_id or derive_job_id(source_path, config)
    sink = JsonLinesRecordSink(output_path or default_output_path(source_path))

    owns_medium = medium is None
    if owns_medium:
        medium = create_checkpoint_medium(config.checkpoint)

    logger.info(f"Starting job {job_id} for {source_path}")
    try:
        coordinator = build_coordinator(source, config, sink, medium, job_id, probe=probe)
        return coordinator.run(cancel_event=cancel_event, raise_on_failure=raise_on_failure)
    finally:
        sink.close()
        if owns_medium:
            medium.close()
