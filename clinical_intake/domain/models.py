"""Domain Models for the Chunked Ingestion Pipeline.

This module defines the canonical data structures passed between the validation
engine, the chunk planner, the checkpoint store and the pipeline coordinator.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are frozen: a new ValidationReport is built for every re-validation
    - Type safety enforced at runtime via Pydantic V2
    - JSON serialisation is deterministic so reports and checkpoints can be hashed
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Cap on sample values kept per issue, bounded for memory and log safety
MAX_SAMPLE_VIOLATIONS = 5


class SemanticType(str, Enum):
    """Semantic type of an expected field, used to pick its validator."""
    IDENTIFIER = "identifier"
    DATE = "date"
    PHONE = "phone"
    MEASUREMENT = "measurement"
    BOOLEAN = "boolean"
    TEXT = "text"
    NUMERIC = "numeric"


class SchemaIssueKind(str, Enum):
    MISSING = "missing"
    AMBIGUOUS = "ambiguous"


class CriticalErrorKind(str, Enum):
    """Unrecoverable conditions recorded in ValidationReport.critical_errors."""
    ENCODING_CORRUPTION = "encoding_corruption"
    INCOMPATIBLE_TYPE = "incompatible_type"
    AMBIGUOUS_DATE = "ambiguous_date"
    PROCESSING = "processing"


class InvalidRecordPolicy(str, Enum):
    """What happens to a record carrying field-level failures."""
    FLAG = "flag"
    DROP = "drop"
    QUARANTINE = "quarantine"


class JobState(str, Enum):
    """Pipeline state machine states. COMPLETE and FAILED are terminal."""
    PLANNING = "PLANNING"
    VALIDATING = "VALIDATING"
    RECOVERING = "RECOVERING"
    PROCESSING = "PROCESSING"
    CHECKPOINTING = "CHECKPOINTING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ConversionRule(BaseModel):
    """Conversion of a source unit into the canonical unit: ``canonical = value * factor``."""

    model_config = ConfigDict(frozen=True)

    canonical_unit: str = Field(..., min_length=1)
    factor: float = Field(..., gt=0)


def _cap_samples(values: Sequence[str]) -> tuple:
    return tuple(values)[:MAX_SAMPLE_VIOLATIONS]


# ============================================================================
# Validation Report
# ============================================================================

class SchemaIssue(BaseModel):
    """A missing or ambiguous expected field."""

    model_config = ConfigDict(frozen=True)

    kind: SchemaIssueKind
    field: str
    candidates: tuple[str, ...] = ()


class DataQualityIssue(BaseModel):
    """Recoverable violations for one column, with bounded sample evidence."""

    model_config = ConfigDict(frozen=True)

    field: str
    column: str
    expected_type: SemanticType
    violation_count: int = Field(default=0, ge=0)
    sample_violations: tuple[str, ...] = ()

    @field_validator("sample_violations", mode="before")
    @classmethod
    def cap_sample_violations(cls, v: Any) -> tuple:
        """Keep at most MAX_SAMPLE_VIOLATIONS samples, whatever the true count."""
        return _cap_samples(v or ())


class CriticalError(BaseModel):
    """Unrecoverable condition for a field (or for a chunk when kind is processing)."""

    model_config = ConfigDict(frozen=True)

    field: Optional[str] = None
    column: Optional[str] = None
    kind: CriticalErrorKind
    message: str
    count: int = Field(default=1, ge=0)
    sample_values: tuple[str, ...] = ()

    @field_validator("sample_values", mode="before")
    @classmethod
    def cap_sample_values(cls, v: Any) -> tuple:
        return _cap_samples(v or ())


class ValidationReport(BaseModel):
    """Structured summary of schema and data-quality findings for a file or chunk.

    Reports are never mutated after creation; ``merge`` always builds a new one.
    Issue ordering follows the expected schema, so identical input produces a
    byte-for-byte identical ``model_dump_json()``.
    """

    model_config = ConfigDict(frozen=True)

    schema_issues: tuple[SchemaIssue, ...] = ()
    data_quality_issues: tuple[DataQualityIssue, ...] = ()
    critical_errors: tuple[CriticalError, ...] = ()
    records_scanned: int = Field(default=0, ge=0)

    @property
    def has_critical_errors(self) -> bool:
        return bool(self.critical_errors)

    @property
    def is_clean(self) -> bool:
        return not (self.schema_issues or self.data_quality_issues or self.critical_errors)

    @property
    def total_violations(self) -> int:
        return sum(issue.violation_count for issue in self.data_quality_issues)

    @classmethod
    def merge(
        cls,
        reports: Iterable['ValidationReport'],
        field_order: Optional[Sequence[str]] = None
    ) -> 'ValidationReport':
        """Merge reports into a new one.

        Callers pass reports already sorted (by chunk_id for a file report), so
        sample values are taken in that order. Schema issues are de-duplicated;
        data-quality issues and critical errors for the same column are summed.

        Parameters:
            reports: Reports to merge, in the order their samples should be kept
            field_order: Expected schema field order used to sort the merged issues
        """
        schema_issues: Dict[tuple, SchemaIssue] = {}
        quality: Dict[tuple, Dict[str, Any]] = {}
        critical: Dict[tuple, Dict[str, Any]] = {}
        records_scanned = 0

        for report in reports:
            records_scanned += report.records_scanned
            for issue in report.schema_issues:
                schema_issues.setdefault((issue.kind, issue.field), issue)
            for issue in report.data_quality_issues:
                entry = quality.setdefault(
                    (issue.field, issue.column),
                    {"issue": issue, "count": 0, "samples": []},
                )
                entry["count"] += issue.violation_count
                _extend_samples(entry["samples"], issue.sample_violations)
            for error in report.critical_errors:
                entry = critical.setdefault(
                    (error.field, error.column, error.kind),
                    {"error": error, "count": 0, "samples": []},
                )
                entry["count"] += error.count
                _extend_samples(entry["samples"], error.sample_values)

        position = {name: index for index, name in enumerate(field_order or ())}

        def order(field_name: Optional[str]) -> int:
            return position.get(field_name, len(position))

        merged_schema = sorted(schema_issues.values(), key=lambda i: order(i.field))
        merged_quality = [
            entry["issue"].model_copy(update={
                "violation_count": entry["count"],
                "sample_violations": tuple(entry["samples"]),
            })
            for entry in sorted(quality.values(), key=lambda e: order(e["issue"].field))
        ]
        merged_critical = [
            entry["error"].model_copy(update={
                "count": entry["count"],
                "sample_values": tuple(entry["samples"]),
            })
            for entry in sorted(critical.values(), key=lambda e: order(e["error"].field))
        ]
        return cls(
            schema_issues=tuple(merged_schema),
            data_quality_issues=tuple(merged_quality),
            critical_errors=tuple(merged_critical),
            records_scanned=records_scanned,
        )


def _extend_samples(samples: List[str], new_samples: Iterable[str]) -> None:
    for value in new_samples:
        if len(samples) >= MAX_SAMPLE_VIOLATIONS:
            return
        if value not in samples:
            samples.append(value)


# ============================================================================
# Planning
# ============================================================================

class FileMetadata(BaseModel):
    """Per-file facts derived once before chunking; read-only thereafter."""

    model_config = ConfigDict(frozen=True)

    total_records: int = Field(..., ge=0)
    sample_records: tuple[Dict[str, Any], ...] = ()
    average_record_size_bytes: float


class ResourceSnapshot(BaseModel):
    """Host resources captured once per planning cycle."""

    model_config = ConfigDict(frozen=True)

    available_memory_bytes: float = Field(..., ge=0)
    cpu_core_count: int = Field(..., ge=1)


@dataclass(frozen=True)
class ChunkSpec:
    """Half-open record range ``[start, stop)`` owned by one chunk."""
    index: int
    chunk_id: str
    start: int
    stop: int

    @property
    def size(self) -> int:
        return self.stop - self.start


def chunk_id_for(index: int) -> str:
    """Zero-padded so lexical order equals chunk order."""
    return f"chunk-{index:06d}"


class ChunkPlan(BaseModel):
    """Chunk sizing and parallelism for one file.

    Invariant: chunk_size * average_record_size_bytes * parallel_process_count
    never exceeds memory_budget_bytes.
    """

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(..., gt=0)
    estimated_chunk_count: int = Field(..., ge=0)
    parallel_process_count: int = Field(..., ge=1)
    estimated_memory_per_chunk_bytes: float = Field(..., ge=0)
    memory_budget_bytes: float = Field(..., ge=0)

    def chunk_specs(self, total_records: int) -> List[ChunkSpec]:
        """Split ``total_records`` into contiguous chunk ranges."""
        count = math.ceil(total_records / self.chunk_size) if total_records > 0 else 0
        return [
            ChunkSpec(
                index=index,
                chunk_id=chunk_id_for(index),
                start=index * self.chunk_size,
                stop=min((index + 1) * self.chunk_size, total_records),
            )
            for index in range(count)
        ]


# ============================================================================
# Checkpoints
# ============================================================================

class ProcessingMetadata(BaseModel):
    """Progress snapshot stored inside a checkpoint.

    Consistency (non-negative error counts, records_processed within the chunk)
    is checked by CheckpointStore.verify rather than by field constraints, so a
    tampered checkpoint can still be loaded and rejected explicitly.
    """

    model_config = ConfigDict(frozen=True)

    records_processed: int
    chunk_total_records: int
    validation_state: ValidationReport = Field(default_factory=ValidationReport)
    error_counts: Dict[str, int] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Durable progress marker for one chunk."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    sequence: int = Field(..., ge=1)
    last_processed_record_offset: int
    processing_metadata: ProcessingMetadata
    timestamp: datetime
    checksum: str


# ============================================================================
# Job Outcome
# ============================================================================

class JobResult(BaseModel):
    """Terminal outcome of a pipeline run."""

    job_id: str
    status: JobState
    plan: Optional[ChunkPlan] = None
    preflight_report: ValidationReport = Field(default_factory=ValidationReport)
    report: ValidationReport = Field(default_factory=ValidationReport)
    chunk_reports: Dict[str, ValidationReport] = Field(default_factory=dict)
    records_emitted: int = 0
    records_dropped: int = 0
    records_quarantined: int = 0
    chunks_completed: int = 0
    chunks_total: int = 0
    error_summary: List[str] = Field(default_factory=list)
    last_verified_offsets: Dict[str, int] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.COMPLETE
