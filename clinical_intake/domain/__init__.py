"""Domain layer for Clinical Intake.

This module contains the validation engine (reconciler, validators, scanner) and the
chunked processing core (planner, checkpoint store, coordinator). Domain code depends
only on pandas and Pydantic; I/O lives behind the ports.
"""

from .checkpoint_store import CheckpointStore
from .chunk_planner import ChunkPlanner, ChunkPlannerConfig
from .models import (
    ChunkPlan,
    ConversionRule,
    InvalidRecordPolicy,
    JobResult,
    JobState,
    SemanticType,
    ValidationReport,
)
from .pipeline_coordinator import CoordinatorConfig, PipelineCoordinator
from .quality_scanner import DataQualityScanner
from .schema_reconciler import SchemaReconciler

__all__ = [
    "CheckpointStore",
    "ChunkPlan",
    "ChunkPlanner",
    "ChunkPlannerConfig",
    "ConversionRule",
    "CoordinatorConfig",
    "DataQualityScanner",
    "InvalidRecordPolicy",
    "JobResult",
    "JobState",
    "PipelineCoordinator",
    "SchemaReconciler",
    "SemanticType",
    "ValidationReport",
]
