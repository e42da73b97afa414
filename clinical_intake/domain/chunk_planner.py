"""Chunk Planner - resource-aware partitioning of very large files.

Computes how many records go in a chunk and how many chunks may run in parallel
so that every worker's in-flight data fits the memory budget.

Sizing rules:
    chunk_size = min(budget / (avg_record_size * safety_factor), max_chunk_size)
    estimated_chunk_count = ceil(total_records / chunk_size)
    parallel_process_count = max(1, min(cpu_cores - 1, budget / (chunk_size * avg_record_size * 2)))

One core is left for the host process, and each worker needs room for two chunks
(the current one and the next prefetch).
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from clinical_intake.domain.models import ChunkPlan, FileMetadata, ResourceSnapshot
from clinical_intake.domain.ports import ConfigurationError, ResourceProbePort

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_FACTOR = 1.5
DEFAULT_MAX_CHUNK_SIZE = 50_000
CHUNKS_IN_FLIGHT_PER_WORKER = 2
RESERVED_CORES = 1


@dataclass
class ChunkPlannerConfig:
    """Configuration for ChunkPlanner behavior.

    Attributes:
        safety_factor: Headroom multiplier (>= 1) for transformation overhead beyond raw bytes
        max_chunk_size: Hard cap on records per chunk
        memory_budget_fraction: Share of the available memory the job may use (0-1]
    """
    safety_factor: float = DEFAULT_SAFETY_FACTOR
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    memory_budget_fraction: float = 1.0

    def __post_init__(self):
        if self.safety_factor < 1:
            raise ConfigurationError(f"safety_factor must be >= 1, got {self.safety_factor}")
        if self.max_chunk_size < 1:
            raise ConfigurationError(f"max_chunk_size must be >= 1, got {self.max_chunk_size}")
        if not 0 < self.memory_budget_fraction <= 1:
            raise ConfigurationError(
                f"memory_budget_fraction must be in (0, 1], got {self.memory_budget_fraction}"
            )


class ChunkPlanner:
    """Turns file metadata and a resource snapshot into an immutable ChunkPlan.

    Example Usage:
        ```python
        planner = ChunkPlanner(ChunkPlannerConfig(max_chunk_size=20_000))
        plan = planner.plan_for(source.file_metadata(), PsutilResourceProbe())
        for spec in plan.chunk_specs(metadata.total_records):
            ...
        ```
    """

    def __init__(self, config: Optional[ChunkPlannerConfig] = None):
        self.config = config or ChunkPlannerConfig()

    def plan_for(
        self,
        file_metadata: FileMetadata,
        probe: ResourceProbePort,
        chunk_size: Optional[int] = None,
    ) -> ChunkPlan:
        """Query the resource probe once, then plan."""
        snapshot = ResourceSnapshot(
            available_memory_bytes=probe.available_memory_bytes(),
            cpu_core_count=max(1, probe.cpu_core_count()),
        )
        return self.plan(file_metadata, snapshot, chunk_size=chunk_size)

    def plan(
        self,
        file_metadata: FileMetadata,
        resource_snapshot: ResourceSnapshot,
        chunk_size: Optional[int] = None,
    ) -> ChunkPlan:
        """Compute chunk size, chunk count and safe parallelism.

        Parameters:
            file_metadata: Record count and average record size of the file
            resource_snapshot: Memory and cores available to the job
            chunk_size: Chunk size fixed by an earlier run of the same job; only
                parallelism is derived from the resources in that case

        Raises:
            ConfigurationError: If the average record size is not positive, or the
                memory budget cannot hold a single record
        """
        avg_record_size = file_metadata.average_record_size_bytes
        if avg_record_size <= 0:
            raise ConfigurationError(
                f"Average record size must be positive, got {avg_record_size}"
            )

        budget = resource_snapshot.available_memory_bytes * self.config.memory_budget_fraction
        memory_bound = math.floor(budget / (avg_record_size * self.config.safety_factor))
        if chunk_size is None:
            chunk_size = min(memory_bound, self.config.max_chunk_size)
        if chunk_size < 1:
            raise ConfigurationError(
                f"Memory budget of {budget:.0f} bytes cannot hold a single record of "
                f"{avg_record_size:.0f} bytes with safety factor {self.config.safety_factor}"
            )

        total_records = file_metadata.total_records
        chunk_count = math.ceil(total_records / chunk_size) if total_records > 0 else 0

        workers_by_memory = math.floor(budget / (chunk_size * avg_record_size * CHUNKS_IN_FLIGHT_PER_WORKER))
        workers_by_cpu = resource_snapshot.cpu_core_count - RESERVED_CORES
        parallel_process_count = max(1, min(workers_by_cpu, workers_by_memory))

        plan = ChunkPlan(
            chunk_size=chunk_size,
            estimated_chunk_count=chunk_count,
            parallel_process_count=parallel_process_count,
            estimated_memory_per_chunk_bytes=chunk_size * avg_record_size * self.config.safety_factor,
            memory_budget_bytes=budget,
        )

        if chunk_size == self.config.max_chunk_size and memory_bound > chunk_size:
            logger.debug(f"Chunk size capped at configured maximum {chunk_size}")
        logger.info(
            f"Chunk plan: {chunk_count} chunks of {chunk_size} records, "
            f"{parallel_process_count} parallel workers "
            f"(budget {budget / (1024 * 1024):.1f} MB, avg record {avg_record_size:.0f} bytes)"
        )
        return plan
