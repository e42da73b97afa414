"""Checkpoint Store - verified, durable progress markers per chunk.

Checkpoints are written through a CheckpointMediumPort under a job namespace:

    {namespace}/{chunk_id}/index          JSON list of retained sequence numbers
    {namespace}/{chunk_id}/{sequence}     Checkpoint JSON (sequence zero-padded)
    {namespace}/layout                    chunk size and record count of the job

Every checkpoint carries a SHA-256 checksum over its offset and processing metadata.
A checkpoint that fails verification is never used for resumption: ``latest`` falls
back to the next most recent verified one, or to None (restart the chunk).

Thread-safety:
    Writes for one chunk are serialised by a per-chunk lock. There is no global
    lock on the write path, so workers on different chunks never contend.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from clinical_intake.domain.models import Checkpoint, ProcessingMetadata
from clinical_intake.domain.ports import CheckpointIntegrityError, CheckpointMediumPort

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 3


def compute_checksum(record_offset: int, metadata: ProcessingMetadata) -> str:
    """SHA-256 hex digest of the canonical JSON of offset and metadata."""
    payload = {
        "last_processed_record_offset": record_offset,
        "processing_metadata": metadata.model_dump(mode="json"),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckpointStore:
    """Saves, verifies and retrieves chunk checkpoints for a single job.

    Parameters:
        medium: Durable key-value medium (DuckDB, in-memory, ...)
        namespace: Key prefix isolating this job's checkpoints, normally the job id
        retention: Number of most recent checkpoints kept per chunk

    Example Usage:
        ```python
        store = CheckpointStore(DuckDBCheckpointMedium("checkpoints.duckdb"), namespace=job_id)
        checkpoint = store.latest("chunk-000003")
        start = checkpoint.last_processed_record_offset if checkpoint else spec.start
        ```
    """

    def __init__(self, medium: CheckpointMediumPort, namespace: str, retention: int = DEFAULT_RETENTION):
        if retention < 1:
            raise ValueError(f"Checkpoint retention must be >= 1, got {retention}")
        if not namespace:
            raise ValueError("Checkpoint namespace must not be empty")
        self.medium = medium
        self.namespace = namespace
        self.retention = retention
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def checkpoint_key(self, chunk_id: str, sequence: int) -> str:
        return f"{self.namespace}/{chunk_id}/{sequence:010d}"

    def _index_key(self, chunk_id: str) -> str:
        return f"{self.namespace}/{chunk_id}/index"

    def _chunk_lock(self, chunk_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(chunk_id)
            if lock is None:
                lock = Lock()
                self._locks[chunk_id] = lock
            return lock

    def _layout_key(self) -> str:
        return f"{self.namespace}/layout"

    def save_layout(self, chunk_size: int, total_records: int) -> None:
        """Record the chunk boundaries checkpoints of this job refer to."""
        self.medium.put(
            self._layout_key(),
            json.dumps({"chunk_size": chunk_size, "total_records": total_records}, sort_keys=True),
        )

    def load_layout(self) -> Optional[Dict[str, int]]:
        """Chunk layout of an earlier run of this job, or None for a new job."""
        raw = self.medium.get_latest(self._layout_key())
        if raw is None:
            return None
        try:
            layout = json.loads(raw)
            return {"chunk_size": int(layout["chunk_size"]), "total_records": int(layout["total_records"])}
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Unreadable chunk layout for job {self.namespace}; planning from scratch")
            return None

    def verify(self, checkpoint: Checkpoint) -> bool:
        """Check the checksum and the internal consistency of a checkpoint."""
        expected = compute_checksum(checkpoint.last_processed_record_offset, checkpoint.processing_metadata)
        if expected != checkpoint.checksum:
            return False

        metadata = checkpoint.processing_metadata
        if any(count < 0 for count in metadata.error_counts.values()):
            return False
        if metadata.records_processed < 0 or metadata.records_processed > metadata.chunk_total_records:
            return False
        return checkpoint.last_processed_record_offset >= 0

    def _read_index(self, chunk_id: str) -> List[int]:
        raw = self.medium.get_latest(self._index_key(chunk_id))
        if raw is None:
            return []
        try:
            sequences = json.loads(raw)
            index = sorted(int(sequence) for sequence in sequences) if isinstance(sequences, list) else None
        except (ValueError, TypeError):
            index = None
        if index is None:
            logger.warning(
                f"Unreadable checkpoint index for {chunk_id} in job {self.namespace}; chunk restarts",
                extra={"chunk_id": chunk_id},
            )
            return []
        return index

    def _load(self, chunk_id: str, sequence: int) -> Optional[Checkpoint]:
        raw = self.medium.get_latest(self.checkpoint_key(chunk_id, sequence))
        if raw is None:
            return None
        try:
            return Checkpoint.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                f"Checkpoint {chunk_id}#{sequence} could not be parsed: {e.error_count()} errors",
                extra={"chunk_id": chunk_id, "sequence": sequence},
            )
            return None

    def _latest_verified(self, chunk_id: str) -> Optional[Checkpoint]:
        for sequence in reversed(self._read_index(chunk_id)):
            checkpoint = self._load(chunk_id, sequence)
            if checkpoint is None:
                continue
            if not self.verify(checkpoint):
                logger.warning(
                    f"Checkpoint {chunk_id}#{sequence} failed verification; falling back to an earlier checkpoint",
                    extra={"chunk_id": chunk_id, "sequence": sequence},
                )
                continue
            return checkpoint
        return None

    def latest(self, chunk_id: str) -> Optional[Checkpoint]:
        """Return the most recent verified checkpoint, or None if the chunk must restart."""
        return self._latest_verified(chunk_id)

    def history(self, chunk_id: str) -> List[Checkpoint]:
        """All retained checkpoints that can be parsed, oldest first (verified or not)."""
        checkpoints = []
        for sequence in self._read_index(chunk_id):
            checkpoint = self._load(chunk_id, sequence)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    def latest_offsets(self, chunk_ids: Iterable[str]) -> Dict[str, int]:
        """Last verified offset for every chunk that has a verified checkpoint."""
        offsets = {}
        for chunk_id in chunk_ids:
            checkpoint = self.latest(chunk_id)
            if checkpoint is not None:
                offsets[chunk_id] = checkpoint.last_processed_record_offset
        return offsets

    def save(self, chunk_id: str, record_offset: int, metadata: ProcessingMetadata) -> Checkpoint:
        """Persist a checkpoint for ``chunk_id`` at ``record_offset``.

        The offset is the absolute record position up to which every record has been
        emitted. It must never move backwards for a chunk.

        Raises:
            CheckpointIntegrityError: If the offset is lower than the latest verified offset
        """
        with self._chunk_lock(chunk_id):
            current = self._latest_verified(chunk_id)
            if current is not None and record_offset < current.last_processed_record_offset:
                raise CheckpointIntegrityError(
                    f"Checkpoint offset for {chunk_id} would regress from "
                    f"{current.last_processed_record_offset} to {record_offset}",
                    chunk_id=chunk_id,
                    sequence=current.sequence,
                )

            sequences = self._read_index(chunk_id)
            sequence = (sequences[-1] + 1) if sequences else 1
            checkpoint = Checkpoint(
                chunk_id=chunk_id,
                sequence=sequence,
                last_processed_record_offset=record_offset,
                processing_metadata=metadata,
                timestamp=datetime.now(timezone.utc),
                checksum=compute_checksum(record_offset, metadata),
            )

            self.medium.put(self.checkpoint_key(chunk_id, sequence), checkpoint.model_dump_json())
            retained = (sequences + [sequence])[-self.retention:]
            self.medium.put(self._index_key(chunk_id), json.dumps(retained))
            logger.debug(f"Checkpoint {chunk_id}#{sequence} saved at offset {record_offset}")

            self._prune(chunk_id, [s for s in sequences if s not in retained])
            return checkpoint

    def _prune(self, chunk_id: str, expired: List[int]) -> None:
        for sequence in expired:
            try:
                self.medium.delete(self.checkpoint_key(chunk_id, sequence))
            except Exception as e:
                logger.warning(f"Failed to prune checkpoint {chunk_id}#{sequence}: {e}")
