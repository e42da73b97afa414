"""Domain Ports - Abstract Contracts for Chunked Ingestion.

This module defines the Port interfaces (abstract contracts) that Adapters must implement,
together with the Result type and the exception hierarchy shared by the whole pipeline.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (CSV source, DuckDB checkpoint medium, psutil probe, sinks) implement these ports
    - Domain Core is isolated from file formats, storage engines and the host machine
    - Failures inside a chunk travel as Result values; only chunk/job level problems raise
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

import pandas as pd

from clinical_intake.domain.models import FileMetadata

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Field validators return Result objects so the DataQualityScanner can aggregate
    thousands of failures without a single bad value aborting the scan.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (DataQualityError, AmbiguousDateError, etc.)
        error_details: Additional error context (raw_value, candidates, etc.)

    Example:
        ```python
        result = validate_phone("555.123.4567")
        if result.is_success():
            print(result.value.value)  # "(555) 123-4567"

        result = validate_phone("12345")
        if result.is_failure():
            log_error(result.error, result.error_details)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "DataQualityError", "EncodingCorruptionError")
            error_details: Additional context (raw_value, candidates, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class IngestionError(Exception):
    """Base exception for all ingestion-related errors.

    Attributes:
        source: The source identifier involved in the error
        details: Additional error details
    """

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.details = details or {}


class SchemaError(IngestionError):
    """An expected field is missing from, or ambiguous within, the incoming columns.

    Schema issues are normally only reported. Raised when the job is configured
    with ``require_complete_schema``, before any chunk is dispatched.
    """
    pass


class CriticalDataError(IngestionError):
    """Unrecoverable condition for a field or record.

    Raised only when strictness escalates critical errors to chunk failure;
    otherwise critical conditions are recorded in the ValidationReport.
    """
    pass


class ConfigurationError(IngestionError):
    """Invalid configuration or planning input. Always fatal for the job."""
    pass


class SourceNotFoundError(IngestionError):
    """Raised when the source file cannot be found or accessed."""
    pass


class UnsupportedSourceError(IngestionError):
    """Raised when the source format is not supported by any record source.

    Attributes:
        adapter: The adapter that cannot handle the source
    """

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message, source=source)
        self.adapter = adapter


class ChunkProcessingError(IngestionError):
    """Transient failure while processing a chunk (I/O error, short read, timeout).

    Chunks raising this are retried from their last checkpoint.

    Attributes:
        chunk_id: Identifier of the failing chunk
    """

    def __init__(self, message: str, chunk_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.chunk_id = chunk_id


class ChunkTimeoutError(ChunkProcessingError):
    """A chunk exceeded its processing time budget."""
    pass


class CheckpointIntegrityError(IngestionError):
    """A checkpoint failed checksum or consistency verification.

    Attributes:
        chunk_id: Chunk the checkpoint belongs to
        sequence: Sequence number of the rejected checkpoint
    """

    def __init__(self, message: str, chunk_id: Optional[str] = None, sequence: Optional[int] = None):
        super().__init__(message, details={"chunk_id": chunk_id, "sequence": sequence})
        self.chunk_id = chunk_id
        self.sequence = sequence


class StorageError(IngestionError):
    """Raised when a checkpoint medium operation fails.

    Attributes:
        operation: The medium operation that failed (connect, put, get_latest, delete)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.operation = operation


class JobFailure(IngestionError):
    """Terminal job failure, visible to the user.

    Attributes:
        error_summary: Every error that contributed to the failure
        last_verified_offsets: Last verified record offset per chunk, for manual resumption
    """

    def __init__(
        self,
        message: str,
        error_summary: Optional[List[str]] = None,
        last_verified_offsets: Optional[Dict[str, int]] = None
    ):
        super().__init__(message)
        self.error_summary = error_summary or []
        self.last_verified_offsets = last_verified_offsets or {}


# ============================================================================
# Ports
# ============================================================================

class RecordSourcePort(ABC):
    """Abstract contract for a decoded, column-labelled record stream.

    Encoding detection and delimiter sniffing happen before this port; the core
    only sees column names and rows of string cells.
    """

    @abstractmethod
    def column_names(self) -> List[str]:
        """Return the declared column names, in file order."""
        pass

    @abstractmethod
    def file_metadata(self, sample_size: int = 100) -> FileMetadata:
        """Derive record count, sample records and average record size.

        Parameters:
            sample_size: Maximum number of leading records to include as samples
        """
        pass

    @abstractmethod
    def read_records(self, start: int, stop: int) -> pd.DataFrame:
        """Read records ``[start, stop)`` as a DataFrame of string cells.

        Blank cells are returned as empty strings. Record offsets are zero-based
        and exclude the header row.

        Raises:
            OSError: If the underlying file cannot be read
        """
        pass

    def get_source_info(self) -> Optional[dict]:
        """Get metadata about the source (optional, adapter-specific)."""
        return None


class ResourceProbePort(ABC):
    """Snapshot of host resources, queried once per planning cycle."""

    @abstractmethod
    def available_memory_bytes(self) -> float:
        pass

    @abstractmethod
    def cpu_core_count(self) -> int:
        pass


class CheckpointMediumPort(ABC):
    """Durable key-value medium behind the CheckpointStore.

    ``put`` records a new value for the key, ``get_latest`` returns the most
    recently put value (or None) and ``delete`` removes the key entirely.
    """

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def get_latest(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    def close(self) -> None:
        """Release any resources held by the medium."""
        return None


class RecordSinkPort(ABC):
    """Destination for cleaned records.

    Implementations must be safe to call from several chunk workers at once.
    """

    @abstractmethod
    def write(self, records: List[Dict[str, Any]]) -> None:
        """Persist cleaned (possibly flagged) records."""
        pass

    @abstractmethod
    def quarantine(self, records: List[Dict[str, Any]]) -> None:
        """Persist records set aside by the quarantine policy."""
        pass

    def close(self) -> None:
        return None
