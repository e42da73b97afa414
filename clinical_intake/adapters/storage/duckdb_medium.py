"""DuckDB Checkpoint Medium.

This adapter implements the CheckpointMediumPort contract on top of DuckDB, an
in-process database file that survives process crashes.

Architecture:
    - Implements CheckpointMediumPort (Hexagonal Architecture)
    - Append-only ``checkpoint_kv`` table: every ``put`` inserts a new version, and
      ``get_latest`` returns the highest version for the key
    - ``delete`` removes every version of a key
    - One connection per medium, serialised by a lock because DuckDB connections
      must not be shared between threads without synchronisation
"""

import logging
from pathlib import Path
from threading import Lock
from typing import List, Optional

import duckdb

from clinical_intake.domain.ports import CheckpointMediumPort, StorageError
from clinical_intake.infrastructure.config_manager import CheckpointStorageConfig

logger = logging.getLogger(__name__)

TABLE_NAME = "checkpoint_kv"


class DuckDBCheckpointMedium(CheckpointMediumPort):
    """DuckDB implementation of CheckpointMediumPort.

    Parameters:
        storage_config: CheckpointStorageConfig from the configuration manager (preferred)
        db_path: Path to the DuckDB file (or ':memory:')

    Example Usage:
        ```python
        medium = DuckDBCheckpointMedium(db_path="state/checkpoints.duckdb")
        store = CheckpointStore(medium, namespace=job_id)
        ...
        medium.close()
        ```
    """

    def __init__(
        self,
        storage_config: Optional[CheckpointStorageConfig] = None,
        db_path: Optional[str] = None,
    ):
        if storage_config:
            if storage_config.backend != "duckdb":
                raise StorageError(
                    f"Checkpoint backend '{storage_config.backend}' does not match DuckDB medium",
                    operation="__init__"
                )
            self.db_path = storage_config.db_path or ":memory:"
        elif db_path:
            self.db_path = str(db_path)
        else:
            self.db_path = ":memory:"

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Checkpoint directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = Lock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection and its table (caller holds the lock)."""
        if self._connection is None:
            try:
                connection = duckdb.connect(self.db_path)
                connection.execute(f"CREATE SEQUENCE IF NOT EXISTS {TABLE_NAME}_version_seq")
                connection.execute(f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        key VARCHAR NOT NULL,
                        version BIGINT NOT NULL DEFAULT nextval('{TABLE_NAME}_version_seq'),
                        value VARCHAR NOT NULL,
                        written_at TIMESTAMP NOT NULL DEFAULT current_timestamp
                    )
                """)
                self._connection = connection
                logger.info(f"Connected to DuckDB checkpoint medium: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def put(self, key: str, value: str) -> None:
        with self._lock:
            try:
                self._get_connection().execute(
                    f"INSERT INTO {TABLE_NAME} (key, value) VALUES (?, ?)",
                    [key, value]
                )
            except duckdb.Error as e:
                raise StorageError(f"Failed to write checkpoint key {key}: {e}", operation="put")

    def get_latest(self, key: str) -> Optional[str]:
        with self._lock:
            try:
                row = self._get_connection().execute(
                    f"SELECT value FROM {TABLE_NAME} WHERE key = ? ORDER BY version DESC LIMIT 1",
                    [key]
                ).fetchone()
            except duckdb.Error as e:
                raise StorageError(f"Failed to read checkpoint key {key}: {e}", operation="get_latest")
        return row[0] if row else None

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                self._get_connection().execute(f"DELETE FROM {TABLE_NAME} WHERE key = ?", [key])
            except duckdb.Error as e:
                raise StorageError(f"Failed to delete checkpoint key {key}: {e}", operation="delete")

    def keys(self, prefix: str = "") -> List[str]:
        """Distinct keys starting with ``prefix``, sorted."""
        with self._lock:
            rows = self._get_connection().execute(
                f"SELECT DISTINCT key FROM {TABLE_NAME} WHERE starts_with(key, ?) ORDER BY key",
                [prefix]
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        """Close the connection and release resources."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB checkpoint medium")
                except duckdb.Error as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
