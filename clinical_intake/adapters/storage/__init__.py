"""Checkpoint storage adapters for Clinical Intake.

This module contains the media that implement CheckpointMediumPort for durable
checkpoint persistence.
"""

from typing import Optional

from clinical_intake.adapters.storage.duckdb_medium import DuckDBCheckpointMedium
from clinical_intake.adapters.storage.memory_medium import InMemoryCheckpointMedium
from clinical_intake.domain.ports import CheckpointMediumPort, ConfigurationError
from clinical_intake.infrastructure.config_manager import CheckpointStorageConfig

__all__ = ["DuckDBCheckpointMedium", "InMemoryCheckpointMedium", "create_checkpoint_medium"]


def create_checkpoint_medium(config: Optional[CheckpointStorageConfig] = None) -> CheckpointMediumPort:
    """Build the checkpoint medium selected by the storage configuration.

    Raises:
        ConfigurationError: If the backend is not supported
    """
    config = config or CheckpointStorageConfig()
    if config.backend == "duckdb":
        return DuckDBCheckpointMedium(storage_config=config)
    if config.backend == "memory":
        return InMemoryCheckpointMedium()
    raise ConfigurationError(f"Unsupported checkpoint backend: {config.backend}")
