"""Configuration Manager for Pipeline and Checkpoint Settings.

This module loads the job configuration (expected schema, validator inputs, chunk
planning knobs, retry policy) and the checkpoint storage configuration from a JSON
file or from ``CI_*`` environment variables, and validates it before any file is read.

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation: invalid configuration raises ConfigurationError up front
    - Domain configuration objects (ChunkPlannerConfig, CoordinatorConfig,
      ValidatorContext) are built from the validated models
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from clinical_intake.domain.chunk_planner import ChunkPlannerConfig
from clinical_intake.domain.models import ConversionRule, InvalidRecordPolicy, SemanticType
from clinical_intake.domain.pipeline_coordinator import CoordinatorConfig
from clinical_intake.domain.ports import ConfigurationError
from clinical_intake.domain.validators import ValidatorContext

logger = logging.getLogger(__name__)

ENV_PREFIX = "CI_"


class CheckpointStorageConfig(BaseModel):
    """Where checkpoints are kept.

    Parameters:
        backend: Checkpoint medium ('duckdb' or 'memory')
        db_path: Path to the DuckDB file (':memory:' or None for an in-process database)
        retention: Checkpoints kept per chunk
    """

    backend: str = Field(default="duckdb", description="Checkpoint medium (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to DuckDB checkpoint file")
    retention: int = Field(default=3, ge=1, description="Checkpoints retained per chunk")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        supported = ["duckdb", "memory"]
        if v.lower() not in supported:
            raise ValueError(f"Unsupported checkpoint backend: {v}. Supported: {supported}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the checkpoint directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Checkpoint directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


class PipelineConfig(BaseModel):
    """Validated configuration of an ingestion job.

    The expected schema is ordered: its order is the order of fields in every
    ValidationReport.
    """

    expected_schema: Dict[str, SemanticType] = Field(default_factory=dict)
    preferred_date_layout: Optional[str] = None
    unit_conversions: Dict[str, ConversionRule] = Field(default_factory=dict)
    similarity_threshold: float = Field(default=90.0, gt=0, le=100)

    safety_factor: float = Field(default=1.5, ge=1)
    max_chunk_size: int = Field(default=50_000, ge=1)
    memory_budget_fraction: float = Field(default=1.0, gt=0, le=1)

    max_chunk_retries: int = Field(default=3, ge=0)
    chunk_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    checkpoint_interval: Optional[int] = Field(default=None, ge=1)
    invalid_record_policy: InvalidRecordPolicy = InvalidRecordPolicy.FLAG
    escalate_critical_errors: bool = False
    max_scan_rows: Optional[int] = Field(default=None, ge=1)
    preflight_sample_size: int = Field(default=100, ge=0)
    require_complete_schema: bool = False

    checkpoint: CheckpointStorageConfig = Field(default_factory=CheckpointStorageConfig)

    @field_validator("preferred_date_layout")
    @classmethod
    def validate_date_layout(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and "%" not in v:
            raise ValueError(f"Date layout must use strptime directives (e.g. '%d/%m/%Y'), got '{v}'")
        return v

    def planner_config(self) -> ChunkPlannerConfig:
        return ChunkPlannerConfig(
            safety_factor=self.safety_factor,
            max_chunk_size=self.max_chunk_size,
            memory_budget_fraction=self.memory_budget_fraction,
        )

    def coordinator_config(self) -> CoordinatorConfig:
        return CoordinatorConfig(
            max_chunk_retries=self.max_chunk_retries,
            chunk_timeout_seconds=self.chunk_timeout_seconds,
            checkpoint_interval=self.checkpoint_interval,
            invalid_record_policy=self.invalid_record_policy,
            escalate_critical_errors=self.escalate_critical_errors,
            preflight_sample_size=self.preflight_sample_size,
            require_complete_schema=self.require_complete_schema,
        )

    def validator_context(self) -> ValidatorContext:
        return ValidatorContext(
            preferred_date_layout=self.preferred_date_layout,
            unit_conversions=dict(self.unit_conversions),
        )


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    return None if value is None else value.lower() == "true"


class ConfigManager:
    """Configuration manager for ingestion jobs.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        pipeline_config = config.get_pipeline_config()

        # Load from file, then apply command-line overrides
        config = ConfigManager.from_file("intake.json").with_overrides({"max_chunk_size": 10_000})
        pipeline_config = config.get_pipeline_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._pipeline_config: Optional[PipelineConfig] = None

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CI_EXPECTED_SCHEMA: JSON object mapping field -> semantic type
            - CI_UNIT_CONVERSIONS: JSON object mapping unit -> {canonical_unit, factor}
            - CI_PREFERRED_DATE_LAYOUT: strptime layout for ambiguous dates
            - CI_SIMILARITY_THRESHOLD, CI_SAFETY_FACTOR, CI_MAX_CHUNK_SIZE,
              CI_MEMORY_BUDGET_FRACTION, CI_MAX_CHUNK_RETRIES, CI_CHUNK_TIMEOUT_SECONDS,
              CI_CHECKPOINT_INTERVAL, CI_INVALID_RECORD_POLICY, CI_ESCALATE_CRITICAL_ERRORS,
              CI_REQUIRE_COMPLETE_SCHEMA, CI_MAX_SCAN_ROWS
            - CI_CHECKPOINT_BACKEND, CI_CHECKPOINT_DB_PATH, CI_CHECKPOINT_RETENTION

        Returns:
            ConfigManager instance

        Raises:
            ConfigurationError: If a JSON-valued variable cannot be parsed
        """
        config_data: Dict[str, Any] = {}

        for key in ("expected_schema", "unit_conversions"):
            raw = os.getenv(f"{ENV_PREFIX}{key.upper()}")
            if raw:
                try:
                    config_data[key] = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Invalid JSON in {ENV_PREFIX}{key.upper()}: {str(e)}")

        for key in (
            "preferred_date_layout",
            "similarity_threshold",
            "safety_factor",
            "max_chunk_size",
            "memory_budget_fraction",
            "max_chunk_retries",
            "chunk_timeout_seconds",
            "checkpoint_interval",
            "invalid_record_policy",
            "max_scan_rows",
        ):
            value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
            if value:
                config_data[key] = value

        escalate = _env_bool(f"{ENV_PREFIX}ESCALATE_CRITICAL_ERRORS")
        if escalate is not None:
            config_data["escalate_critical_errors"] = escalate
        require_schema = _env_bool(f"{ENV_PREFIX}REQUIRE_COMPLETE_SCHEMA")
        if require_schema is not None:
            config_data["require_complete_schema"] = require_schema

        checkpoint = {
            "backend": os.getenv(f"{ENV_PREFIX}CHECKPOINT_BACKEND"),
            "db_path": os.getenv(f"{ENV_PREFIX}CHECKPOINT_DB_PATH"),
            "retention": os.getenv(f"{ENV_PREFIX}CHECKPOINT_RETENTION"),
        }
        checkpoint = {k: v for k, v in checkpoint.items() if v}
        if checkpoint:
            config_data["checkpoint"] = checkpoint

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If config file is not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {str(e)}", source=config_path)

        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration file must contain a JSON object", source=config_path)
        return cls(config_data)

    def with_overrides(self, overrides: Dict[str, Any]) -> 'ConfigManager':
        """Return a new manager with top-level keys replaced; None values are ignored."""
        merged = dict(self._config_data)
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "checkpoint" and isinstance(value, dict):
                merged["checkpoint"] = {**merged.get("checkpoint", {}), **value}
            else:
                merged[key] = value
        return ConfigManager(merged)

    def get_pipeline_config(self) -> PipelineConfig:
        """Get the validated pipeline configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self._pipeline_config is None:
            try:
                self._pipeline_config = PipelineConfig(**self._config_data)
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                    for error in e.errors()
                )
                raise ConfigurationError(f"Invalid pipeline configuration: {problems}")
        return self._pipeline_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (supports dot notation, e.g. "checkpoint.db_path")."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


def load_pipeline_config(config_path: Optional[str] = None) -> PipelineConfig:
    """Load and validate the pipeline configuration from a file, or from the environment."""
    config_manager = ConfigManager.from_file(config_path) if config_path else ConfigManager.from_environment()
    return config_manager.get_pipeline_config()
