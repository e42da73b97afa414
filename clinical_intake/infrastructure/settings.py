"""Application Settings and Configuration.

This module provides application-wide settings that combine the job configuration
from the configuration manager with environment-driven defaults.
"""

import os
from typing import Optional

from clinical_intake.infrastructure.config_manager import ConfigManager, PipelineConfig

# Application metadata
APP_NAME = "Clinical-Intake"
APP_VERSION = "1.0.0"

DEFAULT_REPORT_DIR = "reports"
DEFAULT_CHECKPOINT_DIR = "state"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Environment Variables:
        - CI_APP_NAME: Display name of the application
        - CI_LOG_LEVEL: Logging level (default INFO)
        - CI_LOG_JSON: Emit JSON log lines when "true"
        - CI_REPORT_DIR: Directory for saved reports
        - CI_CHECKPOINT_DIR: Directory for the DuckDB checkpoint file
        - CI_CONFIG_PATH: JSON pipeline configuration file (otherwise CI_* variables)
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("CI_APP_NAME", APP_NAME)
        self.app_version = APP_VERSION
        self.log_level = os.getenv("CI_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("CI_LOG_JSON", "false").lower() == "true"
        self.report_dir = os.getenv("CI_REPORT_DIR", DEFAULT_REPORT_DIR)
        self.checkpoint_dir = os.getenv("CI_CHECKPOINT_DIR", DEFAULT_CHECKPOINT_DIR)
        self.config_path = os.getenv("CI_CONFIG_PATH")

    @property
    def config_manager(self) -> ConfigManager:
        """Configuration manager, loaded lazily from CI_CONFIG_PATH or the environment."""
        if self._config_manager is None:
            if self.config_path:
                self._config_manager = ConfigManager.from_file(self.config_path)
            else:
                self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def pipeline_config(self) -> PipelineConfig:
        return self.config_manager.get_pipeline_config()

    def default_checkpoint_path(self) -> str:
        return os.path.join(self.checkpoint_dir, "checkpoints.duckdb")


# Global settings instance
settings = Settings()
