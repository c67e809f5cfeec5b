"""
settings_loader.py

Configuration management for the clusterkit clustering engine.
Loads and validates settings from YAML configuration with environment variable substitution.

Features:
- YAML configuration loading with validation
- Environment variable substitution (${VAR_NAME} syntax)
- Singleton pattern for global settings access
- Type-safe configuration with Pydantic models
- Built-in defaults when no settings file is present
"""

import os
import re
import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from clusterkit.utils.error_handling import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CLUSTERKIT_CONFIG"


# =============================================================================
# Configuration Models (Pydantic)
# =============================================================================

class ServiceSettings(BaseModel):
    """General service settings."""
    name: str = Field(default="clusterkit", description="Service name used in log context")
    version: str = Field(default="1.0.0", description="Service version")
    environment: str = Field(default="production", description="Environment (development, test, production)")


class HierarchicalSettings(BaseModel):
    """Hierarchical clustering defaults."""
    method: str = Field(default="agglomerative", description="agglomerative or divisive")
    linkage: str = Field(default="average", description="Linkage criterion (single, complete, average, ward, centroid)")
    distance_metric: str = Field(default="euclidean", description="Distance metric")
    max_points: int = Field(default=5000, ge=1, description="Maximum accepted dataset size")
    generate_dendrogram: bool = Field(default=True, description="Build a dendrogram for agglomerative runs")
    compute_full_tree: bool = Field(default=True, description="Keep merging past the stopping point for the dendrogram")
    calculate_cophenetic_correlation: bool = Field(default=True, description="Compute cophenetic correlation")
    enable_cluster_validation: bool = Field(default=True, description="Attach quality metrics to results")
    max_split_iterations: int = Field(default=50, ge=1, description="2-means iterations per divisive split")
    progress_interval: int = Field(default=100, ge=1, description="Report progress every N steps")


class DBSCANSettings(BaseModel):
    """DBSCAN clustering defaults."""
    distance_metric: str = Field(default="euclidean", description="Distance metric")
    auto_estimate_params: bool = Field(default=True, description="Estimate eps/min_pts when missing")
    eps_quantile: float = Field(default=0.9, gt=0.0, le=1.0, description="k-distance quantile for eps")
    eps_sample_size: int = Field(default=1000, ge=2, description="Points sampled for eps estimation")
    normalize: bool = Field(default=False, description="Z-score features before clustering")
    enable_cluster_validation: bool = Field(default=True, description="Attach quality metrics to results")
    progress_interval: int = Field(default=500, ge=1, description="Report progress every N points")


class QualitySettings(BaseModel):
    """Quality assessment defaults."""
    distance_metric: str = Field(default="euclidean", description="Metric for internal metrics")
    num_bootstraps: int = Field(default=100, ge=1, description="Bootstrap rounds for stability")
    sample_ratio: float = Field(default=0.8, gt=0.0, le=1.0, description="Bootstrap sample ratio")
    random_state: int = Field(default=42, description="Random seed for bootstrap sampling")
    cache_size: int = Field(default=128, ge=0, description="Maximum cached quality reports")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or console)")
    file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Ensure the level is one logging understands."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class PerformanceSettings(BaseModel):
    """Performance tracking configuration."""
    track_clustering_time: bool = Field(default=True, description="Log timing for each clustering call")
    track_memory_usage: bool = Field(default=True, description="Log resident memory via psutil")
    n_jobs: Optional[int] = Field(default=None, description="Parallel jobs for pairwise distances")
    time_budget_seconds: Optional[float] = Field(default=None, gt=0.0, description="Default wall-clock budget")


class Settings(BaseModel):
    """Root configuration model."""
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    hierarchical: HierarchicalSettings = Field(default_factory=HierarchicalSettings)
    dbscan: DBSCANSettings = Field(default_factory=DBSCANSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)


# =============================================================================
# Configuration Manager (Singleton)
# =============================================================================

class ConfigManager:
    """
    Singleton configuration manager that loads and caches settings.

    Features:
    - Loads YAML configuration from file
    - Substitutes environment variables using ${VAR_NAME} syntax
    - Validates configuration using Pydantic models
    - Provides global access to settings
    """

    _instance: Optional['ConfigManager'] = None
    _settings: Optional[Settings] = None

    def __new__(cls):
        """Ensure singleton pattern."""
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    @classmethod
    def load_config(cls, config_path: Optional[str] = None) -> Settings:
        """
        Load configuration from YAML file with environment variable substitution.

        Args:
            config_path: Path to configuration file. If None, the
                CLUSTERKIT_CONFIG variable and the default locations are tried,
                and built-in defaults are used when none exists.

        Returns:
            Settings object with validated configuration

        Raises:
            ConfigurationError: If an explicit file is missing, unreadable or invalid
        """
        if cls._settings is not None:
            return cls._settings

        if config_path is None:
            config_path_obj = cls._find_default_config()
            if config_path_obj is None:
                logger.info("No configuration file found, using built-in defaults")
                cls._settings = Settings()
                return cls._settings
        else:
            config_path_obj = Path(config_path)
            if not config_path_obj.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {config_path}",
                    details={"path": str(config_path)},
                )

        logger.info(f"Loading configuration from: {config_path_obj}")

        # Load YAML file
        try:
            with open(config_path_obj, 'r') as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML configuration: {e}")
            raise ConfigurationError(
                f"Invalid YAML configuration: {e}",
                details={"path": str(config_path_obj)},
            ) from e

        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                "Configuration root must be a mapping",
                details={"path": str(config_path_obj)},
            )

        # Substitute environment variables
        config_dict = cls._substitute_env_vars(raw_config)

        # Validate and create Settings object
        try:
            cls._settings = Settings(**config_dict)
            logger.info("Configuration loaded and validated successfully")
            return cls._settings
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details={"path": str(config_path_obj)},
            ) from e

    @classmethod
    def _find_default_config(cls) -> Optional[Path]:
        """Return the first existing settings file among the default locations."""
        possible_paths = []
        env_path = os.getenv(CONFIG_ENV_VAR)
        if env_path:
            possible_paths.append(Path(env_path))
        possible_paths.extend([
            Path("config/settings.yaml"),
            Path(__file__).resolve().parents[2] / "config" / "settings.yaml",
        ])

        for path in possible_paths:
            if path.exists():
                return path
        return None

    @classmethod
    def get_settings(cls) -> Settings:
        """
        Get cached settings. Loads from default path if not already loaded.

        Returns:
            Settings object
        """
        if cls._settings is None:
            cls.load_config()
        return cls._settings

    @classmethod
    def _substitute_env_vars(cls, config: Any) -> Any:
        """
        Recursively substitute environment variables in configuration.

        Supports ${VAR_NAME} and ${VAR_NAME:default_value} syntax.

        Args:
            config: Configuration dictionary or value

        Returns:
            Configuration with substituted values
        """
        if isinstance(config, dict):
            return {k: cls._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [cls._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            # Match ${VAR_NAME} or ${VAR_NAME:default}
            pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

            def replace_var(match):
                var_name = match.group(1)
                default_value = match.group(2) if match.group(2) is not None else ""
                return os.getenv(var_name, default_value)

            return re.sub(pattern, replace_var, config)
        else:
            return config

    @classmethod
    def reload_config(cls, config_path: Optional[str] = None) -> Settings:
        """
        Reload configuration from file.

        Args:
            config_path: Path to configuration file

        Returns:
            Reloaded Settings object
        """
        cls._settings = None
        return cls.load_config(config_path)

    @classmethod
    def reset(cls) -> None:
        """Drop cached settings so the next access reloads them."""
        cls._settings = None


# =============================================================================
# Convenience Functions
# =============================================================================

def get_settings() -> Settings:
    """
    Get engine settings (convenience function).

    Returns:
        Settings object
    """
    return ConfigManager.get_settings()
