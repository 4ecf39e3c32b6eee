"""
FlowOps Simulator Configuration Module.

This module provides configuration management for the FlowOps pipeline
simulator using Pydantic Settings. It handles environment variables,
configuration validation, and provides type-safe access to the simulation
constants and service settings.

Environment Variables:
    FLOWOPS_API_TITLE: Title for the FastAPI application
    FLOWOPS_API_VERSION: Version string for the API (default: 0.1.0)
    FLOWOPS_LOG_LEVEL: Logging level (default: INFO)
    FLOWOPS_ALLOW_ORIGINS: CORS allowed origins (default: ["*"])
    FLOWOPS_STORAGE_BACKEND: Snapshot sink, "memory" or "database"
    FLOWOPS_DATABASE_URL: SQLAlchemy URL used by the database sink
    FLOWOPS_FAILURE_PROBABILITY: Chance that a stage fails (default: 0.1)
    FLOWOPS_STAGE_DURATION_MIN: Shortest reported stage duration in seconds
    FLOWOPS_STAGE_DURATION_MAX: Longest reported stage duration in seconds
    FLOWOPS_STAGE_LOG_WINDOW: Seconds over which a stage emits its logs
    FLOWOPS_STAGE_PAUSE: Pause between two stages in seconds (default: 0.5)
    FLOWOPS_CYCLE_PAUSE: Pause before a new run starts (default: 1.0)
    FLOWOPS_LOG_CAPACITY: Log entries kept per run (default: 50)
    FLOWOPS_CHART_CAPACITY: Chart samples kept (default: 20)
    FLOWOPS_TRIGGER_POLICY: reject | queue | restart (default: queue)
    FLOWOPS_RANDOM_SEED: Seed for reproducible simulations
    FLOWOPS_SIMULATION_AUTORUN: Drive the scheduler from the app lifespan

Version: 0.1.0
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Where published snapshots are mirrored for the HTTP API."""

    memory = "memory"
    database = "database"


class TriggerPolicy(str, Enum):
    """
    What a manual deployment trigger does while a run is still in flight.

    Attributes:
        reject: Refuse the trigger with a "run already in progress" error
        queue: Start the next run as soon as the current one finishes
        restart: Abandon the current run and start a new one immediately
    """

    reject = "reject"
    queue = "queue"
    restart = "restart"


class Settings(BaseSettings):
    """
    Application configuration settings.

    Manages the service settings and the simulation constants of the
    FlowOps engine using Pydantic Settings for type validation and
    environment variable integration.

    Attributes:
        api_title (str): Title for the FastAPI application
        api_version (str): Version string for the API
        allow_origins (list[str]): CORS allowed origins list
        log_level (LogLevel): Logging level for the application

    Simulation:
        failure_probability (float): Per-stage failure chance
        stage_duration_min (int): Lower bound of the reported duration
        stage_duration_max (int): Upper bound of the reported duration
        stage_log_window (float): Real seconds a stage spends emitting logs
        stage_pause (float): Real seconds between two stages
        cycle_pause (float): Real seconds between two runs
        trigger_policy (TriggerPolicy): Manual trigger behaviour mid-run

    Configuration:
        - Environment variables are prefixed with "FLOWOPS_"
        - Configuration can be loaded from .env file
        - All fields have sensible defaults for development
    """

    # Basic API configuration
    api_title: str = Field(
        default="FlowOps Pipeline Simulator",
        description="Title for the FastAPI application",
    )
    api_version: str = Field(default="0.1.0", description="Version string for the API")
    allow_origins: List[str] = Field(
        default=["*"], description="CORS allowed origins list"
    )
    log_level: LogLevel = Field(
        default=LogLevel.INFO, description="Logging level for the application"
    )

    # Snapshot sink
    storage_backend: StorageBackend = Field(
        default=StorageBackend.memory, description="Snapshot sink backend"
    )
    database_url: Optional[str] = Field(
        default=None, description="SQLAlchemy database URL for the database sink"
    )

    # Simulation constants
    failure_probability: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Chance that a stage fails"
    )
    stage_duration_min: int = Field(
        default=2, ge=0, description="Shortest reported stage duration (seconds)"
    )
    stage_duration_max: int = Field(
        default=4, ge=0, description="Longest reported stage duration (seconds)"
    )
    stage_log_window: float = Field(
        default=2.0, gt=0, description="Seconds over which stage logs are spread"
    )
    stage_pause: float = Field(
        default=0.5, ge=0, description="Pause between stages (seconds)"
    )
    cycle_pause: float = Field(
        default=1.0, ge=0, description="Pause before a new run starts (seconds)"
    )
    log_capacity: int = Field(default=50, ge=1, description="Log entries kept")
    chart_capacity: int = Field(default=20, ge=1, description="Chart samples kept")
    trigger_policy: TriggerPolicy = Field(
        default=TriggerPolicy.queue,
        description="Manual trigger behaviour while a run is in flight",
    )
    random_seed: Optional[int] = Field(
        default=None, description="Seed for reproducible simulations"
    )
    simulation_autorun: bool = Field(
        default=True, description="Drive the scheduler from the app lifespan"
    )

    model_config = SettingsConfigDict(
        env_prefix="FLOWOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v) -> str:
        """Validate and normalize log level configuration."""
        if isinstance(v, str):
            # Convert to uppercase for case-insensitive handling
            return v.upper()
        return v

    @model_validator(mode="after")
    def _validate_duration_range(self):
        """Reject a duration range whose minimum exceeds its maximum."""
        if self.stage_duration_min > self.stage_duration_max:
            raise ValueError(
                "`stage_duration_min` must not exceed `stage_duration_max`"
            )
        return self

    @property
    def database_enabled(self) -> bool:
        """Check if the database sink is requested and has a URL."""
        return self.storage_backend == StorageBackend.database and bool(
            self.database_url
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.log_level == LogLevel.ERROR or self.log_level == LogLevel.CRITICAL

    def validate_environment_specific_rules(self) -> None:
        """Validate environment-specific configuration rules."""
        if self.is_production and self.allow_origins == ["*"]:
            logging.warning(
                "Production environment detected with wildcard CORS origins. "
                "Consider restricting to specific domains."
            )
        if (
            self.storage_backend == StorageBackend.database
            and not self.database_url
        ):
            logging.warning(
                "Database storage requested without FLOWOPS_DATABASE_URL. "
                "Snapshots will be kept in memory only."
            )

    def log_configuration(self) -> None:
        """Log current configuration for debugging."""
        config_info = {
            "api_title": self.api_title,
            "api_version": self.api_version,
            "log_level": self.log_level.value,
            "storage_backend": self.storage_backend.value,
            "trigger_policy": self.trigger_policy.value,
            "failure_probability": self.failure_probability,
            "cors_origins": self.allow_origins,
        }
        logging.info("Configuration loaded successfully", extra={"config": config_info})


@lru_cache()
def get_settings() -> Settings:
    """Create cached settings instance to avoid repeated environment variable reads."""
    return Settings()


# Initialize settings and logging
settings = get_settings()

# Configure logging based on settings
logging.basicConfig(
    level=getattr(logging, settings.log_level.value),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("flowops")
settings.validate_environment_specific_rules()
settings.log_configuration()
