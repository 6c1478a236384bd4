"""Configuration management for the workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Where definitions and instances are kept."""
    MEMORY = "memory"
    DATABASE = "database"


class SchedulerKind(str, Enum):
    """How parallel branches are dispatched."""
    INLINE = "inline"
    THREAD_POOL = "thread_pool"


class EngineConfig(BaseModel):
    """Engine configuration settings."""

    # Application settings
    app_name: str = Field(default="Workflow Engine", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Storage settings
    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY, description="Repository implementation")
    database_url: str = Field(
        default="sqlite:///./flowengine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(
        default=None,
        description="Plain-text log format; None uses the engine default with the workflow marker"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # Branch execution settings
    branch_scheduler: SchedulerKind = Field(default=SchedulerKind.INLINE, description="Parallel branch dispatcher")
    max_branch_workers: int = Field(default=10, description="Thread pool size for parallel branches")

    # Concurrency and retry settings
    commit_retry_attempts: int = Field(default=5, description="Attempts for a branch step that loses a version race")
    commit_retry_base_delay: float = Field(default=0.01, description="Base backoff between commit retries in seconds")
    integration_retry_base_delay: float = Field(default=0.5, description="Base backoff between integration retries")
    integration_retry_max_delay: float = Field(default=30.0, description="Maximum backoff between integration retries")
    integration_timeout: float = Field(default=10.0, description="HTTP integration timeout in seconds")

    # Execution settings
    max_steps_per_advance: int = Field(
        default=1000,
        description="Upper bound on automatic steps taken for one token before it is failed"
    )
    approval_escalation_minutes: int = Field(
        default=1440,
        description="New due date offset for an escalated approval"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('max_branch_workers', 'commit_retry_attempts', 'max_steps_per_advance',
                     'approval_escalation_minutes')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('commit_retry_base_delay', 'integration_retry_base_delay',
                     'integration_retry_max_delay', 'integration_timeout')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Delays and timeouts cannot be negative")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        """Create configuration from ``FLOWENGINE_*`` environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"FLOWENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Engine"),
            debug=get_env("DEBUG", False, bool),
            storage_backend=StorageBackend(get_env("STORAGE_BACKEND", "memory")),
            database_url=get_env("DATABASE_URL", "sqlite:///./flowengine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", None),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            branch_scheduler=SchedulerKind(get_env("BRANCH_SCHEDULER", "inline")),
            max_branch_workers=get_env("MAX_BRANCH_WORKERS", 10, int),
            commit_retry_attempts=get_env("COMMIT_RETRY_ATTEMPTS", 5, int),
            commit_retry_base_delay=get_env("COMMIT_RETRY_BASE_DELAY", 0.01, float),
            integration_retry_base_delay=get_env("INTEGRATION_RETRY_BASE_DELAY", 0.5, float),
            integration_retry_max_delay=get_env("INTEGRATION_RETRY_MAX_DELAY", 30.0, float),
            integration_timeout=get_env("INTEGRATION_TIMEOUT", 10.0, float),
            max_steps_per_advance=get_env("MAX_STEPS_PER_ADVANCE", 1000, int),
            approval_escalation_minutes=get_env("APPROVAL_ESCALATION_MINUTES", 1440, int)
        )


# Global configuration instance
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = EngineConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> EngineConfig:
    """Load configuration from a .env file and the environment."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = EngineConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: EngineConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.storage_backend == StorageBackend.DATABASE and config.is_sqlite:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_path != ":memory:" and db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.integration_retry_base_delay > config.integration_retry_max_delay:
        errors.append("integration_retry_base_delay cannot exceed integration_retry_max_delay")

    if errors:
        from .core.exceptions import ConfigurationError
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> EngineConfig:
    """Get development configuration."""
    return EngineConfig(
        debug=True,
        log_level=LogLevel.DEBUG,
        storage_backend=StorageBackend.DATABASE,
        database_echo=True
    )


def get_testing_config() -> EngineConfig:
    """Get testing configuration."""
    return EngineConfig(
        debug=True,
        storage_backend=StorageBackend.MEMORY,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        commit_retry_base_delay=0.0,
        integration_retry_base_delay=0.0,
        integration_retry_max_delay=0.0
    )
