"""
Pydantic-based settings for faultguard

Validates configuration on startup and converts it into the frozen runtime
configs used by the manager, logger, retry policies and circuit breakers.
"""

from pathlib import Path
from typing import List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .error_handling import ManagerConfig
from .reliability import CircuitBreakerConfig, RetryConfig
from .reporting import DEFAULT_SENSITIVE_KEYS, ReportingConfig


class ManagerSettings(BaseModel):
    """Error manager configuration"""
    enabled: bool = True
    max_errors_per_session: int = Field(default=100, ge=1)
    reporting_throttle_ms: int = Field(default=1000, ge=0)
    max_error_age: Optional[float] = Field(default=None, gt=0)
    throttle_by_category: bool = False


class LoggingSettings(BaseModel):
    """Internal diagnostics logging"""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    directory: Optional[str] = None
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=5, ge=1, le=30)
    console: bool = True
    structured: bool = True


class ReportingSettings(BaseModel):
    """Structured logger and its destinations"""
    enabled: bool = True
    log_level: Literal["debug", "info", "warn", "error", "fatal"] = "info"
    batch_size: int = Field(default=50, ge=1, le=1000)
    batch_timeout: float = Field(default=30.0, ge=0.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    max_entries: int = Field(default=1000, ge=2)
    enable_context_capture: bool = True
    sensitive_keys: List[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_KEYS))

    console: bool = False
    structlog: bool = False
    jsonl_directory: Optional[str] = None
    http_endpoint: Optional[str] = None
    http_api_key: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_format: Literal["generic", "slack", "discord"] = "generic"
    webhook_only_errors: bool = True


class RetrySettings(BaseModel):
    """Default retry policy"""
    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: Optional[float] = Field(default=None, ge=0.0)
    jitter: bool = False
    retryable_errors: List[str] = Field(default_factory=list)
    non_retryable_errors: List[str] = Field(default_factory=list)


class CircuitBreakerSettings(BaseModel):
    """Default circuit breaker"""
    failure_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    reset_timeout: float = Field(default=60.0, ge=0.0)
    minimum_throughput: int = Field(default=10, ge=1)
    monitoring_period: Optional[float] = Field(default=None, gt=0.0)


class AggregationSettings(BaseModel):
    """Aggregator and pattern detector"""
    include_category: bool = False
    normalize_numbers: bool = False
    aggregation_window: Optional[float] = Field(default=300.0, gt=0.0)
    cascade_gap: float = Field(default=1.0, ge=0.0)
    window_size: int = Field(default=100, ge=1)
    correlation_window: float = Field(default=5.0, gt=0.0)
    correlation_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class FaultguardSettings(BaseSettings):
    """Main faultguard settings with validation"""

    model_config = SettingsConfigDict(
        env_prefix="FAULTGUARD_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    manager: ManagerSettings = Field(default_factory=ManagerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    reporting: ReportingSettings = Field(default_factory=ReportingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)

    @model_validator(mode='after')
    def validate_settings(self):
        """Cross-field validation"""
        retry = self.retry
        if retry.max_delay is not None and retry.max_delay < retry.base_delay:
            raise ValueError("retry.max_delay must not be smaller than retry.base_delay")
        return self

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "FaultguardSettings":
        """Load settings from YAML file"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def to_dict(self) -> dict:
        """Export settings as dictionary"""
        return self.model_dump(mode='json', exclude_none=True)

    def to_manager_config(self) -> ManagerConfig:
        return ManagerConfig(**self.manager.model_dump())

    def to_reporting_config(self) -> ReportingConfig:
        reporting = self.reporting
        return ReportingConfig(
            enabled=reporting.enabled,
            log_level=reporting.log_level,
            batch_size=reporting.batch_size,
            batch_timeout=reporting.batch_timeout,
            max_retries=reporting.max_retries,
            max_entries=reporting.max_entries,
            enable_context_capture=reporting.enable_context_capture,
            sensitive_keys=tuple(reporting.sensitive_keys),
        )

    def to_retry_config(self) -> RetryConfig:
        retry = self.retry
        return RetryConfig(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            backoff_multiplier=retry.backoff_multiplier,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
            retryable_errors=tuple(retry.retryable_errors),
            non_retryable_errors=tuple(retry.non_retryable_errors),
        )

    def to_circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(**self.circuit_breaker.model_dump())
