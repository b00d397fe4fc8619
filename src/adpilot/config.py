from __future__ import annotations

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from adpilot.domain.automation import SafetyBoundary


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="adpilot_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    ads_api_base_url: str = Field(
        default="https://advertising-api.amazon.com", alias="ADS_API_BASE_URL"
    )
    ads_api_client_id: str | None = Field(default=None, alias="ADS_API_CLIENT_ID")
    ads_api_access_token: SecretStr | None = Field(default=None, alias="ADS_API_ACCESS_TOKEN")
    ads_api_timeout_seconds: float = Field(default=10.0, alias="ADS_API_TIMEOUT_SECONDS")
    dry_run: bool = Field(default=True, alias="DRY_RUN")

    rate_limit_per_second: int = Field(default=5, alias="RATE_LIMIT_PER_SECOND")
    rate_limit_per_minute: int = Field(default=100, alias="RATE_LIMIT_PER_MINUTE")
    rate_limit_per_hour: int = Field(default=1000, alias="RATE_LIMIT_PER_HOUR")
    rate_limit_max_queue_depth: int = Field(default=100, alias="RATE_LIMIT_MAX_QUEUE_DEPTH")

    sync_job_max_duration_seconds: int = Field(
        default=3600, alias="SYNC_JOB_MAX_DURATION_SECONDS"
    )
    performance_lookback_days: int = Field(default=3, alias="PERFORMANCE_LOOKBACK_DAYS")

    schedule_max_attempts: int = Field(default=4, alias="SCHEDULE_MAX_ATTEMPTS")
    schedule_retry_base_delay_ms: int = Field(default=30_000, alias="SCHEDULE_RETRY_BASE_DELAY_MS")
    schedule_retry_max_delay_ms: int = Field(default=240_000, alias="SCHEDULE_RETRY_MAX_DELAY_MS")
    tick_interval_seconds: int = Field(default=60, alias="TICK_INTERVAL_SECONDS")

    init_max_task_attempts: int = Field(default=3, alias="INIT_MAX_TASK_ATTEMPTS")
    init_seconds_per_task: int = Field(default=30, alias="INIT_SECONDS_PER_TASK")

    max_bid_change_percent: float = Field(default=30.0, alias="MAX_BID_CHANGE_PERCENT")
    max_budget_change_percent: float = Field(default=50.0, alias="MAX_BUDGET_CHANGE_PERCENT")
    max_placement_change_percent: float = Field(
        default=20.0, alias="MAX_PLACEMENT_CHANGE_PERCENT"
    )
    auto_execute_confidence: float = Field(default=80.0, alias="AUTO_EXECUTE_CONFIDENCE")
    supervised_confidence: float = Field(default=60.0, alias="SUPERVISED_CONFIDENCE")
    max_daily_bid_adjustments: int = Field(default=100, alias="MAX_DAILY_BID_ADJUSTMENTS")
    max_daily_budget_adjustments: int = Field(default=10, alias="MAX_DAILY_BUDGET_ADJUSTMENTS")
    max_daily_total_adjustments: int = Field(default=150, alias="MAX_DAILY_TOTAL_ADJUSTMENTS")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator(
        "rate_limit_per_second",
        "rate_limit_per_minute",
        "rate_limit_per_hour",
        "schedule_max_attempts",
        "init_max_task_attempts",
        "tick_interval_seconds",
        "sync_job_max_duration_seconds",
    )
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator("rate_limit_max_queue_depth", "performance_lookback_days", "init_seconds_per_task")
    def validate_non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("schedule_retry_base_delay_ms", "schedule_retry_max_delay_ms")
    def validate_delay_ms(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry delays must be >= 0")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be none, otlp or prometheus")
        return normalized

    @model_validator(mode="after")
    def validate_safety_defaults(self) -> Settings:
        # Raises through pydantic when the defaults are inconsistent.
        self.default_safety_boundary()
        return self

    def default_safety_boundary(self) -> SafetyBoundary:
        return SafetyBoundary(
            max_bid_change_percent=self.max_bid_change_percent,
            max_budget_change_percent=self.max_budget_change_percent,
            max_placement_change_percent=self.max_placement_change_percent,
            auto_execute_confidence=self.auto_execute_confidence,
            supervised_confidence=self.supervised_confidence,
            max_daily_bid_adjustments=self.max_daily_bid_adjustments,
            max_daily_budget_adjustments=self.max_daily_budget_adjustments,
            max_daily_total_adjustments=self.max_daily_total_adjustments,
        )

    def has_api_credentials(self) -> bool:
        return bool(self.ads_api_client_id) and self.ads_api_access_token is not None

    def is_live_api_enabled(self) -> bool:
        return not self.dry_run and self.has_api_credentials()
