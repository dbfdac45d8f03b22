"""Application settings and configuration."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STAGE_ENDPOINTS: dict[str, str] = {
    "chunk_analysis": "chunk-analysis-handler",
    "fair_market_value": "fair-market-value-handler",
    "cost_forecast": "cost-forecast-handler",
    "expert_advice": "expert-advice-handler",
    "final_report": "final-report-handler",
    "agent_retry": "retry-workflow-handler",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PIPELINE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    debug: bool = Field(default=False, description="Enable debug mode")

    # Database
    database_url: str = Field(
        default="sqlite:///./inspection_pipeline.db", description="Database connection URL"
    )

    # Stage executor
    executor_base_url: str = Field(
        default="http://localhost:54321/functions/v1",
        description="Base URL the stage executor endpoints are mounted under",
    )
    executor_api_key: str | None = Field(default=None, description="Bearer token for the executor")
    executor_timeout_ms: int = Field(default=30000, description="Executor request timeout in ms")
    stage_endpoints: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_STAGE_ENDPOINTS))

    # Job retries and recovery
    max_job_retries: int = 3
    stuck_job_deadline_seconds: int = 300
    recovery_interval_seconds: int = 300
    recoverable_job_types: list[str] = Field(
        default_factory=lambda: [
            "chunk_analysis",
            "fair_market_value",
            "cost_forecast",
            "expert_advice",
            "final_report",
        ]
    )

    # Agent executions
    agent_timeout_seconds: int = 900
    agent_max_retries: int = 3

    # Outbox delivery
    outbox_max_attempts: int = 5
    outbox_batch_size: int = 50

    # Billing
    report_block_validity_days: int = 90

    @property
    def executor_timeout(self) -> float:
        """Executor timeout in seconds."""
        return self.executor_timeout_ms / 1000

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    def endpoint_for(self, key: str) -> str:
        """Resolve the executor endpoint name for a job type or action."""
        try:
            return self.stage_endpoints[key]
        except KeyError:
            raise ValueError(f"No stage endpoint configured for '{key}'") from None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
