"""Application configuration using pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Required
    openai_api_key: str = Field(..., description="OpenAI API key")

    # Database
    database_path: Path = Field(
        default=Path("./data/paperforge.db"),
        description="Path to SQLite database file",
    )

    # OpenAI Models
    generation_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for question generation",
    )
    proofreading_model: str = Field(
        default="gpt-4o",
        description="Model used for the proofreading pass",
    )
    analysis_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for chapter material analysis",
    )
    llm_temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=16000, ge=256)

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    environment: Literal["development", "production", "test"] = Field(
        default="development", description="Deployment environment"
    )
    request_timeout_sec: int = Field(
        default=300,
        description="Timeout for a single LLM provider call in seconds",
    )

    # Generation
    over_generation_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiplier applied to a section's target count when generating",
    )
    generation_batch_size: int = Field(
        default=60,
        ge=1,
        description="Maximum questions requested from the model per call",
    )
    generation_max_retries: int = Field(default=2, ge=0)
    generation_retry_delay_sec: float = Field(default=2.0, ge=0.0)

    # Proofreading
    proofread_complexity_threshold: int = Field(
        default=500,
        description="Average serialized question length separating simple from complex sections",
    )
    proofread_low_complexity_ceiling: int = Field(default=80, ge=1)
    proofread_high_complexity_ceiling: int = Field(default=60, ge=1)
    proofread_optimal_batch_size: int = Field(default=70, ge=1)
    proofread_safety_tolerance: float = Field(default=0.15, ge=0.0)
    proofread_max_retries: int = Field(default=1, ge=0)
    proofread_retry_delay_sec: float = Field(default=2.0, ge=0.0)

    # Chapter knowledge
    knowledge_max_write_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts at a version-checked write before giving up",
    )
    analysis_max_attempts: int = Field(default=3, ge=1)
    analysis_retry_delay_sec: float = Field(default=2.0, ge=0.0)

    # Cost ledger
    usd_to_inr_rate: float = Field(default=83.0, gt=0)

    # Section rules
    max_questions_per_section: int = Field(default=150, ge=1)
    max_questions_per_paper: int = Field(default=300, ge=1)

    # Security
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_per_minute: int = Field(
        default=30, ge=1, description="Rate limit per minute per IP on LLM-bound endpoints"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return level

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def rate_limit(self) -> str:
        if not self.rate_limit_enabled:
            return "1000/minute"
        return f"{self.rate_limit_per_minute}/minute"


# Global settings instance
settings = Settings()
