"""
Configuration loader for the batch generation service.

Environment variables are centralized here to keep the rest of the code
focused on orchestration and to make operational tuning clear.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PERSISTENCE_POLICIES = {"degrade", "fail"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Generation backend (Replicate)
    replicate_api_token: Optional[str] = None
    replicate_api_base_url: str = "https://api.replicate.com/v1"
    default_model: str = "google/nano-banana"
    replicate_max_attempts: int = Field(60, gt=0)
    replicate_poll_interval_seconds: float = Field(2.0, gt=0)

    # Orchestration
    max_concurrent_generations: int = Field(5, gt=0)
    persistence_failure_policy: str = "degrade"

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None

    # Image records
    database_url: str = "sqlite+aiosqlite:///./batchgen.db"

    # Session tokens
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    # Thumbnails
    app_url: str = "http://localhost:8000"
    thumbnail_size: int = 400
    thumbnail_quality: int = 70

    # API
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    @field_validator("persistence_failure_policy")
    @classmethod
    def validate_persistence_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in PERSISTENCE_POLICIES:
            raise ValueError("PERSISTENCE_FAILURE_POLICY must be one of degrade|fail")
        return v

    @property
    def backend_available(self) -> bool:
        """True when the generation backend has a credential to call it with."""
        return bool(self.replicate_api_token and self.replicate_api_token.strip())

    @property
    def storage_configured(self) -> bool:
        required = [
            self.r2_endpoint,
            self.r2_access_key_id,
            self.r2_secret_access_key,
            self.r2_bucket_name,
        ]
        return all(v is not None for v in required)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
