"""
Relay configuration settings.
Loaded from environment variables (or a .env file) with pydantic-settings.

Secrets are held as SecretStr and read through the get_* helpers so they
never end up in logs or reprs.
"""
from functools import lru_cache
from typing import List, Optional, Union
import json
import logging

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "dev-only-change-me"


class Settings(BaseSettings):
    """
    Chat relay configuration.

    Every field can be overridden through the environment using its
    upper-cased name (e.g. RESPONDER_WEBHOOK_URL).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    # ===========================
    # Application
    # ===========================

    app_name: str = Field(default="MindCare Chat Relay")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(
        default="development",
        description="development, testing, staging or production"
    )
    debug: bool = Field(default=False)

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001, ge=1, le=65535)
    api_prefix: str = Field(default="/api")

    cors_origins: Union[List[str], str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Allowed CORS origins"
    )
    cors_allow_credentials: bool = Field(default=True)

    # ===========================
    # Authentication
    # ===========================

    jwt_secret: SecretStr = Field(
        default=SecretStr(DEV_JWT_SECRET),
        description="Shared secret used to verify connection tokens"
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiration_hours: int = Field(default=24, ge=1)

    # ===========================
    # Responder (AI webhook)
    # ===========================

    responder_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving user text; unset means fallback replies only"
    )
    responder_api_key: Optional[SecretStr] = Field(default=None)
    responder_timeout: float = Field(default=10.0, gt=0, le=120)
    responder_history_size: int = Field(
        default=5,
        ge=0,
        le=50,
        description="Recent transcript turns forwarded as context"
    )
    responder_breaker_fail_max: int = Field(default=5, ge=1)
    responder_breaker_reset_seconds: int = Field(default=60, ge=1)
    responder_platform: str = Field(default="mindcare")

    # ===========================
    # Session store
    # ===========================

    session_store_backend: str = Field(
        default="http",
        description="'http' for the backend API, 'in_memory' for local development"
    )
    session_store_url: Optional[str] = Field(
        default=None,
        description="Base URL of the backend API owning counseling sessions"
    )
    session_store_token: Optional[SecretStr] = Field(default=None)
    session_store_timeout: float = Field(default=10.0, gt=0, le=120)
    best_effort_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts for non-critical store calls before giving up"
    )

    # ===========================
    # Relay behaviour
    # ===========================

    max_message_length: int = Field(default=4000, ge=1, le=100000)

    rate_limit_enabled: bool = Field(default=True)
    rate_limit_capacity: int = Field(
        default=10,
        ge=1,
        description="Burst size of the per-user token bucket"
    )
    rate_limit_refill_per_second: float = Field(default=1.0, gt=0)
    rate_limit_idle_ttl: int = Field(
        default=600,
        ge=1,
        description="Seconds before an idle bucket is forgotten"
    )
    rate_limit_max_keys: int = Field(default=100000, ge=1)

    escalation_extra_keywords: Union[List[str], str] = Field(
        default_factory=list,
        description="Crisis phrases added to the built-in list"
    )

    # ===========================
    # Telemetry
    # ===========================

    enable_telemetry: bool = Field(default=True)
    slow_request_seconds: float = Field(
        default=1.0,
        gt=0,
        description="HTTP requests slower than this are logged as warnings"
    )

    @field_validator('cors_origins', 'escalation_extra_keywords', mode='before')
    @classmethod
    def parse_list(cls, v: Union[str, List[str], None]) -> List[str]:
        """Accept JSON arrays or comma-separated strings from the environment."""
        if v is None:
            return []

        if isinstance(v, list):
            return v

        if isinstance(v, str):
            if v.startswith('['):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass

            return [item.strip() for item in v.split(',') if item.strip()]

        return v

    @field_validator('responder_api_key', 'session_store_token', mode='before')
    @classmethod
    def empty_secret_to_none(cls, v: Optional[Union[str, SecretStr]]) -> Optional[SecretStr]:
        """Treat empty strings as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('session_store_backend')
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("http", "in_memory"):
            raise ValueError("session_store_backend must be 'http' or 'in_memory'")
        return v

    @model_validator(mode='after')
    def validate_deployment(self) -> 'Settings':
        """Refuse development secrets in production and an http store without a URL."""
        if self.environment == "production":
            if self.jwt_secret.get_secret_value() == DEV_JWT_SECRET:
                raise ValueError("JWT_SECRET must be set in production")
            if self.session_store_backend == "in_memory":
                raise ValueError("The in-memory session store is not allowed in production")

        if self.session_store_backend == "http" and not self.session_store_url:
            raise ValueError("SESSION_STORE_URL is required for the http session store")

        if not self.responder_webhook_url:
            logger.warning("RESPONDER_WEBHOOK_URL is not set; every reply will be a fallback message")

        return self

    # ===========================
    # Secure accessors
    # ===========================

    def get_jwt_secret(self) -> str:
        return self.jwt_secret.get_secret_value()

    def get_responder_api_key(self) -> Optional[str]:
        """
        Get responder API key value (use this instead of accessing field directly).

        Returns:
            API key string or None if not set
        """
        if self.responder_api_key:
            return self.responder_api_key.get_secret_value()
        return None

    def get_session_store_token(self) -> Optional[str]:
        if self.session_store_token:
            return self.session_store_token.get_secret_value()
        return None


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

__all__ = ['Settings', 'get_settings', 'settings']
