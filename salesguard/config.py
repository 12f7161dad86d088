"""
Configuration management using Pydantic BaseSettings.
Loads from .env file with environment variable overrides.
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator, Field, ConfigDict
from typing import Optional, List, Dict, Any
import os


# Approved third-party APIs reachable through the egress guard
DEFAULT_EGRESS_WHITELIST: List[Dict[str, Any]] = [
    {
        "domain": "ai.gateway.lovable.dev",
        "description": "AI gateway",
        "requires_tls": True,
        "allowed_methods": ["POST"],
    },
    {
        "domain": "www.googleapis.com",
        "description": "Google APIs (Calendar, Gmail)",
        "requires_tls": True,
        "allowed_methods": ["GET", "POST"],
    },
    {
        "domain": "oauth2.googleapis.com",
        "description": "Google OAuth",
        "requires_tls": True,
        "allowed_methods": ["POST"],
    },
    {
        "domain": "www.linkedin.com",
        "description": "LinkedIn",
        "requires_tls": True,
        "allowed_methods": ["GET", "POST"],
    },
    {
        "domain": "api.linkedin.com",
        "description": "LinkedIn REST API",
        "requires_tls": True,
        "allowed_methods": ["GET", "POST"],
    },
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    # Server Configuration
    server_bind: str = "0.0.0.0:8088"
    server_workers: int = Field(default=1, ge=1, le=32, description="Number of Sanic worker processes")
    auto_reload: bool = Field(default=False, description="Enable auto reload for development")

    # CORS Configuration
    cors_allow_origins: str = "*"

    # Only honour X-Forwarded-For / X-Real-IP when running behind a trusted proxy
    trust_proxy_headers: bool = False

    # Identity (bearer JWT issued by the external auth provider)
    auth_jwt_secret: str = "change-me-in-production-jwt-key"
    auth_jwt_audience: Optional[str] = None

    # Request signing
    request_signing_secret: str = "change-me-in-production-default-key"
    request_signing_required: bool = Field(default=False, description="Reject unsigned requests on signed routes")
    signature_max_skew_seconds: int = Field(default=300, ge=1, le=3600)

    # Rate limiting presets (requests per window)
    rate_limit_ai_analysis_max: int = Field(default=10, ge=1)
    rate_limit_ai_analysis_window_ms: int = Field(default=60_000, ge=1000)
    rate_limit_data_fetch_max: int = Field(default=30, ge=1)
    rate_limit_data_fetch_window_ms: int = Field(default=60_000, ge=1000)
    rate_limit_standard_max: int = Field(default=60, ge=1)
    rate_limit_standard_window_ms: int = Field(default=60_000, ge=1000)
    rate_limit_shards: int = Field(default=16, ge=1, le=1024, description="Lock shards for the in-memory store")
    rate_limit_sweep_interval_seconds: int = Field(default=60, ge=1)

    # Egress
    egress_whitelist: List[Dict[str, Any]] = Field(default_factory=lambda: list(DEFAULT_EGRESS_WHITELIST))
    egress_timeout_ms: int = Field(default=10_000, ge=100, le=120_000)

    # Security monitoring
    unusual_activity_threshold: int = Field(default=100, ge=1)
    unusual_activity_window_minutes: int = Field(default=5, ge=1)
    failed_login_threshold: int = Field(default=10, ge=1)
    failed_login_window_minutes: int = Field(default=10, ge=1)
    lockout_max_failures: int = Field(default=5, ge=1)
    lockout_window_minutes: int = Field(default=15, ge=1)
    security_data_retention_days: int = Field(default=90, ge=1)
    security_cleanup_interval_minutes: int = Field(default=60, ge=5)

    # Database
    sqlite_path: str = "./data/security.db"

    # AI gateway
    ai_gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    ai_gateway_api_key: Optional[str] = None
    ai_gateway_model: str = "google/gemini-2.5-flash"

    # Timeouts and Performance
    request_timeouts: int = Field(default=60, ge=5, le=3600, description="Request/response timeout in seconds")
    slow_request_threshold_ms: int = Field(default=1000, ge=100, description="Slow request threshold in milliseconds")

    # Logging
    log_level: str = "INFO"

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Invalid log level. Must be one of: {valid_levels}')
        return v.upper()

    @field_validator('request_signing_secret')
    @classmethod
    def validate_secret(cls, v):
        if len(v) < 16:
            raise ValueError('request_signing_secret must be at least 16 characters long')
        return v

    def get_rate_limit_presets(self) -> Dict[str, Dict[str, int]]:
        """Get rate limit presets keyed by endpoint class"""
        return {
            'AI_ANALYSIS': {
                'max_requests': self.rate_limit_ai_analysis_max,
                'window_ms': self.rate_limit_ai_analysis_window_ms,
            },
            'DATA_FETCH': {
                'max_requests': self.rate_limit_data_fetch_max,
                'window_ms': self.rate_limit_data_fetch_window_ms,
            },
            'STANDARD': {
                'max_requests': self.rate_limit_standard_max,
                'window_ms': self.rate_limit_standard_window_ms,
            },
        }

    def get_egress_whitelist(self) -> List[Dict[str, Any]]:
        """Get the approved external API list"""
        return [dict(entry) for entry in self.egress_whitelist]

    def get_monitor_config(self) -> dict:
        """Get security-monitor thresholds"""
        return {
            'unusual_activity_threshold': self.unusual_activity_threshold,
            'unusual_activity_window_minutes': self.unusual_activity_window_minutes,
            'failed_login_threshold': self.failed_login_threshold,
            'failed_login_window_minutes': self.failed_login_window_minutes,
            'lockout_max_failures': self.lockout_max_failures,
            'lockout_window_minutes': self.lockout_window_minutes,
            'retention_days': self.security_data_retention_days,
        }

    def get_background_task_config(self) -> dict:
        """Get background task configuration"""
        return {
            'sweep_interval_seconds': self.rate_limit_sweep_interval_seconds,
            'cleanup_interval_minutes': self.security_cleanup_interval_minutes,
        }

    model_config = ConfigDict(
        env_file=".env.testing" if os.path.exists(".env.testing") else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
