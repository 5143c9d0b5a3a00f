"""Application configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Optional


class Settings(BaseSettings):
    """Push delivery settings loaded from environment variables"""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # Defaults to ./data/logs when unset

    # Outbound HTTP
    PUSH_HTTP_TIMEOUT_SECONDS: float = 30.0
    PUSH_HTTP_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # OneSignal
    ONESIGNAL_API_URL: str = "https://onesignal.com/api/v1"

    # Firebase Cloud Messaging
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    FCM_API_URL: str = "https://fcm.googleapis.com/v1"
    FCM_IID_URL: str = "https://iid.googleapis.com/iid/v1"
    FCM_BATCH_SIZE: int = 500  # FCM per-batch limit

    # Web Push
    WEBPUSH_TTL_SECONDS: int = 86400  # 24 hours
    WEBPUSH_CONCURRENCY: int = 10
    VAPID_JWT_EXPIRATION_SECONDS: int = 12 * 60 * 60

    @field_validator('LOG_LEVEL', mode='after')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a standard logging level name."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator('FCM_BATCH_SIZE', mode='after')
    @classmethod
    def validate_fcm_batch_size(cls, v: int) -> int:
        """FCM accepts at most 500 messages per batch."""
        if not 1 <= v <= 500:
            raise ValueError("FCM_BATCH_SIZE must be between 1 and 500")
        return v

    @field_validator('WEBPUSH_CONCURRENCY', mode='after')
    @classmethod
    def validate_webpush_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("WEBPUSH_CONCURRENCY must be at least 1")
        return v

    @field_validator('VAPID_JWT_EXPIRATION_SECONDS', mode='after')
    @classmethod
    def validate_vapid_expiration(cls, v: int) -> int:
        """RFC 8292 forbids VAPID tokens valid for more than 24 hours."""
        if not 0 < v <= 86400:
            raise ValueError("VAPID_JWT_EXPIRATION_SECONDS must be between 1 and 86400")
        return v

    @property
    def fcm_send_url_template(self) -> str:
        """FCM v1 send URL with a {project_id} placeholder."""
        return f"{self.FCM_API_URL}/projects/{{project_id}}/messages:send"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
