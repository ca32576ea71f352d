"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Server Configuration
    # ============================================================
    base_url: str = Field(
        "http://localhost:3000",
        description="Public base URL used to build sign links (set via BASE_URL)"
    )
    port: int = Field(3000, description="HTTP port for the relay server")
    api_prefix: str = Field("/api/signatures", description="Mount point of the signature routes")

    # ============================================================
    # Signature Session Lifecycle
    # ============================================================
    session_ttl_minutes: int = Field(60, description="Default session lifetime when the owner omits one")
    max_session_ttl_minutes: int = Field(24 * 60, description="Largest lifetime an owner may request")
    retention_minutes: int = Field(
        60,
        description="How long a session is kept after its expiry before it is deleted"
    )
    sweep_interval_seconds: float = Field(60.0, description="Interval between TTL sweep passes")

    # ============================================================
    # Long-Poll Configuration
    # ============================================================
    poll_default_timeout_seconds: float = Field(30.0, description="Poll timeout when the client sends none")
    poll_max_timeout_seconds: float = Field(60.0, description="Server-side cap for poll timeouts")

    # ============================================================
    # API Protection
    # ============================================================
    allowed_origins: str = Field("*", description="Comma-separated CORS allowed origins")
    rate_limit_enabled: bool = Field(True, description="Enable per-IP rate limiting")
    rate_limit_per_minute: int = Field(120, description="Requests per minute per IP")
    session_create_rate_limit_per_minute: int = Field(
        20,
        description="Session creations per minute per IP (stricter bucket)"
    )

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    audit_log_dir: Optional[str] = Field(
        None,
        description="Directory for the security audit log file (disabled when unset)"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def retention_seconds(self) -> float:
        return self.retention_minutes * 60.0

    def sign_url(self, session_id: str) -> str:
        """Build the URL the signer opens in a browser."""
        return f"{self.base_url.rstrip('/')}/sign/{session_id}"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
