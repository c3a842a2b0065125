"""
LearnHub Backend Configuration

Configuration management with environment variable support.
Rate limiting defaults are read once at startup; the live rate limit
configuration is derived from these values and may be changed at runtime
through the admin API.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List
from functools import lru_cache
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )
    SERVICE_NAME: str = Field(
        default="learnhub-api", description="Service name for logs and traces"
    )
    SERVICE_VERSION: str = Field(default="0.1.0", description="Service version")

    # Rate limiting: global switches
    RATE_LIMIT_ENABLED: bool = Field(
        default=True, description="Enable rate limiting for all routes"
    )
    RATE_LIMIT_SKIP_SUCCESS: bool = Field(
        default=False, description="Do not count requests that succeed (status < 400)"
    )
    RATE_LIMIT_SKIP_FAILED: bool = Field(
        default=False, description="Do not count requests that fail (status >= 400)"
    )
    RATE_LIMIT_KEY_PREFIX: str = Field(
        default="rl:", description="Prefix for rate limit store keys"
    )

    # Rate limiting: per-tier windows and quotas
    RATE_LIMIT_GUEST_WINDOW_MS: int = Field(
        default=60000, ge=1, description="Guest window length in milliseconds"
    )
    RATE_LIMIT_GUEST_MAX: int = Field(
        default=30, ge=1, description="Guest requests per window"
    )
    RATE_LIMIT_AUTH_WINDOW_MS: int = Field(
        default=60000, ge=1, description="Authenticated window length in milliseconds"
    )
    RATE_LIMIT_AUTH_MAX: int = Field(
        default=100, ge=1, description="Authenticated requests per window"
    )
    RATE_LIMIT_PREMIUM_WINDOW_MS: int = Field(
        default=60000, ge=1, description="Premium window length in milliseconds"
    )
    RATE_LIMIT_PREMIUM_MAX: int = Field(
        default=200, ge=1, description="Premium requests per window"
    )
    RATE_LIMIT_ADMIN_WINDOW_MS: int = Field(
        default=60000, ge=1, description="Admin window length in milliseconds"
    )
    RATE_LIMIT_ADMIN_MAX: int = Field(
        default=500, ge=1, description="Admin requests per window"
    )

    # Rate limiting: backing store
    RATE_LIMIT_STORE: str = Field(
        default="auto", description="Store backend: auto, memory or redis"
    )
    FORCE_REDIS: bool = Field(
        default=False, description="Use Redis in auto mode even in development"
    )

    # Redis configuration
    REDIS_URL: str = Field(
        default="redis://localhost:6379", description="Redis connection URL"
    )
    REDIS_CONNECTION_TIMEOUT: float = Field(
        default=5.0, gt=0, le=60, description="Redis connect timeout in seconds"
    )
    REDIS_OPERATION_TIMEOUT: float = Field(
        default=2.0, gt=0, le=60, description="Redis operation timeout in seconds"
    )

    # Circuit breaker settings
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(
        default=5, ge=1, le=20, description="Circuit breaker failure threshold"
    )
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = Field(
        default=30.0,
        ge=1,
        le=300,
        description="Circuit breaker recovery timeout in seconds",
    )

    # Client address resolution
    TRUSTED_PROXIES: str = Field(
        default="",
        description="Proxy addresses whose X-Forwarded-For is trusted (comma-separated)",
    )

    # Authentication
    JWT_SECRET: str = Field(
        default="learnhub-development-secret-change-me",
        min_length=16,
        description="Secret used to verify bearer tokens",
    )
    JWT_ALGORITHM: str = Field(default="HS256", description="Bearer token algorithm")

    # Development and debugging
    DEBUG: bool = Field(default=False, description="Enable debug mode")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=False, description="Render logs as JSON")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("RATE_LIMIT_STORE")
    @classmethod
    def validate_rate_limit_store(cls, v):
        """Validate store backend name."""
        allowed = ["auto", "memory", "redis"]
        if v.lower() not in allowed:
            raise ValueError(f"RATE_LIMIT_STORE must be one of: {allowed}")
        return v.lower()

    @field_validator("JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v):
        """Only symmetric algorithms are supported with a shared secret."""
        allowed = ["HS256", "HS384", "HS512"]
        if v not in allowed:
            raise ValueError(f"JWT_ALGORITHM must be one of: {allowed}")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def rate_limit_store_backend(self) -> str:
        """Resolve the store backend, applying the development default."""
        if self.RATE_LIMIT_STORE != "auto":
            return self.RATE_LIMIT_STORE
        if self.is_development and not self.FORCE_REDIS:
            return "memory"
        return "redis"

    @property
    def trusted_proxies_list(self) -> List[str]:
        """Get trusted proxy addresses as list."""
        return [
            proxy.strip() for proxy in self.TRUSTED_PROXIES.split(",") if proxy.strip()
        ]

    @property
    def jwt_algorithms(self) -> List[str]:
        """Algorithms accepted when decoding bearer tokens."""
        return [self.JWT_ALGORITHM]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Create global settings instance
settings = get_settings()
