"""Application configuration using Pydantic BaseSettings."""

import logging
from urllib.parse import urlencode

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./nero.db",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:5173", alias="CORS_ORIGINS")

    # Public base URL of this API (used to build the provider callback URL)
    api_base_url: str = Field(default="http://localhost:2000", alias="API_BASE_URL")

    # Auth (access tokens are issued by the account service)
    jwt_secret_key: str = Field(default="", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    # NanoBanana provider
    nanobanana_api_key: str = Field(default="", alias="NANOBANANA_API_KEY")
    nanobanana_base_url: str = Field(
        default="https://api.nanobananaapi.ai", alias="NANOBANANA_BASE_URL"
    )
    nanobanana_webhook_secret: str = Field(default="", alias="NANOBANANA_WEBHOOK_SECRET")
    provider_timeout_seconds: float = Field(default=30.0, alias="PROVIDER_TIMEOUT_SECONDS")

    # Local image storage
    uploads_dir: str = Field(default="uploads", alias="UPLOADS_DIR")
    generated_folder: str = Field(default="nero/generated", alias="GENERATED_FOLDER")
    references_folder: str = Field(default="nero/references", alias="REFERENCES_FOLDER")
    download_timeout_seconds: float = Field(default=60.0, alias="DOWNLOAD_TIMEOUT_SECONDS")

    # Billing
    generation_cost: int = Field(default=1, ge=0, alias="GENERATION_COST")

    # Reconciliation
    claim_lease_seconds: int = Field(default=120, alias="CLAIM_LEASE_SECONDS")
    claim_wait_seconds: float = Field(default=15.0, alias="CLAIM_WAIT_SECONDS")
    claim_poll_interval_seconds: float = Field(default=0.2, alias="CLAIM_POLL_INTERVAL_SECONDS")
    max_materialization_attempts: int = Field(
        default=3, ge=1, alias="MAX_MATERIALIZATION_ATTEMPTS"
    )

    # Stale task sweeper
    sweeper_enabled: bool = Field(default=False, alias="SWEEPER_ENABLED")
    sweeper_interval_seconds: int = Field(default=30, alias="SWEEPER_INTERVAL_SECONDS")
    sweeper_batch_size: int = Field(default=20, alias="SWEEPER_BATCH_SIZE")
    task_expiry_hours: int = Field(default=24, ge=0, alias="TASK_EXPIRY_HOURS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def callback_url(self) -> str:
        """Webhook URL handed to the provider on submission.

        The provider cannot sign its callbacks, so the shared secret travels
        in the query string and is checked by the webhook dependency.
        """
        url = f"{self.api_base_url.rstrip('/')}/api/v1/nanobanana/callback"
        if self.nanobanana_webhook_secret:
            url += "?" + urlencode({"token": self.nanobanana_webhook_secret})
        return url

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.nanobanana_api_key:
            missing.append("NANOBANANA_API_KEY: API key from https://nanobananaapi.ai dashboard")

        if not self.nanobanana_webhook_secret:
            missing.append(
                "NANOBANANA_WEBHOOK_SECRET: Random secret used to authenticate provider callbacks"
            )

        if not self.jwt_secret_key:
            missing.append("JWT_SECRET_KEY: Must match the account service signing key")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
