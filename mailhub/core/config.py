"""Application configuration (settings and environment).

Single source of truth for all configuration. Uses pydantic-settings
with .env support. Backend credentials and storage secrets are validated
at load time.
"""

from functools import lru_cache

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment and .env.

    Defaults run fully in memory (no Redis, no telemetry exporter), which is
    what tests and local development use.
    """

    # App
    app_name: str = "mailhub"
    app_version: str = "1.0.0"
    debug: bool = False

    # OAuth clients (tokens are issued elsewhere; these are used for refresh only)
    gmail_client_id: str = ""
    gmail_client_secret: SecretStr = SecretStr("")
    outlook_client_id: str = ""
    outlook_client_secret: SecretStr = SecretStr("")
    outlook_tenant: str = "common"
    oauth_http_timeout_seconds: float = 30.0

    # Credential lifecycle
    credential_refresh_margin_seconds: int = 120
    credential_refresh_max_attempts: int = 4
    credential_lease_ttl_seconds: int = 300

    # Backend calls
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 30.0
    per_account_concurrency: int = 8
    operation_timeout_seconds: float = 60.0
    graph_base_url: str = "https://graph.microsoft.com/v1.0"

    # Push subscriptions
    subscription_lifetime_minutes: int = 4230  # ~70.5 hours
    subscription_renewal_margin_seconds: int = 3600
    subscription_renewal_max_attempts: int = 3
    subscription_scheduler_interval_seconds: float = 60.0
    outlook_notification_url: str = ""
    outlook_lifecycle_notification_url: str = ""
    # Gmail push goes to a Pub/Sub topic; the push subscription calls
    # POST /webhooks/gmail?token=<gmail_push_verification_token>.
    gmail_pubsub_topic: str = ""
    gmail_push_verification_token: SecretStr | None = None
    gmail_watch_label_ids: str = "INBOX"

    # Change event dispatch
    dedup_retention_seconds: int = 3600
    dedup_max_entries: int = 100_000

    # Storage: "memory" (process-local) or "redis"
    storage_backend: str = "memory"
    secret_key: SecretStr = SecretStr("")
    encryption_salt: SecretStr = SecretStr("")

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: SecretStr | None = None
    publish_change_events: bool = False

    # OpenTelemetry
    telemetry_enabled: bool = False
    telemetry_exporter: str = "console"
    telemetry_otlp_endpoint: str | None = None
    telemetry_sample_rate: float = 1.0
    telemetry_environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_storage(self) -> "Settings":
        """Validate storage backend and the secrets it needs.

        - memory: nothing persisted, no secrets required.
        - redis: SECRET_KEY and ENCRYPTION_SALT required (tokens are encrypted at rest).
        """
        if self.storage_backend == "redis":
            if not self.secret_key.get_secret_value():
                raise ValueError(
                    "SECRET_KEY is required when storage_backend is 'redis'. "
                    "Generate with: openssl rand -hex 32."
                )
            if not self.encryption_salt.get_secret_value():
                raise ValueError(
                    "ENCRYPTION_SALT is required when storage_backend is 'redis'. "
                    "Generate with: openssl rand -hex 16."
                )
        elif self.storage_backend != "memory":
            raise ValueError(
                f"Invalid storage_backend '{self.storage_backend}'. "
                "Must be one of: 'memory', 'redis'"
            )
        if self.per_account_concurrency < 1:
            raise ValueError("per_account_concurrency must be at least 1")
        return self

    @property
    def gmail_watch_labels(self) -> list[str]:
        return [s.strip() for s in self.gmail_watch_label_ids.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings (single instance per process).

    Validation runs on first call, not at import time. In tests, call
    get_settings.cache_clear() before overriding env vars so the next
    get_settings() uses the new values.
    """
    return Settings()
