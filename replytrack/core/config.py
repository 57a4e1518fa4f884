"""Configuration management for replytrack."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Local task store
    sqlite_db_path: str = Field(default="./data/tasks.db", description="SQLite file holding the task store")

    # API authentication
    auth_token: str | None = Field(default=None, description="Bearer token required by the /api routes")

    # WAHA HTTP API
    waha_base_url: str = Field(default="http://waha:3000", description="WAHA Base URL")
    waha_api_key: str | None = Field(default=None, description="WAHA API Key (optional)")
    waha_session: str = Field(default="default", description="WAHA session name")

    # PocketBase replica (optional)
    replica_enabled: bool = Field(default=False, description="Mirror tasks to a PocketBase replica")
    pocketbase_url: str = Field(default="http://127.0.0.1:8090", description="PocketBase server URL")
    pocketbase_admin_email: str | None = Field(default=None, description="PocketBase admin email")
    pocketbase_admin_password: str | None = Field(default=None, description="PocketBase admin password")

    # Logfire (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")

    # Inbound webhook
    webhook_secret: str | None = Field(
        default=None, description="Shared secret WAHA sends in the X-Webhook-Secret header (optional)"
    )

    # Redis (optional): job tracker state, rate limits and webhook nonces
    redis_url: str | None = Field(default=None, description="Redis connection URL (e.g., redis://localhost:6379)")

    # Correlation engine
    task_debug: bool = Field(default=False, description="Log verbose matching diagnostics")
    default_task_timeout_ms: int = Field(default=20_000, description="Timeout used when awaitResponse omits one")
    task_retention_ms: int = Field(default=5 * 60_000, description="How long finished tasks are kept")
    timeout_action_retry_attempts: int = Field(default=3, description="Attempts for onTimeout actions")
    timeout_action_retry_delay_ms: int = Field(default=1200, description="Delay between onTimeout attempts")

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Return a credential that must be set for `service_name`.

        Raises:
            ValueError: naming the environment variable to set, when the value is missing or empty
        """
        value = getattr(self, field_name)
        if value:
            return value
        raise ValueError(
            f"{service_name} credential not configured. "
            f"Set {field_name.upper()} environment variable or add to .env file."
        )


class Constants:
    """Fixed values that are not worth an environment variable."""

    API_TIMEOUT_SECONDS: int = 30

    # Actions: webhook timeout when the action gives none, stored response body length
    ACTION_TIMEOUT_MS: int = 8_000
    WEBHOOK_RESPONSE_BODY_LIMIT: int = 2_000

    MAINTENANCE_INTERVAL_SECONDS: int = 1
    MAINTENANCE_JOB_NAME: str = "task_maintenance"

    MAX_AUTH_FAILURES_PER_MINUTE: int = 10
    MAX_WEBHOOK_REQUESTS_PER_MINUTE: int = 600

    # Inbound webhook replay protection
    WEBHOOK_MAX_AGE_SECONDS: int = 300
    WEBHOOK_NONCE_TTL_SECONDS: int = 600
    WEBHOOK_RATE_LIMIT_PER_SENDER: int = 30
    # Inbound message ids remembered to drop redeliveries
    RECENT_MESSAGE_IDS_MAXLEN: int = 1000
    MAX_LIST_LIMIT: int = 200

    REDIS_MAX_CONNECTIONS: int = 10
    TRACKER_DEAD_LETTER_QUEUE_MAXLEN: int = 100

    REPLICA_COLLECTION: str = "response_tasks"
    REPLICA_PAGE_SIZE: int = 200



settings = Settings()
constants = Constants()
