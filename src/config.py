from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    database_url: str | None = None
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    internal_scheduler_secret: str | None = None

    lemlist_webhook_secret: str | None = None
    postmark_webhook_secret: str | None = None
    phantombuster_webhook_secret: str | None = None
    heygen_webhook_secret: str | None = None
    heygen_webhook_signature_tolerance_seconds: int = 300
    webhook_max_body_bytes: int = 256 * 1024

    orphan_worker_enabled: bool = True
    orphan_poll_interval_seconds: float = 5.0
    orphan_batch_size: int = 50
    orphan_lease_seconds: int = 120
    orphan_max_attempts: int = 20
    orphan_base_delay_seconds: float = 5.0
    orphan_max_delay_seconds: float = 1800.0
    orphan_jitter_ratio: float = 0.2
    orphan_fallback_max_size: int = 1000
    orphan_fallback_max_flush_failures: int = 10
    orphan_stats_max_rows: int = 5000
    orphan_stale_received_seconds: int = 300
    orphan_drain_timeout_seconds: float = 30.0
    readiness_max_poll_age_seconds: int = 120

    dead_letter_replay_cooldown_seconds: int = 60
    dead_letter_replay_max_batch: int = 25

    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
