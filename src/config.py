from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    resend_webhook_secret: str | None = None
    resend_webhook_signature_mode: str = "enforce"  # enforce | permissive_audit
    resend_webhook_signature_tolerance_seconds: int = 300
    webhook_forward_timeout_seconds: float = 8.0
    webhook_forward_max_concurrent_workers: int = 4
    webhook_forward_user_agent: str = "WhopMail-Webhook-Forwarder/1.0"
    send_time_lookback_days: int = 90
    webhook_ledger_stale_claim_seconds: int = 300
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
