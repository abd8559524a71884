from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "erasure-pipeline-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    ops_secret: str | None = None
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_lease_seconds: int = 120
    idempotency_ttl_seconds: int = 3600
    at_least_once_actions: str = ""
    breaker_failure_threshold: int = 5
    breaker_window_seconds: int = 600
    breaker_cooldown_seconds: int = 300
    breaker_max_cooldown_seconds: int = 3600
    controller_overrides_json: str | None = None
    dispatch_batch_size: int = 5
    dispatch_batch_pause_seconds: float = 1.0
    verify_fetch_timeout_seconds: float = 8.0
    verify_batch_size: int = 5
    verify_batch_pause_seconds: float = 1.0
    verify_recheck_hours: int = 72
    verify_inconclusive_retry_hours: int = 6
    capture_base_url: str | None = None
    capture_timeout_seconds: float = 8.0
    blob_root: str = "./var/blobs"
    signing_backend: str = "local-ed25519"
    signing_private_key_pem: str | None = None
    signing_public_key_pem: str | None = None
    signing_key_id: str = "local-ed25519-key"
    aws_region: str | None = None
    aws_kms_key_id: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "erasure-pipeline-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ERASURE_", extra="ignore")

    def at_least_once_action_labels(self) -> set[str]:
        return {chunk.strip() for chunk in self.at_least_once_actions.split(",") if chunk.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
