from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    worker_id: str = "local-worker"
    ops_secret: str = "local-ops-secret"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_batch_size: int = 5
    claim_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    verification_sweep_interval_seconds: float = 900.0
    verification_sweep_batch_size: int = 50
    webform_timeout_seconds: float = 8.0
    otel_enabled: bool = True
    otel_service_name: str = "erasure-pipeline-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ERASURE_WORKER_", extra="ignore")


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
