from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "sourcing-worker-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    job_remove_on_complete: int = 100
    job_remove_on_fail: int = 100
    job_timeout_seconds: float | None = None
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 3600
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    csv_process_concurrency: int = 1
    default_queue_concurrency: int = 1
    scheduled_ingest_enabled: bool = False
    scheduled_ingest_interval_seconds: float = 86400.0
    scheduled_energy_diagnostics_enabled: bool = False
    scheduled_energy_diagnostics_interval_seconds: float = 86400.0
    scheduled_listings_enabled: bool = False
    scheduled_listings_interval_seconds: float = 86400.0
    scheduled_listings_lookback_months: int = 3
    storage_root: str = "./storage"
    storage_bucket: str = "sourcing"
    annuaire_api_base_url: str = (
        "https://api-lannuaire.service-public.fr/api/explore/v2.1/catalog/datasets/api-lannuaire-administration"
    )
    ademe_api_base_url: str = "https://data.ademe.fr/data-fair/api/v1/datasets/dpe03existant"
    insee_files_base_url: str = "https://www.insee.fr/fr/statistiques/fichier/4190491"
    moteur_immo_api_base_url: str = "https://moteurimmo.fr/api"
    moteur_immo_api_key: str | None = None
    http_min_request_interval_seconds: float = 0.1
    http_max_attempts: int = 3
    http_retry_base_seconds: float = 2.0
    http_timeout_seconds: float = 30.0
    deceases_min_age_years: int = 50
    csv_chunk_size: int = 1000
    persistence_batch_size: int = 500
    max_diagnostic_links: int = 5
    ademe_page_size: int = 1000
    listings_page_size: int = 1000
    listings_max_pages: int = 10
    otel_enabled: bool = True
    otel_service_name: str = "sourcing-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
