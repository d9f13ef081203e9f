from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Deployment
    environment: str = "production"  # anything else exposes diagnostic details
    allow_loopback: bool = False  # permissive mode for local testing only

    # HTTP fetcher
    timeout_ms: int = 5_000
    max_redirects: int = 5
    max_body_bytes: int = 25 * 1024 * 1024
    max_connections: int = 100
    max_keepalive_connections: int = 20
    max_connections_per_host: int = 10
    verify_ssl: bool = True

    # Caches
    proxy_cache_ttl_ms: int = 10 * 60 * 1000
    page_cache_ttl_ms: int = 30 * 60 * 1000
    cache_sweep_interval_s: float = 60.0
    cache_sweep_every_n_sets: int = 50
    coalesce_inflight: bool = False

    # Rewriter
    large_document_bytes: int = 1024 * 1024
    proxy_name: str = "EmbedProxy"

    # Logging
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


settings = Settings()
