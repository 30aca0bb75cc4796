"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    """Server and worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Chunkflow Upload Service"
    app_version: str = "0.1.0"
    debug: bool = False
    api_v1_prefix: str = "/api/v1"

    # Redis (broker, job tracker, upload sessions)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = "redis_secret"

    # Environment mode
    environment: str = "development"

    # CORS, comma-separated origins allowed to call the API from a browser
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def redis_url(self) -> str:
        """Construct Redis URL for broker and job state."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Celery
    celery_broker_url: str = ""
    celery_result_backend: str = ""
    worker_concurrency: int = 2
    cleanup_interval_seconds: int = 900

    def get_celery_broker_url(self) -> str:
        """Get Celery broker URL, defaulting to Redis."""
        return self.celery_broker_url or self.redis_url

    def get_celery_result_backend(self) -> str:
        """Get Celery result backend, defaulting to Redis."""
        return self.celery_result_backend or self.redis_url

    # MinIO / S3
    minio_host: str = "minio"
    minio_port: int = 9000
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    minio_bucket_uploads: str = "chunkflow-uploads"
    minio_bucket_results: str = "chunkflow-results"
    result_url_expiry_seconds: int = 3600

    @property
    def minio_endpoint(self) -> str:
        """Construct MinIO endpoint."""
        return f"{self.minio_host}:{self.minio_port}"

    # Chunked uploads
    upload_tmp_dir: str = "/tmp/chunkflow"
    max_upload_size_mb: int = 20480
    max_chunk_size_bytes: int = 10 * MIB  # server-enforced ceiling
    upload_session_ttl_seconds: int = 86400
    upload_rate_limit: str = "3/minute"

    # Jobs
    job_ttl_seconds: int = 86400

    # Backpressure
    queue_soft_limit: int = 200
    queue_hard_limit: int = 300

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * MIB


class ClientSettings(BaseSettings):
    """Knobs for the transfer client, read from CHUNKFLOW_CLIENT_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHUNKFLOW_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = "http://localhost:8000/api/v1"
    is_mobile: bool = False
    state_dir: str = ".chunkflow"

    # Strategy selection
    single_upload_threshold_bytes: int = 50 * MIB
    single_upload_max_attempts: int = 3

    # Chunk sizes per speed class; the largest must not exceed the server ceiling
    small_chunk_size_bytes: int = 2 * MIB
    medium_chunk_size_bytes: int = 5 * MIB
    max_chunk_size_bytes: int = 10 * MIB

    # Chunk transfer
    chunk_max_attempts: int = 3
    chunk_retry_base_delay: float = 1.0
    chunk_retry_max_delay: float = 4.0
    chunk_timeout_seconds: float = 120.0

    # Connection probe
    probe_timeout_seconds: float = 3.0
    probe_ttl_seconds: float = 60.0
    probe_fast_threshold_ms: float = 300.0
    probe_medium_threshold_ms: float = 1000.0

    # Job polling
    poll_interval_seconds: float = 1.5


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    # Production must not run with the weak default secrets
    if settings.environment == "production":
        _weak_defaults = {
            "redis_password": "redis_secret",
            "minio_secret_key": "minioadmin",
        }
        for field, weak_value in _weak_defaults.items():
            if getattr(settings, field, None) == weak_value:
                raise ValueError(
                    f"FATAL: {field.upper()} still has its default value. "
                    f"Set a strong secret via environment variable in production."
                )

    return settings


@lru_cache
def get_client_settings() -> ClientSettings:
    """Get cached client settings instance."""
    return ClientSettings()
