from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_name: str = "photo-migration-engine"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    # API startup waits this long for the database before giving up
    db_connect_retries: int = 30
    db_connect_retry_delay: float = 1.0

    database_url: str
    redis_url: str

    # Claims older than this with no terminal status are reclaimable
    lease_timeout_seconds: int = 600
    idle_poll_seconds: float = 2.0

    default_batch_size: int = 100
    default_concurrency: int = 3
    default_quality: int = 70
    default_max_width: int = 1600

    source_store: str = "http"  # "http" or "local"
    source_url_template: str = "https://www.googleapis.com/drive/v3/files/{ref}?alt=media"
    source_auth_token: str | None = None
    source_timeout_seconds: float = 60.0
    source_dir: str = "/data/source"

    target_dir: str = "/data/media"
    target_prefix: str = "photos/hd"

settings = Settings()
