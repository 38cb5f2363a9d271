from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    PORT: int = 3002
    DB_PATH: str = "/data/luogu_archive.db"
    LOG_LEVEL: str = "info"

    # Upstream site
    BASE_URL: str = "https://www.luogu.com"
    # Operator-supplied fallback identity, used when a caller sends no cookie.
    DEFAULT_COOKIE: str = ""
    COOKIE_MODE: str = "new"
    REQUEST_TIMEOUT: float = 30.0
    SITE_UTC_OFFSET_HOURS: int = 8
    MAX_CONTENT_BYTES: int = 100_000

    # Crawler
    CRAWL_JITTER_MIN: float = 1.0
    CRAWL_JITTER_MAX: float = 3.0
    CRAWLER_MAX_RETRIES: int = 3
    BLOCKED_BACKOFF_SECONDS: float = 5.0

    # Task queue
    QUEUE_CONCURRENCY: int = 3
    QUEUE_POLL_INTERVAL: float = 0.1
    JOB_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 5.0
    RETRY_DELAY_CAP: float = 60.0
    BOOTSTRAP_LIMIT: int = 100
    BATCH_ITEM_DELAY: float = 1.0


settings = Settings()
