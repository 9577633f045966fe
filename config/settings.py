from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./timeline_crawler.db"

    # Server
    DASHBOARD_PORT: int = 8001
    LOG_LEVEL: str = "INFO"

    # Browser session
    BROWSER_HEADLESS: bool = True
    BROWSER_ARGS: str = "--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage"
    BROWSER_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36"
    )
    VIEWPORT_WIDTH: int = 1280
    VIEWPORT_HEIGHT: int = 720
    SESSION_OPEN_TIMEOUT_SECONDS: float = 60.0
    NAVIGATION_TIMEOUT_SECONDS: float = 30.0
    NAVIGATION_RETRY_DELAY_SECONDS: float = 1.0
    AUTH_STATE_PATH: str = ""

    # Bandwidth interception
    BLOCK_RESOURCES: bool = True
    BLOCKED_RESOURCE_TYPES: str = "image,media,font,other"
    ALLOWED_RESOURCE_HOSTS: str = "x.com,twitter.com,abs.twimg.com,pbs.twimg.com"
    LOG_BLOCKED_REQUESTS: bool = False

    # Crawl loop
    CRAWL_MAX_RECORDS: int = 20
    CRAWL_DUPLICATE_STOP_THRESHOLD: int = 2
    CRAWL_MIN_SCROLL_DISTANCE_PX: int = 100
    CRAWL_MAX_INEFFECTIVE_SCROLLS: int = 3
    CRAWL_MAX_SCROLL_ATTEMPTS: int = 50
    CRAWL_SCROLL_STEP_RATIO: float = 1.5
    CRAWL_SCROLL_ANIMATION_SECONDS: float = 1.5
    CRAWL_SETTLE_DELAY_SECONDS: float = 3.0
    CRAWL_SETTLE_JITTER_SECONDS: float = 2.0
    CRAWL_EXTRACTION_ERROR_LIMIT: int = 3
    CRAWL_PERSISTENCE_OUTAGE_LIMIT: int = 3
    CRAWL_PERSIST_RETRY_DELAY_SECONDS: float = 0.2
    CRAWL_TASK_TIMEOUT_SECONDS: float = 300.0

    # Job control
    MAX_CONCURRENT_JOBS: int = 3
    JOB_HISTORY_LIMIT: int = 200

    # Scheduled crawls (site:target pairs, e.g. "twitter_list:1234,youtube_channel:@nasa")
    SCHEDULED_TARGETS: str = ""
    SCHEDULE_INTERVAL_MINUTES: int = 0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def split_csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


settings = Settings()
