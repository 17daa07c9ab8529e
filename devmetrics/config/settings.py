"""Application settings and configuration"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DevMetrics"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./devmetrics.db"
    DATABASE_ECHO: bool = False

    # GitHub API
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_API_URL: str = "https://api.github.com"

    # GitHub client resilience controls
    GITHUB_TIMEOUT_SECONDS: float = 30.0
    GITHUB_MAX_RETRIES: int = 3
    GITHUB_BACKOFF_BASE_SECONDS: float = 1.0
    GITHUB_BACKOFF_MAX_SECONDS: float = 60.0
    GITHUB_RATE_LIMIT_BUFFER_SECONDS: int = 2
    # Rate-limit hints longer than this are not waited out; the resource is recorded as failed
    GITHUB_RATE_LIMIT_MAX_WAIT_SECONDS: float = 900.0
    GITHUB_PER_PAGE: int = 100
    GITHUB_CONCURRENCY: int = 4

    # List payloads carry no diff counters; fetch the single-PR resource for changed PRs
    GITHUB_FETCH_PR_DETAILS: bool = True

    # Source selection: "github" or "fixture" (JSON file at SOURCE_FIXTURE_PATH)
    SOURCE_MODE: str = "github"
    SOURCE_FIXTURE_PATH: Optional[str] = None

    USER_AGENT: str = "DevMetricsSync/1.0"

    # Metrics
    METRICS_WINDOW_DAYS: int = 30
    METRICS_TEAM_WINDOW_DAYS: int = 30
    METRICS_TEAM_TOP_N: int = 10
    METRICS_CONTRIBUTION_PR_WEIGHT: float = 2.0
    METRICS_CONTRIBUTION_REVIEW_WEIGHT: float = 1.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env


settings = Settings()
