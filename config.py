from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Redis (counters, blocks, failure logs)
    # =========================
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_KEY_PREFIX: str = "sitesec:"
    STORE_TIMEOUT_SECONDS: float = 2.0

    # =========================
    # Database (audit trail)
    # =========================
    DATABASE_URL: str = "sqlite:///./site_security.db"
    DATABASE_TIMEOUT_SECONDS: int = 5

    # =========================
    # Content backend (business handlers)
    # =========================
    CONTENT_BACKEND_URL: str = "http://localhost:8001"
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0

    # =========================
    # Admin control surface
    # =========================
    ADMIN_SHARED_SECRET: Optional[str] = None
    ADMIN_PATH_PREFIX: str = "/security"

    # =========================
    # Policy (hot reloadable through POLICY_SOURCE_URL)
    # =========================
    POLICY_SOURCE_URL: Optional[str] = None
    POLICY_SOURCE_SECRET: Optional[str] = None
    POLICY_REFRESH_INTERVAL_SECONDS: float = 10.0
    POLICY_REFRESH_MAX_BACKOFF_SECONDS: float = 120.0

    TRUSTED_PROXY_HOPS: int = 0
    IP_WHITELIST: List[str] = Field(default_factory=list)
    AUTH_PATHS: List[str] = Field(default_factory=lambda: ["/api/auth/login"])

    RATE_LIMIT_ALGORITHM: str = "sliding_window"
    AUTH_IP_LIMIT: int = 20
    AUTH_IP_WINDOW_SECONDS: int = 300
    AUTH_USER_LIMIT: int = 5
    AUTH_USER_WINDOW_SECONDS: int = 900
    API_REQUESTS_PER_MINUTE: int = 60
    API_PATH_PREFIX: str = "/api/"

    AUTO_BLOCK_THRESHOLD: int = 5
    AUTO_BLOCK_DURATION_SECONDS: int = 24 * 60 * 60
    FAILURE_WINDOW_SECONDS: int = 900

    # Store outage behaviour: True admits traffic, False answers 503
    FAIL_OPEN: bool = True

    AUDIT_RETENTION_MIN_DAYS: int = 30


# Singleton
settings = Settings()
