"""Global configuration management using pydantic-settings.

Every tunable of the ingestion pipeline is read from environment variables
(or a local ``.env`` file) and validated once at startup. The singleton
accessor keeps a single, consistent configuration across the scheduler,
the browser session and the stores.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GlobalConfig(BaseSettings):
    """Centralized configuration with environment variable binding.

    Defaults target a local development setup (SQLite file, local Redis).
    Production deployments override the store URLs and, where the bundled
    Chromium is unavailable, the browser executable path.

    Attributes:
        app_name: Application identifier for logging.
        environment: Deployment environment.
        debug: Enable verbose debugging output.
        headless: Run the browser without a visible window.
        browser_executable_path: Optional system Chromium/Chrome binary.
        browser_profile_prefix: Prefix of the per-launch temporary profile directory.
        blocked_resource_types: Request types aborted to save bandwidth.
        user_agent: User-agent string presented to the exchange website.
        log_level: Minimum log level for output filtering.
        log_dir: Directory path for structured JSON log files.
        log_rotation: Log file rotation interval.
        log_retention: Log file retention period.
        base_url: Exchange website root.
        request_timeout_ms: Default Playwright navigation/action timeout.
        strategy_timeout_sec: Upper bound for one extraction strategy.
        extraction_max_attempts: Attempts of the full strategy chain.
        extraction_retry_delay_sec: Fixed delay between attempts.
        page_size: Rows per page requested from paginated tables.
        watchdog_failure_threshold: Maximum row failure ratio before a batch is rejected.
        database_url: SQLAlchemy async URL of the durable store.
        database_echo: Echo SQL statements.
        redis_url: Fast cache URL (empty string disables the cache).
        redis_key_prefix: Prefix applied to every cache key.
        redis_socket_timeout_sec: Socket timeout of cache round-trips.
        market_utc_offset_minutes: Fixed exchange offset from UTC (UTC+5:45).
        trading_days: Cron day-of-week expression of trading days.
        market_open_hour: First trading hour (local).
        market_close_hour: Hour the market closes (local).
        index_poll_seconds: Market index cadence during market hours.
        price_poll_minutes: Price cadence during market hours.
        job_timeout_sec: Watchdog bound for a single job run.
        batch_job_timeout_sec: Watchdog bound for the company batch jobs.
        shutdown_grace_sec: Time given to running jobs on shutdown.
        output_dir: Directory for CLI exports.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Metadata
    app_name: str = Field(default="NEPSE-Ingest", description="Application identifier")
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Browser Configuration
    headless: bool = Field(default=True, description="Run browser in headless mode")
    browser_executable_path: Path | None = Field(
        default=None, description="Override path of the Chromium executable"
    )
    browser_profile_prefix: str = Field(
        default="nepse-scraper-", description="Temporary profile directory prefix"
    )
    blocked_resource_types: list[str] = Field(
        default=["image", "font", "media"],
        description="Resource types aborted by the request filter",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="Browser user-agent",
    )

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    log_dir: Path = Field(default=Path("logs"), description="Log output directory")
    log_rotation: str = Field(default="1 day", description="Log rotation interval")
    log_retention: str = Field(default="2 weeks", description="Log retention period")

    # Target Configuration
    base_url: str = Field(
        default="https://www.nepalstock.com/",
        description="Exchange website base URL",
    )

    # Resilience Parameters
    request_timeout_ms: int = Field(
        default=60000, ge=5000, le=120000, description="Request timeout in milliseconds"
    )
    strategy_timeout_sec: float = Field(
        default=45.0, ge=1.0, le=300.0, description="Timeout of one extraction strategy"
    )
    extraction_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts of the whole strategy chain"
    )
    extraction_retry_delay_sec: float = Field(
        default=2.0, ge=0.0, le=60.0, description="Fixed delay between attempts"
    )
    page_size: int = Field(default=500, ge=1, le=1000, description="Rows per table page")

    # Watchdog Configuration
    watchdog_failure_threshold: float = Field(
        default=0.30, ge=0.0, le=1.0, description="Row failure ratio threshold (0.30 = 30%)"
    )

    # Durable store
    database_url: str = Field(
        default="sqlite+aiosqlite:///nepse.db", description="SQLAlchemy async database URL"
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Fast cache
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis URL (empty disables the cache)"
    )
    redis_key_prefix: str = Field(default="nepse:", description="Cache key prefix")
    redis_socket_timeout_sec: float = Field(
        default=5.0, gt=0.0, le=60.0, description="Cache socket timeout"
    )

    # Market calendar
    market_utc_offset_minutes: int = Field(
        default=345, ge=-720, le=840, description="Exchange UTC offset in minutes"
    )
    trading_days: str = Field(
        default="sun,mon,tue,wed,thu", description="Cron day_of_week of trading days"
    )
    market_open_hour: int = Field(default=11, ge=0, le=23, description="Market open hour")
    market_close_hour: int = Field(default=15, ge=1, le=24, description="Market close hour")

    # Cadences
    index_poll_seconds: int = Field(
        default=20, ge=5, le=3600, description="Index poll cadence in seconds"
    )
    price_poll_minutes: int = Field(
        default=2, ge=1, le=60, description="Price poll cadence in minutes"
    )

    # Scheduler
    job_timeout_sec: float = Field(
        default=600.0, ge=1.0, le=7200.0, description="Watchdog timeout of one job run"
    )
    batch_job_timeout_sec: float = Field(
        default=14_400.0,
        ge=1.0,
        le=86_400.0,
        description="Watchdog timeout of company batch jobs, which scrape every security",
    )
    shutdown_grace_sec: float = Field(
        default=15.0, ge=0.0, le=300.0, description="Shutdown grace period"
    )

    # Output Configuration
    output_dir: Path = Field(default=Path("output"), description="Export output directory")

    @field_validator("log_dir", "output_dir", mode="before")
    @classmethod
    def ensure_path(cls, value: str | Path) -> Path:
        """Convert string paths to Path objects."""
        return Path(value) if isinstance(value, str) else value

    @field_validator("browser_executable_path", mode="before")
    @classmethod
    def empty_path_is_none(cls, value: str | Path | None) -> Path | None:
        """Treat an empty override as "use the bundled browser"."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return Path(value)

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Ensure base_url ends with trailing slash for consistent URL joining."""
        return value if value.endswith("/") else f"{value}/"

    @property
    def today_price_url(self) -> str:
        """Page listing today's prices for every security."""
        return f"{self.base_url}today-price"

    @property
    def indices_url(self) -> str:
        """Page listing index history."""
        return f"{self.base_url}indices"

    @property
    def cache_enabled(self) -> bool:
        return bool(self.redis_url.strip())

    def company_detail_url(self, security_id: int) -> str:
        """Company detail page of one security."""
        return f"{self.base_url}company/detail/{security_id}"


@lru_cache(maxsize=1)
def get_config() -> GlobalConfig:
    """Retrieve the singleton GlobalConfig instance.

    Returns:
        GlobalConfig: The validated configuration instance.
    """
    return GlobalConfig()
