"""Central environment-driven settings for the uploadwatch process.

The process loads this once at startup. Behavior is controlled by environment
variables or a local `.env` file; the core components receive these values as
constructor arguments and never read settings on their own.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "uploadwatch"
    log_level: str = "INFO"
    database_url: str = "sqlite:///uploadwatch.db"
    youtube_api_key: str = ""
    youtube_api_url: str = "https://www.googleapis.com/youtube/v3"
    youtube_region_code: str = "US"
    youtube_language: str = "en_US"
    shorts_max_seconds: int = 180
    discord_bot_token: str = ""
    discord_api_url: str = "https://discord.com/api/v10"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    # The YouTube Data API grants 10k units/day and resets at midnight Pacific.
    daily_quota_budget: int = 10_000
    quota_reset_hour: int = 0
    quota_reset_timezone: str = "America/Los_Angeles"
    poll_interval_seconds: float = 300.0
    catchup_delay_seconds: float = 5.0
    max_pages_per_cycle: int = 5
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0
    http_timeout_seconds: float = 10.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
