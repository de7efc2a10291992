"""
Configuration management for Stream Aggregation.

Uses Pydantic for validation and pydantic-settings for environment variable support.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stream_aggregation.models.enums import DuplicatePolicy, RetrievalOrder, SourceType


class SourcesConfig(BaseSettings):
    """Per-source polling, endpoint and credential configuration.

    Poll intervals are requests; each adapter clamps them to the minimum its
    service tolerates (5 minutes for news feeds, 1 minute for Flickr, 24
    seconds for Twitter).
    """

    model_config = SettingsConfigDict(env_prefix="SOURCES_")

    # Requested poll intervals (seconds)
    news_poll_interval_seconds: int = Field(default=300, ge=1, description="News feed poll interval")
    flickr_poll_interval_seconds: int = Field(default=60, ge=1, description="Flickr poll interval")
    twitter_poll_interval_seconds: int = Field(default=60, ge=1, description="Twitter poll interval")

    # Credentials
    flickr_api_key: Optional[str] = Field(default=None, description="Flickr API key")

    # Endpoints
    flickr_rest_url: str = Field(
        default="https://api.flickr.com/services/rest/",
        description="Flickr REST endpoint",
    )
    twitter_search_url: str = Field(
        default="https://search.twitter.com/search.atom",
        description="Twitter Atom search endpoint",
    )
    twitter_user_url: str = Field(
        default="https://api.twitter.com/1/statuses/user_timeline.atom",
        description="Twitter Atom user timeline endpoint",
    )

    # Page sizes
    flickr_page_size: int = Field(default=500, ge=1, le=500)
    twitter_page_size: int = Field(default=100, ge=1, le=100)
    twitter_user_page_size: int = Field(default=200, ge=1, le=200)

    # Backoff after a failed news poll
    news_error_cooldown_minutes: int = Field(default=120, ge=1, description="News retry cooldown")

    @field_validator("flickr_api_key")
    @classmethod
    def strip_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank keys as missing."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    def poll_interval(self, source_type: SourceType) -> timedelta:
        """Get the requested poll interval for a source."""
        seconds = {
            SourceType.NEWS: self.news_poll_interval_seconds,
            SourceType.FLICKR: self.flickr_poll_interval_seconds,
            SourceType.TWITTER: self.twitter_poll_interval_seconds,
        }.get(source_type, self.news_poll_interval_seconds)
        return timedelta(seconds=seconds)


class TransportConfig(BaseSettings):
    """HTTP transport configuration."""

    model_config = SettingsConfigDict(env_prefix="TRANSPORT_")

    # HTTP settings
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Request timeout")
    user_agent: str = Field(
        default="Stream-Aggregation/0.1.0 (feed processor)",
        description="User-Agent header"
    )

    # Follow redirects
    follow_redirects: bool = Field(default=True)
    max_redirects: int = Field(default=5, ge=0, le=20)

    # Concurrent requests across all sources
    max_workers: int = Field(default=8, ge=1, le=64, description="Request worker threads")


class SchedulerConfig(BaseSettings):
    """Poll timer configuration."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    timezone: str = Field(default="UTC", description="Scheduler timezone")

    # Job execution settings
    max_workers: int = Field(default=4, ge=1, le=20, description="Maximum concurrent timer workers")
    misfire_grace_time: int = Field(default=60, ge=0, description="Misfire grace time in seconds")
    coalesce: bool = Field(default=True, description="Coalesce misfired jobs")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


class AggregatorConfig(BaseSettings):
    """Cache, filtering and ordering configuration."""

    model_config = SettingsConfigDict(env_prefix="AGGREGATOR_")

    # Age limits
    min_date: Optional[datetime] = Field(default=None, description="Oldest publish date admitted")
    max_item_age_hours: Optional[int] = Field(
        default=None, ge=1, description="Rolling age limit (None=disabled)"
    )

    # Cache settings
    cache_size: int = Field(default=10_000, ge=1, le=1_000_000, description="Items kept after a purge")
    purge_interval_seconds: int = Field(default=300, ge=1, description="Periodic purge interval")
    duplicate_policy: DuplicatePolicy = Field(default=DuplicatePolicy.REPLACE_IF_NEW_INFO)

    # Profanity filter
    profanity_enabled: bool = Field(default=False, description="Enable the profanity filter")
    profanity: list[str] = Field(default_factory=list, description="Banned words")
    profanity_file: Optional[str] = Field(default=None, description="File with one banned word per line")
    profanity_whole_words: bool = Field(default=False, description="Match banned words on word boundaries only")

    # Ordering
    distribute_evenly: bool = Field(default=True, description="Interleave content types")
    retrieval_order: RetrievalOrder = Field(default=RetrievalOrder.CHRONOLOGICAL)

    # Statuses linking a hosted image become image items
    promote_image_links: bool = Field(default=True, description="Convert image-linking statuses to images")

    @field_validator("min_date")
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive dates as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("profanity")
    @classmethod
    def normalize_words(cls, v: list[str]) -> list[str]:
        """Trim words, drop blanks and duplicates, keep order."""
        words = []
        for word in v:
            word = word.strip()
            if word and word not in words:
                words.append(word)
        return words

    def load_profanity(self) -> list[str]:
        """Get the configured banned words, including those from profanity_file."""
        words = list(self.profanity)
        if self.profanity_file:
            path = Path(self.profanity_file)
            if not path.exists():
                raise FileNotFoundError(f"Profanity file not found: {self.profanity_file}")
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if line and line not in words:
                    words.append(line)
        return words


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <magenta>{extra[source_id]}</magenta> - <level>{message}</level>",
        description="Log format"
    )

    # File logging
    file_enabled: bool = Field(default=True, description="Enable file logging")
    file_path: str = Field(default="logs/stream_aggregation.log", description="Log file path")
    rotation: str = Field(default="100 MB", description="Log rotation size")
    retention: str = Field(default="30 days", description="Log retention period")

    # Console logging
    console_enabled: bool = Field(default=True, description="Enable console logging")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STREAM_",
        case_sensitive=False,
    )

    # Application
    version: str = Field(default="0.1.0", description="Application version")
    app_name: str = Field(default="StreamAggregation", description="Application name")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Initial query terms per source (ban terms prefixed with "!")
    news_query: list[str] = Field(default_factory=list, description="News feed URLs and bans")
    flickr_query: list[str] = Field(default_factory=list, description="Flickr tags, @users, +groups and bans")
    twitter_query: list[str] = Field(default_factory=list, description="Twitter terms, @users and bans")

    def query_terms(self) -> dict[SourceType, list[str]]:
        """Get the initial query terms keyed by source type."""
        return {
            SourceType.NEWS: list(self.news_query),
            SourceType.FLICKR: list(self.flickr_query),
            SourceType.TWITTER: list(self.twitter_query),
        }


# Global configuration instance
_config: Optional[Config] = None

_NESTED_CONFIGS = {
    "sources": SourcesConfig,
    "transport": TransportConfig,
    "scheduler": SchedulerConfig,
    "aggregator": AggregatorConfig,
    "logging": LoggingConfig,
}


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config_from_yaml(yaml_path: str) -> Config:
    """Load configuration from a YAML file.

    Note: Values loaded from YAML take precedence over environment variables.
    For environment variable overrides, use .env file or set them directly.

    Args:
        yaml_path: Path to the YAML configuration file.

    Returns:
        Config instance loaded from the file.
    """
    import yaml

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    with yaml_file.open("r", encoding="utf-8") as f:
        config_dict = yaml.safe_load(f) or {}

    main_config = {}
    nested_configs = {}

    for key, value in config_dict.items():
        if key in _NESTED_CONFIGS:
            nested_configs[key] = value or {}
        else:
            main_config[key] = value

    # Nested sections are rebuilt so their env vars still apply
    for key, config_class in _NESTED_CONFIGS.items():
        if key in nested_configs:
            nested_configs[key] = config_class(**nested_configs[key])
        else:
            nested_configs[key] = config_class()

    main_config.update(nested_configs)
    return Config(**main_config)


def reload_config() -> Config:
    """Reload configuration from environment and YAML files."""
    global _config
    _config = None

    config_yaml = Path("config/config.yaml")
    if config_yaml.exists():
        _config = load_config_from_yaml(str(config_yaml))
    else:
        _config = Config()

    return _config
