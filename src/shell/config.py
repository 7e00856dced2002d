"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class ReviewConfig:
    # Cron fields for the recurring review (APScheduler CronTrigger syntax)
    cron_day: str = "*/10"
    cron_hour: int = 9
    cron_minute: int = 0
    interval_days: int = 10             # next_review_date = analysis_date + interval_days
    pacing_seconds: float = 0.5         # sleep between assets in a batch
    http_timeout_seconds: float = 10.0
    price_cache_ttl_seconds: int = 300
    catalog_path: str = ""


@dataclass
class AIConfig:
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1500
    temperature: float = 0.7
    timeout_seconds: float = 15.0
    max_retries: int = 2
    daily_token_limit: int = 500000
    vertex_project_id: str = ""
    vertex_region: str = "us-east5"


@dataclass
class EconomicConfig:
    bcb_base_url: str = "https://api.bcb.gov.br/dados/serie/bcdata.sgs.{code}/dados/ultimos/{count}?formato=json"
    usd_brl_url: str = "https://economia.awesomeapi.com.br/json/last/USD-BRL"


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""


@dataclass
class Config:
    timezone: str = "America/Sao_Paulo"
    log_level: str = "INFO"
    review: ReviewConfig = field(default_factory=ReviewConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    economic: EconomicConfig = field(default_factory=EconomicConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    db_path: str = ""


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from TOML files and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "reviews.db")
    config.review.catalog_path = str(config_dir / "portfolios.toml")

    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)
        config.db_path = general.get("db_path", config.db_path)

        review = settings.get("review", {})
        config.review.cron_day = str(review.get("cron_day", config.review.cron_day))
        config.review.cron_hour = review.get("cron_hour", config.review.cron_hour)
        config.review.cron_minute = review.get("cron_minute", config.review.cron_minute)
        config.review.interval_days = review.get("interval_days", config.review.interval_days)
        config.review.pacing_seconds = review.get("pacing_seconds", config.review.pacing_seconds)
        config.review.http_timeout_seconds = review.get("http_timeout_seconds", config.review.http_timeout_seconds)
        config.review.price_cache_ttl_seconds = review.get("price_cache_ttl_seconds", config.review.price_cache_ttl_seconds)
        catalog = review.get("catalog_path")
        if catalog:
            catalog_path = Path(catalog)
            if not catalog_path.is_absolute():
                catalog_path = config_dir / catalog_path
            config.review.catalog_path = str(catalog_path)

        ai = settings.get("ai", {})
        config.ai.provider = ai.get("provider", config.ai.provider)
        config.ai.model = ai.get("model", config.ai.model)
        config.ai.max_tokens = ai.get("max_tokens", config.ai.max_tokens)
        config.ai.temperature = ai.get("temperature", config.ai.temperature)
        config.ai.timeout_seconds = ai.get("timeout_seconds", config.ai.timeout_seconds)
        config.ai.max_retries = ai.get("max_retries", config.ai.max_retries)
        config.ai.daily_token_limit = ai.get("daily_token_limit", config.ai.daily_token_limit)

        vertex = ai.get("vertex", {})
        config.ai.vertex_project_id = vertex.get("project_id", config.ai.vertex_project_id)
        config.ai.vertex_region = vertex.get("region", config.ai.vertex_region)

        economic = settings.get("economic", {})
        config.economic.bcb_base_url = economic.get("bcb_base_url", config.economic.bcb_base_url)
        config.economic.usd_brl_url = economic.get("usd_brl_url", config.economic.usd_brl_url)

        api = settings.get("api", {})
        config.api.enabled = api.get("enabled", config.api.enabled)
        config.api.host = api.get("host", config.api.host)
        config.api.port = api.get("port", config.api.port)

    # Environment variables (secrets)
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
    config.api.api_key = os.getenv("API_KEY", "")

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []

    if config.review.interval_days < 1:
        errors.append(f"review.interval_days must be >= 1, got {config.review.interval_days}")
    if not (0 <= config.review.cron_hour <= 23):
        errors.append(f"review.cron_hour must be 0-23, got {config.review.cron_hour}")
    if not (0 <= config.review.cron_minute <= 59):
        errors.append(f"review.cron_minute must be 0-59, got {config.review.cron_minute}")
    if config.review.pacing_seconds < 0:
        errors.append(f"review.pacing_seconds must be >= 0, got {config.review.pacing_seconds}")
    if not (0 < config.review.http_timeout_seconds <= 60):
        errors.append(f"review.http_timeout_seconds must be 0-60, got {config.review.http_timeout_seconds}")
    if config.review.price_cache_ttl_seconds < 0:
        errors.append(f"review.price_cache_ttl_seconds must be >= 0, got {config.review.price_cache_ttl_seconds}")
    if config.ai.provider not in ("anthropic", "vertex"):
        errors.append(f"ai.provider must be 'anthropic' or 'vertex', got '{config.ai.provider}'")
    if not (0 < config.ai.timeout_seconds <= 60):
        errors.append(f"ai.timeout_seconds must be 0-60, got {config.ai.timeout_seconds}")
    if config.ai.max_retries < 0:
        errors.append(f"ai.max_retries must be >= 0, got {config.ai.max_retries}")
    if not (0 <= config.ai.temperature <= 1):
        errors.append(f"ai.temperature must be 0-1, got {config.ai.temperature}")
    if config.api.enabled and not (1 <= config.api.port <= 65535):
        errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, Exception):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
