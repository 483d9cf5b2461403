"""
Configuration for the Alerts Engine
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


def normalize_log_level(value: str) -> str:
    level = value.upper()
    if level == 'WARN':
        level = 'WARNING'
    if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR'):
        raise ValueError(f"Unsupported LOG_LEVEL: {value}")
    return level


class AlertsConfig(BaseModel):
    """Configuration for alert runs, the metrics client and the entry points"""

    # Metrics source
    metrics_api_base: str = Field(
        default_factory=lambda: os.getenv('METRICS_API_BASE', 'http://localhost:3000')
    )
    metrics_api_key: Optional[str] = Field(default_factory=lambda: _optional_env('METRICS_API_KEY'))
    http_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv('HTTP_TIMEOUT_MS', '10000')), gt=0
    )
    http_retries: int = Field(
        default_factory=lambda: int(os.getenv('HTTP_RETRIES', '3')), ge=0, le=10
    )
    http_backoff_base_ms: int = Field(
        default_factory=lambda: int(os.getenv('HTTP_BACKOFF_BASE_MS', '250')), ge=0
    )
    http_backoff_max_ms: int = Field(
        default_factory=lambda: int(os.getenv('HTTP_BACKOFF_MAX_MS', '4000')), ge=0
    )

    # Storage
    alerts_database_url: Optional[str] = Field(
        default_factory=lambda: _optional_env('ALERTS_DATABASE_URL')
    )
    rules_path: Optional[str] = Field(default_factory=lambda: _optional_env('RULES_PATH'))
    rules_cache_ttl_seconds: Optional[int] = Field(
        default_factory=lambda: int(os.environ['RULES_CACHE_TTL_SECONDS'])
        if os.getenv('RULES_CACHE_TTL_SECONDS') else None
    )

    # Run settings
    max_workers: int = Field(
        default_factory=lambda: int(os.getenv('ALERTS_MAX_WORKERS', '8')), ge=1, le=64
    )

    # Trigger / entry points
    app_timezone: str = Field(
        default_factory=lambda: os.getenv('APP_TIMEZONE', 'America/Argentina/Buenos_Aires')
    )
    schedule_cron: str = Field(
        default_factory=lambda: os.getenv('ALERTS_SCHEDULE_CRON', '25 8 * * *')
    )
    enable_scheduler: bool = Field(
        default_factory=lambda: os.getenv('ENABLE_SCHEDULER', 'true').lower() == 'true'
    )
    api_port: int = Field(default_factory=lambda: int(os.getenv('API_PORT', '3001')))
    log_level: str = Field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO'))

    class Config:
        # Env-derived defaults go through the same bounds and validators as kwargs
        validate_default = True

    @field_validator('log_level')
    @classmethod
    def check_log_level(cls, value: str) -> str:
        return normalize_log_level(value)

    @field_validator('metrics_api_base')
    @classmethod
    def check_base_url(cls, value: str) -> str:
        if not value.startswith(('http://', 'https://')):
            raise ValueError(f"METRICS_API_BASE must be an http(s) URL: {value}")
        return value.rstrip('/')

    @property
    def database_enabled(self) -> bool:
        return self.alerts_database_url is not None

    @property
    def http_timeout_seconds(self) -> float:
        return self.http_timeout_ms / 1000.0

    def describe_database(self) -> str:
        """Database location without credentials, for logs"""
        if not self.alerts_database_url:
            return 'in-memory'
        dsn = self.alerts_database_url
        return dsn.split('@')[1] if '@' in dsn else 'database'


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for an entry point"""
    if level is None:
        level = normalize_log_level(os.getenv('LOG_LEVEL', 'INFO'))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)
