import yaml
import os
from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field

from notification.config import (
    ChannelPolicyConfig,
    EngineConfig,
    NotificationEngineSettings,
    SinksConfig,
)
from notification.models import Channel, Preference


class DatabaseConfig(BaseModel):
    # None keeps everything in memory (tests, single-process runs)
    url: Optional[str] = None
    echo: bool = False


class RedisConfig(BaseModel):
    url: Optional[str] = None


class LoggingConfig(BaseModel):
    level: Literal['DEBUG', 'INFO', 'WARNING', 'ERROR'] = 'INFO'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class WebConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list = Field(default_factory=lambda: ["http://localhost:5173"])


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    channels: ChannelPolicyConfig = Field(default_factory=ChannelPolicyConfig)
    # Used for any (user, type) without a stored preference
    default_preference: Preference = Field(default_factory=Preference)
    sinks: SinksConfig = Field(default_factory=SinksConfig)
    # user_id -> channel -> address
    recipients: Dict[str, Dict[Channel, str]] = Field(default_factory=dict)
    templates_file: Optional[str] = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    web: WebConfig = Field(default_factory=WebConfig)

    def engine_settings(self) -> NotificationEngineSettings:
        """Engine-facing slice of the config (a copy; safe to modify)."""
        return NotificationEngineSettings(
            engine=self.engine.model_copy(deep=True),
            channels=self.channels.model_copy(deep=True),
            default_preference=self.default_preference,
            sinks=self.sinks.model_copy(deep=True),
            recipients={user: dict(addresses) for user, addresses in self.recipients.items()},
            templates_file=self.templates_file,
            redis_url=self.redis.url,
        )


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try absolute or adjusted path
    if not os.path.exists(config_path):
        # Specific fallback for Docker where WORKDIR is /app and config is in /app/config.yaml
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Template paths are relative to the config file
    templates_file = data.get('templates_file')
    if templates_file and not os.path.isabs(templates_file):
        data['templates_file'] = os.path.join(os.path.dirname(os.path.abspath(config_path)), templates_file)

    # Allow env var override for DB URL
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        data['database'] = data.get('database') or {}
        data['database']['url'] = env_db_url

    # Allow env var override for Redis URL
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data['redis'] = data.get('redis') or {}
        data['redis']['url'] = env_redis_url

    # Allow env var override for the delivery backend (inline / thread / rq)
    env_backend = os.environ.get("NOTIFICATION_BACKEND")
    if env_backend:
        data['engine'] = data.get('engine') or {}
        data['engine']['backend'] = env_backend

    return AppConfig(**data)
