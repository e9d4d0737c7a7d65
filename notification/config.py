"""
Engine configuration models.

All values here are immutable once the engine is built: the default
preference, channel tables and retry policy are passed in explicitly so
tests can override any of them.
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from notification.dedup import DEFAULT_SUPPRESSION_WINDOW_SECONDS
from notification.delivery import RetryPolicy
from notification.models import Channel, NotificationType, Preference
from notification.policy import DEFAULT_FORCED_CHANNELS, DEFAULT_VALID_CHANNELS, ChannelPolicy
from notification.pools import DEFAULT_POOL_SIZES
from notification.preferences import DEFAULT_DIGEST_HOUR, DEFAULT_DIGEST_WEEKDAY
from notification.rate_limit import DEFAULT_MAX_WAIT_SECONDS
from notification.scheduler import DEFAULT_MAX_POLL_INTERVAL


class EngineConfig(BaseModel):
    """Scheduling, dedup, retry and pool settings."""
    # inline: deliver in the caller's thread; thread: per-channel thread
    # pools; rq: per-channel Redis queues (falls back to thread)
    backend: Literal['inline', 'thread', 'rq'] = 'thread'
    dedup_backend: Literal['memory', 'redis'] = 'memory'

    default_suppression_window_seconds: float = DEFAULT_SUPPRESSION_WINDOW_SECONDS
    suppression_windows: Dict[NotificationType, float] = Field(default_factory=dict)

    # Daily digests go out at digest_hour local; weekly on digest_weekday (0 = Monday)
    digest_hour: int = Field(DEFAULT_DIGEST_HOUR, ge=0, le=23)
    digest_weekday: int = Field(DEFAULT_DIGEST_WEEKDAY, ge=0, le=6)

    max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL
    reconcile_interval_seconds: float = 300.0
    stale_pending_seconds: float = 600.0
    rate_limit_max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS

    pool_sizes: Dict[Channel, int] = Field(default_factory=lambda: dict(DEFAULT_POOL_SIZES))
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class ChannelPolicyConfig(BaseModel):
    valid: Dict[NotificationType, List[Channel]] = Field(
        default_factory=lambda: {t: sorted(c, key=list(Channel).index) for t, c in DEFAULT_VALID_CHANNELS.items()}
    )
    forced: Dict[NotificationType, List[Channel]] = Field(
        default_factory=lambda: {t: sorted(c, key=list(Channel).index) for t, c in DEFAULT_FORCED_CHANNELS.items()}
    )

    def build(self) -> ChannelPolicy:
        return ChannelPolicy(valid=self.valid, forced=self.forced)


class EmailSinkConfig(BaseModel):
    smtp_server: Optional[str] = None
    smtp_port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: Optional[str] = None


class GatewaySinkConfig(BaseModel):
    gateway_url: Optional[str] = None
    api_key: Optional[str] = None


class SinksConfig(BaseModel):
    """Transport settings. Unset values fall back to environment variables."""
    timeout_seconds: float = 30.0
    email: EmailSinkConfig = Field(default_factory=EmailSinkConfig)
    push: GatewaySinkConfig = Field(default_factory=GatewaySinkConfig)
    sms: GatewaySinkConfig = Field(default_factory=GatewaySinkConfig)
    # "package.module:ClassName" sinks that replace the built-in ones
    custom: List[str] = Field(default_factory=list)


class NotificationEngineSettings(BaseModel):
    """Everything the engine needs besides its collaborators."""
    engine: EngineConfig = Field(default_factory=EngineConfig)
    channels: ChannelPolicyConfig = Field(default_factory=ChannelPolicyConfig)
    default_preference: Preference = Field(default_factory=Preference)
    sinks: SinksConfig = Field(default_factory=SinksConfig)
    # user_id -> channel -> address
    recipients: Dict[str, Dict[Channel, str]] = Field(default_factory=dict)
    templates_file: Optional[str] = None
    redis_url: Optional[str] = None
