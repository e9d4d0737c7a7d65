"""
Notification Module

A notification engine that delivers one logical event to users over
in-app, email, push, SMS and webhook channels, with deduplication,
per-user preferences, quiet hours and per-channel retrying workers.

Usage:
    from notification import NotificationEngine, NotificationType

    engine = NotificationEngine(templates=templates)
    engine.start()
    engine.notify(
        recipient_id='user123',
        notification_type=NotificationType.TASK,
        template_ref='task_assigned',
        template_data={'task_name': 'Review PR'},
    )
"""

from notification.exceptions import (
    NotificationError,
    ValidationError,
    NotificationNotFound,
    InvalidTransitionError,
    TemplateError,
    SchedulingError,
    DeduplicationUnavailable,
    DeliveryError,
    TransientDeliveryError,
    RateLimitException,
    PermanentDeliveryError,
)

from notification.models import (
    Channel,
    NotificationType,
    NotificationPriority,
    NotificationStatus,
    Frequency,
    AttemptState,
    DedupDecision,
    QuietHours,
    Preference,
    Notification,
    DeliveryAttempt,
    ReadState,
    RenderedMessage,
    NotificationFilter,
    DeliveryResult,
)

from notification.templates import TemplateStore, NotificationTemplate, ChannelTemplate
from notification.dedup import Deduplicator, InMemoryDedupIndex, RedisDedupIndex, generate_dedup_key
from notification.preferences import PreferenceEvaluator, PreferenceSource, InMemoryPreferenceSource
from notification.sinks import ChannelSink, SinkResult, SinkRegistry
from notification.recipients import RecipientDirectory, StaticRecipientDirectory
from notification.store import NotificationStore, InMemoryNotificationStore
from notification.config import NotificationEngineSettings, EngineConfig

from notification.service import (
    NotificationEngine,
    process_delivery_task,
)

__all__ = [
    # Errors
    'NotificationError',
    'ValidationError',
    'NotificationNotFound',
    'InvalidTransitionError',
    'TemplateError',
    'SchedulingError',
    'DeduplicationUnavailable',
    'DeliveryError',
    'TransientDeliveryError',
    'RateLimitException',
    'PermanentDeliveryError',
    # Models
    'Channel',
    'NotificationType',
    'NotificationPriority',
    'NotificationStatus',
    'Frequency',
    'AttemptState',
    'DedupDecision',
    'QuietHours',
    'Preference',
    'Notification',
    'DeliveryAttempt',
    'ReadState',
    'RenderedMessage',
    'NotificationFilter',
    'DeliveryResult',
    # Components
    'TemplateStore',
    'NotificationTemplate',
    'ChannelTemplate',
    'Deduplicator',
    'InMemoryDedupIndex',
    'RedisDedupIndex',
    'generate_dedup_key',
    'PreferenceEvaluator',
    'PreferenceSource',
    'InMemoryPreferenceSource',
    'ChannelSink',
    'SinkResult',
    'SinkRegistry',
    'RecipientDirectory',
    'StaticRecipientDirectory',
    'NotificationStore',
    'InMemoryNotificationStore',
    'NotificationEngineSettings',
    'EngineConfig',
    # Engine
    'NotificationEngine',
    'process_delivery_task',
]
