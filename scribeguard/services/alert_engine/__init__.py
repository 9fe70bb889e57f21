"""Alert Engine: intervention alert lifecycle and escalation.

Admitted alerts are announced on the configured channels and escalated to
the next tier of recipients whenever an acknowledgement timeout elapses,
up to the escalation cap.

This service provides:
- EscalationEngine: admission, timers, acknowledge/resolve/dismiss, remediation
- NotificationDispatcher: parallel fan-out with per-target failure isolation
- Notification sinks: logging (development) and Kinesis
- create_app: Flask operator endpoints
"""

from .config import (
    AlertEngineConfig,
    ChannelType,
    DEFAULT_ESCALATION_RULES,
    EscalationRule,
    NotificationChannel,
    default_channels,
)
from .escalation_engine import AlertOperationResult, EscalationEngine
from .notifications import (
    DeliveryReport,
    KinesisNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    NotificationTarget,
    build_payload,
    channel_for_endpoint,
)
from .remediation import DefaultRemediationExecutor, RemediationExecutor
from .scheduler import ThreadingTimerScheduler, TimerHandle, TimerScheduler

__all__ = [
    "AlertEngineConfig",
    "ChannelType",
    "DEFAULT_ESCALATION_RULES",
    "EscalationRule",
    "NotificationChannel",
    "default_channels",
    "AlertOperationResult",
    "EscalationEngine",
    "DeliveryReport",
    "KinesisNotificationSink",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationSink",
    "NotificationTarget",
    "build_payload",
    "channel_for_endpoint",
    "DefaultRemediationExecutor",
    "RemediationExecutor",
    "ThreadingTimerScheduler",
    "TimerHandle",
    "TimerScheduler",
]
