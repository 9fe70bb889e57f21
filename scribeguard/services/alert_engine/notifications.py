"""Notification fan-out for alert admission and escalation.

Delivery itself belongs to a NotificationSink. The dispatcher sends to all
targets of one alert in parallel; a failing target is logged and reported
but never stops delivery to the others or fails the calling operation.
Endpoints are masked before they reach a log line.
"""
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from scribeguard.shared.errors import NotificationFailed
from scribeguard.shared.models import AlertSeverity, InterventionAlert
from scribeguard.shared.utils import mask_endpoint
from .config import ChannelType

logger = logging.getLogger(__name__)

SLACK_COLORS: Dict[AlertSeverity, str] = {
    AlertSeverity.INFO: "#36a64f",
    AlertSeverity.WARNING: "#ff9500",
    AlertSeverity.CRITICAL: "#ff0000",
    AlertSeverity.BREACH: "#8b0000",
}


class NotificationSink(Protocol):
    """Delivers one payload to one endpoint. Raises on failure."""

    def send(self, channel_type: ChannelType, endpoint: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class NotificationTarget:
    channel_type: ChannelType
    endpoint: str


def channel_for_endpoint(endpoint: str) -> ChannelType:
    """Infer the channel of an escalation recipient from its format."""
    if "@" in endpoint:
        return ChannelType.EMAIL
    if endpoint.startswith("https://hooks.slack.com"):
        return ChannelType.SLACK
    if endpoint.startswith("http"):
        return ChannelType.WEBHOOK
    return ChannelType.SMS


def format_alert_text(alert: InterventionAlert) -> str:
    lines = [
        f"Intervention Alert: {alert.title}",
        "",
        f"Severity: {alert.severity.value.upper()}",
        f"Type: {alert.alert_type}",
        f"Time: {alert.created_at.isoformat()}",
        "",
        "Description:",
        alert.description,
    ]
    if alert.recommended_actions:
        lines += ["", "Recommended Actions:"]
        lines += [f"- {action}" for action in alert.recommended_actions]
    lines += ["", f"Alert ID: {alert.alert_id}"]
    return "\n".join(lines)


def format_escalation_text(alert: InterventionAlert) -> str:
    return "\n".join([
        "ESCALATED INTERVENTION ALERT",
        "",
        "This alert has been escalated due to lack of acknowledgment.",
        "",
        format_alert_text(alert),
        "",
        f"Escalation Level: {alert.escalation_level}",
        f"Original Alert Time: {alert.created_at.isoformat()}",
        "",
        "Please take immediate action.",
    ])


def build_payload(
    alert: InterventionAlert,
    channel_type: ChannelType,
    escalation: bool = False,
) -> Dict[str, Any]:
    """Channel-specific payload for an alert or escalation notice."""
    severity = alert.severity.value.upper()
    if channel_type == ChannelType.EMAIL:
        prefix = "[ESCALATED] " if escalation else ""
        return {
            "subject": f"{prefix}[INTERVENTION ALERT {severity}] {alert.title}",
            "body": format_escalation_text(alert) if escalation else format_alert_text(alert),
            "priority": "high" if alert.severity == AlertSeverity.BREACH or escalation else "normal",
        }
    if channel_type == ChannelType.SMS:
        prefix = f"[ESCALATED L{alert.escalation_level}] " if escalation else ""
        return {"message": f"{prefix}[{severity}] {alert.title}. ID: {alert.alert_id}"}
    if channel_type == ChannelType.SLACK:
        return {
            "text": f"{'Escalated ' if escalation else ''}Intervention Alert: {alert.title}",
            "attachments": [{
                "color": SLACK_COLORS.get(alert.severity, "#808080"),
                "fields": [
                    {"title": "Severity", "value": severity, "short": True},
                    {"title": "Type", "value": alert.alert_type, "short": True},
                    {"title": "Escalation Level", "value": str(alert.escalation_level), "short": True},
                    {"title": "Description", "value": alert.description, "short": False},
                ],
                "ts": int(alert.created_at.timestamp()),
            }],
        }
    return dict(alert.to_dict(), escalation=escalation)


@dataclass
class DeliveryReport:
    """Outcome of one fan-out."""
    alert_id: str
    attempted: int = 0
    delivered: int = 0
    failures: List[NotificationFailed] = field(default_factory=list)

    @property
    def all_delivered(self) -> bool:
        return self.delivered == self.attempted


class NotificationDispatcher:
    """Parallel fan-out to a NotificationSink."""

    def __init__(self, sink: "NotificationSink", max_workers: int = 8):
        self.sink = sink
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="scribeguard-notify"
        )

    def dispatch(
        self,
        alert: InterventionAlert,
        targets: Sequence[NotificationTarget],
        escalation: bool = False,
    ) -> DeliveryReport:
        """Send the alert to every target in parallel and wait for all of them."""
        report = DeliveryReport(alert_id=alert.alert_id, attempted=len(targets))
        if not targets:
            return report

        futures = [
            (target, self._executor.submit(self._send_one, alert, target, escalation))
            for target in targets
        ]
        for target, future in futures:
            error = future.exception()
            if error is None:
                report.delivered += 1
                continue
            failure = NotificationFailed(
                target.channel_type.value, mask_endpoint(target.endpoint), error
            )
            report.failures.append(failure)
            logger.error(
                "NOTIFICATION_FAILED",
                extra={
                    "alert_id": alert.alert_id,
                    "channel_type": target.channel_type.value,
                    "endpoint": failure.masked_endpoint,
                    "escalation": escalation,
                    "error": str(error),
                    "error_type": type(error).__name__,
                }
            )

        logger.info(
            "NOTIFICATION_FANOUT_COMPLETE",
            extra={
                "alert_id": alert.alert_id,
                "attempted": report.attempted,
                "delivered": report.delivered,
                "failed": len(report.failures),
                "escalation": escalation,
            }
        )
        return report

    def _send_one(self, alert: InterventionAlert, target: NotificationTarget, escalation: bool) -> None:
        payload = build_payload(alert, target.channel_type, escalation=escalation)
        self.sink.send(target.channel_type, target.endpoint, payload)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class LoggingNotificationSink:
    """Sink that only logs; used in development."""

    def send(self, channel_type: ChannelType, endpoint: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "NOTIFICATION_QUEUED",
            extra={
                "channel_type": channel_type.value,
                "endpoint": mask_endpoint(endpoint),
                "payload_keys": sorted(payload),
            }
        )


class KinesisNotificationSink:
    """Publishes notifications to a Kinesis stream for delivery workers.

    Email/SMS/Slack delivery happens downstream; this sink only hands the
    payload off durably.
    """

    def __init__(
        self,
        stream_name: str = "scribeguard-notifications",
        region: Optional[str] = None,
        client: Any = None,
    ):
        """Initialize sink.

        Args:
            stream_name: Kinesis stream name
            region: AWS region (defaults to AWS_REGION env var)
            client: Pre-built Kinesis client (tests inject a mock)
        """
        self.stream_name = stream_name
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = client

        logger.info(
            "KINESIS_SINK_INITIALIZED",
            extra={"stream_name": stream_name, "region": self.region}
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None:
            import boto3
            self._kinesis_client = boto3.client("kinesis", region_name=self.region)
        return self._kinesis_client

    def send(self, channel_type: ChannelType, endpoint: str, payload: Dict[str, Any]) -> None:
        record = {
            "event_type": "notification.requested",
            "channel_type": channel_type.value,
            "endpoint": endpoint,
            "payload": payload,
        }
        response = self.kinesis_client.put_record(
            StreamName=self.stream_name,
            Data=json.dumps(record, default=str),
            PartitionKey=f"{channel_type.value}:{mask_endpoint(endpoint)}",
        )

        logger.info(
            "NOTIFICATION_PUBLISHED",
            extra={
                "channel_type": channel_type.value,
                "endpoint": mask_endpoint(endpoint),
                "shard_id": response.get("ShardId"),
                "sequence_number": response.get("SequenceNumber"),
            }
        )


def targets_for_channels(channels, severity: AlertSeverity) -> List[NotificationTarget]:
    return [
        NotificationTarget(c.channel_type, c.endpoint)
        for c in channels
        if c.accepts(severity)
    ]


def targets_for_recipients(recipients: Sequence[str]) -> List[NotificationTarget]:
    return [NotificationTarget(channel_for_endpoint(r), r) for r in recipients]
