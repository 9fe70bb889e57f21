"""Tests for notification payloads, fan-out and sinks."""
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from scribeguard.shared.models import (
    AlertSeverity,
    InterventionAlert,
    PrivacyTier,
    RemediationDescriptor,
    RemediationParameters,
    RemediationType,
)
from scribeguard.shared.errors import RemediationFailed
from scribeguard.shared.utils import configure_pii_salt
from scribeguard.services.alert_engine.config import ChannelType, default_channels
from scribeguard.services.alert_engine.notifications import (
    KinesisNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationTarget,
    build_payload,
    channel_for_endpoint,
    targets_for_channels,
)
from scribeguard.services.alert_engine.remediation import DefaultRemediationExecutor


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def make_alert(severity=AlertSeverity.CRITICAL, level=0, remediation=None):
    now = datetime(2024, 3, 4, 10, 30)
    return InterventionAlert(
        alert_id="alert_abc123",
        subject_id="cohort_hash",
        alert_type="quality",
        severity=severity,
        title="Writing Quality Below Expectations",
        description="Recent submissions show quality concerns (45.0%)",
        recommended_actions=("Provide targeted feedback on writing techniques",),
        snapshot=None,
        remediation=remediation,
        privacy_tier=PrivacyTier.CONFIDENTIAL,
        correlation_id="corr_1",
        created_at=now,
        updated_at=now,
        escalation_level=level,
    )


@pytest.fixture
def dispatcher():
    d = NotificationDispatcher(LoggingNotificationSink(), max_workers=2)
    yield d
    d.shutdown()


class TestPayloads:
    """Tests for channel payload formatting."""

    def test_email_payload(self):
        payload = build_payload(make_alert(), ChannelType.EMAIL)

        assert payload["subject"] == "[INTERVENTION ALERT CRITICAL] Writing Quality Below Expectations"
        assert "Severity: CRITICAL" in payload["body"]
        assert "- Provide targeted feedback on writing techniques" in payload["body"]
        assert "Alert ID: alert_abc123" in payload["body"]
        assert payload["priority"] == "normal"

    def test_escalation_email_payload(self):
        payload = build_payload(make_alert(level=2), ChannelType.EMAIL, escalation=True)

        assert payload["subject"].startswith("[ESCALATED] ")
        assert "escalated due to lack of acknowledgment" in payload["body"]
        assert "Escalation Level: 2" in payload["body"]
        assert payload["body"].endswith("Please take immediate action.")
        assert payload["priority"] == "high"

    def test_breach_email_is_high_priority(self):
        payload = build_payload(make_alert(AlertSeverity.BREACH), ChannelType.EMAIL)

        assert payload["priority"] == "high"

    def test_sms_payload(self):
        payload = build_payload(make_alert(AlertSeverity.BREACH), ChannelType.SMS)

        assert payload == {
            "message": "[BREACH] Writing Quality Below Expectations. ID: alert_abc123"
        }

    def test_slack_payload_color_by_severity(self):
        warning = build_payload(make_alert(AlertSeverity.WARNING), ChannelType.SLACK)
        breach = build_payload(make_alert(AlertSeverity.BREACH), ChannelType.SLACK)

        assert warning["attachments"][0]["color"] == "#ff9500"
        assert breach["attachments"][0]["color"] == "#8b0000"
        titles = [f["title"] for f in warning["attachments"][0]["fields"]]
        assert titles[:2] == ["Severity", "Type"]

    def test_webhook_payload_is_alert_dict(self):
        payload = build_payload(make_alert(), ChannelType.WEBHOOK, escalation=True)

        assert payload["alert_id"] == "alert_abc123"
        assert payload["severity"] == "critical"
        assert payload["escalation"] is True


class TestTargets:
    """Tests for target selection."""

    @pytest.mark.parametrize("endpoint,expected", [
        ("privacy-officer@example.edu", ChannelType.EMAIL),
        ("https://hooks.slack.com/services/T000/B000/XXX", ChannelType.SLACK),
        ("https://ops.example.edu/hooks/alerts", ChannelType.WEBHOOK),
        ("+15555550100", ChannelType.SMS),
    ])
    def test_channel_for_endpoint(self, endpoint, expected):
        assert channel_for_endpoint(endpoint) == expected

    def test_disabled_channels_are_skipped(self):
        channels = default_channels(slack_webhook=None, sms_number="+15555550100")

        breach = targets_for_channels(channels, AlertSeverity.BREACH)
        warning = targets_for_channels(channels, AlertSeverity.WARNING)

        assert [t.channel_type for t in breach] == [ChannelType.EMAIL, ChannelType.SMS]
        assert [t.channel_type for t in warning] == [ChannelType.EMAIL]


class TestDispatcher:
    """Tests for parallel fan-out."""

    def test_one_failing_target_does_not_stop_others(self):
        sink = MagicMock()

        def send(channel_type, endpoint, payload):
            if endpoint == "bad@example.edu":
                raise ConnectionError("smtp down")

        sink.send.side_effect = send
        dispatcher = NotificationDispatcher(sink, max_workers=2)

        report = dispatcher.dispatch(make_alert(), [
            NotificationTarget(ChannelType.EMAIL, "bad@example.edu"),
            NotificationTarget(ChannelType.EMAIL, "good@example.edu"),
            NotificationTarget(ChannelType.SMS, "+15555550100"),
        ])
        dispatcher.shutdown()

        assert report.attempted == 3
        assert report.delivered == 2
        assert not report.all_delivered
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.channel_type == "email"
        assert failure.masked_endpoint == "ba***@example.edu"
        assert isinstance(failure.cause, ConnectionError)
        assert sink.send.call_count == 3

    def test_failure_logs_masked_endpoint(self, caplog):
        sink = MagicMock()
        sink.send.side_effect = ConnectionError("down")
        dispatcher = NotificationDispatcher(sink, max_workers=1)

        dispatcher.dispatch(make_alert(), [NotificationTarget(ChannelType.SMS, "+15555550100")])
        dispatcher.shutdown()

        failed = [r for r in caplog.records if r.getMessage() == "NOTIFICATION_FAILED"]
        assert len(failed) == 1
        assert failed[0].endpoint == "+15***"
        assert "5555550100" not in failed[0].endpoint

    def test_no_targets(self, dispatcher):
        report = dispatcher.dispatch(make_alert(), [])

        assert report.attempted == 0
        assert report.all_delivered


class TestKinesisNotificationSink:
    """Tests for the Kinesis sink."""

    def test_put_record(self):
        client = MagicMock()
        client.put_record.return_value = {"ShardId": "shard-0", "SequenceNumber": "1"}
        sink = KinesisNotificationSink(stream_name="notifications", region="us-east-1", client=client)

        sink.send(ChannelType.EMAIL, "officer@example.edu", {"subject": "s", "body": "b"})

        kwargs = client.put_record.call_args.kwargs
        assert kwargs["StreamName"] == "notifications"
        assert kwargs["PartitionKey"] == "email:of***@example.edu"
        record = json.loads(kwargs["Data"])
        assert record["channel_type"] == "email"
        assert record["endpoint"] == "officer@example.edu"
        assert record["payload"] == {"subject": "s", "body": "b"}

    def test_client_error_propagates(self):
        client = MagicMock()
        client.put_record.side_effect = RuntimeError("throttled")
        sink = KinesisNotificationSink(client=client)

        with pytest.raises(RuntimeError):
            sink.send(ChannelType.SMS, "+15555550100", {"message": "m"})

    def test_region_from_environment(self, monkeypatch):
        monkeypatch.setenv("AWS_REGION", "eu-west-1")

        sink = KinesisNotificationSink(client=MagicMock())

        assert sink.region == "eu-west-1"


class TestDefaultRemediationExecutor:
    """Tests for built-in remediation handlers."""

    def test_block_access_logs_hashed_user(self, dispatcher, caplog):
        alert = make_alert(remediation=RemediationDescriptor(
            action=RemediationType.BLOCK_ACCESS,
            parameters=RemediationParameters(user_id="student_1", resource="essays"),
        ))

        DefaultRemediationExecutor(dispatcher).execute(alert)

        records = [r for r in caplog.records if r.getMessage() == "USER_ACCESS_BLOCKED"]
        assert len(records) == 1
        assert records[0].resource == "essays"
        assert records[0].user_id_hash != "student_1"

    def test_missing_parameter_raises(self, dispatcher):
        alert = make_alert(remediation=RemediationDescriptor(action=RemediationType.AUTO_DELETE))

        with pytest.raises(RemediationFailed) as exc_info:
            DefaultRemediationExecutor(dispatcher).execute(alert)

        assert exc_info.value.action == "auto_delete"

    def test_notify_admin_sends_email(self):
        sink = MagicMock()
        dispatcher = NotificationDispatcher(sink, max_workers=1)
        alert = make_alert(remediation=RemediationDescriptor(
            action=RemediationType.NOTIFY_ADMIN,
            parameters=RemediationParameters(admin_endpoint="admin@example.edu"),
        ))

        DefaultRemediationExecutor(dispatcher).execute(alert)
        dispatcher.shutdown()

        channel_type, endpoint, payload = sink.send.call_args.args
        assert channel_type == ChannelType.EMAIL
        assert endpoint == "admin@example.edu"
        assert "subject" in payload

    def test_notify_admin_delivery_failure_raises(self):
        sink = MagicMock()
        sink.send.side_effect = ConnectionError("smtp down")
        dispatcher = NotificationDispatcher(sink, max_workers=1)
        alert = make_alert(remediation=RemediationDescriptor(
            action=RemediationType.NOTIFY_ADMIN,
            parameters=RemediationParameters(admin_endpoint="admin@example.edu"),
        ))

        with pytest.raises(RemediationFailed):
            DefaultRemediationExecutor(dispatcher).execute(alert)
        dispatcher.shutdown()
