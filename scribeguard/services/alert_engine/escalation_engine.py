"""Alert lifecycle and escalation engine.

Admits alert drafts, notifies the configured channels, and escalates
alerts that nobody acknowledges. Every state change happens under one
engine lock; notification I/O and remediation never run while holding it.

Lifecycle:
    PENDING -> ACKNOWLEDGED | ESCALATED | RESOLVED | DISMISSED
    ESCALATED -> ESCALATED (next level) | ACKNOWLEDGED | RESOLVED | DISMISSED
    ACKNOWLEDGED -> RESOLVED | DISMISSED
RESOLVED and DISMISSED are terminal.

Each alert holds at most one armed escalation timer and a token that is
bumped whenever the timer is re-armed or cancelled. A timer whose token is
no longer current does nothing when it fires, so an acknowledgement racing
a timer can never be followed by an escalation.
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Sequence
import uuid

from scribeguard.shared.errors import (
    AlertNotFound,
    InvalidAlertTransition,
    RemediationFailed,
    ScribeGuardError,
)
from scribeguard.shared.models import (
    AlertDraft,
    AlertSeverity,
    AlertStatus,
    InterventionAlert,
    PrivacyContext,
)
from scribeguard.shared.utils import hash_pii
from scribeguard.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    AuditOutcome,
)
from .config import AlertEngineConfig, EscalationRule
from .notifications import (
    DeliveryReport,
    LoggingNotificationSink,
    NotificationDispatcher,
    targets_for_channels,
    targets_for_recipients,
)
from .remediation import DefaultRemediationExecutor, RemediationExecutor
from .scheduler import ThreadingTimerScheduler, TimerHandle, TimerScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertOperationResult:
    """Outcome of one element of a batch operation."""
    alert_id: str
    succeeded: bool
    alert: Optional[InterventionAlert] = None
    error: Optional[str] = None


class EscalationEngine:
    """Owns every InterventionAlert and its escalation timer."""

    def __init__(
        self,
        config: Optional[AlertEngineConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        scheduler: Optional[TimerScheduler] = None,
        remediation_executor: Optional[RemediationExecutor] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """Initialize engine with dependencies.

        Args:
            config: Escalation rules, channels and limits
            dispatcher: Notification fan-out (defaults to a logging sink)
            scheduler: Timer scheduler (defaults to threading timers)
            remediation_executor: Performs remediation actions
            audit_logger: Receives a record for every alert operation
        """
        self.config = config or AlertEngineConfig()
        self.dispatcher = dispatcher or NotificationDispatcher(
            LoggingNotificationSink(), max_workers=self.config.notification_workers
        )
        self.scheduler = scheduler or ThreadingTimerScheduler()
        self.remediation_executor = remediation_executor or DefaultRemediationExecutor(self.dispatcher)
        self.audit_logger = audit_logger

        self._lock = threading.RLock()
        self._alerts: Dict[str, InterventionAlert] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._timer_tokens: Dict[str, int] = {}
        self._remediation_timers: Dict[str, TimerHandle] = {}

        logger.info(
            "ESCALATION_ENGINE_INITIALIZED",
            extra={
                "escalation_cap": self.config.escalation_cap,
                "rule_count": len(self.config.escalation_rules),
                "channel_count": len(self.config.channels),
                "auto_remediation_enabled": self.config.auto_remediation_enabled,
            }
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(
        self,
        draft: AlertDraft,
        privacy_context: Optional[PrivacyContext] = None,
    ) -> InterventionAlert:
        """Turn a draft into a tracked alert and start its lifecycle.

        Args:
            draft: Alert proposed by the rule evaluator
            privacy_context: Request that produced the draft, if any

        Returns:
            Copy of the admitted alert (level 0, not acknowledged). With
            duplicate suppression enabled, a copy of the live alert for the
            same subject and type instead.
        """
        now = datetime.utcnow()
        with self._lock:
            existing = (
                self._find_live_duplicate_locked(draft)
                if self.config.suppress_live_duplicates else None
            )
            if existing is not None:
                snapshot = replace(existing)
            else:
                alert = InterventionAlert(
                    alert_id=f"alert_{uuid.uuid4().hex[:12]}",
                    subject_id=draft.subject_id,
                    alert_type=draft.alert_type,
                    severity=draft.severity,
                    title=draft.title,
                    description=draft.description,
                    recommended_actions=draft.recommended_actions,
                    snapshot=draft.snapshot,
                    remediation=draft.remediation,
                    privacy_tier=draft.privacy_tier,
                    correlation_id=privacy_context.correlation_id if privacy_context else None,
                    created_at=now,
                    updated_at=now,
                    rule_id=draft.rule_id,
                )
                self._alerts[alert.alert_id] = alert
                rule = self.config.rule_for(alert.severity)
                timer_armed = self._should_escalate(rule)
                if timer_armed:
                    self._arm_timer_locked(alert.alert_id, rule)
                snapshot = replace(alert)

        if existing is not None:
            logger.info(
                "ALERT_SUPPRESSED",
                extra={"alert_id": snapshot.alert_id, "alert_type": draft.alert_type}
            )
            self._audit(
                AuditAction.ALERT_SUPPRESSED, snapshot.alert_id,
                privacy_context=privacy_context,
                detail="live_duplicate",
            )
            return snapshot

        logger.info(
            "ALERT_ADMITTED",
            extra={
                "alert_id": snapshot.alert_id,
                "alert_type": snapshot.alert_type,
                "severity": snapshot.severity.value,
                "correlation_id": snapshot.correlation_id,
                "timer_armed": timer_armed,
            }
        )
        self._audit(
            AuditAction.ALERT_ADMITTED, snapshot.alert_id,
            privacy_context=privacy_context,
            escalation_level=0,
        )

        self._notify_admission(snapshot)
        self._start_remediation(snapshot)
        return snapshot

    def _should_escalate(self, rule: Optional[EscalationRule]) -> bool:
        return rule is not None and rule.auto_escalate and self.config.escalation_cap > 0

    def _find_live_duplicate_locked(self, draft: AlertDraft) -> Optional[InterventionAlert]:
        for alert in self._alerts.values():
            if (
                alert.subject_id == draft.subject_id
                and alert.alert_type == draft.alert_type
                and not alert.status.is_terminal
            ):
                return alert
        return None

    def _notify_admission(self, alert: InterventionAlert) -> DeliveryReport:
        targets = targets_for_channels(self.config.channels, alert.severity)
        return self.dispatcher.dispatch(alert, targets)

    # ------------------------------------------------------------------
    # Escalation timers
    # ------------------------------------------------------------------

    def _arm_timer_locked(self, alert_id: str, rule: EscalationRule) -> None:
        token = self._timer_tokens.get(alert_id, 0) + 1
        self._timer_tokens[alert_id] = token
        self._timers[alert_id] = self.scheduler.schedule(
            rule.timeout_seconds, partial(self._on_timer, alert_id, token)
        )

    def _cancel_timer_locked(self, alert_id: str) -> None:
        self._timer_tokens[alert_id] = self._timer_tokens.get(alert_id, 0) + 1
        handle = self._timers.pop(alert_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, alert_id: str, token: int) -> None:
        """Escalate an alert whose acknowledgement timeout elapsed."""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if (
                alert is None
                or self._timer_tokens.get(alert_id) != token
                or not alert.status.awaiting_acknowledgement
            ):
                logger.debug("ESCALATION_TIMER_STALE", extra={"alert_id": alert_id})
                return

            self._timers.pop(alert_id, None)
            alert.escalation_level += 1
            alert.status = AlertStatus.ESCALATED
            alert.updated_at = datetime.utcnow()

            rule = self.config.rule_for(alert.severity)
            cap_reached = alert.escalation_level >= self.config.escalation_cap
            if not cap_reached and self._should_escalate(rule):
                self._arm_timer_locked(alert_id, rule)
            snapshot = replace(alert)

        logger.warning(
            "ALERT_ESCALATED",
            extra={
                "alert_id": alert_id,
                "severity": snapshot.severity.value,
                "escalation_level": snapshot.escalation_level,
                "cap_reached": cap_reached,
            }
        )
        self._audit(
            AuditAction.ALERT_ESCALATED, alert_id,
            escalation_level=snapshot.escalation_level,
        )

        recipients = rule.recipients if rule is not None else ()
        self.dispatcher.dispatch(snapshot, targets_for_recipients(recipients), escalation=True)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _require_locked(self, alert_id: str, requested: AlertStatus) -> InterventionAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        if alert.status.is_terminal:
            raise InvalidAlertTransition(alert_id, alert.status.value, requested.value)
        return alert

    def acknowledge(self, alert_id: str, actor_id: str) -> InterventionAlert:
        """Acknowledge an alert and stop further escalation.

        Acknowledging an acknowledged alert returns it unchanged. The
        escalation level reached so far is kept.

        Raises:
            AlertNotFound: Unknown alert id
            InvalidAlertTransition: Alert is resolved or dismissed
        """
        try:
            with self._lock:
                alert = self._require_locked(alert_id, AlertStatus.ACKNOWLEDGED)
                if alert.status == AlertStatus.ACKNOWLEDGED:
                    return replace(alert)
                self._cancel_timer_locked(alert_id)
                now = datetime.utcnow()
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.acknowledged = True
                alert.acknowledged_at = now
                alert.acknowledged_by = hash_pii(actor_id)
                alert.updated_at = now
                snapshot = replace(alert)
        except ScribeGuardError as e:
            self._audit_rejected(AuditAction.ALERT_ACKNOWLEDGED, alert_id, actor_id, e)
            raise

        logger.info(
            "ALERT_ACKNOWLEDGED",
            extra={
                "alert_id": alert_id,
                "acknowledged_by": snapshot.acknowledged_by,
                "escalation_level": snapshot.escalation_level,
            }
        )
        self._audit(
            AuditAction.ALERT_ACKNOWLEDGED, alert_id,
            actor_id=actor_id,
            escalation_level=snapshot.escalation_level,
        )
        return snapshot

    def resolve(self, alert_id: str, actor_id: str, resolution: str = "") -> InterventionAlert:
        """Resolve an alert. Terminal.

        Raises:
            AlertNotFound: Unknown alert id
            InvalidAlertTransition: Alert is already resolved or dismissed
        """
        try:
            with self._lock:
                alert = self._require_locked(alert_id, AlertStatus.RESOLVED)
                self._close_locked(alert_id)
                now = datetime.utcnow()
                alert.status = AlertStatus.RESOLVED
                alert.resolved_at = now
                alert.resolved_by = hash_pii(actor_id)
                alert.resolution = resolution
                alert.updated_at = now
                snapshot = replace(alert)
        except ScribeGuardError as e:
            self._audit_rejected(AuditAction.ALERT_RESOLVED, alert_id, actor_id, e)
            raise

        logger.info(
            "ALERT_RESOLVED",
            extra={"alert_id": alert_id, "resolved_by": snapshot.resolved_by}
        )
        self._audit(
            AuditAction.ALERT_RESOLVED, alert_id,
            actor_id=actor_id,
            escalation_level=snapshot.escalation_level,
        )
        return snapshot

    def dismiss(self, alert_id: str, actor_id: str, reason: Optional[str] = None) -> InterventionAlert:
        """Dismiss an alert as not actionable. Terminal.

        Raises:
            AlertNotFound: Unknown alert id
            InvalidAlertTransition: Alert is already resolved or dismissed
        """
        try:
            with self._lock:
                alert = self._require_locked(alert_id, AlertStatus.DISMISSED)
                self._close_locked(alert_id)
                now = datetime.utcnow()
                alert.status = AlertStatus.DISMISSED
                alert.dismissed_at = now
                alert.resolved_by = hash_pii(actor_id)
                alert.resolution = reason
                alert.updated_at = now
                snapshot = replace(alert)
        except ScribeGuardError as e:
            self._audit_rejected(AuditAction.ALERT_DISMISSED, alert_id, actor_id, e)
            raise

        logger.info(
            "ALERT_DISMISSED",
            extra={"alert_id": alert_id, "has_reason": bool(reason)}
        )
        self._audit(
            AuditAction.ALERT_DISMISSED, alert_id,
            actor_id=actor_id,
            detail=reason,
        )
        return snapshot

    def _close_locked(self, alert_id: str) -> None:
        self._cancel_timer_locked(alert_id)
        handle = self._remediation_timers.pop(alert_id, None)
        if handle is not None:
            handle.cancel()

    def acknowledge_many(self, alert_ids: Sequence[str], actor_id: str) -> List[AlertOperationResult]:
        """Acknowledge several alerts; one bad id never aborts the batch."""
        return [
            self._batch_element(alert_id, self.acknowledge, alert_id, actor_id)
            for alert_id in alert_ids
        ]

    def resolve_many(
        self,
        alert_ids: Sequence[str],
        actor_id: str,
        resolution: str = "",
    ) -> List[AlertOperationResult]:
        """Resolve several alerts; one bad id never aborts the batch."""
        return [
            self._batch_element(alert_id, self.resolve, alert_id, actor_id, resolution)
            for alert_id in alert_ids
        ]

    @staticmethod
    def _batch_element(alert_id: str, operation, *args) -> AlertOperationResult:
        try:
            return AlertOperationResult(alert_id=alert_id, succeeded=True, alert=operation(*args))
        except ScribeGuardError as e:
            return AlertOperationResult(alert_id=alert_id, succeeded=False, error=str(e))

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def _start_remediation(self, alert: InterventionAlert) -> None:
        remediation = alert.remediation
        if remediation is None:
            return
        if not self.config.auto_remediation_enabled:
            logger.debug("AUTO_REMEDIATION_DISABLED", extra={"alert_id": alert.alert_id})
            return

        if remediation.requires_manual_approval:
            logger.info(
                "REMEDIATION_AWAITING_APPROVAL",
                extra={"alert_id": alert.alert_id, "action": remediation.action.value}
            )
            self._audit(
                AuditAction.REMEDIATION_AWAITING_APPROVAL, alert.alert_id,
                detail=remediation.action.value,
            )
            return

        if remediation.execute_after_minutes == 0:
            self._run_remediation(alert.alert_id, actor_id=None, raise_errors=False)
            return

        with self._lock:
            self._remediation_timers[alert.alert_id] = self.scheduler.schedule(
                remediation.execute_after_minutes * 60,
                partial(self._on_remediation_timer, alert.alert_id),
            )
        logger.info(
            "REMEDIATION_SCHEDULED",
            extra={
                "alert_id": alert.alert_id,
                "action": remediation.action.value,
                "execute_after_minutes": remediation.execute_after_minutes,
            }
        )

    def _on_remediation_timer(self, alert_id: str) -> None:
        with self._lock:
            self._remediation_timers.pop(alert_id, None)
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status.is_terminal:
                logger.debug("REMEDIATION_TIMER_STALE", extra={"alert_id": alert_id})
                return
        self._run_remediation(alert_id, actor_id=None, raise_errors=False)

    def execute_remediation(self, alert_id: str, actor_id: str) -> InterventionAlert:
        """Run an alert's remediation on operator approval.

        The remediation runs at most once per alert; a second request
        returns the alert without running it again.

        Raises:
            AlertNotFound: Unknown alert id
            InvalidAlertTransition: Alert carries no remediation
            RemediationFailed: The action itself failed
        """
        try:
            with self._lock:
                alert = self._alerts.get(alert_id)
                if alert is None:
                    raise AlertNotFound(alert_id)
                if alert.remediation is None:
                    raise InvalidAlertTransition(alert_id, alert.status.value, "remediated")
        except ScribeGuardError as e:
            self._audit_rejected(AuditAction.REMEDIATION_EXECUTED, alert_id, actor_id, e)
            raise

        self._run_remediation(alert_id, actor_id=actor_id, raise_errors=True)
        return self.get_alert(alert_id)

    def _run_remediation(self, alert_id: str, actor_id: Optional[str], raise_errors: bool) -> bool:
        """Claim and run the remediation. Returns False if already claimed."""
        with self._lock:
            alert = self._alerts[alert_id]
            if alert.remediation_executed:
                logger.info("REMEDIATION_ALREADY_EXECUTED", extra={"alert_id": alert_id})
                return False
            alert.remediation_executed = True
            alert.updated_at = datetime.utcnow()
            snapshot = replace(alert)

        action = snapshot.remediation.action.value
        try:
            self.remediation_executor.execute(snapshot)
        except Exception as e:
            failure = e if isinstance(e, RemediationFailed) else RemediationFailed(alert_id, action, e)
            logger.error(
                "REMEDIATION_FAILED",
                extra={
                    "alert_id": alert_id,
                    "action": action,
                    "error": str(failure),
                    "error_type": type(e).__name__,
                }
            )
            self._audit(
                AuditAction.REMEDIATION_EXECUTED, alert_id,
                outcome=AuditOutcome.ERROR,
                actor_id=actor_id,
                denial_reason=type(e).__name__,
                detail=action,
            )
            if raise_errors:
                if failure is e:
                    raise
                raise failure from e
            return True

        logger.info(
            "REMEDIATION_EXECUTED",
            extra={"alert_id": alert_id, "action": action, "manual": actor_id is not None}
        )
        self._audit(
            AuditAction.REMEDIATION_EXECUTED, alert_id,
            actor_id=actor_id,
            detail=action,
        )
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> InterventionAlert:
        """Return a copy of one alert.

        Raises:
            AlertNotFound: Unknown alert id
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFound(alert_id)
            return replace(alert)

    def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[InterventionAlert]:
        """Copies of matching alerts, oldest first."""
        with self._lock:
            alerts = [replace(a) for a in self._alerts.values()]
        if status is not None:
            alerts = [a for a in alerts if a.status == status]
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        return sorted(alerts, key=lambda a: a.created_at)

    def get_alert_stats(self) -> Dict[str, Any]:
        with self._lock:
            alerts = list(self._alerts.values())
            armed = len(self._timers)

        by_status = {s.value: 0 for s in AlertStatus}
        by_severity = {s.value: 0 for s in AlertSeverity}
        for alert in alerts:
            by_status[alert.status.value] += 1
            by_severity[alert.severity.value] += 1

        return {
            "total": len(alerts),
            "active": sum(1 for a in alerts if not a.status.is_terminal),
            "acknowledged": sum(1 for a in alerts if a.acknowledged),
            "escalated": sum(1 for a in alerts if a.escalation_level > 0),
            "resolved": by_status[AlertStatus.RESOLVED.value],
            "dismissed": by_status[AlertStatus.DISMISSED.value],
            "remediations_executed": sum(1 for a in alerts if a.remediation_executed),
            "armed_timers": armed,
            "by_severity": by_severity,
            "by_status": by_status,
        }

    def shutdown(self) -> None:
        """Cancel every armed timer and stop the notification pool."""
        with self._lock:
            alert_ids = list(self._timers)
            for alert_id in alert_ids:
                self._cancel_timer_locked(alert_id)
            for handle in self._remediation_timers.values():
                handle.cancel()
            self._remediation_timers.clear()
        self.dispatcher.shutdown()
        logger.info("ESCALATION_ENGINE_SHUTDOWN", extra={"cancelled_timers": len(alert_ids)})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit(
        self,
        action: AuditAction,
        alert_id: str,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        privacy_context: Optional[PrivacyContext] = None,
        actor_id: Optional[str] = None,
        denial_reason: Optional[str] = None,
        **privacy_fields,
    ) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log(
            action=action,
            entity_type=AuditEntity.ALERT,
            entity_id=alert_id,
            outcome=outcome,
            privacy_context=privacy_context,
            actor_id=actor_id,
            denial_reason=denial_reason,
            **privacy_fields,
        )

    def _audit_rejected(
        self,
        action: AuditAction,
        alert_id: str,
        actor_id: Optional[str],
        error: ScribeGuardError,
    ) -> None:
        reason = "alert_not_found" if isinstance(error, AlertNotFound) else "invalid_transition"
        logger.warning(
            "ALERT_OPERATION_REJECTED",
            extra={"alert_id": alert_id, "action": action.value, "reason": reason}
        )
        self._audit(
            action, alert_id,
            outcome=AuditOutcome.DENIED,
            actor_id=actor_id,
            denial_reason=reason,
        )
