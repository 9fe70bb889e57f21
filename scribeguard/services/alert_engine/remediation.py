"""Remediation actions attached to alerts.

The engine decides when a remediation runs and guarantees it runs at most
once per alert. The executor only performs the action. Any exception it
raises is wrapped in RemediationFailed by the engine and never changes the
alert's own state.
"""
import logging
from typing import Callable, Dict, Protocol

from scribeguard.shared.errors import RemediationFailed
from scribeguard.shared.models import InterventionAlert, RemediationType
from scribeguard.shared.utils import hash_pii, mask_endpoint
from .config import ChannelType
from .notifications import NotificationDispatcher, NotificationTarget

logger = logging.getLogger(__name__)


class RemediationExecutor(Protocol):
    """Performs a remediation action for an alert. Raises on failure."""

    def execute(self, alert: InterventionAlert) -> None:
        ...


class DefaultRemediationExecutor:
    """Built-in handlers for every RemediationType.

    Access blocks, session revocation, deletion and consent requirements are
    recorded as structured log events for the owning systems to act on.
    Admin notification goes through the notification dispatcher.
    """

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher
        self._handlers: Dict[RemediationType, Callable[[InterventionAlert], None]] = {
            RemediationType.BLOCK_ACCESS: self._block_access,
            RemediationType.REVOKE_SESSION: self._revoke_session,
            RemediationType.NOTIFY_ADMIN: self._notify_admin,
            RemediationType.AUTO_DELETE: self._auto_delete,
            RemediationType.REQUIRE_CONSENT: self._require_consent,
        }

    def execute(self, alert: InterventionAlert) -> None:
        if alert.remediation is None:
            raise RemediationFailed(alert.alert_id, "none", ValueError("alert has no remediation"))
        handler = self._handlers[alert.remediation.action]
        handler(alert)

    @staticmethod
    def _require(alert: InterventionAlert, name: str) -> str:
        value = getattr(alert.remediation.parameters, name)
        if not value:
            raise RemediationFailed(
                alert.alert_id,
                alert.remediation.action.value,
                ValueError(f"missing parameter {name}"),
            )
        return value

    def _block_access(self, alert: InterventionAlert) -> None:
        user_id = self._require(alert, "user_id")
        logger.warning(
            "USER_ACCESS_BLOCKED",
            extra={
                "alert_id": alert.alert_id,
                "user_id_hash": hash_pii(user_id),
                "resource": alert.remediation.parameters.resource or "all",
            }
        )

    def _revoke_session(self, alert: InterventionAlert) -> None:
        user_id = self._require(alert, "user_id")
        logger.warning(
            "USER_SESSIONS_REVOKED",
            extra={"alert_id": alert.alert_id, "user_id_hash": hash_pii(user_id)}
        )

    def _notify_admin(self, alert: InterventionAlert) -> None:
        endpoint = self._require(alert, "admin_endpoint")
        report = self.dispatcher.dispatch(
            alert, [NotificationTarget(ChannelType.EMAIL, endpoint)]
        )
        if not report.all_delivered:
            raise RemediationFailed(
                alert.alert_id,
                RemediationType.NOTIFY_ADMIN.value,
                report.failures[0],
            )
        logger.info(
            "ADMIN_NOTIFIED",
            extra={"alert_id": alert.alert_id, "endpoint": mask_endpoint(endpoint)}
        )

    def _auto_delete(self, alert: InterventionAlert) -> None:
        data_id = self._require(alert, "data_id")
        logger.warning(
            "DATA_AUTO_DELETED",
            extra={
                "alert_id": alert.alert_id,
                "data_id_hash": hash_pii(data_id),
                "reason": alert.remediation.parameters.reason or alert.alert_type,
            }
        )

    def _require_consent(self, alert: InterventionAlert) -> None:
        user_id = self._require(alert, "user_id")
        logger.warning(
            "CONSENT_REQUIRED",
            extra={
                "alert_id": alert.alert_id,
                "user_id_hash": hash_pii(user_id),
                "consent_purpose": alert.remediation.parameters.consent_purpose,
            }
        )
