"""Error taxonomy for the privacy-gated analytics pipeline.

Privacy outcomes (consent denied, cohort too small, budget spent) are
first-class results at the pipeline boundary; these exceptions carry them
between components. Infrastructure failures are not listed here and
propagate as whatever the collaborator raised.
"""
from typing import Optional


class ScribeGuardError(Exception):
    """Base exception for all pipeline errors."""
    pass


class InvalidPrivacyContext(ScribeGuardError, ValueError):
    """Request context is missing requester id, role or purpose.

    Raised before any side effect; fatal for that request only.
    """

    def __init__(self, reason: str):
        super().__init__(f"Invalid privacy context: {reason}")
        self.reason = reason


class ConsentDenied(ScribeGuardError):
    """Consent is missing for at least one required purpose."""

    def __init__(self, subject_id_hash: str, purposes: str):
        super().__init__(f"Consent not granted for purposes {purposes}")
        self.subject_id_hash = subject_id_hash
        self.purposes = purposes


class InsufficientCohort(ScribeGuardError):
    """Cohort is smaller than the k-anonymity floor.

    Signals the caller to widen the query. No numeric data accompanies it.
    """

    def __init__(self, cohort_size: int, minimum_cohort_size: int):
        super().__init__(
            f"Cohort size ({cohort_size}) below minimum cohort size "
            f"({minimum_cohort_size})"
        )
        self.cohort_size = cohort_size
        self.minimum_cohort_size = minimum_cohort_size


class PrivacyBudgetExceeded(ScribeGuardError):
    """Daily epsilon budget for an entity would be exceeded by this query."""

    def __init__(self, entity_id_hash: str, consumed_epsilon: float, limit: float):
        super().__init__(
            f"Privacy budget exceeded ({consumed_epsilon:.3f} > {limit:.3f})"
        )
        self.entity_id_hash = entity_id_hash
        self.consumed_epsilon = consumed_epsilon
        self.limit = limit


class NotFound(ScribeGuardError):
    """Requested entity does not exist."""
    pass


class AlertNotFound(NotFound):
    """Alert id is unknown to the escalation engine."""

    def __init__(self, alert_id: str):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidAlertTransition(ScribeGuardError):
    """Requested lifecycle transition is not allowed from the current state."""

    def __init__(self, alert_id: str, current: str, requested: str):
        super().__init__(
            f"Alert {alert_id} cannot move from {current} to {requested}"
        )
        self.alert_id = alert_id
        self.current = current
        self.requested = requested


class RemediationFailed(ScribeGuardError):
    """Remediation action raised; never affects the alert's own state."""

    def __init__(self, alert_id: str, action: str, cause: Optional[Exception] = None):
        super().__init__(f"Remediation {action} failed for alert {alert_id}: {cause}")
        self.alert_id = alert_id
        self.action = action
        self.cause = cause


class NotificationFailed(ScribeGuardError):
    """Delivery to one channel/recipient failed; other targets are unaffected."""

    def __init__(self, channel_type: str, masked_endpoint: str, cause: Optional[Exception] = None):
        super().__init__(f"Notification via {channel_type} to {masked_endpoint} failed: {cause}")
        self.channel_type = channel_type
        self.masked_endpoint = masked_endpoint
        self.cause = cause
