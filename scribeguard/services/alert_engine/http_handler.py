"""Alert engine HTTP handler - operator endpoints.

Thin adapter for humans and runbooks: acknowledge, resolve, dismiss,
approve remediation and read alert state. Alerts are admitted by the
analytics pipeline, never over HTTP.
"""
import logging
import os

from flask import Flask, request, jsonify

from scribeguard.shared.errors import (
    AlertNotFound,
    InvalidAlertTransition,
    RemediationFailed,
)
from scribeguard.shared.models import AlertSeverity, AlertStatus
from scribeguard.shared.utils import configure_pii_salt_from_env
from .config import AlertEngineConfig
from .escalation_engine import EscalationEngine

logger = logging.getLogger(__name__)


def create_app(engine: EscalationEngine) -> Flask:
    """Build the operator app around an existing engine."""
    app = Flask(__name__)

    def _actor(data: dict, field: str):
        actor = (data or {}).get(field)
        if not actor:
            return None, (jsonify({"error": f"Missing {field}"}), 400)
        return actor, None

    def _error_response(alert_id: str, error: Exception):
        if isinstance(error, AlertNotFound):
            return jsonify({"error": "Alert not found", "alert_id": alert_id}), 404
        if isinstance(error, InvalidAlertTransition):
            return jsonify({
                "error": "Invalid transition",
                "alert_id": alert_id,
                "current": error.current,
                "requested": error.requested,
            }), 409
        if isinstance(error, RemediationFailed):
            return jsonify({
                "error": "Remediation failed",
                "alert_id": alert_id,
                "action": error.action,
            }), 502
        logger.error(
            "ALERT_HTTP_ERROR",
            extra={"alert_id": alert_id, "error": str(error), "error_type": type(error).__name__}
        )
        return jsonify({"error": "Internal error"}), 500

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({"status": "healthy", "service": "alert-engine"}), 200

    @app.route("/ready", methods=["GET"])
    def ready():
        """Readiness check."""
        return jsonify({"status": "ready"}), 200

    @app.route("/alerts", methods=["GET"])
    def list_alerts():
        """List alerts.

        Query Params:
            status: pending | acknowledged | escalated | resolved | dismissed
            severity: info | warning | critical | breach
        """
        try:
            status = AlertStatus(request.args["status"]) if "status" in request.args else None
            severity = AlertSeverity(request.args["severity"]) if "severity" in request.args else None
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        alerts = engine.list_alerts(status=status, severity=severity)
        return jsonify({
            "count": len(alerts),
            "alerts": [a.to_dict() for a in alerts],
        }), 200

    @app.route("/alerts/stats", methods=["GET"])
    def alert_stats():
        return jsonify(engine.get_alert_stats()), 200

    @app.route("/alerts/<alert_id>", methods=["GET"])
    def get_alert(alert_id: str):
        try:
            return jsonify(engine.get_alert(alert_id).to_dict()), 200
        except Exception as e:
            return _error_response(alert_id, e)

    @app.route("/alerts/<alert_id>/acknowledge", methods=["POST"])
    def acknowledge_alert(alert_id: str):
        """Acknowledge an alert.

        Request Body:
            {"acknowledged_by": "privacy_officer_1"}
        """
        actor, error = _actor(request.get_json(silent=True), "acknowledged_by")
        if error:
            return error
        try:
            alert = engine.acknowledge(alert_id, actor)
        except Exception as e:
            return _error_response(alert_id, e)
        return jsonify(alert.to_dict()), 200

    @app.route("/alerts/<alert_id>/resolve", methods=["POST"])
    def resolve_alert(alert_id: str):
        """Resolve an alert.

        Request Body:
            {"resolved_by": "privacy_officer_1", "resolution": "Contacted instructor"}
        """
        data = request.get_json(silent=True)
        actor, error = _actor(data, "resolved_by")
        if error:
            return error
        try:
            alert = engine.resolve(alert_id, actor, resolution=data.get("resolution", ""))
        except Exception as e:
            return _error_response(alert_id, e)
        return jsonify(alert.to_dict()), 200

    @app.route("/alerts/<alert_id>/dismiss", methods=["POST"])
    def dismiss_alert(alert_id: str):
        """Dismiss an alert.

        Request Body:
            {"dismissed_by": "privacy_officer_1", "reason": "False positive"}
        """
        data = request.get_json(silent=True)
        actor, error = _actor(data, "dismissed_by")
        if error:
            return error
        try:
            alert = engine.dismiss(alert_id, actor, reason=data.get("reason"))
        except Exception as e:
            return _error_response(alert_id, e)
        return jsonify(alert.to_dict()), 200

    @app.route("/alerts/<alert_id>/remediate", methods=["POST"])
    def remediate_alert(alert_id: str):
        """Approve and run an alert's remediation.

        Request Body:
            {"approved_by": "privacy_officer_1"}
        """
        actor, error = _actor(request.get_json(silent=True), "approved_by")
        if error:
            return error
        try:
            alert = engine.execute_remediation(alert_id, actor)
        except Exception as e:
            return _error_response(alert_id, e)
        return jsonify(alert.to_dict()), 200

    @app.route("/alerts/acknowledge", methods=["POST"])
    def acknowledge_batch():
        """Acknowledge several alerts.

        Request Body:
            {"alert_ids": ["alert_1", "alert_2"], "acknowledged_by": "privacy_officer_1"}
        """
        data = request.get_json(silent=True)
        actor, error = _actor(data, "acknowledged_by")
        if error:
            return error
        alert_ids = data.get("alert_ids")
        if not isinstance(alert_ids, list) or not alert_ids:
            return jsonify({"error": "alert_ids must be a non-empty list"}), 400

        results = engine.acknowledge_many(alert_ids, actor)
        return jsonify({
            "acknowledged": sum(1 for r in results if r.succeeded),
            "results": [
                {
                    "alert_id": r.alert_id,
                    "succeeded": r.succeeded,
                    "status": r.alert.status.value if r.alert else None,
                    "error": r.error,
                }
                for r in results
            ],
        }), 200

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    configure_pii_salt_from_env(default="default_dev_salt_change_in_production_32chars")
    app = create_app(EscalationEngine(config=AlertEngineConfig.from_env()))
    port = int(os.getenv("PORT", "8005"))
    app.run(host="0.0.0.0", port=port, debug=False)
