"""ScribeGuard services.

Each request flows consent_service -> analytics_service ->
intervention_service -> alert_engine, wired by analytics_pipeline:
- Consent is checked before any metric row is read
- All services use hash_pii() for student identifiers
- Analytics Service enforces k-anonymity and differential-privacy noise
- Alert Engine escalates unacknowledged alerts on a timer
- Audit Service provides a hash-chained, append-only audit trail
"""
