import json

from flask import current_app

from speedround import db
from speedround.models import SecurityEvent

INTEGRITY_VIOLATION = 'integrity_violation'
FRAUD_DETECTION = 'fraud_detection'
FAST_ANSWER = 'fast_answer'

# Event types counted as prior violations by the fraud scorer
VIOLATION_TYPES = (INTEGRITY_VIOLATION, FRAUD_DETECTION)


def record_security_event(event_type: str, ip_address: str = '', attempt_id=None, **details) -> SecurityEvent:
    """Stage a security event on the session; the caller owns the commit."""
    event = SecurityEvent(
        event_type=event_type,
        ip_address=ip_address or '',
        attempt_id=attempt_id,
        details_json=json.dumps(details, sort_keys=True, default=str) if details else None,
    )
    db.session.add(event)
    current_app.logger.warning(f"[security] type={event_type} attempt={attempt_id} ip={ip_address or '-'}")
    return event


def mark_fraudulent(attempt, reason: str, **details) -> None:
    attempt.is_fraudulent = True
    attempt.fraud_reason = reason
    db.session.add(attempt)
    record_security_event(FRAUD_DETECTION, attempt.ip_address, attempt.id, reason=reason, **details)
