"""Database aggregation feeding the pure fraud scorer."""

import json
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from speedround import db
from speedround.models import Attempt, PaymentStatus, SecurityEvent, utcnow
from .fraud import AttemptSnapshot, FraudAssessment, FraudHistory, Recommendation, assess
from .security import VIOLATION_TYPES, mark_fraudulent
from .settings import FraudThresholds


def _count_and_distinct_emails(column, value, since):
    row = (
        db.session.query(func.count(Attempt.id), func.count(func.distinct(Attempt.user_email)))
        .filter(column == value, Attempt.created_at > since)
        .one()
    )
    return int(row[0] or 0), int(row[1] or 0)


def build_fraud_history(attempt: Attempt, thresholds: FraudThresholds = None, now: datetime = None) -> FraudHistory:
    t = thresholds or FraudThresholds()
    now = now or utcnow()
    window_start = now - timedelta(hours=t.lookback_hours)

    ip_count, ip_emails = _count_and_distinct_emails(Attempt.ip_address, attempt.ip_address, window_start)
    violations = SecurityEvent.query.filter(
        SecurityEvent.ip_address == attempt.ip_address,
        SecurityEvent.event_type.in_(VIOLATION_TYPES),
        SecurityEvent.created_at > now - timedelta(days=t.security_lookback_days),
    ).count()

    device_count = device_emails = device_usage = 0
    if attempt.device_fingerprint:
        device_count, device_emails = _count_and_distinct_emails(
            Attempt.device_fingerprint, attempt.device_fingerprint, window_start
        )
        device_usage = Attempt.query.filter_by(device_fingerprint=attempt.device_fingerprint).count()

    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today = Attempt.query.filter(Attempt.user_email == attempt.user_email, Attempt.created_at >= day_start).count()

    recent = (
        db.session.query(Attempt.created_at)
        .filter(Attempt.user_email == attempt.user_email)
        .order_by(Attempt.created_at.desc())
        .limit(5)
        .all()
    )
    stamps = [r[0] for r in recent]
    gaps = tuple((a - b).total_seconds() for a, b in zip(stamps, stamps[1:]))

    paid = Attempt.query.filter_by(user_email=attempt.user_email, payment_status=PaymentStatus.PAID)
    paid_count = paid.count()
    wins = paid.filter(Attempt.is_winner.is_(True)).count()

    return FraudHistory(
        ip_participations=ip_count,
        ip_distinct_emails=ip_emails,
        ip_security_violations=violations,
        device_participations=device_count,
        device_distinct_emails=device_emails,
        device_total_usage=device_usage,
        email_participations_today=today,
        recent_participation_gaps=gaps,
        paid_participations=paid_count,
        wins=wins,
    )


def screen_attempt(attempt: Attempt, thresholds: FraudThresholds = None, now: datetime = None) -> FraudAssessment:
    """Score an attempt, store the result on it and block it when risk is high."""
    t = thresholds or FraudThresholds()
    history = build_fraud_history(attempt, t, now)
    assessment = assess(AttemptSnapshot.from_attempt(attempt), history, t)

    attempt.fraud_score = assessment.score
    attempt.fraud_flags = json.dumps(list(assessment.flags))
    db.session.add(attempt)
    if assessment.recommendation is Recommendation.BLOCK and not attempt.is_fraudulent:
        mark_fraudulent(attempt, 'Fraud screening: high risk', flags=list(assessment.flags), score=assessment.score)
    db.session.commit()

    current_app.logger.info(
        f"[fraud-assess] attempt={attempt.id} score={assessment.score} "
        f"risk={assessment.risk_level.value} recommendation={assessment.recommendation.value}"
    )
    return assessment
