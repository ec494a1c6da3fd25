import re
import secrets
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from speedround import db
from speedround.models import ClaimToken, utcnow
from .errors import ClaimError

TOKEN_RE = re.compile(r'^[0-9a-f]{64}$')
WINNER_CLAIM = 'winner_claim'


def active_token(attempt_id: int, now: datetime = None):
    now = now or utcnow()
    return (
        ClaimToken.query.filter(
            ClaimToken.attempt_id == attempt_id,
            ClaimToken.token_type == WINNER_CLAIM,
            ClaimToken.used_at.is_(None),
            ClaimToken.expires_at > now,
        )
        .order_by(ClaimToken.created_at.desc())
        .first()
    )


def issue_claim_token(attempt, ttl_days: int = 30, now: datetime = None) -> ClaimToken:
    """Stage a claim token for a winner. Does not commit."""
    now = now or utcnow()
    existing = active_token(attempt.id, now)
    if existing:
        return existing
    token = ClaimToken(
        attempt_id=attempt.id,
        token=secrets.token_hex(32),
        token_type=WINNER_CLAIM,
        expires_at=now + timedelta(days=ttl_days),
        created_at=now,
    )
    db.session.add(token)
    return token


def validate_claim_token(token: str, now: datetime = None) -> ClaimToken:
    now = now or utcnow()
    if not isinstance(token, str) or not TOKEN_RE.match(token):
        raise ClaimError('invalid_format', 'Invalid token format')
    record = ClaimToken.query.filter_by(token=token).first()
    if record is None:
        raise ClaimError('not_found', 'Invalid or unknown token')
    if record.used_at is not None:
        raise ClaimError('used', 'Token has already been used')
    if record.expires_at < now:
        raise ClaimError('expired', 'Token has expired')
    return record


def redeem_claim_token(token: str, ip_address: str = '', now: datetime = None) -> ClaimToken:
    now = now or utcnow()
    record = validate_claim_token(token, now)
    result = db.session.execute(
        update(ClaimToken)
        .where(ClaimToken.id == record.id, ClaimToken.used_at.is_(None))
        .values(used_at=now, used_by_ip=ip_address or None)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise ClaimError('used', 'Token has already been used')
    db.session.commit()
    db.session.refresh(record)
    current_app.logger.info(f"[claim-redeemed] attempt={record.attempt_id} ip={ip_address or '-'}")
    return record
