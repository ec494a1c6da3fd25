from datetime import timedelta

import pytest

from speedround import db
from speedround.models import ClaimToken, utcnow
from speedround.services.contest.claims import issue_claim_token, redeem_claim_token, validate_claim_token
from speedround.services.contest.errors import ClaimError


@pytest.fixture()
def winner(make_round, finished_attempt):
    return finished_attempt(make_round(), 45.0)


def test_issue_reuses_active_token(winner):
    first = issue_claim_token(winner)
    db.session.commit()
    second = issue_claim_token(winner)
    assert second.id == first.id
    assert len(first.token) == 64
    assert ClaimToken.query.count() == 1


def test_validate_and_redeem(winner):
    token = issue_claim_token(winner, ttl_days=30).token
    db.session.commit()

    assert validate_claim_token(token).attempt_id == winner.id
    record = redeem_claim_token(token, '203.0.113.9')
    assert record.used_at is not None
    assert record.used_by_ip == '203.0.113.9'

    with pytest.raises(ClaimError) as info:
        redeem_claim_token(token)
    assert info.value.reason == 'used'


def test_expired_token(winner):
    now = utcnow()
    token = issue_claim_token(winner, ttl_days=1, now=now).token
    db.session.commit()
    with pytest.raises(ClaimError) as info:
        validate_claim_token(token, now=now + timedelta(days=2))
    assert info.value.reason == 'expired'


@pytest.mark.parametrize('token,reason', [
    ('not-a-token', 'invalid_format'),
    ('A' * 64, 'invalid_format'),
    ('0' * 64, 'not_found'),
])
def test_bad_tokens(flask_app, token, reason):
    with pytest.raises(ClaimError) as info:
        validate_claim_token(token)
    assert info.value.reason == reason
