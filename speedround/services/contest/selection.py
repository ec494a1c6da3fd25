"""Round closure: re-screen completed attempts and commit exactly one winner.

The winner commit is guarded by a compare-and-swap on ``round.winner_attempt_id``
so a scheduled sweep racing an admin-triggered selection can never produce
two winners; the losing call returns the already committed winner.
"""

import random
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from flask import current_app
from sqlalchemy import update

from speedround import db
from speedround.models import Attempt, AttemptState, PaymentStatus, Round, utcnow
from .claims import issue_claim_token
from .errors import InvalidSelection, NotFound
from .notifications import DatabaseNotificationQueue, NotificationQueue, dispatch, loser_jobs, winner_jobs
from .security import mark_fraudulent
from .settings import SelectionThresholds

FASTEST_TIME = 'fastest_time'
RANDOM = 'random'
MANUAL = 'manual'
METHODS = (FASTEST_TIME, RANDOM, MANUAL)

SCREEN_FAILED_REASON = 'Failed selection-time fraud screening'


@dataclass
class SelectionResult:
    round_id: int
    method: str
    winner: Optional[Attempt] = None
    created: bool = False
    eligible_ids: Tuple[int, ...] = ()
    excluded_ids: Tuple[int, ...] = ()
    claim_token: Optional[str] = None
    notifications_sent: int = 0

    @property
    def winner_id(self) -> Optional[int]:
        return self.winner.id if self.winner is not None else None

    def to_dict(self):
        return {
            'round_id': self.round_id,
            'method': self.method,
            'winner': self.winner.to_dict() if self.winner is not None else None,
            'created': self.created,
            'eligible_ids': list(self.eligible_ids),
            'excluded_ids': list(self.excluded_ids),
        }


def population_variance(times: Sequence[float]) -> float:
    if len(times) < 2:
        return 0.0
    return statistics.pvariance(times)


def selection_factors(
    total_time: float,
    question_times: Sequence[float],
    same_ip_paid: int,
    same_device_paid: Optional[int],
    thresholds: SelectionThresholds,
) -> List[str]:
    """Boolean heuristics counted by the selection-time re-screen."""
    factors = []
    if total_time < thresholds.min_total_time:
        factors.append('total_time_too_fast')
    if question_times:
        if statistics.fmean(question_times) < thresholds.min_avg_question_time:
            factors.append('average_question_time_too_fast')
        if population_variance(question_times) < thresholds.min_variance:
            factors.append('timing_variance_too_low')
    if same_ip_paid > thresholds.max_same_ip:
        factors.append('same_ip_paid_participations')
    if same_device_paid is not None and same_device_paid > thresholds.max_same_device:
        factors.append('same_device_paid_participations')
    return factors


def pick_fastest(attempts: Sequence[Attempt], epsilon: float = 1e-6) -> Attempt:
    """Lowest total_time; attempts within ``epsilon`` of it tie and the lowest id wins."""
    ordered = sorted(attempts, key=lambda a: (a.total_time, a.id))
    best_time = ordered[0].total_time
    tied = [a for a in ordered if abs(a.total_time - best_time) < epsilon]
    if len(tied) > 1:
        current_app.logger.info(
            f"[winner-tie] time={best_time:.6f} attempts={[a.id for a in tied]}"
        )
    return min(tied, key=lambda a: a.id)


class WinnerSelector:
    def __init__(self, queue: NotificationQueue = None, thresholds: SelectionThresholds = None, rng: random.Random = None):
        self.queue = queue or DatabaseNotificationQueue()
        self.thresholds = thresholds or SelectionThresholds()
        self.rng = rng or random.SystemRandom()

    def completed_attempts(self, round_id: int) -> List[Attempt]:
        return (
            Attempt.query.filter(
                Attempt.round_id == round_id,
                Attempt.payment_status == PaymentStatus.PAID,
                Attempt.state == AttemptState.COMPLETED,
                Attempt.is_fraudulent.is_(False),
                Attempt.total_time.isnot(None),
            )
            .order_by(Attempt.total_time.asc(), Attempt.id.asc())
            .all()
        )

    def _paid_count(self, column, value, since: datetime) -> int:
        return Attempt.query.filter(
            column == value,
            Attempt.payment_status == PaymentStatus.PAID,
            Attempt.created_at > since,
        ).count()

    def rescreen(self, attempts: Sequence[Attempt], now: datetime = None) -> Tuple[List[Attempt], List[Attempt]]:
        """Split attempts into (eligible, excluded); exclusions are committed immediately."""
        now = now or utcnow()
        since = now - timedelta(hours=self.thresholds.lookback_hours)
        eligible, excluded = [], []
        for attempt in attempts:
            ip_count = 0
            if attempt.ip_address:
                ip_count = self._paid_count(Attempt.ip_address, attempt.ip_address, since)
            device_count = None
            if attempt.device_fingerprint:
                device_count = self._paid_count(Attempt.device_fingerprint, attempt.device_fingerprint, since)
            factors = selection_factors(
                attempt.total_time, attempt.question_times, ip_count, device_count, self.thresholds
            )
            if len(factors) >= self.thresholds.factor_limit:
                mark_fraudulent(attempt, SCREEN_FAILED_REASON, factors=factors)
                excluded.append(attempt)
                current_app.logger.warning(
                    f"[fraud-screen] attempt={attempt.id} factors={len(factors)} {factors} "
                    f"total={attempt.total_time} ip_count={ip_count} device_count={device_count or 0}"
                )
            else:
                eligible.append(attempt)
        if excluded:
            db.session.commit()
        return eligible, excluded

    def select(self, round_id: int, method: str = FASTEST_TIME, attempt_id: int = None) -> SelectionResult:
        if method not in METHODS:
            raise InvalidSelection(f"Invalid selection method: {method}")
        if method == MANUAL and attempt_id is None:
            raise InvalidSelection('Manual selection requires an attempt_id')

        rnd = db.session.get(Round, round_id)
        if rnd is None:
            raise NotFound(f"Round not found: {round_id}")
        if rnd.winner_attempt_id is not None:
            return self._existing_result(rnd)

        candidates = self.completed_attempts(round_id)
        if not candidates:
            current_app.logger.warning(f"[winner-none] round={round_id} method={method} reason=no_completed_attempts")
            return SelectionResult(round_id=round_id, method=method)

        eligible, excluded = self.rescreen(candidates)
        eligible_ids = tuple(a.id for a in eligible)
        excluded_ids = tuple(a.id for a in excluded)
        if not eligible:
            current_app.logger.warning(f"[winner-none] round={round_id} method={method} reason=all_excluded")
            return SelectionResult(round_id=round_id, method=method, excluded_ids=excluded_ids)

        winner = self._choose(eligible, method, attempt_id)
        winner_id, created, token = self._commit_winner(round_id, winner, method)
        if not created:
            return self._existing_result(db.session.get(Round, round_id))

        winner = db.session.get(Attempt, winner_id)
        eligible = [db.session.get(Attempt, i) for i in eligible_ids]
        sent = self._notify(db.session.get(Round, round_id), winner, eligible, token)

        current_app.logger.info(
            f"[winner-selected] round={round_id} attempt={winner_id} method={method} "
            f"time={winner.total_time} eligible={len(eligible_ids)} excluded={len(excluded_ids)}"
        )
        return SelectionResult(
            round_id=round_id,
            method=method,
            winner=winner,
            created=True,
            eligible_ids=eligible_ids,
            excluded_ids=excluded_ids,
            claim_token=token,
            notifications_sent=sent,
        )

    def _choose(self, eligible: List[Attempt], method: str, attempt_id: Optional[int]) -> Attempt:
        if method == FASTEST_TIME:
            return pick_fastest(eligible, self.thresholds.tie_epsilon)
        if method == RANDOM:
            return self.rng.choice(sorted(eligible, key=lambda a: a.id))
        for attempt in eligible:
            if attempt.id == attempt_id:
                return attempt
        raise InvalidSelection(f"Attempt {attempt_id} is not eligible to win this round")

    def _commit_winner(self, round_id: int, winner: Attempt, method: str):
        """Returns (winner_id, created, claim_token)."""
        now = utcnow()
        result = db.session.execute(
            update(Round)
            .where(Round.id == round_id, Round.winner_attempt_id.is_(None))
            .values(
                winner_attempt_id=winner.id,
                winner_selection_method=method,
                status='completed',
                completed_at=now,
                winner_selected_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            existing = db.session.get(Round, round_id)
            current_app.logger.info(
                f"[winner-race] round={round_id} existing={existing.winner_attempt_id} attempted={winner.id}"
            )
            return existing.winner_attempt_id, False, None

        db.session.execute(
            update(Attempt)
            .where(Attempt.round_id == round_id, Attempt.is_winner.is_(True))
            .values(is_winner=False)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            update(Attempt)
            .where(Attempt.id == winner.id)
            .values(is_winner=True)
            .execution_options(synchronize_session=False)
        )
        claim = issue_claim_token(winner, self.thresholds.claim_token_ttl_days, now)
        token = claim.token
        db.session.commit()
        return winner.id, True, token

    def _notify(self, rnd: Round, winner: Attempt, eligible: List[Attempt], token: str) -> int:
        base_url = self.thresholds.public_base_url
        jobs = winner_jobs(winner, token, base_url)
        for attempt in eligible:
            if attempt.id != winner.id:
                jobs.extend(loser_jobs(attempt, winner, rnd, base_url))
        incomplete = Attempt.query.filter(
            Attempt.round_id == rnd.id,
            Attempt.payment_status == PaymentStatus.PAID,
            Attempt.state != AttemptState.COMPLETED,
            Attempt.is_fraudulent.is_(False),
        ).order_by(Attempt.id.asc()).all()
        for attempt in incomplete:
            jobs.extend(loser_jobs(attempt, winner, rnd, base_url))
        return dispatch(self.queue, jobs)

    def _existing_result(self, rnd: Round) -> SelectionResult:
        winner = db.session.get(Attempt, rnd.winner_attempt_id)
        current_app.logger.info(f"[winner-exists] round={rnd.id} attempt={rnd.winner_attempt_id}")
        return SelectionResult(
            round_id=rnd.id,
            method=rnd.winner_selection_method or '',
            winner=winner,
            created=False,
        )


def winner_stats(round_id: int) -> Optional[dict]:
    """Winner record with its completion rank among valid finishers."""
    rnd = db.session.get(Round, round_id)
    if rnd is None:
        raise NotFound(f"Round not found: {round_id}")
    winner = Attempt.query.filter_by(round_id=round_id, is_winner=True).first()
    if winner is None:
        return None
    faster = 0
    if winner.total_time is not None:
        faster = Attempt.query.filter(
            Attempt.round_id == round_id,
            Attempt.payment_status == PaymentStatus.PAID,
            Attempt.state == AttemptState.COMPLETED,
            Attempt.is_fraudulent.is_(False),
            Attempt.total_time < winner.total_time,
        ).count()
    stats = winner.to_dict()
    stats.update({
        'completion_rank': faster + 1,
        'round_name': rnd.name,
        'selection_method': rnd.winner_selection_method,
        'round_completed_at': rnd.completed_at.isoformat() if rnd.completed_at else None,
    })
    return stats


def validate_winner_selection(round_id: int) -> dict:
    rnd = db.session.get(Round, round_id)
    if rnd is None:
        return {'valid': False, 'errors': ['Round not found'], 'warnings': []}

    errors, warnings = [], []
    if rnd.status != 'completed':
        errors.append('Round is not completed')
    if rnd.winner_attempt_id is None:
        errors.append('No winner selected for round')
    else:
        winner = Attempt.query.filter_by(id=rnd.winner_attempt_id, round_id=round_id).first()
        if winner is None:
            errors.append('Winner attempt not found')
        else:
            if winner.payment_status != PaymentStatus.PAID:
                errors.append('Winner does not have paid status')
            if winner.state != AttemptState.COMPLETED:
                errors.append('Winner did not complete the game')
            if winner.is_fraudulent:
                errors.append('Winner is marked as fraudulent')
            if winner.total_time is None:
                errors.append('Winner has no completion time recorded')
            elif rnd.winner_selection_method == FASTEST_TIME:
                faster = Attempt.query.filter(
                    Attempt.round_id == round_id,
                    Attempt.payment_status == PaymentStatus.PAID,
                    Attempt.state == AttemptState.COMPLETED,
                    Attempt.is_fraudulent.is_(False),
                    Attempt.total_time < winner.total_time,
                ).count()
                if faster:
                    warnings.append(f"{faster} attempts completed faster than the declared winner")

    return {
        'valid': not errors,
        'errors': errors,
        'warnings': warnings,
        'round_status': rnd.status,
        'winner_id': rnd.winner_attempt_id,
        'selection_method': rnd.winner_selection_method,
    }
