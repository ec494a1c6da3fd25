"""Fraud scoring for a single attempt.

``assess`` is a pure function: it sees only the attempt snapshot and the
aggregate history handed to it, performs no I/O and evaluates indicators in a
fixed order, so identical inputs always give an identical assessment.
Database aggregation lives in :mod:`.history`.
"""

import ipaddress
import statistics
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .settings import FraudThresholds

INDICATOR_WEIGHTS = {
    # ip
    'excessive_ip_usage': 0.4,
    'multiple_accounts_same_ip': 0.3,
    'previous_security_violations': 0.2,
    'proxy_or_vpn': 0.1,
    # device
    'excessive_device_usage': 0.5,
    'multiple_accounts_same_device': 0.4,
    'automated_device_detected': 0.3,
    # behaviour
    'excessive_daily_participations': 0.3,
    'rapid_consecutive_participations': 0.2,
    'suspicious_win_rate': 0.25,
    # timing
    'too_many_fast_responses': 0.4,
    'suspiciously_consistent_timing': 0.3,
    'repetitive_timing_intervals': 0.2,
}

DEVICE_FLAGS = frozenset({'excessive_device_usage', 'multiple_accounts_same_device'})

PROXY_NETWORKS = tuple(
    ipaddress.ip_network(cidr) for cidr in ('10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16')
)


class RiskLevel(str, Enum):
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'
    MINIMAL = 'MINIMAL'


class Recommendation(str, Enum):
    BLOCK = 'block'
    MANUAL_REVIEW = 'manual_review'
    MONITOR_CLOSELY = 'monitor_closely'
    MONITOR = 'monitor'
    ALLOW = 'allow'


@dataclass(frozen=True)
class AttemptSnapshot:
    """Read-only view of the attempt fields the scorer looks at."""

    attempt_id: Optional[int] = None
    ip_address: str = ''
    device_fingerprint: Optional[str] = None
    user_email: Optional[str] = None
    question_times: Tuple[float, ...] = ()
    rejected_fast_answers: int = 0

    @classmethod
    def from_attempt(cls, attempt) -> 'AttemptSnapshot':
        return cls(
            attempt_id=attempt.id,
            ip_address=attempt.ip_address or '',
            device_fingerprint=attempt.device_fingerprint or None,
            user_email=attempt.user_email or None,
            question_times=tuple(attempt.question_times),
            rejected_fast_answers=int(attempt.rejected_fast_answers or 0),
        )


@dataclass(frozen=True)
class FraudHistory:
    """Aggregates over the trailing windows, supplied by the caller."""

    ip_participations: int = 0
    ip_distinct_emails: int = 0
    ip_security_violations: int = 0
    device_participations: int = 0
    device_distinct_emails: int = 0
    device_total_usage: int = 0
    email_participations_today: int = 0
    # seconds between consecutive recent participations, newest first
    recent_participation_gaps: Tuple[float, ...] = ()
    paid_participations: int = 0
    wins: int = 0

    @property
    def win_rate(self) -> float:
        if not self.paid_participations:
            return 0.0
        return self.wins / self.paid_participations


@dataclass(frozen=True)
class FraudAssessment:
    score: float
    flags: Tuple[str, ...]
    risk_level: RiskLevel
    recommendation: Recommendation
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_suspicious(self) -> bool:
        return self.score >= 0.8

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fraud_score': self.score,
            'flags': list(self.flags),
            'risk_level': self.risk_level.value,
            'recommendation': self.recommendation.value,
            'is_suspicious': self.is_suspicious,
            'details': dict(self.details),
        }


def is_proxy_or_vpn(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in PROXY_NETWORKS if addr.version == net.version)


def _ip_flags(attempt: AttemptSnapshot, history: FraudHistory, t: FraudThresholds) -> List[str]:
    flags = []
    if history.ip_participations > t.max_same_ip:
        flags.append('excessive_ip_usage')
    if history.ip_participations > 0 and history.ip_distinct_emails > t.max_emails_per_ip:
        flags.append('multiple_accounts_same_ip')
    if history.ip_security_violations > 0:
        flags.append('previous_security_violations')
    if is_proxy_or_vpn(attempt.ip_address):
        flags.append('proxy_or_vpn')
    return flags


def _device_flags(history: FraudHistory, t: FraudThresholds) -> List[str]:
    flags = []
    if history.device_participations > t.max_same_device:
        flags.append('excessive_device_usage')
    if history.device_participations > 0 and history.device_distinct_emails > t.max_emails_per_device:
        flags.append('multiple_accounts_same_device')
    if history.device_total_usage > t.automation_device_usage:
        flags.append('automated_device_detected')
    return flags


def _behaviour_flags(history: FraudHistory, t: FraudThresholds) -> List[str]:
    flags = []
    if history.email_participations_today > t.max_daily_participations:
        flags.append('excessive_daily_participations')
    gaps = history.recent_participation_gaps
    # 3+ participations means at least two gaps
    if len(gaps) >= 2 and sum(gaps) / len(gaps) < t.rapid_gap_seconds:
        flags.append('rapid_consecutive_participations')
    if history.paid_participations > t.win_rate_min_paid and history.win_rate > t.win_rate_threshold:
        flags.append('suspicious_win_rate')
    return flags


def timing_stats(times: Tuple[float, ...], min_answer_time: float, rejected: int = 0) -> Dict[str, Any]:
    fast = sum(1 for x in times if x < min_answer_time) + rejected
    mean = statistics.fmean(times) if times else 0.0
    stddev = statistics.pstdev(times) if len(times) > 3 else None
    intervals = [abs(b - a) for a, b in zip(times, times[1:])]
    unique_intervals = {round(i, 6) for i in intervals}
    return {
        'fast_response_count': fast,
        'avg_response_time': mean,
        'timing_stddev': stddev,
        'interval_count': len(intervals),
        'unique_interval_count': len(unique_intervals),
    }


def _timing_flags(stats: Dict[str, Any], t: FraudThresholds) -> List[str]:
    flags = []
    if stats['fast_response_count'] > t.fast_answer_limit:
        flags.append('too_many_fast_responses')
    stddev = stats['timing_stddev']
    if stddev is not None and stddev < t.consistent_stddev and stats['avg_response_time'] < t.consistent_mean:
        flags.append('suspiciously_consistent_timing')
    if stats['interval_count'] and stats['unique_interval_count'] < stats['interval_count'] * 0.5:
        flags.append('repetitive_timing_intervals')
    return flags


def risk_level_for(score: float) -> RiskLevel:
    if score >= 0.8:
        return RiskLevel.HIGH
    if score >= 0.5:
        return RiskLevel.MEDIUM
    if score >= 0.2:
        return RiskLevel.LOW
    return RiskLevel.MINIMAL


def recommendation_for(level: RiskLevel, flags) -> Recommendation:
    if level is RiskLevel.HIGH:
        return Recommendation.BLOCK
    if level is RiskLevel.MEDIUM:
        if DEVICE_FLAGS.intersection(flags):
            return Recommendation.MANUAL_REVIEW
        return Recommendation.MONITOR_CLOSELY
    if level is RiskLevel.LOW:
        return Recommendation.MONITOR
    return Recommendation.ALLOW


def assess(attempt: AttemptSnapshot, history: FraudHistory, thresholds: FraudThresholds = None) -> FraudAssessment:
    t = thresholds or FraudThresholds()
    flags: List[str] = []
    details: Dict[str, Any] = {
        'ip': {
            'participations': history.ip_participations,
            'distinct_emails': history.ip_distinct_emails,
        },
    }

    flags.extend(_ip_flags(attempt, history, t))

    if attempt.device_fingerprint:
        flags.extend(_device_flags(history, t))
        details['device'] = {
            'participations': history.device_participations,
            'distinct_emails': history.device_distinct_emails,
        }

    if attempt.user_email:
        flags.extend(_behaviour_flags(history, t))
        details['behaviour'] = {
            'participations_today': history.email_participations_today,
            'win_rate': history.win_rate,
        }

    if attempt.question_times or attempt.rejected_fast_answers:
        stats = timing_stats(attempt.question_times, t.min_answer_time, attempt.rejected_fast_answers)
        flags.extend(_timing_flags(stats, t))
        details['timing'] = stats

    unique_flags = tuple(dict.fromkeys(flags))
    # rounding keeps threshold comparisons stable against float summation error
    score = round(sum(INDICATOR_WEIGHTS[f] for f in unique_flags), 4)
    level = risk_level_for(score)
    return FraudAssessment(
        score=score,
        flags=unique_flags,
        risk_level=level,
        recommendation=recommendation_for(level, unique_flags),
        details=details,
    )
