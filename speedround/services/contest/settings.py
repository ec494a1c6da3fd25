"""Explicit tuning objects built once per request from the app config."""

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class TimingSettings:
    min_answer_time: float = 0.5
    default_question_timeout: float = 10.0
    timeout_warning_ratio: float = 0.8

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'TimingSettings':
        return cls(
            min_answer_time=float(cfg.get('MIN_ANSWER_TIME_SEC', 0.5)),
            default_question_timeout=float(cfg.get('QUESTION_TIMEOUT_SEC', 10)),
            timeout_warning_ratio=float(cfg.get('TIMEOUT_WARNING_RATIO', 0.8)),
        )


@dataclass(frozen=True)
class FraudThresholds:
    max_daily_participations: int = 5
    max_same_ip: int = 10
    max_same_device: int = 3
    max_emails_per_ip: int = 5
    max_emails_per_device: int = 2
    automation_device_usage: int = 20
    rapid_gap_seconds: float = 300.0
    win_rate_threshold: float = 0.2
    win_rate_min_paid: int = 5
    min_answer_time: float = 0.5
    fast_answer_limit: int = 2
    consistent_stddev: float = 0.5
    consistent_mean: float = 2.0
    lookback_hours: int = 24
    security_lookback_days: int = 7

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'FraudThresholds':
        return cls(
            max_daily_participations=int(cfg.get('FRAUD_MAX_DAILY_PARTICIPATIONS', 5)),
            max_same_ip=int(cfg.get('FRAUD_MAX_SAME_IP', 10)),
            max_same_device=int(cfg.get('FRAUD_MAX_SAME_DEVICE', 3)),
            automation_device_usage=int(cfg.get('FRAUD_AUTOMATION_DEVICE_USAGE', 20)),
            win_rate_threshold=float(cfg.get('FRAUD_WIN_RATE_THRESHOLD', 0.2)),
            win_rate_min_paid=int(cfg.get('FRAUD_WIN_RATE_MIN_PAID', 5)),
            min_answer_time=float(cfg.get('MIN_ANSWER_TIME_SEC', 0.5)),
            lookback_hours=int(cfg.get('FRAUD_LOOKBACK_HOURS', 24)),
            security_lookback_days=int(cfg.get('SECURITY_LOOKBACK_DAYS', 7)),
        )


@dataclass(frozen=True)
class SelectionThresholds:
    min_total_time: float = 30.0
    min_avg_question_time: float = 2.0
    min_variance: float = 0.1
    max_same_ip: int = 5
    max_same_device: int = 3
    factor_limit: int = 2
    lookback_hours: int = 24
    tie_epsilon: float = 1e-6
    claim_token_ttl_days: int = 30
    public_base_url: str = 'http://localhost:5173'

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'SelectionThresholds':
        return cls(
            min_total_time=float(cfg.get('SELECTION_MIN_TOTAL_TIME_SEC', 30)),
            min_avg_question_time=float(cfg.get('SELECTION_MIN_AVG_QUESTION_SEC', 2.0)),
            min_variance=float(cfg.get('SELECTION_MIN_VARIANCE', 0.1)),
            # same-IP limit shares the daily participation cap
            max_same_ip=int(cfg.get('FRAUD_MAX_DAILY_PARTICIPATIONS', 5)),
            max_same_device=int(cfg.get('SELECTION_MAX_SAME_DEVICE', 3)),
            factor_limit=int(cfg.get('SELECTION_FACTOR_LIMIT', 2)),
            lookback_hours=int(cfg.get('FRAUD_LOOKBACK_HOURS', 24)),
            claim_token_ttl_days=int(cfg.get('CLAIM_TOKEN_TTL_DAYS', 30)),
            public_base_url=str(cfg.get('PUBLIC_BASE_URL', 'http://localhost:5173')).rstrip('/'),
        )
