"""Contest integrity engine: timing, fraud scoring and winner selection.

Pure(ish) domain logic imported by the HTTP blueprints and CLI commands.
Nothing in here reads ``current_app.config`` directly; callers build the
settings objects from :mod:`.settings` and pass them in.
"""

from .errors import (
    ContestError,
    StateViolation,
    IntegrityViolation,
    FraudSuspicion,
    TimeoutExceeded,
    NotFound,
    InvalidSelection,
    ClaimError,
)
from .fraud import FraudAssessment, FraudHistory, AttemptSnapshot, assess
from .timing import TimingSession
from .selection import WinnerSelector, SelectionResult

__all__ = [
    'ContestError',
    'StateViolation',
    'IntegrityViolation',
    'FraudSuspicion',
    'TimeoutExceeded',
    'NotFound',
    'InvalidSelection',
    'ClaimError',
    'FraudAssessment',
    'FraudHistory',
    'AttemptSnapshot',
    'assess',
    'TimingSession',
    'WinnerSelector',
    'SelectionResult',
]
