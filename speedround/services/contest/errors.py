class ContestError(Exception):
    """Base class for every error the contest engine raises."""

    status_code = 400
    code = 'contest_error'

    def to_dict(self):
        return {'error': str(self), 'code': self.code}


class StateViolation(ContestError):
    """Operation invalid for the attempt's current state (includes replays)."""

    status_code = 409
    code = 'state_violation'


class IntegrityViolation(ContestError):
    """Device continuity mismatch on resume; the session is compromised."""

    status_code = 403
    code = 'integrity_violation'


class FraudSuspicion(ContestError):
    """Answer arrived faster than the minimum. Advisory: the attempt keeps running."""

    status_code = 422
    code = 'fraud_suspicion'

    def __init__(self, elapsed, minimum):
        super().__init__(f'Answer submitted too quickly ({elapsed:.3f}s < {minimum:.3f}s)')
        self.elapsed = elapsed
        self.minimum = minimum


class TimeoutExceeded(ContestError):
    status_code = 410
    code = 'timeout_exceeded'

    def __init__(self, elapsed, timeout):
        super().__init__(f'Question timeout exceeded ({elapsed:.3f}s > {timeout:.3f}s)')
        self.elapsed = elapsed
        self.timeout = timeout


class NotFound(ContestError):
    status_code = 404
    code = 'not_found'


class InvalidSelection(ContestError):
    code = 'invalid_selection'


class ClaimError(ContestError):
    status_code = 403
    code = 'claim_error'

    def __init__(self, reason, message=None):
        super().__init__(message or reason.replace('_', ' '))
        self.reason = reason

    def to_dict(self):
        return {'error': str(self), 'code': self.code, 'reason': self.reason}
