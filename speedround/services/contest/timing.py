"""Per-attempt timing state machine.

States::

    not_started -> running <-> paused
    running -> completed | timed_out   (terminal)

Elapsed time per question is ``now - question_start_time - paused_duration``
on a monotonic clock. Pausing (payment detour) accumulates into
``paused_duration`` so the pause itself is never attributed to the question.
Transient timestamps live in an injected key-value session; the attempt row is
updated at every transition and stays authoritative: session state that
disagrees with the row is refused.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from flask import current_app

from speedround import db
from speedround.models import Attempt, AttemptState, Round, utcnow
from .errors import FraudSuspicion, IntegrityViolation, NotFound, StateViolation, TimeoutExceeded
from .fingerprint import continuity_matches
from .security import FAST_ANSWER, INTEGRITY_VIOLATION, record_security_event
from .session_store import Clock, KeyValueSession, MonotonicClock
from .settings import TimingSettings

SESSION_KEY_PREFIX = 'timing:'


@dataclass
class TimingState:
    attempt_id: int
    state: str
    session_start_time: float
    current_question: int
    question_start_time: float
    question_times: List[float] = field(default_factory=list)
    pause_started: Optional[float] = None
    paused_duration: float = 0.0
    continuity_hash: str = ''
    completion_time: Optional[float] = None
    clock_id: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimingState':
        pause_started = data.get('pause_started')
        completion_time = data.get('completion_time')
        return cls(
            attempt_id=int(data['attempt_id']),
            state=str(data['state']),
            session_start_time=float(data['session_start_time']),
            current_question=int(data['current_question']),
            question_start_time=float(data['question_start_time']),
            question_times=[float(t) for t in data.get('question_times', [])],
            pause_started=float(pause_started) if pause_started is not None else None,
            paused_duration=float(data.get('paused_duration', 0.0)),
            continuity_hash=str(data.get('continuity_hash', '')),
            clock_id=str(data.get('clock_id', '')),
            completion_time=float(completion_time) if completion_time is not None else None,
        )


@dataclass(frozen=True)
class QuestionResult:
    question_index: int
    elapsed: float
    total_time: float
    pre_payment_time: float
    post_payment_time: float
    is_complete: bool
    next_question: Optional[int]
    questions_completed: int


@dataclass(frozen=True)
class TimingSummary:
    total_time: float
    pre_payment_time: float
    post_payment_time: float
    question_times: List[float]


def split_times(question_times: List[float], free_question_count: int):
    """Return (total, pre_payment, post_payment) for the recorded times."""
    total = sum(question_times)
    pre = sum(question_times[:max(free_question_count, 0)])
    return total, pre, total - pre


class TimingSession:
    def __init__(self, store: KeyValueSession, clock: Clock = None, settings: TimingSettings = None):
        self.store = store
        self.clock = clock or MonotonicClock()
        self.settings = settings or TimingSettings()

    # ---- loading / persistence helpers ----

    @staticmethod
    def _key(attempt_id: int) -> str:
        return f"{SESSION_KEY_PREFIX}{attempt_id}"

    def _load_attempt(self, attempt_id: int) -> Attempt:
        attempt = db.session.get(Attempt, attempt_id)
        if attempt is None:
            raise NotFound(f"Attempt not found: {attempt_id}")
        return attempt

    def _load_round(self, attempt: Attempt) -> Round:
        rnd = db.session.get(Round, attempt.round_id)
        if rnd is None:
            raise NotFound(f"Round not found: {attempt.round_id}")
        return rnd

    def _load_state(self, attempt: Attempt) -> TimingState:
        """Session state, checked against the attempt row and the clock baseline."""
        raw = self.store.get(self._key(attempt.id))
        if raw is None:
            raise StateViolation(f"No active timing session for attempt {attempt.id}")
        state = TimingState.from_dict(raw)
        # the attempt row is authoritative; stale or replayed session state is refused
        if state.state != attempt.state or state.current_question != attempt.current_question:
            raise StateViolation(
                f"Timing session for attempt {attempt.id} is out of date "
                f"({state.state} q{state.current_question} vs {attempt.state} q{attempt.current_question})"
            )
        if not self._same_clock(state):
            raise StateViolation(f"Timing session for attempt {attempt.id} was started under another clock")
        return state

    def _same_clock(self, state: TimingState) -> bool:
        return state.clock_id == self.clock.clock_id

    def _save_state(self, state: TimingState) -> None:
        self.store.set(self._key(state.attempt_id), state.to_dict())

    def _timeout_for(self, rnd: Round) -> float:
        if rnd.question_timeout:
            return float(rnd.question_timeout)
        return self.settings.default_question_timeout

    def _elapsed(self, state: TimingState, now: float) -> float:
        return now - state.question_start_time - state.paused_duration

    @staticmethod
    def _require(state: TimingState, expected: str, action: str) -> None:
        if state.state != expected:
            raise StateViolation(f"Cannot {action} attempt {state.attempt_id} while {state.state}")

    # ---- operations ----

    def start(self, attempt_id: int, first_question: int = 1, continuity: str = '',
              device_fingerprint: Optional[str] = None) -> TimingState:
        attempt = self._load_attempt(attempt_id)
        if attempt.state != AttemptState.NOT_STARTED or self.store.get(self._key(attempt_id)) is not None:
            raise StateViolation(f"Attempt {attempt_id} has already been started")

        now = self.clock.now()
        state = TimingState(
            attempt_id=attempt_id,
            state=AttemptState.RUNNING,
            session_start_time=now,
            current_question=first_question,
            question_start_time=now,
            continuity_hash=continuity,
            clock_id=self.clock.clock_id,
        )
        self._save_state(state)

        attempt.state = AttemptState.RUNNING
        attempt.current_question = first_question
        attempt.continuity_hash = continuity
        if device_fingerprint:
            attempt.device_fingerprint = device_fingerprint
        attempt.started_at = utcnow()
        db.session.add(attempt)
        db.session.commit()

        current_app.logger.info(f"[timing-start] attempt={attempt_id} question={first_question}")
        return state

    def complete_question(self, attempt_id: int, question_index: int, answer: Any = None) -> QuestionResult:
        attempt = self._load_attempt(attempt_id)
        rnd = self._load_round(attempt)
        state = self._load_state(attempt)
        self._require(state, AttemptState.RUNNING, 'answer for')

        if question_index != state.current_question:
            raise StateViolation(
                f"Question {question_index} is not the current question ({state.current_question}) "
                f"for attempt {attempt_id}"
            )

        now = self.clock.now()
        elapsed = self._elapsed(state, now)

        if elapsed < self.settings.min_answer_time:
            attempt.rejected_fast_answers = (attempt.rejected_fast_answers or 0) + 1
            db.session.add(attempt)
            record_security_event(
                FAST_ANSWER,
                attempt.ip_address,
                attempt.id,
                question=question_index,
                elapsed=round(elapsed, 6),
            )
            db.session.commit()
            current_app.logger.warning(
                f"[timing-fast] attempt={attempt_id} question={question_index} "
                f"elapsed={elapsed:.6f} minimum={self.settings.min_answer_time}"
            )
            raise FraudSuspicion(elapsed, self.settings.min_answer_time)

        timeout = self._timeout_for(rnd)
        if elapsed > timeout:
            self._time_out(attempt, state, question_index)
            raise TimeoutExceeded(elapsed, timeout)

        state.question_times.append(elapsed)
        state.paused_duration = 0.0
        next_question = question_index + 1
        is_complete = next_question > rnd.total_question_count
        state.current_question = next_question
        if is_complete:
            state.state = AttemptState.COMPLETED
            state.completion_time = now
            attempt.state = AttemptState.COMPLETED
            attempt.completed_at = utcnow()
        else:
            state.question_start_time = now
        self._save_state(state)

        attempt.current_question = next_question
        attempt.question_times = state.question_times
        db.session.add(attempt)
        db.session.commit()

        total, pre, post = split_times(state.question_times, rnd.free_question_count)
        current_app.logger.info(
            f"[timing-answer] attempt={attempt_id} question={question_index} "
            f"elapsed={elapsed:.6f} complete={is_complete}"
        )
        return QuestionResult(
            question_index=question_index,
            elapsed=elapsed,
            total_time=total,
            pre_payment_time=pre,
            post_payment_time=post,
            is_complete=is_complete,
            next_question=None if is_complete else next_question,
            questions_completed=len(state.question_times),
        )

    def pause(self, attempt_id: int) -> TimingState:
        attempt = self._load_attempt(attempt_id)
        state = self._load_state(attempt)
        self._require(state, AttemptState.RUNNING, 'pause')

        state.state = AttemptState.PAUSED
        state.pause_started = self.clock.now()
        self._save_state(state)

        attempt.state = AttemptState.PAUSED
        db.session.add(attempt)
        db.session.commit()

        current_app.logger.info(f"[timing-pause] attempt={attempt_id} question={state.current_question}")
        return state

    def resume(self, attempt_id: int, continuity: str = '') -> TimingState:
        attempt = self._load_attempt(attempt_id)
        state = self._load_state(attempt)
        self._require(state, AttemptState.PAUSED, 'resume')

        if not continuity_matches(state.continuity_hash, continuity):
            record_security_event(INTEGRITY_VIOLATION, attempt.ip_address, attempt.id, action='resume')
            db.session.commit()
            raise IntegrityViolation(
                f"Device continuity check failed for attempt {attempt_id}; "
                "the game must be completed on the same device"
            )

        now = self.clock.now()
        paused_for = now - state.pause_started if state.pause_started is not None else 0.0
        # question_start_time stays anchored: subtracting the accumulated pause
        # keeps the pre-pause share of this question and drops the pause itself
        state.paused_duration += paused_for
        state.pause_started = None
        state.state = AttemptState.RUNNING
        self._save_state(state)

        attempt.state = AttemptState.RUNNING
        db.session.add(attempt)
        db.session.commit()

        current_app.logger.info(f"[timing-resume] attempt={attempt_id} paused_for={paused_for:.6f}")
        return state

    def check_timeout(self, attempt_id: int) -> bool:
        """Time out a running attempt whose current question is overdue.

        Safe to call from a sweep that is not the participant's request; it
        must run against the same clock baseline as the one that started the
        attempt.
        """
        attempt = self._load_attempt(attempt_id)
        if attempt.state != AttemptState.RUNNING:
            return False
        raw = self.store.get(self._key(attempt_id))
        if raw is None:
            return False
        state = TimingState.from_dict(raw)
        if state.state != AttemptState.RUNNING:
            return False
        if not self._same_clock(state):
            current_app.logger.warning(
                f"[timing-clock] attempt={attempt_id} started={state.clock_id} here={self.clock.clock_id}"
            )
            return False

        rnd = self._load_round(attempt)
        if self._elapsed(state, self.clock.now()) > self._timeout_for(rnd):
            self._time_out(attempt, state, state.current_question)
            return True
        return False

    def status(self, attempt_id: int) -> Optional[Dict[str, Any]]:
        attempt = self._load_attempt(attempt_id)
        raw = self.store.get(self._key(attempt_id))
        if raw is None:
            return None
        state = TimingState.from_dict(raw)
        now = self.clock.now()

        payload = {
            'attempt_id': attempt_id,
            'state': state.state,
            'current_question': state.current_question,
            'questions_completed': len(state.question_times),
            'session_duration': now - state.session_start_time,
            'question_times': list(state.question_times),
        }
        if state.state == AttemptState.RUNNING and self._same_clock(state):
            timeout = self._timeout_for(self._load_round(attempt))
            elapsed = self._elapsed(state, now)
            payload['current_question_elapsed'] = elapsed
            payload['time_remaining'] = max(0.0, timeout - elapsed)
            payload['is_timeout_warning'] = elapsed > timeout * self.settings.timeout_warning_ratio
        return payload

    def finalize(self, attempt_id: int) -> TimingSummary:
        attempt = self._load_attempt(attempt_id)
        rnd = self._load_round(attempt)
        state = self._load_state(attempt)
        self._require(state, AttemptState.COMPLETED, 'finalize')

        total, pre, post = split_times(state.question_times, rnd.free_question_count)
        attempt.total_time = total
        attempt.pre_payment_time = pre
        attempt.post_payment_time = post
        attempt.question_times = state.question_times
        attempt.state = AttemptState.COMPLETED
        if attempt.completed_at is None:
            attempt.completed_at = utcnow()
        db.session.add(attempt)
        self.store.remove(self._key(attempt_id))
        db.session.commit()

        current_app.logger.info(
            f"[timing-finalize] attempt={attempt_id} total={total:.6f} questions={len(state.question_times)}"
        )
        return TimingSummary(
            total_time=total,
            pre_payment_time=pre,
            post_payment_time=post,
            question_times=list(state.question_times),
        )

    def _time_out(self, attempt: Attempt, state: TimingState, question_index: int) -> None:
        # terminal: the session key goes away with the transition
        self.store.remove(self._key(attempt.id))

        attempt.state = AttemptState.TIMED_OUT
        attempt.completed_at = utcnow()
        attempt.question_times = state.question_times
        db.session.add(attempt)
        db.session.commit()

        current_app.logger.info(f"[timing-timeout] attempt={attempt.id} question={question_index}")
