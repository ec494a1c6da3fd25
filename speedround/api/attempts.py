from dataclasses import asdict

from flask import Blueprint, jsonify, request, current_app
from speedround import db, socketio
from speedround.models import Attempt
from speedround.services.contest.errors import ContestError, NotFound
from speedround.services.contest.fingerprint import continuity_hash, device_fingerprint
from speedround.services.contest.history import screen_attempt
from speedround.services.contest.session_store import DatabaseSessionStore, MonotonicClock
from speedround.services.contest.settings import FraudThresholds, TimingSettings
from speedround.services.contest.timing import TimingSession


attempts = Blueprint('attempts', __name__)

# Process-wide monotonic clock; tests swap in a manual one
clock = MonotonicClock()


@attempts.errorhandler(ContestError)
def handle_contest_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


def _timing() -> TimingSession:
    return TimingSession(DatabaseSessionStore(), clock, TimingSettings.from_config(current_app.config))


def _continuity() -> str:
    return continuity_hash(request.headers, request.remote_addr)


def _emit_update(attempt_id: int, state: str, **extra) -> None:
    payload = {'attempt_id': attempt_id, 'state': state}
    payload.update(extra)
    socketio.emit('attempt_update', payload, to=f"attempt:{attempt_id}", namespace='/ws')


@attempts.route('/<int:attempt_id>/start', methods=['POST'])
def start_attempt(attempt_id):
    data = request.get_json(silent=True) or {}
    try:
        first_question = int(data.get('first_question', 1))
    except (TypeError, ValueError):
        return jsonify({'error': 'first_question must be an integer'}), 400
    device = data.get('device')
    if device is not None and not isinstance(device, dict):
        return jsonify({'error': 'device must be an object of client attributes'}), 400
    fingerprint = device_fingerprint(device) if device else None
    state = _timing().start(attempt_id, first_question, _continuity(), fingerprint)
    _emit_update(attempt_id, state.state, current_question=state.current_question)
    return jsonify({
        'attempt_id': attempt_id,
        'state': state.state,
        'current_question': state.current_question,
    }), 201


@attempts.route('/<int:attempt_id>/answer', methods=['POST'])
def answer_question(attempt_id):
    data = request.get_json(silent=True) or {}
    question_index = data.get('question_index')
    if question_index is None:
        return jsonify({'error': 'question_index is required'}), 400
    try:
        question_index = int(question_index)
    except (TypeError, ValueError):
        return jsonify({'error': 'question_index must be an integer'}), 400

    timing = _timing()
    try:
        result = timing.complete_question(attempt_id, question_index, data.get('answer'))
    except ContestError as exc:
        attempt = db.session.get(Attempt, attempt_id)
        if attempt is not None:
            _emit_update(attempt_id, attempt.state, error=exc.code)
        raise
    state = 'completed' if result.is_complete else 'running'
    _emit_update(attempt_id, state, current_question=result.next_question)
    return jsonify(asdict(result))


@attempts.route('/<int:attempt_id>/pause', methods=['POST'])
def pause_attempt(attempt_id):
    state = _timing().pause(attempt_id)
    _emit_update(attempt_id, state.state)
    return jsonify({'attempt_id': attempt_id, 'state': state.state})


@attempts.route('/<int:attempt_id>/resume', methods=['POST'])
def resume_attempt(attempt_id):
    state = _timing().resume(attempt_id, _continuity())
    _emit_update(attempt_id, state.state, current_question=state.current_question)
    return jsonify({
        'attempt_id': attempt_id,
        'state': state.state,
        'current_question': state.current_question,
    })


@attempts.route('/<int:attempt_id>/status', methods=['GET'])
def attempt_status(attempt_id):
    payload = _timing().status(attempt_id)
    if payload is None:
        attempt = db.session.get(Attempt, attempt_id)
        return jsonify({'attempt_id': attempt_id, 'state': attempt.state, 'active': False})
    payload['active'] = True
    return jsonify(payload)


@attempts.route('/<int:attempt_id>/timeout-check', methods=['POST'])
def timeout_check(attempt_id):
    timed_out = _timing().check_timeout(attempt_id)
    if timed_out:
        _emit_update(attempt_id, 'timed_out')
    return jsonify({'attempt_id': attempt_id, 'timed_out': timed_out})


@attempts.route('/<int:attempt_id>/finalize', methods=['POST'])
def finalize_attempt(attempt_id):
    summary = _timing().finalize(attempt_id)
    attempt = db.session.get(Attempt, attempt_id)
    if attempt is None:
        raise NotFound(f"Attempt not found: {attempt_id}")
    assessment = screen_attempt(attempt, FraudThresholds.from_config(current_app.config))
    _emit_update(attempt_id, attempt.state, total_time=summary.total_time)
    return jsonify({
        'attempt_id': attempt_id,
        'total_time': summary.total_time,
        'pre_payment_time': summary.pre_payment_time,
        'post_payment_time': summary.post_payment_time,
        'question_times': summary.question_times,
        'fraud': assessment.to_dict(),
    })
