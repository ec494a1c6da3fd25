from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required
from speedround import socketio
from speedround.services.contest.errors import ContestError
from speedround.services.contest.selection import WinnerSelector, validate_winner_selection, winner_stats
from speedround.services.contest.settings import SelectionThresholds


rounds = Blueprint('rounds', __name__)


@rounds.errorhandler(ContestError)
def handle_contest_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


def build_selector(queue=None, rng=None) -> WinnerSelector:
    return WinnerSelector(queue=queue, thresholds=SelectionThresholds.from_config(current_app.config), rng=rng)


@rounds.route('/<int:round_id>/select', methods=['POST'])
@login_required
def select_winner(round_id):
    data = request.get_json(silent=True) or {}
    method = data.get('method') or 'fastest_time'
    attempt_id = data.get('attempt_id')
    if attempt_id is not None:
        try:
            attempt_id = int(attempt_id)
        except (TypeError, ValueError):
            return jsonify({'error': 'attempt_id must be an integer'}), 400

    result = build_selector().select(round_id, method, attempt_id)
    if result.created:
        socketio.emit('round_completed', {
            'round_id': round_id,
            'winner_attempt_id': result.winner_id,
            'winner_time': result.winner.total_time,
        }, to=f"round:{round_id}", namespace='/ws')
    return jsonify(result.to_dict()), 201 if result.created else 200


@rounds.route('/<int:round_id>/winner', methods=['GET'])
def get_winner(round_id):
    stats = winner_stats(round_id)
    if stats is None:
        return jsonify({'error': 'No winner selected for round', 'round_id': round_id}), 404
    return jsonify({'winner': stats, 'validation': validate_winner_selection(round_id)})
