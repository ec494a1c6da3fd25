from flask import Blueprint, jsonify, request
from speedround.services.contest.claims import redeem_claim_token, validate_claim_token
from speedround.services.contest.errors import ContestError


claims = Blueprint('claims', __name__)


@claims.errorhandler(ContestError)
def handle_contest_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@claims.route('/<string:token>', methods=['GET'])
def check_claim(token):
    record = validate_claim_token(token)
    attempt = record.attempt
    return jsonify({
        'valid': True,
        'claim': record.to_dict(),
        'winner': {
            'first_name': attempt.first_name,
            'last_name': attempt.last_name,
            'total_time': attempt.total_time,
            'round_id': attempt.round_id,
        },
    })


@claims.route('/<string:token>/redeem', methods=['POST'])
def redeem_claim(token):
    record = redeem_claim_token(token, request.remote_addr or '')
    return jsonify({'success': True, 'claim': record.to_dict()})
