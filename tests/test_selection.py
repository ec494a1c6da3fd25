import pytest

from speedround import db
from speedround.models import (
    Attempt,
    AttemptState,
    ClaimToken,
    NotificationRecord,
    PaymentStatus,
    Round,
    SecurityEvent,
)
from speedround.services.contest.errors import InvalidSelection, NotFound
from speedround.services.contest.notifications import DatabaseNotificationQueue
from speedround.services.contest.selection import (
    WinnerSelector,
    population_variance,
    selection_factors,
    validate_winner_selection,
    winner_stats,
)
from speedround.services.contest.settings import SelectionThresholds


THRESHOLDS = SelectionThresholds(public_base_url='https://speedround.test')

# Nine answers of ~2.78s that barely vary (variance 0.01)
FLAT_TIMES = [2.7, 2.9, 2.7, 2.9, 2.7, 2.9, 2.7, 2.9, 2.7]


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job)


class BrokenQueue:
    def enqueue(self, job):
        raise RuntimeError('queue unavailable')


class LastChoice:
    def choice(self, seq):
        return seq[-1]


@pytest.fixture()
def queue():
    return RecordingQueue()


@pytest.fixture()
def selector(flask_app, queue):
    return WinnerSelector(queue=queue, thresholds=THRESHOLDS)


def test_selection_factors():
    assert selection_factors(45.0, [3.0, 6.0, 4.5], 1, None, THRESHOLDS) == []
    assert selection_factors(25.0, FLAT_TIMES, 1, None, THRESHOLDS) == [
        'total_time_too_fast',
        'timing_variance_too_low',
    ]
    assert selection_factors(45.0, [5.0, 6.0], 6, 4, THRESHOLDS) == [
        'same_ip_paid_participations',
        'same_device_paid_participations',
    ]


def test_population_variance():
    assert population_variance([]) == 0.0
    assert population_variance([4.0]) == 0.0
    assert population_variance([1.0, 3.0]) == pytest.approx(1.0)


def test_fastest_time_ties_go_to_lowest_id(selector, make_round, finished_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0000005, id=11)
    finished_attempt(rnd, 45.0, id=10)
    finished_attempt(rnd, 45.01, id=12)

    result = selector.select(rnd.id, 'fastest_time')
    assert result.created
    assert result.winner_id == 10
    assert result.eligible_ids == (10, 11, 12)

    row = db.session.get(Round, rnd.id)
    assert row.winner_attempt_id == 10
    assert row.status == 'completed'
    assert row.winner_selection_method == 'fastest_time'
    assert Attempt.query.filter_by(round_id=rnd.id, is_winner=True).count() == 1


def test_lower_id_wins_tie_even_when_slightly_slower(selector, make_round, finished_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0000005, id=10)
    finished_attempt(rnd, 45.0, id=11)
    assert selector.select(rnd.id).winner_id == 10


def test_rescreen_excludes_fast_flat_attempt(selector, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)
    b = finished_attempt(rnd, 25.0, question_times=FLAT_TIMES)

    result = selector.select(rnd.id)
    assert result.winner_id == a.id
    assert result.excluded_ids == (b.id,)

    row = db.session.get(Attempt, b.id)
    assert row.is_fraudulent
    assert row.fraud_reason
    assert SecurityEvent.query.filter_by(attempt_id=b.id, event_type='fraud_detection').count() == 1


def test_shared_ip_counts_as_a_factor(selector, make_round, finished_attempt, make_attempt):
    rnd = make_round()
    other = make_round(slug='other')
    honest = finished_attempt(rnd, 50.0)
    farm = finished_attempt(rnd, 29.0, ip_address='198.51.100.50')
    for _ in range(5):
        make_attempt(other, ip_address='198.51.100.50', payment_status=PaymentStatus.PAID)

    result = selector.select(rnd.id)
    assert result.winner_id == honest.id
    assert farm.id in result.excluded_ids


def test_exclusions_survive_when_no_winner_remains(selector, make_round, finished_attempt):
    rnd = make_round()
    b = finished_attempt(rnd, 25.0, question_times=FLAT_TIMES)

    result = selector.select(rnd.id)
    assert result.winner is None
    assert not result.created
    assert db.session.get(Attempt, b.id).is_fraudulent
    assert db.session.get(Round, rnd.id).winner_attempt_id is None


def test_no_completed_attempts_means_no_winner(selector, make_round, make_attempt):
    rnd = make_round()
    make_attempt(rnd, payment_status=PaymentStatus.PAID, state=AttemptState.RUNNING)
    make_attempt(rnd, state=AttemptState.COMPLETED, total_time=40.0)

    result = selector.select(rnd.id)
    assert result.winner is None
    assert db.session.get(Round, rnd.id).status == 'open'


def test_unknown_round(selector):
    with pytest.raises(NotFound):
        selector.select(999)


def test_unknown_method(selector, make_round):
    rnd = make_round()
    with pytest.raises(InvalidSelection):
        selector.select(rnd.id, 'loudest_cheer')


def test_second_select_returns_existing_winner_without_writes(selector, queue, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)
    finished_attempt(rnd, 50.0)

    first = selector.select(rnd.id)
    jobs = len(queue.jobs)
    tokens = ClaimToken.query.count()
    events = SecurityEvent.query.count()

    second = selector.select(rnd.id, 'random')
    assert not second.created
    assert second.winner_id == a.id == first.winner_id
    assert len(queue.jobs) == jobs
    assert ClaimToken.query.count() == tokens
    assert SecurityEvent.query.count() == events


def test_compare_and_swap_keeps_the_first_winner(selector, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)
    b = finished_attempt(rnd, 50.0)

    winner_id, created, token = selector._commit_winner(rnd.id, a, 'fastest_time')
    assert (winner_id, created) == (a.id, True)
    assert token

    b = db.session.get(Attempt, b.id)
    winner_id, created, token = selector._commit_winner(rnd.id, b, 'random')
    assert (winner_id, created, token) == (a.id, False, None)

    assert db.session.get(Round, rnd.id).winner_attempt_id == a.id
    assert [w.id for w in Attempt.query.filter_by(round_id=rnd.id, is_winner=True)] == [a.id]
    assert ClaimToken.query.count() == 1


def test_random_method_uses_the_injected_rng(flask_app, queue, make_round, finished_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0)
    last = finished_attempt(rnd, 60.0)

    selector = WinnerSelector(queue=queue, thresholds=THRESHOLDS, rng=LastChoice())
    result = selector.select(rnd.id, 'random')
    assert result.winner_id == last.id
    assert result.method == 'random'


def test_manual_selection(selector, make_round, finished_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0)
    pick = finished_attempt(rnd, 58.0)

    result = selector.select(rnd.id, 'manual', attempt_id=pick.id)
    assert result.winner_id == pick.id
    assert db.session.get(Round, rnd.id).winner_selection_method == 'manual'


def test_manual_selection_requires_an_eligible_attempt(selector, make_round, finished_attempt, make_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0)
    unpaid = make_attempt(rnd, state=AttemptState.COMPLETED, total_time=40.0)

    with pytest.raises(InvalidSelection):
        selector.select(rnd.id, 'manual')
    with pytest.raises(InvalidSelection):
        selector.select(rnd.id, 'manual', attempt_id=unpaid.id)
    assert db.session.get(Round, rnd.id).winner_attempt_id is None


def test_notifications_for_winner_and_losers(selector, queue, make_round, finished_attempt, make_attempt):
    rnd = make_round(slug='friday')
    winner = finished_attempt(rnd, 45.0, phone='+15550100', whatsapp_consent=True)
    loser = finished_attempt(rnd, 52.0)
    quitter = make_attempt(rnd, payment_status=PaymentStatus.PAID, state=AttemptState.TIMED_OUT)
    make_attempt(rnd, state=AttemptState.RUNNING)
    make_attempt(rnd, payment_status=PaymentStatus.PAID, state=AttemptState.RUNNING, is_fraudulent=True)

    result = selector.select(rnd.id)
    assert result.notifications_sent == len(queue.jobs) == 4

    winner_jobs = [j for j in queue.jobs if j.template == 'winner_notification']
    assert {j.channel for j in winner_jobs} == {'email', 'whatsapp'}
    assert all(j.priority == 1 and j.attempt_id == winner.id for j in winner_jobs)
    email = next(j for j in winner_jobs if j.channel == 'email')
    assert email.variables['claim_url'] == f'https://speedround.test/claim/{result.claim_token}'
    assert email.variables['completion_time'] == 45.0

    loser_jobs = [j for j in queue.jobs if j.template == 'loser_notification']
    assert {j.attempt_id for j in loser_jobs} == {loser.id, quitter.id}
    assert all(j.channel == 'email' and j.priority == 2 for j in loser_jobs)
    assert loser_jobs[0].variables['replay_url'].startswith('https://speedround.test/play/friday?src=retry')


def test_database_queue_persists_jobs(flask_app, make_round, finished_attempt):
    rnd = make_round()
    finished_attempt(rnd, 45.0)
    finished_attempt(rnd, 47.0)

    WinnerSelector(queue=DatabaseNotificationQueue(), thresholds=THRESHOLDS).select(rnd.id)
    records = NotificationRecord.query.order_by(NotificationRecord.priority).all()
    assert [r.template for r in records] == ['winner_notification', 'loser_notification']
    assert 'claim_token' in records[0].variables


def test_queue_failures_do_not_undo_the_winner(flask_app, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)
    finished_attempt(rnd, 47.0)

    result = WinnerSelector(queue=BrokenQueue(), thresholds=THRESHOLDS).select(rnd.id)
    assert result.created
    assert result.notifications_sent == 0
    assert db.session.get(Round, rnd.id).winner_attempt_id == a.id


def test_winner_stats_and_validation(selector, make_round, finished_attempt):
    rnd = make_round(name='Friday Final')
    assert winner_stats(rnd.id) is None
    assert validate_winner_selection(rnd.id)['valid'] is False

    a = finished_attempt(rnd, 45.0)
    finished_attempt(rnd, 50.0)
    selector.select(rnd.id)

    stats = winner_stats(rnd.id)
    assert stats['id'] == a.id
    assert stats['completion_rank'] == 1
    assert stats['round_name'] == 'Friday Final'

    report = validate_winner_selection(rnd.id)
    assert report['valid'] is True
    assert report['errors'] == []
    assert report['winner_id'] == a.id


def test_validation_flags_a_fraudulent_winner(selector, make_round, finished_attempt):
    rnd = make_round()
    a = finished_attempt(rnd, 45.0)
    selector.select(rnd.id)

    row = db.session.get(Attempt, a.id)
    row.is_fraudulent = True
    db.session.commit()

    report = validate_winner_selection(rnd.id)
    assert not report['valid']
    assert 'Winner is marked as fraudulent' in report['errors']
