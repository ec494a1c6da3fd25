import os
import sys
import pytest
from flask import g

# Ensure the project root (containing the `speedround` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from speedround import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    PUBLIC_BASE_URL = 'https://speedround.test'


class ManualClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start=1000.0, clock_id='manual'):
        self.value = start
        self.clock_id = clock_id

    def now(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)

    @application.before_request
    def forget_cached_login():
        # requests reuse the fixture's app context, so g outlives each request
        g.pop('_login_user', None)

    with application.app_context():
        # Ensure models are imported so tables are created
        import speedround.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def admin_client(flask_app):
    from speedround.models import AdminUser
    admin = AdminUser(username='admin')
    admin.set_password('password')
    db.session.add(admin)
    db.session.commit()
    test_client = flask_app.test_client()
    res = test_client.post('/login', json={'username': 'admin', 'password': 'password'})
    assert res.status_code == 200
    return test_client


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def make_round(flask_app):
    from speedround.models import Round

    def _make(**kwargs):
        kwargs.setdefault('name', 'Test Round')
        kwargs.setdefault('slug', 'test-round')
        rnd = Round(**kwargs)
        db.session.add(rnd)
        db.session.commit()
        return rnd

    return _make


@pytest.fixture()
def make_attempt(flask_app):
    from speedround.models import Attempt

    counter = {'n': 0}

    def _make(rnd, **kwargs):
        counter['n'] += 1
        n = counter['n']
        kwargs.setdefault('user_email', f'player{n}@example.com')
        kwargs.setdefault('first_name', f'Player{n}')
        kwargs.setdefault('last_name', 'Test')
        kwargs.setdefault('ip_address', f'203.0.113.{n}')
        question_times = kwargs.pop('question_times', None)
        attempt = Attempt(round_id=rnd.id, **kwargs)
        if question_times is not None:
            attempt.question_times = question_times
        db.session.add(attempt)
        db.session.commit()
        return attempt

    return _make


# Nine answers averaging 5s with plenty of spread
NATURAL_TIMES = [3.0, 6.5, 4.2, 8.1, 5.0, 7.3, 4.4, 3.9, 2.6]


@pytest.fixture()
def finished_attempt(make_attempt):
    """Paid, completed attempt with a recorded total_time."""
    from speedround.models import AttemptState, PaymentStatus

    def _make(rnd, total_time, **kwargs):
        kwargs.setdefault('question_times', NATURAL_TIMES)
        kwargs.setdefault('payment_status', PaymentStatus.PAID)
        kwargs.setdefault('state', AttemptState.COMPLETED)
        return make_attempt(rnd, total_time=total_time, **kwargs)

    return _make
