from speedround import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json


def utcnow():
    """Naive UTC timestamp, matching how the columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AttemptState:
    NOT_STARTED = 'not_started'
    RUNNING = 'running'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    TIMED_OUT = 'timed_out'


class PaymentStatus:
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class AdminUser(UserMixin, db.Model):
    __tablename__ = 'admin_user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Round(db.Model):
    __tablename__ = 'round'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default='open')  # open, completed
    question_timeout = db.Column(db.Float, nullable=False, default=10.0)
    free_question_count = db.Column(db.Integer, nullable=False, default=3)
    total_question_count = db.Column(db.Integer, nullable=False, default=9)
    winner_attempt_id = db.Column(
        db.Integer,
        db.ForeignKey('attempt.id', name='fk_round_winner_attempt_id', use_alter=True),
        nullable=True,
    )
    winner_selection_method = db.Column(db.String(32), nullable=True)
    winner_selected_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    attempts = db.relationship('Attempt', foreign_keys='Attempt.round_id', back_populates='round', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'status': self.status,
            'question_timeout': self.question_timeout,
            'free_question_count': self.free_question_count,
            'total_question_count': self.total_question_count,
            'winner_attempt_id': self.winner_attempt_id,
            'winner_selection_method': self.winner_selection_method,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class Attempt(db.Model):
    __tablename__ = 'attempt'
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=False, index=True)
    user_email = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False, default='')
    last_name = db.Column(db.String(100), nullable=False, default='')
    phone = db.Column(db.String(20), nullable=True)
    whatsapp_consent = db.Column(db.Boolean, nullable=False, default=False)
    ip_address = db.Column(db.String(45), nullable=False, default='', index=True)
    device_fingerprint = db.Column(db.String(64), nullable=True, index=True)
    continuity_hash = db.Column(db.String(64), nullable=True)

    state = db.Column(db.String(32), nullable=False, default=AttemptState.NOT_STARTED)
    current_question = db.Column(db.Integer, nullable=True)
    question_times_json = db.Column(db.Text, nullable=True)
    rejected_fast_answers = db.Column(db.Integer, nullable=False, default=0)

    payment_status = db.Column(db.String(32), nullable=False, default=PaymentStatus.PENDING)

    fraud_score = db.Column(db.Float, nullable=False, default=0.0)
    fraud_flags = db.Column(db.Text, nullable=True)  # JSON-encoded list of flags
    is_fraudulent = db.Column(db.Boolean, nullable=False, default=False)
    fraud_reason = db.Column(db.String(255), nullable=True)
    is_winner = db.Column(db.Boolean, nullable=False, default=False)

    total_time = db.Column(db.Float, nullable=True)
    pre_payment_time = db.Column(db.Float, nullable=True)
    post_payment_time = db.Column(db.Float, nullable=True)

    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    round = db.relationship('Round', foreign_keys=[round_id], back_populates='attempts')

    @property
    def question_times(self):
        if not self.question_times_json:
            return []
        return [float(t) for t in json.loads(self.question_times_json)]

    @question_times.setter
    def question_times(self, times):
        self.question_times_json = json.dumps([float(t) for t in times])

    @property
    def flags(self):
        return json.loads(self.fraud_flags) if self.fraud_flags else []

    def to_dict(self):
        return {
            'id': self.id,
            'round_id': self.round_id,
            'state': self.state,
            'current_question': self.current_question,
            'question_times': self.question_times,
            'payment_status': self.payment_status,
            'is_fraudulent': self.is_fraudulent,
            'is_winner': self.is_winner,
            'fraud_score': self.fraud_score,
            'fraud_flags': self.flags,
            'total_time': self.total_time,
            'pre_payment_time': self.pre_payment_time,
            'post_payment_time': self.post_payment_time,
        }


class ClaimToken(db.Model):
    __tablename__ = 'claim_token'
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=False, index=True)
    token = db.Column(db.String(64), unique=True, nullable=False)
    token_type = db.Column(db.String(32), nullable=False, default='winner_claim')
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    used_by_ip = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    attempt = db.relationship('Attempt')

    def to_dict(self):
        return {
            'attempt_id': self.attempt_id,
            'token_type': self.token_type,
            'expires_at': self.expires_at.isoformat(),
            'used': self.used_at is not None,
        }


class NotificationRecord(db.Model):
    __tablename__ = 'notification_record'
    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(255), nullable=False)
    channel = db.Column(db.String(16), nullable=False)  # email, whatsapp
    template = db.Column(db.String(100), nullable=False)
    variables_json = db.Column(db.Text, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=2)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def variables(self):
        return json.loads(self.variables_json) if self.variables_json else {}


class SecurityEvent(db.Model):
    __tablename__ = 'security_event'
    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(45), nullable=False, default='', index=True)
    event_type = db.Column(db.String(64), nullable=False)
    attempt_id = db.Column(db.Integer, db.ForeignKey('attempt.id'), nullable=True)
    details_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)


class TimingSessionRecord(db.Model):
    """Server-side timing state, one row per running or paused attempt."""
    __tablename__ = 'timing_session'
    key = db.Column(db.String(64), primary_key=True)
    data_json = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def data(self):
        return json.loads(self.data_json)
