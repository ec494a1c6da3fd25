"""create round, attempt, claim token, notification and security event tables

Revision ID: b7c41e2a9f10
Revises:
Create Date: 2026-10-17 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7c41e2a9f10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'admin_user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('password_hash', sa.String(length=256), nullable=False),
    )
    op.create_index('ix_admin_user_username', 'admin_user', ['username'], unique=True)

    # winner_attempt_id FK is added once attempt exists (round <-> attempt cycle)
    op.create_table(
        'round',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='open'),
        sa.Column('question_timeout', sa.Float(), nullable=False, server_default='10'),
        sa.Column('free_question_count', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('total_question_count', sa.Integer(), nullable=False, server_default='9'),
        sa.Column('winner_attempt_id', sa.Integer(), nullable=True),
        sa.Column('winner_selection_method', sa.String(length=32), nullable=True),
        sa.Column('winner_selected_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_round_slug', 'round', ['slug'])

    op.create_table(
        'attempt',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('round.id'), nullable=False),
        sa.Column('user_email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('whatsapp_consent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ip_address', sa.String(length=45), nullable=False, server_default=''),
        sa.Column('device_fingerprint', sa.String(length=64), nullable=True),
        sa.Column('continuity_hash', sa.String(length=64), nullable=True),
        sa.Column('state', sa.String(length=32), nullable=False, server_default='not_started'),
        sa.Column('current_question', sa.Integer(), nullable=True),
        sa.Column('question_times_json', sa.Text(), nullable=True),
        sa.Column('rejected_fast_answers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('fraud_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('fraud_flags', sa.Text(), nullable=True),
        sa.Column('is_fraudulent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('fraud_reason', sa.String(length=255), nullable=True),
        sa.Column('is_winner', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('total_time', sa.Float(), nullable=True),
        sa.Column('pre_payment_time', sa.Float(), nullable=True),
        sa.Column('post_payment_time', sa.Float(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_attempt_round_id', 'attempt', ['round_id'])
    op.create_index('ix_attempt_user_email', 'attempt', ['user_email'])
    op.create_index('ix_attempt_ip_address', 'attempt', ['ip_address'])
    op.create_index('ix_attempt_device_fingerprint', 'attempt', ['device_fingerprint'])
    op.create_index('ix_attempt_created_at', 'attempt', ['created_at'])

    with op.batch_alter_table('round') as batch_op:
        batch_op.create_foreign_key('fk_round_winner_attempt_id', 'attempt', ['winner_attempt_id'], ['id'])

    op.create_table(
        'claim_token',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('attempt_id', sa.Integer(), sa.ForeignKey('attempt.id'), nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False, unique=True),
        sa.Column('token_type', sa.String(length=32), nullable=False, server_default='winner_claim'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('used_by_ip', sa.String(length=45), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_claim_token_attempt_id', 'claim_token', ['attempt_id'])

    op.create_table(
        'notification_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('template', sa.String(length=100), nullable=False),
        sa.Column('variables_json', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('attempt_id', sa.Integer(), sa.ForeignKey('attempt.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'security_event',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ip_address', sa.String(length=45), nullable=False, server_default=''),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('attempt_id', sa.Integer(), sa.ForeignKey('attempt.id'), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_security_event_ip_address', 'security_event', ['ip_address'])
    op.create_index('ix_security_event_created_at', 'security_event', ['created_at'])


def downgrade():
    op.drop_index('ix_security_event_created_at', table_name='security_event')
    op.drop_index('ix_security_event_ip_address', table_name='security_event')
    op.drop_table('security_event')
    op.drop_table('notification_record')
    op.drop_index('ix_claim_token_attempt_id', table_name='claim_token')
    op.drop_table('claim_token')

    with op.batch_alter_table('round') as batch_op:
        batch_op.drop_constraint('fk_round_winner_attempt_id', type_='foreignkey')

    for name in ('created_at', 'device_fingerprint', 'ip_address', 'user_email', 'round_id'):
        op.drop_index(f'ix_attempt_{name}', table_name='attempt')
    op.drop_table('attempt')
    op.drop_index('ix_round_slug', table_name='round')
    op.drop_table('round')
    op.drop_index('ix_admin_user_username', table_name='admin_user')
    op.drop_table('admin_user')
