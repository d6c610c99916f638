"""initial schema - webhook configs and delivery logs

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create webhook_configs table
    op.create_table(
        'webhook_configs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('secret', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('filter_by_event', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('extra_headers', sa.JSON(), nullable=False),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('retry_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('trigger_token', sa.String(255), nullable=True),
        sa.Column('total_calls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_calls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_calls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_webhook_configs'),
    )
    op.create_index('ix_webhook_configs_user_id', 'webhook_configs', ['user_id'])

    # Create webhook_logs table
    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_config_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('request_method', sa.String(10), nullable=False),
        sa.Column('request_payload', sa.JSON(), nullable=True),
        sa.Column('request_headers', sa.JSON(), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('response_body', sa.Text(), nullable=False, server_default=''),
        sa.Column('response_time_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('triggered_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name='pk_webhook_logs'),
        sa.ForeignKeyConstraint(
            ['webhook_config_id'], ['webhook_configs.id'],
            name='fk_webhook_logs_webhook_config_id_webhook_configs',
            ondelete='CASCADE',
        ),
    )
    op.create_index('ix_webhook_logs_webhook_config_id', 'webhook_logs', ['webhook_config_id'])
    op.create_index('ix_webhook_logs_user_id', 'webhook_logs', ['user_id'])
    op.create_index('ix_webhook_logs_triggered_at', 'webhook_logs', ['triggered_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_logs_triggered_at', table_name='webhook_logs')
    op.drop_index('ix_webhook_logs_user_id', table_name='webhook_logs')
    op.drop_index('ix_webhook_logs_webhook_config_id', table_name='webhook_logs')
    op.drop_table('webhook_logs')
    op.drop_index('ix_webhook_configs_user_id', table_name='webhook_configs')
    op.drop_table('webhook_configs')
