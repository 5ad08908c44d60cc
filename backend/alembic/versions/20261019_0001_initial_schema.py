"""Initial schema for Market Intel

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates every table defined in database.py. Databases created by
Base.metadata.create_all() can be stamped with `alembic stamp 0001`.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', sa.Integer(), primary_key=True)


def _user_fk(nullable=False):
    return sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('full_name', sa.String()),
        sa.Column('role', sa.String()),
        sa.Column('is_active', sa.Boolean()),
        sa.Column('suspended_at', sa.DateTime()),
        sa.Column('suspended_reason', sa.String()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('last_login', sa.DateTime()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'refresh_tokens',
        _id(),
        sa.Column('token', sa.String(), nullable=False),
        _user_fk(),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('revoked', sa.Boolean()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_refresh_tokens_token', 'refresh_tokens', ['token'], unique=True)
    op.create_index('ix_refresh_tokens_user_id', 'refresh_tokens', ['user_id'])

    op.create_table(
        'api_keys',
        _id(),
        _user_fk(),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('encrypted_key', sa.Text(), nullable=False),
        sa.Column('masked_key', sa.String(), nullable=False),
        sa.Column('status', sa.String()),
        sa.Column('is_active', sa.Boolean()),
        sa.Column('last_validated', sa.DateTime()),
        sa.Column('error_message', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('user_id', 'provider', name='uq_api_keys_user_provider'),
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])

    op.create_table(
        'competitor_analyses',
        _id(),
        _user_fk(),
        sa.Column('session_id', sa.String()),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('competitors', sa.Text(), nullable=False),
        sa.Column('status', sa.String()),
        sa.Column('progress_percentage', sa.Integer()),
        sa.Column('current_step', sa.String()),
        sa.Column('total_competitors', sa.Integer()),
        sa.Column('analysis_type', sa.String()),
        sa.Column('options', sa.Text()),
        sa.Column('providers_used', sa.Text()),
        sa.Column('analysis_data', sa.Text()),
        sa.Column('business_insights', sa.Text()),
        sa.Column('threat_level', sa.String()),
        sa.Column('threat_score', sa.Integer()),
        sa.Column('error_message', sa.Text()),
        sa.Column('actual_cost', sa.Float()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
    )
    op.create_index('ix_competitor_analyses_status', 'competitor_analyses', ['status'])
    op.create_index('ix_competitor_analyses_session_id', 'competitor_analyses', ['session_id'])
    op.create_index(
        'ix_analysis_user_created', 'competitor_analyses', ['user_id', sa.text('created_at DESC')]
    )

    op.create_table(
        'api_usage_costs',
        _id(),
        _user_fk(),
        sa.Column(
            'analysis_id', sa.Integer(),
            sa.ForeignKey('competitor_analyses.id', ondelete='SET NULL'), nullable=True
        ),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('service', sa.String()),
        sa.Column('model', sa.String()),
        sa.Column('operation_type', sa.String()),
        sa.Column('tokens_used', sa.Integer()),
        sa.Column('cost_usd', sa.Float()),
        sa.Column('response_time_ms', sa.Integer()),
        sa.Column('success', sa.Boolean()),
        sa.Column('error_details', sa.Text()),
        sa.Column('date', sa.Date()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_api_usage_costs_provider', 'api_usage_costs', ['provider'])
    op.create_index('ix_api_usage_costs_analysis_id', 'api_usage_costs', ['analysis_id'])
    op.create_index('ix_api_usage_costs_created_at', 'api_usage_costs', ['created_at'])
    op.create_index('ix_usage_user_date', 'api_usage_costs', ['user_id', 'date'])

    op.create_table(
        'documents',
        _id(),
        _user_fk(),
        sa.Column(
            'analysis_id', sa.Integer(),
            sa.ForeignKey('competitor_analyses.id', ondelete='SET NULL'), nullable=True
        ),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('file_path', sa.String(), nullable=False),
        sa.Column('file_type', sa.String()),
        sa.Column('file_size', sa.Integer()),
        sa.Column('category', sa.String()),
        sa.Column('tags', sa.Text()),
        sa.Column('metadata', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_documents_user_id', 'documents', ['user_id'])
    op.create_index('ix_documents_category', 'documents', ['category'])

    op.create_table(
        'user_preferences',
        _id(),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('notification_settings', sa.Text()),
        sa.Column('privacy_settings', sa.Text()),
        sa.Column('ui_preferences', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table(
        'user_cost_limits',
        _id(),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('monthly_limit_usd', sa.Float(), nullable=False),
        sa.Column('alert_threshold', sa.Float()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table(
        'billing_records',
        _id(),
        _user_fk(),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('amount_usd', sa.Float()),
        sa.Column('status', sa.String()),
        sa.Column('description', sa.String()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_billing_records_user_id', 'billing_records', ['user_id'])

    op.create_table(
        'support_tickets',
        _id(),
        _user_fk(),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('status', sa.String()),
        sa.Column('priority', sa.String()),
        sa.Column('category', sa.String()),
        sa.Column('tags', sa.Text()),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resolution', sa.Text()),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_support_tickets_user_id', 'support_tickets', ['user_id'])
    op.create_index('ix_support_tickets_status', 'support_tickets', ['status'])

    op.create_table(
        'support_ticket_messages',
        _id(),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('support_tickets.id'), nullable=False),
        _user_fk(),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_internal', sa.Boolean()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_support_ticket_messages_ticket_id', 'support_ticket_messages', ['ticket_id'])

    op.create_table(
        'application_logs',
        _id(),
        _user_fk(nullable=True),
        sa.Column('level', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('context', sa.Text()),
        sa.Column('performance', sa.Text()),
        sa.Column('url', sa.String()),
        sa.Column('user_agent', sa.String()),
        sa.Column('session_id', sa.String()),
        sa.Column('timestamp', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_application_logs_level', 'application_logs', ['level'])
    op.create_index('ix_application_logs_timestamp', 'application_logs', ['timestamp'])

    op.create_table(
        'audit_logs',
        _id(),
        _user_fk(nullable=True),
        sa.Column('user_email', sa.String()),
        sa.Column('action_type', sa.String()),
        sa.Column('resource_type', sa.String()),
        sa.Column('resource_id', sa.String()),
        sa.Column('action_details', sa.Text()),
        sa.Column('ip_address', sa.String()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_audit_logs_user_email', 'audit_logs', ['user_email'])
    op.create_index('ix_audit_action_created', 'audit_logs', ['action_type', sa.text('created_at DESC')])

    op.create_table(
        'system_prompts',
        _id(),
        _user_fk(nullable=True),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('category', sa.String()),
        sa.Column('description', sa.String()),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_system_prompts_key', 'system_prompts', ['key'])


def downgrade() -> None:
    for table in (
        'system_prompts', 'audit_logs', 'application_logs', 'support_ticket_messages',
        'support_tickets', 'billing_records', 'user_cost_limits', 'user_preferences',
        'documents', 'api_usage_costs', 'competitor_analyses', 'api_keys',
        'refresh_tokens', 'users',
    ):
        op.drop_table(table)
