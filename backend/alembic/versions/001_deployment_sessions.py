"""Deployment session and tool usage tables

Revision ID: 001_deployment_sessions
Revises:
Create Date: 2026-10-19

Creates:
- deployment_sessions: one versioned document per deployment
- tool_usage: sanitized ledger of tool backend calls
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_deployment_sessions'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # Deployment Sessions
    # ==========================================================================

    session_status_enum = sa.Enum(
        'ACTIVE', 'PAUSED', 'COMPLETED', 'FAILED', 'CANCELLED',
        name='sessionstatus',
    )

    op.create_table(
        'deployment_sessions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deployment_id', sa.String(100), nullable=False),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('stage_sequence', sa.JSON(), nullable=False),
        sa.Column('current_stage_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_stage_id', sa.String(100), nullable=True),
        sa.Column('current_stage_data', sa.JSON(), nullable=False),
        sa.Column('stage_history', sa.JSON(), nullable=False),
        sa.Column('project_context', sa.JSON(), nullable=True),
        sa.Column('status', session_status_enum, nullable=False, server_default='ACTIVE'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('total_stages', sa.Integer(), nullable=False),
        sa.Column('completed_stages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('session_metadata', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_deployment_sessions_deployment_id', 'deployment_sessions', ['deployment_id'], unique=True)
    op.create_index('ix_deployment_sessions_owner_id', 'deployment_sessions', ['owner_id'])
    op.create_index('ix_deployment_sessions_status', 'deployment_sessions', ['status'])

    # ==========================================================================
    # Tool Usage
    # ==========================================================================

    op.create_table(
        'tool_usage',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('deployment_id', sa.String(100), nullable=True),
        sa.Column('backend', sa.String(100), nullable=False),
        sa.Column('operation', sa.String(200), nullable=False),
        sa.Column('input', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('fallback', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('latency_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('called_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_tool_usage_deployment_id', 'tool_usage', ['deployment_id'])
    op.create_index('ix_tool_usage_backend', 'tool_usage', ['backend'])
    op.create_index('ix_tool_usage_operation', 'tool_usage', ['operation'])
    op.create_index('ix_tool_usage_called_at', 'tool_usage', ['called_at'])


def downgrade() -> None:
    op.drop_index('ix_tool_usage_called_at', table_name='tool_usage')
    op.drop_index('ix_tool_usage_operation', table_name='tool_usage')
    op.drop_index('ix_tool_usage_backend', table_name='tool_usage')
    op.drop_index('ix_tool_usage_deployment_id', table_name='tool_usage')
    op.drop_table('tool_usage')

    op.drop_index('ix_deployment_sessions_status', table_name='deployment_sessions')
    op.drop_index('ix_deployment_sessions_owner_id', table_name='deployment_sessions')
    op.drop_index('ix_deployment_sessions_deployment_id', table_name='deployment_sessions')
    op.drop_table('deployment_sessions')
    sa.Enum(name='sessionstatus').drop(op.get_bind(), checkfirst=True)
