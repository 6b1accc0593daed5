"""initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


MEMBERSHIP_ACTIONS_SQL = "action IN ('preview', 'download')"


def upgrade() -> None:
    # projects and rosters
    op.create_table(
        'projects',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_projects_name', 'projects', ['name'])
    op.create_index('ix_projects_created_by', 'projects', ['created_by'])

    op.create_table(
        'project_members',
        sa.Column('project_id', sa.String(), sa.ForeignKey('projects.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('username', sa.String(length=255), primary_key=True),
        sa.Column('added_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('project_id', 'username', name='uq_project_members_project_user'),
    )
    op.create_index('ix_project_members_username', 'project_members', ['username'])

    # audit ledger
    op.create_table(
        'audit_records',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('folder', sa.String(), nullable=True),
        sa.Column('subject_name', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('acted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.UniqueConstraint('project_id', 'idempotency_key', name='uq_audit_records_project_idempotency_key'),
    )
    for column in ('project_id', 'folder', 'subject_name', 'action', 'actor', 'acted_at'):
        op.create_index(f'ix_audit_records_{column}', 'audit_records', [column])
    op.create_index(
        'uq_audit_records_subject_action',
        'audit_records',
        ['project_id', 'folder', 'subject_name', 'action'],
        unique=True,
        sqlite_where=sa.text(MEMBERSHIP_ACTIONS_SQL),
        postgresql_where=sa.text(MEMBERSHIP_ACTIONS_SQL),
    )

    op.create_table(
        'audit_memberships',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('record_id', sa.String(), sa.ForeignKey('audit_records.id', ondelete='CASCADE'), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('acted_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('record_id', 'username', name='uq_audit_memberships_record_user'),
    )
    op.create_index('ix_audit_memberships_record_id', 'audit_memberships', ['record_id'])
    op.create_index('ix_audit_memberships_username', 'audit_memberships', ['username'])

    # scheduled events
    op.create_table(
        'project_events',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_project_events_project_id', 'project_events', ['project_id'])
    op.create_index('ix_project_events_is_deleted', 'project_events', ['is_deleted'])

    op.create_table(
        'event_notifications',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), sa.ForeignKey('project_events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('event_id', 'username', name='uq_event_notifications_event_user'),
    )
    op.create_index('ix_event_notifications_project_id', 'event_notifications', ['project_id'])
    op.create_index('ix_event_notifications_event_id', 'event_notifications', ['event_id'])
    op.create_index('ix_event_notifications_username', 'event_notifications', ['username'])
    op.create_index('ix_event_notifications_read', 'event_notifications', ['read'])

    # chat
    op.create_table(
        'chat_messages',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('client_key', sa.String(), nullable=True),
        sa.UniqueConstraint('project_id', 'client_key', name='uq_chat_messages_project_client_key'),
    )
    op.create_index('ix_chat_messages_project_id', 'chat_messages', ['project_id'])
    op.create_index('ix_chat_messages_created_at', 'chat_messages', ['created_at'])

    op.create_table(
        'chat_mentions',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('project_id', sa.String(), nullable=False),
        sa.Column('message_id', sa.String(), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('mentioned_by', sa.String(), nullable=False),
        sa.Column('mentioned_user', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('message_id', 'mentioned_user', name='uq_chat_mentions_message_user'),
    )
    op.create_index('ix_chat_mentions_project_id', 'chat_mentions', ['project_id'])
    op.create_index('ix_chat_mentions_message_id', 'chat_mentions', ['message_id'])
    op.create_index('ix_chat_mentions_mentioned_user', 'chat_mentions', ['mentioned_user'])
    op.create_index('ix_chat_mentions_read', 'chat_mentions', ['read'])


def downgrade() -> None:
    op.drop_table('chat_mentions')
    op.drop_table('chat_messages')
    op.drop_table('event_notifications')
    op.drop_table('project_events')
    op.drop_table('audit_memberships')
    op.drop_index('uq_audit_records_subject_action', table_name='audit_records')
    op.drop_table('audit_records')
    op.drop_table('project_members')
    op.drop_table('projects')
