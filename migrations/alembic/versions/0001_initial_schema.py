"""initial tuning file schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(conn: Connection, table_name: str) -> bool:
    return sa.inspect(conn).has_table(table_name)


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'users'):
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('first_name', sa.String(length=255), nullable=True),
            sa.Column('last_name', sa.String(length=255), nullable=True),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column('telegram_chat_id', sa.String(length=64), nullable=True),
            sa.Column('telegram_username', sa.String(length=255), nullable=True),
            sa.Column('telegram_linked_at', sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_telegram_chat_id', 'users', ['telegram_chat_id'], unique=True)

    if not _has_table(conn, 'modifications'):
        op.create_table(
            'modifications',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False),
            sa.Column('label', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('code', name='uq_modifications_code'),
        )

    if not _has_table(conn, 'tuning_files'):
        op.create_table(
            'tuning_files',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('original_filename', sa.String(length=255), nullable=False),
            sa.Column('r2_key', sa.String(length=512), nullable=False),
            sa.Column('file_size', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
            sa.Column('file_type', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='RECEIVED'),
            sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='NOT_PAID'),
            sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
            sa.Column('estimated_processing_time', sa.Integer(), nullable=True),
            sa.Column('estimated_processing_time_set_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('customer_comment', sa.Text(), nullable=True),
            sa.Column('admin_notes', sa.Text(), nullable=True),
            sa.Column('dtc_codes', sa.Text(), nullable=True),
            sa.Column('modified_r2_key', sa.String(length=512), nullable=True),
            sa.Column('modified_filename', sa.String(length=255), nullable=True),
            sa.Column('modified_file_size', sa.BigInteger(), nullable=True),
            sa.Column('modified_file_type', sa.String(length=255), nullable=True),
            sa.Column('modified_upload_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('upload_date', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_date', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('r2_key', name='uq_tuning_files_r2_key'),
        )
        op.create_index('ix_tuning_files_user_id', 'tuning_files', ['user_id'])
        op.create_index('ix_tuning_files_status_upload', 'tuning_files', ['status', 'upload_date'])

    if not _has_table(conn, 'file_modifications'):
        op.create_table(
            'file_modifications',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column(
                'file_id',
                sa.String(length=36),
                sa.ForeignKey('tuning_files.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column(
                'modification_id',
                sa.Integer(),
                sa.ForeignKey('modifications.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.UniqueConstraint('file_id', 'modification_id', name='uq_file_modifications_file_modification'),
        )
        op.create_index('ix_file_modifications_file_id', 'file_modifications', ['file_id'])

    if not _has_table(conn, 'audit_logs'):
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column(
                'file_id',
                sa.String(length=36),
                sa.ForeignKey('tuning_files.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('actor_id', sa.String(length=64), nullable=False),
            sa.Column('action', sa.String(length=50), nullable=False),
            sa.Column('old_value', sa.Text(), nullable=True),
            sa.Column('new_value', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_audit_logs_file_created', 'audit_logs', ['file_id', 'created_at'])

    if not _has_table(conn, 'user_notifications'):
        op.create_table(
            'user_notifications',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('notification_type', sa.String(length=50), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column(
                'file_id',
                sa.String(length=36),
                sa.ForeignKey('tuning_files.id', ondelete='SET NULL'),
                nullable=True,
            ),
            sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_user_notifications_user_id', 'user_notifications', ['user_id'])
        op.create_index('ix_user_notifications_user_read', 'user_notifications', ['user_id', 'is_read'])


def downgrade() -> None:
    for table_name in (
        'user_notifications',
        'audit_logs',
        'file_modifications',
        'tuning_files',
        'modifications',
        'users',
    ):
        op.drop_table(table_name)
