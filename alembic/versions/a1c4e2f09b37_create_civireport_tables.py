"""Create CiviReport tables

Revision ID: a1c4e2f09b37
Revises:
Create Date: 2026-10-18 09:12:44.512031

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e2f09b37'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('current_load', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_capacity', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('work_latitude', sa.Float(), nullable=True),
        sa.Column('work_longitude', sa.Float(), nullable=True),
        sa.Column('work_radius_km', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_id', 'users', ['id'])

    op.create_table(
        'issues',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('priority', sa.String(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('address', sa.String(), nullable=True),
        sa.Column('reporter_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('assigned_to_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('contractor_eligible', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('upvotes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verification_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_issues_id', 'issues', ['id'])
    op.create_index('ix_issues_status', 'issues', ['status'])
    op.create_index('ix_issues_category_created_at', 'issues', ['category', 'created_at'])
    op.create_index('ix_issues_lat_lon', 'issues', ['latitude', 'longitude'])

    op.create_table(
        'issue_photos',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('blob_key', sa.String(), nullable=False),
        sa.Column('filename', sa.String(), nullable=True),
        sa.Column('content_type', sa.String(), nullable=True),
        sa.Column('byte_size', sa.BigInteger(), nullable=True),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('a_hash', sa.String(length=16), nullable=True),
        sa.Column('d_hash', sa.String(length=16), nullable=True),
        sa.Column('md5', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_issue_photos_id', 'issue_photos', ['id'])
    op.create_index('ix_issue_photos_issue_id', 'issue_photos', ['issue_id'])
    op.create_index('ix_issue_photos_md5', 'issue_photos', ['md5'])

    op.create_table(
        'issue_comments',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_issue_comments_id', 'issue_comments', ['id'])
    op.create_index('ix_issue_comments_issue_id', 'issue_comments', ['issue_id'])

    op.create_table(
        'issue_upvotes',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('issue_id', 'user_id', name='uq_issue_upvotes_issue_user'),
    )
    op.create_index('ix_issue_upvotes_id', 'issue_upvotes', ['id'])

    op.create_table(
        'issue_status_changes',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=False),
        sa.Column('actor_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('actor_role', sa.String(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_issue_status_changes_id', 'issue_status_changes', ['id'])
    op.create_index('ix_issue_status_changes_issue_id', 'issue_status_changes', ['issue_id'])

    op.create_table(
        'bids',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('contractor_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('estimated_days', sa.Float(), nullable=False),
        sa.Column('proposal', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('reviewed_by_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bids_id', 'bids', ['id'])
    op.create_index('ix_bids_issue_id', 'bids', ['issue_id'])
    op.create_index('ix_bids_contractor_id', 'bids', ['contractor_id'])
    op.create_index(
        'uq_bids_one_accepted_per_issue',
        'bids',
        ['issue_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACCEPTED'"),
        sqlite_where=sa.text("status = 'ACCEPTED'"),
    )

    op.create_table(
        'work_updates',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=False),
        sa.Column('worker_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('update_type', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('progress_percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hours_worked', sa.Float(), nullable=False, server_default='0'),
        sa.Column('materials', sa.Text(), nullable=True),
        sa.Column('photos', sa.Text(), nullable=True),
        sa.Column('verification_status', sa.String(), nullable=False),
        sa.Column('verified_by_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('inspector_notes', sa.Text(), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_work_updates_id', 'work_updates', ['id'])
    op.create_index('ix_work_updates_issue_id', 'work_updates', ['issue_id'])
    op.create_index('ix_work_updates_verification_status', 'work_updates', ['verification_status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('issue_id', sa.BigInteger(), sa.ForeignKey('issues.id'), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_id', 'notifications', ['id'])
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('work_updates')
    op.drop_index('uq_bids_one_accepted_per_issue', table_name='bids')
    op.drop_table('bids')
    op.drop_table('issue_status_changes')
    op.drop_table('issue_upvotes')
    op.drop_table('issue_comments')
    op.drop_table('issue_photos')
    op.drop_table('issues')
    op.drop_table('users')
