"""create users, reservations and push subscriptions

Revision ID: 3b1c9a0d5e21
Revises: 
Create Date: 2025-09-02 14:10:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b1c9a0d5e21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the users, reservations and push_subscriptions tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('registration', sa.String(), nullable=True),
        sa.Column('personal_email', sa.String(), nullable=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_status', 'users', ['status'])

    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('resource', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('room', sa.String(), nullable=False),
        sa.Column('department', sa.String(), nullable=False),
        sa.Column(
            'owner_id',
            sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('responsible', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reservations_id', 'reservations', ['id'])
    op.create_index('ix_reservations_date', 'reservations', ['date'])
    op.create_index('ix_reservations_resource', 'reservations', ['resource'])
    op.create_index('ix_reservations_owner_id', 'reservations', ['owner_id'])
    op.create_index('ix_reservations_status', 'reservations', ['status'])

    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('endpoint', sa.String(), nullable=False),
        sa.Column('p256dh', sa.String(), nullable=False),
        sa.Column('auth', sa.String(), nullable=False),
        sa.Column(
            'user_id',
            sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_push_subscriptions_id', 'push_subscriptions', ['id'])
    op.create_index(
        'ix_push_subscriptions_endpoint', 'push_subscriptions', ['endpoint'], unique=True
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade() -> None:
    """Drop every Coordena+ table."""
    op.drop_table('push_subscriptions')
    op.drop_table('reservations')
    op.drop_table('users')
