"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, webhook_events and staged_objects."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('api_key', sa.String(255), nullable=True),
        sa.Column('credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits >= 0', name='ck_credits_non_negative'),
        sa.UniqueConstraint('email', name='uq_accounts_email'),
        sa.UniqueConstraint('api_key', name='uq_accounts_api_key'),
    )
    op.create_index('idx_accounts_updated_at', 'accounts', ['updated_at'])

    # ========================================================================
    # Create webhook_events table (append-only dedup log)
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('fingerprint', sa.String(64), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='received'),
        sa.Column('credits_applied', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('credits_applied >= 0', name='ck_webhook_credits_non_negative'),
    )
    op.create_index('idx_webhook_events_email', 'webhook_events', ['email'], postgresql_where=sa.text('email IS NOT NULL'))
    op.create_index('idx_webhook_events_created_at', 'webhook_events', ['created_at'])

    # ========================================================================
    # Create staged_objects table
    # ========================================================================
    op.create_table(
        'staged_objects',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('key', sa.String(1024), nullable=False),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('purpose', sa.String(20), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='uploaded'),
        sa.Column('size_bytes', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("purpose IN ('input', 'result')", name='ck_staged_purpose'),
        sa.CheckConstraint("state IN ('uploaded', 'consumed', 'deleted', 'orphaned')", name='ck_staged_state'),
        sa.UniqueConstraint('key', name='uq_staged_objects_key'),
    )
    op.create_index('idx_staged_objects_account_purpose', 'staged_objects', ['account_id', 'purpose', 'state'])
    op.create_index('idx_staged_objects_orphaned', 'staged_objects', ['state'], postgresql_where=sa.text("state = 'orphaned'"))


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('staged_objects')
    op.drop_table('webhook_events')
    op.drop_table('accounts')
