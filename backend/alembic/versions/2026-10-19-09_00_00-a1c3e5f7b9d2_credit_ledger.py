"""Add credit ledger tables

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds the credit accounting tables:
- credit_accounts: Live balance per account
- credit_transactions: Append-only ledger, one row per balance movement
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f7b9d2'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = inspector.get_table_names()

    # -------------------------------------------------------------------------
    # 1. credit_accounts - Balance per account
    # -------------------------------------------------------------------------
    if 'credit_accounts' not in existing_tables:
        op.create_table(
            'credit_accounts',
            sa.Column('account_id', sa.String(length=64), nullable=False, comment='User/account ID'),
            sa.Column('balance', sa.Integer(), server_default='0', nullable=False, comment='Balance in credits'),
            sa.Column('version', sa.Integer(), server_default='0', nullable=False, comment='Bumped on every change'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
            sa.PrimaryKeyConstraint('account_id'),
        )

    # -------------------------------------------------------------------------
    # 2. credit_transactions - Ledger entries
    # -------------------------------------------------------------------------
    if 'credit_transactions' not in existing_tables:
        op.create_table(
            'credit_transactions',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('account_id', sa.String(length=64), nullable=False),
            sa.Column('kind', sa.String(length=20), nullable=False, comment='purchase, consumption, adjustment, refund'),
            sa.Column('amount', sa.Integer(), nullable=False, comment='Signed credit movement'),
            sa.Column('balance_after', sa.Integer(), nullable=False),
            sa.Column('account_version', sa.Integer(), nullable=False, comment='Account version after this entry; orders the history of one account'),
            sa.Column('description', sa.Text(), nullable=False),
            sa.Column('status', sa.String(length=20), server_default='committed', nullable=False),
            sa.Column('related_entity_id', sa.String(length=64), nullable=True, comment='NULL until the paid-for resource exists'),
            sa.Column('reference_transaction_id', sa.String(length=36), nullable=True, comment='Consumption compensated by a refund'),
            sa.Column('idempotency_key', sa.String(length=255), nullable=True, comment='Payment event id or action attempt key'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint('amount <> 0', name='ck_credit_transactions_amount_non_zero'),
            sa.ForeignKeyConstraint(['account_id'], ['credit_accounts.account_id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('idempotency_key'),
            sa.UniqueConstraint('account_id', 'account_version', name='uq_credit_transactions_account_version'),
        )

        op.create_index('ix_credit_transactions_account_created', 'credit_transactions', ['account_id', 'created_at'])
        op.create_index('ix_credit_transactions_reference', 'credit_transactions', ['reference_transaction_id'])


def downgrade() -> None:
    """Drop credit tables."""
    op.drop_index('ix_credit_transactions_reference', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_account_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_accounts')
