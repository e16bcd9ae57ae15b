"""
Credit ledger table models.

``credit_accounts`` holds the live balance, ``credit_transactions`` the
append-only history. The balance of an account always equals the sum of
its transaction amounts.
"""

from datetime import datetime

import sqlalchemy as sa

from sqlalchemy.orm import Mapped, mapped_column

from backend.database.db import MappedBase


class CreditAccountRecord(MappedBase):
    """积分账户表"""

    __tablename__ = 'credit_accounts'
    __table_args__ = (sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),)

    account_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True, comment='User/account ID')
    balance: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, comment='Balance in credits')
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, comment='Bumped on every change')
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class CreditTransactionRecord(MappedBase):
    """积分流水表"""

    __tablename__ = 'credit_transactions'
    __table_args__ = (
        sa.CheckConstraint('amount <> 0', name='ck_credit_transactions_amount_non_zero'),
        sa.Index('ix_credit_transactions_account_created', 'account_id', 'created_at'),
        sa.Index('ix_credit_transactions_reference', 'reference_transaction_id'),
        sa.UniqueConstraint('account_id', 'account_version', name='uq_credit_transactions_account_version'),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey('credit_accounts.account_id'), nullable=False
    )
    kind: Mapped[str] = mapped_column(sa.String(20), nullable=False, comment='purchase, consumption, adjustment, refund')
    amount: Mapped[int] = mapped_column(sa.Integer, nullable=False, comment='Signed credit movement')
    balance_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    account_version: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, comment='Account version after this entry; orders the history of one account'
    )
    description: Mapped[str] = mapped_column(sa.Text, nullable=False, default='')
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False, default='committed')
    related_entity_id: Mapped[str | None] = mapped_column(
        sa.String(64), nullable=True, default=None, comment='NULL until the paid-for resource exists'
    )
    reference_transaction_id: Mapped[str | None] = mapped_column(
        sa.String(36), nullable=True, default=None, comment='Consumption compensated by a refund'
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        sa.String(255), nullable=True, unique=True, default=None, comment='Payment event id or action attempt key'
    )
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
