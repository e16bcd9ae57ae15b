"""
Ledger Store

Persistence for credit balances and the append-only credit ledger:
- Conditional atomic balance updates (never below zero)
- Balance change and ledger entry written in one database transaction
- Per-account in-process serialization of writes
- Idempotent back-fill of related entity ids
- Translation of database errors into billing errors

No SQLAlchemy exception leaves this module; callers only ever see
``BillingError`` subclasses.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.conf import settings
from backend.database.db import uuid4_str
from backend.src.billing.domain.credit_account import CreditAccount
from backend.src.billing.domain.tables import CreditAccountRecord, CreditTransactionRecord
from backend.src.billing.domain.transaction import CreditTransaction, TransactionKind
from backend.src.billing.shared.cache_utils import refresh_balance_cache
from backend.src.billing.shared.exceptions import (
    AccountLookupFailedError,
    BillingError,
    ConcurrentModificationConflictError,
    InsufficientBalanceError,
    LedgerWriteFailedError,
)

logger = logging.getLogger(__name__)

# Fragments of driver messages that mean "someone else holds the row"
_CONFLICT_MARKERS = (
    'could not serialize',
    'deadlock',
    'lock timeout',
    'lock not available',
    'database is locked',
    'database table is locked',
)


def _is_conflict(error: DBAPIError) -> bool:
    message = str(getattr(error, 'orig', error)).lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


def _translate_write_error(error: Exception, account_id: str) -> BillingError:
    if isinstance(error, DBAPIError) and _is_conflict(error):
        return ConcurrentModificationConflictError(account_id=account_id, cause=str(error))
    return LedgerWriteFailedError(account_id=account_id, cause=str(error))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore:
    """
    Reads and writes credit balances and ledger entries.

    Every balance change goes through ``record_movement``, which applies
    the conditional UPDATE and inserts the matching ledger entry inside
    one database transaction. The conditional UPDATE protects the
    balance across processes; the per-account ``asyncio.Lock`` keeps the
    writes of one process in resolution order.

    Usage:
        ledger = LedgerStore()

        tx = await ledger.record_movement(
            account_id, -4, TransactionKind.CONSUMPTION, "Voice agent (15 min)"
        )
        print(tx.balance_after)
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        initial_grant: Optional[int] = None,
        cache_enabled: Optional[bool] = None
    ):
        """
        Initialize the ledger store.

        Args:
            session_factory: async_sessionmaker to use; defaults to the
                application's ``async_db_session``
            initial_grant: Seed balance for new accounts
            cache_enabled: Refresh the Redis balance cache on every write
        """
        self._session_factory = session_factory
        self.initial_grant = settings.CREDIT_INITIAL_GRANT if initial_grant is None else initial_grant
        self.cache_enabled = settings.CREDIT_BALANCE_CACHE_ENABLED if cache_enabled is None else cache_enabled
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def session_factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            from backend.database.db import async_db_session
            return async_db_session
        return self._session_factory

    def lock_for(self, account_id: str) -> asyncio.Lock:
        """Get the write lock of an account, creating it on first use."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def get_account(self, account_id: str) -> CreditAccount:
        """
        Get an account, creating it with the seed balance if it does not exist.

        Raises:
            AccountLookupFailedError: If the database is unreachable
        """
        try:
            async with self.session_factory() as session:
                record = (await session.execute(
                    select(CreditAccountRecord).where(CreditAccountRecord.account_id == account_id)
                )).scalar_one_or_none()
                if record is not None:
                    return CreditAccount.from_record(record)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[LEDGER] Failed to read account {account_id}: {e}")
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e

        return await self.ensure_account(account_id)

    async def ensure_account(self, account_id: str) -> CreditAccount:
        """
        Create the account if missing.

        A non-zero seed balance is written together with its ADJUSTMENT
        entry so the balance equals the ledger sum from the start.
        """
        now = _utcnow()
        grant = self.initial_grant
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(CreditAccountRecord(
                        account_id=account_id,
                        balance=grant,
                        version=1 if grant else 0,
                        created_at=now,
                        updated_at=now,
                    ))
                    await session.flush()
                    if grant:
                        session.add(CreditTransactionRecord(
                            id=uuid4_str(),
                            account_id=account_id,
                            kind=TransactionKind.ADJUSTMENT.value,
                            amount=grant,
                            balance_after=grant,
                            account_version=1,
                            description="Initial credit grant",
                            status="committed",
                            created_at=now,
                        ))
            logger.info(f"[LEDGER] Created credit account {account_id} with {grant} credits")
            return CreditAccount(account_id=account_id, balance=grant, version=1 if grant else 0,
                                 created_at=now, updated_at=now)
        except IntegrityError:
            # Created concurrently by another request
            logger.debug(f"[LEDGER] Account {account_id} already exists")
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[LEDGER] Failed to create account {account_id}: {e}")
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e

        try:
            async with self.session_factory() as session:
                record = (await session.execute(
                    select(CreditAccountRecord).where(CreditAccountRecord.account_id == account_id)
                )).scalar_one()
                return CreditAccount.from_record(record)
        except (SQLAlchemyError, OSError) as e:
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e

    async def get_balance(self, account_id: str) -> int:
        """Get the committed balance of an account."""
        account = await self.get_account(account_id)
        return account.balance

    # =========================================================================
    # WRITE PRIMITIVES (must run inside a transaction of the caller)
    # =========================================================================

    async def adjust_balance(self, account_id: str, delta: int, *, session: AsyncSession) -> Tuple[int, int]:
        """
        Apply ``delta`` to the balance with a single conditional UPDATE.

        Args:
            account_id: Account to change
            delta: Signed number of credits
            session: Session with an open transaction; the change commits
                or rolls back with it

        Returns:
            Tuple of (new balance, new version)

        Raises:
            InsufficientBalanceError: The update would make the balance negative
        """
        stmt = (
            update(CreditAccountRecord)
            .where(
                CreditAccountRecord.account_id == account_id,
                CreditAccountRecord.balance + delta >= 0,
            )
            .values(
                balance=CreditAccountRecord.balance + delta,
                version=CreditAccountRecord.version + 1,
                updated_at=_utcnow(),
            )
            .returning(CreditAccountRecord.balance, CreditAccountRecord.version)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            available = await session.scalar(
                select(CreditAccountRecord.balance).where(CreditAccountRecord.account_id == account_id)
            )
            raise InsufficientBalanceError(account_id, delta, int(available or 0))
        return int(row[0]), int(row[1])

    async def append_transaction(self, entry: CreditTransaction, *, session: AsyncSession) -> str:
        """
        Insert a ledger entry.

        Returns:
            The transaction id
        """
        session.add(CreditTransactionRecord(
            id=entry.id,
            account_id=entry.account_id,
            kind=entry.kind.value,
            amount=entry.amount,
            balance_after=entry.balance_after,
            account_version=entry.account_version,
            description=entry.description,
            status=entry.status,
            related_entity_id=entry.related_entity_id,
            reference_transaction_id=entry.reference_transaction_id,
            idempotency_key=entry.idempotency_key,
            created_at=entry.created_at,
        ))
        await session.flush()
        return entry.id

    # =========================================================================
    # ATOMIC MOVEMENT
    # =========================================================================

    async def record_movement(
        self,
        account_id: str,
        delta: int,
        kind: TransactionKind,
        description: str,
        related_entity_id: Optional[str] = None,
        reference_transaction_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> CreditTransaction:
        """
        Change the balance and append the matching ledger entry atomically.

        Args:
            account_id: Account to change
            delta: Signed number of credits, never 0
            kind: Ledger entry kind
            description: Audit description
            related_entity_id: Paid-for resource, None while it does not exist
            reference_transaction_id: Entry compensated by this one
            idempotency_key: Idempotency key; an existing entry with the
                same key is returned instead of writing a new one

        Returns:
            The written (or already existing) entry; ``balance_after`` is
            the new balance

        Raises:
            InsufficientBalanceError: The balance would go below zero
            ConcurrentModificationConflictError: Lock/serialization failure
            LedgerWriteFailedError: Any other persistence failure
        """
        entry, _ = await self.write_movement(
            account_id,
            delta,
            kind,
            description,
            related_entity_id=related_entity_id,
            reference_transaction_id=reference_transaction_id,
            idempotency_key=idempotency_key,
        )
        return entry

    async def write_movement(
        self,
        account_id: str,
        delta: int,
        kind: TransactionKind,
        description: str,
        related_entity_id: Optional[str] = None,
        reference_transaction_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[CreditTransaction, bool]:
        """
        Same as ``record_movement`` but also reports whether the entry is new.

        The idempotency key is looked up under the account lock, so of
        several concurrent writes with one key exactly one gets
        ``created=True``.

        Returns:
            Tuple of (entry, created)
        """
        if delta == 0:
            raise ValueError("Ledger movements must be non-zero")

        await self.get_account(account_id)

        async with self.lock_for(account_id):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        if idempotency_key:
                            existing = await self._find_by_idempotency_key(session, idempotency_key)
                            if existing is not None:
                                logger.info(
                                    f"[LEDGER] Duplicate movement for key {idempotency_key}, "
                                    f"returning {existing.id}"
                                )
                                return existing, False

                        balance, version = await self.adjust_balance(account_id, delta, session=session)
                        entry = CreditTransaction(
                            id=uuid4_str(),
                            account_id=account_id,
                            kind=kind,
                            amount=delta,
                            balance_after=balance,
                            account_version=version,
                            description=description,
                            created_at=_utcnow(),
                            related_entity_id=related_entity_id,
                            reference_transaction_id=reference_transaction_id,
                            idempotency_key=idempotency_key,
                        )
                        await self.append_transaction(entry, session=session)
            except BillingError:
                raise
            except IntegrityError as e:
                # Another process wrote the same key first
                if idempotency_key:
                    existing = await self.find_by_idempotency_key(idempotency_key)
                    if existing is not None:
                        return existing, False
                logger.error(f"[LEDGER] Integrity error writing {kind.value} for {account_id}: {e}")
                raise LedgerWriteFailedError(account_id=account_id, cause=str(e)) from e
            except (SQLAlchemyError, OSError) as e:
                error = _translate_write_error(e, account_id)
                logger.error(f"[LEDGER] {error.code} writing {kind.value} of {delta} for {account_id}: {e}")
                raise error from e

            if self.cache_enabled:
                await refresh_balance_cache(account_id, balance, version)

        logger.info(
            f"[LEDGER] {kind.value} {delta:+d} for {account_id}, balance now {balance} (tx {entry.id})"
        )
        return entry, True

    # =========================================================================
    # RELATED ENTITY BACK-FILL
    # =========================================================================

    async def patch_related_entity(self, transaction_id: str, related_entity_id: str) -> bool:
        """
        Fill in the resource id of an entry written before the resource existed.

        Only NULL ids are updated, so repeating the call is a no-op and a
        different id is never overwritten. Failures are logged, not raised.

        Returns:
            True if the entry now carries ``related_entity_id``
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CreditTransactionRecord)
                        .where(
                            CreditTransactionRecord.id == transaction_id,
                            CreditTransactionRecord.related_entity_id.is_(None),
                        )
                        .values(related_entity_id=related_entity_id)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        logger.debug(f"[LEDGER] Linked tx {transaction_id} to {related_entity_id}")
                        return True

                    current = (await session.execute(
                        select(CreditTransactionRecord.related_entity_id)
                        .where(CreditTransactionRecord.id == transaction_id)
                    )).first()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[LEDGER] Failed to link tx {transaction_id} to {related_entity_id}: {e}")
            return False

        if current is None:
            logger.warning(f"[LEDGER] Cannot link unknown tx {transaction_id}")
            return False
        if current[0] == related_entity_id:
            return True
        logger.warning(
            f"[LEDGER] Tx {transaction_id} already linked to {current[0]}, refusing {related_entity_id}"
        )
        return False

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _history_filter(self, stmt, account_id: str, kind: Optional[str], search: Optional[str]):
        stmt = stmt.where(CreditTransactionRecord.account_id == account_id)
        if kind:
            stmt = stmt.where(CreditTransactionRecord.kind == kind)
        if search:
            stmt = stmt.where(CreditTransactionRecord.description.ilike(f"%{search}%"))
        return stmt

    async def list_transactions(
        self,
        account_id: str,
        limit: int = 20,
        offset: int = 0,
        kind: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[CreditTransaction]:
        """List ledger entries newest first."""
        stmt = self._history_filter(select(CreditTransactionRecord), account_id, kind, search)
        # account_version grows with every movement of the account
        stmt = stmt.order_by(CreditTransactionRecord.account_version.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self.session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[LEDGER] Failed to list transactions for {account_id}: {e}")
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e
        return [CreditTransaction.from_record(r) for r in records]

    async def count_transactions(
        self,
        account_id: str,
        kind: Optional[str] = None,
        search: Optional[str] = None
    ) -> int:
        stmt = self._history_filter(select(func.count(CreditTransactionRecord.id)), account_id, kind, search)
        try:
            async with self.session_factory() as session:
                return int(await session.scalar(stmt) or 0)
        except (SQLAlchemyError, OSError) as e:
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e

    async def sum_transactions(self, account_id: str) -> int:
        """Sum of all ledger amounts of an account."""
        stmt = select(func.coalesce(func.sum(CreditTransactionRecord.amount), 0)).where(
            CreditTransactionRecord.account_id == account_id
        )
        try:
            async with self.session_factory() as session:
                return int(await session.scalar(stmt))
        except (SQLAlchemyError, OSError) as e:
            raise AccountLookupFailedError(account_id=account_id, cause=str(e)) from e

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        try:
            async with self.session_factory() as session:
                record = await session.get(CreditTransactionRecord, transaction_id)
        except (SQLAlchemyError, OSError) as e:
            raise AccountLookupFailedError(cause=str(e)) from e
        return CreditTransaction.from_record(record) if record else None

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[CreditTransaction]:
        try:
            async with self.session_factory() as session:
                return await self._find_by_idempotency_key(session, idempotency_key)
        except (SQLAlchemyError, OSError) as e:
            raise AccountLookupFailedError(cause=str(e)) from e

    @staticmethod
    async def _find_by_idempotency_key(session: AsyncSession, idempotency_key: str) -> Optional[CreditTransaction]:
        record = (await session.execute(
            select(CreditTransactionRecord).where(CreditTransactionRecord.idempotency_key == idempotency_key)
        )).scalar_one_or_none()
        return CreditTransaction.from_record(record) if record else None


# Global ledger instance
ledger_store = LedgerStore()
