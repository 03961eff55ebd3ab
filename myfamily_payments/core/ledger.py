"""
Family fund ledger store.

One balance row per family plus an append-only history of signed
transactions. Every debit and credit runs in its own database transaction:
the balance changes through a single guarded arithmetic UPDATE and the
history row is inserted before the commit, so the two never diverge.
"""
from typing import List, Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from myfamily_payments.core.errors import (
    FundNotFoundError,
    InsufficientFundsError,
    LedgerWriteError,
    PaymentValidationError,
)
from myfamily_payments.database.connection import get_session_factory, session_scope
from myfamily_payments.database.models import FamilyFund, FundTransaction

logger = structlog.get_logger(__name__)

CREDIT_TYPES = ("deposit", "refund")
DEFAULT_HISTORY_LIMIT = 50


class LedgerStore(Protocol):
    """What the cascade needs from the fund ledger."""

    async def get_fund(self, family_id: int) -> Optional[FamilyFund]:
        ...

    async def debit(
        self,
        fund_id: int,
        amount: int,
        user_id: int,
        description: str,
        reference_number: Optional[str] = None,
    ) -> FundTransaction:
        ...

    async def credit(
        self,
        fund_id: int,
        amount: int,
        user_id: int,
        description: str,
        transaction_type: str = "deposit",
        reference_number: Optional[str] = None,
    ) -> FundTransaction:
        ...


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise PaymentValidationError("Ledger amounts must be positive integers")


class SQLLedgerStore:
    """
    SQLAlchemy implementation of the ledger store.

    The balance is never read and written back by application code; a
    debit only succeeds when ``balance >= amount`` holds inside the UPDATE.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def get_fund(self, family_id: int) -> Optional[FamilyFund]:
        """
        Look up the fund of a family.

        Returns:
            Optional[FamilyFund]: The fund, or None when the family has none
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FamilyFund).where(FamilyFund.family_id == family_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("fund_lookup_failed", family_id=family_id, error=str(e))
            raise LedgerWriteError(f"Failed to read fund of family {family_id}") from e

    async def create_fund(
        self, family_id: int, currency: str = "ILS"
    ) -> FamilyFund:
        """
        Create an empty fund for a family.

        Raises:
            LedgerWriteError: If the family already has a fund or the insert fails
        """
        try:
            async with session_scope(self.session_factory) as session:
                fund = FamilyFund(family_id=family_id, balance=0, currency=currency.upper())
                session.add(fund)
                await session.flush()
                await session.refresh(fund)
        except SQLAlchemyError as e:
            logger.error("fund_creation_failed", family_id=family_id, error=str(e))
            raise LedgerWriteError(f"Failed to create fund for family {family_id}") from e

        logger.info("fund_created", family_id=family_id, fund_id=fund.id, currency=fund.currency)
        return fund

    async def get_or_create_fund(
        self, family_id: int, currency: str = "ILS"
    ) -> FamilyFund:
        """Return the family's fund, creating an empty one on first use."""
        fund = await self.get_fund(family_id)
        if fund is not None:
            return fund
        try:
            return await self.create_fund(family_id, currency)
        except LedgerWriteError as e:
            # Another caller may have created it in between
            if not isinstance(e.__cause__, IntegrityError):
                raise
            fund = await self.get_fund(family_id)
            if fund is None:
                raise
            return fund

    async def debit(
        self,
        fund_id: int,
        amount: int,
        user_id: int,
        description: str,
        reference_number: Optional[str] = None,
    ) -> FundTransaction:
        """
        Take ``amount`` out of a fund and record a ``payment`` row of ``-amount``.

        Raises:
            InsufficientFundsError: If the balance no longer covers ``amount``
            FundNotFoundError: If the fund row does not exist
            LedgerWriteError: On any database failure
        """
        _require_positive(amount)
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    update(FamilyFund)
                    .where(FamilyFund.id == fund_id, FamilyFund.balance >= amount)
                    .values(balance=FamilyFund.balance - amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await self._raise_missing_or_short(session, fund_id, amount)

                transaction = await self._append(
                    session,
                    fund_id=fund_id,
                    user_id=user_id,
                    amount=-amount,
                    description=description,
                    transaction_type="payment",
                    reference_number=reference_number,
                )
        except SQLAlchemyError as e:
            logger.error("fund_debit_failed", fund_id=fund_id, amount=amount, error=str(e))
            raise LedgerWriteError(f"Failed to debit fund {fund_id}") from e

        logger.info(
            "fund_debited",
            fund_id=fund_id,
            amount=amount,
            user_id=user_id,
            transaction_id=transaction.id,
        )
        return transaction

    async def credit(
        self,
        fund_id: int,
        amount: int,
        user_id: int,
        description: str,
        transaction_type: str = "deposit",
        reference_number: Optional[str] = None,
    ) -> FundTransaction:
        """
        Add ``amount`` to a fund and record a ``deposit`` or ``refund`` row.

        Raises:
            FundNotFoundError: If the fund row does not exist
            LedgerWriteError: On any database failure
        """
        _require_positive(amount)
        if transaction_type not in CREDIT_TYPES:
            raise PaymentValidationError(
                f"Credit type must be one of {CREDIT_TYPES}, got {transaction_type!r}"
            )
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(
                    update(FamilyFund)
                    .where(FamilyFund.id == fund_id)
                    .values(balance=FamilyFund.balance + amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise FundNotFoundError(fund_id)

                transaction = await self._append(
                    session,
                    fund_id=fund_id,
                    user_id=user_id,
                    amount=amount,
                    description=description,
                    transaction_type=transaction_type,
                    reference_number=reference_number,
                )
        except SQLAlchemyError as e:
            logger.error("fund_credit_failed", fund_id=fund_id, amount=amount, error=str(e))
            raise LedgerWriteError(f"Failed to credit fund {fund_id}") from e

        logger.info(
            "fund_credited",
            fund_id=fund_id,
            amount=amount,
            user_id=user_id,
            transaction_type=transaction_type,
            transaction_id=transaction.id,
        )
        return transaction

    async def list_transactions(
        self, fund_id: int, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[FundTransaction]:
        """Fund history, newest first."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FundTransaction)
                    .where(FundTransaction.family_fund_id == fund_id)
                    .order_by(FundTransaction.created_at.desc(), FundTransaction.id.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("fund_history_failed", fund_id=fund_id, error=str(e))
            raise LedgerWriteError(f"Failed to read history of fund {fund_id}") from e

    @staticmethod
    async def _raise_missing_or_short(
        session: AsyncSession, fund_id: int, amount: int
    ) -> None:
        exists = await session.scalar(select(FamilyFund.id).where(FamilyFund.id == fund_id))
        if exists is None:
            raise FundNotFoundError(fund_id)
        raise InsufficientFundsError(fund_id, amount)

    @staticmethod
    async def _append(
        session: AsyncSession,
        fund_id: int,
        user_id: int,
        amount: int,
        description: str,
        transaction_type: str,
        reference_number: Optional[str],
    ) -> FundTransaction:
        transaction = FundTransaction(
            family_fund_id=fund_id,
            user_id=user_id,
            amount=amount,
            description=description,
            type=transaction_type,
            reference_number=reference_number,
        )
        session.add(transaction)
        await session.flush()
        await session.refresh(transaction)
        return transaction
