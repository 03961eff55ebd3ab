"""
Ledger reconciliation for family funds.

Runs daily to detect funds whose balance no longer equals the sum of their
transaction history, e.g. after a compensating credit that never landed.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from myfamily_payments.database.connection import get_session_factory
from myfamily_payments.database.models import FamilyFund, FundTransaction
from myfamily_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


@dataclass(frozen=True)
class FundDiscrepancy:
    """A fund whose balance disagrees with its history."""

    fund_id: int
    family_id: int
    balance: int
    transaction_total: int

    @property
    def difference(self) -> int:
        return self.balance - self.transaction_total

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["difference"] = self.difference
        return data


class LedgerReconciler:
    """Compares fund balances to the sum of their transactions."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    def _totals_query() -> Select:
        totals = (
            select(
                FundTransaction.family_fund_id.label("fund_id"),
                func.coalesce(func.sum(FundTransaction.amount), 0).label("total"),
            )
            .group_by(FundTransaction.family_fund_id)
            .subquery()
        )
        return (
            select(
                FamilyFund.id,
                FamilyFund.family_id,
                FamilyFund.balance,
                func.coalesce(totals.c.total, 0).label("transaction_total"),
            )
            .outerjoin(totals, totals.c.fund_id == FamilyFund.id)
            .order_by(FamilyFund.id)
        )

    async def reconcile_fund(self, fund_id: int) -> Optional[FundDiscrepancy]:
        """
        Check a single fund.

        Returns:
            Optional[FundDiscrepancy]: The mismatch, or None when the fund balances

        Raises:
            ReconciliationError: If the fund does not exist or cannot be read
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self._totals_query().where(FamilyFund.id == fund_id)
                )
                row = result.first()
        except SQLAlchemyError as e:
            logger.error("fund_reconciliation_failed", fund_id=fund_id, error=str(e))
            raise ReconciliationError(f"Failed to reconcile fund {fund_id}: {e}") from e

        if row is None:
            raise ReconciliationError(f"Family fund {fund_id} not found")

        discrepancy = self._discrepancy(row)
        if discrepancy is not None:
            logger.warning("fund_balance_mismatch", **discrepancy.to_dict())
        return discrepancy

    async def reconcile_all(self) -> Dict[str, Any]:
        """
        Check every fund.

        Returns:
            Dict[str, Any]: Number of funds checked and the mismatches found
        """
        logger.info("ledger_reconciliation_started")

        try:
            async with self.session_factory() as session:
                result = await session.execute(self._totals_query())
                rows = result.all()
        except SQLAlchemyError as e:
            logger.error("ledger_reconciliation_failed", error=str(e))
            raise ReconciliationError(f"Reconciliation failed: {e}") from e

        discrepancies: List[FundDiscrepancy] = []
        for row in rows:
            discrepancy = self._discrepancy(row)
            if discrepancy is not None:
                logger.warning("fund_balance_mismatch", **discrepancy.to_dict())
                discrepancies.append(discrepancy)

        metrics.set_reconciliation_metrics(len(discrepancies))

        logger.info(
            "ledger_reconciliation_completed",
            funds_checked=len(rows),
            mismatched_funds=len(discrepancies),
        )

        return {
            "funds_checked": len(rows),
            "mismatched_funds": len(discrepancies),
            "discrepancies": [d.to_dict() for d in discrepancies],
        }

    @staticmethod
    def _discrepancy(row: Any) -> Optional[FundDiscrepancy]:
        total = int(row.transaction_total or 0)
        if row.balance == total:
            return None
        return FundDiscrepancy(
            fund_id=row.id,
            family_id=row.family_id,
            balance=row.balance,
            transaction_total=total,
        )
