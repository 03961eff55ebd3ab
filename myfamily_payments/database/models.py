"""SQLAlchemy database models for the family fund ledger."""
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntId = BigInteger().with_variant(Integer, "sqlite")

TRANSACTION_TYPES = ("payment", "deposit", "refund")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class FamilyFund(Base):
    """
    Family collective fund table.

    One row per family. The balance is kept in minor currency units and is only
    ever changed by arithmetic updates issued by the ledger store.
    """

    __tablename__ = "family_funds"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    family_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="non_negative_balance"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
    )

    def __repr__(self) -> str:
        """String representation of FamilyFund."""
        return (
            f"<FamilyFund(id={self.id}, family_id={self.family_id}, "
            f"balance={self.balance}, currency={self.currency})>"
        )


class FundTransaction(Base):
    """
    Fund ledger entries.

    Append-only: negative amounts are payments out of the fund, positive amounts
    are deposits and refunds. Immutable once written.
    """

    __tablename__ = "fund_transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    family_fund_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("family_funds.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="non_zero_amount"),
        CheckConstraint(
            "type IN ('payment', 'deposit', 'refund')",
            name="valid_transaction_type",
        ),
        Index("idx_fund_transactions_fund_created", "family_fund_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of FundTransaction."""
        return (
            f"<FundTransaction(id={self.id}, fund_id={self.family_fund_id}, "
            f"amount={self.amount}, type={self.type})>"
        )
