"""Exceptions and error kinds raised by the payments core."""
from enum import Enum


class PaymentErrorKind(Enum):
    """Classification of cascade failures so callers can pick a recovery strategy."""

    VALIDATION = "validation"  # Bad input, nothing touched
    CONFIGURATION = "configuration"  # No card credential for a card leg
    TRANSPORT = "transport"  # Gateway unreachable, safe to retry later
    DECLINED = "declined"  # Issuer said no
    LEDGER = "ledger"  # Store failed to persist


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    kind: PaymentErrorKind = PaymentErrorKind.LEDGER


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    kind = PaymentErrorKind.VALIDATION


class LedgerWriteError(PaymentError):
    """Raised when the ledger store fails to persist a debit or credit."""

    kind = PaymentErrorKind.LEDGER


class FundNotFoundError(LedgerWriteError):
    """Raised when a debit or credit targets a fund row that does not exist."""

    def __init__(self, fund_id: int):
        super().__init__(f"Family fund {fund_id} not found")
        self.fund_id = fund_id


class InsufficientFundsError(LedgerWriteError):
    """Raised when a guarded debit finds less balance than requested."""

    def __init__(self, fund_id: int, amount: int):
        super().__init__(f"Family fund {fund_id} cannot cover a debit of {amount}")
        self.fund_id = fund_id
        self.amount = amount
