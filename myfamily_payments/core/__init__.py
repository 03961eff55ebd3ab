"""Family fund payments core: ledger, cascade engine, tokenization."""
from .cascade import CascadePaymentEngine, PaymentResult, process_cascade_payment
from .deposits import FundDepositService
from .errors import (
    FundNotFoundError,
    InsufficientFundsError,
    LedgerWriteError,
    PaymentError,
    PaymentErrorKind,
    PaymentValidationError,
)
from .ledger import LedgerStore, SQLLedgerStore
from .reconciliation import FundDiscrepancy, LedgerReconciler, ReconciliationError
from .tokenization import CardTokenizationService, mask_card_number

__all__ = [
    "CardTokenizationService",
    "CascadePaymentEngine",
    "FundDepositService",
    "FundDiscrepancy",
    "FundNotFoundError",
    "InsufficientFundsError",
    "LedgerReconciler",
    "LedgerStore",
    "LedgerWriteError",
    "PaymentError",
    "PaymentErrorKind",
    "PaymentResult",
    "PaymentValidationError",
    "ReconciliationError",
    "SQLLedgerStore",
    "mask_card_number",
    "process_cascade_payment",
]
