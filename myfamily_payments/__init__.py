"""MyFamily payments: family fund ledger and card payment cascade."""

__version__ = "0.1.0"
