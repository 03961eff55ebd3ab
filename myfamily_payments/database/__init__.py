"""Database package for the family fund ledger."""
from .connection import (
    close_db,
    create_session_factory,
    engine_options,
    get_engine,
    get_session_factory,
    init_db,
    session_scope,
)
from .models import TRANSACTION_TYPES, Base, FamilyFund, FundTransaction

__all__ = [
    "Base",
    "FamilyFund",
    "FundTransaction",
    "TRANSACTION_TYPES",
    "close_db",
    "create_session_factory",
    "engine_options",
    "get_engine",
    "get_session_factory",
    "init_db",
    "session_scope",
]
