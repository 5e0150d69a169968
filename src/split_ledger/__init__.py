"""Split Ledger - Shared-expense tracking with balance and debt simplification."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .ledger.service import LedgerService
from .models import (
    Balance,
    EqualSplit,
    Expense,
    Group,
    SettlementInstruction,
    SettlementOutcome,
    Split,
    UnequalSplit,
)

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "LedgerService",
    "Balance",
    "EqualSplit",
    "Expense",
    "Group",
    "SettlementInstruction",
    "SettlementOutcome",
    "Split",
    "UnequalSplit",
]
