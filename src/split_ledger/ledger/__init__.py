"""Ledger engine: split calculation, balance aggregation and debt simplification."""

from .balances import compute_group_balances, compute_pairwise_debts
from .money import from_cents, parse_amount, to_cents
from .simplifier import simplify_debts
from .splitter import compute_splits

__all__ = [
    "compute_group_balances",
    "compute_pairwise_debts",
    "compute_splits",
    "from_cents",
    "parse_amount",
    "simplify_debts",
    "to_cents",
]
