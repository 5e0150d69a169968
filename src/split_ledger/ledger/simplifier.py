"""Debt simplification: reduce a group's balances to a short list of payments."""

import logging
from collections.abc import Mapping

from ..exceptions import ConsistencyError
from ..models import Balance, SettlementInstruction
from .money import from_cents, to_cents

logger = logging.getLogger(__name__)

# Smallest transfer worth emitting. Balances are exact cents, so anything
# non-zero is a real debt.
MIN_TRANSFER_CENTS = 1


def simplify_debts(balances: Mapping[str, Balance]) -> list[SettlementInstruction]:
    """
    Compute settlement instructions that clear every member's net balance.

    Args:
        balances: Output of compute_group_balances

    Returns:
        Payment instructions in the order they were chosen
    """
    return simplify_net_cents(
        {user_id: to_cents(balance.net) for user_id, balance in balances.items()}
    )


def simplify_net_cents(net: Mapping[str, int]) -> list[SettlementInstruction]:
    """
    Greedy largest-debt-first simplification over net balances in cents.

    Positive = is owed money, negative = owes money.

    Each step looks at every (debtor, creditor) pair, where the debt the pair
    can clear is min(debtor owes, creditor is owed), and takes the largest.
    That is always the largest debtor against the largest creditor; on ties
    the lowest debtor ID wins, then the lowest creditor ID. The chosen amount
    is paid and both balances are reduced.

    Every step zeroes at least one balance, so at most len(net) - 1 steps are
    needed. The loop is bounded by len(net) regardless.

    This is not guaranteed to find the globally minimal number of payments,
    but it always clears every balance and is fully deterministic.

    Raises:
        ConsistencyError: If the balances do not sum to zero or the loop
            fails to clear them
    """
    remaining = {user_id: cents for user_id, cents in net.items() if cents != 0}

    imbalance = sum(remaining.values())
    if imbalance != 0:
        logger.error(f"Cannot simplify unbalanced ledger: {remaining}")
        raise ConsistencyError(
            f"Net balances sum to {from_cents(imbalance)} instead of 0.00"
        )

    instructions: list[SettlementInstruction] = []

    for _ in range(len(net)):
        debtors = {u: -c for u, c in remaining.items() if c < 0}
        creditors = {u: c for u, c in remaining.items() if c > 0}
        if not debtors or not creditors:
            break

        amount = min(max(debtors.values()), max(creditors.values()))
        if amount < MIN_TRANSFER_CENTS:
            break

        debtor = min(u for u, owes in debtors.items() if owes >= amount)
        creditor = min(u for u, owed in creditors.items() if owed >= amount)

        instructions.append(
            SettlementInstruction(
                from_user=debtor, to_user=creditor, amount=from_cents(amount)
            )
        )
        logger.debug(f"Simplified: {debtor} -> {creditor}: {from_cents(amount)}")

        remaining[debtor] += amount
        remaining[creditor] -= amount
        if remaining[debtor] == 0:
            del remaining[debtor]
        if remaining[creditor] == 0:
            del remaining[creditor]

    if remaining:
        logger.error(f"Debt simplification left balances uncleared: {remaining}")
        raise ConsistencyError("Debt simplification did not clear all balances")

    return instructions
