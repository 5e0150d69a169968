"""Balance aggregation: fold a group's expenses into per-member positions.

Everything here is a pure function of the expense list. Balances are never
stored; callers recompute them from the ledger whenever they need them.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence

from ..exceptions import ConsistencyError, ValidationError
from ..models import Balance, Expense, PairwiseDebt, Split
from .money import from_cents, to_cents

logger = logging.getLogger(__name__)


def outstanding_cents(split: Split) -> int:
    """Cents still owed on a split; zero once it is settled."""
    if split.settled:
        return 0

    cents = to_cents(split.outstanding)
    if cents < 0:
        logger.error(
            f"Split for {split.user_id} has amount_paid {split.amount_paid} "
            f"above its amount {split.amount}"
        )
        raise ConsistencyError(
            f"Split for {split.user_id} is overpaid "
            f"({split.amount_paid} paid on {split.amount})"
        )
    return cents


def iter_open_debts(
    expenses: Iterable[Expense],
) -> Iterable[tuple[Expense, Split, int]]:
    """
    Yield (expense, split, outstanding cents) for every open debt in a ledger.

    Settlement records are skipped after checking that all their splits are
    settled, and so are payers' own splits.
    """
    for expense in expenses:
        if expense.is_settlement:
            _check_settlement_record(expense)
            continue

        for split in expense.splits:
            if split.user_id == expense.payer_id:
                continue
            cents = outstanding_cents(split)
            if cents > 0:
                yield expense, split, cents


def compute_group_balances(
    group_id: str,
    expenses: Iterable[Expense],
    members: Sequence[str],
) -> dict[str, Balance]:
    """
    Compute every member's balance in a group.

    Only unsettled splits count: a participant's outstanding share adds to
    their ``owed`` and to the payer's ``paid``. Settled shares and settlement
    records contribute nothing. The fold is a sum over integer cents, so the
    result does not depend on expense order, and ``sum(net) == 0`` always holds.

    Users who appear in the ledger but are no longer members (e.g. they left
    the group) still get a balance, listed after the members.

    Args:
        group_id: The group whose ledger is being folded
        expenses: All expenses of the group
        members: Member user IDs (admin included) in display order

    Returns:
        Mapping of user ID to Balance, members first

    Raises:
        ValidationError: If an expense belongs to another group
        ConsistencyError: If a split is overpaid or a settlement record
            still has an unsettled split
    """
    paid: dict[str, int] = defaultdict(int)
    owed: dict[str, int] = defaultdict(int)
    pending: dict[str, int] = defaultdict(int)
    seen: set[str] = set()

    ledger = _group_expenses(group_id, expenses)
    for expense in ledger:
        seen.add(expense.payer_id)
        seen.update(split.user_id for split in expense.splits)

    for expense, split, cents in iter_open_debts(ledger):
        owed[split.user_id] += cents
        pending[split.user_id] += 1
        paid[expense.payer_id] += cents

    ordered = list(dict.fromkeys(members))
    ordered += sorted(seen - set(ordered))

    balances = {}
    for user_id in ordered:
        balances[user_id] = Balance(
            user_id=user_id,
            paid=from_cents(paid[user_id]),
            owed=from_cents(owed[user_id]),
            net=from_cents(paid[user_id] - owed[user_id]),
            pending_payments=pending[user_id],
        )

    return balances


def compute_pairwise_debts(
    group_id: str, expenses: Iterable[Expense]
) -> list[PairwiseDebt]:
    """
    Compute the net debt between every pair of users in a group.

    For each unordered pair, sums what A owes B (unsettled shares of expenses
    B paid) and what B owes A, and reports the difference in the direction of
    the larger side. Pairs that net to zero are omitted.

    Returns:
        Debts sorted by (debtor_id, creditor_id)
    """
    gross: dict[tuple[str, str], int] = defaultdict(int)
    for expense, split, cents in iter_open_debts(_group_expenses(group_id, expenses)):
        gross[(split.user_id, expense.payer_id)] += cents

    pairs = {tuple(sorted(key)) for key in gross}

    debts = []
    for a, b in pairs:
        net = gross.get((a, b), 0) - gross.get((b, a), 0)
        if net > 0:
            debts.append(
                PairwiseDebt(debtor_id=a, creditor_id=b, amount=from_cents(net))
            )
        elif net < 0:
            debts.append(
                PairwiseDebt(debtor_id=b, creditor_id=a, amount=from_cents(-net))
            )

    return sorted(debts, key=lambda d: (d.debtor_id, d.creditor_id))


def _group_expenses(group_id: str, expenses: Iterable[Expense]) -> list[Expense]:
    """Materialize the ledger, rejecting expenses from other groups."""
    result = list(expenses)
    for expense in result:
        if expense.group_id != group_id:
            raise ValidationError(
                f"Expense {expense.id} belongs to group {expense.group_id}, "
                f"not {group_id}"
            )
    return result


def _check_settlement_record(expense: Expense) -> None:
    """Settlement records are written fully settled; anything else is corruption."""
    for split in expense.splits:
        if not split.settled:
            logger.error(
                f"Settlement record {expense.id} has unsettled split for "
                f"{split.user_id}"
            )
            raise ConsistencyError(
                f"Settlement record {expense.id} has an unsettled split"
            )
