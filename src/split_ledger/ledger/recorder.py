"""Settlement recording: mark splits settled and apply balance payments."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..db import Database
from ..exceptions import AuthorizationError, NotFoundError, ValidationError
from ..models import (
    SETTLEMENT_CATEGORY,
    Expense,
    Group,
    SettledSplitRef,
    SettlementOutcome,
    Split,
    as_utc,
    new_id,
)
from .balances import iter_open_debts
from .money import from_cents, parse_amount, to_cents

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    """A planned change to one split during a balance settlement."""

    expense: Expense
    split: Split
    applied_cents: int
    fully_settled: bool


def allocate_payment(
    expenses: Iterable[Expense],
    from_user: str,
    to_user: str,
    amount_cents: int,
) -> tuple[list[Allocation], int]:
    """
    Plan which splits a payment from ``from_user`` to ``to_user`` settles.

    Splits linking the two users are gathered in both directions:
    - forward: from_user's open shares of expenses to_user paid
    - reverse: to_user's open shares of expenses from_user paid

    Reverse splits cancel out against forward debt, so they are all settled
    and their amount is added to the payment budget. Forward splits are then
    settled oldest-first (by expense date, then ID) while the budget lasts; the
    first split the budget cannot cover receives a partial payment.

    Nothing is planned when there is no forward split or the reverse debt
    outweighs the forward debt, because the payment settles nothing in that
    direction.

    Returns:
        Tuple of (allocations, unapplied cents)
    """
    forward: list[tuple[Expense, Split, int]] = []
    reverse: list[tuple[Expense, Split, int]] = []
    for expense, split, cents in iter_open_debts(expenses):
        if split.user_id == from_user and expense.payer_id == to_user:
            forward.append((expense, split, cents))
        elif split.user_id == to_user and expense.payer_id == from_user:
            reverse.append((expense, split, cents))

    forward_total = sum(cents for _, _, cents in forward)
    reverse_total = sum(cents for _, _, cents in reverse)
    if not forward or forward_total <= reverse_total:
        return [], amount_cents

    def fifo(item: tuple[Expense, Split, int]) -> tuple[datetime, str]:
        return as_utc(item[0].date), item[0].id

    allocations = [
        Allocation(expense, split, cents, True)
        for expense, split, cents in sorted(reverse, key=fifo)
    ]

    budget = amount_cents + reverse_total
    for expense, split, cents in sorted(forward, key=fifo):
        if budget == 0:
            break
        if cents <= budget:
            allocations.append(Allocation(expense, split, cents, True))
            budget -= cents
        else:
            allocations.append(Allocation(expense, split, budget, False))
            budget = 0

    return allocations, budget


class SettlementRecorder:
    """Applies settlements to the ledger, each inside a single transaction."""

    def __init__(self, database: Database):
        """Initialize the recorder."""
        self.db = database

    def settle_split(
        self,
        expense_id: str,
        user_id: str,
        actor_id: str,
        amount_paid: Decimal | None = None,
    ) -> bool:
        """
        Mark one participant's split as settled.

        Settling an already-settled split is a no-op. The participant or the
        expense's payer may settle a split.

        Args:
            expense_id: The expense containing the split
            user_id: The participant whose split is settled
            actor_id: The authenticated user
            amount_paid: Optional amount recorded as paid

        Returns:
            True if the split changed, False if it was already settled

        Raises:
            NotFoundError: If the expense, its group or the split is missing
            AuthorizationError: If the actor is not the participant or payer
            ValidationError: On a negative amount_paid
        """
        with self.db.transaction():
            expense = self.db.get_expense(expense_id)
            if expense is None:
                raise NotFoundError("expense", expense_id)

            group = self._get_group(expense.group_id)
            if not group.is_active_member(actor_id):
                raise AuthorizationError(
                    "You do not have access to expenses in this group"
                )

            split = expense.get_split(user_id)
            if split is None:
                raise NotFoundError(
                    "split",
                    f"{expense_id}/{user_id}",
                    f"User {user_id} is not part of expense {expense_id}",
                )

            if actor_id not in (user_id, expense.payer_id):
                raise AuthorizationError(
                    "Only the participant or the payer can settle this split"
                )

            if split.settled:
                logger.debug(f"Split {expense_id}/{user_id} already settled")
                return False

            if amount_paid is not None:
                paid = parse_amount(amount_paid, field="amount_paid")
                if paid < 0:
                    raise ValidationError("amount_paid must not be negative")
                split.amount_paid = paid

            split.settled = True
            self.db.update_split(expense_id, split)

        logger.info(f"Settled split {expense_id}/{user_id} (by {actor_id})")
        return True

    def settle_balance(
        self,
        group_id: str,
        from_user: str,
        to_user: str,
        amount: Decimal,
        actor_id: str,
    ) -> SettlementOutcome:
        """
        Record a payment of ``amount`` from one member to another.

        Open splits linking the two members are settled as planned by
        allocate_payment. If the payment settles nothing, a settlement-category
        expense is written as an audit record instead; it is created fully
        settled and never affects balances.

        Raises:
            ValidationError: On malformed IDs, identical users, a non-positive
                amount, or a party who is not an active member
            NotFoundError: If the group is missing
            AuthorizationError: If the actor is neither party
        """
        for name, value in (("from_user", from_user), ("to_user", to_user)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty ID")
        if from_user == to_user:
            raise ValidationError("Cannot settle a balance with yourself")

        total = parse_amount(amount)
        if total <= 0:
            raise ValidationError(f"Amount must be greater than 0, got {total}")

        if actor_id not in (from_user, to_user):
            raise AuthorizationError(
                "Only one of the two parties can settle a balance between them"
            )

        outcome = SettlementOutcome(
            group_id=group_id, from_user=from_user, to_user=to_user, amount=total
        )

        with self.db.transaction():
            group = self._get_group(group_id)
            for user_id in (from_user, to_user):
                if not group.is_active_member(user_id):
                    raise ValidationError(
                        f"User {user_id} is not an active member of group {group_id}"
                    )

            expenses = self.db.get_expenses_for_group(group_id)
            allocations, unapplied = allocate_payment(
                expenses, from_user, to_user, to_cents(total)
            )

            if not allocations:
                record = self._settlement_record(group_id, from_user, to_user, total)
                self.db.save_expense(record)
                outcome.settlement_expense_id = record.id
                logger.info(
                    f"No open splits between {from_user} and {to_user}; "
                    f"recorded settlement {record.id} for {total}"
                )
                return outcome

            for allocation in allocations:
                split = allocation.split
                if allocation.fully_settled:
                    split.settled = True
                else:
                    already = split.amount_paid or Decimal("0")
                    split.amount_paid = already + from_cents(allocation.applied_cents)
                self.db.update_split(allocation.expense.id, split)

                outcome.splits.append(
                    SettledSplitRef(
                        expense_id=allocation.expense.id,
                        user_id=split.user_id,
                        applied=from_cents(allocation.applied_cents),
                        fully_settled=allocation.fully_settled,
                    )
                )

            outcome.unapplied = from_cents(unapplied)
            if unapplied:
                record = self._settlement_record(
                    group_id, from_user, to_user, outcome.unapplied
                )
                self.db.save_expense(record)
                outcome.settlement_expense_id = record.id

        logger.info(
            f"Settled {total} from {from_user} to {to_user} across "
            f"{len(outcome.splits)} splits (unapplied: {outcome.unapplied})"
        )
        return outcome

    def _get_group(self, group_id: str) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("group", group_id)
        return group

    @staticmethod
    def _settlement_record(
        group_id: str, from_user: str, to_user: str, amount: Decimal
    ) -> Expense:
        return Expense(
            id=new_id(),
            group_id=group_id,
            description=f"Settlement from {from_user} to {to_user}",
            amount=amount,
            payer_id=from_user,
            category=SETTLEMENT_CATEGORY,
            lifecycle="settlement",
            splits=[
                Split(user_id=from_user, amount=Decimal("0.00"), settled=True),
                Split(
                    user_id=to_user, amount=amount, settled=True, amount_paid=amount
                ),
            ],
        )
