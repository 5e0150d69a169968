"""Split calculation: turn an expense amount and a split policy into shares."""

import logging
from collections.abc import Sequence
from decimal import Decimal

from ..exceptions import ConsistencyError, ValidationError
from ..models import EqualSplit, Split, SplitPolicy, UnequalSplit
from .money import from_cents, parse_amount, to_cents

logger = logging.getLogger(__name__)

# Allowed mismatch between explicit amounts and the total, per participant
UNEQUAL_EPSILON_CENTS = 1


def compute_splits(
    amount: Decimal,
    participants: Sequence[str],
    policy: SplitPolicy,
    payer: str,
) -> list[Split]:
    """
    Compute each participant's share of an expense.

    Splits are returned in participant order. The payer's own split (if the
    payer participates) is created settled; every other split starts unsettled.
    The returned amounts always sum to ``amount`` exactly.

    Args:
        amount: Expense total (positive, at most 2 decimal places)
        participants: User IDs sharing the expense
        policy: EqualSplit or UnequalSplit(amounts=...)
        payer: User ID of whoever paid

    Returns:
        One Split per participant

    Raises:
        ValidationError: On a non-positive amount, empty or duplicate
            participants, or explicit amounts that don't add up
        ConsistencyError: If the computed shares fail to reconcile
    """
    total = parse_amount(amount)
    if total <= 0:
        raise ValidationError(f"Amount must be greater than 0, got {total}")

    if not participants:
        raise ValidationError("At least one participant is required")

    if len(set(participants)) != len(participants):
        raise ValidationError("Duplicate participants in split")

    total_cents = to_cents(total)

    if isinstance(policy, EqualSplit):
        shares = _equal_shares(total_cents, participants)
    elif isinstance(policy, UnequalSplit):
        shares = _unequal_shares(total_cents, participants, policy.amounts)
    else:
        raise ValidationError(f"Unknown split policy: {policy!r}")

    if sum(shares.values()) != total_cents:
        logger.error(
            f"Split shares {shares} do not reconcile with total {total_cents} cents"
        )
        raise ConsistencyError(
            f"Split amounts sum to {from_cents(sum(shares.values()))}, "
            f"expected {total}"
        )

    return [
        Split(
            user_id=user_id,
            amount=from_cents(shares[user_id]),
            settled=user_id == payer,
        )
        for user_id in participants
    ]


def _equal_shares(total_cents: int, participants: Sequence[str]) -> dict[str, int]:
    """Even division; leftover cents go one each to the lowest user IDs."""
    base, remainder = divmod(total_cents, len(participants))
    shares = {user_id: base for user_id in participants}
    for user_id in sorted(participants)[:remainder]:
        shares[user_id] += 1
    return shares


def _unequal_shares(
    total_cents: int,
    participants: Sequence[str],
    explicit: dict[str, Decimal],
) -> dict[str, int]:
    """
    Validate explicit amounts and absorb any small residual.

    Steps:
    1. Every participant needs an entry, and no entry may name an outsider
    2. Residual = total - sum(entries)
    3. If the residual is within 1 cent per participant, move it onto the
       largest share (lowest user ID on ties)
    4. Otherwise the amounts are inconsistent with the total
    """
    missing = [user_id for user_id in participants if user_id not in explicit]
    if missing:
        raise ValidationError(f"Missing split amount for: {', '.join(missing)}")

    extra = sorted(set(explicit) - set(participants))
    if extra:
        raise ValidationError(
            f"Split amounts given for non-participants: {', '.join(extra)}"
        )

    shares: dict[str, int] = {}
    for user_id in participants:
        value = parse_amount(explicit[user_id], field=f"split amount for {user_id}")
        if value < 0:
            raise ValidationError(f"Split amount for {user_id} must not be negative")
        shares[user_id] = to_cents(value)

    residual = total_cents - sum(shares.values())
    threshold = UNEQUAL_EPSILON_CENTS * len(participants)

    if abs(residual) > threshold:
        raise ValidationError(
            f"Split amounts sum to {from_cents(sum(shares.values()))}, "
            f"expected {from_cents(total_cents)}"
        )

    if residual != 0:
        largest = min(shares, key=lambda user_id: (-shares[user_id], user_id))
        if shares[largest] + residual < 0:
            raise ValidationError("Split amounts cannot absorb rounding residual")
        shares[largest] += residual

        logger.info(
            f"Applied rounding adjustment: {residual} cents to {largest}'s share"
        )

    return shares
