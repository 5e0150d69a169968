"""Pydantic domain models for Split Ledger."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field

SETTLEMENT_CATEGORY = "Settlement"


def new_id() -> str:
    """Generate an opaque, stable identifier."""
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Normalize to UTC; naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ============================================================================
# People & Groups
# ============================================================================


class User(BaseModel):
    """A registered user."""

    id: str
    name: str
    email: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Member(BaseModel):
    """A user's membership in a group."""

    user_id: str
    status: Literal["pending", "active"] = "pending"
    role: Literal["admin", "member"] = "member"
    joined_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SettlementInstruction(BaseModel):
    """A payment instruction produced by debt simplification."""

    from_user: str
    to_user: str
    amount: Decimal = Field(gt=0)


class Group(BaseModel):
    """A membership container that owns a ledger of expenses.

    ``simplified_debts`` is a derived cache of the latest simplification
    result. It is overwritten on every refresh and never read as ground truth.
    """

    id: str
    name: str
    description: str = ""
    admin_id: str
    members: list[Member] = Field(default_factory=list)
    total_expenses: Decimal = Decimal("0.00")
    simplified_debts: list[SettlementInstruction] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def get_member(self, user_id: str) -> Member | None:
        """Get the membership record for a user, if any."""
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def is_active_member(self, user_id: str) -> bool:
        """True for the admin and for members whose invitation was accepted."""
        if user_id == self.admin_id:
            return True
        member = self.get_member(user_id)
        return member is not None and member.status == "active"

    def active_member_ids(self) -> list[str]:
        """Admin first, then active members in join order."""
        ids = [self.admin_id]
        for member in self.members:
            if member.status == "active" and member.user_id != self.admin_id:
                ids.append(member.user_id)
        return ids


# ============================================================================
# Ledger entries
# ============================================================================


class Split(BaseModel):
    """One participant's share of an expense."""

    user_id: str
    amount: Decimal = Field(ge=0)
    settled: bool = False
    amount_paid: Decimal | None = None

    @property
    def outstanding(self) -> Decimal:
        """Amount still owed on this split (zero once settled)."""
        if self.settled:
            return Decimal("0.00")
        return self.amount - (self.amount_paid or Decimal("0"))


class Expense(BaseModel):
    """A payment event recorded in a group ledger.

    Amount and splits are fixed at creation; only the per-split ``settled``
    flag and ``amount_paid`` change afterwards.
    """

    id: str
    group_id: str
    description: str
    amount: Decimal = Field(gt=0)
    payer_id: str
    date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    category: str = "Other"
    notes: str | None = None
    lifecycle: Literal["active", "settlement"] = "active"
    splits: list[Split]

    @property
    def is_settlement(self) -> bool:
        """True for synthetic transfer records created by balance settlement."""
        return self.lifecycle == "settlement" or self.category == SETTLEMENT_CATEGORY

    def get_split(self, user_id: str) -> Split | None:
        """Get a participant's split, if they are part of this expense."""
        for split in self.splits:
            if split.user_id == user_id:
                return split
        return None


# ============================================================================
# Split policies
# ============================================================================


class EqualSplit(BaseModel):
    """Divide the amount evenly between the participants."""

    kind: Literal["equal"] = "equal"


class UnequalSplit(BaseModel):
    """Caller-supplied amount for every participant."""

    kind: Literal["unequal"] = "unequal"
    amounts: dict[str, Decimal]


SplitPolicy = Annotated[EqualSplit | UnequalSplit, Field(discriminator="kind")]


# ============================================================================
# Derived views
# ============================================================================


class Balance(BaseModel):
    """A member's aggregate position in a group ledger.

    paid: unsettled shares others still owe this member
    owed: unsettled amount this member still owes others
    net: paid - owed
    pending_payments: number of unsettled splits this member owes
    """

    user_id: str
    paid: Decimal = Decimal("0.00")
    owed: Decimal = Decimal("0.00")
    net: Decimal = Decimal("0.00")
    pending_payments: int = 0


class PairwiseDebt(BaseModel):
    """Net amount one member owes another, after netting both directions."""

    debtor_id: str
    creditor_id: str
    amount: Decimal = Field(gt=0)


class SettledSplitRef(BaseModel):
    """A split touched by a balance settlement and the amount applied to it."""

    expense_id: str
    user_id: str
    applied: Decimal
    fully_settled: bool = True


class SettlementOutcome(BaseModel):
    """Result of settling a balance between two members."""

    group_id: str
    from_user: str
    to_user: str
    amount: Decimal
    splits: list[SettledSplitRef] = Field(default_factory=list)
    unapplied: Decimal = Decimal("0.00")
    settlement_expense_id: str | None = None


class UserSummary(BaseModel):
    """A user's position across every group they belong to."""

    user_id: str
    owed_to_user: Decimal = Decimal("0.00")
    user_owes: Decimal = Decimal("0.00")
    net: Decimal = Decimal("0.00")
