"""Service layer that composes the ledger engine with persistence.

Route handlers, the CLI and the MCP server call into this module. Every
mutating operation runs in a single database transaction; the derived
``simplified_debts`` cache is refreshed afterwards, on a worker thread by
default, and a failed refresh is logged without affecting the caller.
"""

import logging
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from decimal import Decimal

from ..config import Settings
from ..db import Database
from ..exceptions import AuthorizationError, NotFoundError, ValidationError
from ..models import (
    SETTLEMENT_CATEGORY,
    Balance,
    EqualSplit,
    Expense,
    Group,
    Member,
    PairwiseDebt,
    SettlementInstruction,
    SettlementOutcome,
    SplitPolicy,
    UnequalSplit,
    User,
    UserSummary,
    as_utc,
    new_id,
)
from .balances import compute_group_balances, compute_pairwise_debts
from .money import from_cents, parse_amount, to_cents
from .recorder import SettlementRecorder
from .simplifier import simplify_debts
from .splitter import compute_splits

logger = logging.getLogger(__name__)


class LedgerService:
    """Shared-expense ledger operations for groups of users."""

    def __init__(self, settings: Settings, database: Database):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        self.recorder = SettlementRecorder(database)
        self._executor: ThreadPoolExecutor | None = None
        self._pending: list[Future] = []
        if settings.debt_refresh == "background":
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="debt-refresh"
            )

    def close(self):
        """Wait for queued cache refreshes and stop the worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    # ========================================================================
    # Users
    # ========================================================================

    def register_user(self, name: str, email: str) -> User:
        """Register a user. Emails are unique and stored lowercase."""
        name = name.strip()
        email = email.strip().lower()
        if not name:
            raise ValidationError("Name is required")
        if "@" not in email:
            raise ValidationError(f"Invalid email address: {email!r}")
        if self.db.get_user_by_email(email):
            raise ValidationError(f"A user with email {email} already exists")

        user = User(id=new_id(), name=name, email=email)
        self.db.save_user(user)
        logger.info(f"Registered user {user.id} ({email})")
        return user

    def get_user(self, user_id: str) -> User:
        """Get a user by ID."""
        user = self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    def resolve_user(self, ref: str) -> User:
        """Look a user up by ID or email."""
        user = self.db.get_user(ref)
        if user is None and "@" in ref:
            user = self.db.get_user_by_email(ref.strip().lower())
        if user is None:
            raise NotFoundError("user", ref)
        return user

    def get_users(self, user_ids: Sequence[str]) -> dict[str, User]:
        """Get several users keyed by ID (missing IDs are skipped)."""
        return self.db.get_users(list(user_ids))

    # ========================================================================
    # Groups
    # ========================================================================

    def create_group(self, name: str, admin_id: str, description: str = "") -> Group:
        """Create a group with ``admin_id`` as its single admin."""
        if not name.strip():
            raise ValidationError("Group name is required")
        self.get_user(admin_id)

        group = Group(
            id=new_id(),
            name=name.strip(),
            description=description.strip(),
            admin_id=admin_id,
            members=[Member(user_id=admin_id, status="active", role="admin")],
        )
        self.db.save_group(group)
        logger.info(f"Created group {group.id} ({group.name}) for {admin_id}")
        return group

    def get_group(self, group_id: str, actor_id: str) -> Group:
        """Get a group the actor can see (admin or active member)."""
        group = self._require_group(group_id)
        self._require_access(group, actor_id)
        return group

    def list_groups(self, actor_id: str) -> list[Group]:
        """Groups where the actor is admin or an active member."""
        return self.db.get_groups_for_user(actor_id)

    def invite_member(self, group_id: str, user_ref: str, actor_id: str) -> Member:
        """
        Invite a user (by ID or email) to a group.

        Only the admin may invite. The invitee joins as ``pending`` and has no
        access until they accept.
        """
        group = self._require_group(group_id)
        if actor_id != group.admin_id:
            raise AuthorizationError("Only the group admin can invite members")

        user = self.resolve_user(user_ref)
        if group.get_member(user.id) or user.id == group.admin_id:
            raise ValidationError(f"User {user.id} is already a member of the group")

        member = Member(user_id=user.id, status="pending", role="member")
        self.db.save_member(group_id, member)
        logger.info(f"Invited {user.id} to group {group_id}")
        return member

    def accept_invite(self, group_id: str, actor_id: str) -> Member:
        """Accept a pending invitation. Accepting twice is a no-op."""
        group = self._require_group(group_id)
        member = group.get_member(actor_id)
        if member is None:
            raise NotFoundError(
                "invitation",
                f"{group_id}/{actor_id}",
                f"No invitation for {actor_id} in group {group_id}",
            )

        if member.status != "active":
            member.status = "active"
            self.db.save_member(group_id, member)
            logger.info(f"{actor_id} joined group {group_id}")
        return member

    def leave_group(self, group_id: str, actor_id: str):
        """
        Leave a group.

        The admin cannot leave, and nobody can leave while they still owe or
        are owed money in the group.
        """
        group = self._require_group(group_id)
        if actor_id == group.admin_id:
            raise ValidationError("The group admin cannot leave the group")
        if group.get_member(actor_id) is None:
            raise NotFoundError(
                "member", actor_id, f"You are not a member of group {group_id}"
            )

        with self.db.transaction():
            balance = self._compute_balances(group).get(actor_id)
            if balance and (balance.paid or balance.owed):
                raise ValidationError(
                    "Settle your balance in this group before leaving "
                    f"(paid {balance.paid}, owed {balance.owed})"
                )
            self.db.delete_member(group_id, actor_id)

        logger.info(f"{actor_id} left group {group_id}")

    # ========================================================================
    # Expenses
    # ========================================================================

    def create_expense(
        self,
        group_id: str,
        payer_id: str,
        amount: Decimal | int | str,
        participants: Sequence[str] | None = None,
        policy: SplitPolicy | None = None,
        *,
        description: str,
        category: str | None = None,
        notes: str | None = None,
        date: datetime | None = None,
    ) -> Expense:
        """
        Record an expense paid by ``payer_id`` and split it among participants.

        Args:
            group_id: The group the expense belongs to
            payer_id: The authenticated user who paid
            amount: Total paid (positive, 2 decimal places)
            participants: Who shares the expense. Defaults to the keys of an
                UnequalSplit, or to every active member for an equal split.
            policy: EqualSplit() (default) or UnequalSplit(amounts=...)
            description: What the expense was for
            category: Free-form category (``Settlement`` is reserved)
            notes: Optional notes
            date: When the expense happened (defaults to now)

        Returns:
            The persisted expense

        Raises:
            NotFoundError: If the group is missing
            AuthorizationError: If the payer is not an active member
            ValidationError: On bad amounts, participants or categories
        """
        if not description or not description.strip():
            raise ValidationError("Description is required")

        category = (category or self.settings.default_category).strip()
        if category == SETTLEMENT_CATEGORY:
            raise ValidationError(
                f"Category {SETTLEMENT_CATEGORY!r} is reserved for settlement records"
            )

        policy = policy or EqualSplit()
        total = parse_amount(amount)

        with self.db.transaction():
            group = self._require_group(group_id)
            if not group.is_active_member(payer_id):
                raise AuthorizationError(
                    "You do not have access to add expenses to this group"
                )

            if participants is None:
                if isinstance(policy, UnequalSplit):
                    participants = list(policy.amounts)
                else:
                    participants = group.active_member_ids()

            outsiders = [p for p in participants if not group.is_active_member(p)]
            if outsiders:
                raise ValidationError(
                    f"Not active members of this group: {', '.join(outsiders)}"
                )

            expense = Expense(
                id=new_id(),
                group_id=group_id,
                description=description.strip(),
                amount=total,
                payer_id=payer_id,
                date=as_utc(date) if date else datetime.now(UTC),
                category=category,
                notes=notes,
                splits=compute_splits(total, list(participants), policy, payer_id),
            )

            self.db.save_expense(expense)
            self.db.update_group_totals(group_id, expense.amount)

        logger.info(
            f"Created expense {expense.id} in group {group_id}: "
            f"{expense.amount} paid by {payer_id}, split {len(expense.splits)} ways"
        )

        self._schedule_refresh(group_id)
        return expense

    def get_expense(self, expense_id: str, actor_id: str) -> Expense:
        """Get an expense from a group the actor can see."""
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("expense", expense_id)
        self._require_access(self._require_group(expense.group_id), actor_id)
        return expense

    def list_group_expenses(self, group_id: str, actor_id: str) -> list[Expense]:
        """All expenses of a group, newest first."""
        group = self.get_group(group_id, actor_id)
        expenses = self.db.get_expenses_for_group(group.id)
        return sorted(expenses, key=lambda e: (as_utc(e.date), e.id), reverse=True)

    # ========================================================================
    # Balances & debts
    # ========================================================================

    def get_balances(self, group_id: str, actor_id: str) -> list[Balance]:
        """Every member's balance, recomputed from the ledger."""
        group = self.get_group(group_id, actor_id)
        return list(self._compute_balances(group).values())

    def get_pairwise_debts(self, group_id: str, actor_id: str) -> list[PairwiseDebt]:
        """Net debt between each pair of users that still owe each other."""
        group = self.get_group(group_id, actor_id)
        return compute_pairwise_debts(
            group.id, self.db.get_expenses_for_group(group.id)
        )

    def get_simplified_debts(
        self, group_id: str, actor_id: str
    ) -> list[SettlementInstruction]:
        """Freshly simplified payment plan for a group."""
        group = self.get_group(group_id, actor_id)
        return simplify_debts(self._compute_balances(group))

    def refresh_simplified_debts(self, group_id: str) -> list[SettlementInstruction]:
        """Recompute and overwrite a group's cached payment plan."""
        group = self._require_group(group_id)
        instructions = simplify_debts(self._compute_balances(group))
        self.db.save_simplified_debts(group_id, instructions)
        logger.info(
            f"Refreshed simplified debts for group {group_id}: "
            f"{len(instructions)} payments"
        )
        return instructions

    def get_user_summary(self, user_id: str) -> UserSummary:
        """A user's totals across all of their groups."""
        self.get_user(user_id)

        owed_to_user = 0
        user_owes = 0
        for group in self.db.get_groups_for_user(user_id):
            balance = self._compute_balances(group).get(user_id)
            if balance:
                owed_to_user += to_cents(balance.paid)
                user_owes += to_cents(balance.owed)

        return UserSummary(
            user_id=user_id,
            owed_to_user=from_cents(owed_to_user),
            user_owes=from_cents(user_owes),
            net=from_cents(owed_to_user - user_owes),
        )

    # ========================================================================
    # Settlement
    # ========================================================================

    def settle_split(self, expense_id: str, user_id: str, actor_id: str) -> bool:
        """Mark a participant's split settled. Returns False if it already was."""
        changed = self.recorder.settle_split(expense_id, user_id, actor_id)
        if changed:
            self._schedule_refresh(self._group_of(expense_id))
        return changed

    def record_payment(
        self,
        expense_id: str,
        user_id: str,
        amount_paid: Decimal | int | str,
        actor_id: str,
    ) -> bool:
        """Payer-side variant of settle_split that also records the amount paid."""
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("expense", expense_id)
        if actor_id != expense.payer_id:
            raise AuthorizationError(
                "Only the payer can update payment status for this expense"
            )

        changed = self.recorder.settle_split(
            expense_id, user_id, actor_id, amount_paid=parse_amount(amount_paid)
        )
        if changed:
            self._schedule_refresh(expense.group_id)
        return changed

    def settle_balance(
        self,
        group_id: str,
        from_user: str,
        to_user: str,
        amount: Decimal | int | str,
        actor_id: str,
    ) -> SettlementOutcome:
        """Record that ``from_user`` paid ``to_user`` ``amount``."""
        outcome = self.recorder.settle_balance(
            group_id, from_user, to_user, parse_amount(amount), actor_id
        )
        self._schedule_refresh(group_id)
        return outcome

    # ========================================================================
    # Cache refresh
    # ========================================================================

    def wait_for_refresh(self, timeout: float | None = None):
        """Block until queued cache refreshes finish."""
        pending, self._pending = self._pending, []
        wait(pending, timeout=timeout)

    def _schedule_refresh(self, group_id: str):
        if self._executor is None:
            self._refresh_quietly(group_id)
            return

        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(self._executor.submit(self._refresh_quietly, group_id))

    def _refresh_quietly(self, group_id: str):
        try:
            self.refresh_simplified_debts(group_id)
        except Exception:
            logger.exception(f"Failed to refresh simplified debts for {group_id}")

    # ========================================================================
    # Helpers
    # ========================================================================

    def _compute_balances(self, group: Group) -> dict[str, Balance]:
        return compute_group_balances(
            group.id,
            self.db.get_expenses_for_group(group.id),
            group.active_member_ids(),
        )

    def _require_group(self, group_id: str) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("group", group_id)
        return group

    @staticmethod
    def _require_access(group: Group, actor_id: str):
        if not group.is_active_member(actor_id):
            raise AuthorizationError("You do not have access to this group")

    def _group_of(self, expense_id: str) -> str:
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("expense", expense_id)
        return expense.group_id
