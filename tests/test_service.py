"""Tests for the LedgerService layer."""

import logging
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.exceptions import (
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from split_ledger.ledger.service import LedgerService
from split_ledger.models import SETTLEMENT_CATEGORY, UnequalSplit


@pytest.fixture
def settings(tmp_path):
    """Settings that refresh the debt cache synchronously."""
    return Settings(database_path=tmp_path / "test.db", debt_refresh="inline")


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(settings, db):
    """Create a LedgerService instance."""
    with LedgerService(settings, db) as service:
        yield service


@pytest.fixture
def users(service):
    """Register Alice, Bob, Carol and Dave."""
    return {
        name: service.register_user(name.capitalize(), f"{name}@example.com")
        for name in ("alice", "bob", "carol", "dave")
    }


@pytest.fixture
def group(service, users):
    """A group administered by Alice, with Bob and Carol as active members."""
    alice = users["alice"].id
    created = service.create_group("Ski trip", alice, "Annual trip")
    for name in ("bob", "carol"):
        service.invite_member(created.id, users[name].email, alice)
        service.accept_invite(created.id, users[name].id)
    return service.get_group(created.id, alice)


@pytest.fixture
def ids(users):
    return {name: user.id for name, user in users.items()}


@pytest.fixture
def dinner(service, group, ids):
    """Alice paid 90.00 split equally between Alice, Bob and Carol."""
    return service.create_expense(
        group.id, ids["alice"], "90.00", description="Dinner"
    )


def net_by_name(service, group, ids) -> dict[str, Decimal]:
    balances = {b.user_id: b for b in service.get_balances(group.id, ids["alice"])}
    return {
        name: balances[user_id].net
        for name, user_id in ids.items()
        if user_id in balances
    }


class TestUsers:
    """Test user registration and lookup."""

    def test_register_normalizes_email(self, service):
        user = service.register_user("  Erin ", "Erin@Example.COM")
        assert user.name == "Erin"
        assert user.email == "erin@example.com"

    def test_duplicate_email_rejected(self, service, users):
        with pytest.raises(ValidationError, match="already exists"):
            service.register_user("Other Alice", "alice@example.com")

    def test_invalid_email_rejected(self, service):
        with pytest.raises(ValidationError):
            service.register_user("Erin", "not-an-email")

    def test_resolve_by_id_or_email(self, service, users):
        alice = users["alice"]
        assert service.resolve_user(alice.id) == alice
        assert service.resolve_user("ALICE@example.com") == alice

    def test_resolve_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.resolve_user("ghost@example.com")


class TestGroups:
    """Test group creation, invitations and leaving."""

    def test_admin_is_active_member(self, service, ids):
        group = service.create_group("Flat", ids["alice"])
        assert group.active_member_ids() == [ids["alice"]]
        assert group.members[0].role == "admin"

    def test_members_in_join_order(self, group, ids):
        assert group.active_member_ids() == [ids["alice"], ids["bob"], ids["carol"]]

    def test_pending_invitee_has_no_access(self, service, group, ids):
        service.invite_member(group.id, ids["dave"], ids["alice"])

        assert service.list_groups(ids["dave"]) == []
        with pytest.raises(AuthorizationError):
            service.get_group(group.id, ids["dave"])

        service.accept_invite(group.id, ids["dave"])
        assert [g.id for g in service.list_groups(ids["dave"])] == [group.id]

    def test_accept_twice_is_noop(self, service, group, ids):
        member = service.accept_invite(group.id, ids["bob"])
        assert member.status == "active"

    def test_accept_without_invitation(self, service, group, ids):
        with pytest.raises(NotFoundError):
            service.accept_invite(group.id, ids["dave"])

    def test_only_admin_can_invite(self, service, group, ids):
        with pytest.raises(AuthorizationError):
            service.invite_member(group.id, ids["dave"], ids["bob"])

    def test_cannot_invite_existing_member(self, service, group, ids):
        with pytest.raises(ValidationError, match="already a member"):
            service.invite_member(group.id, ids["bob"], ids["alice"])

    def test_unknown_group(self, service, ids):
        with pytest.raises(NotFoundError):
            service.get_group("missing", ids["alice"])

    def test_leave_blocked_while_owing(self, service, group, ids, dinner):
        with pytest.raises(ValidationError, match="Settle your balance"):
            service.leave_group(group.id, ids["bob"])

    def test_leave_after_settling(self, service, group, ids, dinner):
        service.settle_balance(group.id, ids["bob"], ids["alice"], "30.00", ids["bob"])
        service.leave_group(group.id, ids["bob"])

        assert service.list_groups(ids["bob"]) == []
        remaining = service.get_group(group.id, ids["alice"]).active_member_ids()
        assert ids["bob"] not in remaining

    def test_admin_cannot_leave(self, service, group, ids):
        with pytest.raises(ValidationError, match="admin"):
            service.leave_group(group.id, ids["alice"])


class TestCreateExpense:
    """Test expense creation through the service."""

    def test_defaults_to_equal_split_among_active_members(
        self, service, group, ids, dinner
    ):
        assert [s.user_id for s in dinner.splits] == [
            ids["alice"],
            ids["bob"],
            ids["carol"],
        ]
        assert [s.amount for s in dinner.splits] == [Decimal("30.00")] * 3
        assert [s.settled for s in dinner.splits] == [True, False, False]
        assert dinner.category == "Other"

    def test_updates_group_total(self, service, group, ids, dinner):
        assert service.get_group(group.id, ids["alice"]).total_expenses == Decimal(
            "90.00"
        )

    def test_unequal_split_defaults_participants_to_its_keys(
        self, service, group, ids
    ):
        policy = UnequalSplit(
            amounts={ids["bob"]: Decimal("7.50"), ids["carol"]: Decimal("2.50")}
        )
        expense = service.create_expense(
            group.id, ids["alice"], "10.00", policy=policy, description="Taxi"
        )
        assert {s.user_id: s.amount for s in expense.splits} == {
            ids["bob"]: Decimal("7.50"),
            ids["carol"]: Decimal("2.50"),
        }
        assert not any(s.settled for s in expense.splits)

    def test_explicit_participants(self, service, group, ids):
        expense = service.create_expense(
            group.id,
            ids["bob"],
            "10.00",
            [ids["bob"], ids["carol"]],
            description="Coffee",
            category="Food",
            notes="Airport",
        )
        assert expense.category == "Food"
        assert expense.notes == "Airport"
        assert service.get_expense(expense.id, ids["carol"]) == expense

    def test_outsider_cannot_add_expense(self, service, group, ids):
        with pytest.raises(AuthorizationError):
            service.create_expense(group.id, ids["dave"], "10.00", description="x")

    def test_pending_member_cannot_participate(self, service, group, ids):
        service.invite_member(group.id, ids["dave"], ids["alice"])
        with pytest.raises(ValidationError, match="Not active members"):
            service.create_expense(
                group.id,
                ids["alice"],
                "10.00",
                [ids["alice"], ids["dave"]],
                description="x",
            )

    def test_settlement_category_reserved(self, service, group, ids):
        with pytest.raises(ValidationError, match="reserved"):
            service.create_expense(
                group.id,
                ids["alice"],
                "10.00",
                description="x",
                category=SETTLEMENT_CATEGORY,
            )

    def test_description_required(self, service, group, ids):
        with pytest.raises(ValidationError):
            service.create_expense(group.id, ids["alice"], "10.00", description=" ")

    def test_rollback_when_totals_update_fails(self, service, db, group, ids):
        with patch.object(
            db, "update_group_totals", side_effect=RuntimeError("disk full")
        ):
            with pytest.raises(RuntimeError):
                service.create_expense(
                    group.id, ids["alice"], "10.00", description="Lost"
                )

        assert service.list_group_expenses(group.id, ids["alice"]) == []
        assert service.get_group(group.id, ids["alice"]).total_expenses == Decimal(
            "0.00"
        )

    def test_list_newest_first(self, service, group, ids):
        for day in (1, 5, 3):
            service.create_expense(
                group.id,
                ids["alice"],
                "3.00",
                description=f"Day {day}",
                date=datetime(2024, 1, day, tzinfo=UTC),
            )
        expenses = service.list_group_expenses(group.id, ids["bob"])
        assert [e.description for e in expenses] == ["Day 5", "Day 3", "Day 1"]

    def test_aware_dates_stored_as_utc(self, service, group, ids):
        eastern = timezone(timedelta(hours=-5))
        late = service.create_expense(
            group.id,
            ids["alice"],
            "3.00",
            description="Late night",
            date=datetime(2024, 1, 1, 23, 0, tzinfo=eastern),
        )
        service.create_expense(
            group.id,
            ids["alice"],
            "3.00",
            description="Early morning",
            date=datetime(2024, 1, 2, 1, 0, tzinfo=UTC),
        )

        stored = service.get_expense(late.id, ids["alice"])
        assert stored.date == datetime(2024, 1, 2, 4, 0, tzinfo=UTC)
        assert stored.date.utcoffset() == timedelta(0)

        expenses = service.list_group_expenses(group.id, ids["bob"])
        assert [e.description for e in expenses] == ["Late night", "Early morning"]

    def test_outsider_cannot_read_expense(self, service, group, ids, dinner):
        with pytest.raises(AuthorizationError):
            service.get_expense(dinner.id, ids["dave"])


class TestBalancesAndDebts:
    """Test balances and debt views computed by the service."""

    def test_balances_after_dinner(self, service, group, ids, dinner):
        assert net_by_name(service, group, ids) == {
            "alice": Decimal("60.00"),
            "bob": Decimal("-30.00"),
            "carol": Decimal("-30.00"),
        }

    def test_balances_are_idempotent(self, service, group, ids, dinner):
        first = service.get_balances(group.id, ids["alice"])
        second = service.get_balances(group.id, ids["alice"])
        assert first == second

    def test_outsider_cannot_view_balances(self, service, group, ids):
        with pytest.raises(AuthorizationError):
            service.get_balances(group.id, ids["dave"])

    def test_simplified_debts(self, service, group, ids, dinner):
        plan = service.get_simplified_debts(group.id, ids["bob"])
        assert {(i.from_user, i.to_user, i.amount) for i in plan} == {
            (ids["bob"], ids["alice"], Decimal("30.00")),
            (ids["carol"], ids["alice"], Decimal("30.00")),
        }

    def test_cache_refreshed_after_expense(self, service, db, group, ids, dinner):
        cached = db.get_group(group.id).simplified_debts
        assert cached == service.get_simplified_debts(group.id, ids["alice"])

    def test_pairwise_debts(self, service, group, ids, dinner):
        service.create_expense(
            group.id,
            ids["bob"],
            "30.00",
            [ids["alice"], ids["bob"]],
            description="Lift passes",
        )
        debts = {
            (d.debtor_id, d.creditor_id): d.amount
            for d in service.get_pairwise_debts(group.id, ids["carol"])
        }
        assert debts == {
            (ids["bob"], ids["alice"]): Decimal("15.00"),
            (ids["carol"], ids["alice"]): Decimal("30.00"),
        }

    def test_user_summary(self, service, group, ids, dinner):
        alice = service.get_user_summary(ids["alice"])
        assert alice.owed_to_user == Decimal("60.00")
        assert alice.user_owes == Decimal("0.00")
        assert alice.net == Decimal("60.00")

        bob = service.get_user_summary(ids["bob"])
        assert bob.user_owes == Decimal("30.00")
        assert bob.net == Decimal("-30.00")


class TestSettleSplit:
    """Test per-split settlement."""

    def test_participant_settles_own_split(self, service, group, ids, dinner):
        assert service.settle_split(dinner.id, ids["bob"], ids["bob"]) is True
        assert net_by_name(service, group, ids)["bob"] == Decimal("0.00")
        assert net_by_name(service, group, ids)["alice"] == Decimal("30.00")

    def test_settling_twice_is_noop(self, service, group, ids, dinner):
        service.settle_split(dinner.id, ids["bob"], ids["bob"])
        assert service.settle_split(dinner.id, ids["bob"], ids["bob"]) is False

    def test_payer_can_settle_participant(self, service, group, ids, dinner):
        assert service.settle_split(dinner.id, ids["carol"], ids["alice"]) is True

    def test_other_member_cannot_settle(self, service, group, ids, dinner):
        with pytest.raises(AuthorizationError):
            service.settle_split(dinner.id, ids["bob"], ids["carol"])

    def test_unknown_expense(self, service, group, ids):
        with pytest.raises(NotFoundError):
            service.settle_split("missing", ids["bob"], ids["bob"])

    def test_user_not_in_expense(self, service, group, ids, dinner):
        with pytest.raises(NotFoundError):
            service.settle_split(dinner.id, ids["dave"], ids["alice"])

    def test_record_payment_by_payer(self, service, group, ids, dinner):
        assert service.record_payment(dinner.id, ids["bob"], "30.00", ids["alice"])

        split = service.get_expense(dinner.id, ids["alice"]).get_split(ids["bob"])
        assert split.settled is True
        assert split.amount_paid == Decimal("30.00")

    def test_record_payment_payer_only(self, service, group, ids, dinner):
        with pytest.raises(AuthorizationError):
            service.record_payment(dinner.id, ids["bob"], "30.00", ids["bob"])

    def test_record_negative_payment(self, service, group, ids, dinner):
        with pytest.raises(ValidationError):
            service.record_payment(dinner.id, ids["bob"], "-1.00", ids["alice"])


class TestSettleBalance:
    """Test settling a balance between two members."""

    @pytest.fixture
    def two_expenses(self, service, group, ids):
        """Bob owes Alice 15.00 (Jan 1) and 20.00 (Jan 2)."""
        return [
            service.create_expense(
                group.id,
                ids["alice"],
                amount,
                [ids["alice"], ids["bob"]],
                description=f"Expense {day}",
                date=datetime(2024, 1, day, tzinfo=UTC),
            )
            for day, amount in ((1, "30.00"), (2, "40.00"))
        ]

    def test_oldest_split_settled_first(self, service, group, ids, two_expenses):
        first, second = two_expenses
        outcome = service.settle_balance(
            group.id, ids["bob"], ids["alice"], "20.00", ids["bob"]
        )

        assert [(r.expense_id, r.applied, r.fully_settled) for r in outcome.splits] == [
            (first.id, Decimal("15.00"), True),
            (second.id, Decimal("5.00"), False),
        ]
        assert outcome.unapplied == Decimal("0.00")
        assert outcome.settlement_expense_id is None

        partial = service.get_expense(second.id, ids["bob"]).get_split(ids["bob"])
        assert partial.settled is False
        assert partial.amount_paid == Decimal("5.00")
        assert net_by_name(service, group, ids)["bob"] == Decimal("-15.00")

    def test_overpayment_unapplied(self, service, group, ids, two_expenses):
        outcome = service.settle_balance(
            group.id, ids["bob"], ids["alice"], "50.00", ids["bob"]
        )
        assert all(r.fully_settled for r in outcome.splits)
        assert outcome.unapplied == Decimal("15.00")
        assert net_by_name(service, group, ids)["bob"] == Decimal("0.00")
        assert net_by_name(service, group, ids)["alice"] == Decimal("0.00")

        record = service.get_expense(outcome.settlement_expense_id, ids["alice"])
        assert record.is_settlement
        assert record.amount == Decimal("15.00")
        assert record.payer_id == ids["bob"]
        assert service.get_group(group.id, ids["alice"]).total_expenses == Decimal(
            "70.00"
        )

    def test_either_party_may_record(self, service, group, ids, two_expenses):
        outcome = service.settle_balance(
            group.id, ids["bob"], ids["alice"], "35.00", ids["alice"]
        )
        assert len(outcome.splits) == 2

    def test_settlement_record_when_nothing_to_settle(
        self, service, group, ids, dinner
    ):
        before = service.get_balances(group.id, ids["alice"])
        outcome = service.settle_balance(
            group.id, ids["carol"], ids["bob"], "10.00", ids["carol"]
        )

        assert outcome.splits == []
        assert outcome.settlement_expense_id is not None
        assert service.get_balances(group.id, ids["alice"]) == before
        assert service.get_group(group.id, ids["alice"]).total_expenses == Decimal(
            "90.00"
        )

        record = service.get_expense(outcome.settlement_expense_id, ids["bob"])
        assert record.is_settlement
        assert record.category == SETTLEMENT_CATEGORY
        assert all(split.settled for split in record.splits)

    def test_third_party_cannot_settle(self, service, group, ids, dinner):
        with pytest.raises(AuthorizationError):
            service.settle_balance(
                group.id, ids["bob"], ids["alice"], "10.00", ids["carol"]
            )

    def test_cannot_settle_with_yourself(self, service, group, ids):
        with pytest.raises(ValidationError):
            service.settle_balance(
                group.id, ids["bob"], ids["bob"], "10.00", ids["bob"]
            )

    @pytest.mark.parametrize("amount", ["0", "-5.00", "1.234"])
    def test_invalid_amount(self, service, group, ids, amount):
        with pytest.raises(ValidationError):
            service.settle_balance(
                group.id, ids["bob"], ids["alice"], amount, ids["bob"]
            )

    def test_non_member_party(self, service, group, ids):
        with pytest.raises(ValidationError, match="not an active member"):
            service.settle_balance(
                group.id, ids["dave"], ids["alice"], "10.00", ids["dave"]
            )


class TestBackgroundRefresh:
    """Test the worker-thread refresh of the simplified-debt cache."""

    @pytest.fixture
    def background(self, tmp_path, db):
        settings = Settings(
            database_path=tmp_path / "test.db", debt_refresh="background"
        )
        with LedgerService(settings, db) as service:
            yield service

    def test_cache_refreshed_in_background(self, background, db, group, ids):
        background.create_expense(group.id, ids["alice"], "90.00", description="x")
        background.wait_for_refresh(timeout=5)

        assert len(db.get_group(group.id).simplified_debts) == 2

    def test_refresh_failure_is_logged_not_raised(
        self, background, group, ids, caplog
    ):
        caplog.set_level(logging.ERROR)
        with patch.object(
            background,
            "refresh_simplified_debts",
            side_effect=RuntimeError("boom"),
        ):
            expense = background.create_expense(
                group.id, ids["alice"], "90.00", description="x"
            )
            background.wait_for_refresh(timeout=5)

        assert background.get_expense(expense.id, ids["alice"]) == expense
        assert "Failed to refresh simplified debts" in caplog.text
