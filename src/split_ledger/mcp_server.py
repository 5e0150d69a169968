"""MCP server for Split Ledger: exposes group balances and settlement as tools."""

import logging
from dataclasses import dataclass

from mcp.server.fastmcp import FastMCP

from .config import Settings, load_settings
from .db import Database
from .exceptions import ConfigurationError, SplitLedgerError
from .ledger.service import LedgerService
from .models import EqualSplit, UnequalSplit, User

logger = logging.getLogger(__name__)

mcp_app = FastMCP("split-ledger")

WORKFLOW_INSTRUCTIONS = """\
You are helping a user keep track of shared expenses. Follow this workflow:

1. DISCOVER: Call list_groups to see the user's groups and pick the one
   they are talking about. Ask if it is ambiguous.

2. REVIEW: Call get_balances for that group, and get_simplified_debts to see
   the smallest set of payments that would settle everybody up.
   Use get_pairwise_debts when the user asks who owes whom directly.

3. RECORD: When the user describes a new shared purchase, call add_expense.
   Confirm the amount, description and participants before calling it.

4. SETTLE: When the user says they paid someone back, confirm the amount and
   call settle_balance. To mark one share of one expense as paid, call
   settle_split instead.

Always show amounts in accounting format. Positive net = others owe the
member, negative net = the member owes others.\
"""


@dataclass
class SessionState:
    """Holds state between MCP tool calls within a single conversation."""

    settings: Settings | None = None
    service: LedgerService | None = None
    db: Database | None = None


_state = SessionState()


def _ensure_service() -> tuple[LedgerService, str]:
    """Lazily initialize the LedgerService and resolve the acting user."""
    if _state.service is None:
        settings = load_settings()
        _state.settings = settings
        _state.db = Database(settings.database_path)
        _state.service = LedgerService(settings, _state.db)

    assert _state.settings is not None
    if not _state.settings.current_user:
        raise ConfigurationError(
            "SPLIT_LEDGER_CURRENT_USER must be set to use the MCP server"
        )
    return _state.service, _state.settings.current_user


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _names(service: LedgerService, user_ids: list[str]) -> dict[str, User]:
    return service.get_users(sorted(set(user_ids)))


def _label(users: dict[str, User], user_id: str) -> str:
    user = users.get(user_id)
    return f"{user.name} ({user_id})" if user else user_id


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp_app.tool()
def list_groups() -> str:
    """List the groups the current user belongs to."""
    try:
        service, actor = _ensure_service()
        groups = service.list_groups(actor)
        if not groups:
            return "You are not a member of any groups."

        lines = ["Groups:"]
        for group in groups:
            role = "admin" if group.admin_id == actor else "member"
            lines.append(
                f"  - {group.name} (id: {group.id}) | "
                f"{len(group.active_member_ids())} members | "
                f"total ${group.total_expenses:,.2f} | {role}"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to list groups: {e}"


@mcp_app.tool()
def get_balances(group_id: str) -> str:
    """Show each member's paid, owed and net balance in a group.

    Args:
        group_id: The group ID from list_groups.
    """
    try:
        service, actor = _ensure_service()
        balances = service.get_balances(group_id, actor)
        users = _names(service, [b.user_id for b in balances])

        lines = ["Balances:"]
        for b in balances:
            lines.append(
                f"  - {_label(users, b.user_id)}: owed to them ${b.paid:,.2f} | "
                f"they owe ${b.owed:,.2f} | net ${b.net:,.2f} | "
                f"{b.pending_payments} pending"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to get balances: {e}"


@mcp_app.tool()
def get_simplified_debts(group_id: str) -> str:
    """Show the simplified set of payments that would settle a group.

    Args:
        group_id: The group ID from list_groups.
    """
    try:
        service, actor = _ensure_service()
        plan = service.get_simplified_debts(group_id, actor)
        if not plan:
            return "Everyone in this group is settled up."

        users = _names(
            service, [i.from_user for i in plan] + [i.to_user for i in plan]
        )
        lines = ["Suggested payments:"]
        for i in plan:
            lines.append(
                f"  - {_label(users, i.from_user)} pays "
                f"{_label(users, i.to_user)} ${i.amount:,.2f}"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to simplify debts: {e}"


@mcp_app.tool()
def get_pairwise_debts(group_id: str) -> str:
    """Show the net debt between each pair of members in a group.

    Args:
        group_id: The group ID from list_groups.
    """
    try:
        service, actor = _ensure_service()
        debts = service.get_pairwise_debts(group_id, actor)
        if not debts:
            return "Nobody in this group owes anybody."

        users = _names(
            service, [d.debtor_id for d in debts] + [d.creditor_id for d in debts]
        )
        lines = ["Direct debts:"]
        for d in debts:
            lines.append(
                f"  - {_label(users, d.debtor_id)} owes "
                f"{_label(users, d.creditor_id)} ${d.amount:,.2f}"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to get pairwise debts: {e}"


@mcp_app.tool()
def add_expense(
    group_id: str,
    amount: str,
    description: str,
    participants: list[str] | None = None,
    shares: dict[str, str] | None = None,
    category: str | None = None,
) -> str:
    """Record an expense paid by the current user.

    Args:
        group_id: The group ID from list_groups.
        amount: Total paid, e.g. "42.50".
        description: What the expense was for.
        participants: User IDs sharing the expense equally (default: all members).
        shares: Explicit amount per user ID for an unequal split.
        category: Optional category.
    """
    try:
        service, actor = _ensure_service()
        policy: EqualSplit | UnequalSplit = EqualSplit()
        if shares:
            policy = UnequalSplit(amounts=shares)

        expense = service.create_expense(
            group_id,
            actor,
            amount,
            participants,
            policy,
            description=description,
            category=category,
        )

        users = _names(service, [s.user_id for s in expense.splits])
        lines = [
            f"Expense recorded (id: {expense.id}): {expense.description} "
            f"${expense.amount:,.2f}",
            "Shares:",
        ]
        for split in expense.splits:
            status = "settled" if split.settled else "pending"
            lines.append(
                f"  - {_label(users, split.user_id)}: ${split.amount:,.2f} ({status})"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to add expense: {e}"


@mcp_app.tool()
def settle_split(expense_id: str, user_id: str | None = None) -> str:
    """Mark one participant's share of an expense as settled.

    Args:
        expense_id: The expense ID.
        user_id: Participant whose share is settled (default: current user).
    """
    try:
        service, actor = _ensure_service()
        changed = service.settle_split(expense_id, user_id or actor, actor)
        if changed:
            return "Split marked as settled."
        return "Split was already settled."
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to settle split: {e}"


@mcp_app.tool()
def settle_balance(group_id: str, to_user: str, amount: str) -> str:
    """Record that the current user paid another member.

    Args:
        group_id: The group ID from list_groups.
        to_user: User ID of the member who received the money.
        amount: Amount paid, e.g. "30.00".
    """
    try:
        service, actor = _ensure_service()
        outcome = service.settle_balance(group_id, actor, to_user, amount, actor)

        if not outcome.splits:
            return (
                f"No open splits to settle; recorded settlement "
                f"{outcome.settlement_expense_id} for ${outcome.amount:,.2f}."
            )

        lines = [f"Settled {len(outcome.splits)} split(s):"]
        for ref in outcome.splits:
            status = "settled" if ref.fully_settled else "partially paid"
            lines.append(
                f"  - expense {ref.expense_id} | {ref.user_id} | "
                f"${ref.applied:,.2f} ({status})"
            )
        if outcome.unapplied:
            lines.append(
                f"Unapplied: ${outcome.unapplied:,.2f} "
                f"(recorded as settlement {outcome.settlement_expense_id})"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to settle balance: {e}"


@mcp_app.tool()
def get_user_summary() -> str:
    """Show the current user's totals across all groups."""
    try:
        service, actor = _ensure_service()
        summary = service.get_user_summary(actor)
        return (
            "Summary:\n"
            f"  Owed to you: ${summary.owed_to_user:,.2f}\n"
            f"  You owe: ${summary.user_owes:,.2f}\n"
            f"  Net: ${summary.net:,.2f}"
        )
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to get summary: {e}"


# ---------------------------------------------------------------------------
# MCP Prompt
# ---------------------------------------------------------------------------


@mcp_app.prompt()
def ledger_workflow() -> str:
    """Orchestration instructions for working with group ledgers."""
    return WORKFLOW_INSTRUCTIONS


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Start the MCP server (stdio transport)."""
    mcp_app.run(transport="stdio")
