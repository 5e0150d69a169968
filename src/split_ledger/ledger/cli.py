"""CLI commands for the group ledger."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from ..config import Settings, load_settings
from ..db import Database
from ..exceptions import ConfigurationError, SplitLedgerError
from ..models import EqualSplit, UnequalSplit, User
from .money import parse_amount
from .service import LedgerService
from .ui import confirm_settlement, select_member_interactive

app = typer.Typer(
    name="ledger",
    help="Track shared expenses, balances and settlements in groups",
)

console = Console()

AS_USER_HELP = "Act as this user ID (defaults to SPLIT_LEDGER_CURRENT_USER)"


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool = False) -> Iterator[tuple[Settings, LedgerService]]:
    """Load settings, open the database and yield a ready service.

    Ledger errors are printed and turned into exit code 1.
    """
    setup_logging(verbose)
    db: Database | None = None
    service: LedgerService | None = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)
        yield settings, service
    except SplitLedgerError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if service is not None:
            service.close()
        if db is not None:
            db.close()


def resolve_actor(settings: Settings, as_user: str | None) -> str:
    """The authenticated user: --as wins over the configured current user."""
    actor = as_user or settings.current_user
    if not actor:
        raise ConfigurationError(
            "No current user. Pass --as USER_ID or set SPLIT_LEDGER_CURRENT_USER."
        )
    return actor


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"($[red]{abs_amount:,.2f}[/red])"
        return f"(${abs_amount:,.2f})"
    if use_color:
        return f" [green]${abs_amount:,.2f}[/green] "
    return f" ${abs_amount:,.2f} "


def _name(users: dict[str, User], user_id: str) -> str:
    user = users.get(user_id)
    return user.name if user else user_id


def _parse_shares(service: LedgerService, shares: list[str]) -> dict[str, Decimal]:
    """Parse repeated ``USER=AMOUNT`` options into an explicit-amount map."""
    amounts: dict[str, Decimal] = {}
    for share in shares:
        user_ref, sep, value = share.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected USER=AMOUNT, got {share!r}")
        user_id = service.resolve_user(user_ref.strip()).id
        amounts[user_id] = parse_amount(value.strip(), field=f"share for {user_ref}")
    return amounts


# ============================================================================
# Users & groups
# ============================================================================


@app.command()
def register(
    name: str = typer.Argument(..., help="Display name"),
    email: str = typer.Argument(..., help="Email address"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Register a new user and print their ID."""
    with open_service(verbose) as (_settings, service):
        user = service.register_user(name, email)
        console.print(f"[green]✓ Registered {user.name}[/green] (id: {user.id})")


@app.command("create-group")
def create_group(
    name: str = typer.Argument(..., help="Group name"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group with yourself as admin."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        group = service.create_group(name, actor, description)
        console.print(f"[green]✓ Created group {group.name}[/green] (id: {group.id})")


@app.command()
def groups(
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List your groups."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        found = service.list_groups(actor)
        if not found:
            console.print("[yellow]You are not in any groups yet.[/yellow]")
            return

        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Members", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Admin", justify="center")

        for group in found:
            table.add_row(
                group.id,
                group.name,
                str(len(group.active_member_ids())),
                format_money(group.total_expenses),
                "✓" if group.admin_id == actor else "",
            )
        console.print(table)


@app.command()
def invite(
    group_id: str = typer.Argument(..., help="Group ID"),
    user: str = typer.Argument(..., help="User ID or email to invite"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Invite a user to a group (admin only)."""
    with open_service(verbose) as (settings, service):
        member = service.invite_member(group_id, user, resolve_actor(settings, as_user))
        console.print(f"[green]✓ Invited {member.user_id}[/green] (pending)")


@app.command()
def accept(
    group_id: str = typer.Argument(..., help="Group ID"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Accept an invitation to a group."""
    with open_service(verbose) as (settings, service):
        service.accept_invite(group_id, resolve_actor(settings, as_user))
        console.print("[green]✓ You joined the group[/green]")


@app.command()
def leave(
    group_id: str = typer.Argument(..., help="Group ID"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Leave a group (only once your balance is settled)."""
    with open_service(verbose) as (settings, service):
        service.leave_group(group_id, resolve_actor(settings, as_user))
        console.print("[green]✓ You have left the group[/green]")


# ============================================================================
# Expenses
# ============================================================================


@app.command("add-expense")
def add_expense(
    group_id: str = typer.Argument(..., help="Group ID"),
    amount: str = typer.Argument(..., help="Total amount paid, e.g. 42.50"),
    description: str = typer.Argument(..., help="What it was for"),
    among: list[str] = typer.Option(
        None, "--among", "-a", help="Participant ID/email (repeatable, default: all)"
    ),
    share: list[str] = typer.Option(
        None, "--share", "-s", help="Unequal split as USER=AMOUNT (repeatable)"
    ),
    category: str | None = typer.Option(None, "--category", "-c", help="Category"),
    notes: str | None = typer.Option(None, "--notes", help="Notes"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record an expense you paid.

    Splits equally among --among participants (or every active member), or
    unequally with one --share USER=AMOUNT per participant.
    """
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)

        participants = [service.resolve_user(ref).id for ref in among] if among else None
        policy: EqualSplit | UnequalSplit = EqualSplit()
        if share:
            policy = UnequalSplit(amounts=_parse_shares(service, share))

        expense = service.create_expense(
            group_id,
            actor,
            amount,
            participants,
            policy,
            description=description,
            category=category,
            notes=notes,
        )

        users = service.get_users([s.user_id for s in expense.splits])
        table = Table(
            title=f"{expense.description} ({format_money(expense.amount, False).strip()})",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Participant", style="cyan")
        table.add_column("Share", justify="right")
        table.add_column("Status")
        for split in expense.splits:
            table.add_row(
                _name(users, split.user_id),
                format_money(split.amount),
                "[green]settled[/green]" if split.settled else "[yellow]pending[/yellow]",
            )

        console.print(f"\n[bold green]✓ Expense recorded[/bold green] (id: {expense.id})")
        console.print(table)


@app.command()
def expenses(
    group_id: str = typer.Argument(..., help="Group ID"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List a group's expenses, newest first."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        found = service.list_group_expenses(group_id, actor)
        if not found:
            console.print("[yellow]No expenses in this group yet.[/yellow]")
            return

        users = service.get_users(sorted({e.payer_id for e in found}))
        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("Description", style="cyan", width=32)
        table.add_column("Category", style="yellow")
        table.add_column("Paid by")
        table.add_column("Amount", justify="right")
        table.add_column("Your share", justify="right")

        for expense in found:
            mine = expense.get_split(actor)
            if mine is None:
                share_display = "-"
            elif mine.settled:
                share_display = "[dim]settled[/dim]"
            else:
                share_display = format_money(-mine.outstanding)
            table.add_row(
                expense.id[:8],
                expense.date.date().isoformat(),
                expense.description,
                expense.category,
                _name(users, expense.payer_id),
                format_money(expense.amount),
                share_display,
            )
        console.print(table)


# ============================================================================
# Balances
# ============================================================================


@app.command()
def balances(
    group_id: str = typer.Argument(..., help="Group ID"),
    pairwise: bool = typer.Option(
        False, "--pairwise", "-p", help="Also show who owes whom directly"
    ),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show every member's balance in a group."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        rows = service.get_balances(group_id, actor)
        users = service.get_users([b.user_id for b in rows])

        table = Table(title="Balances", show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Owed to them", justify="right")
        table.add_column("They owe", justify="right")
        table.add_column("Net", justify="right")
        table.add_column("Pending", justify="right", style="dim")
        for balance in rows:
            table.add_row(
                _name(users, balance.user_id),
                format_money(balance.paid),
                format_money(balance.owed),
                format_money(balance.net),
                str(balance.pending_payments),
            )
        console.print(table)

        if pairwise:
            debts = service.get_pairwise_debts(group_id, actor)
            if not debts:
                console.print("\n[green]Nobody owes anybody.[/green]")
                return
            console.print("\n[bold]Direct debts:[/bold]")
            for debt in debts:
                console.print(
                    f"  {_name(users, debt.debtor_id)} owes "
                    f"{_name(users, debt.creditor_id)} {format_money(debt.amount)}"
                )


@app.command()
def debts(
    group_id: str = typer.Argument(..., help="Group ID"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the simplified list of payments that settles the group."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        plan = service.get_simplified_debts(group_id, actor)
        if not plan:
            console.print("[green]✓ All settled up![/green]")
            return

        users = service.get_users(
            sorted({i.from_user for i in plan} | {i.to_user for i in plan})
        )
        table = Table(
            title="Suggested Payments", show_header=True, header_style="bold magenta"
        )
        table.add_column("From", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right")
        for instruction in plan:
            table.add_row(
                _name(users, instruction.from_user),
                _name(users, instruction.to_user),
                format_money(instruction.amount),
            )
        console.print(table)


@app.command()
def summary(
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show your totals across all groups."""
    with open_service(verbose) as (settings, service):
        result = service.get_user_summary(resolve_actor(settings, as_user))
        console.print("\n[bold]Summary:[/bold]")
        console.print(f"  Owed to you: {format_money(result.owed_to_user)}")
        console.print(f"  You owe:     {format_money(result.user_owes)}")
        console.print(f"  Net:         {format_money(result.net)}")


# ============================================================================
# Settlement
# ============================================================================


@app.command("settle-split")
def settle_split(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    user: str | None = typer.Option(
        None, "--user", "-u", help="Participant to settle (default: yourself)"
    ),
    amount_paid: str | None = typer.Option(
        None, "--amount-paid", help="Record the amount received (payer only)"
    ),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark one participant's share of an expense as settled."""
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        user_id = service.resolve_user(user).id if user else actor

        if amount_paid is not None:
            changed = service.record_payment(expense_id, user_id, amount_paid, actor)
        else:
            changed = service.settle_split(expense_id, user_id, actor)

        if changed:
            console.print("[green]✓ Split marked as settled[/green]")
        else:
            console.print("[yellow]Split was already settled.[/yellow]")


@app.command()
def settle(
    group_id: str = typer.Argument(..., help="Group ID"),
    to_user: str | None = typer.Option(
        None, "--to", help="Who receives the payment (ID/email; prompts if omitted)"
    ),
    from_user: str | None = typer.Option(
        None, "--from", help="Who pays (default: yourself)"
    ),
    amount: str | None = typer.Option(
        None, "--amount", help="Amount paid (default: the direct debt between you)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    as_user: str | None = typer.Option(None, "--as", help=AS_USER_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record a payment between two members of a group.

    Open splits between the two are settled oldest-first. If there are none,
    an audit-only settlement record is written instead.
    """
    with open_service(verbose) as (settings, service):
        actor = resolve_actor(settings, as_user)
        payer_id = service.resolve_user(from_user).id if from_user else actor

        group = service.get_group(group_id, actor)
        members = service.get_users(group.active_member_ids())

        if to_user:
            receiver_id = service.resolve_user(to_user).id
        else:
            picked = select_member_interactive(
                list(members.values()),
                "Who was paid?",
                exclude={payer_id},
            )
            if picked is None:
                console.print("[yellow]No member selected.[/yellow]")
                return
            receiver_id = picked

        if amount is None:
            direct = [
                d
                for d in service.get_pairwise_debts(group_id, actor)
                if d.debtor_id == payer_id and d.creditor_id == receiver_id
            ]
            if not direct:
                console.print("[yellow]No open debt; pass --amount.[/yellow]")
                return
            amount = str(direct[0].amount)

        payer = members.get(payer_id) or service.get_user(payer_id)
        receiver = members.get(receiver_id) or service.get_user(receiver_id)
        if not yes and not confirm_settlement(payer, receiver, amount):
            console.print("[yellow]Cancelled.[/yellow]")
            return

        outcome = service.settle_balance(group_id, payer_id, receiver_id, amount, actor)

        if not outcome.splits:
            console.print(
                f"[green]✓ Recorded settlement[/green] "
                f"(record: {outcome.settlement_expense_id})"
            )
        else:
            console.print(
                f"[green]✓ Settled {len(outcome.splits)} split(s)[/green]"
            )
            for ref in outcome.splits:
                status = "settled" if ref.fully_settled else "partially paid"
                console.print(
                    f"  {ref.expense_id[:8]} {_name(members, ref.user_id)}: "
                    f"{format_money(ref.applied, False).strip()} ({status})"
                )
            if outcome.unapplied:
                console.print(
                    f"[yellow]  {format_money(outcome.unapplied, False).strip()} "
                    f"exceeded the open debt; recorded as settlement "
                    f"{outcome.settlement_expense_id}[/yellow]"
                )
