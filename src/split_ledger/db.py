"""SQLite database operations for Split Ledger."""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

from pydantic import TypeAdapter

from .exceptions import NotFoundError
from .ledger.money import from_cents, to_cents
from .models import (
    Expense,
    Group,
    Member,
    SettlementInstruction,
    Split,
    User,
    as_utc,
)

_instructions_adapter = TypeAdapter(list[SettlementInstruction])


class Database:
    """SQLite database manager.

    One connection is shared by the request path and the background cache
    refresh, so every statement runs under a re-entrant lock.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    created_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_groups (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    admin_id TEXT NOT NULL REFERENCES users(id),
                    total_expenses_cents INTEGER NOT NULL DEFAULT 0,
                    simplified_debts TEXT NOT NULL DEFAULT '[]',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS group_members (
                    group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                    user_id TEXT NOT NULL REFERENCES users(id),
                    status TEXT NOT NULL,
                    role TEXT NOT NULL,
                    joined_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (group_id, user_id)
                )
            """
            )

            # Amounts are stored as decimal strings to keep them exact
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS expenses (
                    id TEXT PRIMARY KEY,
                    group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                    description TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    payer_id TEXT NOT NULL REFERENCES users(id),
                    date TIMESTAMP NOT NULL,
                    category TEXT NOT NULL,
                    notes TEXT,
                    lifecycle TEXT NOT NULL DEFAULT 'active'
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS splits (
                    expense_id TEXT NOT NULL REFERENCES expenses(id),
                    user_id TEXT NOT NULL REFERENCES users(id),
                    position INTEGER NOT NULL,
                    amount TEXT NOT NULL,
                    settled INTEGER NOT NULL DEFAULT 0,
                    amount_paid TEXT,
                    PRIMARY KEY (expense_id, user_id)
                )
            """
            )

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_expenses_group ON expenses(group_id)"
            )

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block of writes atomically.

        Re-entrant: nested blocks join the outermost transaction, which
        commits on exit or rolls everything back if an exception escapes.
        """
        with self._lock:
            self._depth += 1
            try:
                yield self.conn.cursor()
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.commit()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self.conn.execute(sql, params).fetchone()
            return row

    # ========================================================================
    # User operations
    # ========================================================================

    def save_user(self, user: User):
        """Insert a user."""
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO users (id, name, email, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.name, user.email, user.created_at.isoformat()),
            )

    def get_user(self, user_id: str) -> User | None:
        """Get a user by ID."""
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        """Get a user by (lowercase) email."""
        row = self._fetchone("SELECT * FROM users WHERE email = ?", (email,))
        return _row_to_user(row) if row else None

    def get_users(self, user_ids: list[str]) -> dict[str, User]:
        """Get several users at once, keyed by ID."""
        if not user_ids:
            return {}
        placeholders = ", ".join("?" for _ in user_ids)
        rows = self._fetchall(
            f"SELECT * FROM users WHERE id IN ({placeholders})", tuple(user_ids)
        )
        return {row["id"]: _row_to_user(row) for row in rows}

    # ========================================================================
    # Group operations
    # ========================================================================

    def save_group(self, group: Group):
        """Insert or update a group and its members."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO ledger_groups (
                    id, name, description, admin_id, total_expenses_cents,
                    simplified_debts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    admin_id = excluded.admin_id,
                    updated_at = excluded.updated_at
                """,
                (
                    group.id,
                    group.name,
                    group.description,
                    group.admin_id,
                    to_cents(group.total_expenses),
                    _instructions_adapter.dump_json(group.simplified_debts).decode(),
                    group.created_at.isoformat(),
                    datetime.now(UTC).isoformat(),
                ),
            )
            for member in group.members:
                self.save_member(group.id, member)

    def get_group(self, group_id: str) -> Group | None:
        """Get a group with its members."""
        row = self._fetchone(
            "SELECT * FROM ledger_groups WHERE id = ?", (group_id,)
        )
        if not row:
            return None
        return _row_to_group(row, self.get_group_members(group_id))

    def get_groups_for_user(self, user_id: str) -> list[Group]:
        """Get groups where the user is admin or an active member."""
        rows = self._fetchall(
            """
            SELECT DISTINCT g.* FROM ledger_groups g
            LEFT JOIN group_members m ON m.group_id = g.id
            WHERE g.admin_id = ? OR (m.user_id = ? AND m.status = 'active')
            ORDER BY g.created_at, g.id
            """,
            (user_id, user_id),
        )
        return [_row_to_group(row, self.get_group_members(row["id"])) for row in rows]

    def get_group_members(self, group_id: str) -> list[Member]:
        """Get members of a group in join order."""
        rows = self._fetchall(
            """
            SELECT user_id, status, role, joined_at FROM group_members
            WHERE group_id = ?
            ORDER BY joined_at, rowid
            """,
            (group_id,),
        )
        return [
            Member(
                user_id=row["user_id"],
                status=row["status"],
                role=row["role"],
                joined_at=datetime.fromisoformat(row["joined_at"]),
            )
            for row in rows
        ]

    def save_member(self, group_id: str, member: Member):
        """Insert or update a membership record."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO group_members (group_id, user_id, status, role, joined_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET
                    status = excluded.status,
                    role = excluded.role
                """,
                (
                    group_id,
                    member.user_id,
                    member.status,
                    member.role,
                    member.joined_at.isoformat(),
                ),
            )

    def delete_member(self, group_id: str, user_id: str):
        """Remove a membership record."""
        with self.transaction() as cursor:
            cursor.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )

    def update_group_totals(self, group_id: str, delta: Decimal):
        """Add ``delta`` to a group's running expense total."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE ledger_groups
                SET total_expenses_cents = total_expenses_cents + ?, updated_at = ?
                WHERE id = ?
                """,
                (to_cents(delta), datetime.now(UTC).isoformat(), group_id),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("group", group_id)

    def save_simplified_debts(
        self, group_id: str, instructions: list[SettlementInstruction]
    ):
        """Overwrite the cached simplification result for a group."""
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE ledger_groups SET simplified_debts = ? WHERE id = ?",
                (_instructions_adapter.dump_json(instructions).decode(), group_id),
            )

    # ========================================================================
    # Expense operations
    # ========================================================================

    def save_expense(self, expense: Expense):
        """Insert an expense and its splits."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO expenses (
                    id, group_id, description, amount, payer_id, date,
                    category, notes, lifecycle
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    expense.id,
                    expense.group_id,
                    expense.description,
                    str(expense.amount),
                    expense.payer_id,
                    as_utc(expense.date).isoformat(),
                    expense.category,
                    expense.notes,
                    expense.lifecycle,
                ),
            )
            cursor.executemany(
                """
                INSERT INTO splits (
                    expense_id, user_id, position, amount, settled, amount_paid
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        expense.id,
                        split.user_id,
                        position,
                        str(split.amount),
                        int(split.settled),
                        _decimal_or_none(split.amount_paid),
                    )
                    for position, split in enumerate(expense.splits)
                ],
            )

    def update_split(self, expense_id: str, split: Split):
        """Persist a split's settled flag and amount paid."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE splits SET settled = ?, amount_paid = ?
                WHERE expense_id = ? AND user_id = ?
                """,
                (
                    int(split.settled),
                    _decimal_or_none(split.amount_paid),
                    expense_id,
                    split.user_id,
                ),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("split", f"{expense_id}/{split.user_id}")

    def get_expense(self, expense_id: str) -> Expense | None:
        """Get an expense with its splits."""
        row = self._fetchone("SELECT * FROM expenses WHERE id = ?", (expense_id,))
        if not row:
            return None
        return _row_to_expense(row, self._get_splits([expense_id])[expense_id])

    def get_expenses_for_group(self, group_id: str) -> list[Expense]:
        """Get every expense of a group, oldest first."""
        rows = self._fetchall(
            "SELECT * FROM expenses WHERE group_id = ? ORDER BY date, id",
            (group_id,),
        )
        splits = self._get_splits([row["id"] for row in rows])
        return [_row_to_expense(row, splits[row["id"]]) for row in rows]

    def _get_splits(self, expense_ids: list[str]) -> dict[str, list[Split]]:
        result: dict[str, list[Split]] = {expense_id: [] for expense_id in expense_ids}
        if not expense_ids:
            return result

        placeholders = ", ".join("?" for _ in expense_ids)
        rows = self._fetchall(
            f"""
            SELECT * FROM splits WHERE expense_id IN ({placeholders})
            ORDER BY expense_id, position
            """,
            tuple(expense_ids),
        )
        for row in rows:
            result[row["expense_id"]].append(
                Split(
                    user_id=row["user_id"],
                    amount=Decimal(row["amount"]),
                    settled=bool(row["settled"]),
                    amount_paid=(
                        Decimal(row["amount_paid"])
                        if row["amount_paid"] is not None
                        else None
                    ),
                )
            )
        return result


def _decimal_or_none(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_group(row: sqlite3.Row, members: list[Member]) -> Group:
    return Group(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        admin_id=row["admin_id"],
        members=members,
        total_expenses=from_cents(row["total_expenses_cents"]),
        simplified_debts=_instructions_adapter.validate_json(row["simplified_debts"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_expense(row: sqlite3.Row, splits: list[Split]) -> Expense:
    return Expense(
        id=row["id"],
        group_id=row["group_id"],
        description=row["description"],
        amount=Decimal(row["amount"]),
        payer_id=row["payer_id"],
        date=datetime.fromisoformat(row["date"]),
        category=row["category"],
        notes=row["notes"],
        lifecycle=row["lifecycle"],
        splits=splits,
    )
