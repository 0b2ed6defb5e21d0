"""SQLite database operations for split-sync."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from .exceptions import (
    CannotRejectOwnBillError,
    NotAParticipantError,
    SplitBillNotFoundError,
)
from .identifiers import normalize_id
from .models import (
    CANCEL_REASON_ALL_REJECTED,
    DirectScope,
    Group,
    GroupScope,
    Participant,
    SplitBill,
    TransitionOutcome,
    User,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE COLLATE NOCASE,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS groups (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_members (
    group_id TEXT NOT NULL REFERENCES groups(id),
    user_id TEXT NOT NULL REFERENCES users(id),
    is_active INTEGER NOT NULL DEFAULT 1,
    joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (group_id, user_id)
);

CREATE TABLE IF NOT EXISTS split_bills (
    id TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    scope_kind TEXT NOT NULL,
    group_id TEXT,
    created_by TEXT NOT NULL,
    split_kind TEXT NOT NULL,
    category TEXT NOT NULL,
    notes TEXT,
    is_settled INTEGER NOT NULL DEFAULT 0,
    settled_at TIMESTAMP,
    is_cancelled INTEGER NOT NULL DEFAULT 0,
    cancelled_at TIMESTAMP,
    cancel_reason TEXT,
    mirror_posted INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_split_bills_group
    ON split_bills (group_id, created_at);
CREATE INDEX IF NOT EXISTS idx_split_bills_creator
    ON split_bills (created_by, created_at);

CREATE TABLE IF NOT EXISTS split_bill_participants (
    split_bill_id TEXT NOT NULL REFERENCES split_bills(id),
    user_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    amount TEXT NOT NULL,
    percentage TEXT,
    is_paid INTEGER NOT NULL DEFAULT 0,
    paid_at TIMESTAMP,
    is_rejected INTEGER NOT NULL DEFAULT 0,
    rejected_at TIMESTAMP,
    PRIMARY KEY (split_bill_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_participants_user
    ON split_bill_participants (user_id);

CREATE TABLE IF NOT EXISTS chat_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation TEXT NOT NULL,
    split_bill_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (conversation, split_bill_id)
);
"""


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Database:
    """SQLite database manager.

    Acts as the user/group directory and as the split bill store. Participant
    transitions are conditional updates scoped to one participant row, so
    concurrent payments from different participants never overwrite each other.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self._lock = threading.RLock()
        # isolation_level=None: transactions are opened explicitly below
        self.conn = sqlite3.connect(
            str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        with self._lock:
            self.conn.executescript(SCHEMA)

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in a write transaction taken up front."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            else:
                cursor.execute("COMMIT")

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            return cursor.fetchall()

    # ========================================================================
    # Directory operations
    # ========================================================================

    def add_user(self, user: User) -> User:
        """Insert or update a user."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (id, username, name) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    name = excluded.name
                """,
                (user.id, user.username, user.name),
            )
        return user

    def get_user(self, user_id: str) -> User | None:
        """Get a user by id."""
        rows = self._query(
            "SELECT id, username, name FROM users WHERE id = ?", (user_id,)
        )
        return User(**dict(rows[0])) if rows else None

    def find_user(self, ref: Any) -> User | None:
        """
        Find a user by id or username.

        Args:
            ref: User id, username, ``@mention`` or any reference accepted by
                 normalize_id

        Returns:
            The user if found, None otherwise
        """
        key = normalize_id(ref)
        user = self.get_user(key)
        if user:
            return user

        rows = self._query(
            "SELECT id, username, name FROM users WHERE username = ?",
            (key.lstrip("@"),),
        )
        return User(**dict(rows[0])) if rows else None

    def list_users(self, user_ids: list[str] | None = None) -> list[User]:
        """Get users, optionally restricted to the given ids."""
        rows = self._query("SELECT id, username, name FROM users ORDER BY username")
        users = [User(**dict(row)) for row in rows]
        if user_ids is not None:
            users = [user for user in users if user.id in user_ids]
        return users

    def add_group(self, group: Group) -> Group:
        """Insert or update a group."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO groups (id, name) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (group.id, group.name),
            )
        return group

    def get_group(self, group_id: str) -> Group | None:
        """Get a group by id."""
        rows = self._query("SELECT id, name FROM groups WHERE id = ?", (group_id,))
        return Group(**dict(rows[0])) if rows else None

    def add_group_member(self, group_id: str, user_id: str, is_active: bool = True):
        """Add a user to a group (or reactivate an existing membership)."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO group_members (group_id, user_id, is_active)
                VALUES (?, ?, ?)
                ON CONFLICT(group_id, user_id) DO UPDATE SET
                    is_active = excluded.is_active
                """,
                (group_id, user_id, int(is_active)),
            )

    def set_member_active(self, group_id: str, user_id: str, is_active: bool) -> bool:
        """Activate or deactivate a membership. Returns False if it doesn't exist."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE group_members SET is_active = ? WHERE group_id = ? AND user_id = ?",
                (int(is_active), group_id, user_id),
            )
            return cursor.rowcount == 1

    def active_member_ids(self, group_id: str) -> list[str]:
        """Get active member ids of a group, in join order."""
        rows = self._query(
            """
            SELECT user_id FROM group_members
            WHERE group_id = ? AND is_active = 1
            ORDER BY joined_at, rowid
            """,
            (group_id,),
        )
        return [row["user_id"] for row in rows]

    # ========================================================================
    # Split bill operations
    # ========================================================================

    def insert_split_bill(self, bill: SplitBill) -> SplitBill:
        """Persist a newly created split bill and its participant rows."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO split_bills (
                    id, description, total_amount, currency, scope_kind, group_id,
                    created_by, split_kind, category, notes, is_settled,
                    settled_at, is_cancelled, cancelled_at, cancel_reason,
                    mirror_posted, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    bill.id,
                    bill.description,
                    str(bill.total_amount),
                    bill.currency,
                    bill.scope.kind,
                    bill.group_id,
                    bill.created_by,
                    bill.split_kind,
                    bill.category,
                    bill.notes,
                    int(bill.is_settled),
                    _iso(bill.settled_at),
                    int(bill.is_cancelled),
                    _iso(bill.cancelled_at),
                    bill.cancel_reason,
                    int(bill.mirror_posted),
                    bill.created_at.isoformat(),
                ),
            )
            cursor.executemany(
                """
                INSERT INTO split_bill_participants (
                    split_bill_id, user_id, position, amount, percentage,
                    is_paid, paid_at, is_rejected, rejected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        bill.id,
                        p.user_id,
                        position,
                        str(p.amount),
                        str(p.percentage) if p.percentage is not None else None,
                        int(p.is_paid),
                        _iso(p.paid_at),
                        int(p.is_rejected),
                        _iso(p.rejected_at),
                    )
                    for position, p in enumerate(bill.participants)
                ],
            )

        logger.debug(f"Inserted split bill {bill.id}")
        return bill

    def get_split_bill(self, split_bill_id: str) -> SplitBill | None:
        """Load a split bill snapshot by id."""
        rows = self._query("SELECT * FROM split_bills WHERE id = ?", (split_bill_id,))
        if not rows:
            return None
        row = rows[0]

        participant_rows = self._query(
            """
            SELECT * FROM split_bill_participants
            WHERE split_bill_id = ?
            ORDER BY position
            """,
            (split_bill_id,),
        )

        scope = (
            GroupScope(group_id=row["group_id"])
            if row["scope_kind"] == "group"
            else DirectScope()
        )

        return SplitBill(
            id=row["id"],
            description=row["description"],
            total_amount=Decimal(row["total_amount"]),
            currency=row["currency"],
            scope=scope,
            created_by=row["created_by"],
            participants=[
                Participant(
                    user_id=p["user_id"],
                    amount=Decimal(p["amount"]),
                    percentage=Decimal(p["percentage"]) if p["percentage"] else None,
                    is_paid=bool(p["is_paid"]),
                    paid_at=_dt(p["paid_at"]),
                    is_rejected=bool(p["is_rejected"]),
                    rejected_at=_dt(p["rejected_at"]),
                )
                for p in participant_rows
            ],
            split_kind=row["split_kind"],
            category=row["category"],
            notes=row["notes"],
            is_settled=bool(row["is_settled"]),
            settled_at=_dt(row["settled_at"]),
            is_cancelled=bool(row["is_cancelled"]),
            cancelled_at=_dt(row["cancelled_at"]),
            cancel_reason=row["cancel_reason"],
            mirror_posted=bool(row["mirror_posted"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_split_bills_for_user(self, user_id: str) -> list[SplitBill]:
        """Get bills a user created or participates in, newest first."""
        rows = self._query(
            """
            SELECT DISTINCT b.id, b.created_at
            FROM split_bills b
            LEFT JOIN split_bill_participants p ON p.split_bill_id = b.id
            WHERE b.created_by = ? OR p.user_id = ?
            ORDER BY b.created_at DESC
            """,
            (user_id, user_id),
        )
        return self._load_many(row["id"] for row in rows)

    def list_split_bills_for_group(self, group_id: str) -> list[SplitBill]:
        """Get bills of a group, newest first."""
        rows = self._query(
            """
            SELECT id FROM split_bills
            WHERE group_id = ?
            ORDER BY created_at DESC
            """,
            (group_id,),
        )
        return self._load_many(row["id"] for row in rows)

    def list_unmirrored_split_bills(self) -> list[SplitBill]:
        """Get bills whose chat mirror has not been delivered yet, oldest first."""
        rows = self._query(
            "SELECT id FROM split_bills WHERE mirror_posted = 0 ORDER BY created_at"
        )
        return self._load_many(row["id"] for row in rows)

    def _load_many(self, ids) -> list[SplitBill]:
        bills = []
        for split_bill_id in ids:
            bill = self.get_split_bill(split_bill_id)
            if bill:
                bills.append(bill)
        return bills

    def mark_mirror_posted(self, split_bill_id: str):
        """Record that the chat-transcript mirror was delivered."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE split_bills SET mirror_posted = 1 WHERE id = ?",
                (split_bill_id,),
            )

    # ========================================================================
    # Participant transitions
    # ========================================================================

    def _load_participant_row(
        self, cursor: sqlite3.Cursor, split_bill_id: str, user_id: str
    ) -> tuple[sqlite3.Row, sqlite3.Row]:
        cursor.execute(
            "SELECT created_by, is_settled, is_cancelled FROM split_bills WHERE id = ?",
            (split_bill_id,),
        )
        bill_row = cursor.fetchone()
        if bill_row is None:
            raise SplitBillNotFoundError(split_bill_id)

        cursor.execute(
            """
            SELECT is_paid, is_rejected FROM split_bill_participants
            WHERE split_bill_id = ? AND user_id = ?
            """,
            (split_bill_id, user_id),
        )
        participant_row = cursor.fetchone()
        if participant_row is None:
            raise NotAParticipantError(split_bill_id, user_id)

        return bill_row, participant_row

    def apply_payment(
        self, split_bill_id: str, user_id: str, paid_at: datetime
    ) -> TransitionOutcome:
        """
        Mark one participant as paid and settle the bill if everyone has paid.

        Paying clears an earlier rejection. Already-paid rows and terminal
        bills are left untouched (idempotent no-op, changed=False).

        Raises:
            SplitBillNotFoundError: If the bill does not exist
            NotAParticipantError: If the user has no row in the bill
        """
        became_settled = False
        with self._transaction() as cursor:
            self._load_participant_row(cursor, split_bill_id, user_id)

            cursor.execute(
                """
                UPDATE split_bill_participants
                SET is_paid = 1, paid_at = ?, is_rejected = 0, rejected_at = NULL
                WHERE split_bill_id = ? AND user_id = ?
                  AND is_paid = 0
                  AND EXISTS (
                      SELECT 1 FROM split_bills
                      WHERE id = ? AND is_settled = 0 AND is_cancelled = 0
                  )
                """,
                (paid_at.isoformat(), split_bill_id, user_id, split_bill_id),
            )
            changed = cursor.rowcount == 1

            if changed:
                cursor.execute(
                    """
                    UPDATE split_bills
                    SET is_settled = 1, settled_at = ?
                    WHERE id = ? AND is_settled = 0 AND is_cancelled = 0
                      AND NOT EXISTS (
                          SELECT 1 FROM split_bill_participants
                          WHERE split_bill_id = ? AND is_paid = 0
                      )
                    """,
                    (paid_at.isoformat(), split_bill_id, split_bill_id),
                )
                became_settled = cursor.rowcount == 1

        if changed:
            logger.info(f"User {user_id} paid split bill {split_bill_id}")
        if became_settled:
            logger.info(f"Split bill {split_bill_id} settled")

        return self._outcome(split_bill_id, changed, became_settled=became_settled)

    def apply_rejection(
        self, split_bill_id: str, user_id: str, rejected_at: datetime
    ) -> TransitionOutcome:
        """
        Mark one participant as rejected and cancel the bill once every
        non-creator participant has rejected.

        The creator's own row never counts towards cancellation: it starts out
        paid, so requiring it to be rejected would leave such bills active
        forever.

        Raises:
            SplitBillNotFoundError: If the bill does not exist
            NotAParticipantError: If the user has no row in the bill
            CannotRejectOwnBillError: If the user created the bill
        """
        became_cancelled = False
        with self._transaction() as cursor:
            bill_row, _ = self._load_participant_row(cursor, split_bill_id, user_id)
            if bill_row["created_by"] == user_id:
                raise CannotRejectOwnBillError(split_bill_id)

            cursor.execute(
                """
                UPDATE split_bill_participants
                SET is_rejected = 1, rejected_at = ?
                WHERE split_bill_id = ? AND user_id = ?
                  AND is_paid = 0 AND is_rejected = 0
                  AND EXISTS (
                      SELECT 1 FROM split_bills
                      WHERE id = ? AND is_settled = 0 AND is_cancelled = 0
                  )
                """,
                (rejected_at.isoformat(), split_bill_id, user_id, split_bill_id),
            )
            changed = cursor.rowcount == 1

            if changed:
                cursor.execute(
                    """
                    UPDATE split_bills
                    SET is_cancelled = 1, cancelled_at = ?, cancel_reason = ?
                    WHERE id = ? AND is_settled = 0 AND is_cancelled = 0
                      AND NOT EXISTS (
                          SELECT 1 FROM split_bill_participants
                          WHERE split_bill_id = ? AND user_id != ?
                            AND is_rejected = 0
                      )
                    """,
                    (
                        rejected_at.isoformat(),
                        CANCEL_REASON_ALL_REJECTED,
                        split_bill_id,
                        split_bill_id,
                        bill_row["created_by"],
                    ),
                )
                became_cancelled = cursor.rowcount == 1

        if changed:
            logger.info(f"User {user_id} rejected split bill {split_bill_id}")
        if became_cancelled:
            logger.info(f"Split bill {split_bill_id} cancelled: all participants rejected")

        return self._outcome(split_bill_id, changed, became_cancelled=became_cancelled)

    def _outcome(self, split_bill_id: str, changed: bool, **flags) -> TransitionOutcome:
        bill = self.get_split_bill(split_bill_id)
        if bill is None:
            raise SplitBillNotFoundError(split_bill_id)
        return TransitionOutcome(bill=bill, changed=changed, **flags)

    # ========================================================================
    # Chat transcript operations
    # ========================================================================

    def save_chat_message(
        self, conversation: str, split_bill_id: str, kind: str, body: dict[str, Any]
    ) -> bool:
        """
        Store a structured chat message once per (conversation, split bill).

        Returns:
            True if the message was inserted, False if it already existed
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO chat_messages (
                    conversation, split_bill_id, kind, body
                ) VALUES (?, ?, ?, ?)
                """,
                (conversation, split_bill_id, kind, json.dumps(body)),
            )
            return cursor.rowcount == 1

    def get_chat_messages(self, conversation: str) -> list[dict[str, Any]]:
        """Get structured chat messages of a conversation, oldest first."""
        rows = self._query(
            """
            SELECT split_bill_id, kind, body, created_at FROM chat_messages
            WHERE conversation = ?
            ORDER BY id
            """,
            (conversation,),
        )
        return [
            {
                "split_bill_id": row["split_bill_id"],
                "kind": row["kind"],
                "body": json.loads(row["body"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
