"""
Budget Manager - Database Layer
Handles all database operations using SQLite
"""
import sqlite3
import logging
from collections import deque
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Set

from .utils import (
    from_money_str,
    from_timestamp,
    parse_amount,
    to_money_str,
    to_timestamp,
    transfer_direction,
    utc_now,
)
from .validators import (
    ACCOUNT_TYPES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    validate_amount,
    validate_choice,
    validate_color,
    validate_required_fields,
)

logger = logging.getLogger(__name__)

DEFAULT_TAG_COLOR = "#3b82f6"

DUPLICATE_WINDOW = timedelta(days=7)
DUPLICATE_CANDIDATE_LIMIT = 10


# ==================== CUSTOM EXCEPTIONS ====================
class PersistenceError(Exception):
    """Base exception for database operations."""
    pass


class DatabaseConnectionError(PersistenceError):
    """Connection to database failed."""
    pass


class DatabaseIntegrityError(PersistenceError):
    """Database integrity constraint violated."""
    pass


class ValidationError(ValueError):
    """Input rejected before anything was written."""
    pass


class NotFoundError(LookupError):
    """Referenced record does not exist."""
    pass


# Columns a caller may set on an existing transaction
TRANSACTION_UPDATABLE = {
    'account_id', 'date', 'description', 'amount', 'type', 'status',
    'tags', 'from_account_id', 'to_account_id',
}
# Silently ignored on update, maintained by the ledger itself
TRANSACTION_PROTECTED = {'id', 'created_at', 'updated_at', 'linked_transaction_id'}

ACCOUNT_UPDATABLE = {'name', 'type', 'currency'}
TAG_UPDATABLE = {'name', 'parent_id', 'color'}


class BudgetDatabase:
    """Handle all database operations for Budget Manager."""

    def __init__(self, db_path: str = "data/budget.db"):
        """Initialize database connection."""
        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._init_database()

        logger.info(f"Database initialized at {db_path}")

    def _get_connection(self):
        """Get database connection."""
        # Autocommit mode: units of work open their own transaction with BEGIN
        conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        # SQLite LOWER() only folds ASCII
        conn.create_function("casefold", 1, lambda s: (s or "").casefold(), deterministic=True)
        return conn

    @contextmanager
    def db_connection(self, commit: bool = True):
        """
        Context manager for database connections with automatic cleanup and error handling.

        With commit=True the block runs as one atomic unit: everything it
        writes is committed together, or rolled back together when anything
        inside raises.

        Usage:
            with self.db_connection() as conn:
                conn.execute("UPDATE transactions SET status = 'cleared' WHERE id = ?", (1,))

        Args:
            commit: Whether to run the block in a transaction and commit it (default True)

        Yields:
            sqlite3.Connection: Database connection

        Raises:
            DatabaseConnectionError: If connection fails
            DatabaseIntegrityError: If a constraint is violated
            PersistenceError: If query execution fails
        """
        conn = None
        try:
            conn = self._get_connection()
            if commit:
                conn.execute("BEGIN")
            yield conn
            if commit:
                conn.commit()
        except (ValidationError, NotFoundError):
            if conn:
                conn.rollback()
            raise
        except sqlite3.OperationalError as e:
            if conn:
                conn.rollback()
            logger.error(f"Database operational error: {e}")
            raise DatabaseConnectionError(f"Database connection failed: {e}") from e
        except sqlite3.IntegrityError as e:
            if conn:
                conn.rollback()
            logger.error(f"Database integrity error: {e}")
            raise DatabaseIntegrityError(f"Data integrity violation: {e}") from e
        except PersistenceError:
            if conn:
                conn.rollback()
            raise
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise PersistenceError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                conn.close()

    def _init_database(self):
        """Create database tables if they don't exist."""
        with self.db_connection(commit=True) as conn:
            cursor = conn.cursor()

            # Accounts table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL CHECK(type IN ('bank', 'credit', 'savings', 'investment')),
                    currency TEXT NOT NULL DEFAULT 'USD',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Tags table (forest through parent_id)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    parent_id INTEGER,
                    color TEXT NOT NULL DEFAULT '#3b82f6',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (parent_id) REFERENCES tags(id) ON DELETE SET NULL
                )
            """)

            # Transactions table, amounts stored as decimal text
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    amount TEXT NOT NULL,
                    type TEXT NOT NULL CHECK(type IN ('income', 'expense', 'transfer')),
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK(status IN ('pending', 'cleared', 'duplicated')),
                    from_account_id INTEGER,
                    to_account_id INTEGER,
                    linked_transaction_id INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES accounts(id),
                    FOREIGN KEY (from_account_id) REFERENCES accounts(id),
                    FOREIGN KEY (to_account_id) REFERENCES accounts(id),
                    FOREIGN KEY (linked_transaction_id) REFERENCES transactions(id) ON DELETE SET NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transaction_tags (
                    transaction_id INTEGER NOT NULL,
                    tag_id INTEGER NOT NULL,
                    PRIMARY KEY (transaction_id, tag_id),
                    FOREIGN KEY (transaction_id) REFERENCES transactions(id) ON DELETE CASCADE,
                    FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
                )
            """)

            # Investment accounts extend a regular account
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS investment_accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
            """)

            # account_id points at investment_accounts, asset_id is the price source's identifier
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS investment_assets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    api_source TEXT NOT NULL,
                    asset_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    name TEXT,
                    amount TEXT NOT NULL DEFAULT '0',
                    last_price TEXT,
                    last_price_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES investment_accounts(id) ON DELETE CASCADE
                )
            """)

            # One priced snapshot per asset per day
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS asset_worth_history (
                    asset_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    price TEXT NOT NULL,
                    currency TEXT,
                    PRIMARY KEY (asset_id, date),
                    FOREIGN KEY (asset_id) REFERENCES investment_assets(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_account_date ON transactions(account_id, date)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tags_parent ON tags(parent_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_transaction_tags_tag ON transaction_tags(tag_id)")

    # ==================== ACCOUNT OPERATIONS ====================

    def get_accounts(self) -> List[Dict[str, Any]]:
        """Get all accounts."""
        with self.db_connection(commit=False) as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY name, id").fetchall()
            return [dict(row) for row in rows]

    def get_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        """Get a specific account, or None."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return dict(row) if row else None

    def add_account(self, name: str, account_type: str, currency: str = "USD") -> Dict[str, Any]:
        """Create an account and return it."""
        with self.db_connection(commit=True) as conn:
            account_id = self._insert_account(conn, name, account_type, currency)
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return dict(row)

    def _insert_account(self, conn, name: str, account_type: str, currency: str) -> int:
        valid, errors = validate_required_fields({'name': name, 'currency': currency})
        if not valid:
            raise ValidationError("; ".join(errors))
        valid, error = validate_choice(account_type, ACCOUNT_TYPES, "Account type")
        if not valid:
            raise ValidationError(error)

        now = utc_now()
        cursor = conn.execute(
            "INSERT INTO accounts (name, type, currency, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (name.strip(), account_type, currency.strip().upper(), now, now)
        )
        logger.info(f"Added account: {name} (ID: {cursor.lastrowid})")
        return cursor.lastrowid

    def update_account(self, account_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Update name, type or currency of an account."""
        invalid_keys = set(updates.keys()) - ACCOUNT_UPDATABLE
        if invalid_keys:
            raise ValidationError(f"Invalid columns for accounts update: {sorted(invalid_keys)}")
        if not updates:
            raise ValidationError("No fields to update")
        if 'type' in updates:
            valid, error = validate_choice(updates['type'], ACCOUNT_TYPES, "Account type")
            if not valid:
                raise ValidationError(error)
        if 'name' in updates and not (updates['name'] or "").strip():
            raise ValidationError("Name is required")
        if 'currency' in updates:
            if not (updates['currency'] or "").strip():
                raise ValidationError("Currency is required")
            updates = {**updates, 'currency': updates['currency'].strip().upper()}

        with self.db_connection(commit=True) as conn:
            row = conn.execute("SELECT type FROM accounts WHERE id = ?", (account_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Account {account_id} not found")
            # Investment accounts carry an investment_accounts record and assets
            if 'type' in updates and (updates['type'] == 'investment') != (row['type'] == 'investment'):
                raise ValidationError(
                    f"Cannot change account type from {row['type']} to {updates['type']}"
                )

            set_clause = ", ".join([f"{key} = ?" for key in updates.keys()])
            conn.execute(
                f"UPDATE accounts SET {set_clause}, updated_at = ? WHERE id = ?",
                list(updates.values()) + [utc_now(), account_id]
            )
            logger.info(f"Updated account {account_id}: {list(updates.keys())}")
            return dict(conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone())

    def delete_account(self, account_id: int) -> bool:
        """
        Delete an account.

        Refused while any transaction still references the account.
        """
        with self.db_connection(commit=True) as conn:
            if not conn.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,)).fetchone():
                raise NotFoundError(f"Account {account_id} not found")

            count = conn.execute(
                """
                SELECT COUNT(*) FROM transactions
                WHERE account_id = ? OR from_account_id = ? OR to_account_id = ?
                """,
                (account_id, account_id, account_id)
            ).fetchone()[0]
            if count > 0:
                logger.warning(f"Cannot delete account {account_id} - has {count} transactions")
                raise ValidationError(f"Account {account_id} still has {count} transactions")

            conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            logger.info(f"Deleted account {account_id}")
            return True

    def _require_account(self, conn, account_id: Any, label: str = "Account") -> int:
        try:
            account_id = int(account_id)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be an account id")
        if not conn.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,)).fetchone():
            raise ValidationError(f"{label} {account_id} does not exist")
        return account_id

    # ==================== TAG OPERATIONS ====================

    def get_tags(self) -> List[Dict[str, Any]]:
        """Get all tags in creation order."""
        with self.db_connection(commit=False) as conn:
            rows = conn.execute("SELECT * FROM tags ORDER BY created_at, id").fetchall()
            return [dict(row) for row in rows]

    def get_tag(self, tag_id: int) -> Optional[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            row = conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
            return dict(row) if row else None

    def add_tag(self, name: str, parent_id: Optional[int] = None,
                color: str = DEFAULT_TAG_COLOR) -> Dict[str, Any]:
        """Create a tag, optionally under an existing parent."""
        if not name or not name.strip():
            raise ValidationError("Name is required")
        color = color or DEFAULT_TAG_COLOR
        valid, error = validate_color(color)
        if not valid:
            raise ValidationError(error)

        with self.db_connection(commit=True) as conn:
            if parent_id is not None and not self._tag_exists(conn, parent_id):
                raise ValidationError(f"Parent tag {parent_id} does not exist")

            now = utc_now()
            cursor = conn.execute(
                "INSERT INTO tags (name, parent_id, color, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (name.strip(), parent_id, color, now, now)
            )
            tag_id = cursor.lastrowid
            logger.info(f"Added tag: {name} (ID: {tag_id}, parent: {parent_id})")
            return dict(conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone())

    def update_tag(self, tag_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update name, parent or colour of a tag.

        A tag cannot be moved under itself or under one of its own
        descendants, so the hierarchy always stays a forest.
        """
        invalid_keys = set(updates.keys()) - TAG_UPDATABLE
        if invalid_keys:
            raise ValidationError(f"Invalid columns for tags update: {sorted(invalid_keys)}")
        if not updates:
            raise ValidationError("No fields to update")
        if 'name' in updates and not (updates['name'] or "").strip():
            raise ValidationError("Name is required")
        if 'color' in updates:
            valid, error = validate_color(updates['color'])
            if not valid:
                raise ValidationError(error)

        with self.db_connection(commit=True) as conn:
            if not self._tag_exists(conn, tag_id):
                raise NotFoundError(f"Tag {tag_id} not found")

            parent_id = updates.get('parent_id')
            if parent_id is not None:
                if parent_id == tag_id:
                    raise ValidationError("A tag cannot be its own parent")
                if not self._tag_exists(conn, parent_id):
                    raise ValidationError(f"Parent tag {parent_id} does not exist")
                if parent_id in self._descendant_ids(conn, tag_id):
                    raise ValidationError(
                        f"Tag {parent_id} is a descendant of tag {tag_id}, moving would create a cycle"
                    )

            set_clause = ", ".join([f"{key} = ?" for key in updates.keys()])
            conn.execute(
                f"UPDATE tags SET {set_clause}, updated_at = ? WHERE id = ?",
                list(updates.values()) + [utc_now(), tag_id]
            )
            logger.info(f"Updated tag {tag_id}: {list(updates.keys())}")
            return dict(conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone())

    def delete_tag(self, tag_id: int) -> Dict[str, Any]:
        """
        Delete a tag.

        Its children move up to the deleted tag's own parent (or become
        roots) and the tag is removed from every transaction carrying it.
        """
        with self.db_connection(commit=True) as conn:
            row = conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Tag {tag_id} not found")

            cursor = conn.execute(
                "UPDATE tags SET parent_id = ?, updated_at = ? WHERE parent_id = ?",
                (row['parent_id'], utc_now(), tag_id)
            )
            reparented = cursor.rowcount
            untagged = conn.execute(
                "DELETE FROM transaction_tags WHERE tag_id = ?", (tag_id,)
            ).rowcount
            conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))

            logger.info(
                f"Deleted tag {tag_id} ({row['name']}): "
                f"{reparented} children re-parented, removed from {untagged} transactions"
            )
            return {'tag_id': tag_id, 'reparented': reparented, 'untagged': untagged}

    def _tag_exists(self, conn, tag_id: Any) -> bool:
        return conn.execute("SELECT 1 FROM tags WHERE id = ?", (tag_id,)).fetchone() is not None

    def _descendant_ids(self, conn, tag_id: int) -> Set[int]:
        # UNION (not UNION ALL) stops the walk on rows already seen
        rows = conn.execute("""
            WITH RECURSIVE tag_tree(id) AS (
                SELECT id FROM tags WHERE id = ?
                UNION
                SELECT t.id FROM tags t
                INNER JOIN tag_tree tt ON t.parent_id = tt.id
            )
            SELECT id FROM tag_tree
        """, (tag_id,)).fetchall()
        return {row['id'] for row in rows}

    def get_descendant_ids(self, tag_id: int) -> Set[int]:
        """
        Get a tag's id together with the ids of all its descendants.

        Raises:
            NotFoundError: If the tag does not exist
        """
        with self.db_connection(commit=False) as conn:
            ids = self._descendant_ids(conn, tag_id)
            if not ids:
                raise NotFoundError(f"Tag {tag_id} not found")
            return ids

    @staticmethod
    def build_tag_tree(tags: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Nest a flat tag list into a forest.

        Each node is the tag dict plus a 'children' list. Tags whose parent is
        missing from the list are treated as roots.
        """
        nodes = {tag['id']: {**tag, 'children': []} for tag in tags}
        roots = []
        for tag in tags:
            node = nodes[tag['id']]
            parent = nodes.get(tag['parent_id']) if tag['parent_id'] is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent['children'].append(node)
        return roots

    def sync_tag_colors(self, dry_run: bool = False) -> List[Dict[str, Any]]:
        """
        Recolour every child tag to match its parent.

        Walks the forest top-down so each descendant ends up with the colour
        of its root.

        Args:
            dry_run: Only report what would change

        Returns:
            List of {'id', 'name', 'old_color', 'new_color'} for each changed tag
        """
        with self.db_connection(commit=not dry_run) as conn:
            tags = [dict(row) for row in conn.execute("SELECT * FROM tags ORDER BY id").fetchall()]
            by_id = {tag['id']: tag for tag in tags}
            children: Dict[int, List[Dict[str, Any]]] = {}
            for tag in tags:
                if tag['parent_id'] is not None and tag['parent_id'] in by_id:
                    children.setdefault(tag['parent_id'], []).append(tag)

            changes = []
            queue = deque(
                (tag, tag['color']) for tag in tags
                if tag['parent_id'] is None or tag['parent_id'] not in by_id
            )
            visited = set()
            while queue:
                tag, color = queue.popleft()
                if tag['id'] in visited:
                    continue
                visited.add(tag['id'])
                if tag['color'] != color:
                    changes.append({
                        'id': tag['id'],
                        'name': tag['name'],
                        'old_color': tag['color'],
                        'new_color': color,
                    })
                for child in children.get(tag['id'], []):
                    queue.append((child, color))

            if not dry_run:
                now = utc_now()
                for change in changes:
                    conn.execute(
                        "UPDATE tags SET color = ?, updated_at = ? WHERE id = ?",
                        (change['new_color'], now, change['id'])
                    )
                logger.info(f"Synced colours of {len(changes)} tags")
            return changes

    # ==================== TRANSACTION OPERATIONS ====================

    def _row_to_transaction(self, row, tags: Optional[List[int]] = None) -> Dict[str, Any]:
        transaction = dict(row)
        transaction['amount'] = from_money_str(transaction['amount'])
        transaction['tags'] = tags or []
        transaction['transfer_direction'] = transfer_direction(transaction)
        return transaction

    def _load_transactions(self, conn, rows) -> List[Dict[str, Any]]:
        """Attach tag id lists to transaction rows."""
        if not rows:
            return []
        ids = [row['id'] for row in rows]
        tag_map: Dict[int, List[int]] = {}
        # Chunked to stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            for tag_row in conn.execute(
                f"SELECT transaction_id, tag_id FROM transaction_tags "
                f"WHERE transaction_id IN ({placeholders}) ORDER BY tag_id",
                chunk
            ).fetchall():
                tag_map.setdefault(tag_row['transaction_id'], []).append(tag_row['tag_id'])
        return [self._row_to_transaction(row, tag_map.get(row['id'])) for row in rows]

    def fetch_transaction(self, conn, transaction_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
        if not row:
            return None
        return self._load_transactions(conn, [row])[0]

    def get_transaction(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        """Get a single transaction with its tags, or None."""
        with self.db_connection(commit=False) as conn:
            return self.fetch_transaction(conn, transaction_id)

    def get_transactions(
        self,
        tag_id: Optional[int] = None,
        search: Optional[str] = None,
        status: Optional[str] = None,
        account_id: Optional[int] = None,
        transaction_type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get transactions, newest first.

        Args:
            tag_id: Keep transactions tagged with this tag or any of its descendants
            search: Case-insensitive substring of the description
            status: Exact status
            account_id: Only this account's rows
            transaction_type: Exact type
            start_date: Inclusive lower bound on the canonical timestamp
            end_date: Inclusive upper bound on the canonical timestamp
            limit: Maximum number of rows
            offset: Rows to skip

        Raises:
            NotFoundError: If tag_id is given and does not exist
        """
        query = "SELECT t.* FROM transactions t WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND t.status = ?"
            params.append(status)
        if account_id is not None:
            query += " AND t.account_id = ?"
            params.append(account_id)
        if transaction_type:
            query += " AND t.type = ?"
            params.append(transaction_type)
        if start_date:
            query += " AND t.date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND t.date <= ?"
            params.append(end_date)
        if search:
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            query += " AND casefold(t.description) LIKE ? ESCAPE '\\'"
            params.append(f"%{escaped.casefold()}%")

        with self.db_connection(commit=False) as conn:
            if tag_id is not None:
                tag_ids = self._descendant_ids(conn, tag_id)
                if not tag_ids:
                    raise NotFoundError(f"Tag {tag_id} not found")
                placeholders = ",".join("?" * len(tag_ids))
                query += (
                    " AND EXISTS (SELECT 1 FROM transaction_tags tt "
                    f"WHERE tt.transaction_id = t.id AND tt.tag_id IN ({placeholders}))"
                )
                params.extend(sorted(tag_ids))

            query += " ORDER BY t.date DESC, t.id DESC"
            if limit is not None:
                query += " LIMIT ? OFFSET ?"
                params.extend([limit, offset])
            elif offset:
                query += " LIMIT -1 OFFSET ?"
                params.append(offset)

            rows = conn.execute(query, params).fetchall()
            return self._load_transactions(conn, rows)

    def _normalize_tags(self, conn, tags: Optional[Iterable[Any]]) -> List[int]:
        if tags is None:
            return []
        if isinstance(tags, (str, bytes)) or not isinstance(tags, Iterable):
            raise ValidationError("Tags must be a list of tag ids")
        tag_ids = []
        for tag in tags:
            try:
                tag = int(tag)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid tag id: {tag!r}")
            if not self._tag_exists(conn, tag):
                raise ValidationError(f"Tag {tag} does not exist")
            if tag not in tag_ids:
                tag_ids.append(tag)
        return tag_ids

    def _set_tags(self, conn, transaction_id: int, tag_ids: List[int]):
        conn.execute("DELETE FROM transaction_tags WHERE transaction_id = ?", (transaction_id,))
        conn.executemany(
            "INSERT INTO transaction_tags (transaction_id, tag_id) VALUES (?, ?)",
            [(transaction_id, tag) for tag in tag_ids]
        )

    def _parse_amount_field(self, value: Any) -> Decimal:
        try:
            return parse_amount(value)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _parse_date_field(self, value: Any) -> str:
        try:
            return to_timestamp(value)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def insert_transaction_row(self, conn, data: Dict[str, Any]) -> int:
        """
        Insert one non-transfer row inside an open unit of work.

        The data must already be normalized: canonical date and Decimal amount.
        """
        now = utc_now()
        cursor = conn.execute(
            """
            INSERT INTO transactions (
                account_id, date, description, amount, type, status,
                from_account_id, to_account_id, linked_transaction_id,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data['account_id'],
                data['date'],
                data.get('description') or "",
                to_money_str(data['amount']),
                data['type'],
                data.get('status') or 'pending',
                data.get('from_account_id'),
                data.get('to_account_id'),
                data.get('linked_transaction_id'),
                now,
                now,
            )
        )
        transaction_id = cursor.lastrowid
        if data.get('tags'):
            self._set_tags(conn, transaction_id, data['tags'])
        return transaction_id

    def add_transaction(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a transaction.

        A transfer creates two linked rows in one unit of work: an outgoing
        leg on from_account_id holding -|amount| and an incoming leg on
        to_account_id holding +|amount|. The outgoing leg is returned.

        Expenses are always stored as a negative magnitude.

        Raises:
            ValidationError: On a bad type, status, amount, date or missing account
        """
        transaction_type = data.get('type')
        valid, error = validate_choice(transaction_type, TRANSACTION_TYPES, "Type")
        if not valid:
            raise ValidationError(error)

        status = data.get('status') or 'pending'
        valid, error = validate_choice(status, TRANSACTION_STATUSES, "Status")
        if not valid:
            raise ValidationError(error)

        amount = self._parse_amount_field(data.get('amount'))
        transaction_date = self._parse_date_field(data.get('date'))
        description = (data.get('description') or "").strip()

        with self.db_connection(commit=True) as conn:
            tag_ids = self._normalize_tags(conn, data.get('tags'))

            if transaction_type == 'transfer':
                valid, errors = validate_required_fields({
                    'from_account_id': data.get('from_account_id'),
                    'to_account_id': data.get('to_account_id'),
                })
                if not valid:
                    raise ValidationError("; ".join(errors))
                from_id = self._require_account(conn, data['from_account_id'], "From account")
                to_id = self._require_account(conn, data['to_account_id'], "To account")
                if from_id == to_id:
                    raise ValidationError("From account and to account must differ")

                base = {
                    'date': transaction_date,
                    'description': description,
                    'type': 'transfer',
                    'status': status,
                    'tags': tag_ids,
                    'from_account_id': from_id,
                    'to_account_id': to_id,
                }
                outgoing_id = self.insert_transaction_row(
                    conn, {**base, 'account_id': from_id, 'amount': -abs(amount)}
                )
                incoming_id = self.insert_transaction_row(
                    conn, {**base, 'account_id': to_id, 'amount': abs(amount)}
                )
                conn.execute(
                    "UPDATE transactions SET linked_transaction_id = ? WHERE id = ?",
                    (incoming_id, outgoing_id)
                )
                conn.execute(
                    "UPDATE transactions SET linked_transaction_id = ? WHERE id = ?",
                    (outgoing_id, incoming_id)
                )
                logger.info(
                    f"Added transfer {outgoing_id}/{incoming_id}: {abs(amount)} "
                    f"from account {from_id} to account {to_id}"
                )
                return self.fetch_transaction(conn, outgoing_id)

            if data.get('account_id') is None:
                raise ValidationError("Account Id is required")
            account_id = self._require_account(conn, data['account_id'])
            if transaction_type == 'expense':
                amount = -abs(amount)

            transaction_id = self.insert_transaction_row(conn, {
                'account_id': account_id,
                'date': transaction_date,
                'description': description,
                'amount': amount,
                'type': transaction_type,
                'status': status,
                'tags': tag_ids,
            })
            logger.info(f"Added {transaction_type} {transaction_id}: {amount} on account {account_id}")
            return self.fetch_transaction(conn, transaction_id)

    def _normalize_updates(self, conn, updates: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in updates.items() if k not in TRANSACTION_PROTECTED}
        invalid_keys = set(changes.keys()) - TRANSACTION_UPDATABLE
        if invalid_keys:
            raise ValidationError(f"Invalid columns for transactions update: {sorted(invalid_keys)}")
        if not changes:
            raise ValidationError("No fields to update")

        if 'type' in changes:
            valid, error = validate_choice(changes['type'], TRANSACTION_TYPES, "Type")
            if not valid:
                raise ValidationError(error)
        if 'status' in changes:
            valid, error = validate_choice(changes['status'], TRANSACTION_STATUSES, "Status")
            if not valid:
                raise ValidationError(error)
        if 'amount' in changes:
            changes['amount'] = self._parse_amount_field(changes['amount'])
        if 'date' in changes:
            changes['date'] = self._parse_date_field(changes['date'])
        if 'description' in changes:
            changes['description'] = (changes['description'] or "").strip()
        if 'tags' in changes:
            changes['tags'] = self._normalize_tags(conn, changes['tags'])
        if 'account_id' in changes:
            changes['account_id'] = self._require_account(conn, changes['account_id'])
        for key, label in (('from_account_id', "From account"), ('to_account_id', "To account")):
            if changes.get(key) is not None:
                changes[key] = self._require_account(conn, changes[key], label)
        return changes

    def _write_row(self, conn, transaction_id: int, changes: Dict[str, Any], now: str):
        columns = {k: v for k, v in changes.items() if k != 'tags'}
        if 'amount' in columns:
            columns['amount'] = to_money_str(columns['amount'])
        columns['updated_at'] = now
        set_clause = ", ".join([f"{key} = ?" for key in columns.keys()])
        conn.execute(
            f"UPDATE transactions SET {set_clause} WHERE id = ?",
            list(columns.values()) + [transaction_id]
        )
        if 'tags' in changes:
            self._set_tags(conn, transaction_id, changes['tags'])

    def _update_in_unit(self, conn, transaction_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        current = self.fetch_transaction(conn, transaction_id)
        if not current:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        changes = self._normalize_updates(conn, updates)
        linked_id = current['linked_transaction_id']
        linked = self.fetch_transaction(conn, linked_id) if linked_id is not None else None
        now = utc_now()

        if linked is None:
            if changes.get('type') == 'transfer' and current['type'] != 'transfer':
                raise ValidationError(
                    "A transaction cannot be turned into a transfer, create a transfer instead"
                )
            if 'amount' in changes and changes.get('type', current['type']) == 'expense':
                changes['amount'] = -abs(changes['amount'])
            elif changes.get('type') == 'expense':
                changes['amount'] = -abs(current['amount'])
            self._write_row(conn, transaction_id, changes, now)
            logger.info(f"Updated transaction {transaction_id}: {list(changes.keys())}")
            return self.fetch_transaction(conn, transaction_id)

        # Linked transfer leg: every change is mirrored onto the partner
        mirrored = {k: v for k, v in changes.items() if k != 'account_id'}
        if 'amount' in changes:
            mirrored['amount'] = -changes['amount']

        if 'from_account_id' in changes or 'to_account_id' in changes:
            from_id = changes.get('from_account_id', current['from_account_id'])
            to_id = changes.get('to_account_id', current['to_account_id'])
            if from_id is None or to_id is None:
                raise ValidationError("Transfer requires both from and to accounts")
            if from_id == to_id:
                raise ValidationError("From account and to account must differ")
            outgoing = current['amount'] < 0 or (
                current['amount'] == 0 and current['account_id'] == current['from_account_id']
            )
            changes['account_id'] = from_id if outgoing else to_id
            mirrored['account_id'] = to_id if outgoing else from_id

        self._write_row(conn, transaction_id, changes, now)
        self._write_row(conn, linked['id'], mirrored, now)
        logger.info(
            f"Updated transaction {transaction_id} and linked {linked['id']}: {list(changes.keys())}"
        )
        return self.fetch_transaction(conn, transaction_id)

    def update_transaction(self, transaction_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update a transaction.

        id, created_at, updated_at and linked_transaction_id are ignored.
        When the row is a transfer leg the same changes land on its partner
        in the same unit of work, with the amount negated. Changing
        from_account_id/to_account_id moves both legs onto the new accounts.

        Raises:
            NotFoundError: If the transaction does not exist
            ValidationError: If the update is empty or invalid
        """
        with self.db_connection(commit=True) as conn:
            return self._update_in_unit(conn, transaction_id, updates)

    def delete_transaction(self, transaction_id: int) -> List[int]:
        """
        Delete a transaction and, for a transfer leg, its partner.

        Returns:
            The ids that were removed
        """
        with self.db_connection(commit=True) as conn:
            row = conn.execute(
                "SELECT id, linked_transaction_id FROM transactions WHERE id = ?",
                (transaction_id,)
            ).fetchone()
            if not row:
                raise NotFoundError(f"Transaction {transaction_id} not found")

            deleted = [transaction_id]
            if row['linked_transaction_id'] is not None:
                conn.execute("DELETE FROM transactions WHERE id = ?", (row['linked_transaction_id'],))
                deleted.append(row['linked_transaction_id'])
            conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
            logger.info(f"Deleted transactions {deleted}")
            return deleted

    def bulk_delete(self, ids: List[int], include_linked: bool = False) -> int:
        """
        Delete many transactions in one unit of work.

        Partners of deleted transfer legs are kept (their link is cleared)
        unless include_linked is set.

        Returns:
            Number of rows removed
        """
        ids = list(dict.fromkeys(int(i) for i in ids))
        if not ids:
            return 0

        with self.db_connection(commit=True) as conn:
            targets = set(ids)
            if include_linked:
                for start in range(0, len(ids), 500):
                    chunk = ids[start:start + 500]
                    placeholders = ",".join("?" * len(chunk))
                    for row in conn.execute(
                        f"SELECT linked_transaction_id FROM transactions "
                        f"WHERE id IN ({placeholders}) AND linked_transaction_id IS NOT NULL",
                        chunk
                    ).fetchall():
                        targets.add(row['linked_transaction_id'])

            deleted = 0
            target_list = sorted(targets)
            for start in range(0, len(target_list), 500):
                chunk = target_list[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                deleted += conn.execute(
                    f"DELETE FROM transactions WHERE id IN ({placeholders})", chunk
                ).rowcount

            logger.info(f"Bulk deleted {deleted} transactions")
            return deleted

    def bulk_update(self, ids: List[int], updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply the same update to many transactions.

        Each id is updated on its own, so one bad id does not block the rest.
        When both legs of a transfer are listed the pair is updated once.

        Returns:
            {'updated': [transactions], 'errors': [{'id', 'error'}]}
        """
        updated = []
        errors = []
        handled: Set[int] = set()

        for transaction_id in dict.fromkeys(ids):
            if transaction_id in handled:
                transaction = self.get_transaction(transaction_id)
                if transaction:
                    updated.append(transaction)
                continue
            try:
                with self.db_connection(commit=True) as conn:
                    transaction = self._update_in_unit(conn, transaction_id, dict(updates))
                updated.append(transaction)
                handled.add(transaction_id)
                if transaction['linked_transaction_id'] is not None:
                    handled.add(transaction['linked_transaction_id'])
            except (ValidationError, NotFoundError, PersistenceError) as e:
                logger.warning(f"Bulk update skipped transaction {transaction_id}: {e}")
                errors.append({'id': transaction_id, 'error': str(e)})

        return {'updated': updated, 'errors': errors}

    def find_similar_transactions(self, conn, account_id: int, amount: Decimal,
                                  transaction_date: str) -> List[Dict[str, Any]]:
        """
        Rows on the same account with the same amount less than seven days away.

        At most ten candidates are returned, nearest dates first.
        """
        moment = from_timestamp(transaction_date)
        lower = to_timestamp(moment - DUPLICATE_WINDOW)
        upper = to_timestamp(moment + DUPLICATE_WINDOW)
        rows = conn.execute(
            """
            SELECT id, date, description, amount FROM transactions
            WHERE account_id = ? AND amount = ? AND date > ? AND date < ?
            ORDER BY date DESC, id DESC
            LIMIT ?
            """,
            (account_id, to_money_str(amount), lower, upper, DUPLICATE_CANDIDATE_LIMIT)
        ).fetchall()
        return [dict(row) for row in rows]

    def get_ledger_rows(
        self,
        status: Optional[str] = None,
        account_id: Optional[int] = None,
        end_date: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Bare ledger rows for aggregation, without tags.

        Each row carries account_id, date, amount (Decimal), type,
        from_account_id and to_account_id, ordered by date.
        """
        query = """
            SELECT id, account_id, date, amount, type, status, from_account_id, to_account_id
            FROM transactions WHERE 1=1
        """
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        query += " ORDER BY date, id"

        with self.db_connection(commit=False) as conn:
            rows = []
            for row in conn.execute(query, params).fetchall():
                item = dict(row)
                item['amount'] = from_money_str(item['amount'])
                rows.append(item)
            logger.debug(f"Loaded {len(rows)} ledger rows")
            return rows

    # ==================== INVESTMENT OPERATIONS ====================

    def add_investment_account(self, name: str, currency: str = "USD") -> Dict[str, Any]:
        """Create an investment-type account and its investment record together."""
        with self.db_connection(commit=True) as conn:
            account_id = self._insert_account(conn, name, 'investment', currency)
            cursor = conn.execute(
                "INSERT INTO investment_accounts (account_id, name, created_at) VALUES (?, ?, ?)",
                (account_id, name.strip(), utc_now())
            )
            logger.info(f"Added investment account {cursor.lastrowid} for account {account_id}")
            return self._fetch_investment_account(conn, cursor.lastrowid)

    def _fetch_investment_account(self, conn, investment_account_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("""
            SELECT ia.*, a.currency, a.type
            FROM investment_accounts ia
            JOIN accounts a ON a.id = ia.account_id
            WHERE ia.id = ?
        """, (investment_account_id,)).fetchone()
        if not row:
            return None
        account = dict(row)
        account['assets'] = self._fetch_assets(conn, investment_account_id)
        return account

    def get_investment_accounts(self) -> List[Dict[str, Any]]:
        """Get all investment accounts with their assets."""
        with self.db_connection(commit=False) as conn:
            ids = [row['id'] for row in conn.execute(
                "SELECT id FROM investment_accounts ORDER BY id"
            ).fetchall()]
            return [self._fetch_investment_account(conn, i) for i in ids]

    def get_investment_account(self, investment_account_id: int) -> Optional[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            return self._fetch_investment_account(conn, investment_account_id)

    def get_investment_account_by_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        """Investment record behind a regular account id, or None."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute(
                "SELECT id FROM investment_accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
            return self._fetch_investment_account(conn, row['id']) if row else None

    def _asset_from_row(self, row) -> Dict[str, Any]:
        asset = dict(row)
        asset['amount'] = from_money_str(asset['amount'])
        if asset.get('last_price') is not None:
            asset['last_price'] = from_money_str(asset['last_price'])
        return asset

    _ASSET_SELECT = """
        SELECT ast.*, a.currency
        FROM investment_assets ast
        JOIN investment_accounts ia ON ia.id = ast.account_id
        JOIN accounts a ON a.id = ia.account_id
    """

    def _fetch_assets(self, conn, investment_account_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = self._ASSET_SELECT
        params: List[Any] = []
        if investment_account_id is not None:
            query += " WHERE ast.account_id = ?"
            params.append(investment_account_id)
        query += " ORDER BY ast.id"
        return [self._asset_from_row(row) for row in conn.execute(query, params).fetchall()]

    def get_assets(self, investment_account_id: Optional[int] = None) -> List[Dict[str, Any]]:
        with self.db_connection(commit=False) as conn:
            return self._fetch_assets(conn, investment_account_id)

    def get_asset(self, asset_id: int) -> Optional[Dict[str, Any]]:
        """Get an asset together with its account currency, or None."""
        with self.db_connection(commit=False) as conn:
            row = conn.execute(self._ASSET_SELECT + " WHERE ast.id = ?", (asset_id,)).fetchone()
            return self._asset_from_row(row) if row else None

    def add_asset(self, investment_account_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Add a held asset to an investment account.

        Args:
            investment_account_id: Owning investment account
            data: symbol, api_source, asset_id (defaults to symbol), name, amount
        """
        valid, errors = validate_required_fields({
            'symbol': data.get('symbol'),
            'api_source': data.get('api_source'),
        })
        if not valid:
            raise ValidationError("; ".join(errors))
        amount = self._parse_amount_field(data.get('amount', 0))
        valid, error = validate_amount(amount)
        if not valid:
            raise ValidationError(error)

        with self.db_connection(commit=True) as conn:
            if not conn.execute(
                "SELECT 1 FROM investment_accounts WHERE id = ?", (investment_account_id,)
            ).fetchone():
                raise NotFoundError(f"Investment account {investment_account_id} not found")

            now = utc_now()
            cursor = conn.execute(
                """
                INSERT INTO investment_assets (
                    account_id, api_source, asset_id, symbol, name, amount, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    investment_account_id,
                    data['api_source'],
                    str(data.get('asset_id') or data['symbol']).strip(),
                    data['symbol'].strip().upper(),
                    data.get('name'),
                    to_money_str(amount),
                    now,
                    now,
                )
            )
            asset_id = cursor.lastrowid
            logger.info(f"Added asset {data['symbol']} (ID: {asset_id}) to investment account {investment_account_id}")

        return self.get_asset(asset_id)

    def update_asset_amount(self, asset_id: int, amount: Any) -> Dict[str, Any]:
        amount = self._parse_amount_field(amount)
        valid, error = validate_amount(amount)
        if not valid:
            raise ValidationError(error)
        with self.db_connection(commit=True) as conn:
            cursor = conn.execute(
                "UPDATE investment_assets SET amount = ?, updated_at = ? WHERE id = ?",
                (to_money_str(amount), utc_now(), asset_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Asset {asset_id} not found")
            logger.info(f"Updated asset {asset_id} amount to {amount}")
        return self.get_asset(asset_id)

    def delete_asset(self, asset_id: int) -> bool:
        with self.db_connection(commit=True) as conn:
            cursor = conn.execute("DELETE FROM investment_assets WHERE id = ?", (asset_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Asset {asset_id} not found")
            logger.info(f"Deleted asset {asset_id}")
            return True

    def record_asset_price(self, asset_id: int, price: Decimal, price_date: str,
                           currency: Optional[str] = None) -> Dict[str, Any]:
        """
        Store a price as the asset's latest and snapshot it for the day.

        The daily worth snapshot is upserted, so recording twice on the same
        day keeps only the last price.

        Args:
            asset_id: Asset to price
            price: Unit price
            price_date: YYYY-MM-DD
            currency: Currency the price is quoted in
        """
        with self.db_connection(commit=True) as conn:
            row = conn.execute(
                "SELECT amount FROM investment_assets WHERE id = ?", (asset_id,)
            ).fetchone()
            if not row:
                raise NotFoundError(f"Asset {asset_id} not found")

            conn.execute(
                """
                UPDATE investment_assets
                SET last_price = ?, last_price_date = ?, updated_at = ?
                WHERE id = ?
                """,
                (to_money_str(price), price_date, utc_now(), asset_id)
            )
            conn.execute(
                """
                INSERT INTO asset_worth_history (asset_id, date, amount, price, currency)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(asset_id, date) DO UPDATE SET
                    amount = excluded.amount,
                    price = excluded.price,
                    currency = excluded.currency
                """,
                (asset_id, price_date, row['amount'], to_money_str(price), currency)
            )
            logger.info(f"Recorded price {price} {currency or ''} for asset {asset_id} on {price_date}")
        return self.get_asset(asset_id)

    def get_worth_history(self, asset_ids: Optional[List[int]] = None) -> List[Dict[str, Any]]:
        """Snapshot rows ordered by asset then date, amounts and prices as Decimal."""
        query = "SELECT * FROM asset_worth_history"
        params: List[Any] = []
        if asset_ids is not None:
            if not asset_ids:
                return []
            query += f" WHERE asset_id IN ({','.join('?' * len(asset_ids))})"
            params.extend(asset_ids)
        query += " ORDER BY asset_id, date"

        with self.db_connection(commit=False) as conn:
            return [
                {
                    'asset_id': row['asset_id'],
                    'date': row['date'],
                    'amount': from_money_str(row['amount']),
                    'price': from_money_str(row['price']),
                    'currency': row['currency'],
                }
                for row in conn.execute(query, params).fetchall()
            ]
