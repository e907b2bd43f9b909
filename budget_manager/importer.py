"""
CSV import for Budget Manager

Turns raw bank-export rows into ledger transactions. Amounts and dates are
normalized, the sign decides income or expense, and rows that look like an
existing transaction are imported with status "duplicated" instead of
being rejected.
"""
import logging
from typing import Dict, List, Any, Optional, Union
from pathlib import Path

import pandas as pd

from .database import BudgetDatabase, NotFoundError, ValidationError
from .utils import classify_type, parse_amount, parse_import_date, to_timestamp

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 3

# Bank export layout: date, value date, description, recipient, account, amount, balance, id
CSV_DATE_COLUMN = 0
CSV_DESCRIPTION_COLUMN = 2
CSV_AMOUNT_COLUMN = 5


def descriptions_match(existing: Optional[str], incoming: Optional[str]) -> bool:
    """
    Fuzzy description match used for duplicate detection.

    Both sides are lower-cased and trimmed, must be longer than three
    characters, and one must contain the other.

    Examples:
        >>> descriptions_match("Coffee Shop", "coffee shop downtown")
        True
        >>> descriptions_match("ATM", "atm")
        False
    """
    a = (existing or "").lower().strip()
    b = (incoming or "").lower().strip()
    if len(a) <= MIN_DESCRIPTION_LENGTH or len(b) <= MIN_DESCRIPTION_LENGTH:
        return False
    return a in b or b in a


class ImportResult:
    """Accumulator for one bulk import."""

    def __init__(self):
        self.imported_count = 0
        self.duplicated_count = 0
        self.skipped_count = 0
        self.transactions: List[Dict[str, Any]] = []
        self.rows: List[Dict[str, Any]] = []

    def add_inserted(self, index: int, transaction: Dict[str, Any]):
        self.transactions.append(transaction)
        if transaction['status'] == 'duplicated':
            self.duplicated_count += 1
        else:
            self.imported_count += 1
        self.rows.append({
            'index': index,
            'status': transaction['status'],
            'transaction_id': transaction['id'],
        })

    def add_skipped(self, index: int, error: str):
        self.skipped_count += 1
        self.rows.append({'index': index, 'status': 'skipped', 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'importedCount': self.imported_count,
            'duplicatedCount': self.duplicated_count,
            'skippedCount': self.skipped_count,
            'transactions': self.transactions,
            'rows': self.rows,
        }


class TransactionImporter:
    """Import raw CSV rows into one account."""

    def __init__(self, database: BudgetDatabase):
        self.db = database

    def detect_duplicate(self, conn, account_id: int, amount, transaction_date: str,
                         description: Optional[str]) -> bool:
        """True when a same-amount row on the account within 7 days has a matching description."""
        candidates = self.db.find_similar_transactions(conn, account_id, amount, transaction_date)
        return any(descriptions_match(c['description'], description) for c in candidates)

    def _prepare_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        amount = parse_amount(row.get('amount'))
        transaction_date = to_timestamp(parse_import_date(row.get('date')))
        return {
            'date': transaction_date,
            'description': (row.get('description') or "").strip(),
            'amount': amount,
            'type': classify_type(amount),
        }

    def bulk_import(self, rows: List[Dict[str, Any]], account_id: Optional[int]) -> ImportResult:
        """
        Import rows of {date, description, amount} into an account.

        The batch is one unit of work. Each row runs under its own savepoint,
        so a row that fails to parse or insert is counted as skipped and
        leaves the rest of the batch untouched.

        Raises:
            ValidationError: Empty row list or missing account id
            NotFoundError: Unknown account
        """
        if not rows:
            raise ValidationError("No transactions provided")
        if account_id is None:
            raise ValidationError("Account ID is required")

        result = ImportResult()
        with self.db.db_connection(commit=True) as conn:
            if not conn.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,)).fetchone():
                raise NotFoundError(f"Account {account_id} not found")

            for index, raw in enumerate(rows):
                try:
                    data = self._prepare_row(raw)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping import row {index}: {e}")
                    result.add_skipped(index, str(e))
                    continue

                conn.execute("SAVEPOINT import_row")
                try:
                    is_duplicate = self.detect_duplicate(
                        conn, account_id, data['amount'], data['date'], data['description']
                    )
                    data['status'] = 'duplicated' if is_duplicate else 'pending'
                    data['account_id'] = account_id
                    transaction_id = self.db.insert_transaction_row(conn, data)
                    conn.execute("RELEASE SAVEPOINT import_row")
                except Exception as e:
                    conn.execute("ROLLBACK TO SAVEPOINT import_row")
                    conn.execute("RELEASE SAVEPOINT import_row")
                    logger.warning(f"Skipping import row {index}: {e}")
                    result.add_skipped(index, str(e))
                    continue

                if is_duplicate:
                    logger.warning(
                        f"Import row {index} flagged as duplicate: {data['description']} {data['amount']}"
                    )
                result.add_inserted(index, self.db.fetch_transaction(conn, transaction_id))

        logger.info(
            f"Imported {result.imported_count} transactions into account {account_id} "
            f"({result.duplicated_count} duplicated, {result.skipped_count} skipped)"
        )
        return result


def read_csv_rows(path: Union[str, Path], skip_header: bool = True) -> List[Dict[str, Any]]:
    """
    Read a bank export into import rows.

    Every cell is read as text so amounts like "-50,00" reach parse_amount
    unchanged. Lines without an amount column value are ignored.

    Raises:
        ValidationError: If the file cannot be read as CSV
    """
    try:
        frame = pd.read_csv(
            path,
            header=None,
            skiprows=1 if skip_header else 0,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines="skip",
            engine="python",
        )
    except pd.errors.EmptyDataError:
        return []
    except (OSError, pd.errors.ParserError) as e:
        raise ValidationError(f"Could not read CSV file {path}: {e}") from e

    if frame.shape[1] <= CSV_AMOUNT_COLUMN:
        return []

    # Short lines come back padded with NaN
    frame = frame.fillna("")
    rows = []
    for record in frame.itertuples(index=False):
        amount = record[CSV_AMOUNT_COLUMN].strip()
        if not amount:
            continue
        rows.append({
            'date': record[CSV_DATE_COLUMN].strip(),
            'description': record[CSV_DESCRIPTION_COLUMN].strip(),
            'amount': amount,
        })
    logger.debug(f"Read {len(rows)} rows from {path}")
    return rows
