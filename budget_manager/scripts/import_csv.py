#!/usr/bin/env python3
"""
Import a bank CSV export into an account.
Rows that look like existing transactions are kept with status "duplicated".
"""
import argparse
import os
import sys
from typing import List, Optional

from ..database import BudgetDatabase, NotFoundError, ValidationError
from ..importer import TransactionImporter, read_csv_rows


def import_csv_file(db_path: str, csv_path: str, account_id: int) -> dict:
    """
    Read csv_path and import its rows into account_id.

    Returns:
        The import summary with counts and per-row outcomes
    """
    db = BudgetDatabase(db_path=db_path)
    rows = read_csv_rows(csv_path)
    print(f"Read {len(rows)} rows from {csv_path}")

    result = TransactionImporter(db).bulk_import(rows, account_id)

    for row in result.rows:
        if row['status'] == 'skipped':
            print(f"  row {row['index'] + 1}: skipped ({row['error']})")
        elif row['status'] == 'duplicated':
            print(f"  row {row['index'] + 1}: possible duplicate, imported as transaction {row['transaction_id']}")

    print(f"\nImported: {result.imported_count} | Duplicated: {result.duplicated_count} | "
          f"Skipped: {result.skipped_count}")
    return result.to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Import a bank CSV export into an account')
    parser.add_argument('csv_path', help='CSV file (date, value date, description, recipient, account, amount, ...)')
    parser.add_argument('--account-id', type=int, required=True, help='Target account id')
    parser.add_argument('--db-path',
                        default=os.getenv('DATABASE_PATH', 'data/budget.db'),
                        help='Path to database file')

    args = parser.parse_args(argv)
    try:
        import_csv_file(args.db_path, args.csv_path, args.account_id)
    except (ValidationError, NotFoundError) as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
