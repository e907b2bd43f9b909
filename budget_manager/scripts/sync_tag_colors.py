#!/usr/bin/env python3
"""
Recolour every child tag to match its parent.
Colours flow down from each root, so one run fixes whole subtrees.
"""
import argparse
import os
import sys
from typing import List, Optional

from ..database import BudgetDatabase


def sync_all_tag_colors(db_path: str, dry_run: bool = False) -> int:
    """
    Propagate parent colours to their children.

    Args:
        db_path: Path to the database file
        dry_run: If True, only show what would be changed without updating

    Returns:
        Number of tags whose colour changed (or would change)
    """
    db = BudgetDatabase(db_path=db_path)

    print('Tag Colour Sync')
    print('=' * 80)

    changes = db.sync_tag_colors(dry_run=dry_run)
    for change in changes:
        print(f"{change['name']:30} | {change['old_color']} -> {change['new_color']}")

    print('=' * 80)

    if not changes:
        print("\nAll child tags already match their parent colour.")
    elif dry_run:
        print(f"\n[DRY RUN] {len(changes)} tags would be recoloured. Run without --dry-run to apply.")
    else:
        print(f"\nUpdated {len(changes)} tags.")

    return len(changes)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Recolour child tags to match their parent')
    parser.add_argument('--db-path',
                        default=os.getenv('DATABASE_PATH', 'data/budget.db'),
                        help='Path to database file')
    parser.add_argument('--dry-run',
                        action='store_true',
                        help='Show what would be changed without updating')

    args = parser.parse_args(argv)
    sync_all_tag_colors(args.db_path, args.dry_run)
    return 0


if __name__ == '__main__':
    sys.exit(main())
