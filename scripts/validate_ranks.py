#!/usr/bin/env python3
"""
Validate that stored daily ranks match market caps.

Usage:
    python scripts/validate_ranks.py --db data/rankhistory.db --from 2024-01-01 --to 2024-12-31
"""

import argparse
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankhistory.database import get_session_factory
from rankhistory.normalize import parse_day
from rankhistory.ranks import verify_ranks
from rankhistory.storage import SnapshotStore


def validate(db_path: Path, range_start, range_end) -> bool:
    """
    Check every ranked date in the window.

    Returns True if all ranks are consistent, False otherwise.
    """
    print(f"Querying database at {db_path}...")
    store = SnapshotStore(get_session_factory(db_path))
    dates = store.find_distinct_dates_in_range(range_start, range_end)
    print(f"  {len(dates)} dates with snapshots between {range_start} and {range_end}")

    problems = verify_ranks(store, range_start, range_end)
    if problems:
        print(f"\n❌ RANK PROBLEMS: {len(problems)}")
        for problem in problems[:10]:
            print(f"   - {problem}")
        if len(problems) > 10:
            print(f"   ... and {len(problems) - 10} more")
        return False

    print("✅ All ranks validated successfully!")
    return True


def main():
    parser = argparse.ArgumentParser(description="Validate daily ranks against market caps")
    parser.add_argument("--db", type=Path, default=Path("data/rankhistory.db"),
                        help="Path to SQLite database file")
    parser.add_argument("--from", dest="date_from", required=True, help="First day, YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", required=True, help="Last day, YYYY-MM-DD")

    args = parser.parse_args()

    if not args.db.exists():
        print(f"❌ Database file not found: {args.db}")
        sys.exit(1)

    try:
        range_start = parse_day(args.date_from)
        range_end = parse_day(args.date_to)
    except ValueError as e:
        print(f"❌ Invalid date: {e}")
        sys.exit(2)

    success = validate(args.db, range_start, range_end)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
