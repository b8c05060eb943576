#!/usr/bin/env python
"""Import lender names from a CSV export into the lender registry.

The CSV must have a ``name`` column. Exports from the school office are
Shift_JIS encoded, hence the default ``--encoding``.
"""

import argparse
import asyncio
import csv
import io
import logging
import sys
from pathlib import Path

from loanwise.database.crud import import_lenders
from loanwise.database.engine import AsyncSessionLocal, close_db
from loanwise.database.errors import LedgerError
from loanwise.identity import Identity

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def read_names(path: Path, encoding: str) -> list[str]:
    """Decode the file and return the raw values of its ``name`` column."""
    text = path.read_bytes().decode(encoding)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames or "name" not in reader.fieldnames:
        raise ValueError(f"{path} has no 'name' column (columns: {reader.fieldnames})")
    return [row.get("name") or "" for row in reader]


async def run(names: list[str], staff_id: int) -> int:
    actor = Identity(user_id=staff_id, name="import_lenders", is_staff=True)
    try:
        async with AsyncSessionLocal() as session:
            return await import_lenders(session, actor, names)
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Import lender names from a CSV file")
    parser.add_argument("csv_path", type=Path, help="CSV file with a 'name' column")
    parser.add_argument("--staff-id", type=int, required=True, help="User id of the staff member running the import")
    parser.add_argument("--encoding", default="shift_jis", help="File encoding (default: shift_jis)")
    parser.add_argument("--dry-run", action="store_true", help="Show the names without importing them")
    args = parser.parse_args()

    try:
        names = read_names(args.csv_path, args.encoding)
    except (OSError, UnicodeDecodeError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    usable = [name.strip() for name in names if name.strip()]
    print(f"Found {len(usable)} name(s) in {args.csv_path} ({len(names) - len(usable)} blank row(s) skipped)")

    if args.dry_run:
        for name in usable:
            print(f"  {name}")
        return

    try:
        count = asyncio.run(run(names, args.staff_id))
    except LedgerError as e:
        print(f"ERROR: import failed ({e.kind.value}): {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"Imported {count} lender(s).")


if __name__ == "__main__":
    main()
