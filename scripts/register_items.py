#!/usr/bin/env python3
"""
Register discovered photo assets for migration.

Input is a CSV file with a header row and the columns
``source_ref`` (required), ``file_name`` and ``owner_ref`` (optional).
Refs already in the ledger are skipped.

Usage: python scripts/register_items.py assets.csv
"""
import sys
import csv
import argparse
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.logging import configure_logging
from app.db.item_store import ItemStore
from app.db.session import SessionLocal


def read_assets(path: Path) -> list[dict]:
    with path.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assets = []
    for row in rows:
        ref = (row.get("source_ref") or "").strip()
        if not ref:
            continue
        assets.append({
            "source_ref": ref,
            "file_name": (row.get("file_name") or "").strip() or None,
            "owner_ref": (row.get("owner_ref") or "").strip() or None,
        })
    return assets


def main() -> int:
    parser = argparse.ArgumentParser(description="Register photo assets for migration")
    parser.add_argument("csv_path", type=Path)
    args = parser.parse_args()

    configure_logging()
    assets = read_assets(args.csv_path)
    print(f"Read {len(assets)} assets from {args.csv_path}")

    db = SessionLocal()
    try:
        registered = ItemStore(db).register(assets)
    finally:
        db.close()
    print(f"Registered {registered} new items")
    return 0


if __name__ == "__main__":
    sys.exit(main())
