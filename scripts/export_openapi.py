#!/usr/bin/env python3
"""
Write the HTTP contract consumed by the migration dashboard to openapi.yaml.
Usage: python scripts/export_openapi.py [--out openapi.yaml]
"""
import sys
import argparse
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import yaml
from app.main import app


def main() -> int:
    parser = argparse.ArgumentParser(description="Export the OpenAPI document")
    parser.add_argument("--out", type=Path, default=project_root / "openapi.yaml")
    args = parser.parse_args()

    spec = app.openapi()
    args.out.write_text(yaml.safe_dump(spec, sort_keys=False, allow_unicode=True), encoding="utf-8")
    print(f"Wrote {len(spec.get('paths', {}))} paths to {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
