#!/usr/bin/env python3
"""Create the relay bot tables in Postgres.

Usage:
    DATABASE_URL=postgresql://localhost:5432/codebot python scripts/apply_schema.py

    python scripts/apply_schema.py --dsn postgresql://... --dry-run

The schema file is idempotent (``CREATE ... IF NOT EXISTS``), so running
it against an existing database is safe.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
SCHEMA_PATH = ROOT / "codebot" / "storage" / "schema.sql"


def apply_schema(dsn: str, schema_path: Path = SCHEMA_PATH, dry_run: bool = False) -> int:
    """Execute ``schema_path`` against ``dsn`` in one transaction.

    Returns the number of statements that were (or would be) run.
    """
    sql = schema_path.read_text()
    statements = [s.strip() for s in sql.split(";") if _has_code(s)]
    if dry_run:
        for statement in statements:
            print(statement + ";\n")
        return len(statements)
    with psycopg.connect(dsn) as conn:
        with conn.transaction():
            for statement in statements:
                conn.execute(statement)
    return len(statements)


def _has_code(chunk: str) -> bool:
    return any(
        line.strip() and not line.strip().startswith("--") for line in chunk.splitlines()
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Apply the CodeBot relay schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the statements without executing them",
    )
    args = parser.parse_args()

    if not args.dsn and not args.dry_run:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        count = apply_schema(args.dsn, dry_run=args.dry_run)
    except (psycopg.Error, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Applied {count} statements" if not args.dry_run else f"{count} statements")


if __name__ == "__main__":
    main()
