#!/usr/bin/env python3
"""
Database migration - create or check the ZapFlow tables.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, exit 1 if tables are missing

The target database comes from `database.url` in settings.yaml (or the
file named by ZAPFLOW_CONFIG).
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text  # noqa: E402

_TABLE_QUERIES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(conn, dialect: str) -> set[str]:
    result = await conn.execute(text(_TABLE_QUERIES.get(dialect, _TABLE_QUERIES["sqlite"])))
    return {row[0] for row in result.fetchall()}


async def run_migration(check_only: bool = False) -> set[str]:
    """Create (or with check_only, just diff) the schema. Returns the tables still missing."""
    from database.models import Base
    from database.session import close_db, get_engine

    engine = get_engine()
    dialect = engine.dialect.name
    expected = set(Base.metadata.tables.keys())
    print(f"Database: {dialect}")

    try:
        if not check_only:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        async with engine.connect() as conn:
            missing = expected - await _existing_tables(conn, dialect)
    finally:
        await close_db()

    if missing:
        print(f"Tables MISSING: {', '.join(sorted(missing))}")
    else:
        print(f"All {len(expected)} tables present.")
    return missing


def main(argv: list[str] = None) -> int:
    parser = argparse.ArgumentParser(description="ZapFlow database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args(argv)

    from config.settings import load_settings
    load_settings()

    missing = asyncio.run(run_migration(check_only=args.check))
    return 1 if missing else 0


if __name__ == "__main__":
    sys.exit(main())
