#!/usr/bin/env python3
"""
Database Migration — Create the albums and reviews tables if they do not exist.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _existing_tables(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, config_path: str = None) -> set[str]:
    """Return the set of model tables still missing after the run."""
    from config.settings import load_settings
    load_settings(config_path)

    from database.session import get_engine, init_db, close_db
    from database.models import Base

    engine = get_engine()
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")
    print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

    if not check_only:
        print("Running database migration...")
        await init_db()

    async with engine.connect() as conn:
        existing = await conn.run_sync(_existing_tables)
    print(f"Tables existing: {', '.join(existing) or '(none)'}")

    missing = set(Base.metadata.tables.keys()) - set(existing)
    if missing:
        print(f"Tables MISSING: {', '.join(sorted(missing))}")
        if check_only:
            print("Run without --check to create them.")
    else:
        print("All tables exist. ✓")

    await close_db()
    return missing


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", help="Path to settings YAML")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check, config_path=args.config))
    sys.exit(1 if missing else 0)


if __name__ == "__main__":
    main()
