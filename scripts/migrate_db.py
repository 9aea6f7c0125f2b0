#!/usr/bin/env python3
"""
Database setup — Create the orders, call_logs and customer_calls tables.

Usage:
    python scripts/migrate_db.py                       # create missing tables
    python scripts/migrate_db.py --check               # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./x.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def existing_tables(engine) -> list[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False, url: str = None) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import close_db, configure_database, get_engine, init_db

    configure_database(url or settings.database.url)
    engine = get_engine()
    defined = sorted(Base.metadata.tables.keys())
    safe_url = str(engine.url).split("@")[-1]

    print(f"Database: {engine.dialect.name} ({safe_url})")
    print(f"Tables defined: {', '.join(defined)}")

    try:
        if check_only:
            existing = await existing_tables(engine)
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        await init_db()
        existing = await existing_tables(engine)
        print(f"Tables created/verified: {', '.join(sorted(set(defined) & set(existing)))}")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Create or check the database tables")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
