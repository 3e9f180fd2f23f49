#!/usr/bin/env python3
"""Apply one or more SQL migrations to the knowledge chat database.

Usage:
    python3 run_migration.py                       # every file in migrations/, in order
    python3 run_migration.py migrations/0001_knowledge_chat.sql
"""
import os
import sys
from pathlib import Path

import psycopg2

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def migration_files(args: list[str]) -> list[Path]:
    if args:
        return [Path(a) for a in args]
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def main() -> int:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("DATABASE_URL environment variable not set")
        return 1

    files = migration_files(sys.argv[1:])
    if not files:
        print(f"No migrations found in {MIGRATIONS_DIR}")
        return 1

    print("Connecting to database...")
    conn = psycopg2.connect(database_url)
    try:
        with conn.cursor() as cursor:
            for path in files:
                sql = path.read_text()
                print(f"Applying {path} ({len(sql)} bytes)")
                cursor.execute(sql)
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        print(f"Error running migration: {e}")
        return 1
    finally:
        conn.close()

    print(f"Applied {len(files)} migration(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
