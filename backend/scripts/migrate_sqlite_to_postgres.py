#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sqlite3
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sales_db import chunked  # noqa: E402

DEFAULT_SQLITE = ROOT / "database" / "sales.db"
SCHEMA_SQL = Path(__file__).resolve().parents[1] / "sql" / "postgres_schema.sql"

TABLES_IN_ORDER = [
    "sales",
    "imports",
]


def sqlite_conn(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def pg_conn(database_url: str):
    return psycopg.connect(database_url)


def apply_schema(pg, schema_path: Path) -> None:
    sql = schema_path.read_text(encoding="utf-8")
    with pg.cursor() as cur:
        cur.execute(sql)
    pg.commit()


def fetch_sqlite_table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [str(r[1]) for r in rows]


def fetch_pg_table_columns(pg, table: str) -> set[str]:
    with pg.cursor() as cur:
        cur.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = 'public' AND table_name = %s",
            (table,),
        )
        return {str(r[0]) for r in cur.fetchall()}


def copy_table(sqlite: sqlite3.Connection, pg, table: str) -> int:
    target_cols = fetch_pg_table_columns(pg, table)
    cols = [c for c in fetch_sqlite_table_columns(sqlite, table) if c in target_cols]
    if not cols:
        print(f"- skip {table}: table missing in sqlite")
        return 0

    col_csv = ", ".join(cols)
    placeholders = ", ".join(["%s"] * len(cols))
    insert_sql = f"INSERT INTO {table} ({col_csv}) VALUES ({placeholders})"

    src_cur = sqlite.execute(f"SELECT {col_csv} FROM {table}")
    total = 0
    with pg.cursor() as cur:
        cur.execute(f"TRUNCATE TABLE {table} RESTART IDENTITY CASCADE")
        for batch in chunked((tuple(row[c] for c in cols) for row in src_cur), size=2000):
            cur.executemany(insert_sql, batch)
            total += len(batch)
            print(f"  {table}: {total} rows copied")
    pg.commit()
    return total


def reset_sequences(pg) -> None:
    with pg.cursor() as cur:
        for table in TABLES_IN_ORDER:
            cur.execute(
                f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), COALESCE((SELECT MAX(id) FROM {table}), 1), true)"
            )
    pg.commit()


def main() -> int:
    parser = argparse.ArgumentParser(description="One-time migration: SQLite -> Postgres")
    parser.add_argument("--sqlite", default=str(DEFAULT_SQLITE), help="Path to sqlite db")
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL", "") or os.getenv("POSTGRES_URL", ""),
        help="Postgres DATABASE_URL",
    )
    parser.add_argument("--schema", default=str(SCHEMA_SQL), help="Path to postgres schema sql")
    args = parser.parse_args()

    sqlite_path = Path(args.sqlite)
    schema_path = Path(args.schema)
    database_url = (args.database_url or "").strip()

    if not sqlite_path.exists():
        raise SystemExit(f"SQLite db not found: {sqlite_path}")
    if not schema_path.exists():
        raise SystemExit(f"Schema file not found: {schema_path}")
    if not database_url:
        raise SystemExit("DATABASE_URL missing. Pass --database-url or set env var.")

    print(f"Using sqlite: {sqlite_path}")
    print(f"Using schema: {schema_path}")

    sq = sqlite_conn(sqlite_path)
    pg = pg_conn(database_url)

    try:
        print("Applying Postgres schema...")
        apply_schema(pg, schema_path)

        print("Copying tables...")
        for table in TABLES_IN_ORDER:
            n = copy_table(sq, pg, table)
            print(f"- {table}: {n} rows")

        print("Resetting id sequences...")
        reset_sequences(pg)
        print("Migration complete. Rows without sale_date are normalized on the next API start.")
    finally:
        sq.close()
        pg.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
