from __future__ import annotations

import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional until postgres mode enabled
    psycopg = None
    dict_row = None

logger = logging.getLogger("prodaja.sales_db")

POSTGRES_SCHEMA_PATH = Path(__file__).resolve().parent / "backend" / "sql" / "postgres_schema.sql"
SOURCE_DATE_FORMAT = "%d.%m.%Y"


class SalesStoreError(RuntimeError):
    """The storage backend could not answer a query."""


def _db_errors() -> tuple:
    errors: tuple = (sqlite3.Error,)
    if psycopg is not None:
        errors = errors + (psycopg.Error,)
    return errors


def _adapt_sql_for_postgres(sql: str) -> str:
    out = sql
    out = re.sub(r"strftime\('%Y-W%W',\s*([^)]+)\)", r"""to_char((\1)::date, 'IYYY-"W"IW')""", out)
    out = re.sub(r"strftime\('%m',\s*([^)]+)\)", r"to_char((\1)::date, 'MM')", out)
    return out


def _adapt_params_for_postgres(sql: str, params: tuple) -> tuple[str, Optional[tuple]]:
    out = []
    in_str = False
    for ch in sql:
        if ch == "'":
            in_str = not in_str
            out.append(ch)
            continue
        if ch == "?" and not in_str:
            out.append("%s")
        else:
            out.append(ch)
    # psycopg only parses placeholders when params are passed at all
    return _adapt_sql_for_postgres("".join(out)), (tuple(params) if params else None)


class PostgresCursorAdapter:
    def __init__(self, cursor):
        self._cursor = cursor

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self) -> int:
        return int(self._cursor.rowcount or 0)

    @property
    def description(self):
        return self._cursor.description


class PostgresConnAdapter:
    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql: str, params: tuple = ()):
        statement, bound = _adapt_params_for_postgres(sql, params)
        cur = self._conn.cursor(row_factory=dict_row)
        cur.execute(statement, bound)
        return PostgresCursorAdapter(cur)

    def executemany(self, sql: str, seq):
        statement, _ = _adapt_params_for_postgres(sql, ())
        cur = self._conn.cursor(row_factory=dict_row)
        cur.executemany(statement, seq)
        return PostgresCursorAdapter(cur)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def chunked(rows: Iterable, size: int = 2000):
    batch = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class SalesStore:
    """Open handle on the sales database.

    One instance is created by the hosting process and handed to every request;
    statements are serialized because sync routes run in a threadpool.
    """

    def __init__(self, conn, backend: str):
        self._conn = conn
        self.backend = backend
        self._lock = threading.Lock()

    @property
    def using_postgres(self) -> bool:
        return self.backend == "postgres"

    def execute(self, sql: str, params: tuple = ()):
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except _db_errors() as exc:
                self._rollback_quietly()
                raise SalesStoreError(str(exc)) from exc

    def executemany(self, sql: str, seq) -> None:
        with self._lock:
            try:
                self._conn.executemany(sql, seq)
            except _db_errors() as exc:
                self._rollback_quietly()
                raise SalesStoreError(str(exc)) from exc

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except _db_errors() as exc:
            logger.warning("rollback after failed statement also failed: %s", exc)

    def read_df(self, sql: str, params: tuple = ()) -> pd.DataFrame:
        with self._lock:
            try:
                if self.using_postgres:
                    cur = self._conn.execute(sql, params)
                    rows = cur.fetchall() or []
                    cols = []
                    if cur.description:
                        cols = [str(d[0]) for d in cur.description if d and d[0]]
                    if rows:
                        if cols:
                            return pd.DataFrame(rows, columns=cols)
                        return pd.DataFrame(rows)
                    return pd.DataFrame(columns=cols)
                return pd.read_sql_query(sql, self._conn, params=params)
            except _db_errors() as exc:
                self._rollback_quietly()
                raise SalesStoreError(str(exc)) from exc
            except pd.errors.DatabaseError as exc:
                raise SalesStoreError(str(exc)) from exc

    def health_check(self) -> dict:
        try:
            self.execute("SELECT 1")
            return {"ok": True, "db_backend": self.backend}
        except SalesStoreError as exc:
            return {"ok": False, "db_backend": self.backend, "error": str(exc)}

    def init_schema(self) -> None:
        if self.using_postgres:
            schema_sql = POSTGRES_SCHEMA_PATH.read_text(encoding="utf-8")
            for statement in [s.strip() for s in schema_sql.split(";") if s.strip()]:
                self.execute(statement)
            self.commit()
        else:
            self._init_sqlite_schema()
        backfill_sale_dates(self)

    def _init_sqlite_schema(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                import_id TEXT,
                import_timestamp TEXT,
                sifra_art TEXT,
                naziv_art TEXT,
                kolicina REAL,
                cena REAL,
                datum TEXT,
                datum_az TEXT,
                revenue REAL
            )
            """
        )
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS imports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                import_id TEXT NOT NULL,
                imported_at TEXT NOT NULL,
                source_file TEXT NOT NULL,
                row_count INTEGER NOT NULL,
                rejected_rows INTEGER NOT NULL DEFAULT 0,
                min_date TEXT,
                max_date TEXT
            )
            """
        )
        # Older databases predate the normalized calendar-date column.
        sales_cols = {r["name"] for r in self.execute("PRAGMA table_info(sales)").fetchall()}
        if "sale_date" not in sales_cols:
            self.execute("ALTER TABLE sales ADD COLUMN sale_date TEXT")
        self.execute("CREATE INDEX IF NOT EXISTS idx_sales_sale_date ON sales(sale_date)")
        self.execute("CREATE INDEX IF NOT EXISTS idx_sales_sifra_art ON sales(sifra_art)")
        self.execute("CREATE INDEX IF NOT EXISTS idx_sales_datum ON sales(datum)")
        self.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def backfill_sale_dates(store: SalesStore) -> int:
    """Fill ``sale_date`` for rows that only carry the ``DD.MM.YYYY`` text date."""
    pending = store.read_df("SELECT id, datum FROM sales WHERE sale_date IS NULL AND datum IS NOT NULL")
    if pending.empty:
        return 0
    parsed = pd.to_datetime(pending["datum"].astype(str).str.strip(), format=SOURCE_DATE_FORMAT, errors="coerce")
    pending = pending.assign(sale_date=parsed.dt.strftime("%Y-%m-%d")).dropna(subset=["sale_date"])
    skipped = int(parsed.isna().sum())
    if skipped:
        logger.warning("sale_date backfill: %s rows have an unparsable datum and stay excluded", skipped)
    updates = ((str(r.sale_date), int(r.id)) for r in pending.itertuples(index=False))
    total = 0
    for batch in chunked(updates, size=2000):
        store.executemany("UPDATE sales SET sale_date = ? WHERE id = ?", batch)
        total += len(batch)
    store.commit()
    logger.info("sale_date backfill: normalized %s rows", total)
    return total


def open_sales_store(
    backend: str = "sqlite",
    db_path: Optional[Path] = None,
    database_url: str = "",
    init_schema: bool = True,
) -> SalesStore:
    backend = (backend or "sqlite").strip().lower()
    if backend == "postgres":
        if not database_url:
            raise RuntimeError("DB_BACKEND=postgres but DATABASE_URL is empty")
        if psycopg is None:
            raise RuntimeError("psycopg is required for postgres mode")
        store = SalesStore(PostgresConnAdapter(psycopg.connect(database_url, row_factory=dict_row, autocommit=True)), "postgres")
    else:
        path = Path(db_path) if db_path is not None else Path("database/sales.db")
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        store = SalesStore(conn, "sqlite")
    if init_schema:
        store.init_schema()
    logger.info("opened %s sales store", store.backend)
    return store
