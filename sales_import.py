from __future__ import annotations

import hashlib
import io
import logging
from datetime import datetime
from typing import Optional

import pandas as pd

from sales_db import SOURCE_DATE_FORMAT, SalesStore, chunked

logger = logging.getLogger("prodaja.sales_import")

REQUIRED_COLUMNS = ["sifra_art", "naziv_art", "kolicina", "cena", "datum"]
COLUMN_ALIASES = {
    "product_code": "sifra_art",
    "code": "sifra_art",
    "product_name": "naziv_art",
    "name": "naziv_art",
    "quantity": "kolicina",
    "qty": "kolicina",
    "price": "cena",
    "unit_price": "cena",
    "date": "datum",
    "posting_date": "datum_az",
}


def _norm_cols(columns: list[str]) -> list[str]:
    out = []
    for c in columns:
        key = str(c).strip().lower().replace("\ufeff", "").replace(" ", "_")
        out.append(COLUMN_ALIASES.get(key, key))
    return out


def _read_upload(file_name: str, file_bytes: bytes) -> pd.DataFrame:
    lower_name = str(file_name or "").lower()
    if lower_name.endswith(".csv"):
        try:
            return pd.read_csv(io.BytesIO(file_bytes), encoding="utf-8-sig", dtype=str, sep=None, engine="python")
        except UnicodeDecodeError:
            return pd.read_csv(io.BytesIO(file_bytes), encoding="latin1", dtype=str, sep=None, engine="python")
    if lower_name.endswith(".xlsx"):
        return pd.read_excel(io.BytesIO(file_bytes), dtype=str)
    raise ValueError("Unsupported file type. Use .csv or .xlsx")


def _parse_number(series: pd.Series) -> pd.Series:
    # Local exports write decimals with a comma.
    text = series.astype(str).str.strip().str.replace(",", ".", regex=False)
    return pd.to_numeric(text, errors="coerce")


def _parse_source_dates(series: pd.Series) -> pd.Series:
    parsed = pd.to_datetime(series, format=SOURCE_DATE_FORMAT, errors="coerce")
    # Excel date cells come through as ISO timestamps, not DD.MM.YYYY text.
    fallback = pd.to_datetime(series.where(parsed.isna()), format="ISO8601", errors="coerce")
    return parsed.fillna(fallback)


def parse_sales_upload(file_name: str, file_bytes: bytes) -> tuple[pd.DataFrame, int]:
    """Parse an uploaded sales export into fact rows.

    Returns the clean rows and the number of rows rejected for an unparsable
    date or quantity. ``sale_date`` is derived here, once, from ``datum``.
    """
    raw = _read_upload(file_name, file_bytes)
    raw.columns = _norm_cols(raw.columns.tolist())
    missing = [c for c in REQUIRED_COLUMNS if c not in raw.columns]
    if missing:
        raise ValueError(f"Sales file missing required columns: {', '.join(missing)}")
    if "datum_az" not in raw.columns:
        raw["datum_az"] = raw["datum"]

    df = pd.DataFrame(
        {
            "sifra_art": raw["sifra_art"].astype(str).str.strip(),
            "naziv_art": raw["naziv_art"].fillna("").astype(str).str.strip(),
            "kolicina": _parse_number(raw["kolicina"]),
            "cena": _parse_number(raw["cena"]).fillna(0.0),
            "datum": raw["datum"].astype(str).str.strip(),
            "datum_az": raw["datum_az"].fillna(raw["datum"]).astype(str).str.strip(),
        }
    )
    parsed = _parse_source_dates(df["datum"])
    df["sale_date"] = parsed.dt.strftime("%Y-%m-%d")
    df["datum"] = parsed.dt.strftime(SOURCE_DATE_FORMAT).fillna(df["datum"])
    posted = _parse_source_dates(df["datum_az"])
    df["datum_az"] = posted.dt.strftime(SOURCE_DATE_FORMAT).fillna(df["datum_az"])
    valid = parsed.notna() & df["kolicina"].notna() & (df["sifra_art"] != "") & (df["sifra_art"].str.lower() != "nan")
    rejected = int((~valid).sum())
    df = df[valid].copy()
    df["revenue"] = (df["kolicina"] * df["cena"]).round(2)
    return df.reset_index(drop=True), rejected


def build_import_id(source_file: str, imported_at: str) -> str:
    raw = f"{source_file}|{imported_at}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def save_sales(
    store: SalesStore,
    df: pd.DataFrame,
    source_file: str,
    rejected_rows: int = 0,
    imported_at: Optional[str] = None,
) -> tuple[str, int]:
    ts = imported_at or datetime.now().isoformat(timespec="seconds")
    import_id = build_import_id(source_file, ts)
    rows = (
        (
            import_id,
            ts,
            str(r.sifra_art),
            str(r.naziv_art),
            float(r.kolicina),
            float(r.cena),
            str(r.datum),
            str(r.datum_az),
            float(r.revenue),
            str(r.sale_date),
        )
        for r in df.itertuples(index=False)
    )
    saved = 0
    for batch in chunked(rows, size=1000):
        store.executemany(
            """
            INSERT INTO sales (import_id, import_timestamp, sifra_art, naziv_art, kolicina, cena, datum, datum_az, revenue, sale_date)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            batch,
        )
        saved += len(batch)
    store.execute(
        """
        INSERT INTO imports (import_id, imported_at, source_file, row_count, rejected_rows, min_date, max_date)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            import_id,
            ts,
            source_file,
            saved,
            int(rejected_rows),
            str(df["sale_date"].min()) if saved else None,
            str(df["sale_date"].max()) if saved else None,
        ),
    )
    store.commit()
    logger.info("imported %s sales rows from %s (%s rejected)", saved, source_file, rejected_rows)
    return import_id, saved


def import_history(store: SalesStore, limit: int = 50) -> list[dict]:
    rows = store.read_df(
        """
        SELECT import_id, imported_at, source_file, row_count, rejected_rows, min_date, max_date
        FROM imports
        ORDER BY imported_at DESC, id DESC
        LIMIT ?
        """,
        (int(limit),),
    )
    if rows.empty:
        return []
    return rows.astype(object).where(rows.notna(), None).to_dict(orient="records")
