from __future__ import annotations

import logging
from datetime import date
from typing import Optional

import pandas as pd

from sales_db import SalesStore

logger = logging.getLogger("prodaja.sales_analytics")

TREND_PERIODS = ("daily", "weekly", "monthly", "yearly")
ANALYSIS_TYPES = ("overview", "best-sellers", "slow-movers", "seasonal", "product-seasonality")
MONTH_NAMES = {
    "01": "Januar",
    "02": "Februar",
    "03": "Mart",
    "04": "April",
    "05": "Maj",
    "06": "Juni",
    "07": "Juli",
    "08": "Avgust",
    "09": "Septembar",
    "10": "Oktobar",
    "11": "Novembar",
    "12": "Decembar",
}
PARETO_SHARE = 0.8


class AnalyticsParameterError(ValueError):
    pass


class ProductNotFound(LookupError):
    pass


def _to_float(df: pd.DataFrame, cols: list[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0).astype(float)
    return df


def _records(df: pd.DataFrame) -> list[dict]:
    if df.empty:
        return []
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


def _date_filter(start: Optional[date], end: Optional[date]) -> tuple[str, tuple]:
    clauses = ["sale_date IS NOT NULL"]
    params: list = []
    if start is not None:
        clauses.append("sale_date >= ?")
        params.append(start.isoformat())
    if end is not None:
        clauses.append("sale_date <= ?")
        params.append(end.isoformat())
    return "WHERE " + " AND ".join(clauses), tuple(params)


def date_range(store: SalesStore) -> dict:
    row = store.execute(
        "SELECT MIN(sale_date) AS min_date, MAX(sale_date) AS max_date, COUNT(*) AS row_count FROM sales WHERE sale_date IS NOT NULL"
    ).fetchone()
    return {
        "min_date": row["min_date"] if row else None,
        "max_date": row["max_date"] if row else None,
        "row_count": int(row["row_count"] or 0) if row else 0,
    }


def clamp_dates(store: SalesStore, start: Optional[date], end: Optional[date]) -> tuple[Optional[date], Optional[date]]:
    meta = date_range(store)
    if not meta["min_date"] or not meta["max_date"]:
        return start, end
    min_d = date.fromisoformat(str(meta["min_date"]))
    max_d = date.fromisoformat(str(meta["max_date"]))
    s = start or min_d
    e = end or max_d
    if s > e:
        s, e = e, s
    return s, e


def recent_sales(store: SalesStore, limit: int = 10) -> list[dict]:
    rows = store.read_df(
        """
        SELECT id, import_id, import_timestamp, sifra_art, naziv_art, kolicina, cena, datum, datum_az, revenue, sale_date
        FROM sales
        ORDER BY sale_date DESC, id DESC
        LIMIT ?
        """,
        (int(limit),),
    )
    return _records(_to_float(rows, ["kolicina", "cena", "revenue"]))


def top_items(store: SalesStore, day: date, limit: int = 20) -> list[dict]:
    rows = store.read_df(
        """
        SELECT
          sifra_art,
          naziv_art,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COUNT(*) AS sale_count,
          AVG(cena) AS avg_price
        FROM sales
        WHERE sale_date = ?
        GROUP BY sifra_art, naziv_art
        ORDER BY total_quantity DESC, sifra_art
        LIMIT ?
        """,
        (day.isoformat(), int(limit)),
    )
    return _records(_to_float(rows, ["total_quantity", "total_revenue", "avg_price"]))


def _growth_percent(current: float, previous: float) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    return 0.0


def sales_trends(
    store: SalesStore,
    period: str = "daily",
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> dict:
    p = (period or "daily").strip().lower()
    if p not in TREND_PERIODS:
        raise AnalyticsParameterError("Invalid period. Must be: daily, weekly, monthly, or yearly")
    where, params = _date_filter(start, end)

    bucket = "sale_date"
    if p == "weekly":
        bucket = "strftime('%Y-W%W', sale_date)"
    elif p == "monthly":
        bucket = "substr(sale_date, 1, 7)"
    elif p == "yearly":
        bucket = "substr(sale_date, 1, 4)"

    trends = store.read_df(
        f"""
        SELECT
          {bucket} AS period,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COUNT(*) AS sale_count,
          AVG(cena) AS avg_price
        FROM sales
        {where}
        GROUP BY 1
        ORDER BY 1
        """,
        params,
    )
    trends = _to_float(trends, ["total_revenue", "total_quantity", "avg_price"])

    yoy: list[dict] = []
    if p in ("monthly", "yearly"):
        yoy = _year_over_year(store, p, where, params)

    moving: list[dict] = []
    if p == "daily":
        moving = _moving_averages(store, where, params)

    total_revenue = float(trends["total_revenue"].sum()) if not trends.empty else 0.0
    total_quantity = float(trends["total_quantity"].sum()) if not trends.empty else 0.0
    return {
        "period": p,
        "data": _records(trends),
        "yoy_comparison": yoy,
        "moving_averages": moving,
        "summary": {
            "total_revenue": total_revenue,
            "total_quantity": total_quantity,
            "avg_revenue_per_period": total_revenue / len(trends) if len(trends) else 0.0,
            "periods_count": int(len(trends)),
        },
    }


def _year_over_year(store: SalesStore, period: str, where: str, params: tuple) -> list[dict]:
    month_expr = "substr(sale_date, 6, 2)" if period == "monthly" else "'year'"
    rows = store.read_df(
        f"""
        SELECT
          {month_expr} AS month,
          substr(sale_date, 1, 4) AS year,
          COALESCE(SUM(revenue),0) AS revenue,
          COALESCE(SUM(kolicina),0) AS quantity
        FROM sales
        {where}
        GROUP BY 1, 2
        ORDER BY 1, 2
        """,
        params,
    )
    if rows.empty:
        return []
    rows = _to_float(rows, ["revenue", "quantity"])
    rows["year"] = rows["year"].astype(int)
    out = []
    for month, group in rows.groupby("month", sort=True):
        group = group.sort_values("year")
        prev = None
        for cur in group.itertuples(index=False):
            if prev is not None:
                out.append(
                    {
                        "period": str(cur.year) if month == "year" else f"{cur.year}-{month}",
                        "current_year": int(cur.year),
                        "previous_year": int(prev.year),
                        "growth_percent": _growth_percent(cur.revenue, prev.revenue),
                        "current_revenue": float(cur.revenue),
                        "previous_revenue": float(prev.revenue),
                    }
                )
            prev = cur
    return out


def _moving_averages(store: SalesStore, where: str, params: tuple) -> list[dict]:
    daily = store.read_df(
        f"""
        SELECT sale_date AS date, COALESCE(SUM(revenue),0) AS daily_revenue
        FROM sales
        {where}
        GROUP BY sale_date
        ORDER BY sale_date
        """,
        params,
    )
    if daily.empty:
        return []
    daily = _to_float(daily, ["daily_revenue"])
    # Trailing windows over the rows present, shorter at the start.
    daily["ma_7day"] = daily["daily_revenue"].rolling(window=7, min_periods=1).mean()
    daily["ma_30day"] = daily["daily_revenue"].rolling(window=30, min_periods=1).mean()
    return _records(daily)


def product_analytics(
    store: SalesStore,
    analysis_type: str = "overview",
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 50,
    min_sales: int = 10,
    sort_by: str = "quantity",
    product_code: Optional[str] = None,
    as_of: Optional[date] = None,
) -> dict:
    kind = (analysis_type or "overview").strip().lower()
    if kind not in ANALYSIS_TYPES:
        raise AnalyticsParameterError(f"Invalid type. Must be one of: {', '.join(ANALYSIS_TYPES)}")
    start, end = clamp_dates(store, start, end)
    where, params = _date_filter(start, end)

    if kind == "best-sellers":
        data = best_sellers(store, where, params, limit=limit, min_sales=min_sales, sort_by=sort_by)
        return {"type": kind, "data": data, "count": len(data)}
    if kind == "slow-movers":
        data = slow_movers(store, where, params, limit=limit, as_of=as_of or date.today())
        return {"type": kind, "data": data, "count": len(data)}
    if kind == "seasonal":
        data = seasonal_patterns(store, where, params)
        return {"type": kind, "data": data, "count": len(data)}
    if kind == "product-seasonality":
        if not product_code:
            raise AnalyticsParameterError("product_code parameter is required for product-seasonality analysis")
        return {"type": kind, "data": product_seasonality(store, where, params, product_code)}
    return {"type": kind, "data": overview(store, where, params)}


def _market_span(rows: pd.DataFrame) -> pd.DataFrame:
    first = pd.to_datetime(rows["first_sale_date"], errors="coerce")
    last = pd.to_datetime(rows["last_sale_date"], errors="coerce")
    rows["days_on_market"] = (last - first).dt.days + 1
    rows["avg_monthly_quantity"] = rows["total_quantity"] / (rows["days_on_market"] / 30.0)
    return rows


def best_sellers(
    store: SalesStore,
    where: str,
    params: tuple,
    limit: int = 50,
    min_sales: int = 10,
    sort_by: str = "quantity",
) -> list[dict]:
    order_col = "total_revenue" if sort_by == "revenue" else "total_quantity"
    rows = store.read_df(
        f"""
        SELECT
          sifra_art,
          naziv_art,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COUNT(*) AS sale_count,
          AVG(cena) AS avg_price,
          MIN(sale_date) AS first_sale_date,
          MAX(sale_date) AS last_sale_date
        FROM sales
        {where}
        GROUP BY sifra_art, naziv_art
        HAVING COUNT(*) >= ?
        ORDER BY {order_col} DESC, sifra_art
        LIMIT ?
        """,
        params + (int(min_sales), int(limit)),
    )
    if rows.empty:
        return []
    rows = _to_float(rows, ["total_quantity", "total_revenue", "avg_price"])
    rows = _market_span(rows)
    rows["velocity_score"] = rows["total_revenue"] / rows["sale_count"].astype(float)
    return _records(rows)


def recommendation_for(days_since_last_sale: float) -> str:
    if days_since_last_sale > 180:
        return "discontinue"
    if days_since_last_sale > 90:
        return "discount"
    return "monitor"


def slow_movers(store: SalesStore, where: str, params: tuple, limit: int = 50, as_of: Optional[date] = None) -> list[dict]:
    rows = store.read_df(
        f"""
        SELECT
          sifra_art,
          naziv_art,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COUNT(*) AS sale_count,
          MIN(sale_date) AS first_sale_date,
          MAX(sale_date) AS last_sale_date
        FROM sales
        {where}
        GROUP BY sifra_art, naziv_art
        HAVING COUNT(*) >= 3
        """,
        params,
    )
    if rows.empty:
        return []
    rows = _to_float(rows, ["total_quantity", "total_revenue"])
    rows = _market_span(rows)
    today = pd.Timestamp(as_of or date.today())
    rows["days_since_last_sale"] = (today - pd.to_datetime(rows["last_sale_date"])).dt.days
    rows = rows.sort_values(
        ["days_since_last_sale", "avg_monthly_quantity", "sifra_art"],
        ascending=[False, True, True],
        kind="stable",
    ).head(int(limit))
    rows["recommendation"] = rows["days_since_last_sale"].map(recommendation_for)
    return _records(rows.drop(columns=["first_sale_date", "days_on_market"]))


def seasonal_patterns(store: SalesStore, where: str, params: tuple) -> list[dict]:
    rows = store.read_df(
        f"""
        SELECT
          substr(sale_date, 6, 2) AS month,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COUNT(*) AS sale_count,
          COUNT(DISTINCT sale_date) AS active_days
        FROM sales
        {where}
        GROUP BY 1
        ORDER BY 1
        """,
        params,
    )
    if rows.empty:
        return []
    rows = _to_float(rows, ["total_revenue", "total_quantity", "active_days"])
    rows["month_name"] = rows["month"].map(MONTH_NAMES)
    rows["avg_daily_revenue"] = rows["total_revenue"] / rows["active_days"]

    by_year = store.read_df(
        f"""
        SELECT substr(sale_date, 6, 2) AS month, substr(sale_date, 1, 4) AS year, COALESCE(SUM(revenue),0) AS revenue
        FROM sales
        {where}
        GROUP BY 1, 2
        ORDER BY 1, 2
        """,
        params,
    )
    by_year = _to_float(by_year, ["revenue"])
    growth = {}
    for month, group in by_year.groupby("month"):
        if len(group) >= 2:
            ordered = group.sort_values("year")
            growth[month] = _growth_percent(float(ordered["revenue"].iloc[-1]), float(ordered["revenue"].iloc[-2]))
    rows["year_over_year_growth"] = rows["month"].map(lambda m: growth.get(m, 0.0))
    return _records(rows.drop(columns=["active_days"]))


def product_seasonality(store: SalesStore, where: str, params: tuple, product_code: str) -> dict:
    rows = store.read_df(
        f"""
        SELECT
          sifra_art,
          MIN(naziv_art) AS naziv_art,
          substr(sale_date, 6, 2) AS month,
          COALESCE(SUM(kolicina),0) AS quantity,
          COALESCE(SUM(revenue),0) AS revenue
        FROM sales
        {where}
          AND sifra_art = ?
        GROUP BY sifra_art, substr(sale_date, 6, 2)
        ORDER BY 3
        """,
        params + (str(product_code),),
    )
    if rows.empty:
        raise ProductNotFound(f"No data found for product {product_code}")
    rows = _to_float(rows, ["quantity", "revenue"])
    total_quantity = float(rows["quantity"].sum())
    patterns = [
        {
            "month": MONTH_NAMES.get(str(r.month), str(r.month)),
            "quantity": float(r.quantity),
            "revenue": float(r.revenue),
            "percentage_of_annual": (float(r.quantity) / total_quantity * 100) if total_quantity else 0.0,
        }
        for r in rows.itertuples(index=False)
    ]
    ranked = sorted(patterns, key=lambda p: p["quantity"], reverse=True)
    return {
        "product_code": str(rows["sifra_art"].iloc[0]),
        "product_name": str(rows["naziv_art"].iloc[0]),
        "monthly_patterns": patterns,
        "peak_months": [p["month"] for p in ranked[:3]],
        "low_months": [p["month"] for p in ranked[-3:]],
    }


def pareto_cutoff(revenues: list[float], share: float = PARETO_SHARE) -> int:
    """Smallest count of top products whose cumulative revenue reaches ``share`` of the total."""
    ordered = sorted(revenues, reverse=True)
    total = sum(ordered)
    cumulative = 0.0
    count = 0
    for value in ordered:
        cumulative += value
        count += 1
        if cumulative >= total * share:
            break
    return count


def overview(store: SalesStore, where: str, params: tuple) -> dict:
    row = store.execute(
        f"""
        SELECT
          COUNT(DISTINCT sifra_art) AS total_products,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COUNT(*) AS total_transactions
        FROM sales
        {where}
        """,
        params,
    ).fetchone()
    distribution = store.read_df(
        f"""
        SELECT sifra_art, COALESCE(SUM(revenue),0) AS revenue
        FROM sales
        {where}
        GROUP BY sifra_art
        ORDER BY revenue DESC
        """,
        params,
    )
    distribution = _to_float(distribution, ["revenue"])
    top_count = pareto_cutoff(distribution["revenue"].tolist()) if not distribution.empty else 0
    unique = int(len(distribution))
    return {
        "total_products": int(row["total_products"] or 0),
        "total_revenue": float(row["total_revenue"] or 0),
        "total_quantity": float(row["total_quantity"] or 0),
        "total_transactions": int(row["total_transactions"] or 0),
        "top_20_products_count": top_count,
        "top_20_percentage": (top_count / unique * 100) if unique else 0.0,
        "total_unique_products": unique,
    }
