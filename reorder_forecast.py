"""Reorder suggestions from the same calendar window in previous years.

For a reference date and a horizon of ``days``, every one of the last
``years_back`` years is sampled over the same month/day span. Products are
merged across those windows and the suggested order is the average quantity
sold per observed year.
"""
from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sales_db import SalesStore

logger = logging.getLogger("prodaja.reorder_forecast")

DATE_INPUT_FORMATS = ("%d.%m.%Y", "%Y-%m-%d")


class ForecastParameterError(ValueError):
    pass


@dataclass(frozen=True)
class HistoricalWindow:
    start_date: date
    end_date: date
    year: str

    def to_dict(self) -> dict:
        return {"year": self.year, "start_date": self.start_date.isoformat(), "end_date": self.end_date.isoformat()}


@dataclass(frozen=True)
class YearlyAggregate:
    product_code: str
    product_name: str
    year: str
    total_quantity: float
    total_revenue: float
    sale_count: int
    avg_price: float


@dataclass
class ProductForecast:
    product_code: str
    product_name: str
    avg_daily_quantity: float
    total_historical_quantity: float
    suggested_order_quantity: int
    years_analyzed: int
    historical_revenue: float
    avg_price: float
    confidence: str
    yearly_breakdown: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "product_code": self.product_code,
            "product_name": self.product_name,
            "avg_daily_quantity": self.avg_daily_quantity,
            "total_historical_quantity": self.total_historical_quantity,
            "suggested_order_quantity": self.suggested_order_quantity,
            "years_analyzed": self.years_analyzed,
            "historical_revenue": self.historical_revenue,
            "avg_price": self.avg_price,
            "confidence": self.confidence,
            "yearly_breakdown": [dict(row) for row in self.yearly_breakdown],
        }


@dataclass
class ForecastResult:
    reference_date: date
    days: int
    years_back: int
    windows: list[HistoricalWindow]
    forecasts: list[ProductForecast]
    windows_with_data: set[str]

    @property
    def end_date(self) -> date:
        return self.reference_date + timedelta(days=self.days - 1)

    @property
    def years_with_data(self) -> int:
        return len(self.windows_with_data)


def parse_calendar_date(value: Optional[str]) -> Optional[date]:
    """Accept ``DD.MM.YYYY`` (the dashboard's format) or ISO ``YYYY-MM-DD``."""
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    for fmt in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ForecastParameterError(f"Invalid date '{text}'. Use DD.MM.YYYY or YYYY-MM-DD")


def shift_years(value: date, years: int) -> date:
    # Feb 29 clamps to Feb 28 in non-leap target years.
    year = value.year - years
    day = min(value.day, calendar.monthrange(year, value.month)[1])
    return date(year, value.month, day)


def _positive_int(value, name: str) -> int:
    if isinstance(value, float) and not value.is_integer():
        raise ForecastParameterError(f"{name} must be a whole number, got {value}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ForecastParameterError(f"{name} must be a positive integer") from None
    if number <= 0:
        raise ForecastParameterError(f"{name} must be a positive integer")
    return number


def validate_parameters(days: int, years_back: int) -> tuple[int, int]:
    return _positive_int(days, "days"), _positive_int(years_back, "years_back")


def _window_end(start: date, days: int) -> date:
    try:
        return start + timedelta(days=days - 1)
    except OverflowError:
        raise ForecastParameterError(f"days={days} reaches past the supported calendar range") from None


def historical_windows(reference_date: date, days: int, years_back: int) -> list[HistoricalWindow]:
    days, years_back = validate_parameters(days, years_back)
    if reference_date.year - years_back < date.min.year:
        raise ForecastParameterError(
            f"years_back={years_back} reaches before year {date.min.year} from {reference_date.isoformat()}"
        )
    _window_end(reference_date, days)
    windows = []
    for offset in range(1, years_back + 1):
        start = shift_years(reference_date, offset)
        windows.append(
            HistoricalWindow(
                start_date=start,
                end_date=_window_end(start, days),
                year=str(reference_date.year - offset),
            )
        )
    return windows


def aggregate_window(store: SalesStore, window: HistoricalWindow) -> list[YearlyAggregate]:
    """Per-product totals for one window, one entry per product code."""
    rows = store.read_df(
        """
        SELECT
          sifra_art,
          naziv_art,
          MIN(id) AS first_id,
          COALESCE(SUM(kolicina),0) AS total_quantity,
          COALESCE(SUM(revenue),0) AS total_revenue,
          COUNT(*) AS sale_count,
          COALESCE(SUM(cena),0) AS price_sum,
          COUNT(cena) AS price_count
        FROM sales
        WHERE sale_date BETWEEN ? AND ?
        GROUP BY sifra_art, naziv_art
        ORDER BY sifra_art, first_id
        """,
        (window.start_date.isoformat(), window.end_date.isoformat()),
    )
    if rows.empty:
        return []
    for col in ["total_quantity", "total_revenue", "sale_count", "price_sum", "price_count"]:
        rows[col] = rows[col].astype(float)
    rows["sifra_art"] = rows["sifra_art"].astype(str)
    # A code stored under several names collapses onto the name of its earliest row.
    rows = rows.sort_values(["sifra_art", "first_id"], kind="stable")
    merged = rows.groupby("sifra_art", sort=True).agg(
        naziv_art=("naziv_art", "first"),
        total_quantity=("total_quantity", "sum"),
        total_revenue=("total_revenue", "sum"),
        sale_count=("sale_count", "sum"),
        price_sum=("price_sum", "sum"),
        price_count=("price_count", "sum"),
    )
    return [
        YearlyAggregate(
            product_code=str(code),
            product_name=str(r.naziv_art),
            year=window.year,
            total_quantity=float(r.total_quantity),
            total_revenue=float(r.total_revenue),
            sale_count=int(r.sale_count),
            avg_price=float(r.price_sum) / float(r.price_count) if r.price_count else 0.0,
        )
        for code, r in merged.iterrows()
    ]


def confidence_for(years_found: int) -> str:
    if years_found >= 3:
        return "high"
    if years_found == 2:
        return "medium"
    return "low"


def merge_forecasts(
    window_aggregates: list[tuple[HistoricalWindow, list[YearlyAggregate]]],
    days: int,
) -> list[ProductForecast]:
    """Combine per-window aggregates into ranked per-product forecasts.

    Daily rates divide by the number of years a product was actually seen,
    not by ``years_back``, so products missing from some years are not
    penalized for it.
    """
    products: dict[str, dict] = {}
    for window, aggregates in window_aggregates:
        for item in aggregates:
            product = products.setdefault(
                item.product_code,
                {
                    "product_name": item.product_name,
                    "total_quantity": 0.0,
                    "total_revenue": 0.0,
                    "years_found": 0,
                    "prices": [],
                    "yearly": {},
                },
            )
            product["total_quantity"] += item.total_quantity
            product["total_revenue"] += item.total_revenue
            product["years_found"] += 1
            product["prices"].append(item.avg_price)
            product["yearly"][window.year] = {"quantity": item.total_quantity, "revenue": item.total_revenue}

    forecasts = []
    for code, product in products.items():
        years_found = product["years_found"]
        total_quantity = product["total_quantity"]
        breakdown = [
            {"year": year, "quantity": data["quantity"], "revenue": data["revenue"]}
            for year, data in sorted(product["yearly"].items(), key=lambda kv: int(kv[0]), reverse=True)
        ]
        forecasts.append(
            ProductForecast(
                product_code=code,
                product_name=product["product_name"],
                avg_daily_quantity=total_quantity / (days * years_found),
                total_historical_quantity=total_quantity,
                suggested_order_quantity=max(0, int(math.ceil(total_quantity / years_found))),
                years_analyzed=years_found,
                historical_revenue=product["total_revenue"],
                avg_price=sum(product["prices"]) / len(product["prices"]),
                confidence=confidence_for(years_found),
                yearly_breakdown=breakdown,
            )
        )
    forecasts.sort(key=lambda f: f.suggested_order_quantity, reverse=True)
    return forecasts


def forecast_reorders(
    store: SalesStore,
    reference_date: Optional[date] = None,
    days: int = 10,
    years_back: int = 4,
) -> ForecastResult:
    days, years_back = validate_parameters(days, years_back)
    reference = reference_date or date.today()
    windows = historical_windows(reference, days, years_back)

    window_aggregates = []
    with_data = set()
    for window in windows:
        aggregates = aggregate_window(store, window)
        if aggregates:
            with_data.add(window.year)
        window_aggregates.append((window, aggregates))

    forecasts = merge_forecasts(window_aggregates, days)
    logger.debug(
        "reorder forecast ref=%s days=%s years_back=%s products=%s years_with_data=%s",
        reference,
        days,
        years_back,
        len(forecasts),
        len(with_data),
    )
    return ForecastResult(
        reference_date=reference,
        days=days,
        years_back=years_back,
        windows=windows,
        forecasts=forecasts,
        windows_with_data=with_data,
    )
