from __future__ import annotations

import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import Depends, Query

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
os.chdir(ROOT_DIR)


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip().strip("\"").strip("'")
        os.environ.setdefault(key, value)


_load_env_file(Path(__file__).resolve().parent / ".env")
_load_env_file(ROOT_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Database runtime selection.
# - sqlite (default): use SQLITE_PATH/DB_PATH
# - postgres: use DATABASE_URL (or POSTGRES_URL)
db_backend = os.getenv("DB_BACKEND", "postgres" if os.getenv("POSTGRES_URL") else "sqlite").strip().lower()
if db_backend == "postgres":
    os.environ["DB_BACKEND"] = "postgres"
    if not os.getenv("DATABASE_URL") and os.getenv("POSTGRES_URL"):
        os.environ["DATABASE_URL"] = os.getenv("POSTGRES_URL", "")
else:
    os.environ["DB_BACKEND"] = "sqlite"
    if os.getenv("SQLITE_PATH"):
        os.environ["DB_PATH"] = os.getenv("SQLITE_PATH", "")

from api_server import FORECAST_DEFAULT_DAYS, FORECAST_DEFAULT_YEARS, app, get_store  # noqa: E402
from reorder_forecast import forecast_reorders, parse_calendar_date  # noqa: E402
from sales_analytics import date_range, product_analytics, sales_trends  # noqa: E402
from sales_db import SalesStore  # noqa: E402

logger = logging.getLogger("prodaja.backend")


def _safe_call(
    key: str,
    errors: dict[str, str],
    fn: Callable[..., Any],
    *args: Any,
    fallback: Any = None,
    **kwargs: Any,
) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.warning("dashboard section %s failed: %s", key, exc)
        errors[key] = str(exc)
        return fallback


def _suggestions_section(store: SalesStore, reference: Optional[date], days: int, years: int, top: int) -> dict:
    result = forecast_reorders(store, reference_date=reference, days=days, years_back=years)
    return {
        "rows": [f.to_dict() for f in result.forecasts[:top]],
        "count": len(result.forecasts),
        "years_with_data": result.years_with_data,
        "prediction_start_date": result.reference_date.isoformat(),
        "prediction_end_date": result.end_date.isoformat(),
    }


@app.get("/dashboard")
def dashboard(
    reference_date: Optional[str] = Query(default=None, alias="date"),
    days: int = Query(default=FORECAST_DEFAULT_DAYS),
    years: int = Query(default=FORECAST_DEFAULT_YEARS),
    top: int = Query(default=10, gt=0, le=200),
    store: SalesStore = Depends(get_store),
) -> dict[str, Any]:
    errors: dict[str, str] = {}

    meta = _safe_call("meta", errors, date_range, store, fallback={})
    reference = _safe_call("date", errors, parse_calendar_date, reference_date, fallback=None)

    analytics = {
        "overview": _safe_call("analytics.overview", errors, product_analytics, store, "overview", fallback=None),
        "seasonal": _safe_call("analytics.seasonal", errors, product_analytics, store, "seasonal", fallback={"data": []}),
        "best_sellers": _safe_call(
            "analytics.best_sellers",
            errors,
            product_analytics,
            store,
            "best-sellers",
            limit=top,
            fallback={"data": []},
        ),
    }
    trends = {
        "monthly": _safe_call("trends.monthly", errors, sales_trends, store, period="monthly", fallback=None),
    }
    empty_suggestions = {"rows": [], "count": 0, "years_with_data": 0}
    if "date" in errors:
        # An invalid date never falls back to today.
        errors["suggestions"] = "skipped: invalid date"
        suggestions = empty_suggestions
    else:
        suggestions = _safe_call(
            "suggestions",
            errors,
            _suggestions_section,
            store,
            reference,
            days,
            years,
            top,
            fallback=empty_suggestions,
        )

    return {
        "meta": meta,
        "analytics": analytics,
        "trends": trends,
        "suggestions": suggestions,
        "errors": errors,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
