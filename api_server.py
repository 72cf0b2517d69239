from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware

from reorder_forecast import ForecastParameterError, forecast_reorders, parse_calendar_date
from sales_analytics import (
    AnalyticsParameterError,
    ProductNotFound,
    date_range,
    product_analytics,
    recent_sales,
    sales_trends,
    top_items,
)
from sales_db import SalesStore, SalesStoreError, open_sales_store
from sales_import import import_history, parse_sales_upload, save_sales

ENV_PATH = Path(".env")
logger = logging.getLogger("prodaja.api_server")


def load_local_env(path: Path = ENV_PATH) -> None:
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


load_local_env()

DB_PATH = Path(os.getenv("DB_PATH", "database/sales.db"))
DATABASE_URL = (os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL") or "").strip()
DB_BACKEND = os.getenv("DB_BACKEND", "postgres" if os.getenv("POSTGRES_URL") else "sqlite").strip().lower()
FORECAST_DEFAULT_DAYS = int(os.getenv("FORECAST_DEFAULT_DAYS", "10"))
FORECAST_DEFAULT_YEARS = int(os.getenv("FORECAST_DEFAULT_YEARS", "4"))


def _parse_cors_origins(raw: str) -> list[str]:
    value = (raw or "*").strip()
    if value == "*":
        return ["*"]
    return [v.strip() for v in value.split(",") if v.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = open_sales_store(backend=DB_BACKEND, db_path=DB_PATH, database_url=DATABASE_URL)
    app.state.store = store
    try:
        yield
    finally:
        store.close()
        logger.info("closed %s sales store", store.backend)


app = FastAPI(title="Prodaja Sales API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("BACKEND_CORS_ORIGINS", "*")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store(request: Request) -> SalesStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sales store is not open")
    return store


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"success": False, "error": str(exc)})


def _server_error(what: str, exc: Exception) -> HTTPException:
    logger.exception("%s failed", what)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"success": False, "error": f"Failed to {what}", "message": str(exc)},
    )


def _optional_date(value: Optional[str]) -> Optional[date]:
    try:
        return parse_calendar_date(value)
    except ForecastParameterError as exc:
        raise _bad_request(exc) from exc


@app.get("/api/health")
def health() -> dict:
    return {"ok": True, "ts": datetime.now().isoformat(timespec="seconds")}


@app.get("/api/health/db")
def health_db(store: SalesStore = Depends(get_store)) -> dict:
    return store.health_check()


@app.get("/api/meta/date-range")
def meta_date_range(store: SalesStore = Depends(get_store)) -> dict:
    try:
        return date_range(store)
    except SalesStoreError as exc:
        raise _server_error("fetch date range", exc) from exc


@app.get("/api/suggestions")
def suggestions(
    date_param: Optional[str] = Query(default=None, alias="date"),
    days: int = Query(default=FORECAST_DEFAULT_DAYS),
    years: int = Query(default=FORECAST_DEFAULT_YEARS),
    store: SalesStore = Depends(get_store),
) -> dict:
    try:
        reference = parse_calendar_date(date_param)
        result = forecast_reorders(store, reference_date=reference, days=days, years_back=years)
    except ForecastParameterError as exc:
        raise _bad_request(exc) from exc
    except SalesStoreError as exc:
        raise _server_error("generate suggestions", exc) from exc

    return {
        "success": True,
        "forecasts": [f.to_dict() for f in result.forecasts],
        "count": len(result.forecasts),
        "prediction_start_date": result.reference_date.isoformat(),
        "prediction_end_date": result.end_date.isoformat(),
        "days_predicted": result.days,
        "years_back": result.years_back,
        "years_with_data": result.years_with_data,
        "windows_sampled": [
            {**w.to_dict(), "has_data": w.year in result.windows_with_data} for w in result.windows
        ],
    }


@app.get("/api/sales")
def sales(limit: int = Query(default=10, gt=0, le=1000), store: SalesStore = Depends(get_store)) -> dict:
    try:
        rows = recent_sales(store, limit=limit)
    except SalesStoreError as exc:
        raise _server_error("fetch sales data", exc) from exc
    return {"success": True, "data": rows, "count": len(rows)}


@app.get("/api/top-items")
def top_items_route(
    date_param: Optional[str] = Query(default=None, alias="date"),
    limit: int = Query(default=20, gt=0, le=1000),
    store: SalesStore = Depends(get_store),
) -> dict:
    day = _optional_date(date_param)
    if day is None:
        raise _bad_request(ValueError("Date parameter is required (format: DD.MM.YYYY)"))
    try:
        rows = top_items(store, day, limit=limit)
    except SalesStoreError as exc:
        raise _server_error("fetch top items", exc) from exc
    return {"success": True, "data": rows, "count": len(rows), "date": day.isoformat()}


@app.get("/api/sales-trends")
def sales_trends_route(
    period: str = Query(default="daily"),
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    store: SalesStore = Depends(get_store),
) -> dict:
    start = _optional_date(start_date)
    end = _optional_date(end_date)
    try:
        payload = sales_trends(store, period=period, start=start, end=end)
    except AnalyticsParameterError as exc:
        raise _bad_request(exc) from exc
    except SalesStoreError as exc:
        raise _server_error("fetch sales trends", exc) from exc
    return {"success": True, **payload}


@app.get("/api/product-analytics")
def product_analytics_route(
    analysis_type: str = Query(default="overview", alias="type"),
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    limit: int = Query(default=50, gt=0, le=1000),
    min_sales: int = Query(default=10, ge=0),
    sort_by: str = Query(default="quantity"),
    product_code: Optional[str] = Query(default=None),
    as_of: Optional[str] = Query(default=None),
    store: SalesStore = Depends(get_store),
) -> dict:
    start = _optional_date(start_date)
    end = _optional_date(end_date)
    as_of_date = _optional_date(as_of)
    try:
        payload = product_analytics(
            store,
            analysis_type=analysis_type,
            start=start,
            end=end,
            limit=limit,
            min_sales=min_sales,
            sort_by=sort_by,
            product_code=product_code,
            as_of=as_of_date,
        )
    except AnalyticsParameterError as exc:
        raise _bad_request(exc) from exc
    except ProductNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"success": False, "error": str(exc)}) from exc
    except SalesStoreError as exc:
        raise _server_error("fetch product analytics", exc) from exc
    return {"success": True, **payload}


@app.post("/api/import/sales")
async def import_sales(file: UploadFile = File(...), store: SalesStore = Depends(get_store)) -> dict:
    file_bytes = await file.read()
    try:
        df, rejected = parse_sales_upload(file.filename or "upload.csv", file_bytes)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    try:
        import_id, rows = save_sales(store, df, file.filename or "upload.csv", rejected_rows=rejected)
    except SalesStoreError as exc:
        raise _server_error("import sales", exc) from exc
    return {"success": True, "import_id": import_id, "rows_imported": rows, "rows_rejected": rejected}


@app.get("/api/import/history")
def import_history_route(store: SalesStore = Depends(get_store)) -> dict:
    try:
        return {"rows": import_history(store)}
    except SalesStoreError as exc:
        raise _server_error("fetch import history", exc) from exc
