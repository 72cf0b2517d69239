from datetime import date

import pytest

from sales_analytics import (
    AnalyticsParameterError,
    ProductNotFound,
    pareto_cutoff,
    product_analytics,
    recent_sales,
    recommendation_for,
    sales_trends,
    top_items,
)


def test_recent_sales_newest_first(analytics_store):
    rows = recent_sales(analytics_store, limit=2)
    assert [r["sale_date"] for r in rows] == ["2024-02-10", "2024-01-21"]


def test_top_items_for_one_day(analytics_store):
    rows = top_items(analytics_store, date(2023, 1, 15))
    assert [r["sifra_art"] for r in rows] == ["A1", "B2"]
    assert rows[0]["total_quantity"] == pytest.approx(10)
    assert rows[1]["total_revenue"] == pytest.approx(15)


def test_monthly_trends_with_year_over_year(analytics_store):
    payload = sales_trends(analytics_store, period="monthly")

    assert [r["period"] for r in payload["data"]] == ["2023-01", "2023-06", "2024-01", "2024-02"]
    assert payload["data"][0]["total_revenue"] == pytest.approx(35)
    assert payload["moving_averages"] == []
    (yoy,) = payload["yoy_comparison"]
    assert yoy["period"] == "2024-01"
    assert yoy["current_year"] == 2024
    assert yoy["previous_year"] == 2023
    assert yoy["growth_percent"] == pytest.approx((50 - 35) / 35 * 100)


def test_yearly_trends_compare_whole_years(analytics_store):
    payload = sales_trends(analytics_store, period="yearly")
    assert [r["period"] for r in payload["data"]] == ["2023", "2024"]
    (yoy,) = payload["yoy_comparison"]
    assert yoy["period"] == "2024"
    assert yoy["growth_percent"] == pytest.approx((55 - 135) / 135 * 100)


def test_daily_trends_moving_averages(analytics_store):
    payload = sales_trends(analytics_store, period="daily")

    moving = payload["moving_averages"]
    assert [m["date"] for m in moving][:2] == ["2023-01-15", "2023-06-02"]
    assert moving[0]["ma_7day"] == pytest.approx(35)
    assert moving[1]["ma_7day"] == pytest.approx(67.5)
    assert moving[-1]["ma_30day"] == pytest.approx(38)
    assert payload["summary"]["total_revenue"] == pytest.approx(190)
    assert payload["summary"]["periods_count"] == 5
    assert payload["summary"]["avg_revenue_per_period"] == pytest.approx(38)


def test_weekly_trends_and_date_filter(analytics_store):
    payload = sales_trends(analytics_store, period="weekly", start=date(2024, 1, 1), end=date(2024, 1, 31))
    assert payload["data"] == [
        {"period": "2024-W03", "total_revenue": 50.0, "total_quantity": 25.0, "sale_count": 2, "avg_price": 2.0}
    ]


def test_invalid_period_is_rejected(analytics_store):
    with pytest.raises(AnalyticsParameterError):
        sales_trends(analytics_store, period="hourly")


def test_pareto_cutoff():
    assert pareto_cutoff([70, 20, 100]) == 2
    assert pareto_cutoff([10]) == 1
    assert pareto_cutoff([25, 25, 25, 25]) == 4


def test_overview(analytics_store):
    data = product_analytics(analytics_store, "overview")["data"]
    assert data["total_products"] == 3
    assert data["total_transactions"] == 6
    assert data["total_quantity"] == pytest.approx(40)
    assert data["total_revenue"] == pytest.approx(190)
    assert data["top_20_products_count"] == 2
    assert data["top_20_percentage"] == pytest.approx(200 / 3)
    assert data["total_unique_products"] == 3


def test_best_sellers(analytics_store):
    payload = product_analytics(analytics_store, "best-sellers", min_sales=2)
    assert [r["sifra_art"] for r in payload["data"]] == ["A1", "B2"]
    a1 = payload["data"][0]
    assert a1["first_sale_date"] == "2023-01-15"
    assert a1["last_sale_date"] == "2024-01-21"
    assert a1["days_on_market"] == 372
    assert a1["velocity_score"] == pytest.approx(70 / 3)

    by_revenue = product_analytics(analytics_store, "best-sellers", min_sales=1, sort_by="revenue")
    assert by_revenue["data"][0]["sifra_art"] == "C3"


@pytest.mark.parametrize(
    "as_of,days,recommendation",
    [
        (date(2024, 3, 1), 40, "monitor"),
        (date(2024, 5, 1), 101, "discount"),
        (date(2024, 9, 1), 224, "discontinue"),
    ],
)
def test_slow_movers(analytics_store, as_of, days, recommendation):
    payload = product_analytics(analytics_store, "slow-movers", as_of=as_of)
    (row,) = payload["data"]
    assert row["sifra_art"] == "A1"
    assert row["days_since_last_sale"] == days
    assert row["recommendation"] == recommendation


def test_recommendation_thresholds():
    assert recommendation_for(90) == "monitor"
    assert recommendation_for(91) == "discount"
    assert recommendation_for(181) == "discontinue"


def test_seasonal_patterns(analytics_store):
    data = product_analytics(analytics_store, "seasonal")["data"]
    assert [r["month_name"] for r in data] == ["Januar", "Februar", "Juni"]
    january = data[0]
    assert january["total_revenue"] == pytest.approx(85)
    assert january["avg_daily_revenue"] == pytest.approx(85 / 3)
    assert january["year_over_year_growth"] == pytest.approx((50 - 35) / 35 * 100)
    assert data[1]["year_over_year_growth"] == 0.0


def test_product_seasonality(analytics_store):
    data = product_analytics(analytics_store, "product-seasonality", product_code="A1")["data"]
    assert data["product_name"] == "Hljeb"
    assert data["monthly_patterns"] == [
        {"month": "Januar", "quantity": 35.0, "revenue": 70.0, "percentage_of_annual": 100.0}
    ]
    assert data["peak_months"] == ["Januar"]


def test_product_seasonality_needs_known_product(analytics_store):
    with pytest.raises(AnalyticsParameterError):
        product_analytics(analytics_store, "product-seasonality")
    with pytest.raises(ProductNotFound):
        product_analytics(analytics_store, "product-seasonality", product_code="ZZ")


def test_unknown_analysis_type(analytics_store):
    with pytest.raises(AnalyticsParameterError):
        product_analytics(analytics_store, "forecast")
