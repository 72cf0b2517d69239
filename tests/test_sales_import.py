import io
from datetime import date, datetime

import pandas as pd
import pytest

from reorder_forecast import forecast_reorders
from sales_import import import_history, parse_sales_upload, save_sales


def test_parse_semicolon_export_with_decimal_commas():
    content = (
        "sifra_art;naziv_art;kolicina;cena;datum\n"
        "A1;Hljeb;2,5;1,20;29.10.2024\n"
        "B2;Mlijeko;3;2;31.02.2024\n"
        "C3;Sir;x;2;01.11.2024\n"
    ).encode("utf-8")

    df, rejected = parse_sales_upload("export.csv", content)

    assert rejected == 2
    assert df["sifra_art"].tolist() == ["A1"]
    row = df.iloc[0]
    assert row["kolicina"] == pytest.approx(2.5)
    assert row["cena"] == pytest.approx(1.2)
    assert row["revenue"] == pytest.approx(3.0)
    assert row["sale_date"] == "2024-10-29"
    assert row["datum_az"] == "29.10.2024"


def test_parse_english_headers():
    content = b"Product Code,Product Name,Quantity,Price,Date\nA1,Coffee,4,2.5,01.03.2024\n"
    df, rejected = parse_sales_upload("sales.csv", content)
    assert rejected == 0
    assert df.loc[0, "naziv_art"] == "Coffee"
    assert df.loc[0, "revenue"] == pytest.approx(10.0)


def test_parse_xlsx():
    buf = io.BytesIO()
    pd.DataFrame(
        {"sifra_art": ["A1"], "naziv_art": ["Hljeb"], "kolicina": ["2"], "cena": ["1.5"], "datum": ["05.05.2023"]}
    ).to_excel(buf, index=False)

    df, rejected = parse_sales_upload("sales.xlsx", buf.getvalue())

    assert rejected == 0
    assert df.loc[0, "sale_date"] == "2023-05-05"


def test_missing_columns_and_unknown_type_are_rejected():
    with pytest.raises(ValueError, match="missing required columns"):
        parse_sales_upload("sales.csv", b"sifra_art,kolicina\nA1,1\n")
    with pytest.raises(ValueError, match="Unsupported file type"):
        parse_sales_upload("sales.json", b"{}")


def test_xlsx_with_real_date_cells():
    buf = io.BytesIO()
    pd.DataFrame(
        {
            "sifra_art": ["A1", "B2"],
            "naziv_art": ["Hljeb", "Sir"],
            "kolicina": [2, 1],
            "cena": [1.5, 4.0],
            "datum": [datetime(2024, 10, 29), datetime(2024, 2, 29)],
        }
    ).to_excel(buf, index=False)

    df, rejected = parse_sales_upload("sales.xlsx", buf.getvalue())

    assert rejected == 0
    assert df["sale_date"].tolist() == ["2024-10-29", "2024-02-29"]
    assert df["datum"].tolist() == ["29.10.2024", "29.02.2024"]
    assert df["datum_az"].tolist() == ["29.10.2024", "29.02.2024"]


def test_saved_rows_feed_the_forecaster(store):
    content = (
        "sifra_art,naziv_art,kolicina,cena,datum\n"
        "A1,Kafa,6,1.0,02.09.2024\n"
        "A1,Kafa,4,1.0,03.09.2023\n"
    ).encode("utf-8")
    df, rejected = parse_sales_upload("sept.csv", content)

    import_id, saved = save_sales(store, df, "sept.csv", rejected_rows=rejected, imported_at="2025-08-01T10:00:00")

    assert saved == 2
    (batch,) = import_history(store)
    assert batch["import_id"] == import_id
    assert batch["row_count"] == 2
    assert batch["min_date"] == "2023-09-03"
    assert batch["max_date"] == "2024-09-02"

    result = forecast_reorders(store, reference_date=date(2025, 9, 1), days=7, years_back=2)
    (a1,) = result.forecasts
    assert a1.suggested_order_quantity == 5
    assert a1.confidence == "medium"
