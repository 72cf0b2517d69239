import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sales_db import backfill_sale_dates, open_sales_store


@pytest.fixture
def store(tmp_path):
    s = open_sales_store(backend="sqlite", db_path=tmp_path / "sales.db")
    yield s
    s.close()


@pytest.fixture
def add_sales(store):
    """Insert (code, name, quantity, price, DD.MM.YYYY) rows the way legacy imports stored them."""

    def _add(rows):
        store.executemany(
            """
            INSERT INTO sales (sifra_art, naziv_art, kolicina, cena, datum, datum_az, revenue)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [(code, name, qty, price, datum, datum, qty * price) for code, name, qty, price, datum in rows],
        )
        store.commit()
        backfill_sale_dates(store)

    return _add


@pytest.fixture
def analytics_store(store, add_sales):
    add_sales(
        [
            ("A1", "Hljeb", 10, 2.0, "15.01.2023"),
            ("B2", "Mlijeko", 3, 5.0, "15.01.2023"),
            ("C3", "Sir", 1, 100.0, "02.06.2023"),
            ("A1", "Hljeb", 20, 2.0, "20.01.2024"),
            ("A1", "Hljeb", 5, 2.0, "21.01.2024"),
            ("B2", "Mlijeko", 1, 5.0, "10.02.2024"),
        ]
    )
    return store
