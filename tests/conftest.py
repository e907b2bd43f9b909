"""
Shared fixtures

Every test gets its own SQLite file under tmp_path. Price lookups go
through an in-memory source so no test touches the network.
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from budget_manager.backend.main import create_app
from budget_manager.database import BudgetDatabase
from budget_manager.importer import TransactionImporter
from budget_manager.price_sources import AssetPricer, PriceSource
from budget_manager.reports import ReportGenerator


class FakePriceSource(PriceSource):
    """Price source answering from a dict, counting lookups."""

    name = "fake"

    def __init__(self, prices=None):
        self.prices = prices or {}
        self.calls = []

    def search_assets(self, query):
        return [
            {'api_source': self.name, 'asset_id': asset_id, 'symbol': asset_id, 'name': asset_id}
            for asset_id in self.prices
            if query.lower() in asset_id.lower()
        ]

    def get_price(self, asset_id, currency):
        self.calls.append((asset_id, currency))
        price = self.prices.get(asset_id)
        return Decimal(str(price)) if price is not None else None


@pytest.fixture
def db(tmp_path):
    return BudgetDatabase(db_path=str(tmp_path / "budget.db"))


@pytest.fixture
def reports(db):
    return ReportGenerator(db)


@pytest.fixture
def importer(db):
    return TransactionImporter(db)


@pytest.fixture
def checking(db):
    return db.add_account("Checking", "bank", "USD")


@pytest.fixture
def savings(db):
    return db.add_account("Savings", "savings", "USD")


@pytest.fixture
def food_tags(db):
    """Food -> Groceries -> Organic, plus an unrelated Travel root."""
    food = db.add_tag("Food", color="#ef4444")
    groceries = db.add_tag("Groceries", parent_id=food['id'], color="#22c55e")
    organic = db.add_tag("Organic", parent_id=groceries['id'], color="#eab308")
    travel = db.add_tag("Travel", color="#0ea5e9")
    return {'food': food, 'groceries': groceries, 'organic': organic, 'travel': travel}


@pytest.fixture
def fake_source():
    return FakePriceSource({'BTC': '50000', 'AAPL': '190.5'})


@pytest.fixture
def pricer(db, fake_source):
    return AssetPricer(db, {'fake': fake_source}, default_currency="USD")


@pytest.fixture
def app(tmp_path, fake_source):
    return create_app(db_path=str(tmp_path / "api.db"), price_sources={'fake': fake_source})


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
