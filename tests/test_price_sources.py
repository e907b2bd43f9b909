"""
Tests for asset price sources and the daily-cached pricer

HTTP sessions and yfinance tickers are mocked; nothing leaves the process.
"""

import pytest
import pandas as pd
import requests
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

from budget_manager.database import NotFoundError, ValidationError
from budget_manager.price_sources import (
    CoinMarketCapSource,
    ExternalServiceError,
    YahooFinanceSource,
    default_sources,
)


def json_session(payload, status_code=200):
    session = MagicMock()
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    session.get.return_value = response
    return session


@pytest.fixture
def held_asset(db):
    investment = db.add_investment_account("Broker", "USD")
    return db.add_asset(investment['id'], {'api_source': 'fake', 'asset_id': 'BTC', 'symbol': 'BTC', 'amount': '0.5'})


class TestCoinMarketCapSource:
    """Tests for the CoinMarketCap source."""

    def test_missing_api_key(self):
        source = CoinMarketCapSource(api_key="", session=MagicMock())
        with pytest.raises(ExternalServiceError):
            source.get_price("1", "USD")

    def test_get_price(self):
        session = json_session({'data': {'1': {'quote': {'USD': {'price': 50000.5}}}}})
        source = CoinMarketCapSource(api_key="key", session=session)

        assert source.get_price("1", "USD") == Decimal("50000.5")
        _, kwargs = session.get.call_args
        assert kwargs['params'] == {"id": "1", "convert": "USD"}
        assert kwargs['headers']["X-CMC_PRO_API_KEY"] == "key"

    def test_missing_quote(self):
        source = CoinMarketCapSource(api_key="key", session=json_session({'data': {}}))
        assert source.get_price("1", "USD") is None

    def test_search(self):
        session = json_session({'data': [{'id': 1, 'symbol': 'BTC', 'name': 'Bitcoin'}]})
        source = CoinMarketCapSource(api_key="key", session=session)

        assert source.search_assets("btc") == [
            {'api_source': 'coinmarketcap', 'asset_id': '1', 'symbol': 'BTC', 'name': 'Bitcoin'}
        ]

    def test_rate_limit(self):
        source = CoinMarketCapSource(api_key="key", session=json_session({}, status_code=429))
        with pytest.raises(ExternalServiceError):
            source.get_price("1", "USD")

    def test_timeout(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout()
        source = CoinMarketCapSource(api_key="key", session=session)
        with pytest.raises(ExternalServiceError):
            source.search_assets("btc")


class TestYahooFinanceSource:
    """Tests for the Yahoo Finance source."""

    def test_search_skips_quotes_without_symbol(self):
        session = json_session({'quotes': [
            {'symbol': 'AAPL', 'longname': 'Apple Inc.'},
            {'shortname': 'No symbol'},
        ]})
        source = YahooFinanceSource(session=session)

        assert source.search_assets("apple") == [
            {'api_source': 'yahoo', 'asset_id': 'AAPL', 'symbol': 'AAPL', 'name': 'Apple Inc.'}
        ]

    def test_connection_error(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError()
        with pytest.raises(ExternalServiceError):
            YahooFinanceSource(session=session).search_assets("apple")

    @patch("budget_manager.price_sources.yf.Ticker")
    def test_price_from_fast_info(self, mock_ticker):
        mock_ticker.return_value.fast_info = {'last_price': 190.5}

        assert YahooFinanceSource().get_price("AAPL", "USD") == Decimal("190.5")
        mock_ticker.return_value.history.assert_not_called()

    @patch("budget_manager.price_sources.yf.Ticker")
    def test_price_falls_back_to_history(self, mock_ticker):
        mock_ticker.return_value.fast_info = {}
        mock_ticker.return_value.history.return_value = pd.DataFrame({'Close': [1.0, 2.5]})

        assert YahooFinanceSource().get_price("VWCE.DE", "EUR") == Decimal("2.5")

    @patch("budget_manager.price_sources.yf.Ticker")
    def test_no_price(self, mock_ticker):
        mock_ticker.return_value.fast_info = {}
        mock_ticker.return_value.history.return_value = pd.DataFrame()

        assert YahooFinanceSource().get_price("NOPE", "USD") is None


def test_default_sources_registry():
    assert set(default_sources()) == {"coinmarketcap", "yahoo"}


class TestAssetPricer:
    """Tests for daily-cached pricing and manual prices."""

    def test_price_is_fetched_once_a_day(self, db, pricer, fake_source, held_asset):
        today = date(2024, 3, 20)

        first = pricer.get_price(held_asset['id'], today=today)
        second = pricer.get_price(held_asset['id'], today=today)

        assert first == {'price': Decimal("50000"), 'date': "2024-03-20", 'currency': "USD"}
        assert second['price'] == Decimal("50000")
        assert fake_source.calls == [("BTC", "USD")]

        pricer.get_price(held_asset['id'], today=date(2024, 3, 21))
        assert len(fake_source.calls) == 2

    def test_price_writes_snapshot(self, db, pricer, held_asset):
        pricer.get_price(held_asset['id'], today=date(2024, 3, 20))

        history = db.get_worth_history([held_asset['id']])
        assert history == [{
            'asset_id': held_asset['id'],
            'date': "2024-03-20",
            'amount': Decimal("0.5"),
            'price': Decimal("50000"),
            'currency': "USD",
        }]
        assert db.get_asset(held_asset['id'])['last_price_date'] == "2024-03-20"

    def test_unknown_asset(self, pricer):
        with pytest.raises(NotFoundError):
            pricer.get_price(7)

    def test_unknown_source(self, db, pricer):
        investment = db.add_investment_account("Other")
        asset = db.add_asset(investment['id'], {'api_source': 'bloomberg', 'symbol': 'IBM'})
        with pytest.raises(ValidationError):
            pricer.get_price(asset['id'])

    def test_no_quote(self, db, pricer):
        investment = db.add_investment_account("Other")
        asset = db.add_asset(investment['id'], {'api_source': 'fake', 'symbol': 'XYZ'})
        with pytest.raises(ExternalServiceError):
            pricer.get_price(asset['id'])
        assert db.get_worth_history([asset['id']]) == []

    def test_manual_price(self, db, pricer, held_asset):
        result = pricer.set_manual_price(held_asset['id'], "123.4", "2024-03-01")

        assert result == {'price': Decimal("123.4"), 'date': "2024-03-01", 'currency': "USD"}
        assert db.get_worth_history([held_asset['id']])[0]['price'] == Decimal("123.4")

    def test_manual_price_must_be_positive(self, pricer, held_asset):
        with pytest.raises(ValidationError):
            pricer.set_manual_price(held_asset['id'], "0")

    def test_manual_price_rejects_negative(self, db, pricer, held_asset):
        with pytest.raises(ValidationError, match="cannot be negative"):
            pricer.set_manual_price(held_asset['id'], "-1")
        assert db.get_worth_history([held_asset['id']]) == []

    def test_negative_asset_amount_rejected(self, db):
        investment = db.add_investment_account("Other")
        with pytest.raises(ValidationError, match="cannot be negative"):
            db.add_asset(investment['id'], {'api_source': 'fake', 'symbol': 'BTC', 'amount': '-1'})

    def test_search(self, pricer):
        assert [r['asset_id'] for r in pricer.search("bt")] == ["BTC"]

    def test_empty_search(self, pricer):
        with pytest.raises(ValidationError):
            pricer.search("  ")
