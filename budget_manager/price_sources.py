"""
Asset price sources for Budget Manager

Each source searches its catalogue for assets and quotes a unit price for an
asset identifier in a currency. Sources are looked up by the asset's
api_source key, so new providers only need to be added to the registry.
"""

import os
import logging
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Any, Optional

import requests
import yfinance as yf

from .database import BudgetDatabase, NotFoundError, ValidationError
from .utils import parse_amount, to_timestamp
from .validators import validate_amount

logger = logging.getLogger(__name__)

# Suppress yfinance error logging for 404s (symbol not found)
# These are expected errors when symbols don't exist and are handled gracefully
yf_logger = logging.getLogger('yfinance')
yf_logger.setLevel(logging.CRITICAL)


class ExternalServiceError(Exception):
    """Price source unreachable or returned no quote."""
    pass


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class PriceSource(ABC):
    """Contract every price source implements."""

    name: str = ""

    @abstractmethod
    def search_assets(self, query: str) -> List[Dict[str, Any]]:
        """Return [{'api_source', 'asset_id', 'symbol', 'name'}, ...]."""

    @abstractmethod
    def get_price(self, asset_id: str, currency: str) -> Optional[Decimal]:
        """Return the unit price, or None when the source has no quote."""


class CoinMarketCapSource(PriceSource):
    """Crypto prices from the CoinMarketCap pro API."""

    name = "coinmarketcap"
    BASE_URL = "https://pro-api.coinmarketcap.com/v1"

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else os.getenv("COINMARKETCAP_API_KEY", "")
        self.timeout = timeout or float(os.getenv("PRICE_REQUEST_TIMEOUT", "10"))
        self.session = session or requests.Session()

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceError("COINMARKETCAP_API_KEY is not configured")
        try:
            response = self.session.get(
                f"{self.BASE_URL}{path}",
                params=params,
                headers={"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"},
                timeout=self.timeout
            )
            if response.status_code == 429:
                raise ExternalServiceError("CoinMarketCap rate limit exceeded")
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            raise ExternalServiceError("CoinMarketCap API timeout")
        except requests.exceptions.ConnectionError:
            raise ExternalServiceError("Cannot connect to CoinMarketCap API")
        except requests.exceptions.HTTPError as e:
            raise ExternalServiceError(f"CoinMarketCap API error: {e}")
        except ValueError as e:
            raise ExternalServiceError(f"CoinMarketCap returned invalid JSON: {e}")

    def search_assets(self, query: str) -> List[Dict[str, Any]]:
        payload = self._get("/cryptocurrency/map", {"symbol": query.strip().upper()})
        return [
            {
                'api_source': self.name,
                'asset_id': str(item['id']),
                'symbol': item.get('symbol'),
                'name': item.get('name'),
            }
            for item in payload.get('data') or []
        ]

    def get_price(self, asset_id: str, currency: str) -> Optional[Decimal]:
        payload = self._get(
            "/cryptocurrency/quotes/latest",
            {"id": asset_id, "convert": currency}
        )
        data = (payload.get('data') or {}).get(str(asset_id))
        if not data:
            return None
        quote = (data.get('quote') or {}).get(currency) or {}
        return _to_decimal(quote.get('price'))


class YahooFinanceSource(PriceSource):
    """
    Stocks, ETFs and funds from Yahoo Finance.

    Searching goes through the public search endpoint; prices come from
    yfinance, first fast_info and then the most recent daily close.
    The quote is in the listing's own currency.
    """

    name = "yahoo"
    SEARCH_URL = "https://query1.finance.yahoo.com/v1/finance/search"

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout or float(os.getenv("PRICE_REQUEST_TIMEOUT", "10"))
        self.session = session or requests.Session()

    def search_assets(self, query: str) -> List[Dict[str, Any]]:
        try:
            response = self.session.get(
                self.SEARCH_URL,
                params={"q": query.strip(), "quotesCount": 10, "newsCount": 0},
                headers={"User-Agent": "Mozilla/5.0"},
                timeout=self.timeout
            )
            response.raise_for_status()
            quotes = response.json().get('quotes') or []
        except requests.exceptions.Timeout:
            raise ExternalServiceError("Yahoo Finance search timeout")
        except requests.exceptions.ConnectionError:
            raise ExternalServiceError("Cannot connect to Yahoo Finance")
        except requests.exceptions.HTTPError as e:
            raise ExternalServiceError(f"Yahoo Finance search error: {e}")
        except ValueError as e:
            raise ExternalServiceError(f"Yahoo Finance returned invalid JSON: {e}")

        return [
            {
                'api_source': self.name,
                'asset_id': quote['symbol'],
                'symbol': quote['symbol'],
                'name': quote.get('longname') or quote.get('shortname') or quote['symbol'],
            }
            for quote in quotes
            if quote.get('symbol')
        ]

    def get_price(self, asset_id: str, currency: str) -> Optional[Decimal]:
        symbol = asset_id.strip()
        ticker = yf.Ticker(symbol)

        try:
            fast_info = ticker.fast_info
            for key in ("last_price", "regular_market_price", "previous_close"):
                if hasattr(fast_info, "get"):
                    price = fast_info.get(key)
                else:
                    price = getattr(fast_info, key, None)
                price = _to_decimal(price)
                if price:
                    return price
        except Exception as e:
            logger.warning(f"Failed to fetch fast info for {symbol}: {e}")

        for period, interval in (("5d", "1d"), ("1mo", "1d")):
            try:
                history = ticker.history(period=period, interval=interval, auto_adjust=False)
            except Exception as e:
                logger.warning(f"Failed history fetch for {symbol} ({period}/{interval}): {e}")
                continue

            if history is None or history.empty:
                logger.warning(f"History is empty for {symbol} ({period}/{interval})")
                continue

            if "Close" in history.columns:
                closes = history["Close"].dropna()
            elif "Adj Close" in history.columns:
                closes = history["Adj Close"].dropna()
            else:
                logger.warning(f"No Close or Adj Close column for {symbol} ({period}/{interval})")
                continue

            if closes.empty:
                continue
            return _to_decimal(closes.iloc[-1])

        return None


def default_sources() -> Dict[str, PriceSource]:
    """Registry keyed by api_source."""
    sources = [CoinMarketCapSource(), YahooFinanceSource()]
    return {source.name: source for source in sources}


class AssetPricer:
    """Daily-cached asset pricing backed by worth snapshots."""

    def __init__(self, database: BudgetDatabase, sources: Dict[str, PriceSource],
                 default_currency: Optional[str] = None):
        self.db = database
        self.sources = sources
        self.default_currency = default_currency or os.getenv("DEFAULT_CURRENCY", "USD")

    def search(self, query: str) -> List[Dict[str, Any]]:
        """Concatenated search results of every registered source."""
        if not query or not query.strip():
            raise ValidationError("Query is required")
        results = []
        for name, source in self.sources.items():
            found = source.search_assets(query)
            logger.debug(f"{name} returned {len(found)} results for '{query}'")
            results.extend(found)
        return results

    def get_price(self, asset_id: int, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Current unit price of an asset.

        A price already fetched today is reused; otherwise the asset's source
        is asked. Either way today's worth snapshot is written.

        Raises:
            NotFoundError: Unknown asset
            ValidationError: The asset names an unregistered source
            ExternalServiceError: The source has no quote
        """
        asset = self.db.get_asset(asset_id)
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found")

        today_str = (today or date.today()).isoformat()
        currency = asset.get('currency') or self.default_currency

        if asset.get('last_price') is not None and asset.get('last_price_date') == today_str:
            price = asset['last_price']
            logger.debug(f"Using cached price {price} for asset {asset_id}")
        else:
            source = self.sources.get(asset['api_source'])
            if source is None:
                raise ValidationError(f"Unknown price source: {asset['api_source']}")
            price = source.get_price(asset['asset_id'], currency)
            if price is None:
                logger.warning(f"No price from {asset['api_source']} for {asset['symbol']}")
                raise ExternalServiceError(f"Price not found for {asset['symbol']}")

        self.db.record_asset_price(asset_id, price, today_str, currency)
        return {'price': price, 'date': today_str, 'currency': currency}

    def set_manual_price(self, asset_id: int, price: Any, price_date: Optional[str] = None) -> Dict[str, Any]:
        """Record a user-entered price, for today unless a date is given."""
        asset = self.db.get_asset(asset_id)
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found")

        try:
            unit_price = parse_amount(price)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        valid, error = validate_amount(unit_price, "Price", allow_zero=False)
        if not valid:
            raise ValidationError(error)
        try:
            day = to_timestamp(price_date)[:10] if price_date else date.today().isoformat()
        except ValueError as e:
            raise ValidationError(str(e)) from e

        currency = asset.get('currency') or self.default_currency
        self.db.record_asset_price(asset_id, unit_price, day, currency)
        return {'price': unit_price, 'date': day, 'currency': currency}
