"""
Market data sources and snapshot normalization.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import requests

from cryptalert.errors import NetworkError, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketSnapshot:
    """Market metrics for one coin at one instant.

    Fields the upstream did not report are None, never 0.
    """

    coin_id: str
    price: Optional[float] = None
    volume: Optional[float] = None
    market_cap: Optional[float] = None
    change_24h: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple:
        """Identity of this snapshot, used to avoid double triggers."""
        return (
            self.coin_id,
            self.timestamp,
            self.price,
            self.volume,
            self.market_cap,
            self.change_24h,
        )

    def to_triggered_data(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "volume": self.volume,
            "marketCap": self.market_cap,
            "changePercentage": self.change_24h,
        }


def _number(value: Any) -> Optional[float]:
    """Coerce an upstream value to float, keeping absence as None."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(*values: Any) -> Optional[float]:
    for value in values:
        number = _number(value)
        if number is not None:
            return number
    return None


def snapshot_from_coingecko(
    coin_id: str, payload: dict[str, Any], vs_currency: str = "usd"
) -> MarketSnapshot:
    """
    Normalize a CoinGecko response.

    Accepts a ``/coins/markets`` item, a ``/coins/{id}`` detail document
    (with ``market_data``), or the flattened shape served by the portal's
    market proxy (``price``, ``volume``, ``market_cap``,
    ``price_change_percentage_24h``).
    """
    market_data = payload.get("market_data")
    if isinstance(market_data, dict):

        def quote(name: str) -> Any:
            value = market_data.get(name)
            return value.get(vs_currency) if isinstance(value, dict) else value

        return MarketSnapshot(
            coin_id=coin_id,
            price=_number(quote("current_price")),
            volume=_number(quote("total_volume")),
            market_cap=_number(quote("market_cap")),
            change_24h=_number(market_data.get("price_change_percentage_24h")),
        )

    return MarketSnapshot(
        coin_id=coin_id,
        price=_first(payload.get("price"), payload.get("current_price")),
        volume=_first(payload.get("volume"), payload.get("total_volume")),
        market_cap=_number(payload.get("market_cap")),
        change_24h=_number(payload.get("price_change_percentage_24h")),
    )


def snapshot_from_binance(coin_id: str, ticker: dict[str, Any]) -> MarketSnapshot:
    """Normalize a Binance ``/api/v3/ticker/24hr`` response."""
    return MarketSnapshot(
        coin_id=coin_id,
        price=_number(ticker.get("lastPrice")),
        volume=_number(ticker.get("quoteVolume")),
        market_cap=None,  # Binance does not report market cap
        change_24h=_number(ticker.get("priceChangePercent")),
    )


def snapshot_from_coinmarketcap(
    coin_id: str, listing: dict[str, Any], convert: str = "USD"
) -> MarketSnapshot:
    """Normalize a CoinMarketCap quotes/latest entry."""
    quote = (listing.get("quote") or {}).get(convert) or {}
    return MarketSnapshot(
        coin_id=coin_id,
        price=_number(quote.get("price")),
        volume=_number(quote.get("volume_24h")),
        market_cap=_number(quote.get("market_cap")),
        change_24h=_number(quote.get("percent_change_24h")),
    )


class MarketDataSource(ABC):
    """Supplies the current snapshot for a coin."""

    @abstractmethod
    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        """
        Fetch the current snapshot for a coin.

        Raises:
            NetworkError: If the upstream could not be reached
            NotFound: If the coin is unknown upstream
        """
        pass


class HttpDataSource(MarketDataSource):
    """Shared request handling for JSON market APIs."""

    # Status codes the upstream uses for unknown coins
    not_found_statuses: tuple[int, ...] = (404,)

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": "CryptAlert/1.0"}

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = requests.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout fetching {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Connection error fetching {url}: {e}") from e

        if response.status_code in self.not_found_statuses:
            raise NotFound(f"Not found: {url}")
        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"HTTP {response.status_code} from {url}")
        if not response.ok:
            raise NetworkError(
                f"HTTP {response.status_code} from {url}: {response.text}",
                temporary=False,
            )

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}", temporary=False) from e

    def _unexpected(self, coin_id: str, payload: Any) -> NetworkError:
        return NetworkError(
            f"Unexpected response for {coin_id}: {str(payload)[:200]}", temporary=False
        )


class CoinGeckoDataSource(HttpDataSource):
    """Fetches snapshots straight from the CoinGecko markets endpoint."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        vs_currency: str = "usd",
        timeout: float = 10.0,
    ):
        super().__init__(base_url, timeout)
        self.vs_currency = vs_currency

    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        """Fetch current market data for a coin."""
        items = self._get_json(
            "/coins/markets",
            params={"vs_currency": self.vs_currency, "ids": coin_id},
        )
        if not isinstance(items, list):
            # Errors come back as a JSON object, e.g. {"status": {...}}
            raise self._unexpected(coin_id, items)
        if not items:
            raise NotFound(f"Unknown coin: {coin_id}")
        return snapshot_from_coingecko(coin_id, items[0], self.vs_currency)


class PortalDataSource(HttpDataSource):
    """Fetches snapshots through the portal's cached market proxy."""

    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        """Fetch current market data for a coin."""
        payload = self._get_json("/api/market/crypto-detail.php", params={"id": coin_id})
        if not payload:
            raise NotFound(f"Unknown coin: {coin_id}")
        if not isinstance(payload, dict):
            raise self._unexpected(coin_id, payload)
        return snapshot_from_coingecko(coin_id, payload)


class BinanceDataSource(HttpDataSource):
    """Fetches snapshots from Binance 24h tickers.

    Args:
        symbols: Mapping of coin id to Binance symbol, e.g. {"bitcoin": "BTCUSDT"}
    """

    def __init__(
        self,
        symbols: dict[str, str],
        base_url: str = "https://api.binance.com",
        timeout: float = 10.0,
    ):
        super().__init__(base_url, timeout)
        self.symbols = symbols

    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        """Fetch current market data for a coin."""
        symbol = self.symbols.get(coin_id)
        if not symbol:
            raise NotFound(f"No Binance symbol configured for {coin_id}")
        ticker = self._get_json("/api/v3/ticker/24hr", params={"symbol": symbol})
        if not isinstance(ticker, dict):
            raise self._unexpected(coin_id, ticker)
        return snapshot_from_binance(coin_id, ticker)


class CoinMarketCapDataSource(HttpDataSource):
    """Fetches snapshots from the CoinMarketCap quotes endpoint by slug."""

    # CoinMarketCap answers 400 for unknown slugs
    not_found_statuses = (400, 404)

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://pro-api.coinmarketcap.com",
        timeout: float = 10.0,
    ):
        super().__init__(base_url, timeout)
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-CMC_PRO_API_KEY": self.api_key}

    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        """Fetch current market data for a coin."""
        payload = self._get_json(
            "/v1/cryptocurrency/quotes/latest", params={"slug": coin_id}
        )
        if not isinstance(payload, dict):
            raise self._unexpected(coin_id, payload)
        listings = list((payload.get("data") or {}).values())
        if not listings:
            raise NotFound(f"Unknown coin: {coin_id}")
        return snapshot_from_coinmarketcap(coin_id, listings[0])


def create_data_source(
    provider: str,
    base_url: Optional[str] = None,
    timeout: float = 10.0,
    api_key: Optional[str] = None,
    symbols: Optional[dict[str, str]] = None,
) -> MarketDataSource:
    """
    Create a market data source from configuration.

    Raises:
        ValueError: If provider is unknown or misconfigured
    """
    if provider == "coingecko":
        return CoinGeckoDataSource(
            base_url=base_url or "https://api.coingecko.com/api/v3", timeout=timeout
        )
    elif provider == "portal":
        if not base_url:
            raise ValueError("The portal provider requires a base_url")
        return PortalDataSource(base_url=base_url, timeout=timeout)
    elif provider == "binance":
        return BinanceDataSource(
            symbols=symbols or {},
            base_url=base_url or "https://api.binance.com",
            timeout=timeout,
        )
    elif provider == "coinmarketcap":
        if not api_key:
            raise ValueError("The coinmarketcap provider requires an api_key")
        return CoinMarketCapDataSource(
            api_key=api_key,
            base_url=base_url or "https://pro-api.coinmarketcap.com",
            timeout=timeout,
        )
    else:
        raise ValueError(f"Unknown market data provider: {provider}")
