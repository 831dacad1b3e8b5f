"""
Contest Engine Infrastructure: Price Feed

- PriceSnapshot: asset_id → price plus per-asset last-updated time
- StorePriceFeed: snapshots from the persisted asset catalog
- HttpPriceSource: CryptoCompare (DEFI) and Alpha Vantage (TRADFI) quotes
- PriceRefresher: writes fresh quotes back into the catalog
"""

import os
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

import requests

from core.exceptions import TransientExternalFailure
from core.models import GameType

logger = logging.getLogger(__name__)


CRYPTOCOMPARE_URL = "https://min-api.cryptocompare.com/data/pricemultifull"
ALPHAVANTAGE_URL = "https://www.alphavantage.co/query"


@dataclass
class PriceSnapshot:
    prices: Dict[str, float] = field(default_factory=dict)
    last_updated: Dict[str, Optional[datetime]] = field(default_factory=dict)
    taken_at: Optional[datetime] = None

    def price(self, asset_id: str) -> Optional[float]:
        return self.prices.get(asset_id)

    def stale_assets(self, now: datetime, max_age: timedelta, asset_ids=None) -> List[str]:
        """Assets whose price is missing a timestamp or older than `max_age`."""
        ids = list(asset_ids) if asset_ids is not None else list(self.prices.keys())
        stale = []
        for asset_id in ids:
            updated = self.last_updated.get(asset_id)
            if updated is None or now - updated > max_age:
                stale.append(asset_id)
        return stale


class StorePriceFeed:
    """Snapshot of current catalog prices, optionally filtered by game type."""

    def __init__(self, store):
        self.store = store

    def snapshot(self, game_type: Optional[str] = None, now: Optional[datetime] = None) -> PriceSnapshot:
        # Inactive assets keep their last price so locked portfolios can still be valued
        assets = self.store.list_assets(game_type=game_type, active_only=False)
        snap = PriceSnapshot(taken_at=now or datetime.now(timezone.utc))
        for asset in assets:
            if asset.current_price is not None:
                snap.prices[asset.asset_id] = asset.current_price
            snap.last_updated[asset.asset_id] = asset.last_updated
        return snap


class HttpPriceSource:
    """
    Quote fetcher for both asset classes.

    Retries 429, 5xx and network errors with exponential backoff and jitter.
    Does not retry other 4xx responses. Calls to the same host are spaced by
    `min_interval_seconds` to respect free-tier limits.
    """

    def __init__(
        self,
        cryptocompare_api_key: str = "",
        alphavantage_api_key: str = "",
        cryptocompare_url: str = CRYPTOCOMPARE_URL,
        alphavantage_url: str = ALPHAVANTAGE_URL,
        timeout: float = 15.0,
        max_retries: int = 3,
        min_interval_seconds: Optional[Dict[str, float]] = None,
    ):
        self.cryptocompare_api_key = cryptocompare_api_key
        self.alphavantage_api_key = alphavantage_api_key
        self.cryptocompare_url = cryptocompare_url
        self.alphavantage_url = alphavantage_url
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.min_interval_seconds = min_interval_seconds or {"cryptocompare": 0.0, "alphavantage": 12.0}
        self._last_call: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _pace(self, channel: str) -> None:
        interval = float(self.min_interval_seconds.get(channel, 0.0))
        if interval <= 0:
            return
        with self._lock:
            last = self._last_call.get(channel)
            now = time.monotonic()
            if last is not None and now - last < interval:
                time.sleep(interval - (now - last))
            self._last_call[channel] = time.monotonic()

    def _get(self, channel: str, url: str, params: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> dict:
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            self._pace(channel)
            try:
                response = requests.get(url, params=params, headers=headers or {}, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                # Don't retry on client errors (except 429)
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"{channel} client error: {status_code}")
                    raise
                logger.warning(f"{channel} returned {status_code}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {channel}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {channel} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {channel}")
        raise TransientExternalFailure(channel, last_exception)

    def fetch_defi(self, symbols: List[str]) -> Dict[str, float]:
        """USD prices keyed by symbol; symbols the API omits are left out."""
        if not symbols:
            return {}
        headers = {"Apikey": self.cryptocompare_api_key} if self.cryptocompare_api_key else {}
        data = self._get(
            "cryptocompare",
            self.cryptocompare_url,
            {"fsyms": ",".join(symbols), "tsyms": "USD"},
            headers=headers,
        )
        raw = data.get("RAW") or {}
        prices = {}
        for symbol in symbols:
            quote = (raw.get(symbol) or {}).get("USD") or {}
            price = quote.get("PRICE")
            if price is not None and float(price) > 0:
                prices[symbol] = float(price)
            else:
                logger.warning(f"No DEFI quote for {symbol}")
        return prices

    def fetch_tradfi(self, symbols: List[str]) -> Dict[str, float]:
        """One GLOBAL_QUOTE call per symbol; a failing symbol does not stop the rest."""
        prices = {}
        for symbol in symbols:
            try:
                data = self._get(
                    "alphavantage",
                    self.alphavantage_url,
                    {"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": self.alphavantage_api_key},
                )
            except Exception as e:
                logger.error(f"TRADFI quote failed for {symbol}: {e}")
                continue
            quote = data.get("Global Quote") or {}
            price = quote.get("05. price")
            if price is not None and float(price) > 0:
                prices[symbol] = float(price)
            else:
                logger.warning(f"No TRADFI quote for {symbol}")
        return prices


class PriceRefresher:
    """Pulls quotes for every active catalog asset and stores them."""

    def __init__(self, store, source: HttpPriceSource):
        self.store = store
        self.source = source

    def refresh_all(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        updated = 0
        for game_type, fetch in (
            (GameType.DEFI.value, self.source.fetch_defi),
            (GameType.TRADFI.value, self.source.fetch_tradfi),
        ):
            assets = self.store.list_assets(game_type=game_type, active_only=True)
            if not assets:
                continue
            by_symbol = {a.symbol: a.asset_id for a in assets}
            try:
                quotes = fetch(list(by_symbol.keys()))
            except Exception as e:
                logger.error(f"Price refresh failed for {game_type}: {e}")
                continue
            prices = {by_symbol[s]: p for s, p in quotes.items() if s in by_symbol}
            updated += self.store.update_asset_prices(prices, now)

        logger.info(f"Refreshed {updated} asset prices")
        return updated


def create_price_source_from_config(cfg: Optional[Dict[str, Any]]) -> Optional[HttpPriceSource]:
    cfg = cfg or {}
    if not cfg.get("refresh_enabled", True):
        return None
    return HttpPriceSource(
        cryptocompare_api_key=os.getenv(cfg.get("cryptocompare_key_env", "CRYPTOCOMPARE_API_KEY"), ""),
        alphavantage_api_key=os.getenv(cfg.get("alphavantage_key_env", "ALPHAVANTAGE_API_KEY"), ""),
        cryptocompare_url=cfg.get("cryptocompare_url", CRYPTOCOMPARE_URL),
        alphavantage_url=cfg.get("alphavantage_url", ALPHAVANTAGE_URL),
        timeout=float(cfg.get("timeout_seconds", 15.0)),
        max_retries=int(cfg.get("max_retries", 3)),
        min_interval_seconds={
            "cryptocompare": float(cfg.get("cryptocompare_min_interval_seconds", 0.0)),
            "alphavantage": float(cfg.get("alphavantage_min_interval_seconds", 12.0)),
        },
    )
