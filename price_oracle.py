import asyncio
import os
from typing import Iterable, Optional

import httpx
from loguru import logger

from cache import BaseCache
from errors import ProviderError, RateLimitError


COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
PRICE_TIMEOUT_SEC = 5.0
PRICE_CACHE_TTL_SEC = 300

# Symbol -> CoinGecko id. Wrapped assets share the id of what they wrap.
COINGECKO_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "MATIC": "matic-network",
    "BTC": "bitcoin",
    "USDC": "usd-coin",
    "USDT": "tether",
    "DAI": "dai",
    "ARB": "arbitrum",
    "WETH": "ethereum",
    "WBTC": "wrapped-bitcoin",
}

# Used whenever CoinGecko is unreachable or rate-limited
FALLBACK_PRICES: dict[str, float] = {
    "ETH": 2500.0,
    "MATIC": 0.70,
    "BTC": 65000.0,
    "USDC": 1.0,
    "USDT": 1.0,
    "DAI": 1.0,
    "ARB": 0.80,
    "WETH": 2500.0,
    "WBTC": 65000.0,
}


def price_cache_key(symbols: Iterable[str]) -> str:
    return "prices:" + ",".join(sorted(set(symbols)))


class PriceOracle:
    """
    Spot USD prices for a small fixed set of symbols.

    One CoinGecko request always covers the whole known set; the result is
    cached under the requested symbol set for PRICE_CACHE_TTL_SEC, and
    concurrent misses on that key wait on the same request. On any
    failure the static fallback table is returned instead, so callers never
    see an exception from here.
    """

    def __init__(
        self,
        cache: BaseCache,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        fallback_prices: Optional[dict[str, float]] = None,
    ):
        self.cache = cache
        self._client = client
        self.api_key = api_key if api_key is not None else os.getenv("COINGECKO_API_KEY", "")
        self.fallback_prices = dict(fallback_prices or FALLBACK_PRICES)
        self._inflight: dict[str, asyncio.Future] = {}

    async def get_prices(self, symbols: Iterable[str]) -> dict[str, float]:
        requested = {s.upper() for s in symbols if s}
        cache_key = price_cache_key(requested)

        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Using cached prices")
            return cached

        # Concurrent misses on the same key share one request
        pending = self._inflight.get(cache_key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(cache_key, requested))
            self._inflight[cache_key] = pending
            pending.add_done_callback(lambda _: self._inflight.pop(cache_key, None))
        return dict(await asyncio.shield(pending))

    async def _load(self, cache_key: str, requested: set[str]) -> dict[str, float]:
        try:
            data = await self._fetch()
        except RateLimitError:
            logger.warning("CoinGecko rate limit hit, using fallback prices")
            return self._with_unknowns(dict(self.fallback_prices), requested)
        except Exception as e:
            logger.error(f"Error fetching token prices: {e}")
            return self._with_unknowns(dict(self.fallback_prices), requested)

        prices: dict[str, float] = {}
        for symbol, cg_id in COINGECKO_IDS.items():
            usd = (data.get(cg_id) or {}).get("usd")
            prices[symbol] = float(usd) if usd else self.fallback_prices.get(symbol, 0.0)
        prices = self._with_unknowns(prices, requested)

        logger.info(f"Fetched prices from CoinGecko: {prices}")
        await self.cache.set(cache_key, prices, PRICE_CACHE_TTL_SEC)
        return prices

    async def _fetch(self) -> dict:
        ids = ",".join(sorted(set(COINGECKO_IDS.values())))
        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else {}
        params = {"ids": ids, "vs_currencies": "usd"}

        if self._client is not None:
            resp = await self._client.get(
                COINGECKO_PRICE_URL, params=params, headers=headers, timeout=PRICE_TIMEOUT_SEC
            )
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    COINGECKO_PRICE_URL, params=params, headers=headers, timeout=PRICE_TIMEOUT_SEC
                )

        if resp.status_code == 429:
            raise RateLimitError("CoinGecko returned 429")
        if resp.status_code != 200:
            raise ProviderError(f"CoinGecko returned HTTP {resp.status_code}")

        data = resp.json()
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected CoinGecko payload: {data!r}")
        return data

    @staticmethod
    def _with_unknowns(prices: dict[str, float], requested: set[str]) -> dict[str, float]:
        # Unknown symbols resolve to 0 rather than failing the lookup
        for symbol in requested:
            prices.setdefault(symbol, 0.0)
        return prices
