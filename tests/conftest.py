from collections import Counter
from decimal import Decimal
from typing import Iterable, Optional

import pytest

from cache import MemoryCache
from chain_providers import SUPPORTED_CHAINS, ChainConnector, ChainEntry
from models import (
    RawTokenBalance,
    RawTransfer,
    TokenMetadata,
    TransferCategory,
    TransferDirection,
)
from price_oracle import FALLBACK_PRICES


WALLET = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
USDC_ADDRESS = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


class StaticChainConnector(ChainConnector):
    """Replays canned provider data and counts calls per method."""

    def __init__(
        self,
        native: Decimal | str | int = 0,
        tokens: Optional[list[RawTokenBalance]] = None,
        metadata: Optional[dict[str, TokenMetadata]] = None,
        transfers: Optional[list[RawTransfer]] = None,
        failing_metadata: Iterable[str] = (),
    ):
        self._native = Decimal(str(native))
        self._tokens = tokens or []
        self._meta = {k.lower(): v for k, v in (metadata or {}).items()}
        self._transfers = transfers or []
        self._failing_metadata = {a.lower() for a in failing_metadata}
        self.calls: Counter = Counter()
        self.transfer_queries: list[tuple[TransferDirection, int]] = []

    async def get_native_balance(self, address: str) -> Decimal:
        self.calls["native"] += 1
        return self._native

    async def get_token_balances(self, address: str) -> list[RawTokenBalance]:
        self.calls["tokens"] += 1
        return list(self._tokens)

    async def get_token_metadata(self, contract_address: str) -> TokenMetadata:
        self.calls["metadata"] += 1
        addr = contract_address.lower()
        if addr in self._failing_metadata:
            raise RuntimeError(f"metadata unavailable for {addr}")
        return self._meta.get(addr, TokenMetadata())

    async def get_transfers(
        self,
        address: str,
        direction: TransferDirection,
        categories: Iterable[TransferCategory],
        max_count: int,
    ) -> list[RawTransfer]:
        self.calls["transfers"] += 1
        self.transfer_queries.append((direction, max_count))
        ad = address.lower()
        if direction == TransferDirection.OUTGOING:
            items = [t for t in self._transfers if t.from_address.lower() == ad]
        else:
            items = [t for t in self._transfers if (t.to_address or "").lower() == ad]
        return items[:max_count]


class FailingChainConnector(ChainConnector):
    def __init__(self):
        self.calls: Counter = Counter()

    async def get_native_balance(self, address):
        self.calls["native"] += 1
        raise RuntimeError("provider down")

    async def get_token_balances(self, address):
        self.calls["tokens"] += 1
        raise RuntimeError("provider down")

    async def get_token_metadata(self, contract_address):
        self.calls["metadata"] += 1
        raise RuntimeError("provider down")

    async def get_transfers(self, address, direction, categories, max_count):
        self.calls["transfers"] += 1
        raise RuntimeError("provider down")


class StaticPriceOracle:
    """Same surface as PriceOracle.get_prices, without the network."""

    def __init__(self, prices: Optional[dict[str, float]] = None):
        self._prices = dict(prices if prices is not None else FALLBACK_PRICES)
        self.calls = 0
        self.requested: list[list[str]] = []

    async def get_prices(self, symbols) -> dict[str, float]:
        self.calls += 1
        symbols = list(symbols)
        self.requested.append(symbols)
        out = dict(self._prices)
        for s in symbols:
            out.setdefault(s.upper(), 0.0)
        return out


def make_chain_set(*connectors: ChainConnector) -> list[ChainEntry]:
    """Pair connectors with the supported chains in order; missing ones are empty."""
    padded = list(connectors) + [
        StaticChainConnector() for _ in range(len(SUPPORTED_CHAINS) - len(connectors))
    ]
    return [ChainEntry(descriptor=d, connector=c) for d, c in zip(SUPPORTED_CHAINS, padded)]


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def price_oracle():
    return StaticPriceOracle({"ETH": 2500.0, "MATIC": 0.5, "USDC": 1.0, "USDT": 1.0, "DAI": 1.0})
