"""Tests for BalanceAggregator: valuation, ordering, caching and chain isolation."""
import asyncio
from decimal import Decimal

import httpx
import pytest

from aggregator import BalanceAggregator, balance_cache_key
from cache import MemoryCache
from models import NATIVE_TOKEN_ADDRESS, RawTokenBalance, TokenMetadata, WalletBalance
from price_oracle import FALLBACK_PRICES, PriceOracle

from conftest import (
    USDC_ADDRESS,
    WALLET,
    FailingChainConnector,
    StaticChainConnector,
    StaticPriceOracle,
    make_chain_set,
)


def _usdc(raw: int = 100 * 10**6) -> RawTokenBalance:
    return RawTokenBalance(contract_address=USDC_ADDRESS, raw_balance=raw)


USDC_META = {USDC_ADDRESS: TokenMetadata(symbol="USDC", name="USD Coin", decimals=6)}


class TestValuation:

    @pytest.mark.asyncio
    async def test_native_and_stablecoin_on_one_chain(self, memory_cache, price_oracle):
        chain_a = StaticChainConnector(native="2.0", tokens=[_usdc()], metadata=USDC_META)
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.total_value_usd == 5100.0
        assert [(t.symbol, t.value_usd) for t in result.tokens] == [("ETH", 5000.0), ("USDC", 100.0)]
        assert result.tokens[0].token_address == NATIVE_TOKEN_ADDRESS
        assert result.tokens[0].name == "Base Native Token"
        assert result.tokens[1].balance == "100"
        assert result.native_value_usd == 5000.0
        assert result.native_balance == "2"

    @pytest.mark.asyncio
    async def test_empty_wallet_is_not_an_error(self, memory_cache, price_oracle):
        agg = BalanceAggregator(make_chain_set(), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.total_value_usd == 0.0
        assert result.tokens == []
        assert result.native_balance == "0"

    @pytest.mark.asyncio
    async def test_unpriced_token_is_listed_but_not_counted(self, memory_cache, price_oracle):
        meme = "0x000000000000000000000000000000000000beef"
        chain_a = StaticChainConnector(
            tokens=[RawTokenBalance(contract_address=meme, raw_balance=5 * 10**18)],
            metadata={meme: TokenMetadata(symbol="MEME", name="Meme", decimals=18)},
        )
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.total_value_usd == 0.0
        assert len(result.tokens) == 1
        assert result.tokens[0].symbol == "MEME"
        assert result.tokens[0].value_usd == 0.0
        assert result.tokens[0].balance == "5"

    @pytest.mark.asyncio
    async def test_zero_raw_balances_are_skipped(self, memory_cache, price_oracle):
        chain_a = StaticChainConnector(tokens=[_usdc(raw=0)], metadata=USDC_META)
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.tokens == []
        assert chain_a.calls["metadata"] == 0

    @pytest.mark.asyncio
    async def test_metadata_failure_skips_only_that_token(self, memory_cache, price_oracle):
        broken = "0x000000000000000000000000000000000000dead"
        chain_a = StaticChainConnector(
            native="1",
            tokens=[RawTokenBalance(contract_address=broken, raw_balance=10**18), _usdc()],
            metadata=USDC_META,
            failing_metadata=[broken],
        )
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert [t.symbol for t in result.tokens] == ["ETH", "USDC"]
        assert result.total_value_usd == 2600.0

    @pytest.mark.asyncio
    async def test_entries_with_metadata_skip_the_lookup(self, memory_cache, price_oracle):
        token = RawTokenBalance(
            contract_address=USDC_ADDRESS, raw_balance=3 * 10**6,
            symbol="USDC", name="USD Coin", decimals=6,
        )
        chain_a = StaticChainConnector(tokens=[token])
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert chain_a.calls["metadata"] == 0
        assert result.total_value_usd == 3.0

    @pytest.mark.asyncio
    async def test_polygon_native_uses_matic_price(self, memory_cache, price_oracle):
        polygon = StaticChainConnector(native="10")
        chains = make_chain_set(StaticChainConnector(), StaticChainConnector(), StaticChainConnector(), polygon)
        agg = BalanceAggregator(chains, price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.tokens[0].symbol == "MATIC"
        assert result.tokens[0].name == "Polygon Native Token"
        assert result.total_value_usd == 5.0


class TestOrdering:

    @pytest.mark.asyncio
    async def test_tokens_sorted_by_value_across_chains(self, memory_cache, price_oracle):
        base = StaticChainConnector(native="0.25", tokens=[_usdc(raw=500 * 10**6)], metadata=USDC_META)
        eth = StaticChainConnector(native="1")
        arb = StaticChainConnector(native="0.5")
        agg = BalanceAggregator(make_chain_set(base, eth, arb), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        values = [t.value_usd for t in result.tokens]
        assert values == sorted(values, reverse=True)
        assert values == [2500.0, 1250.0, 625.0, 500.0]
        assert result.native_balance == "1.75"


class TestCaching:

    @pytest.mark.asyncio
    async def test_second_call_is_a_cache_hit(self, memory_cache, price_oracle):
        chain_a = StaticChainConnector(native="2.0", tokens=[_usdc()], metadata=USDC_META)
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)

        first = await agg.fetch_wallet_balance(WALLET)
        second = await agg.fetch_wallet_balance(WALLET)

        assert first == second
        assert chain_a.calls["native"] == 1
        assert chain_a.calls["tokens"] == 1
        assert chain_a.calls["metadata"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetches(self, price_oracle):
        now = [0.0]
        cache = MemoryCache(clock=lambda: now[0])
        chain_a = StaticChainConnector(native="1")
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, cache)

        await agg.fetch_wallet_balance(WALLET)
        now[0] = 121.0
        await agg.fetch_wallet_balance(WALLET)

        assert chain_a.calls["native"] == 2

    @pytest.mark.asyncio
    async def test_result_is_cached_under_address_key(self, memory_cache, price_oracle):
        agg = BalanceAggregator(make_chain_set(StaticChainConnector(native="1")), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        cached = await memory_cache.get(balance_cache_key(WALLET))
        assert WalletBalance.model_validate(cached) == result

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, memory_cache, price_oracle):
        chain_a = StaticChainConnector(native="1")
        agg = BalanceAggregator(make_chain_set(chain_a), price_oracle, memory_cache)
        await memory_cache.set(f"transactions:{WALLET}:20", [], 120)

        await agg.fetch_wallet_balance(WALLET)
        await agg.invalidate(WALLET)
        await agg.fetch_wallet_balance(WALLET)

        assert chain_a.calls["native"] == 2
        assert await memory_cache.get(f"transactions:{WALLET}:20") is None


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_one_failing_chain_does_not_break_the_others(self, memory_cache, price_oracle):
        failing = FailingChainConnector()
        eth = StaticChainConnector(native="1")
        arb = StaticChainConnector(tokens=[_usdc()], metadata=USDC_META)
        polygon = StaticChainConnector(native="4")
        agg = BalanceAggregator(make_chain_set(failing, eth, arb, polygon), price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert failing.calls["native"] == 1
        assert result.total_value_usd == 2500.0 + 100.0 + 2.0
        assert [t.symbol for t in result.tokens] == ["ETH", "USDC", "MATIC"]

    @pytest.mark.asyncio
    async def test_all_chains_failing_still_returns_a_balance(self, memory_cache, price_oracle):
        chains = make_chain_set(*(FailingChainConnector() for _ in range(4)))
        agg = BalanceAggregator(chains, price_oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert result.total_value_usd == 0.0
        assert result.tokens == []

    @pytest.mark.asyncio
    async def test_one_price_lookup_covers_every_chain(self, memory_cache):
        oracle = StaticPriceOracle({"ETH": 3000.0})
        agg = BalanceAggregator(make_chain_set(StaticChainConnector(native=Decimal("1"))), oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert oracle.calls == 1
        assert oracle.requested == [["ETH", "MATIC", "USDC", "USDT", "DAI"]]
        assert result.total_value_usd == 3000.0


class TestPriceRequests:

    @pytest.mark.asyncio
    async def test_cold_cache_fetch_makes_one_coingecko_request(self, memory_cache):
        requests = []

        async def slow_coingecko(request):
            requests.append(request)
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"ethereum": {"usd": 2000.0}})

        oracle = PriceOracle(
            memory_cache, client=httpx.AsyncClient(transport=httpx.MockTransport(slow_coingecko))
        )
        chains = make_chain_set(*(StaticChainConnector(native="1") for _ in range(4)))
        agg = BalanceAggregator(chains, oracle, memory_cache)

        result = await agg.fetch_wallet_balance(WALLET)

        assert len(requests) == 1
        assert result.total_value_usd == 3 * 2000.0 + FALLBACK_PRICES["MATIC"]
