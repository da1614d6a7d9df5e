import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger

from cache import BaseCache
from chain_providers import NATIVE_SYMBOLS, TRANSFER_CATEGORIES, ChainEntry
from models import (
    NATIVE_TOKEN_ADDRESS,
    ChainDescriptor,
    RawTokenBalance,
    RawTransfer,
    TokenBalance,
    TransferCategory,
    TransferDirection,
    TransferRecord,
    TransferStatus,
    TransferType,
    WalletBalance,
)
from price_oracle import PriceOracle
from utils import decimal_to_str, format_units, normalize_address


BALANCE_CACHE_TTL_SEC = 120
TRANSACTIONS_CACHE_TTL_SEC = 120
DEFAULT_TRANSACTION_LIMIT = 50
DEFAULT_TOKEN_DECIMALS = 18
STABLECOIN_SYMBOLS = ["USDC", "USDT", "DAI"]

T = TypeVar("T")


def balance_cache_key(address: str) -> str:
    return f"balance:{address}"


def transactions_cache_key(address: str, limit: int) -> str:
    return f"transactions:{address}:{limit}"


# ── Per-chain fan-out ─────────────────────────────────────────────────────────


@dataclass
class ChainOutcome(Generic[T]):
    """Result of one chain's work: either a value or the error that stopped it."""

    chain: ChainDescriptor
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def _run_chain(
    entry: ChainEntry, work: Callable[[ChainEntry], Awaitable[T]], what: str
) -> ChainOutcome[T]:
    try:
        return ChainOutcome(chain=entry.descriptor, value=await work(entry))
    except Exception as e:
        logger.error(f"Error fetching {what} from {entry.descriptor.name}: {e}")
        return ChainOutcome(chain=entry.descriptor, error=e)


async def fan_out(
    chains: list[ChainEntry], work: Callable[[ChainEntry], Awaitable[T]], what: str
) -> list[ChainOutcome[T]]:
    """Run `work` for every chain concurrently; outcomes keep chain order."""
    return list(await asyncio.gather(*(_run_chain(c, work, what) for c in chains)))


# ── Balance Aggregator ────────────────────────────────────────────────────────


@dataclass
class _ChainHoldings:
    native_amount: Decimal = Decimal(0)
    native_value_usd: float = 0.0
    priced_value_usd: float = 0.0
    tokens: list[TokenBalance] = field(default_factory=list)


class BalanceAggregator:
    """Merges native and token holdings across all chains into one WalletBalance."""

    def __init__(self, chains: list[ChainEntry], prices: PriceOracle, cache: BaseCache):
        self.chains = chains
        self.prices = prices
        self.cache = cache

    async def fetch_wallet_balance(self, address: str) -> WalletBalance:
        cache_key = balance_cache_key(address)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Using cached balance for {address}")
            return WalletBalance.model_validate(cached)

        logger.info(f"Fetching balance for wallet: {address}")
        # One lookup covers every chain's native symbol and the stablecoins
        prices = await self.prices.get_prices(
            [*sorted({c.descriptor.symbol for c in self.chains}), *STABLECOIN_SYMBOLS]
        )
        outcomes = await fan_out(
            self.chains, lambda entry: self._fetch_chain(entry, address, prices), "balance"
        )

        native_amount = Decimal(0)
        native_value_usd = 0.0
        total_value_usd = 0.0
        tokens: list[TokenBalance] = []

        for outcome in outcomes:
            if not outcome.ok:
                continue
            holdings = outcome.value
            native_amount += holdings.native_amount
            native_value_usd += holdings.native_value_usd
            total_value_usd += holdings.native_value_usd + holdings.priced_value_usd
            tokens.extend(holdings.tokens)

        result = WalletBalance(
            address=address,
            native_balance=decimal_to_str(native_amount),
            native_value_usd=native_value_usd,
            tokens=sorted(tokens, key=lambda t: t.value_usd, reverse=True),
            total_value_usd=total_value_usd,
            last_updated=datetime.now(timezone.utc),
        )

        logger.info(f"Total portfolio value for {address}: ${total_value_usd:,.2f}")
        await self.cache.set(cache_key, result.model_dump(mode="json"), BALANCE_CACHE_TTL_SEC)
        return result

    async def invalidate(self, address: str) -> None:
        """Drop cached balance and every cached transaction page for `address`."""
        await self.cache.delete(balance_cache_key(address))
        for key in await self.cache.keys(f"transactions:{address}:*"):
            await self.cache.delete(key)

    async def _fetch_chain(
        self, entry: ChainEntry, address: str, prices: dict[str, float]
    ) -> _ChainHoldings:
        chain = entry.descriptor
        connector = entry.connector

        native = await connector.get_native_balance(address)
        raw_tokens = await connector.get_token_balances(address)
        logger.debug(f"  {chain.name}: {chain.symbol} balance {native}, {len(raw_tokens)} tokens")

        holdings = _ChainHoldings()
        holdings.native_amount = native
        holdings.native_value_usd = float(native) * prices.get(chain.symbol, 0.0)

        if native > 0:
            holdings.tokens.append(TokenBalance(
                token_address=NATIVE_TOKEN_ADDRESS,
                symbol=chain.symbol,
                name=f"{chain.name} Native Token",
                balance=decimal_to_str(native),
                decimals=18,
                value_usd=holdings.native_value_usd,
            ))

        for raw in raw_tokens:
            if raw.raw_balance <= 0:
                continue
            token = await self._resolve_token(entry, raw, prices)
            if token is None:
                continue
            holdings.tokens.append(token)
            # Unpriced tokens are listed but do not count toward the total
            if token.value_usd > 0:
                holdings.priced_value_usd += token.value_usd

        return holdings

    async def _resolve_token(
        self, entry: ChainEntry, raw: RawTokenBalance, prices: dict[str, float]
    ) -> Optional[TokenBalance]:
        symbol, name, decimals = raw.symbol, raw.name, raw.decimals
        if symbol is None or decimals is None:
            try:
                meta = await entry.connector.get_token_metadata(raw.contract_address)
            except Exception as e:
                logger.error(f"  Error fetching token metadata for {raw.contract_address}: {e}")
                return None
            symbol = symbol or meta.symbol
            name = name or meta.name
            decimals = decimals if decimals is not None else meta.decimals

        if decimals is None:
            decimals = DEFAULT_TOKEN_DECIMALS

        amount = format_units(raw.raw_balance, decimals)
        if amount <= 0:
            return None

        value_usd = float(amount) * prices.get(symbol or "", 0.0)
        return TokenBalance(
            token_address=raw.contract_address,
            symbol=symbol or "UNKNOWN",
            name=name or "Unknown Token",
            balance=decimal_to_str(amount),
            decimals=decimals,
            value_usd=value_usd,
        )


# ── Transaction Aggregator ────────────────────────────────────────────────────


def classify_transfer(category: str, is_outgoing: bool) -> TransferType:
    if category == TransferCategory.ERC20.value:
        return TransferType.TRANSFER if is_outgoing else TransferType.RECEIVE
    return TransferType.SEND if is_outgoing else TransferType.RECEIVE


def dedupe_by_hash(records: list[TransferRecord]) -> list[TransferRecord]:
    """First occurrence of each hash wins."""
    seen: set[str] = set()
    out: list[TransferRecord] = []
    for r in records:
        if r.hash in seen:
            continue
        seen.add(r.hash)
        out.append(r)
    return out


class TransactionAggregator:
    """Normalized, de-duplicated transfer history across all chains."""

    def __init__(self, chains: list[ChainEntry], prices: PriceOracle, cache: BaseCache):
        self.chains = chains
        self.prices = prices
        self.cache = cache

    async def fetch_transaction_history(
        self, address: str, limit: int = DEFAULT_TRANSACTION_LIMIT
    ) -> list[TransferRecord]:
        if limit < 1:
            return []

        cache_key = transactions_cache_key(address, limit)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Using cached transactions for {address}")
            return [TransferRecord.model_validate(r) for r in cached]

        logger.info(f"Fetching transaction history for wallet: {address}")
        prices = await self.prices.get_prices(NATIVE_SYMBOLS)
        outcomes = await fan_out(
            self.chains,
            lambda entry: self._fetch_chain(entry, address, limit, prices),
            "transactions",
        )

        merged: list[TransferRecord] = []
        for outcome in outcomes:
            if outcome.ok:
                merged.extend(outcome.value)

        unique = dedupe_by_hash(merged)
        result = sorted(unique, key=lambda r: r.timestamp, reverse=True)[:limit]

        logger.info(f"Total unique transactions found: {len(result)}")
        await self.cache.set(
            cache_key, [r.model_dump(mode="json") for r in result], TRANSACTIONS_CACHE_TTL_SEC
        )
        return result

    async def _fetch_chain(
        self, entry: ChainEntry, address: str, limit: int, prices: dict[str, float]
    ) -> list[TransferRecord]:
        chain = entry.descriptor
        per_direction = max(limit // 2, 1)

        outgoing = await entry.connector.get_transfers(
            address, TransferDirection.OUTGOING, TRANSFER_CATEGORIES, per_direction
        )
        incoming = await entry.connector.get_transfers(
            address, TransferDirection.INCOMING, TRANSFER_CATEGORIES, per_direction
        )
        transfers = [*outgoing, *incoming]
        logger.debug(f"  Found {len(transfers)} transfers on {chain.name}")

        records: list[TransferRecord] = []
        for tx in transfers:
            record = self._to_record(chain, tx, address, prices)
            if record is not None:
                records.append(record)
        logger.debug(f"  Added {len(records)} valid transactions from {chain.name}")
        return records

    @staticmethod
    def _to_record(
        chain: ChainDescriptor, tx: RawTransfer, address: str, prices: dict[str, float]
    ) -> Optional[TransferRecord]:
        # No timestamp, no ordering key
        if tx.block_timestamp is None:
            return None

        is_outgoing = normalize_address(tx.from_address) == normalize_address(address)
        asset = tx.asset or chain.symbol
        amount = tx.value or 0.0
        price = prices.get(asset, 0.0) if asset in NATIVE_SYMBOLS else 0.0

        return TransferRecord(
            hash=tx.hash,
            chain=chain.name,
            type=classify_transfer(tx.category, is_outgoing),
            from_token=asset,
            to_token=asset,
            amount=str(amount),
            value_usd=amount * price,
            timestamp=tx.block_timestamp,
            status=TransferStatus.SUCCESS,
        )
