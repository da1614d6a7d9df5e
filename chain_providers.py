import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

import httpx
from loguru import logger

from errors import ProviderError, RateLimitError
from models import (
    ChainDescriptor,
    RawTokenBalance,
    RawTransfer,
    TokenMetadata,
    TransferCategory,
    TransferDirection,
)
from utils import hex_to_int, wei_to_ether


# ── Supported Chains ──────────────────────────────────────────────────────────
# Closed set, queried in this order.

SUPPORTED_CHAINS: list[ChainDescriptor] = [
    ChainDescriptor(chain_id=8453, name="Base", symbol="ETH", network="base-mainnet"),
    ChainDescriptor(chain_id=1, name="Ethereum", symbol="ETH", network="eth-mainnet"),
    ChainDescriptor(chain_id=42161, name="Arbitrum", symbol="ETH", network="arb-mainnet"),
    ChainDescriptor(chain_id=137, name="Polygon", symbol="MATIC", network="polygon-mainnet"),
]

NATIVE_SYMBOLS = sorted({c.symbol for c in SUPPORTED_CHAINS})

TRANSFER_CATEGORIES = [
    TransferCategory.EXTERNAL,
    TransferCategory.ERC20,
    TransferCategory.ERC721,
    TransferCategory.ERC1155,
]

ALCHEMY_TIMEOUT_SEC = 15.0


# ── Base Connector ────────────────────────────────────────────────────────────


class ChainConnector(ABC):
    """Read-only adapter to one chain's balance / transfer data provider."""

    @abstractmethod
    async def get_native_balance(self, address: str) -> Decimal:
        ...

    @abstractmethod
    async def get_token_balances(self, address: str) -> list[RawTokenBalance]:
        ...

    @abstractmethod
    async def get_token_metadata(self, contract_address: str) -> TokenMetadata:
        ...

    @abstractmethod
    async def get_transfers(
        self,
        address: str,
        direction: TransferDirection,
        categories: Iterable[TransferCategory],
        max_count: int,
    ) -> list[RawTransfer]:
        ...


@dataclass(frozen=True)
class ChainEntry:
    descriptor: ChainDescriptor
    connector: ChainConnector


# ── Alchemy Connector ─────────────────────────────────────────────────────────


class AlchemyChainConnector(ChainConnector):
    def __init__(
        self,
        chain: ChainDescriptor,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = ALCHEMY_TIMEOUT_SEC,
    ):
        self.chain = chain
        self.api_key = api_key if api_key is not None else os.getenv("ALCHEMY_API_KEY", "")
        self._client = client
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"https://{self.chain.network}.g.alchemy.com/v2/{self.api_key}"

    # ── JSON-RPC helpers ───────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list) -> Any:
        if not self.api_key:
            raise ProviderError("ALCHEMY_API_KEY is not set.")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.chain.name} {method} request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(f"{self.chain.name} {method} rate limited")
        if resp.status_code != 200:
            raise ProviderError(f"{self.chain.name} {method} returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.chain.name} {method} returned invalid JSON") from e

        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ProviderError(f"{self.chain.name} {method} error: {message}")
        return data.get("result")

    # ── Balances ───────────────────────────────────────────────────────────

    async def get_native_balance(self, address: str) -> Decimal:
        result = await self._rpc("eth_getBalance", [address, "latest"])
        return wei_to_ether(hex_to_int(result))

    async def get_token_balances(self, address: str) -> list[RawTokenBalance]:
        result = await self._rpc("alchemy_getTokenBalances", [address, "erc20"]) or {}
        balances: list[RawTokenBalance] = []
        for tb in result.get("tokenBalances", []):
            if tb.get("error"):
                logger.debug(f"  {self.chain.name}: skipping {tb.get('contractAddress')}: {tb['error']}")
                continue
            balances.append(RawTokenBalance(
                contract_address=tb["contractAddress"],
                raw_balance=hex_to_int(tb.get("tokenBalance")),
            ))
        return balances

    async def get_token_metadata(self, contract_address: str) -> TokenMetadata:
        result = await self._rpc("alchemy_getTokenMetadata", [contract_address]) or {}
        return TokenMetadata(
            symbol=result.get("symbol"),
            name=result.get("name"),
            decimals=result.get("decimals"),
        )

    # ── Transfers ──────────────────────────────────────────────────────────

    async def get_transfers(
        self,
        address: str,
        direction: TransferDirection,
        categories: Iterable[TransferCategory],
        max_count: int,
    ) -> list[RawTransfer]:
        query: dict[str, Any] = {
            "fromBlock": "0x0",
            "toBlock": "latest",
            "category": [TransferCategory(c).value for c in categories],
            "maxCount": hex(max_count),
            "order": "desc",
            "withMetadata": True,
            "excludeZeroValue": True,
        }
        if direction == TransferDirection.OUTGOING:
            query["fromAddress"] = address
        else:
            query["toAddress"] = address

        result = await self._rpc("alchemy_getAssetTransfers", [query]) or {}
        transfers: list[RawTransfer] = []
        for tx in result.get("transfers", []):
            metadata = tx.get("metadata") or {}
            transfers.append(RawTransfer(
                hash=tx.get("hash", ""),
                from_address=tx.get("from") or "",
                to_address=tx.get("to"),
                value=tx.get("value"),
                asset=tx.get("asset"),
                category=tx.get("category") or TransferCategory.EXTERNAL.value,
                block_timestamp=metadata.get("blockTimestamp") or None,
            ))
        return transfers


# ── Factory ───────────────────────────────────────────────────────────────────


def build_chain_set(
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    chains: Optional[list[ChainDescriptor]] = None,
) -> list[ChainEntry]:
    return [
        ChainEntry(descriptor=c, connector=AlchemyChainConnector(c, api_key=api_key, client=client))
        for c in (chains or SUPPORTED_CHAINS)
    ]
