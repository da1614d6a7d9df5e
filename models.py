from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


# ── Enums ─────────────────────────────────────────────────────────────────────


class TransferType(str, Enum):
    SEND = "send"
    RECEIVE = "receive"
    TRANSFER = "transfer"
    SWAP = "swap"


class TransferStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


class TransferDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class TransferCategory(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"
    ERC20 = "erc20"
    ERC721 = "erc721"
    ERC1155 = "erc1155"
    SPECIALNFT = "specialnft"


# ── Chain Descriptors ─────────────────────────────────────────────────────────


class ChainDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain_id: int
    name: str
    symbol: str
    network: str


# ── Raw Provider Records ──────────────────────────────────────────────────────


class RawTokenBalance(BaseModel):
    contract_address: str
    raw_balance: int = 0
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None


class TokenMetadata(BaseModel):
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None


class RawTransfer(BaseModel):
    hash: str
    from_address: str
    to_address: Optional[str] = None
    value: Optional[float] = None
    asset: Optional[str] = None
    category: str = TransferCategory.EXTERNAL.value
    block_timestamp: Optional[datetime] = None


# ── Core Data Models ──────────────────────────────────────────────────────────


class TokenBalance(BaseModel):
    token_address: str
    symbol: str
    name: str
    balance: str
    decimals: int = 18
    value_usd: float = 0.0


class WalletBalance(BaseModel):
    address: str
    native_balance: str = "0"
    native_value_usd: float = 0.0
    tokens: list[TokenBalance] = []
    total_value_usd: float = 0.0
    last_updated: datetime


class TransferRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    hash: str
    chain: str
    type: TransferType
    from_token: Optional[str] = None
    to_token: Optional[str] = None
    amount: str = "0"
    value_usd: float = 0.0
    # Bulk transfer queries do not expose gas; None means unknown.
    gas_used: Optional[str] = None
    gas_price: Optional[str] = None
    timestamp: datetime
    status: TransferStatus = TransferStatus.SUCCESS


# ── Persistence Records ───────────────────────────────────────────────────────


class StoredWallet(BaseModel):
    id: str
    user_id: str
    address: str
    total_value_usd: float = 0.0
    last_sync: Optional[datetime] = None


# ── API Models ────────────────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str
    version: str
    cache_backend: str


class BalanceResponse(BaseModel):
    success: bool
    address: str
    balance: Optional[WalletBalance] = None
    processing_time_ms: Optional[int] = None


class TransactionsResponse(BaseModel):
    success: bool
    address: str
    limit: int
    count: int = 0
    transactions: list[TransferRecord] = []
    processing_time_ms: Optional[int] = None


class PricesResponse(BaseModel):
    prices: dict[str, float] = Field(default_factory=dict)
