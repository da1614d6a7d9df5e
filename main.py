import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Literal, Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastmcp import FastMCP
from loguru import logger

load_dotenv()

from aggregator import BalanceAggregator, TransactionAggregator
from cache import BaseCache, create_cache
from chain_providers import SUPPORTED_CHAINS, build_chain_set
from exports import (
    balance_to_csv,
    balance_to_excel,
    transactions_to_csv,
    transactions_to_excel,
)
from models import BalanceResponse, HealthResponse, PricesResponse, TransactionsResponse
from price_oracle import COINGECKO_IDS, PriceOracle
from utils import is_evm_address, short_address

VERSION = "1.0.0"
MAX_TRANSACTION_LIMIT = 200

logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
           "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)


# ── MCP Server (mounted at /mcp) ─────────────────────────────────────────────

mcp = FastMCP(
    name="Multi-chain Portfolio Aggregator",
    instructions=(
        "Read-only portfolio data for EVM wallets on Base, Ethereum, Arbitrum and Polygon. "
        "Returns USD-valued token holdings and de-duplicated transfer history."
    ),
)


@mcp.tool()
async def get_wallet_balance(address: str) -> dict:
    """
    Current holdings of an EVM wallet across all supported chains.

    Args:
        address: Public 0x wallet address.

    Returns:
        Native balance, USD-valued token list (highest value first) and total value.
    """
    _require_evm(address)
    balance = await balances.fetch_wallet_balance(address)
    return balance.model_dump(mode="json")


@mcp.tool()
async def get_transaction_history(address: str, limit: int = 50) -> list[dict]:
    """
    Most recent transfers of an EVM wallet across all supported chains.

    Args:
        address: Public 0x wallet address.
        limit:   Maximum number of transfers to return.
    """
    _require_evm(address)
    limit = max(1, min(limit, MAX_TRANSACTION_LIMIT))
    records = await transactions.fetch_transaction_history(address, limit)
    return [r.model_dump(mode="json") for r in records]


# ── Lifespan ──────────────────────────────────────────────────────────────────

cache: BaseCache | None = None
http_client: httpx.AsyncClient | None = None
prices: PriceOracle | None = None
balances: BalanceAggregator | None = None
transactions: TransactionAggregator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global cache, http_client, prices, balances, transactions
    cache = create_cache(os.getenv("REDIS_URL"))
    http_client = httpx.AsyncClient()
    prices = PriceOracle(cache, client=http_client)
    chains = build_chain_set(client=http_client)
    balances = BalanceAggregator(chains, prices, cache)
    transactions = TransactionAggregator(chains, prices, cache)
    if not os.getenv("ALCHEMY_API_KEY"):
        logger.warning("ALCHEMY_API_KEY is not set, chain data will be empty")
    logger.info("Portfolio aggregator ready")
    async with mcp_app.lifespan(app):
        yield
    logger.info("Shutting down.")
    await http_client.aclose()
    await cache.close()


# ── App ───────────────────────────────────────────────────────────────────────

mcp_app = mcp.http_app()

app = FastAPI(
    title="Multi-chain Portfolio Aggregator",
    description=(
        "Aggregates on-chain balances and transfer history for EVM wallets across "
        "Base, Ethereum, Arbitrum and Polygon, priced in USD and cached with bounded "
        "staleness.\n\nExposes **REST** and **MCP** (`/mcp`) endpoints."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/mcp", mcp_app)


def _require_evm(address: str) -> None:
    if not is_evm_address(address):
        raise ValueError(f"Not an EVM address: {address}")


def _attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ── Info ──────────────────────────────────────────────────────────────────────


@app.get("/", tags=["Info"])
def root(request: Request):
    base = str(request.base_url).rstrip("/")
    return {
        "name": "Multi-chain Portfolio Aggregator",
        "version": VERSION,
        "supported_chains": [c.name for c in SUPPORTED_CHAINS],
        "endpoints": {
            "docs": f"{base}/docs",
            "health": f"{base}/health",
            "balance": f"{base}/wallets/{{address}}/balance",
            "transactions": f"{base}/wallets/{{address}}/transactions",
            "prices": f"{base}/prices",
            "mcp": f"{base}/mcp",
        },
    }


@app.get("/health", response_model=HealthResponse, tags=["Info"])
def health():
    return HealthResponse(status="ok", version=VERSION, cache_backend=cache.backend if cache else "none")


# ── Wallets ───────────────────────────────────────────────────────────────────


@app.get("/wallets/{address}/balance", tags=["Wallet"])
async def wallet_balance(
    address: str = Path(..., description="Public 0x wallet address"),
    format: Literal["json", "csv", "excel"] = Query(
        default="json",
        description="Output format: json (default) | csv | excel",
    ),
):
    """Native and token holdings across all chains, valued in USD."""
    if not is_evm_address(address):
        raise HTTPException(status_code=422, detail=f"Not an EVM address: {address}")

    start = time.time()
    balance = await balances.fetch_wallet_balance(address)
    elapsed = int((time.time() - start) * 1000)
    short = short_address(address)

    if format == "csv":
        return _attachment(balance_to_csv(balance), "text/csv", f"wallet_{short}_balance.csv")
    if format == "excel":
        return _attachment(balance_to_excel(balance), XLSX, f"wallet_{short}_balance.xlsx")

    return BalanceResponse(
        success=True, address=address, balance=balance, processing_time_ms=elapsed,
    )


@app.get("/wallets/{address}/transactions", tags=["Wallet"])
async def wallet_transactions(
    address: str = Path(..., description="Public 0x wallet address"),
    limit: int = Query(default=50, ge=1, le=MAX_TRANSACTION_LIMIT),
    format: Literal["json", "csv", "excel"] = Query(default="json"),
):
    """Most recent transfers across all chains, newest first."""
    if not is_evm_address(address):
        raise HTTPException(status_code=422, detail=f"Not an EVM address: {address}")

    start = time.time()
    records = await transactions.fetch_transaction_history(address, limit)
    elapsed = int((time.time() - start) * 1000)
    short = short_address(address)

    if format == "csv":
        return _attachment(transactions_to_csv(records), "text/csv", f"wallet_{short}_transactions.csv")
    if format == "excel":
        return _attachment(transactions_to_excel(records), XLSX, f"wallet_{short}_transactions.xlsx")

    return TransactionsResponse(
        success=True,
        address=address,
        limit=limit,
        count=len(records),
        transactions=records,
        processing_time_ms=elapsed,
    )


@app.get("/prices", response_model=PricesResponse, tags=["Prices"])
async def get_prices(
    symbols: Optional[str] = Query(
        default=None, description="Comma-separated symbols, e.g. ETH,MATIC. Defaults to all known."
    ),
):
    requested = [s.strip() for s in symbols.split(",") if s.strip()] if symbols else list(COINGECKO_IDS)
    return PricesResponse(prices=await prices.get_prices(requested))


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("APP_ENV", "development") == "development",
    )
