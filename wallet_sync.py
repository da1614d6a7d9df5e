import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from aggregator import BalanceAggregator, TransactionAggregator
from models import StoredWallet, TokenBalance, TransferRecord


MAX_ASSETS_PER_WALLET = 50
SYNC_TRANSACTION_LIMIT = 20


class WalletStore(ABC):
    """Persistence collaborator. Writes are upserts keyed by wallet id / tx hash."""

    @abstractmethod
    async def get_wallet(self, wallet_id: str) -> Optional[StoredWallet]:
        ...

    @abstractmethod
    async def list_wallets(self, user_id: str) -> list[StoredWallet]:
        ...

    @abstractmethod
    async def update_wallet_value(
        self, wallet_id: str, total_value_usd: float, last_sync: datetime
    ) -> None:
        ...

    @abstractmethod
    async def replace_assets(self, wallet_id: str, tokens: list[TokenBalance]) -> None:
        ...

    @abstractmethod
    async def upsert_transaction(self, wallet_id: str, record: TransferRecord) -> None:
        """Insert if the hash is new; existing rows are left untouched."""

    @abstractmethod
    async def create_snapshot(
        self, user_id: str, wallet_id: Optional[str], value_usd: float, timestamp: datetime
    ) -> None:
        ...


class WalletSyncService:
    """Pulls fresh chain data for a stored wallet and publishes it to the store."""

    def __init__(
        self,
        store: WalletStore,
        balances: BalanceAggregator,
        transactions: TransactionAggregator,
    ):
        self.store = store
        self.balances = balances
        self.transactions = transactions
        self._background: set[asyncio.Task] = set()

    async def sync(self, wallet_id: str, force: bool = False) -> bool:
        """Returns False when the wallet is missing or vanished mid-sync."""
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            logger.warning(f"Wallet {wallet_id} not found, skipping sync")
            return False

        logger.info(f"Syncing wallet {wallet.address}...")
        if force:
            await self.balances.invalidate(wallet.address)

        balance = await self.balances.fetch_wallet_balance(wallet.address)

        if await self.store.get_wallet(wallet_id) is None:
            logger.warning(f"Wallet {wallet_id} was deleted during sync, skipping update")
            return False

        now = datetime.now(timezone.utc)
        await self.store.update_wallet_value(wallet_id, balance.total_value_usd, now)

        top_assets = sorted(balance.tokens, key=lambda t: t.value_usd, reverse=True)
        top_assets = top_assets[:MAX_ASSETS_PER_WALLET]
        await self.store.replace_assets(wallet_id, top_assets)
        logger.info(
            f"Saved {len(top_assets)} assets (total portfolio value: ${balance.total_value_usd:,.2f})"
        )

        records = await self.transactions.fetch_transaction_history(
            wallet.address, SYNC_TRANSACTION_LIMIT
        )
        for record in records:
            try:
                await self.store.upsert_transaction(wallet_id, record)
            except Exception as e:
                logger.error(f"Error saving transaction {record.hash}: {e}")

        await self.store.create_snapshot(wallet.user_id, wallet_id, balance.total_value_usd, now)

        logger.info(f"Wallet {wallet.address} synced successfully")
        return True

    def sync_in_background(self, wallet_id: str, force: bool = False) -> asyncio.Task:
        """Fire-and-forget sync; the caller does not await the result."""
        task = asyncio.create_task(self.sync(wallet_id, force=force))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    async def sync_all(self, user_id: str) -> int:
        """Schedule a background sync for every wallet the user owns; returns how many."""
        wallets = await self.store.list_wallets(user_id)
        for wallet in wallets:
            self.sync_in_background(wallet.id)
        logger.info(f"Syncing {len(wallets)} wallets for user {user_id}...")
        return len(wallets)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Error syncing wallet: {exc}")
