"""Sweep service - moves deposit address balances into the hot wallets.

Each wallet is handled on its own: a missing hot wallet, a failed balance
query, an address mismatch or a rejected broadcast becomes an error result
and the batch continues.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from custody.adapters.base import ChainBalance, NetworkAdapter
from custody.config import Settings
from custody.errors import AdapterError, ConfigurationError
from custody.hdwallet import AddressDeriver
from custody.ledger.database import Database
from custody.ledger.models import Wallet
from custody.ledger.repository import LedgerRepository
from custody.networks import NetworkId

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of sweeping one wallet."""

    wallet_id: int
    user_id: int
    network: str
    address: str
    amount: Decimal
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.tx_hash is not None


@dataclass
class SweepReport:
    """Results of one sweep_all run."""

    results: list[SweepResult] = field(default_factory=list)

    @property
    def total_swept(self) -> Decimal:
        return sum((r.amount for r in self.results if r.tx_hash), Decimal("0"))

    @property
    def errors(self) -> list[SweepResult]:
        return [r for r in self.results if r.error]


@dataclass
class WalletBalance:
    """On-chain balance of one deposit address."""

    wallet_id: int
    user_id: int
    network: str
    address: str
    native: Decimal = Decimal("0")
    token: Decimal = Decimal("0")
    error: Optional[str] = None


@dataclass
class HotWalletBalance:
    """On-chain balance of a network's hot wallet."""

    network: str
    address: Optional[str]
    balance: Optional[ChainBalance] = None
    error: Optional[str] = None


class SweepService:
    """Consolidates deposit address balances into per-network hot wallets."""

    def __init__(
        self,
        database: Database,
        deriver: AddressDeriver,
        adapters: Mapping[NetworkId, NetworkAdapter],
        settings: Settings,
    ):
        self.database = database
        self.deriver = deriver
        self.adapters = dict(adapters)
        self.settings = settings

    async def _wallets(self) -> list[Wallet]:
        async with self.database.session() as session:
            wallets = await LedgerRepository(session).list_wallets()
        return [w for w in wallets if NetworkId(w.network) in self.adapters]

    async def sweep_all(self) -> SweepReport:
        """Sweep every wallet with a positive sweepable balance."""
        report = SweepReport()
        for wallet in await self._wallets():
            result = await self.sweep_wallet(wallet)
            if result is not None:
                report.results.append(result)

        logger.info(
            f"Sweep finished: {len([r for r in report.results if r.success])} swept, "
            f"{len(report.errors)} errors, total {report.total_swept}"
        )
        return report

    async def sweep_wallet(self, wallet: Wallet) -> Optional[SweepResult]:
        """Sweep one wallet. None when there is nothing to sweep."""
        network = NetworkId(wallet.network)
        adapter = self.adapters[network]

        def failed(amount: Decimal, error: str) -> SweepResult:
            logger.error(f"Sweep of {network.value} {wallet.deposit_address} failed: {error}")
            return SweepResult(
                wallet_id=wallet.id,
                user_id=wallet.user_id,
                network=network.value,
                address=wallet.deposit_address,
                amount=amount,
                error=error,
            )

        try:
            balance = await adapter.get_balance(wallet.deposit_address)
        except AdapterError as e:
            return failed(Decimal("0"), f"Balance query failed: {e}")

        amount = adapter.sweepable_amount(balance)
        if amount <= 0:
            return None

        hot_wallet = self.settings.get_hot_wallet(network)
        if not hot_wallet:
            return failed(amount, f"No hot wallet configured for {network.value}")

        try:
            key = self.deriver.derive_private_key(network, wallet.address_index)
        except ConfigurationError as e:
            return failed(amount, str(e))

        if key.address != wallet.deposit_address:
            return failed(
                amount,
                f"Derived address {key.address} does not match stored address "
                f"(index {wallet.address_index})",
            )

        try:
            tx_hash, sent = await adapter.sweep(key, hot_wallet, amount)
        except AdapterError as e:
            return failed(amount, f"Broadcast failed: {e}")

        await self._stamp_deposits(wallet.id, tx_hash)
        logger.info(
            f"Swept {sent} {adapter.token_symbol} from {wallet.deposit_address} "
            f"to {hot_wallet} on {network.value}: {tx_hash}"
        )
        return SweepResult(
            wallet_id=wallet.id,
            user_id=wallet.user_id,
            network=network.value,
            address=wallet.deposit_address,
            amount=sent,
            tx_hash=tx_hash,
        )

    async def _stamp_deposits(self, wallet_id: int, tx_hash: str) -> None:
        """Attach the sweep tx to the wallet's credited, unswept deposits."""
        async with self.database.session() as session:
            deposits = await LedgerRepository(session).list_unswept_deposits(wallet_id)
            for deposit in deposits:
                deposit.sweep_tx_hash = tx_hash

    async def get_all_deposit_balances(self) -> list[WalletBalance]:
        """On-chain balance of every deposit address."""
        balances = []
        for wallet in await self._wallets():
            entry = WalletBalance(
                wallet_id=wallet.id,
                user_id=wallet.user_id,
                network=wallet.network,
                address=wallet.deposit_address,
            )
            try:
                balance = await self.adapters[NetworkId(wallet.network)].get_balance(
                    wallet.deposit_address
                )
                entry.native, entry.token = balance.native, balance.token
            except AdapterError as e:
                entry.error = str(e)
                logger.warning(f"Balance query failed for {wallet.deposit_address}: {e}")
            balances.append(entry)
        return balances

    async def get_hot_wallet_balances(self) -> list[HotWalletBalance]:
        """On-chain balance of each configured hot wallet."""
        balances = []
        for network, adapter in self.adapters.items():
            address = self.settings.get_hot_wallet(network)
            entry = HotWalletBalance(network=network.value, address=address)
            if not address:
                entry.error = "not configured"
            else:
                try:
                    entry.balance = await adapter.get_balance(address)
                except AdapterError as e:
                    entry.error = str(e)
                    logger.warning(f"Hot wallet balance query failed on {network.value}: {e}")
            balances.append(entry)
        return balances
