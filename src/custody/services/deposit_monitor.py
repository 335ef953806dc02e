"""Deposit monitor: discovery and confirmation passes.

Discovery lists incoming transfers for every wallet of a network and records
new ones keyed by tx_hash. The confirmation pass advances open deposits and
hands confirmed ones to LedgerService.credit_deposit, which credits each
deposit at most once.

Both passes are safe to run repeatedly and concurrently with themselves:
the unique tx_hash index and the lock-then-recheck in credit_deposit are the
serialization points.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError

from custody.adapters.base import IncomingTransfer, NetworkAdapter
from custody.config import Settings
from custody.errors import AdapterError, ConfigurationError, FailedTransactionError
from custody.ledger.database import Database
from custody.ledger.models import DEPOSIT_STATUS_ORDER, Deposit, DepositStatus, Wallet
from custody.ledger.repository import LedgerRepository
from custody.ledger.service import DEPOSIT_TABLE, LedgerService
from custody.networks import NetworkConfig, NetworkId
from custody.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class MonitorSummary:
    """Outcome of one monitor cycle."""

    discovered: dict[str, int] = field(default_factory=dict)
    confirming: int = 0
    confirmed: int = 0
    credited: int = 0
    failed: int = 0
    errors: int = 0

    @property
    def total_discovered(self) -> int:
        return sum(self.discovered.values())


class DepositMonitor:
    """Finds deposits on chain and moves them to `credited`."""

    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        adapters: Mapping[NetworkId, NetworkAdapter],
        settings: Settings,
    ):
        self.database = database
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.configs: dict[NetworkId, NetworkConfig] = {
            network: settings.get_network_config(network) for network in self.adapters
        }

    def accepts(self, config: NetworkConfig, transfer: IncomingTransfer) -> bool:
        """Whether a transfer becomes a deposit.

        The network's primary asset must reach min_deposit; a secondary native
        asset (SOL next to SPL USDT) is kept for any positive amount.
        """
        symbol = transfer.token_symbol.upper()
        if symbol == config.asset_symbol:
            return transfer.amount >= config.min_deposit
        if symbol == config.native_symbol and config.asset_symbol != config.native_symbol:
            return transfer.amount > 0
        return False

    async def discover(self, network: NetworkId, summary: Optional[MonitorSummary] = None) -> int:
        """Record new transfers into the network's wallets.

        Returns:
            Number of deposits created
        """
        network = NetworkId(network)
        summary = summary or MonitorSummary()
        adapter = self.adapters[network]
        config = self.configs[network]

        async with self.database.session() as session:
            wallets = await LedgerRepository(session).list_wallets(network=network.value)

        if not wallets:
            logger.debug(f"No {network.value} wallets to scan")
            return 0

        logger.info(f"Scanning {len(wallets)} {network.value} addresses...")

        created = 0
        for wallet in wallets:
            try:
                transfers = await adapter.list_incoming_transfers(wallet.deposit_address)
            except AdapterError as e:
                summary.errors += 1
                logger.warning(f"Error scanning {network.value} {wallet.deposit_address}: {e}")
                continue

            for transfer in transfers:
                if not self.accepts(config, transfer):
                    logger.debug(
                        f"Ignoring {transfer.amount} {transfer.token_symbol} "
                        f"to {wallet.deposit_address} ({transfer.tx_hash})"
                    )
                    continue
                if await self._record(wallet, transfer, config):
                    created += 1

        summary.discovered[network.value] = summary.discovered.get(network.value, 0) + created
        if created:
            logger.info(f"Discovered {created} new {network.value} deposits")
        return created

    async def _record(self, wallet: Wallet, transfer: IncomingTransfer, config: NetworkConfig) -> bool:
        """Insert a deposit unless its tx_hash is already known."""
        try:
            async with self.database.session() as session:
                repo = LedgerRepository(session)
                if await repo.get_deposit_by_tx_hash(transfer.tx_hash):
                    return False
                deposit = await repo.create_deposit(
                    wallet=wallet,
                    tx_hash=transfer.tx_hash,
                    amount=transfer.amount,
                    token_symbol=transfer.token_symbol.upper(),
                    required_confirmations=config.required_confirmations,
                    from_address=transfer.from_address,
                    confirmations=transfer.confirmations,
                )
        except IntegrityError:
            # Concurrent pass inserted the same tx_hash first
            logger.debug(f"Deposit {transfer.tx_hash} already recorded")
            return False

        logger.info(
            f"New deposit {deposit.id}: {deposit.amount} {deposit.token_symbol} "
            f"to user {wallet.user_id} on {wallet.network} (tx {transfer.tx_hash})"
        )
        return True

    async def update_confirmations(self, summary: Optional[MonitorSummary] = None) -> MonitorSummary:
        """Advance every open deposit and credit the confirmed ones."""
        summary = summary or MonitorSummary()

        async with self.database.session() as session:
            deposits = await LedgerRepository(session).list_open_deposits()

        for deposit in deposits:
            status = DepositStatus(deposit.status)
            if status != DepositStatus.CONFIRMED:
                status = await self._poll(deposit, summary)
                if status is None:
                    continue

            if status == DepositStatus.CONFIRMED:
                await self._credit(deposit, summary)

        return summary

    async def _poll(self, deposit: Deposit, summary: MonitorSummary) -> Optional[DepositStatus]:
        """Fetch confirmations and advance the deposit. None if it could not be polled."""
        adapter = self.adapters.get(NetworkId(deposit.network))
        if adapter is None:
            logger.warning(f"No adapter for {deposit.network}, deposit {deposit.id} skipped")
            summary.errors += 1
            return None

        try:
            confirmations = await adapter.get_confirmations(deposit.tx_hash)
        except FailedTransactionError as e:
            try:
                if await self._mark_failed(deposit.id, e.reason):
                    summary.failed += 1
            except LockTimeoutError as lock_error:
                summary.errors += 1
                logger.warning(f"Deposit {deposit.id} busy, retrying next pass: {lock_error}")
            return None
        except AdapterError as e:
            summary.errors += 1
            logger.warning(f"Could not check confirmations for {deposit.tx_hash}: {e}")
            return None

        try:
            status = await self._advance(deposit.id, confirmations)
        except LockTimeoutError as e:
            summary.errors += 1
            logger.warning(f"Deposit {deposit.id} busy, retrying next pass: {e}")
            return None

        if status == DepositStatus.CONFIRMING:
            summary.confirming += 1
        elif status == DepositStatus.CONFIRMED:
            summary.confirmed += 1
        return status

    async def _advance(self, deposit_id: int, confirmations: int) -> DepositStatus:
        """Apply a confirmation count. Status only moves forward."""
        async with self.database.row_lock(DEPOSIT_TABLE, deposit_id, operation="confirmations"):
            async with self.database.session() as session:
                deposit = await LedgerRepository(session).get_deposit_for_update(deposit_id)
                current = DepositStatus(deposit.status)
                if current.is_terminal or confirmations <= 0:
                    return current

                deposit.confirmations = max(deposit.confirmations, confirmations)
                target = (
                    DepositStatus.CONFIRMED
                    if deposit.confirmations >= deposit.required_confirmations
                    else DepositStatus.CONFIRMING
                )
                if DEPOSIT_STATUS_ORDER[target] > DEPOSIT_STATUS_ORDER[current]:
                    deposit.status = target
                    logger.info(
                        f"Deposit {deposit_id} {current.value} -> {target.value} "
                        f"({deposit.confirmations}/{deposit.required_confirmations})"
                    )
                    return target
                return current

    async def _mark_failed(self, deposit_id: int, reason: str) -> bool:
        async with self.database.row_lock(DEPOSIT_TABLE, deposit_id, operation="deposit_failed"):
            async with self.database.session() as session:
                deposit = await LedgerRepository(session).get_deposit_for_update(deposit_id)
                if DepositStatus(deposit.status).is_terminal:
                    return False
                deposit.status = DepositStatus.FAILED
                deposit.error_message = reason

        logger.warning(f"Deposit {deposit_id} failed: {reason}")
        return True

    async def _credit(self, deposit: Deposit, summary: MonitorSummary) -> None:
        try:
            if await self.ledger.credit_deposit(deposit.id):
                summary.credited += 1
        except (ConfigurationError, LockTimeoutError) as e:
            summary.errors += 1
            logger.error(f"Deposit {deposit.id} not credited, retrying next pass: {e}")

    async def run_once(self) -> MonitorSummary:
        """Discovery on every network, then one confirmation pass."""
        summary = MonitorSummary()
        for network in self.adapters:
            await self.discover(network, summary)
        await self.update_confirmations(summary)

        logger.info(
            f"Deposit cycle: {summary.total_discovered} new, {summary.confirmed} confirmed, "
            f"{summary.credited} credited, {summary.failed} failed, {summary.errors} errors"
        )
        return summary
