"""Process-wide wiring.

CustodyContext builds the database, the deriver, the adapters and the
services once and hands them out. The caller owns the lifecycle:

    async with CustodyContext(get_settings()) as ctx:
        await ctx.deposit_monitor.run_once()
"""

import logging
from typing import Mapping, Optional

from custody.adapters import NetworkAdapter, create_adapters
from custody.config import Settings
from custody.hdwallet import AddressDeriver
from custody.ledger import Database, LedgerService
from custody.networks import NetworkId
from custody.services import AddressService, DepositMonitor, SweepService, WithdrawalProcessor

logger = logging.getLogger(__name__)


class CustodyContext:
    """Explicit dependency container for one process."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        adapters: Optional[Mapping[NetworkId, NetworkAdapter]] = None,
        deriver: Optional[AddressDeriver] = None,
    ):
        self.settings = settings
        self.database = database or Database(settings.async_database_url, echo=settings.debug)
        self.deriver = deriver or AddressDeriver(settings.wallet_mnemonic, settings.network_tier)
        self.adapters: dict[NetworkId, NetworkAdapter] = dict(
            adapters if adapters is not None else create_adapters(settings)
        )

        self.ledger = LedgerService(self.database, asset_rates=settings.asset_rates)
        self.addresses = AddressService(self.database, self.deriver)
        self.deposit_monitor = DepositMonitor(self.database, self.ledger, self.adapters, settings)
        self.withdrawals = WithdrawalProcessor(
            self.database, self.ledger, self.adapters, settings, deriver=self.deriver
        )
        self.sweeper = SweepService(self.database, self.deriver, self.adapters, settings)

    async def open(self) -> "CustodyContext":
        """Create missing tables."""
        await self.database.create_all()
        logger.info(
            f"Custody context ready ({self.settings.environment}, {self.settings.network_tier.value}, "
            f"{len(self.adapters)} networks)"
        )
        return self

    async def close(self) -> None:
        """Close adapter clients and database connections."""
        for network, adapter in self.adapters.items():
            await adapter.close()
            logger.debug(f"Closed {network.value} adapter")
        await self.database.dispose()

    async def __aenter__(self) -> "CustodyContext":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
