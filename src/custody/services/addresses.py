"""Deposit address issuance.

Every new wallet takes the next value of the global address index and derives
its address from the master mnemonic, so paths never collide across users or
networks. Issuance for one (user, network) is serialized, and the index
counter is only touched under its own lock.
"""

import logging

from custody.hdwallet import AddressDeriver
from custody.ledger.database import Database
from custody.ledger.models import Wallet
from custody.ledger.repository import COUNTER_ROW_ID, LedgerRepository
from custody.networks import NetworkId

logger = logging.getLogger(__name__)

WALLET_TABLE = "wallets"
COUNTER_TABLE = "hd_index_counter"


class AddressService:
    """Issues and lists per-user deposit addresses."""

    def __init__(self, database: Database, deriver: AddressDeriver):
        self.database = database
        self.deriver = deriver

    async def get_deposit_address(self, user_id: int, network: NetworkId) -> Wallet:
        """Current wallet for (user, network), created on first request."""
        network = NetworkId(network)
        async with self.database.row_lock(WALLET_TABLE, (user_id, network.value), operation="issue_address"):
            async with self.database.session() as session:
                wallet = await LedgerRepository(session).get_current_wallet(user_id, network.value)
            if wallet is not None:
                return wallet
            return await self._create_wallet(user_id, network)

    async def regenerate(self, user_id: int, network: NetworkId) -> Wallet:
        """Issue a fresh address. The previous wallet is kept and still scanned."""
        network = NetworkId(network)
        async with self.database.row_lock(WALLET_TABLE, (user_id, network.value), operation="regenerate"):
            wallet = await self._create_wallet(user_id, network)
        logger.info(f"Regenerated {network.value} address for user {user_id}: {wallet.deposit_address}")
        return wallet

    async def list_wallets(self, user_id: int) -> list[Wallet]:
        async with self.database.session() as session:
            return await LedgerRepository(session).list_wallets(user_id=user_id)

    async def _create_wallet(self, user_id: int, network: NetworkId) -> Wallet:
        async with self.database.row_lock(COUNTER_TABLE, COUNTER_ROW_ID, operation="allocate_index"):
            async with self.database.session() as session:
                repo = LedgerRepository(session)
                index = await repo.allocate_address_index()
                # Raises ConfigurationError without a usable mnemonic; the
                # session rolls back and the index is not consumed
                info = self.deriver.derive_address(network, index)
                wallet = await repo.create_wallet(
                    user_id=user_id,
                    network=network.value,
                    address_index=index,
                    deposit_address=info.address,
                    derivation_path=info.derivation_path,
                )

        logger.info(
            f"Issued {network.value} address {wallet.deposit_address} to user {user_id} "
            f"(index {index})"
        )
        return wallet
