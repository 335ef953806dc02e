"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from custody.adapters.base import SimulatedAdapter
from custody.config import Settings
from custody.context import CustodyContext
from custody.hdwallet import AddressDeriver
from custody.ledger import Database, DepositStatus, LedgerRepository, LedgerService
from custody.networks import NetworkId, NetworkTier

# BIP-39 test mnemonic (never holds funds)
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


@pytest.fixture
def settings() -> Settings:
    """Settings independent of the developer's environment and .env."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        wallet_mnemonic=TEST_MNEMONIC,
        network_tier=NetworkTier.MAINNET,
        dry_run=True,
        per_transaction_limit=Decimal("5000"),
        daily_total_limit=Decimal("10000"),
        auto_approve_limit=Decimal("100"),
        asset_rates={"BTC": Decimal("50000")},
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed database so every session gets its own connection."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}", lock_timeout=5.0)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def mnemonic() -> str:
    return TEST_MNEMONIC


@pytest.fixture
def deriver(mnemonic: str) -> AddressDeriver:
    return AddressDeriver(mnemonic, NetworkTier.MAINNET)


@pytest.fixture
def adapters(settings: Settings) -> dict[NetworkId, SimulatedAdapter]:
    """One simulated adapter per network."""
    return {
        network: SimulatedAdapter(
            settings.get_network_config(network),
            settings.network_tier,
            sweep_native=network == NetworkId.BITCOIN,
        )
        for network in NetworkId
    }


@pytest.fixture
def ledger(database: Database, settings: Settings) -> LedgerService:
    return LedgerService(database, asset_rates=settings.asset_rates)


@pytest.fixture
def context(settings, database, adapters, deriver) -> CustodyContext:
    """Fully wired context on the in-memory database and simulated adapters."""
    return CustodyContext(settings, database=database, adapters=adapters, deriver=deriver)


@pytest.fixture
def make_wallet(database: Database, deriver: AddressDeriver):
    """Insert a wallet at an explicit index with its derived address."""

    async def _make(user_id: int, network: NetworkId, index: int, address: Optional[str] = None):
        info = deriver.derive_address(network, index)
        async with database.session() as session:
            return await LedgerRepository(session).create_wallet(
                user_id=user_id,
                network=network.value,
                address_index=index,
                deposit_address=address or info.address,
                derivation_path=info.derivation_path,
            )

    return _make


@pytest.fixture
def make_deposit(database: Database):
    """Insert a deposit for a wallet with a given status."""

    async def _make(
        wallet,
        tx_hash: str,
        amount: Decimal,
        status: DepositStatus = DepositStatus.CONFIRMED,
        token_symbol: str = "USDT",
        required_confirmations: int = 20,
    ):
        async with database.session() as session:
            repo = LedgerRepository(session)
            deposit = await repo.create_deposit(
                wallet=wallet,
                tx_hash=tx_hash,
                amount=amount,
                token_symbol=token_symbol,
                required_confirmations=required_confirmations,
            )
            deposit.status = status
        return deposit

    return _make
