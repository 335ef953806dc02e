"""Component tests for locks, configuration, wiring and the job runner."""

import asyncio
from decimal import Decimal

import pytest

from custody.config import Settings
from custody.networks import NetworkId, NetworkTier, get_network_defaults
from custody.runner import build_parser, run_job
from custody.utils.locks import LockTimeoutError, RowLockRegistry


class TestRowLocks:
    """Tests for the in-process row lock registry."""

    @pytest.mark.asyncio
    async def test_same_row_same_lock(self):
        """Test the registry hands out one lock per row."""
        registry = RowLockRegistry()
        assert await registry.get_lock("balances", 1) is await registry.get_lock("balances", 1)
        assert await registry.get_lock("balances", 1) is not await registry.get_lock("balances", 2)
        assert await registry.get_lock("balances", 1) is not await registry.get_lock("deposits", 1)

    @pytest.mark.asyncio
    async def test_released_after_context(self):
        """Test the lock is held inside the block and released after it."""
        registry = RowLockRegistry()

        async with registry.row_lock("withdrawals", 5, operation="test"):
            assert registry.is_locked("withdrawals", 5)

        assert not registry.is_locked("withdrawals", 5)

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        registry = RowLockRegistry()

        with pytest.raises(RuntimeError):
            async with registry.row_lock("balances", 1):
                raise RuntimeError("boom")

        assert not registry.is_locked("balances", 1)

    @pytest.mark.asyncio
    async def test_serializes_holders(self):
        """Test concurrent holders of one row never overlap."""
        registry = RowLockRegistry()
        active = 0
        max_active = 0

        async def worker():
            nonlocal active, max_active
            async with registry.row_lock("balances", 1):
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test waiting past the timeout raises LockTimeoutError."""
        registry = RowLockRegistry(default_timeout=0.05)

        async with registry.row_lock("deposits", 9):
            with pytest.raises(LockTimeoutError):
                async with registry.row_lock("deposits", 9):
                    pass

    @pytest.mark.asyncio
    async def test_clear_keeps_held_locks(self):
        registry = RowLockRegistry()
        await registry.get_lock("balances", 1)

        async with registry.row_lock("balances", 2):
            registry.clear()
            assert registry.is_locked("balances", 2)

        assert ("balances", 1) not in registry._locks


class TestSettings:
    """Tests for configuration."""

    def test_tier_selects_network_table(self, settings):
        """Test testnet deployments get testnet endpoints and contracts."""
        testnet = settings.model_copy(update={"network_tier": NetworkTier.TESTNET})

        assert testnet.get_network_config(NetworkId.ETHEREUM).chain_id == 11155111
        assert settings.get_network_config(NetworkId.ETHEREUM).chain_id == 1
        assert testnet.get_network_config(NetworkId.TRON).usdt_contract != (
            settings.get_network_config(NetworkId.TRON).usdt_contract
        )

    def test_rpc_url_and_overrides(self, settings):
        """Test endpoint settings and per-network overrides are applied."""
        custom = settings.model_copy(
            update={
                "tron_api_url": "https://tron.example",
                "network_overrides": {"tron": {"min_deposit": "5", "required_confirmations": 30}},
            }
        )

        config = custom.get_network_config(NetworkId.TRON)
        assert config.rpc_url == "https://tron.example"
        assert config.min_deposit == Decimal("5")
        assert config.required_confirmations == 30
        assert get_network_defaults(NetworkId.TRON, NetworkTier.MAINNET).min_deposit == Decimal("1")

    def test_unknown_override_rejected(self, settings):
        custom = settings.model_copy(update={"network_overrides": {"tron": {"colour": "red"}}})
        with pytest.raises(ValueError):
            custom.get_network_config(NetworkId.TRON)

    def test_evm_networks_share_hot_wallet(self, settings):
        custom = settings.model_copy(update={"hot_wallet_evm": "0x" + "ab" * 20})
        assert custom.get_hot_wallet(NetworkId.BSC) == custom.get_hot_wallet(NetworkId.POLYGON)
        assert custom.get_hot_wallet(NetworkId.TRON) is None

    def test_asset_rates(self, settings):
        assert settings.get_asset_rate("usdt") == Decimal("1")
        assert settings.get_asset_rate("btc") == Decimal("50000")
        assert settings.get_asset_rate("SOL") is None

    def test_safe_dict_redacts_secrets(self):
        """Test credentials never appear in the printable settings."""
        settings = Settings(
            _env_file=None,
            database_url="postgresql+asyncpg://custody:hunter2@db:5432/custody",
            wallet_mnemonic="abandon " * 11 + "about",
            tron_api_key="secret-key",
        )
        text = str(settings.get_safe_dict())

        assert "hunter2" not in text
        assert "secret-key" not in text
        assert "abandon" not in text
        assert settings.get_safe_dict()["wallet_configured"] is True

    def test_sqlite_url_gets_async_driver(self):
        settings = Settings(_env_file=None, database_url="sqlite:///./data/custody.db")
        assert settings.async_database_url == "sqlite+aiosqlite:///./data/custody.db"


class TestRunner:
    """Tests for job dispatch."""

    def test_parser(self):
        args = build_parser().parse_args(["sweep", "--once", "--interval", "15"])
        assert args.job == "sweep"
        assert args.once
        assert args.interval == 15

        with pytest.raises(SystemExit):
            build_parser().parse_args(["mint"])

    @pytest.mark.asyncio
    async def test_deposit_job(self, context, adapters, make_wallet):
        """Test the deposits job runs a full monitor cycle."""
        wallet = await make_wallet(1, NetworkId.TRON, 3)
        adapters[NetworkId.TRON].add_incoming_transfer(
            wallet.deposit_address, Decimal("25"), tx_hash="job_tx", confirmations=20
        )

        assert await run_job(context, "deposits") is True
        assert await context.ledger.get_balance(1) == Decimal("25")

    @pytest.mark.asyncio
    async def test_reconcile_job(self, context):
        """Test reconcile succeeds on a consistent ledger."""
        await context.ledger.credit(1, Decimal("10"), "Deposit")
        assert await run_job(context, "reconcile") is True

    @pytest.mark.asyncio
    async def test_sweep_job_reports_errors(self, context, adapters, make_wallet):
        """Test a sweep with error results fails the cycle."""
        wallet = await make_wallet(1, NetworkId.TRON, 4)
        adapters[NetworkId.TRON].set_balance(wallet.deposit_address, token=Decimal("5"))

        assert await run_job(context, "sweep") is False

    @pytest.mark.asyncio
    async def test_withdrawals_job(self, context):
        assert await run_job(context, "withdrawals") is True

    @pytest.mark.asyncio
    async def test_unknown_job(self, context):
        with pytest.raises(ValueError):
            await run_job(context, "mint")
