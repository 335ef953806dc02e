"""Application configuration using pydantic-settings.

Network defaults live in custody.networks; everything here can be set from the
environment or a .env file.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from custody.networks import NetworkConfig, NetworkId, NetworkTier, get_network_defaults


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/custody.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level for the runner")
    dry_run: bool = Field(
        default=False, description="Use simulated adapters (no chain access, no real transfers)"
    )

    # ======================
    # HD Wallet
    # ======================
    wallet_mnemonic: Optional[str] = Field(
        default=None, description="BIP-39 master mnemonic for all deposit addresses"
    )
    network_tier: NetworkTier = Field(
        default=NetworkTier.MAINNET, description="mainnet or testnet, for every network at once"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    tron_api_url: Optional[str] = Field(default=None, description="TronGrid base URL")
    tron_api_key: str = Field(default="", description="TronGrid API key")
    eth_rpc_url: Optional[str] = Field(default=None, description="Ethereum RPC URL")
    bsc_rpc_url: Optional[str] = Field(default=None, description="BSC RPC URL")
    polygon_rpc_url: Optional[str] = Field(default=None, description="Polygon RPC URL")
    solana_rpc_url: Optional[str] = Field(default=None, description="Solana RPC URL")
    bitcoin_api_url: Optional[str] = Field(default=None, description="Esplora API base URL")
    bitcoin_fee_api_url: str = Field(
        default="https://mempool.space/api", description="mempool.space API for fee rates"
    )
    bitcoin_fallback_fee_rate: int = Field(
        default=10, description="sat/vB used when the fee API is unavailable"
    )
    rpc_timeout: float = Field(default=30.0, description="Timeout in seconds for every RPC call")

    # ======================
    # Hot Wallets
    # ======================
    hot_wallet_tron: Optional[str] = Field(default=None, description="Tron hot wallet")
    hot_wallet_evm: Optional[str] = Field(
        default=None, description="Hot wallet shared by Ethereum, BSC and Polygon"
    )
    hot_wallet_solana: Optional[str] = Field(default=None, description="Solana hot wallet")
    hot_wallet_bitcoin: Optional[str] = Field(default=None, description="Bitcoin hot wallet")
    hot_wallet_index: Optional[int] = Field(
        default=None,
        description="Derivation index of the seed-derived hot wallet used for payouts",
    )

    # ======================
    # Withdrawal Limits (USDT)
    # ======================
    per_transaction_limit: Decimal = Field(
        default=Decimal("5000"), description="Maximum single withdrawal"
    )
    daily_total_limit: Decimal = Field(
        default=Decimal("10000"), description="Maximum withdrawals per user per 24h"
    )
    auto_approve_limit: Decimal = Field(
        default=Decimal("100"), description="Withdrawals up to this amount skip review"
    )

    # ======================
    # Deposit Scanning
    # ======================
    evm_lookback_blocks: int = Field(default=5000, description="EVM log window in blocks")
    tron_lookback_hours: int = Field(default=24, description="TRC-20 history window in hours")
    solana_signature_limit: int = Field(
        default=25, description="Signatures replayed per Solana address"
    )
    scan_interval: int = Field(default=60, description="Seconds between runner cycles")

    # ======================
    # Per-network overrides and rates
    # ======================
    network_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description='JSON, e.g. {"tron": {"min_deposit": "5", "required_confirmations": 30}}',
    )
    asset_rates: dict[str, Decimal] = Field(
        default_factory=dict,
        description='USDT value of native deposit assets, e.g. {"BTC": "65000", "SOL": "150"}',
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_wallet(self) -> bool:
        """Check if a mnemonic is configured (not whether it is valid)."""
        return bool(self.wallet_mnemonic and len(self.wallet_mnemonic.split()) >= 12)

    @property
    def is_testnet(self) -> bool:
        return self.network_tier == NetworkTier.TESTNET

    @property
    def async_database_url(self) -> str:
        """Database URL with the async sqlite driver."""
        db_url = self.database_url
        if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
            db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
        return db_url

    def get_rpc_url(self, network: NetworkId) -> Optional[str]:
        """Get the configured RPC/API URL for a network, if any."""
        rpc_map = {
            NetworkId.TRON: self.tron_api_url,
            NetworkId.ETHEREUM: self.eth_rpc_url,
            NetworkId.BSC: self.bsc_rpc_url,
            NetworkId.POLYGON: self.polygon_rpc_url,
            NetworkId.SOLANA: self.solana_rpc_url,
            NetworkId.BITCOIN: self.bitcoin_api_url,
        }
        return rpc_map[NetworkId(network)]

    def get_network_config(self, network: NetworkId) -> NetworkConfig:
        """Tier defaults merged with RPC settings and NETWORK_OVERRIDES."""
        network = NetworkId(network)
        config = get_network_defaults(network, self.network_tier)

        overrides: dict[str, Any] = {}
        rpc_url = self.get_rpc_url(network)
        if rpc_url:
            overrides["rpc_url"] = rpc_url
        overrides.update(self.network_overrides.get(network.value, {}))

        return config.with_overrides(overrides) if overrides else config

    def get_hot_wallet(self, network: NetworkId) -> Optional[str]:
        """Get the hot wallet address for a network."""
        network = NetworkId(network)
        if network.is_evm:
            return self.hot_wallet_evm
        hot_map = {
            NetworkId.TRON: self.hot_wallet_tron,
            NetworkId.SOLANA: self.hot_wallet_solana,
            NetworkId.BITCOIN: self.hot_wallet_bitcoin,
        }
        return hot_map[network]

    def get_asset_rate(self, symbol: str) -> Optional[Decimal]:
        """USDT value of one unit of a native asset."""
        if symbol.upper() == "USDT":
            return Decimal("1")
        return self.asset_rates.get(symbol.upper())

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "network_tier": self.network_tier.value,
            "database_url": self._redact_url(self.database_url),
            "wallet_configured": self.has_wallet,
            "tron_api_key": "***" if self.tron_api_key else "(not set)",
            "networks": {
                network.value: {
                    "rpc": self._redact_url(self.get_network_config(network).rpc_url),
                    "hot_wallet": self.get_hot_wallet(network) or "(not set)",
                }
                for network in NetworkId
            },
            "limits": {
                "per_transaction": str(self.per_transaction_limit),
                "daily_total": str(self.daily_total_limit),
                "auto_approve": str(self.auto_approve_limit),
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
