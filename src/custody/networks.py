"""Supported networks and their per-tier configuration.

Six networks share one USDT-denominated ledger:
- tron (TRC-20 USDT)
- ethereum, bsc, polygon (ERC-20 USDT, one EVM adapter implementation)
- solana (SPL USDT, plus native SOL deposits)
- bitcoin (native BTC, no token layer)

Every deployment runs on exactly one tier (mainnet or testnet), so endpoints,
contracts, chain ids and address prefixes never get mixed.
"""

import re
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class NetworkId(str, Enum):
    """Closed set of supported networks."""

    TRON = "tron"
    ETHEREUM = "ethereum"
    BSC = "bsc"
    POLYGON = "polygon"
    SOLANA = "solana"
    BITCOIN = "bitcoin"

    @property
    def is_evm(self) -> bool:
        return self in EVM_NETWORKS


EVM_NETWORKS = frozenset({NetworkId.ETHEREUM, NetworkId.BSC, NetworkId.POLYGON})


class NetworkTier(str, Enum):
    """Deployment tier."""

    MAINNET = "mainnet"
    TESTNET = "testnet"


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for one network."""

    network: NetworkId
    name: str
    native_symbol: str
    rpc_url: str
    explorer_url: str
    coin_type: int  # BIP44 coin type (SLIP-44)

    required_confirmations: int
    min_deposit: Decimal
    withdrawal_fee: Decimal

    # Token settings (None for Bitcoin)
    usdt_contract: Optional[str] = None
    token_decimals: int = 6
    native_decimals: int = 18
    chain_id: Optional[int] = None  # EVM chains only

    @property
    def asset_symbol(self) -> str:
        """Symbol the network deposits and withdrawals are denominated in."""
        return "USDT" if self.usdt_contract else self.native_symbol

    def with_overrides(self, overrides: dict[str, Any]) -> "NetworkConfig":
        """Return a copy with operator overrides applied."""
        allowed = {
            "min_deposit": Decimal,
            "withdrawal_fee": Decimal,
            "required_confirmations": int,
            "rpc_url": str,
            "explorer_url": str,
            "usdt_contract": str,
            "token_decimals": int,
            "chain_id": int,
        }
        changes = {}
        for key, value in overrides.items():
            if key not in allowed:
                raise ValueError(f"Unknown override '{key}' for network {self.network.value}")
            convert = allowed[key]
            changes[key] = Decimal(str(value)) if convert is Decimal else convert(value)
        return replace(self, **changes)


# ======================
# Mainnet
# ======================

MAINNET: dict[NetworkId, NetworkConfig] = {
    NetworkId.TRON: NetworkConfig(
        network=NetworkId.TRON,
        name="Tron",
        native_symbol="TRX",
        rpc_url="https://api.trongrid.io",
        explorer_url="https://tronscan.org",
        coin_type=195,
        required_confirmations=20,
        min_deposit=Decimal("1"),
        withdrawal_fee=Decimal("1"),
        usdt_contract="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
        token_decimals=6,
        native_decimals=6,
    ),
    NetworkId.ETHEREUM: NetworkConfig(
        network=NetworkId.ETHEREUM,
        name="Ethereum",
        native_symbol="ETH",
        rpc_url="https://eth.llamarpc.com",
        explorer_url="https://etherscan.io",
        coin_type=60,
        required_confirmations=12,
        min_deposit=Decimal("10"),
        withdrawal_fee=Decimal("5"),
        usdt_contract="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        token_decimals=6,
        chain_id=1,
    ),
    NetworkId.BSC: NetworkConfig(
        network=NetworkId.BSC,
        name="BNB Smart Chain",
        native_symbol="BNB",
        rpc_url="https://bsc-dataseed.binance.org",
        explorer_url="https://bscscan.com",
        coin_type=60,
        required_confirmations=15,
        min_deposit=Decimal("1"),
        withdrawal_fee=Decimal("0.5"),
        usdt_contract="0x55d398326f99059fF775485246999027B3197955",
        token_decimals=18,  # BSC-USD uses 18 decimals
        chain_id=56,
    ),
    NetworkId.POLYGON: NetworkConfig(
        network=NetworkId.POLYGON,
        name="Polygon",
        native_symbol="POL",
        rpc_url="https://polygon-rpc.com",
        explorer_url="https://polygonscan.com",
        coin_type=60,
        required_confirmations=128,
        min_deposit=Decimal("1"),
        withdrawal_fee=Decimal("0.5"),
        usdt_contract="0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        token_decimals=6,
        chain_id=137,
    ),
    NetworkId.SOLANA: NetworkConfig(
        network=NetworkId.SOLANA,
        name="Solana",
        native_symbol="SOL",
        rpc_url="https://api.mainnet-beta.solana.com",
        explorer_url="https://solscan.io",
        coin_type=501,
        required_confirmations=32,
        min_deposit=Decimal("1"),
        withdrawal_fee=Decimal("0.5"),
        usdt_contract="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        token_decimals=6,
        native_decimals=9,
    ),
    NetworkId.BITCOIN: NetworkConfig(
        network=NetworkId.BITCOIN,
        name="Bitcoin",
        native_symbol="BTC",
        rpc_url="https://blockstream.info/api",
        explorer_url="https://blockstream.info",
        coin_type=0,
        required_confirmations=6,
        min_deposit=Decimal("0.0001"),
        withdrawal_fee=Decimal("0.0001"),
        native_decimals=8,
    ),
}


# ======================
# Testnet
# ======================

TESTNET: dict[NetworkId, NetworkConfig] = {
    NetworkId.TRON: replace(
        MAINNET[NetworkId.TRON],
        rpc_url="https://nile.trongrid.io",
        explorer_url="https://nile.tronscan.org",
        usdt_contract="TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf",
        required_confirmations=1,
    ),
    NetworkId.ETHEREUM: replace(
        MAINNET[NetworkId.ETHEREUM],
        rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
        explorer_url="https://sepolia.etherscan.io",
        usdt_contract="0x7169D38820dfd117C3FA1f22a697dBA58d90BA06",
        chain_id=11155111,
        required_confirmations=3,
    ),
    NetworkId.BSC: replace(
        MAINNET[NetworkId.BSC],
        rpc_url="https://data-seed-prebsc-1-s1.binance.org:8545",
        explorer_url="https://testnet.bscscan.com",
        usdt_contract="0x337610d27c682E347C9cD60BD4b3b107C9d34dDd",
        chain_id=97,
        required_confirmations=3,
    ),
    NetworkId.POLYGON: replace(
        MAINNET[NetworkId.POLYGON],
        rpc_url="https://rpc-amoy.polygon.technology",
        explorer_url="https://amoy.polygonscan.com",
        usdt_contract="0x1fdE0eCc619726f4cD597887C9F3b4c8740e19e2",
        chain_id=80002,
        required_confirmations=3,
    ),
    NetworkId.SOLANA: replace(
        MAINNET[NetworkId.SOLANA],
        rpc_url="https://api.devnet.solana.com",
        explorer_url="https://solscan.io/?cluster=devnet",
        usdt_contract="Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr",
    ),
    NetworkId.BITCOIN: replace(
        MAINNET[NetworkId.BITCOIN],
        rpc_url="https://blockstream.info/testnet/api",
        explorer_url="https://blockstream.info/testnet",
        required_confirmations=1,
    ),
}

NETWORK_TABLES: dict[NetworkTier, dict[NetworkId, NetworkConfig]] = {
    NetworkTier.MAINNET: MAINNET,
    NetworkTier.TESTNET: TESTNET,
}


# ======================
# Address formats
# ======================

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TRON_ADDRESS = re.compile(rf"^T[{BASE58_ALPHABET}]{{33}}$")
_SOLANA_ADDRESS = re.compile(rf"^[{BASE58_ALPHABET}]{{32,44}}$")

_BITCOIN_ADDRESS = {
    NetworkTier.MAINNET: re.compile(
        rf"^((1|3)[{BASE58_ALPHABET}]{{25,34}}|bc1[02-9ac-hj-np-z]{{11,71}})$"
    ),
    NetworkTier.TESTNET: re.compile(
        rf"^((m|n|2)[{BASE58_ALPHABET}]{{25,34}}|tb1[02-9ac-hj-np-z]{{11,71}})$"
    ),
}


def address_pattern(network: NetworkId, tier: NetworkTier = NetworkTier.MAINNET) -> re.Pattern:
    """Get the address-format pattern for a network."""
    if network.is_evm:
        return _EVM_ADDRESS
    if network == NetworkId.TRON:
        return _TRON_ADDRESS
    if network == NetworkId.SOLANA:
        return _SOLANA_ADDRESS
    return _BITCOIN_ADDRESS[tier]


def get_network_defaults(network: NetworkId, tier: NetworkTier) -> NetworkConfig:
    """Get built-in configuration for a network on a tier."""
    return NETWORK_TABLES[tier][network]
