"""AddressDeriver: one entry point for every network.

The mnemonic is validated lazily, at the first derivation, so a deployment
without a seed can still run read-only jobs.
"""

import logging
from typing import Optional

from bip_utils import Bip39MnemonicValidator, Bip39SeedGenerator

from custody.errors import ConfigurationError
from custody.hdwallet.base import MAX_ADDRESS_INDEX, AddressInfo, ChainDeriver, KeyMaterial
from custody.hdwallet.btc import BitcoinDeriver
from custody.hdwallet.eth import EVMDeriver, TronDeriver
from custody.hdwallet.sol import SolanaDeriver
from custody.networks import NetworkId, NetworkTier

logger = logging.getLogger(__name__)

# Network to deriver class mapping
DERIVER_CLASSES: dict[NetworkId, type[ChainDeriver]] = {
    NetworkId.ETHEREUM: EVMDeriver,
    NetworkId.BSC: EVMDeriver,
    NetworkId.POLYGON: EVMDeriver,
    NetworkId.TRON: TronDeriver,
    NetworkId.BITCOIN: BitcoinDeriver,
    NetworkId.SOLANA: SolanaDeriver,
}


class AddressDeriver:
    """Deterministic addresses and keys from a single master mnemonic.

    Example:
        deriver = AddressDeriver(mnemonic, NetworkTier.MAINNET)
        info = deriver.derive_address(NetworkId.TRON, 7)
        # AddressInfo(address="T...", derivation_path="m/44'/195'/7'/0/0", ...)
    """

    def __init__(
        self,
        mnemonic: Optional[str],
        tier: NetworkTier = NetworkTier.MAINNET,
        passphrase: str = "",
    ):
        self._mnemonic = " ".join(mnemonic.split()) if mnemonic else None
        self._passphrase = passphrase
        self.tier = NetworkTier(tier)
        self._derivers = {
            network: cls(network, self.tier) for network, cls in DERIVER_CLASSES.items()
        }

    @property
    def is_configured(self) -> bool:
        return bool(self._mnemonic)

    def _seed(self) -> bytes:
        """Recompute the BIP-39 seed. Raises ConfigurationError if unusable."""
        if not self._mnemonic:
            raise ConfigurationError("WALLET_MNEMONIC is not configured")
        if not Bip39MnemonicValidator().IsValid(self._mnemonic):
            raise ConfigurationError("WALLET_MNEMONIC is not a valid BIP-39 mnemonic")
        return Bip39SeedGenerator(self._mnemonic).Generate(self._passphrase)

    def _deriver(self, network: NetworkId, index: int) -> ChainDeriver:
        if not 0 <= index <= MAX_ADDRESS_INDEX:
            raise ValueError(f"Address index out of range: {index}")
        return self._derivers[NetworkId(network)]

    def derivation_path(self, network: NetworkId, index: int) -> str:
        return self._deriver(network, index).derivation_path(index)

    def derive_address(self, network: NetworkId, index: int) -> AddressInfo:
        """Derive the deposit address for (network, index)."""
        deriver = self._deriver(network, index)
        return deriver.derive_address(self._seed(), index)

    def derive_private_key(self, network: NetworkId, index: int) -> KeyMaterial:
        """Derive signing material for (network, index).

        The result must be consumed by the caller right away and dropped.
        """
        deriver = self._deriver(network, index)
        key = deriver.derive_key(self._seed(), index)
        logger.debug(f"Derived signing key for {key.network.value} index {index}")
        return key


def get_supported_networks() -> list[NetworkId]:
    """Get list of networks with address derivation."""
    return list(DERIVER_CLASSES.keys())
