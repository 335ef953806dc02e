"""HD wallet base interface.

All deposit addresses come from one BIP-39 master mnemonic. Each network has
a ChainDeriver that turns (seed, index) into an address or key material using
a BIP-44 path where the user's address index is the account level.

Security: private keys are derived per operation and handed straight to the
signer. KeyMaterial hides them from repr and nothing persists them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from bip_utils import Bip44, Bip44Changes, Bip44Coins

from custody.networks import NetworkId, NetworkTier

MAX_ADDRESS_INDEX = 2**31 - 1  # hardened account level


@dataclass
class AddressInfo:
    """Information about a derived address."""

    address: str
    network: NetworkId
    derivation_path: str
    index: int


@dataclass
class KeyMaterial:
    """Signing material for one derived address.

    Consumed immediately by a broadcast call. Never log or store it.
    """

    network: NetworkId
    index: int
    derivation_path: str
    address: str
    private_key: bytes = field(repr=False)
    public_key: bytes = field(repr=False)

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()


class ChainDeriver(ABC):
    """BIP-44 derivation for one family of chains.

    Subclasses set the bip_utils coin and turn the derived node into an
    address in the chain's own format.
    """

    coin: Bip44Coins
    coin_type: int

    def __init__(self, network: NetworkId, tier: NetworkTier = NetworkTier.MAINNET):
        self.network = network
        self.tier = tier

    def derivation_path(self, index: int) -> str:
        return f"m/44'/{self.coin_type}'/{index}'/0/0"

    def node(self, seed: bytes, index: int) -> Bip44:
        """Derive the BIP-44 node for an address index."""
        return (
            Bip44.FromSeed(seed, self.coin)
            .Purpose()
            .Coin()
            .Account(index)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(0)
        )

    @abstractmethod
    def encode_address(self, node: Bip44) -> str:
        """Encode the node's public key as an address."""
        pass

    def public_key_bytes(self, node: Bip44) -> bytes:
        return node.PublicKey().RawCompressed().ToBytes()

    def derive_address(self, seed: bytes, index: int) -> AddressInfo:
        node = self.node(seed, index)
        return AddressInfo(
            address=self.encode_address(node),
            network=self.network,
            derivation_path=self.derivation_path(index),
            index=index,
        )

    def derive_key(self, seed: bytes, index: int) -> KeyMaterial:
        node = self.node(seed, index)
        return KeyMaterial(
            network=self.network,
            index=index,
            derivation_path=self.derivation_path(index),
            address=self.encode_address(node),
            private_key=node.PrivateKey().Raw().ToBytes(),
            public_key=self.public_key_bytes(node),
        )
