"""EVM and Tron derivation.

EVM:  m/44'/60'/{index}'/0/0, checksummed 0x address. One address serves
      Ethereum, BSC and Polygon.
Tron: m/44'/195'/{index}'/0/0, Base58Check(0x41 || keccak(pubkey)[-20:]).
"""

from bip_utils import Bip44, Bip44Coins

from custody.hdwallet.base import ChainDeriver


class EVMDeriver(ChainDeriver):
    """Ethereum-style addresses for every EVM network."""

    coin = Bip44Coins.ETHEREUM
    coin_type = 60

    def encode_address(self, node: Bip44) -> str:
        return node.PublicKey().ToAddress()


class TronDeriver(ChainDeriver):
    """Tron base58 addresses (T...)."""

    coin = Bip44Coins.TRON
    coin_type = 195

    def encode_address(self, node: Bip44) -> str:
        return node.PublicKey().ToAddress()
