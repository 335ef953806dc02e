"""Bitcoin derivation.

Path: m/44'/0'/{index}'/0/0 on both tiers; the tier only picks the bech32
prefix (bc1q... on mainnet, tb1q... on testnet).
Address format: native SegWit P2WPKH.
"""

from bip_utils import Bip44, Bip44Coins, P2WPKHAddrEncoder

from custody.hdwallet.base import ChainDeriver
from custody.networks import NetworkTier

BECH32_HRP = {
    NetworkTier.MAINNET: "bc",
    NetworkTier.TESTNET: "tb",
}


class BitcoinDeriver(ChainDeriver):
    """P2WPKH addresses."""

    coin = Bip44Coins.BITCOIN
    coin_type = 0

    @property
    def hrp(self) -> str:
        return BECH32_HRP[self.tier]

    def encode_address(self, node: Bip44) -> str:
        return P2WPKHAddrEncoder.EncodeKey(
            node.PublicKey().RawCompressed().ToBytes(),
            hrp=self.hrp,
            wit_ver=0,
        )
