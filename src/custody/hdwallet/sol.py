"""Solana derivation.

Path: m/44'/501'/{index}'/0' (the Phantom/Solflare layout; ed25519 only
supports hardened levels, so there is no address-index level).
Address format: base58 ed25519 public key. The private key is the 32-byte
ed25519 seed that solders' Keypair.from_seed expects.
"""

from bip_utils import Bip44, Bip44Changes, Bip44Coins

from custody.hdwallet.base import ChainDeriver


class SolanaDeriver(ChainDeriver):
    """Solana addresses."""

    coin = Bip44Coins.SOLANA
    coin_type = 501

    def derivation_path(self, index: int) -> str:
        return f"m/44'/{self.coin_type}'/{index}'/0'"

    def node(self, seed: bytes, index: int) -> Bip44:
        return (
            Bip44.FromSeed(seed, self.coin)
            .Purpose()
            .Coin()
            .Account(index)
            .Change(Bip44Changes.CHAIN_EXT)
        )

    def encode_address(self, node: Bip44) -> str:
        return node.PublicKey().ToAddress()

    def public_key_bytes(self, node: Bip44) -> bytes:
        # ed25519 compressed keys carry a 0x00 prefix byte
        return node.PublicKey().RawCompressed().ToBytes()[1:]
