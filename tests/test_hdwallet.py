"""Tests for HD wallet address derivation."""

import base58
import pytest
from eth_account import Account

from custody.errors import ConfigurationError
from custody.hdwallet import AddressDeriver, get_supported_networks
from custody.networks import NetworkId, NetworkTier


class TestDerivationPaths:
    """Tests for BIP-44 path layout."""

    def test_paths_per_network(self, deriver: AddressDeriver):
        """Test the user index is the account level."""
        assert deriver.derivation_path(NetworkId.ETHEREUM, 7) == "m/44'/60'/7'/0/0"
        assert deriver.derivation_path(NetworkId.BSC, 7) == "m/44'/60'/7'/0/0"
        assert deriver.derivation_path(NetworkId.TRON, 7) == "m/44'/195'/7'/0/0"
        assert deriver.derivation_path(NetworkId.BITCOIN, 7) == "m/44'/0'/7'/0/0"
        assert deriver.derivation_path(NetworkId.SOLANA, 7) == "m/44'/501'/7'/0'"

    def test_all_networks_supported(self):
        """Test every network has a deriver."""
        assert set(get_supported_networks()) == set(NetworkId)

    def test_index_out_of_range(self, deriver: AddressDeriver):
        """Test negative and non-hardenable indices are refused."""
        with pytest.raises(ValueError):
            deriver.derive_address(NetworkId.TRON, -1)
        with pytest.raises(ValueError):
            deriver.derive_address(NetworkId.TRON, 2**31)


class TestAddressDerivation:
    """Tests for address generation."""

    def test_ethereum_known_vector(self, deriver: AddressDeriver):
        """Test the standard test-mnemonic address at m/44'/60'/0'/0/0."""
        info = deriver.derive_address(NetworkId.ETHEREUM, 0)
        assert info.address == "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
        assert info.index == 0
        assert info.network == NetworkId.ETHEREUM

    @pytest.mark.parametrize("network", list(NetworkId))
    def test_deterministic(self, network: NetworkId, mnemonic: str):
        """Test two derivers on the same mnemonic agree on every network."""
        first = AddressDeriver(mnemonic)
        second = AddressDeriver(mnemonic)
        for index in (0, 1, 7, 1000):
            assert first.derive_address(network, index).address == second.derive_address(network, index).address

    def test_indices_give_distinct_addresses(self, deriver: AddressDeriver):
        """Test different indices never collide."""
        addresses = {deriver.derive_address(NetworkId.TRON, i).address for i in range(10)}
        assert len(addresses) == 10

    def test_evm_networks_share_addresses(self, deriver: AddressDeriver):
        """Test Ethereum, BSC and Polygon use the same key per index."""
        eth = deriver.derive_address(NetworkId.ETHEREUM, 3).address
        assert deriver.derive_address(NetworkId.BSC, 3).address == eth
        assert deriver.derive_address(NetworkId.POLYGON, 3).address == eth

    def test_tron_address_format(self, deriver: AddressDeriver):
        """Test Tron addresses are Base58Check with the 0x41 prefix."""
        address = deriver.derive_address(NetworkId.TRON, 7).address
        raw = base58.b58decode_check(address)
        assert address.startswith("T")
        assert len(raw) == 21
        assert raw[0] == 0x41

    def test_bitcoin_hrp_follows_tier(self, mnemonic: str):
        """Test mainnet uses bc1q and testnet tb1q P2WPKH addresses."""
        mainnet = AddressDeriver(mnemonic, NetworkTier.MAINNET)
        testnet = AddressDeriver(mnemonic, NetworkTier.TESTNET)
        assert mainnet.derive_address(NetworkId.BITCOIN, 1).address.startswith("bc1q")
        assert testnet.derive_address(NetworkId.BITCOIN, 1).address.startswith("tb1q")

    def test_solana_address_is_public_key(self, deriver: AddressDeriver):
        """Test Solana addresses decode to a 32-byte ed25519 key."""
        address = deriver.derive_address(NetworkId.SOLANA, 2).address
        assert len(base58.b58decode(address)) == 32


class TestKeyMaterial:
    """Tests for signing key derivation."""

    def test_key_matches_address(self, deriver: AddressDeriver):
        """Test the derived private key controls the derived address."""
        key = deriver.derive_private_key(NetworkId.ETHEREUM, 5)
        assert key.address == deriver.derive_address(NetworkId.ETHEREUM, 5).address
        assert Account.from_key(key.private_key).address == key.address

    def test_solana_key_matches_address(self, deriver: AddressDeriver):
        """Test the Solana key's public half is the address."""
        key = deriver.derive_private_key(NetworkId.SOLANA, 4)
        assert len(key.private_key) == 32
        assert base58.b58encode(key.public_key).decode() == key.address

    def test_repr_hides_private_key(self, deriver: AddressDeriver):
        """Test private material never appears in repr."""
        key = deriver.derive_private_key(NetworkId.TRON, 1)
        text = repr(key)
        assert key.private_key_hex not in text
        assert "private_key" not in text
        assert key.address in text


class TestSeedConfiguration:
    """Tests for missing and invalid mnemonics."""

    def test_missing_mnemonic_fails_at_first_use(self):
        """Test construction succeeds and derivation raises."""
        deriver = AddressDeriver(None)
        assert not deriver.is_configured
        with pytest.raises(ConfigurationError):
            deriver.derive_address(NetworkId.TRON, 1)

    def test_invalid_mnemonic(self):
        """Test a mnemonic with a bad checksum is refused."""
        deriver = AddressDeriver("abandon " * 12)
        assert deriver.is_configured
        with pytest.raises(ConfigurationError):
            deriver.derive_private_key(NetworkId.ETHEREUM, 0)

    def test_whitespace_normalized(self, mnemonic: str):
        """Test extra whitespace in the mnemonic does not change addresses."""
        messy = AddressDeriver("  " + mnemonic.replace(" ", "   ") + "\n")
        clean = AddressDeriver(mnemonic)
        assert messy.derive_address(NetworkId.ETHEREUM, 0).address == clean.derive_address(NetworkId.ETHEREUM, 0).address
