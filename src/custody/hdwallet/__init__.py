"""HD wallet module for deterministic address generation."""

from custody.hdwallet.base import AddressInfo, ChainDeriver, KeyMaterial
from custody.hdwallet.factory import AddressDeriver, get_supported_networks

__all__ = [
    "AddressDeriver",
    "AddressInfo",
    "ChainDeriver",
    "KeyMaterial",
    "get_supported_networks",
]
