"""Blockchain network adapters."""

from custody.adapters.base import (
    ChainBalance,
    HTTPAdapter,
    IncomingTransfer,
    JsonRpcError,
    NetworkAdapter,
    SimulatedAdapter,
    SimulatedBroadcast,
)
from custody.adapters.bitcoin import BitcoinAdapter
from custody.adapters.evm import EVMAdapter
from custody.adapters.factory import create_adapter, create_adapters
from custody.adapters.solana import SolanaAdapter
from custody.adapters.tron import TronAdapter

__all__ = [
    "ChainBalance",
    "HTTPAdapter",
    "IncomingTransfer",
    "JsonRpcError",
    "NetworkAdapter",
    "SimulatedAdapter",
    "SimulatedBroadcast",
    "BitcoinAdapter",
    "EVMAdapter",
    "SolanaAdapter",
    "TronAdapter",
    "create_adapter",
    "create_adapters",
]
