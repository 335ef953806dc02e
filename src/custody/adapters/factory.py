"""Adapter factory.

Builds one adapter per network from Settings. With DRY_RUN enabled every
network gets a SimulatedAdapter instead of touching a chain.
"""

import logging
from typing import Optional

import httpx

from custody.adapters.base import NetworkAdapter, SimulatedAdapter
from custody.adapters.bitcoin import BitcoinAdapter
from custody.adapters.evm import EVMAdapter
from custody.adapters.solana import SolanaAdapter
from custody.adapters.tron import TronAdapter
from custody.config import Settings
from custody.networks import NetworkId

logger = logging.getLogger(__name__)


def create_adapter(
    network: NetworkId,
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> NetworkAdapter:
    """Create the adapter for one network.

    Selection:
    - DRY_RUN=true: SimulatedAdapter (Bitcoin sweeps its native balance)
    - ethereum, bsc, polygon: EVMAdapter
    - tron: TronAdapter
    - solana: SolanaAdapter
    - bitcoin: BitcoinAdapter
    """
    network = NetworkId(network)
    config = settings.get_network_config(network)
    tier = settings.network_tier

    if settings.dry_run:
        return SimulatedAdapter(config, tier, sweep_native=network == NetworkId.BITCOIN)

    if network.is_evm:
        return EVMAdapter(
            config,
            tier,
            timeout=settings.rpc_timeout,
            client=client,
            lookback_blocks=settings.evm_lookback_blocks,
        )
    if network == NetworkId.TRON:
        return TronAdapter(
            config,
            tier,
            timeout=settings.rpc_timeout,
            client=client,
            api_key=settings.tron_api_key or None,
            lookback_hours=settings.tron_lookback_hours,
        )
    if network == NetworkId.SOLANA:
        return SolanaAdapter(
            config,
            tier,
            timeout=settings.rpc_timeout,
            client=client,
            signature_limit=settings.solana_signature_limit,
        )
    return BitcoinAdapter(
        config,
        tier,
        timeout=settings.rpc_timeout,
        client=client,
        fee_api_url=settings.bitcoin_fee_api_url,
        fallback_fee_rate=settings.bitcoin_fallback_fee_rate,
    )


def create_adapters(settings: Settings) -> dict[NetworkId, NetworkAdapter]:
    """Create adapters for every supported network."""
    adapters = {network: create_adapter(network, settings) for network in NetworkId}
    mode = "simulated" if settings.dry_run else settings.network_tier.value
    logger.info(f"Initialized {len(adapters)} network adapters ({mode})")
    return adapters
