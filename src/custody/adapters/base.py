"""Base interface for network adapters.

One adapter instance per network, created at startup and shared by the
deposit monitor, the sweeper and the withdrawal processor. Adapters hold their
HTTP client for their whole lifetime and keep no other state between calls.

Failure rules:
- every HTTP call is bounded by the adapter timeout
- timeouts, transport errors, non-2xx answers and JSON-RPC errors raise
  TransientAdapterError; they never mean "nothing found"
- a node refusing a transfer raises BroadcastError
"""

import itertools
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional, Union

import httpx

from custody.errors import (
    BroadcastError,
    FailedTransactionError,
    TransientAdapterError,
)
from custody.hdwallet.base import KeyMaterial
from custody.networks import NetworkConfig, NetworkId, NetworkTier, address_pattern

logger = logging.getLogger(__name__)


class JsonRpcError(TransientAdapterError):
    """The node answered a JSON-RPC call with an error object."""

    def __init__(self, message: str, error: Any = None):
        super().__init__(message)
        self.error = error


@dataclass
class ChainBalance:
    """Balance of one address."""

    native: Decimal = Decimal("0")
    token: Decimal = Decimal("0")


@dataclass
class IncomingTransfer:
    """Transfer into a watched address."""

    tx_hash: str
    from_address: Optional[str]
    amount: Decimal
    token_symbol: str
    confirmations: int = 0
    to_address: Optional[str] = None
    block_height: Optional[int] = None


def to_units(amount: Decimal, decimals: int) -> int:
    """Convert a decimal amount to integer base units (rounding down)."""
    return int((Decimal(str(amount)) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_units(value: Union[int, str], decimals: int) -> Decimal:
    """Convert integer base units to a decimal amount."""
    return Decimal(int(value)) / (Decimal(10) ** decimals)


class NetworkAdapter(ABC):
    """Abstract base class for blockchain adapters."""

    def __init__(self, config: NetworkConfig, tier: NetworkTier = NetworkTier.MAINNET):
        self.config = config
        self.network: NetworkId = config.network
        self.tier = NetworkTier(tier)

    @property
    def token_symbol(self) -> str:
        return self.config.asset_symbol

    @abstractmethod
    async def get_balance(self, address: str) -> ChainBalance:
        """Native and USDT balance of an address."""
        pass

    @abstractmethod
    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        """Recent transfers into an address.

        Args:
            address: Watched deposit address
            since: Chain-specific lower bound (block number, ms timestamp);
                None uses the adapter's default lookback window
        """
        pass

    @abstractmethod
    async def get_confirmations(self, tx_hash: str) -> int:
        """Confirmation count, 0 if unconfirmed or unknown.

        Raises:
            FailedTransactionError: the chain reports the transaction failed
            TransientAdapterError: the count could not be determined
        """
        pass

    @abstractmethod
    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        """Sign and broadcast a transfer of `amount` from key.address.

        Returns:
            Transaction hash
        """
        pass

    async def sweep(self, key: KeyMaterial, to_address: str, amount: Decimal) -> tuple[str, Decimal]:
        """Move a deposit address balance to `to_address`.

        Returns:
            (transaction hash, amount that left the address towards `to_address`)
        """
        tx_hash = await self.broadcast_transfer(key, to_address, amount)
        return tx_hash, amount

    async def validate_address(self, address: str) -> bool:
        """Check address format for this network."""
        if not address:
            return False
        return bool(address_pattern(self.network, self.tier).match(address))

    def sweepable_amount(self, balance: ChainBalance) -> Decimal:
        """Amount a sweep should move out of a deposit address."""
        return balance.token

    async def close(self) -> None:
        """Release network resources."""
        pass


class HTTPAdapter(NetworkAdapter):
    """Adapter talking to the chain through one httpx client."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(config, tier)
        self.timeout = timeout
        self.base_url = config.rpc_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._rpc_ids = itertools.count(1)

    async def _request(
        self,
        method: str,
        url: str,
        ok_statuses: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, mapping every failure to TransientAdapterError."""
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientAdapterError(
                f"{self.network.value}: timeout after {self.timeout}s calling {url}"
            ) from e
        except httpx.HTTPError as e:
            raise TransientAdapterError(f"{self.network.value}: {type(e).__name__} calling {url}: {e}") from e

        if response.status_code not in ok_statuses:
            raise TransientAdapterError(
                f"{self.network.value}: HTTP {response.status_code} from {url}"
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransientAdapterError(
                f"{self.network.value}: invalid JSON from {response.request.url}"
            ) from e

    async def _get_json(self, path: str, **kwargs: Any) -> Any:
        response = await self._request("GET", f"{self.base_url}{path}", **kwargs)
        return self._json(response)

    async def _post_json(self, path: str, payload: Any, **kwargs: Any) -> Any:
        response = await self._request("POST", f"{self.base_url}{path}", json=payload, **kwargs)
        return self._json(response)

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        """JSON-RPC 2.0 call against the configured endpoint."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._rpc_ids),
            "method": method,
            "params": params or [],
        }
        response = await self._request("POST", self.base_url, json=payload)
        data = self._json(response)
        if not isinstance(data, dict):
            raise TransientAdapterError(f"{self.network.value}: malformed {method} response")
        if data.get("error"):
            raise JsonRpcError(f"{self.network.value}: {method} error: {data['error']}", data["error"])
        return data.get("result")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass
class SimulatedBroadcast:
    """Transfer recorded by SimulatedAdapter."""

    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    key_index: int


class SimulatedAdapter(NetworkAdapter):
    """In-memory adapter for dry runs and tests (no chain access)."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        sweep_native: bool = False,
    ):
        super().__init__(config, tier)
        self.sweep_native = sweep_native
        self._balances: dict[str, ChainBalance] = {}
        self._transfers: dict[str, list[IncomingTransfer]] = {}
        self._confirmations: dict[str, int] = {}
        self._failed: set[str] = set()
        self._unavailable: set[str] = set()
        self._rejecting: set[str] = set()
        self.broadcasts: list[SimulatedBroadcast] = []

    # Test/dry-run controls
    def set_balance(
        self,
        address: str,
        token: Decimal = Decimal("0"),
        native: Decimal = Decimal("0"),
    ) -> None:
        self._balances[address] = ChainBalance(native=Decimal(native), token=Decimal(token))

    def add_incoming_transfer(
        self,
        address: str,
        amount: Decimal,
        tx_hash: Optional[str] = None,
        confirmations: int = 0,
        token_symbol: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> IncomingTransfer:
        """Add a simulated deposit."""
        transfer = IncomingTransfer(
            tx_hash=tx_hash or f"sim_tx_{secrets.token_hex(16)}",
            from_address=from_address,
            amount=Decimal(amount),
            token_symbol=token_symbol or self.token_symbol,
            confirmations=confirmations,
            to_address=address,
        )
        self._transfers.setdefault(address, []).append(transfer)
        self._confirmations.setdefault(transfer.tx_hash, confirmations)
        return transfer

    def set_confirmations(self, tx_hash: str, confirmations: int) -> None:
        self._confirmations[tx_hash] = confirmations

    def mark_failed(self, tx_hash: str) -> None:
        self._failed.add(tx_hash)

    def set_unavailable(self, address_or_tx: str, unavailable: bool = True) -> None:
        """Make calls for an address or tx hash raise TransientAdapterError."""
        if unavailable:
            self._unavailable.add(address_or_tx)
        else:
            self._unavailable.discard(address_or_tx)

    def reject_broadcasts_from(self, address: str) -> None:
        self._rejecting.add(address)

    def _check_available(self, key: str) -> None:
        if key in self._unavailable:
            raise TransientAdapterError(f"{self.network.value}: simulated outage for {key}")

    # NetworkAdapter
    async def get_balance(self, address: str) -> ChainBalance:
        self._check_available(address)
        balance = self._balances.get(address, ChainBalance())
        return ChainBalance(native=balance.native, token=balance.token)

    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        self._check_available(address)
        return list(self._transfers.get(address, []))

    async def get_confirmations(self, tx_hash: str) -> int:
        self._check_available(tx_hash)
        if tx_hash in self._failed:
            raise FailedTransactionError(tx_hash)
        return self._confirmations.get(tx_hash, 0)

    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        self._check_available(key.address)
        if key.address in self._rejecting:
            raise BroadcastError(f"{self.network.value}: simulated rejection from {key.address}")

        tx_hash = f"sim_tx_{secrets.token_hex(16)}"
        self.broadcasts.append(
            SimulatedBroadcast(
                tx_hash=tx_hash,
                from_address=key.address,
                to_address=to_address,
                amount=Decimal(amount),
                key_index=key.index,
            )
        )

        balance = self._balances.get(key.address)
        if balance is not None:
            if self.sweep_native:
                balance.native = max(Decimal("0"), balance.native - Decimal(amount))
            else:
                balance.token = max(Decimal("0"), balance.token - Decimal(amount))

        logger.info(f"[DRY RUN] {self.network.value}: {amount} {key.address} -> {to_address} ({tx_hash})")
        return tx_hash

    def sweepable_amount(self, balance: ChainBalance) -> Decimal:
        return balance.native if self.sweep_native else balance.token
