"""Tron adapter for TRC-20 USDT.

Reads use the TronGrid REST API over httpx. Transfers are built, signed and
broadcast with tronpy, which is synchronous and therefore runs in a worker
thread.
API Docs: https://developers.tron.network/reference/background
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Optional

import base58
import httpx
from tronpy import Tron
from tronpy.keys import PrivateKey
from tronpy.providers import HTTPProvider

from custody.adapters.base import ChainBalance, HTTPAdapter, IncomingTransfer, from_units, to_units
from custody.errors import BroadcastError, FailedTransactionError, TransientAdapterError
from custody.hdwallet.base import KeyMaterial
from custody.networks import NetworkConfig, NetworkTier

logger = logging.getLogger(__name__)

TRON_ADDRESS_PREFIX = 0x41
TRC20_FEE_LIMIT_SUN = 30_000_000  # 30 TRX of energy at most


class TronAdapter(HTTPAdapter):
    """TRC-20 USDT on Tron."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        lookback_hours: int = 24,
    ):
        headers = {"TRON-PRO-API-KEY": api_key} if api_key else {}
        super().__init__(config, tier, timeout=timeout, client=client, headers=headers)
        if not config.usdt_contract:
            raise ValueError("tron: USDT contract is required")

        self.api_key = api_key
        self.lookback_hours = lookback_hours
        self._tron = Tron(HTTPProvider(config.rpc_url, timeout=timeout, api_key=api_key or None))

    async def validate_address(self, address: str) -> bool:
        """T-prefixed base58 with a valid checksum and 0x41 version byte."""
        if not await super().validate_address(address):
            return False
        try:
            raw = base58.b58decode_check(address)
        except ValueError:
            return False
        return len(raw) == 21 and raw[0] == TRON_ADDRESS_PREFIX

    async def get_current_block(self) -> int:
        data = await self._post_json("/wallet/getnowblock", {})
        number = data.get("block_header", {}).get("raw_data", {}).get("number")
        if number is None:
            raise TransientAdapterError("tron: getnowblock returned no block number")
        return int(number)

    async def get_balance(self, address: str) -> ChainBalance:
        """TRX and USDT balance. Inactive accounts have no data and a zero balance."""
        data = await self._get_json(f"/v1/accounts/{address}")
        accounts = data.get("data") or []
        if not accounts:
            return ChainBalance()

        account = accounts[0]
        token_raw = 0
        for entry in account.get("trc20", []):
            if self.config.usdt_contract in entry:
                token_raw = int(entry[self.config.usdt_contract])

        return ChainBalance(
            native=from_units(account.get("balance", 0), self.config.native_decimals),
            token=from_units(token_raw, self.config.token_decimals),
        )

    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        """USDT transfers to `address` since `since` (ms timestamp)."""
        min_timestamp = since
        if min_timestamp is None:
            min_timestamp = int((time.time() - self.lookback_hours * 3600) * 1000)

        data = await self._get_json(
            f"/v1/accounts/{address}/transactions/trc20",
            params={
                "only_to": "true",
                "limit": 50,
                "contract_address": self.config.usdt_contract,
                "min_timestamp": min_timestamp,
            },
        )
        if not data.get("success", True):
            raise TransientAdapterError(f"tron: trc20 history failed for {address}: {data.get('error')}")

        transfers = []
        for tx in data.get("data", []):
            if tx.get("to") != address:
                continue
            token_info = tx.get("token_info", {})
            if token_info.get("address", self.config.usdt_contract) != self.config.usdt_contract:
                continue
            decimals = int(token_info.get("decimals", self.config.token_decimals))
            transfers.append(
                IncomingTransfer(
                    tx_hash=tx["transaction_id"],
                    from_address=tx.get("from"),
                    amount=from_units(tx.get("value", "0"), decimals),
                    token_symbol="USDT",
                    confirmations=0,
                    to_address=address,
                )
            )
        return transfers

    async def get_confirmations(self, tx_hash: str) -> int:
        info = await self._post_json("/wallet/gettransactioninfobyid", {"value": tx_hash})
        if not info or "blockNumber" not in info:
            return 0

        receipt_result = info.get("receipt", {}).get("result")
        if info.get("result") == "FAILED" or receipt_result not in (None, "SUCCESS"):
            raise FailedTransactionError(tx_hash, f"failed on chain ({receipt_result or 'FAILED'})")

        current_block = await self.get_current_block()
        return max(0, current_block - int(info["blockNumber"]))

    def _send_trc20(self, key: KeyMaterial, to_address: str, token_amount: int) -> dict:
        priv_key = PrivateKey(key.private_key)
        contract = self._tron.get_contract(self.config.usdt_contract)
        txn = (
            contract.functions.transfer(to_address, token_amount)
            .with_owner(key.address)
            .fee_limit(TRC20_FEE_LIMIT_SUN)
            .build()
            .sign(priv_key)
        )
        return txn.broadcast()

    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        """Send USDT from the key's address. Energy is paid in TRX by the sender."""
        token_amount = to_units(amount, self.config.token_decimals)
        if token_amount <= 0:
            raise BroadcastError("tron: transfer amount rounds to zero")

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._send_trc20, key, to_address, token_amount),
                timeout=self.timeout * 2,
            )
        except asyncio.TimeoutError as e:
            raise TransientAdapterError(f"tron: broadcast timed out for {key.address}") from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise TransientAdapterError(f"tron: {type(e).__name__} during broadcast: {e}") from e
        except Exception as e:
            # tronpy raises its own error types for node rejections
            raise BroadcastError(f"tron: transfer rejected: {e}") from e

        if not result.get("result", False):
            raise BroadcastError(f"tron: transfer rejected: {result.get('message', result)}")

        txid = result.get("txid", "")
        logger.info(f"tron: sent {amount} USDT {key.address} -> {to_address}: {txid}")
        return txid
