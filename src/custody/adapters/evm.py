"""EVM adapter for Ethereum, BSC and Polygon USDT.

Reads go through raw JSON-RPC over httpx. Transfers are built with a web3
contract object, signed locally with eth_account, and sent with
eth_sendRawTransaction.

Confirmations = current block - block containing the transfer.
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx
from eth_account import Account
from web3 import Web3

from custody.adapters.base import (
    ChainBalance,
    HTTPAdapter,
    IncomingTransfer,
    JsonRpcError,
    from_units,
    to_units,
)
from custody.errors import BroadcastError, FailedTransactionError, TransientAdapterError
from custody.hdwallet.base import KeyMaterial
from custody.networks import NetworkConfig, NetworkTier

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
BALANCE_OF_SELECTOR = "0x70a08231"
ERC20_GAS_LIMIT = 100_000

ERC20_TRANSFER_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    }
]


def _pad_address(address: str) -> str:
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def _hex_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


class EVMAdapter(HTTPAdapter):
    """ERC-20 USDT on an EVM chain."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        lookback_blocks: int = 5000,
    ):
        super().__init__(config, tier, timeout=timeout, client=client)
        if not config.usdt_contract or config.chain_id is None:
            raise ValueError(f"{config.network.value}: USDT contract and chain id are required")

        self.lookback_blocks = lookback_blocks
        self.contract_address = Web3.to_checksum_address(config.usdt_contract)
        self._w3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": timeout}))
        self._contract = self._w3.eth.contract(address=self.contract_address, abi=ERC20_TRANSFER_ABI)

    async def get_block_number(self) -> int:
        return _hex_int(await self._rpc("eth_blockNumber"))

    async def get_balance(self, address: str) -> ChainBalance:
        """Native coin and USDT balance."""
        native_wei = _hex_int(await self._rpc("eth_getBalance", [address, "latest"]))
        call = {"to": self.contract_address, "data": BALANCE_OF_SELECTOR + _pad_address(address)[2:]}
        token_raw = _hex_int(await self._rpc("eth_call", [call, "latest"]))
        return ChainBalance(
            native=from_units(native_wei, self.config.native_decimals),
            token=from_units(token_raw, self.config.token_decimals),
        )

    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        """USDT Transfer events to `address` since block `since`."""
        current_block = await self.get_block_number()
        from_block = since if since is not None else max(0, current_block - self.lookback_blocks)

        logs = await self._rpc(
            "eth_getLogs",
            [
                {
                    "address": self.contract_address,
                    "topics": [TRANSFER_TOPIC, None, _pad_address(address)],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(current_block),
                }
            ],
        )
        if not isinstance(logs, list):
            raise TransientAdapterError(f"{self.network.value}: malformed eth_getLogs result")

        transfers = []
        for log in logs:
            if log.get("removed"):
                continue
            topics = log.get("topics", [])
            if len(topics) < 3:
                continue
            block_number = _hex_int(log.get("blockNumber"))
            transfers.append(
                IncomingTransfer(
                    tx_hash=log["transactionHash"],
                    from_address=Web3.to_checksum_address("0x" + topics[1][-40:]),
                    amount=from_units(_hex_int(log.get("data")), self.config.token_decimals),
                    token_symbol="USDT",
                    confirmations=max(0, current_block - block_number) if block_number else 0,
                    to_address=address,
                    block_height=block_number or None,
                )
            )
        return transfers

    async def get_confirmations(self, tx_hash: str) -> int:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt or not receipt.get("blockNumber"):
            return 0
        if receipt.get("status") == "0x0":
            raise FailedTransactionError(tx_hash, "reverted")

        current_block = await self.get_block_number()
        return max(0, current_block - _hex_int(receipt["blockNumber"]))

    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        """Send USDT from the key's address. The sender pays gas in the native coin."""
        token_amount = to_units(amount, self.config.token_decimals)
        if token_amount <= 0:
            raise BroadcastError(f"{self.network.value}: transfer amount rounds to zero")

        account = Account.from_key(key.private_key)
        gas_price = _hex_int(await self._rpc("eth_gasPrice"))
        native_wei = _hex_int(await self._rpc("eth_getBalance", [account.address, "latest"]))
        gas_cost = gas_price * ERC20_GAS_LIMIT
        if native_wei < gas_cost:
            raise BroadcastError(
                f"{self.network.value}: insufficient gas on {account.address}: "
                f"have {from_units(native_wei, 18)}, need {from_units(gas_cost, 18)}"
            )

        nonce = _hex_int(await self._rpc("eth_getTransactionCount", [account.address, "pending"]))

        tx = self._contract.functions.transfer(
            Web3.to_checksum_address(to_address),
            token_amount,
        ).build_transaction({
            "from": account.address,
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": ERC20_GAS_LIMIT,
            "chainId": self.config.chain_id,
        })

        signed_tx = account.sign_transaction(tx)
        try:
            tx_hash = await self._rpc("eth_sendRawTransaction", [Web3.to_hex(signed_tx.raw_transaction)])
        except JsonRpcError as e:
            raise BroadcastError(str(e)) from e

        logger.info(f"{self.network.value}: sent {amount} USDT {account.address} -> {to_address}: {tx_hash}")
        return tx_hash
