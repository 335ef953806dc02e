"""Bitcoin adapter using the Blockstream Esplora API.

Native BTC only, no token layer. Deposit addresses are P2WPKH; outgoing
transfers are built and signed with bitcoinlib and pushed with POST /tx.
Docs: https://github.com/Blockstream/esplora/blob/master/API.md
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from bitcoinlib.encoding import EncodingError
from bitcoinlib.keys import BKeyError, Key, deserialize_address
from bitcoinlib.transactions import Transaction, TransactionError

from custody.adapters.base import ChainBalance, HTTPAdapter, IncomingTransfer, from_units, to_units
from custody.errors import BroadcastError, TransientAdapterError
from custody.hdwallet.base import KeyMaterial
from custody.networks import NetworkConfig, NetworkTier

logger = logging.getLogger(__name__)

BTC_DECIMALS = 8
DUST_LIMIT_SAT = 546

# vbytes: overhead + per P2WPKH input + per output
TX_OVERHEAD_VBYTES = 11
P2WPKH_INPUT_VBYTES = 68
OUTPUT_VBYTES = 31

# bitcoinlib network names
BITCOINLIB_NETWORK = {
    NetworkTier.MAINNET: "bitcoin",
    NetworkTier.TESTNET: "testnet",
}


@dataclass
class Utxo:
    """Confirmed spendable output."""

    txid: str
    vout: int
    value: int  # satoshis


def estimate_vsize(n_inputs: int, n_outputs: int) -> int:
    """Virtual size of a P2WPKH spend."""
    return TX_OVERHEAD_VBYTES + P2WPKH_INPUT_VBYTES * n_inputs + OUTPUT_VBYTES * n_outputs


class BitcoinAdapter(HTTPAdapter):
    """BTC deposits and transfers via Esplora."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        fee_api_url: str = "https://mempool.space/api",
        fallback_fee_rate: int = 10,
    ):
        super().__init__(config, tier, timeout=timeout, client=client)
        self.fee_api_url = fee_api_url.rstrip("/")
        self.fallback_fee_rate = fallback_fee_rate

    @property
    def bitcoinlib_network(self) -> str:
        return BITCOINLIB_NETWORK[self.tier]

    def sweepable_amount(self, balance: ChainBalance) -> Decimal:
        return balance.native

    def _check_address(self, address: str) -> None:
        """Raise ValueError unless `address` is a valid address on this tier."""
        try:
            deserialize_address(address, network=self.bitcoinlib_network)
        except (EncodingError, BKeyError) as e:
            raise ValueError(f"Invalid {self.bitcoinlib_network} address {address}: {e}") from e

    async def validate_address(self, address: str) -> bool:
        """Format, checksum and network prefix check."""
        if not await super().validate_address(address):
            return False
        try:
            self._check_address(address)
        except ValueError:
            return False
        return True

    async def get_tip_height(self) -> int:
        response = await self._request("GET", f"{self.base_url}/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise TransientAdapterError(f"bitcoin: invalid tip height {response.text!r}") from e

    async def get_balance(self, address: str) -> ChainBalance:
        """Confirmed plus mempool balance."""
        data = await self._get_json(f"/address/{address}")
        total = 0
        for stats_key in ("chain_stats", "mempool_stats"):
            stats = data.get(stats_key, {})
            total += stats.get("funded_txo_sum", 0) - stats.get("spent_txo_sum", 0)
        return ChainBalance(native=from_units(total, BTC_DECIMALS), token=Decimal("0"))

    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        """Recent transactions paying `address` (newest first, Esplora page size)."""
        txs = await self._get_json(f"/address/{address}/txs")
        if not isinstance(txs, list):
            raise TransientAdapterError(f"bitcoin: malformed history for {address}")

        tip_height = await self.get_tip_height()
        transfers = []
        for tx in txs:
            transfer = self._parse_transaction(tx, address, tip_height)
            if transfer is None:
                continue
            if since is not None and transfer.block_height and transfer.block_height < since:
                continue
            transfers.append(transfer)
        return transfers

    def _parse_transaction(self, tx: dict, address: str, tip_height: int) -> Optional[IncomingTransfer]:
        """Incoming part of an Esplora transaction, None if nothing was received."""
        senders = [
            vin.get("prevout", {}).get("scriptpubkey_address")
            for vin in tx.get("vin", [])
            if vin.get("prevout")
        ]
        # Spends from the address itself (sweeps, change) are not deposits
        if address in senders:
            return None

        received = sum(
            vout.get("value", 0)
            for vout in tx.get("vout", [])
            if vout.get("scriptpubkey_address") == address
        )
        if received <= 0:
            return None

        status = tx.get("status", {})
        block_height = status.get("block_height") if status.get("confirmed") else None
        confirmations = max(0, tip_height - block_height + 1) if block_height else 0

        return IncomingTransfer(
            tx_hash=tx["txid"],
            from_address=senders[0] if senders else None,
            amount=from_units(received, BTC_DECIMALS),
            token_symbol="BTC",
            confirmations=confirmations,
            to_address=address,
            block_height=block_height,
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        response = await self._request("GET", f"{self.base_url}/tx/{tx_hash}", ok_statuses=(200, 404))
        if response.status_code == 404:
            return 0

        status = self._json(response).get("status", {})
        if not status.get("confirmed"):
            return 0
        tip_height = await self.get_tip_height()
        return max(0, tip_height - status["block_height"] + 1)

    async def get_fee_rate(self) -> int:
        """Recommended sat/vB for confirmation within ~30 minutes."""
        try:
            response = await self._request("GET", f"{self.fee_api_url}/v1/fees/recommended")
            rate = int(self._json(response).get("halfHourFee", 0))
        except TransientAdapterError as e:
            logger.warning(f"bitcoin: fee API unavailable ({e}), using {self.fallback_fee_rate} sat/vB")
            return self.fallback_fee_rate
        return rate if rate > 0 else self.fallback_fee_rate

    async def get_utxos(self, address: str) -> list[Utxo]:
        data = await self._get_json(f"/address/{address}/utxo")
        return [
            Utxo(txid=u["txid"], vout=int(u["vout"]), value=int(u["value"]))
            for u in data
            if u.get("status", {}).get("confirmed", False)
        ]

    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        txid, _ = await self._send(key, to_address, amount)
        return txid

    async def sweep(self, key: KeyMaterial, to_address: str, amount: Decimal) -> tuple[str, Decimal]:
        """Spend every confirmed UTXO; the reported amount is net of the fee."""
        txid, sent_sat = await self._send(key, to_address, amount)
        return txid, from_units(sent_sat, BTC_DECIMALS)

    def build_transaction(
        self,
        key: KeyMaterial,
        utxos: list[Utxo],
        outputs: list[tuple[str, int]],
    ) -> Transaction:
        """Signed P2WPKH spend of `utxos` to (address, satoshis) outputs."""
        signing_key = Key(key.private_key.hex(), network=self.bitcoinlib_network)
        tx = Transaction(network=self.bitcoinlib_network, witness_type="segwit")
        for utxo in utxos:
            tx.add_input(
                utxo.txid,
                utxo.vout,
                keys=signing_key,
                value=utxo.value,
                witness_type="segwit",
            )
        for address, value in outputs:
            tx.add_output(value, address=address)

        tx.sign()
        if not tx.verify():
            raise TransactionError("signature verification failed")
        return tx

    async def _send(self, key: KeyMaterial, to_address: str, amount: Decimal) -> tuple[str, int]:
        """Send BTC from a P2WPKH key. Returns (txid, satoshis paid to `to_address`).

        Largest-first coin selection. When `amount` covers every confirmed
        UTXO (a sweep), the fee comes out of the sent amount; otherwise it is
        paid on top and change above the dust limit returns to the sender.
        """
        amount_sat = to_units(amount, BTC_DECIMALS)
        if amount_sat <= DUST_LIMIT_SAT:
            raise BroadcastError(f"bitcoin: amount {amount} is below the dust limit")

        try:
            self._check_address(to_address)
        except ValueError as e:
            raise BroadcastError(f"bitcoin: {e}") from e

        utxos = sorted(await self.get_utxos(key.address), key=lambda u: u.value, reverse=True)
        available = sum(u.value for u in utxos)
        if not utxos:
            raise BroadcastError(f"bitcoin: no confirmed UTXOs on {key.address}")

        fee_rate = await self.get_fee_rate()

        if amount_sat >= available:
            # Sweep: spend everything, fee deducted from the single output
            selected = utxos
            fee = fee_rate * estimate_vsize(len(selected), 1)
            send_value = available - fee
            if send_value <= DUST_LIMIT_SAT:
                raise BroadcastError(
                    f"bitcoin: balance {available} sat does not cover fee {fee} sat"
                )
            outputs = [(to_address, send_value)]
        else:
            selected, total = [], 0
            fee = 0
            for utxo in utxos:
                selected.append(utxo)
                total += utxo.value
                fee = fee_rate * estimate_vsize(len(selected), 2)
                if total >= amount_sat + fee:
                    break
            if total < amount_sat + fee:
                raise BroadcastError(
                    f"bitcoin: insufficient funds on {key.address}: "
                    f"have {available} sat, need {amount_sat + fee} sat"
                )
            send_value = amount_sat
            outputs = [(to_address, send_value)]
            change = total - amount_sat - fee
            if change > DUST_LIMIT_SAT:
                outputs.append((key.address, change))

        try:
            tx = self.build_transaction(key, selected, outputs)
        except (TransactionError, EncodingError, BKeyError) as e:
            raise BroadcastError(f"bitcoin: could not sign transaction: {e}") from e

        response = await self._request(
            "POST",
            f"{self.base_url}/tx",
            content=tx.raw_hex(),
            headers={"Content-Type": "text/plain"},
            ok_statuses=(200, 400),
        )
        if response.status_code == 400:
            raise BroadcastError(f"bitcoin: transaction rejected: {response.text.strip()}")

        txid = response.text.strip() or tx.txid
        logger.info(
            f"bitcoin: sent {from_units(send_value, BTC_DECIMALS)} BTC "
            f"{key.address} -> {to_address} (fee {fee} sat): {txid}"
        )
        return txid, send_value
