"""Solana adapter for SPL USDT and native SOL deposits.

Reads use plain JSON-RPC over httpx. Transfers are assembled and signed with
solders: an idempotent associated-token-account creation for the recipient
followed by a TransferChecked from the sender's token account.
"""

import base64
import logging
from decimal import Decimal
from typing import Optional

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

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

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

SOL_DECIMALS = 9
FINALIZED_CONFIRMATIONS = 32
MIN_FEE_LAMPORTS = 10_000

# Instruction discriminators
ATA_CREATE_IDEMPOTENT = 1
TOKEN_TRANSFER_CHECKED = 12


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Associated token account of `owner` for `mint`."""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([ATA_CREATE_IDEMPOTENT]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(associated_token_address(owner, mint), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def transfer_checked_ix(
    source: Pubkey, mint: Pubkey, destination: Pubkey, owner: Pubkey, amount: int, decimals: int
) -> Instruction:
    data = bytes([TOKEN_TRANSFER_CHECKED]) + amount.to_bytes(8, "little") + bytes([decimals])
    return Instruction(
        TOKEN_PROGRAM_ID,
        data,
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ],
    )


class SolanaAdapter(HTTPAdapter):
    """SPL USDT (and native SOL detection) on Solana."""

    def __init__(
        self,
        config: NetworkConfig,
        tier: NetworkTier = NetworkTier.MAINNET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        signature_limit: int = 25,
    ):
        super().__init__(config, tier, timeout=timeout, client=client)
        if not config.usdt_contract:
            raise ValueError("solana: USDT mint is required")
        self.mint = Pubkey.from_string(config.usdt_contract)
        self.signature_limit = signature_limit

    async def validate_address(self, address: str) -> bool:
        if not await super().validate_address(address):
            return False
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    async def get_balance(self, address: str) -> ChainBalance:
        lamports = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        accounts = await self._rpc(
            "getTokenAccountsByOwner",
            [address, {"mint": self.config.usdt_contract}, {"encoding": "jsonParsed"}],
        )

        token_raw = 0
        for entry in (accounts or {}).get("value", []):
            info = entry.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            token_raw += int(info.get("tokenAmount", {}).get("amount", 0))

        return ChainBalance(
            native=from_units((lamports or {}).get("value", 0), SOL_DECIMALS),
            token=from_units(token_raw, self.config.token_decimals),
        )

    async def list_incoming_transfers(
        self, address: str, since: Optional[int] = None
    ) -> list[IncomingTransfer]:
        """Deposits among the latest signatures touching `address`.

        `since` is a slot lower bound. A transaction that moved both SOL and
        USDT into the address is reported once, as USDT.
        """
        signatures = await self._rpc(
            "getSignaturesForAddress", [address, {"limit": self.signature_limit}]
        )
        if not isinstance(signatures, list):
            raise TransientAdapterError(f"solana: malformed signature list for {address}")

        transfers = []
        for sig in signatures:
            if sig.get("err") is not None:
                continue
            if since is not None and sig.get("slot", 0) < since:
                continue

            tx = await self._rpc(
                "getTransaction",
                [
                    sig["signature"],
                    {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"},
                ],
            )
            if not tx or not tx.get("meta"):
                continue
            transfer = self._parse_transaction(sig["signature"], tx, address)
            if transfer is not None:
                transfers.append(transfer)
        return transfers

    def _parse_transaction(self, signature: str, tx: dict, address: str) -> Optional[IncomingTransfer]:
        meta = tx["meta"]
        if meta.get("err") is not None:
            return None

        keys = [
            k["pubkey"] if isinstance(k, dict) else k
            for k in tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
        ]
        sender = keys[0] if keys else None
        slot = tx.get("slot")

        token_delta = self._token_delta(meta, address)
        if token_delta > 0:
            return IncomingTransfer(
                tx_hash=signature,
                from_address=sender,
                amount=from_units(token_delta, self.config.token_decimals),
                token_symbol="USDT",
                to_address=address,
                block_height=slot,
            )

        if address in keys:
            i = keys.index(address)
            lamports = meta["postBalances"][i] - meta["preBalances"][i]
            if lamports > 0:
                return IncomingTransfer(
                    tx_hash=signature,
                    from_address=sender,
                    amount=from_units(lamports, SOL_DECIMALS),
                    token_symbol=self.config.native_symbol,
                    to_address=address,
                    block_height=slot,
                )
        return None

    def _token_delta(self, meta: dict, owner: str) -> int:
        """Net change of `owner`'s USDT token accounts, in base units."""
        def owned(balances):
            return {
                b["accountIndex"]: int(b["uiTokenAmount"]["amount"])
                for b in balances or []
                if b.get("owner") == owner and b.get("mint") == self.config.usdt_contract
            }

        pre = owned(meta.get("preTokenBalances"))
        post = owned(meta.get("postTokenBalances"))
        return sum(post.values()) - sum(pre.get(i, 0) for i in post) - sum(
            v for i, v in pre.items() if i not in post
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        result = await self._rpc(
            "getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}]
        )
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if status is None:
            return 0
        if status.get("err") is not None:
            raise FailedTransactionError(tx_hash, f"failed on chain ({status['err']})")

        confirmations = status.get("confirmations")
        if confirmations is None:
            return FINALIZED_CONFIRMATIONS if status.get("confirmationStatus") == "finalized" else 0
        return int(confirmations)

    async def broadcast_transfer(self, key: KeyMaterial, to_address: str, amount: Decimal) -> str:
        """Send USDT from the key's token account. The sender pays fees and ATA rent in SOL."""
        token_amount = to_units(amount, self.config.token_decimals)
        if token_amount <= 0:
            raise BroadcastError("solana: transfer amount rounds to zero")

        keypair = Keypair.from_seed(key.private_key)
        owner = keypair.pubkey()
        try:
            recipient = Pubkey.from_string(to_address)
        except ValueError as e:
            raise BroadcastError(f"solana: invalid recipient {to_address}") from e

        lamports = (await self._rpc("getBalance", [str(owner), {"commitment": "confirmed"}]) or {}).get("value", 0)
        if lamports < MIN_FEE_LAMPORTS:
            raise BroadcastError(
                f"solana: insufficient SOL for fees on {owner}: have {from_units(lamports, SOL_DECIMALS)}"
            )

        latest = await self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        blockhash = Hash.from_string(latest["value"]["blockhash"])

        instructions = [
            create_ata_idempotent_ix(owner, recipient, self.mint),
            transfer_checked_ix(
                associated_token_address(owner, self.mint),
                self.mint,
                associated_token_address(recipient, self.mint),
                owner,
                token_amount,
                self.config.token_decimals,
            ),
        ]
        message = Message.new_with_blockhash(instructions, owner, blockhash)
        tx = Transaction([keypair], message, blockhash)

        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    base64.b64encode(bytes(tx)).decode(),
                    {"encoding": "base64", "preflightCommitment": "confirmed"},
                ],
            )
        except JsonRpcError as e:
            raise BroadcastError(str(e)) from e

        logger.info(f"solana: sent {amount} USDT {owner} -> {to_address}: {signature}")
        return signature
