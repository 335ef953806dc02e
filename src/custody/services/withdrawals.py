"""Withdrawal processor.

Requests are validated and debited in one locked unit of work: the daily
total is read, the balance is debited (amount + network fee) and the
Withdrawal row is created together, so a rejected request leaves nothing
behind. Limits and the debit are USDT; native-asset (BTC) withdrawals are
valued at ASSET_RATES and the USDT figures are stored on the row for refunds.

State machine:
    pending -> approved -> processing -> completed
    pending -> rejected                 (refund the USDT debited)
    any non-terminal -> failed          (refund the USDT debited)

Every transition re-selects the withdrawal under its row lock before
checking the status, and refunds take the balance lock after it.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Mapping, Optional

from custody.adapters.base import NetworkAdapter
from custody.config import Settings
from custody.errors import (
    BroadcastError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    TransientAdapterError,
    ValidationError,
)
from custody.hdwallet import AddressDeriver
from custody.ledger.database import Database
from custody.ledger.models import TransactionType, Withdrawal, WithdrawalStatus
from custody.ledger.repository import LedgerRepository, quantize
from custody.ledger.service import LedgerService
from custody.networks import NetworkConfig, NetworkId
from custody.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

WITHDRAWAL_TABLE = "withdrawals"
DAILY_WINDOW = timedelta(hours=24)


class WithdrawalProcessor:
    """Validates, debits and tracks user withdrawals."""

    def __init__(
        self,
        database: Database,
        ledger: LedgerService,
        adapters: Mapping[NetworkId, NetworkAdapter],
        settings: Settings,
        deriver: Optional[AddressDeriver] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.settings = settings
        self.deriver = deriver
        self.per_transaction_limit = quantize(settings.per_transaction_limit)
        self.daily_total_limit = quantize(settings.daily_total_limit)
        self.auto_approve_limit = quantize(settings.auto_approve_limit)
        self.configs: dict[NetworkId, NetworkConfig] = {
            network: settings.get_network_config(network) for network in self.adapters
        }

    def _adapter(self, network: NetworkId) -> NetworkAdapter:
        adapter = self.adapters.get(network)
        if adapter is None:
            raise ValidationError(f"Network {network.value} is not enabled")
        return adapter

    # ======================
    # Requests
    # ======================

    async def request(
        self,
        user_id: int,
        network: NetworkId,
        to_address: str,
        amount: Decimal,
    ) -> Withdrawal:
        """Create a withdrawal and debit amount + fee.

        Raises:
            ValidationError: amount, daily limit or address check failed
            InsufficientBalanceError: balance below amount + fee
            ConfigurationError: no USDT rate for a native-asset withdrawal
        """
        try:
            network = NetworkId(network)
        except ValueError as e:
            raise ValidationError(f"Unknown network: {network}") from e

        amount = quantize(amount)
        if amount <= 0:
            raise ValidationError(f"Withdrawal amount must be positive, got {amount}")

        adapter = self._adapter(network)
        config = self.configs[network]
        fee = quantize(config.withdrawal_fee)

        # Limits and the debit are in USDT; native assets convert at ASSET_RATES
        usdt_amount = self.ledger.asset_value(amount, config.asset_symbol)
        usdt_fee = self.ledger.asset_value(fee, config.asset_symbol)
        if usdt_amount > self.per_transaction_limit:
            raise ValidationError(
                f"Amount {usdt_amount} USDT exceeds the per-transaction limit of "
                f"{self.per_transaction_limit}"
            )
        status = (
            WithdrawalStatus.APPROVED
            if usdt_amount <= self.auto_approve_limit
            else WithdrawalStatus.PENDING
        )

        async with self.ledger.transaction(user_id, operation="withdrawal_request") as unit:
            since = datetime.now(timezone.utc) - DAILY_WINDOW
            daily_total = await unit.repo.get_withdrawal_total_since(user_id, since)
            if daily_total + usdt_amount > self.daily_total_limit:
                raise ValidationError(
                    f"Daily limit exceeded: {daily_total} already withdrawn in 24h, "
                    f"limit {self.daily_total_limit}"
                )

            if not await adapter.validate_address(to_address):
                raise ValidationError(f"Invalid {network.value} address: {to_address}")

            await unit.debit(
                usdt_amount + usdt_fee,
                f"Withdrawal {amount} {config.asset_symbol} to {to_address} on {network.value} (fee {fee})",
                TransactionType.WITHDRAW,
            )
            withdrawal = await unit.repo.create_withdrawal(
                user_id=user_id,
                network=network.value,
                to_address=to_address,
                amount=amount,
                fee=fee,
                token_symbol=config.asset_symbol,
                status=status,
                usdt_amount=usdt_amount,
                usdt_fee=usdt_fee,
            )

        logger.info(
            f"Withdrawal {withdrawal.id} requested: {amount} {config.asset_symbol} "
            f"for user {user_id} on {network.value} ({status.value})"
        )
        return withdrawal

    async def daily_total(self, user_id: int) -> Decimal:
        """Non-rejected, non-failed withdrawals created in the trailing 24h."""
        async with self.database.session() as session:
            return await LedgerRepository(session).get_withdrawal_total_since(
                user_id, datetime.now(timezone.utc) - DAILY_WINDOW
            )

    async def get_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        async with self.database.session() as session:
            withdrawal = await LedgerRepository(session).get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def list_pending(self) -> list[Withdrawal]:
        """Withdrawals waiting for admin review."""
        async with self.database.session() as session:
            return await LedgerRepository(session).list_withdrawals([WithdrawalStatus.PENDING])

    async def list_approved(self) -> list[Withdrawal]:
        async with self.database.session() as session:
            return await LedgerRepository(session).list_withdrawals([WithdrawalStatus.APPROVED])

    # ======================
    # Transitions
    # ======================

    async def _transition(
        self,
        withdrawal_id: int,
        allowed_from: tuple[WithdrawalStatus, ...],
        target: WithdrawalStatus,
        **changes,
    ) -> Withdrawal:
        """Move a withdrawal to `target` if its locked current status allows it."""
        async with self.database.row_lock(WITHDRAWAL_TABLE, withdrawal_id, operation=target.value):
            async with self.database.session() as session:
                withdrawal = await LedgerRepository(session).get_withdrawal_for_update(withdrawal_id)
                if withdrawal is None:
                    raise NotFoundError(f"Withdrawal {withdrawal_id} not found")

                current = WithdrawalStatus(withdrawal.status)
                if current not in allowed_from:
                    raise InvalidStateError(
                        f"Withdrawal {withdrawal_id} is {current.value}, cannot move to {target.value}"
                    )
                withdrawal.status = target
                for key, value in changes.items():
                    setattr(withdrawal, key, value)

        logger.info(f"Withdrawal {withdrawal_id}: {current.value} -> {target.value}")
        return withdrawal

    async def _refund_transition(
        self,
        withdrawal_id: int,
        allowed_from: tuple[WithdrawalStatus, ...],
        target: WithdrawalStatus,
        description: str,
        **changes,
    ) -> Withdrawal:
        """Terminal transition with a refund of amount + fee, applied once.

        The status check, the refund and the status flip commit together
        under the withdrawal lock, then the balance lock.
        """
        async with self.database.session() as session:
            existing = await LedgerRepository(session).get_withdrawal(withdrawal_id)
        if existing is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")

        async with self.database.row_lock(WITHDRAWAL_TABLE, withdrawal_id, operation=target.value):
            async with self.ledger.transaction(existing.user_id, operation=f"withdrawal_{target.value}") as unit:
                withdrawal = await unit.repo.get_withdrawal_for_update(withdrawal_id)
                current = WithdrawalStatus(withdrawal.status)
                if current not in allowed_from:
                    raise InvalidStateError(
                        f"Withdrawal {withdrawal_id} is {current.value}, cannot move to {target.value}"
                    )

                refund = quantize(withdrawal.total_cost)
                # Refunds are deposit-type credits
                await unit.credit(refund, description, TransactionType.DEPOSIT)
                withdrawal.status = target
                withdrawal.processed_at = datetime.now(timezone.utc)
                for key, value in changes.items():
                    setattr(withdrawal, key, value)
                await unit.session.flush()

        logger.info(
            f"Withdrawal {withdrawal_id}: {current.value} -> {target.value}, "
            f"refunded {refund} to user {withdrawal.user_id}"
        )
        return withdrawal

    async def approve(self, withdrawal_id: int, reviewed_by: Optional[str] = None) -> Withdrawal:
        return await self._transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING,),
            WithdrawalStatus.APPROVED,
            reviewed_by=reviewed_by,
        )

    async def reject(
        self, withdrawal_id: int, note: str = "", reviewed_by: Optional[str] = None
    ) -> Withdrawal:
        """Reject a pending withdrawal and refund amount + fee.

        Raises:
            InvalidStateError: the withdrawal was already acted upon
        """
        return await self._refund_transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING,),
            WithdrawalStatus.REJECTED,
            f"Refund for rejected withdrawal {withdrawal_id}",
            admin_note=note,
            reviewed_by=reviewed_by,
        )

    async def mark_processing(self, withdrawal_id: int) -> Withdrawal:
        return await self._transition(
            withdrawal_id, (WithdrawalStatus.APPROVED,), WithdrawalStatus.PROCESSING
        )

    async def mark_completed(self, withdrawal_id: int, tx_hash: str) -> Withdrawal:
        """Record the payout transaction. Accepted from approved for external payouts."""
        if not tx_hash:
            raise ValidationError("tx_hash is required to complete a withdrawal")
        return await self._transition(
            withdrawal_id,
            (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING),
            WithdrawalStatus.COMPLETED,
            tx_hash=tx_hash,
            processed_at=datetime.now(timezone.utc),
        )

    async def mark_failed(self, withdrawal_id: int, reason: str) -> Withdrawal:
        """Fail a non-terminal withdrawal and refund amount + fee."""
        return await self._refund_transition(
            withdrawal_id,
            (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING),
            WithdrawalStatus.FAILED,
            f"Refund for failed withdrawal {withdrawal_id}",
            admin_note=reason,
        )

    # ======================
    # Payout
    # ======================

    async def execute(self, withdrawal_id: int) -> Withdrawal:
        """Pay out an approved withdrawal from the seed-derived hot wallet.

        - success: completed with tx_hash
        - BroadcastError: failed and refunded
        - TransientAdapterError: left in processing for manual resolution

        Raises:
            ConfigurationError: hot wallet not configured or not derivable
        """
        withdrawal = await self.get_withdrawal(withdrawal_id)
        network = NetworkId(withdrawal.network)
        adapter = self._adapter(network)
        key = self._hot_wallet_key(network)

        withdrawal = await self.mark_processing(withdrawal_id)
        try:
            tx_hash = await adapter.broadcast_transfer(key, withdrawal.to_address, withdrawal.amount)
        except BroadcastError as e:
            logger.error(f"Withdrawal {withdrawal_id} broadcast rejected: {e}")
            return await self.mark_failed(withdrawal_id, str(e))
        except TransientAdapterError as e:
            logger.error(
                f"Withdrawal {withdrawal_id} broadcast outcome unknown, left in processing: {e}"
            )
            return withdrawal

        return await self.mark_completed(withdrawal_id, tx_hash)

    def _hot_wallet_key(self, network: NetworkId):
        index = self.settings.hot_wallet_index
        hot_wallet = self.settings.get_hot_wallet(network)
        if self.deriver is None or index is None:
            raise ConfigurationError("HOT_WALLET_INDEX and WALLET_MNEMONIC are required for payouts")
        if not hot_wallet:
            raise ConfigurationError(f"No hot wallet configured for {network.value}")

        key = self.deriver.derive_private_key(network, index)
        if key.address != hot_wallet:
            raise ConfigurationError(
                f"Derived {network.value} hot wallet {key.address} does not match "
                f"configured hot wallet {hot_wallet}"
            )
        return key

    async def process_approved(self) -> list[Withdrawal]:
        """Execute every approved withdrawal. Errors are contained per withdrawal."""
        processed = []
        for withdrawal in await self.list_approved():
            try:
                processed.append(await self.execute(withdrawal.id))
            except (ConfigurationError, InvalidStateError, LockTimeoutError) as e:
                logger.error(f"Withdrawal {withdrawal.id} not executed: {e}")
        return processed
