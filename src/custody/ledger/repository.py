"""Repository for ledger operations.

Query helpers only. Status rules and locking order live in the services;
methods ending in _for_update must run under the matching row lock.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from custody.ledger.models import (
    AMOUNT_QUANTUM,
    DEBIT_TYPES,
    Balance,
    Deposit,
    DepositStatus,
    HDIndexCounter,
    Transaction,
    TransactionType,
    Wallet,
    Withdrawal,
    WithdrawalStatus,
)

COUNTER_ROW_ID = 1


def quantize(amount: Decimal) -> Decimal:
    """Round an amount to ledger precision."""
    return Decimal(str(amount)).quantize(AMOUNT_QUANTUM)


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Wallet operations
    async def get_wallet(self, wallet_id: int) -> Optional[Wallet]:
        return await self.session.get(Wallet, wallet_id)

    async def get_current_wallet(self, user_id: int, network: str) -> Optional[Wallet]:
        """Get the wallet with the highest index for user/network."""
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == user_id, Wallet.network == network)
            .order_by(Wallet.address_index.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_wallet_by_address(self, address: str) -> Optional[Wallet]:
        stmt = select(Wallet).where(Wallet.deposit_address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_wallets(
        self, network: Optional[str] = None, user_id: Optional[int] = None
    ) -> list[Wallet]:
        """List wallets, optionally filtered by network and/or user."""
        stmt = select(Wallet).order_by(Wallet.id)
        if network is not None:
            stmt = stmt.where(Wallet.network == network)
        if user_id is not None:
            stmt = stmt.where(Wallet.user_id == user_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_wallet(
        self,
        user_id: int,
        network: str,
        address_index: int,
        deposit_address: str,
        derivation_path: str,
    ) -> Wallet:
        wallet = Wallet(
            user_id=user_id,
            network=network,
            address_index=address_index,
            deposit_address=deposit_address,
            derivation_path=derivation_path,
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def allocate_address_index(self) -> int:
        """Atomically allocate the next global address index.

        Index 0 is never handed out to users.
        """
        stmt = (
            select(HDIndexCounter)
            .where(HDIndexCounter.id == COUNTER_ROW_ID)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        counter = result.scalar_one_or_none()

        if counter is None:
            counter = HDIndexCounter(id=COUNTER_ROW_ID, last_index=1)
            self.session.add(counter)
            await self.session.flush()
            return 1

        counter.last_index += 1
        await self.session.flush()
        return counter.last_index

    # Deposit operations
    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        return await self.session.get(Deposit, deposit_id)

    async def get_deposit_for_update(self, deposit_id: int) -> Optional[Deposit]:
        """Re-select a deposit with a row lock and fresh state."""
        stmt = (
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_by_tx_hash(self, tx_hash: str) -> Optional[Deposit]:
        stmt = select(Deposit).where(Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_deposit(
        self,
        wallet: Wallet,
        tx_hash: str,
        amount: Decimal,
        token_symbol: str,
        required_confirmations: int,
        from_address: Optional[str] = None,
        confirmations: int = 0,
    ) -> Deposit:
        deposit = Deposit(
            tx_hash=tx_hash,
            wallet_id=wallet.id,
            user_id=wallet.user_id,
            network=wallet.network,
            from_address=from_address,
            amount=quantize(amount),
            token_symbol=token_symbol,
            confirmations=confirmations,
            required_confirmations=required_confirmations,
            status=DepositStatus.PENDING,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def list_open_deposits(self) -> list[Deposit]:
        """Deposits that are neither credited nor failed."""
        stmt = (
            select(Deposit)
            .where(
                Deposit.status.in_(
                    [
                        DepositStatus.PENDING.value,
                        DepositStatus.CONFIRMING.value,
                        DepositStatus.CONFIRMED.value,
                    ]
                )
            )
            .order_by(Deposit.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_deposits(
        self, user_id: Optional[int] = None, status: Optional[DepositStatus] = None
    ) -> list[Deposit]:
        stmt = select(Deposit).order_by(Deposit.id)
        if user_id is not None:
            stmt = stmt.where(Deposit.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Deposit.status == status.value)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_unswept_deposits(self, wallet_id: int) -> list[Deposit]:
        """Credited deposits of a wallet that no sweep has picked up yet."""
        stmt = select(Deposit).where(
            Deposit.wallet_id == wallet_id,
            Deposit.status == DepositStatus.CREDITED.value,
            Deposit.sweep_tx_hash.is_(None),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Balance operations
    async def get_balance(self, user_id: int) -> Optional[Balance]:
        stmt = select(Balance).where(Balance.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_balance_for_update(self, user_id: int) -> Balance:
        """Get the user's balance row locked, creating it at zero if missing."""
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()

        if balance is None:
            balance = Balance(user_id=user_id, amount=Decimal("0"))
            self.session.add(balance)
            await self.session.flush()
        return balance

    async def list_balances(self) -> list[Balance]:
        result = await self.session.execute(select(Balance).order_by(Balance.user_id))
        return list(result.scalars().all())

    # Transaction (ledger entry) operations
    async def add_transaction(
        self,
        user_id: int,
        tx_type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> Transaction:
        entry = Transaction(
            user_id=user_id,
            type=tx_type,
            amount=quantize(amount),
            description=description,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_transactions(self, user_id: int, limit: int = 100) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_signed_totals(self) -> dict[int, Decimal]:
        """Sum of signed ledger amounts per user."""
        signed = case(
            (Transaction.type.in_([t.value for t in DEBIT_TYPES]), -Transaction.amount),
            else_=Transaction.amount,
        )
        stmt = select(Transaction.user_id, func.sum(signed)).group_by(Transaction.user_id)
        result = await self.session.execute(stmt)
        return {user_id: quantize(total or 0) for user_id, total in result.all()}

    # Withdrawal operations
    async def create_withdrawal(
        self,
        user_id: int,
        network: str,
        to_address: str,
        amount: Decimal,
        fee: Decimal,
        token_symbol: str,
        status: WithdrawalStatus = WithdrawalStatus.PENDING,
        usdt_amount: Optional[Decimal] = None,
        usdt_fee: Optional[Decimal] = None,
    ) -> Withdrawal:
        """Insert a withdrawal. USDT values default to amount and fee."""
        withdrawal = Withdrawal(
            user_id=user_id,
            network=network,
            to_address=to_address,
            amount=quantize(amount),
            fee=quantize(fee),
            token_symbol=token_symbol,
            usdt_amount=quantize(amount if usdt_amount is None else usdt_amount),
            usdt_fee=quantize(fee if usdt_fee is None else usdt_fee),
            status=status,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        return await self.session.get(Withdrawal, withdrawal_id)

    async def get_withdrawal_for_update(self, withdrawal_id: int) -> Optional[Withdrawal]:
        stmt = (
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_withdrawals(
        self,
        statuses: Optional[Sequence[WithdrawalStatus]] = None,
        user_id: Optional[int] = None,
    ) -> list[Withdrawal]:
        stmt = select(Withdrawal).order_by(Withdrawal.id)
        if statuses:
            stmt = stmt.where(Withdrawal.status.in_([s.value for s in statuses]))
        if user_id is not None:
            stmt = stmt.where(Withdrawal.user_id == user_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_withdrawal_total_since(self, user_id: int, since: datetime) -> Decimal:
        """USDT value of non-rejected, non-failed withdrawals created after `since`."""
        stmt = select(func.coalesce(func.sum(Withdrawal.usdt_amount), 0)).where(
            Withdrawal.user_id == user_id,
            Withdrawal.created_at >= since,
            Withdrawal.status.not_in(
                [WithdrawalStatus.REJECTED.value, WithdrawalStatus.FAILED.value]
            ),
        )
        result = await self.session.execute(stmt)
        return quantize(result.scalar_one() or 0)
