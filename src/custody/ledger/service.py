"""Ledger service: the only writer of Balance rows.

Every balance change happens inside LedgerService.transaction(), which:
1. takes the in-process lock on ("balances", user_id),
2. opens a database transaction,
3. re-selects the balance row FOR UPDATE,
4. applies the delta together with its Transaction entry,
5. commits, then releases the lock.

Callers that must create a dependent record atomically with the balance change
(a withdrawal row, a deposit status flip) do it through the yielded LedgerUnit.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Mapping, Optional

from custody.errors import (
    ConfigurationError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from custody.ledger.database import Database
from custody.ledger.models import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    Balance,
    DepositStatus,
    Transaction,
    TransactionType,
)
from custody.ledger.repository import LedgerRepository, quantize

logger = logging.getLogger(__name__)

BALANCE_TABLE = "balances"
DEPOSIT_TABLE = "deposits"


@dataclass
class Discrepancy:
    """User whose balance disagrees with the signed sum of their ledger."""

    user_id: int
    balance: Decimal
    ledger_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.balance - self.ledger_total


def _positive_amount(amount: Decimal) -> Decimal:
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    return amount


class LedgerUnit:
    """Locked unit of work on one user's balance."""

    def __init__(self, repo: LedgerRepository, balance: Balance):
        self.repo = repo
        self.balance = balance

    @property
    def session(self):
        return self.repo.session

    @property
    def user_id(self) -> int:
        return self.balance.user_id

    async def credit(
        self,
        amount: Decimal,
        description: str,
        tx_type: TransactionType = TransactionType.DEPOSIT,
    ) -> Balance:
        """Add to the balance and record the entry."""
        amount = _positive_amount(amount)
        if tx_type not in CREDIT_TYPES:
            raise ValidationError(f"{tx_type.value} is not a credit type")

        self.balance.amount = quantize(self.balance.amount + amount)
        await self.repo.add_transaction(self.user_id, tx_type, amount, description)
        return self.balance

    async def debit(
        self,
        amount: Decimal,
        description: str,
        tx_type: TransactionType = TransactionType.WITHDRAW,
    ) -> Balance:
        """Subtract from the balance and record the entry.

        Raises:
            InsufficientBalanceError: balance is lower than amount; nothing is written
        """
        amount = _positive_amount(amount)
        if tx_type not in DEBIT_TYPES:
            raise ValidationError(f"{tx_type.value} is not a debit type")

        if self.balance.amount < amount:
            raise InsufficientBalanceError(self.user_id, self.balance.amount, amount)

        self.balance.amount = quantize(self.balance.amount - amount)
        await self.repo.add_transaction(self.user_id, tx_type, amount, description)
        return self.balance


class LedgerService:
    """Atomic balance mutation and append-only transaction history."""

    def __init__(self, database: Database, asset_rates: Optional[Mapping[str, Decimal]] = None):
        self.database = database
        self.asset_rates = {k.upper(): Decimal(str(v)) for k, v in (asset_rates or {}).items()}

    @asynccontextmanager
    async def transaction(
        self, user_id: int, operation: str = "ledger"
    ) -> AsyncIterator[LedgerUnit]:
        """Locked unit of work on a user's balance. Commits on clean exit."""
        async with self.database.row_lock(BALANCE_TABLE, user_id, operation=operation):
            async with self.database.session() as session:
                repo = LedgerRepository(session)
                balance = await repo.get_or_create_balance_for_update(user_id)
                yield LedgerUnit(repo, balance)

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        description: str,
        tx_type: TransactionType = TransactionType.DEPOSIT,
    ) -> Decimal:
        """Credit a user. Returns the new balance."""
        async with self.transaction(user_id, operation=f"credit:{tx_type.value}") as unit:
            balance = await unit.credit(amount, description, tx_type)
            new_amount = balance.amount
        logger.info(f"Credited {quantize(amount)} to user {user_id} ({tx_type.value}): {description}")
        return new_amount

    async def debit(
        self,
        user_id: int,
        amount: Decimal,
        description: str,
        tx_type: TransactionType = TransactionType.WITHDRAW,
    ) -> Decimal:
        """Debit a user. Returns the new balance.

        Raises:
            InsufficientBalanceError: nothing was written
        """
        async with self.transaction(user_id, operation=f"debit:{tx_type.value}") as unit:
            balance = await unit.debit(amount, description, tx_type)
            new_amount = balance.amount
        logger.info(f"Debited {quantize(amount)} from user {user_id} ({tx_type.value}): {description}")
        return new_amount

    async def get_balance(self, user_id: int) -> Decimal:
        """Read-only balance lookup. Unknown users have a zero balance."""
        async with self.database.session() as session:
            balance = await LedgerRepository(session).get_balance(user_id)
        return balance.amount if balance else Decimal("0")

    async def list_transactions(self, user_id: int, limit: int = 100) -> list[Transaction]:
        async with self.database.session() as session:
            return await LedgerRepository(session).list_transactions(user_id, limit)

    def asset_value(self, amount: Decimal, token_symbol: str) -> Decimal:
        """USDT value of `amount` of an asset at the configured rate.

        Raises:
            ConfigurationError: no rate configured for a non-USDT asset
        """
        symbol = token_symbol.upper()
        if symbol == "USDT":
            return quantize(amount)
        rate = self.asset_rates.get(symbol)
        if rate is None:
            raise ConfigurationError(f"No USDT rate configured for {symbol}")
        return quantize(amount * rate)

    def deposit_value(self, amount: Decimal, token_symbol: str) -> Decimal:
        """USDT value credited for a deposit."""
        return self.asset_value(amount, token_symbol)

    async def credit_deposit(self, deposit_id: int) -> bool:
        """Credit a confirmed deposit exactly once.

        Re-selects the deposit under its row lock; anything other than
        `confirmed` (already credited by a concurrent pass, failed) is a no-op.
        The balance increment, the ledger entry and the status flip commit
        together.

        Returns:
            True if this call credited the deposit, False if it was a no-op
        """
        async with self.database.session() as session:
            deposit = await LedgerRepository(session).get_deposit(deposit_id)
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")

        async with self.database.row_lock(DEPOSIT_TABLE, deposit_id, operation="credit_deposit"):
            async with self.transaction(deposit.user_id, operation="credit_deposit") as unit:
                locked = await unit.repo.get_deposit_for_update(deposit_id)
                if locked is None or locked.status != DepositStatus.CONFIRMED:
                    logger.debug(
                        f"Deposit {deposit_id} not credited: status is "
                        f"{locked.status if locked else 'missing'}"
                    )
                    return False

                value = self.deposit_value(locked.amount, locked.token_symbol)
                await unit.credit(
                    value,
                    f"Deposit {locked.amount} {locked.token_symbol} on {locked.network} "
                    f"(tx {locked.tx_hash})",
                    TransactionType.DEPOSIT,
                )
                locked.status = DepositStatus.CREDITED
                locked.credited_amount = value
                locked.credited_at = datetime.now(timezone.utc)
                await unit.session.flush()

        logger.info(
            f"Credited deposit {deposit_id} ({deposit.tx_hash}): {value} USDT to user {deposit.user_id}"
        )
        return True

    async def verify_consistency(self) -> list[Discrepancy]:
        """Compare every balance with the signed sum of its ledger entries."""
        async with self.database.session() as session:
            repo = LedgerRepository(session)
            totals = await repo.get_signed_totals()
            balances = {b.user_id: b.amount for b in await repo.list_balances()}

        discrepancies = []
        for user_id in sorted(set(totals) | set(balances)):
            balance = quantize(balances.get(user_id, Decimal("0")))
            ledger_total = totals.get(user_id, quantize(Decimal("0")))
            if balance != ledger_total:
                discrepancies.append(Discrepancy(user_id, balance, ledger_total))

        if discrepancies:
            logger.error(f"Ledger consistency check found {len(discrepancies)} discrepancies")
        return discrepancies
