"""Ledger module for balances, deposits, withdrawals and the transaction log."""

from custody.ledger.database import Database
from custody.ledger.models import (
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
from custody.ledger.repository import LedgerRepository
from custody.ledger.service import Discrepancy, LedgerService, LedgerUnit

__all__ = [
    # Models
    "Balance",
    "Deposit",
    "HDIndexCounter",
    "Transaction",
    "Wallet",
    "Withdrawal",
    # Enums
    "DepositStatus",
    "TransactionType",
    "WithdrawalStatus",
    # Database
    "Database",
    "LedgerRepository",
    # Service
    "Discrepancy",
    "LedgerService",
    "LedgerUnit",
]
