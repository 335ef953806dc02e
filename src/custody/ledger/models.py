"""SQLAlchemy models for the ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Fixed-point precision for every monetary column
AMOUNT = Numeric(20, 8)
AMOUNT_QUANTUM = Decimal("0.00000001")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit. Moves forward only."""

    PENDING = "pending"          # Seen on chain, no confirmations yet
    CONFIRMING = "confirming"    # Below required confirmations
    CONFIRMED = "confirmed"      # Enough confirmations, not yet credited
    CREDITED = "credited"        # Balance credited (terminal)
    FAILED = "failed"            # Reverted or rejected on chain (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (DepositStatus.CREDITED, DepositStatus.FAILED)


DEPOSIT_STATUS_ORDER = {
    DepositStatus.PENDING: 0,
    DepositStatus.CONFIRMING: 1,
    DepositStatus.CONFIRMED: 2,
    DepositStatus.CREDITED: 3,
}


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal."""

    PENDING = "pending"          # Waiting for admin review
    APPROVED = "approved"        # Approved (manually or automatically)
    PROCESSING = "processing"    # Payout in flight
    COMPLETED = "completed"      # Paid out (terminal)
    REJECTED = "rejected"        # Rejected by admin, refunded (terminal)
    FAILED = "failed"            # Payout failed, refunded (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (
            WithdrawalStatus.COMPLETED,
            WithdrawalStatus.REJECTED,
            WithdrawalStatus.FAILED,
        )


class TransactionType(str, Enum):
    """Ledger entry type. Amounts are stored positive; the type carries the sign."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BET_PLACE = "bet_place"
    BET_WIN = "bet_win"
    BET_REFUND = "bet_refund"

    @property
    def sign(self) -> int:
        return -1 if self in (TransactionType.WITHDRAW, TransactionType.BET_PLACE) else 1


CREDIT_TYPES = (TransactionType.DEPOSIT, TransactionType.BET_WIN, TransactionType.BET_REFUND)
DEBIT_TYPES = (TransactionType.WITHDRAW, TransactionType.BET_PLACE)


class Wallet(Base):
    """Deposit address issued to a user on one network.

    The current wallet for (user, network) is the one with the highest
    address_index. Superseded rows stay for history and are still scanned.
    """

    __tablename__ = "wallets"
    __table_args__ = (Index("ix_wallets_user_network", "user_id", "network"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    address_index: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    deposit_address: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False, index=True
    )
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class HDIndexCounter(Base):
    """Single-row counter for the global address index.

    Shared by every user and network so derivation paths never collide.
    """

    __tablename__ = "hd_index_counter"

    id: Mapped[int] = mapped_column(primary_key=True)
    last_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Deposit(Base):
    """Incoming on-chain transfer to a user's deposit address."""

    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    confirmations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.PENDING, nullable=False, index=True
    )
    credited_amount: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sweep_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class Withdrawal(Base):
    """User withdrawal request."""

    __tablename__ = "withdrawals"
    __table_args__ = (Index("ix_withdrawals_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    to_address: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    fee: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(10), nullable=False, default="USDT")
    # USDT value of amount and fee at request time; equal to them for USDT
    usdt_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    usdt_fee: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(20), default=WithdrawalStatus.PENDING, nullable=False, index=True
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def total_cost(self) -> Decimal:
        """USDT debited from the balance at request time."""
        return self.usdt_amount + self.usdt_fee


class Balance(Base):
    """User's USDT-denominated balance. Written only by LedgerService."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Transaction(Base):
    """Append-only ledger entry."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * TransactionType(self.type).sign
