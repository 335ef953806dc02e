"""Exception hierarchy.

Batch jobs (deposit discovery, confirmation polling, sweeping) contain
AdapterError and ConfigurationError per item. Ledger errors always reach the
immediate caller.
"""

from decimal import Decimal


class CustodyError(Exception):
    """Base class for all custody errors."""


class ConfigurationError(CustodyError):
    """Missing or invalid configuration (seed, hot wallet, rate)."""


class AdapterError(CustodyError):
    """Blockchain adapter failure."""


class TransientAdapterError(AdapterError):
    """RPC timeout, rate limit or malformed response. Retry next cycle."""


class BroadcastError(AdapterError):
    """The network refused a transfer."""


class FailedTransactionError(AdapterError):
    """The chain reports the transaction as failed or reverted."""

    def __init__(self, tx_hash: str, reason: str = "failed on chain"):
        super().__init__(f"Transaction {tx_hash} {reason}")
        self.tx_hash = tx_hash
        self.reason = reason


class ValidationError(CustodyError):
    """Request rejected before any ledger mutation."""


class InsufficientBalanceError(CustodyError):
    """Debit larger than the available balance."""

    def __init__(self, user_id: int, available: Decimal, required: Decimal):
        super().__init__(
            f"Insufficient balance for user {user_id}: have {available}, need {required}"
        )
        self.user_id = user_id
        self.available = available
        self.required = required


class InvalidStateError(CustodyError):
    """Illegal status transition."""


class NotFoundError(CustodyError):
    """Referenced record does not exist."""
