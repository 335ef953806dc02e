"""Services orchestrating adapters and the ledger."""

from custody.services.addresses import AddressService
from custody.services.deposit_monitor import DepositMonitor, MonitorSummary
from custody.services.sweeper import (
    HotWalletBalance,
    SweepReport,
    SweepResult,
    SweepService,
    WalletBalance,
)
from custody.services.withdrawals import WithdrawalProcessor

__all__ = [
    "AddressService",
    "DepositMonitor",
    "MonitorSummary",
    "HotWalletBalance",
    "SweepReport",
    "SweepResult",
    "SweepService",
    "WalletBalance",
    "WithdrawalProcessor",
]
