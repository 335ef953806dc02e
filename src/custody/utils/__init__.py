"""Utility modules for custody."""

from custody.utils.locks import LockTimeoutError, RowLockRegistry

__all__ = ["LockTimeoutError", "RowLockRegistry"]
