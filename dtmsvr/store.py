"""The interface that every storage backend provides, and its errors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from .models import KVStore, TransBranchStore, TransGlobalStore


class StorageError(Exception):
    """Base class of storage errors."""


class NotFoundError(StorageError):
    """The item asked for is not in storage, or not in the expected state."""

    def __init__(self, message: str = "storage: NotFound") -> None:
        super().__init__(message)


class UniqueConflictError(StorageError):
    """The item conflicts with a unique key already in storage."""

    def __init__(self, message: str = "storage: UniqueKeyConflict") -> None:
        super().__init__(message)


class Store(ABC):
    """Persistent storage for global transactions, branches and key-values."""

    @abstractmethod
    def ping(self) -> None:
        """Raise when the storage cannot be reached."""

    @abstractmethod
    def populate_data(self, skip_drop: bool) -> None:
        """Reset the storage unless ``skip_drop`` is true."""

    @abstractmethod
    def find_trans_global_store(self, gid: str) -> TransGlobalStore | None:
        """Return the global transaction with this gid, or None."""

    @abstractmethod
    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        """Return up to ``limit`` transactions after ``position`` and the next position ("" at the end)."""

    @abstractmethod
    def find_branches(self, gid: str) -> list[TransBranchStore]:
        """Return the branches of a global transaction in order."""

    @abstractmethod
    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        """Write the named fields of the branches and return the rows affected."""

    @abstractmethod
    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        """Save branches while the transaction has ``status``; -1 appends them.

        Raises NotFoundError when no such transaction is in that status.
        """

    @abstractmethod
    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        """Save a new transaction; raises UniqueConflictError if the gid exists."""

    @abstractmethod
    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        """Move the transaction to ``new_status``; raises NotFoundError if it changed meanwhile."""

    @abstractmethod
    def touch_cron_time(
        self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime
    ) -> None:
        """Set when the transaction is next picked up by the cron job."""

    @abstractmethod
    def lock_one_global_trans(self, expire_in: timedelta) -> TransGlobalStore | None:
        """Claim one unfinished transaction due within ``expire_in``, or return None."""

    @abstractmethod
    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        """Make up to ``limit`` transactions due now; return (count, has_remaining)."""

    @abstractmethod
    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        """Return up to ``limit`` key-values of a category and the next position."""

    @abstractmethod
    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        """Return key-values matching the category and key; empty means any."""

    @abstractmethod
    def update_kv(self, kv: KVStore) -> None:
        """Store a new value if the version still matches; raises NotFoundError otherwise."""

    @abstractmethod
    def delete_kv(self, cat: str, key: str) -> None:
        """Delete a key-value; raises NotFoundError if absent."""

    @abstractmethod
    def create_kv(self, cat: str, key: str, value: str) -> None:
        """Create a key-value; raises UniqueConflictError if present."""