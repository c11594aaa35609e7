"""Storage interfaces used by the tracker."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from web3track.structs import Log


class Entry(ABC):
    """The stored logs of one filter, addressed by a running index."""

    @abstractmethod
    def last_index(self) -> int:
        """Return one past the index of the last stored log (0 when empty)."""

    @abstractmethod
    def store_logs(self, logs: Iterable[Log]) -> None:
        """Append logs after the last stored one."""

    @abstractmethod
    def remove_logs(self, index: int) -> None:
        """Remove every log from ``index`` onwards."""

    @abstractmethod
    def get_log(self, index: int) -> Log:
        """Return the log at ``index``."""


class Store(ABC):
    """A key-value datastore holding filter entries."""

    @abstractmethod
    def get(self, key: str) -> str:
        """Return the value of ``key``, or an empty string if it is unset."""

    @abstractmethod
    def list_prefix(self, prefix: str) -> list[str]:
        """Return the values of all keys that start with ``prefix``."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``."""

    @abstractmethod
    def close(self) -> None:
        """Release the store's resources."""

    @abstractmethod
    def get_entry(self, name: str) -> Entry:
        """Return the log entry called ``name``, creating it if needed."""

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()