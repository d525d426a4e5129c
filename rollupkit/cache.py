"""Caches of raw transactions seen by a mempool."""

from __future__ import annotations

import threading
from collections import OrderedDict

from rollupkit.mempool import tx_key


class LRUTxCache:
    """A thread-safe LRU cache of raw transactions.

    Only the hash of each transaction is stored. Pushing reports whether the
    transaction was newly added.
    """

    def __init__(self, cache_size: int) -> None:
        self._size = cache_size
        self._lock = threading.Lock()
        self._entries: OrderedDict[bytes, None] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, tx: bytes) -> bool:
        return self.has(tx)

    def reset(self) -> None:
        """Empty the cache."""
        with self._lock:
            self._entries.clear()

    def push(self, tx: bytes) -> bool:
        """Add tx; True if it was not present, otherwise refresh it and return False."""
        key = tx_key(tx)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return False
            if self._entries and len(self._entries) >= self._size:
                self._entries.popitem(last=False)
            self._entries[key] = None
            return True

    def remove(self, tx: bytes) -> None:
        """Drop tx from the cache if it is there."""
        with self._lock:
            self._entries.pop(tx_key(tx), None)

    def has(self, tx: bytes) -> bool:
        """Whether tx is cached; does not count as an access."""
        with self._lock:
            return tx_key(tx) in self._entries


class NopTxCache:
    """A cache that retains nothing and treats every transaction as new.

    Its key set is always empty: pushes are never stored, so every push
    reports a new transaction and every lookup misses.
    """

    def __init__(self) -> None:
        self._entries: frozenset[bytes] = frozenset()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tx: bytes) -> bool:
        return self.has(tx)

    def reset(self) -> None:
        """Empty the (always empty) key set."""
        self._entries = frozenset()

    def push(self, tx: bytes) -> bool:
        """Report tx as new; nothing is retained."""
        return tx_key(tx) not in self._entries

    def remove(self, tx: bytes) -> None:
        """Drop tx's key from the (always empty) key set."""
        self._entries = self._entries - {tx_key(tx)}

    def has(self, tx: bytes) -> bool:
        """Whether tx is cached; never true since nothing is retained."""
        return tx_key(tx) in self._entries