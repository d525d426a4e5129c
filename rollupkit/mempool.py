"""Mempool interface, transaction helpers, filters and errors."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

MEMPOOL_CHANNEL = 0x30

# How long to sleep when a peer is behind.
PEER_CATCHUP_SLEEP_INTERVAL_MS = 100

# Peer ID used when a transaction is checked without a peer (e.g. over RPC).
UNKNOWN_PEER_ID = 0

MAX_ACTIVE_IDS = 0xFFFF

# Result code an application returns for a valid transaction.
CODE_TYPE_OK = 0

TX_KEY_SIZE = hashlib.sha256().digest_size


def tx_key(tx: bytes) -> bytes:
    """The fixed-length key (SHA-256 digest) that indexes a transaction."""
    return hashlib.sha256(bytes(tx)).digest()


def _varint_size(value: int) -> int:
    size = 1
    while value >= 0x80:
        value >>= 7
        size += 1
    return size


def compute_proto_size_for_txs(txs: Iterable[bytes]) -> int:
    """Encoded size of the transactions as the repeated bytes field of a block's data."""
    return sum(1 + _varint_size(len(tx)) + len(tx) for tx in txs)


@dataclass
class TxInfo:
    """Parameters passed along when a transaction is offered to the mempool."""

    sender_id: int = UNKNOWN_PEER_ID
    sender_p2p_id: str = ""


@dataclass
class MempoolConfig:
    """Limits and behaviour switches of a mempool."""

    size: int = 5000
    max_txs_bytes: int = 1024 * 1024 * 1024
    cache_size: int = 10000
    max_tx_bytes: int = 1024 * 1024
    keep_invalid_txs_in_cache: bool = False
    recheck: bool = True


@dataclass
class CheckTxResponse:
    """The application's verdict on a transaction."""

    code: int = CODE_TYPE_OK
    gas_wanted: int = 0
    data: bytes = b""
    log: str = ""


@dataclass
class ExecTxResult:
    """The result of executing a committed transaction."""

    code: int = CODE_TYPE_OK
    data: bytes = b""
    log: str = ""


PreCheckFunc = Callable[[bytes], None]
PostCheckFunc = Callable[[bytes, CheckTxResponse], None]


def pre_check_max_bytes(max_bytes: int) -> PreCheckFunc:
    """A pre-check that rejects transactions whose encoded size exceeds max_bytes."""

    def check(tx: bytes) -> None:
        tx_size = compute_proto_size_for_txs([tx])
        if tx_size > max_bytes:
            raise ValueError(f"tx size is too big: {tx_size}, max: {max_bytes}")

    return check


def post_check_max_gas(max_gas: int) -> PostCheckFunc:
    """A post-check that rejects transactions wanting more than max_gas; -1 disables it."""

    def check(tx: bytes, res: CheckTxResponse) -> None:
        if max_gas == -1:
            return
        if res.gas_wanted < 0:
            raise ValueError(f"gas wanted {res.gas_wanted} is negative")
        if res.gas_wanted > max_gas:
            raise ValueError(f"gas wanted {res.gas_wanted} is greater than max gas {max_gas}")

    return check


class MempoolError(Exception):
    """Base class of mempool errors."""


class TxInCacheError(MempoolError):
    """The transaction was seen earlier."""

    def __init__(self, message: str = "tx already exists in cache") -> None:
        super().__init__(message)


class TxTooLargeError(MempoolError):
    """The transaction is too big to be sent to other peers."""

    def __init__(self, max_size: int, actual: int) -> None:
        super().__init__(f"Tx too large. Max size is {max_size}, but got {actual}")
        self.max_size = max_size
        self.actual = actual

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TxTooLargeError):
            return NotImplemented
        return (self.max_size, self.actual) == (other.max_size, other.actual)

    def __hash__(self) -> int:
        return hash((type(self), self.max_size, self.actual))


class MempoolIsFullError(MempoolError):
    """The mempool cannot take more load."""

    def __init__(self, num_txs: int, max_txs: int, txs_bytes: int, max_txs_bytes: int) -> None:
        super().__init__(
            f"mempool is full: number of txs {num_txs} (max: {max_txs}), "
            f"total txs bytes {txs_bytes} (max: {max_txs_bytes})"
        )
        self.num_txs = num_txs
        self.max_txs = max_txs
        self.txs_bytes = txs_bytes
        self.max_txs_bytes = max_txs_bytes

    def _fields(self) -> tuple[int, int, int, int]:
        return (self.num_txs, self.max_txs, self.txs_bytes, self.max_txs_bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MempoolIsFullError):
            return NotImplemented
        return self._fields() == other._fields()

    def __hash__(self) -> int:
        return hash((type(self), *self._fields()))


class PreCheckError(MempoolError):
    """The transaction failed a pre-check."""

    def __init__(self, reason: BaseException) -> None:
        super().__init__(str(reason))
        self.reason = reason


def is_pre_check_error(err: Optional[BaseException]) -> bool:
    """Whether err, or an exception it was raised from, is a pre-check failure."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, PreCheckError):
            return True
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return False


class Mempool(ABC):
    """A pool of transactions waiting to be included in a block.

    Updates must be synchronised with block commits so applications can reset
    their transient state.
    """

    @abstractmethod
    def check_tx(
        self,
        tx: bytes,
        callback: Optional[Callable[[CheckTxResponse], None]],
        tx_info: TxInfo,
    ) -> None:
        """Run the transaction against the application and add it if valid."""

    @abstractmethod
    def remove_tx_by_key(self, key: bytes) -> None:
        """Remove the transaction with the given key."""

    @abstractmethod
    def reap_max_bytes_max_gas(self, max_bytes: int, max_gas: int) -> list[bytes]:
        """Collect transactions within byte and gas limits; negative means no limit."""

    @abstractmethod
    def reap_max_txs(self, max_txs: int) -> list[bytes]:
        """Collect up to max_txs transactions; negative means all."""

    @abstractmethod
    def lock(self) -> None:
        """Take the update lock."""

    @abstractmethod
    def unlock(self) -> None:
        """Release the update lock."""

    @abstractmethod
    def update(
        self,
        height: int,
        txs: Sequence[bytes],
        tx_results: Sequence[ExecTxResult],
        pre_check: Optional[PreCheckFunc],
        post_check: Optional[PostCheckFunc],
    ) -> None:
        """Discard committed transactions; the caller holds the lock."""

    @abstractmethod
    def flush_app_conn(self) -> None:
        """Flush the application connection so pending callbacks complete."""

    @abstractmethod
    def flush(self) -> None:
        """Remove all transactions from the mempool and its cache."""

    @abstractmethod
    def txs_available(self) -> Any:
        """A notifier that fires once per height when transactions are available."""

    @abstractmethod
    def enable_txs_available(self) -> None:
        """Turn on the transactions-available notifier."""

    @abstractmethod
    def size(self) -> int:
        """Number of transactions in the mempool."""

    @abstractmethod
    def size_bytes(self) -> int:
        """Total size in bytes of all transactions in the mempool."""