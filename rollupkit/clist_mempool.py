"""An ordered in-memory transaction pool backed by a concurrent linked list.

Transactions are checked by the application before they are added. The
application connection is any object providing:

* ``set_response_callback(callback)``: register a callable taking
  ``(request, response)`` that is called after every response;
* ``error()``: the connection's pending error, or None;
* ``check_tx_async(request)``: send a :class:`CheckTxRequest` and return a
  :class:`ReqRes`;
* ``flush()``: push any buffered requests to the application.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Optional

from rollupkit.cache import LRUTxCache, NopTxCache
from rollupkit.clist import CElement, CList
from rollupkit.mempool import (
    CODE_TYPE_OK,
    CheckTxResponse,
    ExecTxResult,
    Mempool,
    MempoolConfig,
    MempoolIsFullError,
    PostCheckFunc,
    PreCheckError,
    PreCheckFunc,
    TxInCacheError,
    TxInfo,
    TxTooLargeError,
    compute_proto_size_for_txs,
    tx_key,
)
from rollupkit.metrics import Metrics, nop_metrics

_log = logging.getLogger(__name__)

CheckTxCallback = Callable[[Optional[CheckTxResponse]], None]


class CheckTxType(enum.Enum):
    """Whether a transaction is checked for the first time or rechecked."""

    NEW = 0
    RECHECK = 1


@dataclass(frozen=True)
class CheckTxRequest:
    """A request asking the application to check a transaction."""

    tx: bytes
    type: CheckTxType = CheckTxType.NEW


class ReqRes:
    """A request sent to the application together with its response.

    A callback set after the response is done runs at once; otherwise it runs
    when :meth:`invoke_callback` is called.
    """

    def __init__(self, request: Any, response: Any = None, *, done: bool = False) -> None:
        self.request = request
        self.response = response
        self.done = done
        self._callback: Optional[Callable[[Any], None]] = None
        self._lock = threading.Lock()

    def set_callback(self, callback: Callable[[Any], None]) -> None:
        with self._lock:
            if not self.done:
                self._callback = callback
                return
        callback(self.response)

    def invoke_callback(self) -> None:
        with self._lock:
            callback = self._callback
        if callback is not None:
            callback(self.response)


class _RWLock:
    """A readers-writer lock: many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("unlock of unlocked mempool")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()


@dataclass
class _MempoolTx:
    """A transaction that passed the application's check."""

    height: int
    gas_wanted: int
    tx: bytes
    senders: set[int] = field(default_factory=set)


class CListMempool(Mempool):
    """A mempool that keeps valid transactions in arrival order."""

    def __init__(
        self,
        config: MempoolConfig,
        app_conn: Any,
        height: int = 0,
        *,
        pre_check: Optional[PreCheckFunc] = None,
        post_check: Optional[PostCheckFunc] = None,
        metrics: Optional[Metrics] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.logger = logger or _log
        self.metrics = metrics or nop_metrics()
        self.cache = LRUTxCache(config.cache_size) if config.cache_size > 0 else NopTxCache()
        self._app_conn = app_conn
        self._height = height
        self._pre_check = pre_check
        self._post_check = post_check

        self._txs = CList()
        self._txs_map: dict[bytes, CElement] = {}
        self._txs_bytes = 0
        self._bytes_lock = threading.Lock()
        self._update_lock = _RWLock()

        self._txs_available: Optional[queue.Queue[None]] = None
        self._notified_txs_available = False
        self._avail_lock = threading.Lock()

        self._recheck_cursor: Optional[CElement] = None
        self._recheck_end: Optional[CElement] = None

        app_conn.set_response_callback(self._global_cb)

    def enable_txs_available(self) -> None:
        """Create the transactions-available notifier; call once, on startup."""
        self._txs_available = queue.Queue(maxsize=1)

    def lock(self) -> None:
        self._update_lock.acquire_write()

    def unlock(self) -> None:
        self._update_lock.release_write()

    def size(self) -> int:
        return len(self._txs)

    def size_bytes(self) -> int:
        with self._bytes_lock:
            return self._txs_bytes

    def _add_bytes(self, delta: int) -> None:
        with self._bytes_lock:
            self._txs_bytes += delta

    def flush_app_conn(self) -> None:
        """Flush the application connection; the caller holds the lock."""
        self._app_conn.flush()

    def flush(self) -> None:
        """Drop every transaction and empty the cache."""
        with self._update_lock.read():
            with self._bytes_lock:
                self._txs_bytes = 0
            self.cache.reset()
            for element in self._txs:
                self._txs.remove(element)
                element.detach_prev()
            self._txs_map.clear()

    def txs_front(self) -> Optional[CElement]:
        """The first element of the transaction list, for walking it."""
        return self._txs.front()

    def txs_wait_event(self) -> threading.Event:
        """An event set once the mempool holds at least one transaction."""
        return self._txs.wait_event()

    def check_tx(
        self,
        tx: bytes,
        callback: Optional[CheckTxCallback] = None,
        tx_info: Optional[TxInfo] = None,
    ) -> None:
        """Send tx to the application for checking; raises if it is refused up front."""
        tx = bytes(tx)
        tx_info = tx_info or TxInfo()
        with self._update_lock.read():
            tx_size = len(tx)
            self._check_not_full(tx_size)
            if tx_size > self.config.max_tx_bytes:
                raise TxTooLargeError(self.config.max_tx_bytes, tx_size)
            if self._pre_check is not None:
                try:
                    self._pre_check(tx)
                except Exception as exc:
                    raise PreCheckError(exc) from exc
            conn_error = self._app_conn.error()
            if conn_error is not None:
                raise conn_error
            if not self.cache.push(tx):
                # Record the new sender only if the tx is still in the pool.
                element = self._txs_map.get(tx_key(tx))
                if element is not None:
                    element.value.senders.add(tx_info.sender_id)
                raise TxInCacheError()
            req_res = self._app_conn.check_tx_async(CheckTxRequest(tx))
            req_res.set_callback(
                self._req_res_cb(tx, tx_info.sender_id, tx_info.sender_p2p_id, callback)
            )

    def _global_cb(self, request: Any, response: Any) -> None:
        if self._recheck_cursor is None:
            return
        self.metrics.recheck_times.add(1)
        self._res_cb_recheck(request, response)
        self._update_size_metrics()

    def _req_res_cb(
        self,
        tx: bytes,
        peer_id: int,
        peer_p2p_id: str,
        external_cb: Optional[CheckTxCallback],
    ) -> Callable[[Any], None]:
        def callback(response: Any) -> None:
            if self._recheck_cursor is not None:
                raise RuntimeError("recheck cursor is not nil in reqResCb")
            self._res_cb_first_time(tx, peer_id, peer_p2p_id, response)
            self._update_size_metrics()
            if external_cb is not None:
                external_cb(response if isinstance(response, CheckTxResponse) else None)

        return callback

    def _update_size_metrics(self) -> None:
        self.metrics.size.set(float(self.size()))
        self.metrics.size_bytes.set(float(self.size_bytes()))

    def _add_tx(self, mem_tx: _MempoolTx) -> None:
        element = self._txs.push_back(mem_tx)
        self._txs_map[tx_key(mem_tx.tx)] = element
        self._add_bytes(len(mem_tx.tx))
        self.metrics.tx_size_bytes.observe(float(len(mem_tx.tx)))

    def _remove_tx(self, tx: bytes, element: CElement) -> None:
        self._txs.remove(element)
        element.detach_prev()
        self._txs_map.pop(tx_key(tx), None)
        self._add_bytes(-len(tx))

    def remove_tx_by_key(self, key: bytes) -> None:
        """Remove the transaction indexed by key; KeyError if there is none."""
        element = self._txs_map.get(key)
        if element is None:
            raise KeyError("transaction not found")
        mem_tx = element.value
        if mem_tx is None:
            raise ValueError("found empty transaction")
        self._remove_tx(mem_tx.tx, element)

    def _check_not_full(self, tx_size: int) -> None:
        mem_size = self.size()
        txs_bytes = self.size_bytes()
        if mem_size >= self.config.size or tx_size + txs_bytes > self.config.max_txs_bytes:
            raise MempoolIsFullError(
                mem_size, self.config.size, txs_bytes, self.config.max_txs_bytes
            )

    def _run_post_check(self, tx: bytes, response: CheckTxResponse) -> Optional[Exception]:
        if self._post_check is None:
            return None
        try:
            self._post_check(tx, response)
        except Exception as exc:
            return exc
        return None

    def _res_cb_first_time(self, tx: bytes, peer_id: int, peer_p2p_id: str, response: Any) -> None:
        if not isinstance(response, CheckTxResponse):
            return
        post_check_err = self._run_post_check(tx, response)
        if response.code == CODE_TYPE_OK and post_check_err is None:
            # Check again to lower the chance of exceeding the limits.
            try:
                self._check_not_full(len(tx))
            except MempoolIsFullError as err:
                self.cache.remove(tx)
                self.logger.error("%s", err)
                return
            mem_tx = _MempoolTx(height=self._height, gas_wanted=response.gas_wanted, tx=tx)
            mem_tx.senders.add(peer_id)
            self._add_tx(mem_tx)
            self.logger.debug(
                "added good transaction tx=%s height=%d total=%d",
                tx_key(tx).hex(),
                mem_tx.height,
                self.size(),
            )
            self._notify_txs_available()
        else:
            self.logger.debug(
                "rejected bad transaction tx=%s peer=%s code=%d err=%s",
                tx_key(tx).hex(),
                peer_p2p_id,
                response.code,
                post_check_err,
            )
            self.metrics.failed_txs.add(1)
            if not self.config.keep_invalid_txs_in_cache:
                self.cache.remove(tx)

    def _res_cb_recheck(self, request: Any, response: Any) -> None:
        if not isinstance(response, CheckTxResponse):
            return
        tx = request.tx
        cursor = self._recheck_cursor
        if cursor is None:
            return
        # Skip entries the application did not answer for.
        while tx != cursor.value.tx:
            self.logger.error(
                "re-CheckTx transaction mismatch got=%s expected=%s",
                tx_key(tx).hex(),
                tx_key(cursor.value.tx).hex(),
            )
            if cursor is self._recheck_end:
                self._recheck_cursor = None
                return
            cursor = cursor.next
            self._recheck_cursor = cursor
            if cursor is None:
                return

        post_check_err = self._run_post_check(tx, response)
        if response.code != CODE_TYPE_OK or post_check_err is not None:
            self.logger.debug(
                "tx is no longer valid tx=%s code=%d err=%s",
                tx_key(tx).hex(),
                response.code,
                post_check_err,
            )
            self._remove_tx(tx, cursor)
            if not self.config.keep_invalid_txs_in_cache:
                self.cache.remove(tx)

        self._recheck_cursor = None if cursor is self._recheck_end else cursor.next
        if self._recheck_cursor is None:
            self.logger.debug("done rechecking txs")
            if self.size() > 0:
                self._notify_txs_available()

    def txs_available(self) -> Optional[queue.Queue[None]]:
        """A queue that receives one item per height when transactions are available.

        None unless :meth:`enable_txs_available` was called.
        """
        return self._txs_available

    def _notify_txs_available(self) -> None:
        with self._avail_lock:
            if self.size() == 0:
                raise RuntimeError("notified txs available but mempool is empty!")
            if self._txs_available is not None and not self._notified_txs_available:
                self._notified_txs_available = True
                try:
                    self._txs_available.put_nowait(None)
                except queue.Full:
                    pass

    def reap_max_bytes_max_gas(self, max_bytes: int, max_gas: int) -> list[bytes]:
        """Transactions in order whose total size and gas stay within the limits.

        A negative limit means no limit. Transactions that do not fit are
        skipped and later ones may still be taken.
        """
        with self._update_lock.read():
            total_gas = 0
            running_size = 0
            txs: list[bytes] = []
            for element in self._txs:
                mem_tx = element.value
                new_total_gas = total_gas + mem_tx.gas_wanted
                total_size = running_size + compute_proto_size_for_txs([mem_tx.tx])
                if (max_gas > -1 and new_total_gas > max_gas) or (
                    max_bytes > -1 and total_size > max_bytes
                ):
                    continue
                total_gas = new_total_gas
                running_size = total_size
                txs.append(mem_tx.tx)
            return txs

    def reap_max_txs(self, max_txs: int) -> list[bytes]:
        """Up to max_txs transactions in order; all of them if max_txs is negative."""
        with self._update_lock.read():
            elements: Iterator[CElement] = iter(self._txs)
            if max_txs >= 0:
                elements = islice(elements, max_txs)
            return [element.value.tx for element in elements]

    def update(
        self,
        height: int,
        txs: Sequence[bytes],
        tx_results: Sequence[ExecTxResult],
        pre_check: Optional[PreCheckFunc] = None,
        post_check: Optional[PostCheckFunc] = None,
    ) -> None:
        """Drop committed transactions and recheck the rest; the caller holds the lock."""
        self._height = height
        self._notified_txs_available = False
        if pre_check is not None:
            self._pre_check = pre_check
        if post_check is not None:
            self._post_check = post_check

        for tx, result in zip(txs, tx_results, strict=True):
            tx = bytes(tx)
            if result.code == CODE_TYPE_OK:
                self.cache.push(tx)
            elif not self.config.keep_invalid_txs_in_cache:
                self.cache.remove(tx)
            try:
                self.remove_tx_by_key(tx_key(tx))
            except (KeyError, ValueError) as err:
                self.logger.debug(
                    "committed transaction not in local mempool key=%s error=%s",
                    tx_key(tx).hex(),
                    err,
                )

        if self.size() > 0:
            if self.config.recheck:
                self.logger.debug("recheck txs numtxs=%d height=%d", self.size(), height)
                self._recheck_txs()
            else:
                self._notify_txs_available()

        self._update_size_metrics()

    def _recheck_txs(self) -> None:
        if self.size() == 0:
            raise RuntimeError("recheckTxs is called, but the mempool is empty")
        self._recheck_cursor = self._txs.front()
        self._recheck_end = self._txs.back()
        for element in self._txs:
            request = CheckTxRequest(element.value.tx, CheckTxType.RECHECK)
            try:
                self._app_conn.check_tx_async(request)
            except Exception as err:
                self.logger.error("recheckTx err=%s", err)
                return