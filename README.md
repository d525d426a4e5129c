# rollupkit

Building blocks for a rollup node, in plain Python with no third-party
dependencies.

- `rollupkit.clist`: `CList`, a thread-safe doubly linked list of `CElement`
  objects that can be walked while elements are added or removed. It has
  blocking waits (`front_wait`, `back_wait`, `CElement.next_wait`,
  `CElement.prev_wait`) and `threading.Event` objects that are set when the
  list or an element's neighbour appears (`wait_event`, `next_wait_event`,
  `prev_wait_event`). Pushing past the list's maximum length raises
  `OverflowError`.
- `rollupkit.cache`: `LRUTxCache`, a thread-safe least-recently-used cache of
  transaction keys (SHA-256 digests), and `NopTxCache`, which keeps nothing.
- `rollupkit.metrics`: in-process `Counter`, `Gauge` and `Histogram`
  instruments gathered in a `Metrics` bundle. `prometheus_metrics(namespace,
  *labels_and_values)` builds recording instruments named
  `<namespace>_mempool_<name>`, `nop_metrics()` builds instruments that
  discard everything, and `exponential_buckets` computes histogram bounds.
  Nothing is exported over the network.
- `rollupkit.mempool`: the shared vocabulary. It holds `TxInfo`,
  `MempoolConfig`, `CheckTxResponse`, `ExecTxResult`, the abstract `Mempool`
  interface, `tx_key` and `compute_proto_size_for_txs`, and the errors
  `TxInCacheError`, `TxTooLargeError`, `MempoolIsFullError` and
  `PreCheckError` (with `is_pre_check_error`). It also provides the filters
  `pre_check_max_bytes` and `post_check_max_gas`.
- `rollupkit.clist_mempool`: `CListMempool`, an ordered in-memory pool. It asks
  an application connection to check each transaction before admitting it,
  rechecks the rest after `update`, and reaps transactions by count
  (`reap_max_txs`) or by byte and gas budget (`reap_max_bytes_max_gas`).
- `rollupkit.da`: `DAClient`, which packs serialised blocks into blobs for a
  data-availability layer and reads them back. It reports the outcome as a
  `StatusCode` in a `ResultSubmitBlocks` or `ResultRetrieveBlocks`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

An LRU cache of transactions:

```python
from rollupkit.cache import LRUTxCache

cache = LRUTxCache(2)
cache.push(b"a")        # True: newly added
cache.push(b"a")        # False: already present
cache.push(b"b")
cache.push(b"c")        # evicts b"a"
cache.has(b"a")         # False
len(cache)              # 2
```

A concurrent list. Iterating it yields elements, and each element holds its
value in `.value`:

```python
from rollupkit.clist import CList

items = CList()
first = items.push_back(1)
items.push_back(2)
[element.value for element in items]   # [1, 2]
items.remove(first)                    # returns 1
len(items)                             # 1
```

Size and gas filters. Both raise `ValueError` when a transaction is refused:

```python
from rollupkit.mempool import CheckTxResponse, post_check_max_gas, pre_check_max_bytes

check_size = pre_check_max_bytes(22)
check_size(b"x" * 20)   # encoded size 22: passes

check_gas = post_check_max_gas(10)
check_gas(b"tx", CheckTxResponse(gas_wanted=5))   # passes
```

A mempool. The application connection is any object with
`set_response_callback`, `error`, `check_tx_async` and `flush`.
`check_tx_async` returns a `ReqRes`:

```python
from rollupkit.clist_mempool import CListMempool, ReqRes
from rollupkit.mempool import CheckTxResponse, ExecTxResult, MempoolConfig


class AcceptAll:
    def set_response_callback(self, callback):
        self.callback = callback

    def error(self):
        return None

    def flush(self):
        pass

    def check_tx_async(self, request):
        return ReqRes(request, CheckTxResponse(gas_wanted=1), done=True)


pool = CListMempool(MempoolConfig(), AcceptAll())
pool.check_tx(b"tx1")
pool.reap_max_txs(-1)          # [b"tx1"]

pool.lock()
pool.update(1, [b"tx1"], [ExecTxResult()])
pool.unlock()
pool.size()                    # 0
```

`check_tx` raises `TxInCacheError`, `TxTooLargeError`, `MempoolIsFullError` or
`PreCheckError` when it refuses a transaction up front.
`remove_tx_by_key` raises `KeyError` for an unknown key.

Data availability: `DAClient(da, gas_price, gas_multiplier, namespace,
decode_block)` takes any object with `submit`, `get_ids` and `get` (see the
`DataAvailability` protocol). Blocks passed to `submit_blocks` must provide
`marshal_binary()`. `decode_block` turns a blob back into a block and may
raise `MalformedBlobError` to skip a blob, which leaves `None` in its place.
`submit_blocks` and `retrieve_blocks` return result objects rather than
raising, so check `result.code` against `StatusCode.SUCCESS`. Calls that take
longer than `submit_timeout` or `retrieve_timeout` seconds are reported as
`StatusCode.CONTEXT_DEADLINE` on submit and as `StatusCode.ERROR` on
retrieve.

## What this package does not do

This is a library, not a node. It has no command-line program, block type,
block serialisation, peer-to-peer networking, persistent storage, HTTP
metrics endpoint or built-in connection to an application or a
data-availability service. Those come from the caller, through the
interfaces described above.