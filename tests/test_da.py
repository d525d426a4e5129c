import json
import random
import struct
import threading
import time
from collections import defaultdict
from dataclasses import dataclass

import pytest

from rollupkit.da import (
    DEFAULT_RETRIEVE_TIMEOUT,
    DEFAULT_SUBMIT_TIMEOUT,
    ERR_BLOB_NOT_FOUND,
    DAClient,
    MalformedBlobError,
    StatusCode,
)

NAMESPACE = bytes.fromhex("00000000000000000000000000000000000000000000000000deadbeef")
MAX_BLOB_SIZE = 2048


@dataclass(frozen=True)
class SampleBlock:
    height: int
    txs: tuple

    def marshal_binary(self):
        return json.dumps({"height": self.height, "txs": [tx.hex() for tx in self.txs]}).encode()


class BrokenBlock:
    def marshal_binary(self):
        raise ValueError("cannot encode")


def decode_sample_block(blob):
    try:
        data = json.loads(blob)
    except ValueError as err:
        raise MalformedBlobError(str(err)) from err
    if "height" not in data:
        raise KeyError("height missing")
    return SampleBlock(data["height"], tuple(bytes.fromhex(tx) for tx in data["txs"]))


def random_block(height, n_txs, rng=None):
    rng = rng or random.Random(height * 31 + n_txs)
    return SampleBlock(height, tuple(rng.randbytes(16) for _ in range(n_txs)))


class InMemoryDA:
    def __init__(self, max_blob_size=MAX_BLOB_SIZE, submit_delay=0.0, get_delay=0.0,
                 submit_error=None, get_ids_error=None, get_error=None, return_no_ids=False):
        self._max_blob_size = max_blob_size
        self.submit_delay = submit_delay
        self.get_delay = get_delay
        self.submit_error = submit_error
        self.get_ids_error = get_ids_error
        self.get_error = get_error
        self.return_no_ids = return_no_ids
        self.blobs = {}
        self.ids_at = defaultdict(list)
        self.height = 0
        self.namespaces = []
        self._lock = threading.Lock()

    def max_blob_size(self):
        return self._max_blob_size

    def store(self, height, blobs):
        ids = []
        for index, blob in enumerate(blobs):
            blob_id = struct.pack("<QI", height, index)
            self.blobs[blob_id] = blob
            self.ids_at[height].append(blob_id)
            ids.append(blob_id)
        return ids

    def submit(self, blobs, gas_price, namespace):
        self.namespaces.append(namespace)
        if self.submit_delay:
            time.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        if self.return_no_ids:
            return []
        with self._lock:
            self.height += 1
            return self.store(self.height, blobs)

    def get_ids(self, height, namespace):
        if self.get_ids_error is not None:
            raise self.get_ids_error
        return list(self.ids_at.get(height, []))

    def get(self, ids, namespace):
        if self.get_delay:
            time.sleep(self.get_delay)
        if self.get_error is not None:
            raise self.get_error
        return [self.blobs[blob_id] for blob_id in ids]


def make_client(da=None):
    return DAClient(da or InMemoryDA(), -1, -1, NAMESPACE, decode_sample_block)


def test_default_timeouts():
    client = make_client()
    assert client.submit_timeout == DEFAULT_SUBMIT_TIMEOUT == 60.0
    assert client.retrieve_timeout == DEFAULT_RETRIEVE_TIMEOUT == 60.0


def test_submit_timeout():
    client = make_client(InMemoryDA(submit_delay=0.2))
    client.submit_timeout = 0.05
    resp = client.submit_blocks([random_block(1, 0)], MAX_BLOB_SIZE, -1)
    assert "context deadline exceeded" in resp.message
    assert resp.code == StatusCode.CONTEXT_DEADLINE


def test_tx_too_large():
    client = make_client(InMemoryDA(submit_error=RuntimeError("tx too large")))
    resp = client.submit_blocks([random_block(1, 0)], MAX_BLOB_SIZE, -1)
    assert "tx too large" in resp.message
    assert resp.code == StatusCode.TOO_BIG


@pytest.mark.parametrize(
    "error_text, status",
    [
        ("timed out waiting for tx to be included in a block", StatusCode.NOT_INCLUDED_IN_BLOCK),
        ("tx already in mempool", StatusCode.ALREADY_IN_MEMPOOL),
        ("incorrect account sequence", StatusCode.ALREADY_IN_MEMPOOL),
        ("tx size is too big", StatusCode.TOO_BIG),
        ("tx too large", StatusCode.TOO_BIG),
        ("context deadline exceeded", StatusCode.CONTEXT_DEADLINE),
        ("something else broke", StatusCode.ERROR),
    ],
)
def test_submit_error_mapping(error_text, status):
    client = make_client(InMemoryDA(submit_error=RuntimeError(error_text)))
    resp = client.submit_blocks([random_block(1, 2)], MAX_BLOB_SIZE, -1)
    assert resp.code == status
    assert resp.message == "failed to submit blocks: " + error_text
    assert resp.submitted_count == 0


def test_submit_passes_namespace():
    da = InMemoryDA()
    client = make_client(da)
    resp = client.submit_blocks([random_block(1, 1)], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert da.namespaces == [NAMESPACE]


def test_submit_retrieve():
    rng = random.Random(7)
    da = InMemoryDA()
    client = make_client(da)
    block_to_height = {}
    count_at_height = defaultdict(int)

    for batch in range(5):
        blocks = [random_block(batch * 10 + i, rng.randrange(20), rng) for i in range(10)]
        while blocks:
            resp = client.submit_blocks(blocks, da.max_blob_size(), -1)
            assert resp.code == StatusCode.SUCCESS, resp.message
            for block in blocks[: resp.submitted_count]:
                block_to_height[block] = resp.da_height
                count_at_height[resp.da_height] += 1
            blocks = blocks[resp.submitted_count:]

    assert len(block_to_height) == 50
    for height, count in count_at_height.items():
        ret = client.retrieve_blocks(height)
        assert ret.code == StatusCode.SUCCESS, ret.message
        assert ret.da_height == height
        assert len(ret.blocks) == count

    for block, height in block_to_height.items():
        ret = client.retrieve_blocks(height)
        assert ret.code == StatusCode.SUCCESS
        assert block in ret.blocks


def test_submit_empty_blocks():
    client = make_client()
    resp = client.submit_blocks([random_block(1, 0), random_block(1, 0)], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert resp.submitted_count == 2


def test_submit_oversized_block():
    client = make_client()
    oversized = random_block(1, MAX_BLOB_SIZE)
    resp = client.submit_blocks([oversized], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.ERROR
    assert "failed to submit blocks: no blobs generated blob: over size limit" in resp.message


def test_submit_small_blocks_batch():
    client = make_client()
    resp = client.submit_blocks([random_block(1, 1), random_block(1, 2)], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert resp.submitted_count == 2


def test_submit_large_blocks_overflow():
    client = make_client()
    n_txs = 0
    while True:
        block1 = random_block(1, n_txs, random.Random(n_txs))
        block2 = random_block(1, n_txs, random.Random(n_txs + 1))
        if len(block1.marshal_binary()) + len(block2.marshal_binary()) > MAX_BLOB_SIZE:
            break
        n_txs += 10

    resp = client.submit_blocks([block1, block2], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert resp.submitted_count == 1

    resp = client.submit_blocks([block2], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert resp.submitted_count == 1


def test_retrieve_no_blocks_found():
    client = make_client()
    result = client.retrieve_blocks(123)
    assert result.code == StatusCode.NOT_FOUND
    assert ERR_BLOB_NOT_FOUND in result.message
    assert result.da_height == 123


def test_submit_serialize_failure():
    client = make_client()
    resp = client.submit_blocks([BrokenBlock()], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.ERROR
    assert resp.message.startswith("failed to submit blocks: no blobs generated failed to serialize block")
    assert "cannot encode" in resp.message


def test_submit_stops_at_unserializable_block():
    client = make_client()
    resp = client.submit_blocks([random_block(1, 1), BrokenBlock(), random_block(2, 1)], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.SUCCESS
    assert resp.submitted_count == 1


def test_submit_no_ids_returned():
    client = make_client(InMemoryDA(return_no_ids=True))
    resp = client.submit_blocks([random_block(1, 1)], MAX_BLOB_SIZE, -1)
    assert resp.code == StatusCode.ERROR
    assert resp.message == "failed to submit blocks: unexpected len(ids): 0"


def test_submit_height_read_from_first_id():
    da = InMemoryDA()
    da.height = 41
    client = make_client(da)
    resp = client.submit_blocks([random_block(1, 1), random_block(2, 1)], MAX_BLOB_SIZE, -1)
    assert resp.da_height == 42
    assert resp.submitted_count == 2


def test_retrieve_get_ids_error():
    client = make_client(InMemoryDA(get_ids_error=RuntimeError("node offline")))
    result = client.retrieve_blocks(5)
    assert result.code == StatusCode.ERROR
    assert result.message == "failed to get IDs: node offline"
    assert result.da_height == 5


def test_retrieve_get_error():
    da = InMemoryDA(get_error=RuntimeError("read failed"))
    da.store(3, [random_block(1, 1).marshal_binary()])
    result = make_client(da).retrieve_blocks(3)
    assert result.code == StatusCode.ERROR
    assert result.message == "failed to get blobs: read failed"
    assert result.da_height == 3


def test_retrieve_timeout():
    da = InMemoryDA(get_delay=0.2)
    da.store(3, [random_block(1, 1).marshal_binary()])
    client = make_client(da)
    client.retrieve_timeout = 0.05
    result = client.retrieve_blocks(3)
    assert result.code == StatusCode.ERROR
    assert "context deadline exceeded" in result.message


def test_retrieve_skips_malformed_blob():
    da = InMemoryDA()
    good = random_block(9, 2)
    da.store(4, [b"\xff not a block", good.marshal_binary()])
    result = make_client(da).retrieve_blocks(4)
    assert result.code == StatusCode.SUCCESS
    assert result.blocks == [None, good]


def test_retrieve_decode_error_is_reported():
    da = InMemoryDA()
    da.store(4, [json.dumps({"txs": []}).encode()])
    result = make_client(da).retrieve_blocks(4)
    assert result.code == StatusCode.ERROR
    assert "height missing" in result.message
    assert result.blocks == []