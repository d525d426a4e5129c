"""Client that submits blocks to a data availability layer and reads them back."""

from __future__ import annotations

import concurrent.futures
import enum
import logging
import struct
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

# Timeout for block submission, in seconds.
DEFAULT_SUBMIT_TIMEOUT = 60.0

# Timeout for block retrieval, in seconds.
DEFAULT_RETRIEVE_TIMEOUT = 60.0

ERR_BLOB_NOT_FOUND = "blob: not found"
ERR_BLOB_SIZE_OVER_LIMIT = "blob: over size limit"
ERR_TX_TIMED_OUT = "timed out waiting for tx to be included in a block"
ERR_TX_ALREADY_IN_MEMPOOL = "tx already in mempool"
ERR_TX_INCORRECT_ACCOUNT_SEQUENCE = "incorrect account sequence"
ERR_TX_SIZE_TOO_BIG = "tx size is too big"
ERR_TX_TOO_LARGE = "tx too large"
ERR_CONTEXT_DEADLINE = "context deadline"

_log = logging.getLogger(__name__)


class StatusCode(enum.IntEnum):
    """Outcome of a call to the data availability layer."""

    UNKNOWN = 0
    SUCCESS = 1
    NOT_FOUND = 2
    NOT_INCLUDED_IN_BLOCK = 3
    ALREADY_IN_MEMPOOL = 4
    TOO_BIG = 5
    CONTEXT_DEADLINE = 6
    ERROR = 7


class DeadlineExceededError(TimeoutError):
    """A call to the data availability layer did not finish in time."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class MalformedBlobError(ValueError):
    """A blob could not be decoded into a block; the blob is skipped."""


class DataAvailability(Protocol):
    """What the client needs from a data availability layer."""

    def submit(self, blobs: Sequence[bytes], gas_price: float, namespace: Any) -> list[bytes]:
        ...

    def get_ids(self, height: int, namespace: Any) -> list[bytes]:
        ...

    def get(self, ids: Sequence[bytes], namespace: Any) -> list[bytes]:
        ...


@dataclass
class BaseResult:
    """Basic information returned by the data availability layer."""

    code: StatusCode = StatusCode.UNKNOWN
    message: str = ""
    da_height: int = 0
    submitted_count: int = 0


@dataclass
class ResultSubmitBlocks(BaseResult):
    """The outcome of submitting blocks."""


@dataclass
class ResultRetrieveBlocks(BaseResult):
    """Blocks read from one height of the data availability layer.

    A position holds None where the blob there could not be decoded.
    """

    blocks: list[Any] = field(default_factory=list)


def _call_with_timeout(func: Callable[..., Any], timeout: float, *args: Any) -> Any:
    future: concurrent.futures.Future[Any] = concurrent.futures.Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func(*args))
        except BaseException as exc:  # handed back to the caller
            future.set_exception(exc)

    threading.Thread(target=run, daemon=True).start()
    try:
        return future.result(timeout)
    except concurrent.futures.TimeoutError:
        if future.done():
            raise
        raise DeadlineExceededError() from None


def _submit_status(message: str) -> StatusCode:
    if ERR_TX_TIMED_OUT in message:
        return StatusCode.NOT_INCLUDED_IN_BLOCK
    if ERR_TX_ALREADY_IN_MEMPOOL in message:
        return StatusCode.ALREADY_IN_MEMPOOL
    if ERR_TX_INCORRECT_ACCOUNT_SEQUENCE in message:
        return StatusCode.ALREADY_IN_MEMPOOL
    if ERR_TX_SIZE_TOO_BIG in message or ERR_TX_TOO_LARGE in message:
        return StatusCode.TOO_BIG
    if ERR_CONTEXT_DEADLINE in message:
        return StatusCode.CONTEXT_DEADLINE
    return StatusCode.ERROR


@dataclass
class DAClient:
    """Submits serialised blocks as blobs and decodes retrieved blobs.

    Blocks must provide ``marshal_binary()``; ``decode_block`` turns a blob
    back into a block and raises :class:`MalformedBlobError` for blobs that
    should be skipped.
    """

    da: DataAvailability
    gas_price: float
    gas_multiplier: float
    namespace: Any
    decode_block: Callable[[bytes], Any]
    logger: logging.Logger = field(default=_log)
    submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT
    retrieve_timeout: float = DEFAULT_RETRIEVE_TIMEOUT

    def submit_blocks(
        self, blocks: Sequence[Any], max_blob_size: int, gas_price: float
    ) -> ResultSubmitBlocks:
        """Submit as many leading blocks as fit within max_blob_size."""
        blobs: list[bytes] = []
        blob_size = 0
        message = ""
        for index, block in enumerate(blocks):
            try:
                blob = bytes(block.marshal_binary())
            except Exception as err:
                message = f"failed to serialize block {err}"
                self.logger.info(message)
                break
            if blob_size + len(blob) > max_blob_size:
                message = (
                    f"{ERR_BLOB_SIZE_OVER_LIMIT} blob size limit reached "
                    f"maxBlobSize={max_blob_size} index={index} "
                    f"blobSize={blob_size} len(blob)={len(blob)}"
                )
                self.logger.info(message)
                break
            blob_size += len(blob)
            blobs.append(blob)

        if not blobs:
            return ResultSubmitBlocks(
                code=StatusCode.ERROR,
                message="failed to submit blocks: no blobs generated " + message,
            )

        try:
            ids = _call_with_timeout(
                self.da.submit, self.submit_timeout, blobs, gas_price, self.namespace
            )
        except Exception as err:
            text = str(err)
            return ResultSubmitBlocks(
                code=_submit_status(text),
                message="failed to submit blocks: " + text,
            )

        if not ids:
            return ResultSubmitBlocks(
                code=StatusCode.ERROR,
                message="failed to submit blocks: unexpected len(ids): 0",
            )

        (height,) = struct.unpack_from("<Q", ids[0])
        return ResultSubmitBlocks(
            code=StatusCode.SUCCESS,
            da_height=height,
            submitted_count=len(ids),
        )

    def retrieve_blocks(self, da_height: int) -> ResultRetrieveBlocks:
        """Read and decode every block stored at da_height."""
        try:
            ids = self.da.get_ids(da_height, self.namespace)
        except Exception as err:
            return ResultRetrieveBlocks(
                code=StatusCode.ERROR,
                message=f"failed to get IDs: {err}",
                da_height=da_height,
            )

        if not ids:
            return ResultRetrieveBlocks(
                code=StatusCode.NOT_FOUND,
                message=ERR_BLOB_NOT_FOUND,
                da_height=da_height,
            )

        try:
            blobs = _call_with_timeout(self.da.get, self.retrieve_timeout, ids, self.namespace)
        except Exception as err:
            return ResultRetrieveBlocks(
                code=StatusCode.ERROR,
                message=f"failed to get blobs: {err}",
                da_height=da_height,
            )

        blocks: list[Optional[Any]] = []
        for position, blob in enumerate(blobs):
            try:
                blocks.append(self.decode_block(blob))
            except MalformedBlobError as err:
                self.logger.error(
                    "failed to unmarshal block daHeight=%d position=%d error=%s",
                    da_height,
                    position,
                    err,
                )
                blocks.append(None)
            except Exception as err:
                return ResultRetrieveBlocks(code=StatusCode.ERROR, message=str(err))

        return ResultRetrieveBlocks(
            code=StatusCode.SUCCESS,
            da_height=da_height,
            blocks=blocks,
        )