"""In-process mempool metrics: counters, gauges and histograms."""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field

METRICS_SUBSYSTEM = "mempool"


def _fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Bucket upper bounds starting at start, each factor times the previous."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    bound = start
    for _ in range(count):
        buckets.append(bound)
        bound *= factor
    return buckets


@dataclass
class Counter:
    """A monotonically increasing value. A discarding counter records nothing."""

    name: str = ""
    help: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    discard: bool = False
    value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, delta: float) -> None:
        if delta < 0:
            raise ValueError("counter cannot decrease in value")
        if self.discard:
            return
        with self._lock:
            self.value += delta


@dataclass
class Gauge:
    """A value that can go up and down. A discarding gauge records nothing."""

    name: str = ""
    help: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    discard: bool = False
    value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def set(self, value: float) -> None:
        if self.discard:
            return
        with self._lock:
            self.value = value

    def add(self, delta: float) -> None:
        if self.discard:
            return
        with self._lock:
            self.value += delta


@dataclass
class Histogram:
    """Observations counted into cumulative buckets by upper bound."""

    name: str = ""
    help: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    buckets: list[float] = field(default_factory=list)
    discard: bool = False
    count: int = 0
    sum: float = 0.0
    bucket_counts: list[int] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.buckets = sorted(self.buckets)
        if len(self.bucket_counts) != len(self.buckets):
            self.bucket_counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        if self.discard:
            return
        with self._lock:
            self.count += 1
            self.sum += value
            first = bisect.bisect_left(self.buckets, value)
            for index in range(first, len(self.buckets)):
                self.bucket_counts[index] += 1


@dataclass
class Metrics:
    """The metrics a mempool reports."""

    size: Gauge
    size_bytes: Gauge
    tx_size_bytes: Histogram
    failed_txs: Counter
    rejected_txs: Counter
    evicted_txs: Counter
    recheck_times: Counter


def _label_pairs(labels_and_values: tuple[str, ...]) -> dict[str, str]:
    items = list(labels_and_values)
    if len(items) % 2:
        items.append("unknown")
    return dict(zip(items[::2], items[1::2]))


def prometheus_metrics(namespace: str, *args: str) -> Metrics:
    """Recording metrics named under namespace, labelled by alternating label/value args."""

    def labels() -> dict[str, str]:
        return _label_pairs(args)

    def name(short: str) -> str:
        return _fq_name(namespace, METRICS_SUBSYSTEM, short)

    return Metrics(
        size=Gauge(
            name=name("size"),
            help="Size of the mempool (number of uncommitted transactions).",
            labels=labels(),
        ),
        size_bytes=Gauge(
            name=name("size_bytes"),
            help="Total size of the mempool in bytes.",
            labels=labels(),
        ),
        tx_size_bytes=Histogram(
            name=name("tx_size_bytes"),
            help="Transaction sizes in bytes.",
            labels=labels(),
            buckets=exponential_buckets(1, 3, 17),
        ),
        failed_txs=Counter(
            name=name("failed_txs"),
            help="Number of failed transactions.",
            labels=labels(),
        ),
        rejected_txs=Counter(
            name=name("rejected_txs"),
            help="Number of rejected transactions.",
            labels=labels(),
        ),
        evicted_txs=Counter(
            name=name("evicted_txs"),
            help="Number of evicted transactions.",
            labels=labels(),
        ),
        recheck_times=Counter(
            name=name("recheck_times"),
            help="Number of times transactions are rechecked in the mempool.",
            labels=labels(),
        ),
    )


def nop_metrics() -> Metrics:
    """Metrics that discard everything."""
    return Metrics(
        size=Gauge(discard=True),
        size_bytes=Gauge(discard=True),
        tx_size_bytes=Histogram(discard=True),
        failed_txs=Counter(discard=True),
        rejected_txs=Counter(discard=True),
        evicted_txs=Counter(discard=True),
        recheck_times=Counter(discard=True),
    )