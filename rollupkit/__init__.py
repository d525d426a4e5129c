"""Mempool, concurrent list, transaction cache, metrics and data-availability client for rollup nodes."""

__version__ = "0.1.0"

__all__ = ["cache", "clist", "clist_mempool", "da", "mempool", "metrics"]