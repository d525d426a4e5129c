"""A thread-safe doubly linked list that readers can traverse while it changes.

Removed elements keep their forward link so that a reader standing on an
element that gets removed can still move on. Elements cannot be re-inserted
once removed. Waiting is done through :class:`threading.Event` objects that
are set once the awaited link appears (or the element is removed).
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator
from typing import Any

MAX_LENGTH = sys.maxsize


class CElement:
    """An element of a :class:`CList`. Traversal from an element is thread-safe."""

    def __init__(self, value: Any) -> None:
        self.value = value
        self._lock = threading.Lock()
        self._prev: CElement | None = None
        self._next: CElement | None = None
        self._removed = False
        self._prev_event = threading.Event()
        self._next_event = threading.Event()

    def __repr__(self) -> str:
        return f"CElement({self.value!r}, removed={self.removed})"

    @property
    def next(self) -> CElement | None:
        """The following element, or None at the end. Never blocks."""
        with self._lock:
            return self._next

    @property
    def prev(self) -> CElement | None:
        """The preceding element, or None at the start. Never blocks."""
        with self._lock:
            return self._prev

    @property
    def removed(self) -> bool:
        with self._lock:
            return self._removed

    def next_wait(self) -> CElement | None:
        """Block until there is a next element; None only if removed as tail."""
        while True:
            with self._lock:
                nxt, event, removed = self._next, self._next_event, self._removed
            if nxt is not None or removed:
                return nxt
            event.wait()

    def prev_wait(self) -> CElement | None:
        """Block until there is a previous element; None only if removed as head."""
        while True:
            with self._lock:
                prev, event, removed = self._prev, self._prev_event, self._removed
            if prev is not None or removed:
                return prev
            event.wait()

    def next_wait_event(self) -> threading.Event:
        """An event that is set once a next element exists."""
        with self._lock:
            return self._next_event

    def prev_wait_event(self) -> threading.Event:
        """An event that is set once a previous element exists."""
        with self._lock:
            return self._prev_event

    def detach_next(self) -> None:
        with self._lock:
            if not self._removed:
                raise RuntimeError("detach_next() must be called after remove(element)")
            self._next = None

    def detach_prev(self) -> None:
        with self._lock:
            if not self._removed:
                raise RuntimeError("detach_prev() must be called after remove(element)")
            self._prev = None

    def set_next(self, new_next: CElement | None) -> None:
        with self._lock:
            old_next = self._next
            self._next = new_next
            if old_next is not None and new_next is None:
                self._next_event = threading.Event()
            elif old_next is None and new_next is not None:
                self._next_event.set()

    def set_prev(self, new_prev: CElement | None) -> None:
        with self._lock:
            old_prev = self._prev
            self._prev = new_prev
            if old_prev is not None and new_prev is None:
                self._prev_event = threading.Event()
            elif old_prev is None and new_prev is not None:
                self._prev_event.set()

    def set_removed(self) -> None:
        """Mark the element removed and wake anyone waiting in either direction."""
        with self._lock:
            self._removed = True
            if self._prev is None:
                self._prev_event.set()
            if self._next is None:
                self._next_event.set()


class CList:
    """A linked list safe for concurrent use; raises when it grows past its maximum."""

    def __init__(self, max_length: int = MAX_LENGTH) -> None:
        self._max_length = max_length
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._head: CElement | None = None
        self._tail: CElement | None = None
        self._len = 0

    def __len__(self) -> int:
        with self._lock:
            return self._len

    def __iter__(self) -> Iterator[CElement]:
        """Yield elements from the front; removing the yielded element is allowed."""
        element = self.front()
        while element is not None:
            yield element
            element = element.next

    def front(self) -> CElement | None:
        with self._lock:
            return self._head

    def front_wait(self) -> CElement:
        """Block until the list has a first element and return it."""
        while True:
            with self._lock:
                head, event = self._head, self._event
            if head is not None:
                return head
            event.wait()

    def back(self) -> CElement | None:
        with self._lock:
            return self._tail

    def back_wait(self) -> CElement:
        """Block until the list has a last element and return it."""
        while True:
            with self._lock:
                tail, event = self._tail, self._event
            if tail is not None:
                return tail
            event.wait()

    def wait_event(self) -> threading.Event:
        """An event that is set once the list is not empty."""
        with self._lock:
            return self._event

    def push_back(self, value: Any) -> CElement:
        """Append a value and return its element."""
        element = CElement(value)
        with self._lock:
            if self._len >= self._max_length:
                raise OverflowError(f"clist: maximum length list reached {self._max_length}")
            if self._len == 0:
                self._event.set()
            self._len += 1
            if self._tail is None:
                self._head = element
                self._tail = element
            else:
                element.set_prev(self._tail)
                self._tail.set_next(element)
                self._tail = element
        return element

    def remove(self, element: CElement) -> Any:
        """Unlink an element and return its value.

        The caller should detach the element's links afterwards once it no
        longer needs to traverse from it.
        """
        with self._lock:
            prev = element.prev
            nxt = element.next
            if self._head is None or self._tail is None:
                raise RuntimeError("remove(element) on empty CList")
            if prev is None and self._head is not element:
                raise RuntimeError("remove(element) with false head")
            if nxt is None and self._tail is not element:
                raise RuntimeError("remove(element) with false tail")

            if self._len == 1:
                self._event = threading.Event()
            self._len -= 1

            if prev is None:
                self._head = nxt
            else:
                prev.set_next(nxt)
            if nxt is None:
                self._tail = prev
            else:
                nxt.set_prev(prev)

            element.set_removed()
        return element.value