"""A fixed pool of nodes holding circular doubly linked lists.

A list is named by one of its nodes; an empty list is ``None``.
"""

from __future__ import annotations

from typing import Any


class NodePoolFullError(Exception):
    """Raised when every node in the pool is in use."""


class NodePool:
    """Nodes for all the circular lists that will ever be needed."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError(f"node pool size must be positive, not {size}")
        self._values: list[Any] = [None] * size
        self._prev = list(range(size))
        self._next = list(range(size))
        self._last = 0

    def __len__(self) -> int:
        return len(self._values)

    def _alloc(self) -> int:
        size = len(self._values)
        start = self._last
        while True:
            if self._values[self._last] is None:
                return self._last
            self._last = (self._last + 1) % size
            if self._last == start:
                raise NodePoolFullError(f"all {size} nodes are in use")

    def insert(self, lst: int | None, value: Any) -> int:
        """Put ``value`` in a new node at the tail of ``lst``; return the new node."""
        if value is None:
            raise ValueError("None cannot be stored in a node")
        node = self._alloc()
        if lst is None:
            self._prev[node] = node
            self._next[node] = node
        else:
            tail = self._prev[lst]
            self._next[tail] = node
            self._prev[node] = tail
            self._next[node] = lst
            self._prev[lst] = node
        self._values[node] = value
        return node

    def remove(self, node: int | None) -> int | None:
        """Unlink ``node`` from its list and return what remains of the list."""
        if node is None:
            return None
        self._values[node] = None
        if self._next[node] == node:
            return None
        prev = self._prev[node]
        nxt = self._next[node]
        self._next[prev] = nxt
        self._prev[nxt] = prev
        return nxt

    def free(self, lst: int | None) -> None:
        """Release a list; every node in the pool is marked unused."""
        if lst is None:
            return
        size = len(self._values)
        for offset in range(size):
            self._values[(lst + offset) % size] = None

    def next(self, node: int) -> int:
        """Return the node after ``node``; valid even for released nodes."""
        return self._next[node]

    def value(self, node: int) -> Any:
        """Return the value held by ``node``, or None if it is unused."""
        return self._values[node]