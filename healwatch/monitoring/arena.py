"""Dense, integer-keyed record store with FIFO capacity eviction."""

from collections import deque
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class Arena(Generic[T]):
    """Append-mostly table addressed by monotonically increasing integer keys.

    Keys are contiguous: the live window is ``[first_key, next_key)`` and a
    lookup is a constant-time offset into the underlying deque. When a
    capacity is set, the oldest record is evicted once it is exceeded.
    """

    def __init__(self, capacity: int | None = None):
        if capacity is not None and capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[T] = deque()
        self._first_key = 1
        self.evicted = 0

    @property
    def next_key(self) -> int:
        return self._first_key + len(self._items)

    def append(self, factory: Callable[[int], T]) -> T:
        """Allocate the next key and store the record built from it."""
        item = factory(self.next_key)
        self._items.append(item)
        if self.capacity is not None and len(self._items) > self.capacity:
            self._items.popleft()
            self._first_key += 1
            self.evicted += 1
        return item

    def get(self, key: int) -> T | None:
        offset = key - self._first_key
        if 0 <= offset < len(self._items):
            return self._items[offset]
        return None

    def __contains__(self, key: int) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(tuple(self._items))

    def values(self) -> list[T]:
        return list(self._items)
