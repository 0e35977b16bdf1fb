from __future__ import annotations

from typing import Generic, Iterable, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO log.

    Storage is a preallocated arena plus a head index; once full, each append
    overwrites the oldest slot.
    """

    def __init__(self, capacity: int, items: Iterable[T] = ()) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._arena: List[Optional[T]] = [None] * capacity
        self._head = 0
        self._size = 0
        for item in items:
            self.append(item)

    def append(self, item: T) -> None:
        tail = (self._head + self._size) % self.capacity
        self._arena[tail] = item
        if self._size < self.capacity:
            self._size += 1
        else:
            self._head = (self._head + 1) % self.capacity

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[T]:
        for offset in range(self._size):
            yield self._arena[(self._head + offset) % self.capacity]  # type: ignore[misc]

    def __getitem__(self, index: int) -> T:
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError("ring buffer index out of range")
        return self._arena[(self._head + index) % self.capacity]  # type: ignore[return-value]

    def latest(self) -> T | None:
        return self[-1] if self._size else None

    def to_list(self) -> list[T]:
        return list(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RingBuffer):
            return NotImplemented
        return self.capacity == other.capacity and self.to_list() == other.to_list()

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self.capacity}, items={self.to_list()!r})"
