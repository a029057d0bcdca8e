from __future__ import annotations

import threading
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Snapshot(Generic[T]):
    """
    Thread-safe holder for an immutable value that is replaced wholesale.

    Readers call `load()` once and work on the returned object; writers build a
    complete new value and `swap()` it in. Nothing is ever mutated in place, so
    a reader sees either the old or the new value, never a mix.
    """

    def __init__(self, initial: Optional[T] = None) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def load(self) -> Optional[T]:
        with self._lock:
            return self._value

    def swap(self, value: T) -> Optional[T]:
        """Install `value` and return the previous one."""
        with self._lock:
            previous = self._value
            self._value = value
            return previous

    @property
    def loaded(self) -> bool:
        return self.load() is not None
