"""Per-key asyncio synchronization primitives."""

import weakref
from collections.abc import Callable
from typing import Generic, TypeVar

L = TypeVar("L")


class KeyedLocks(Generic[L]):
    """Lazily created lock (or semaphore) per key.

    Entries are held weakly: a lock lives while some coroutine holds or waits
    on it and is dropped afterwards, so the table does not grow with every
    account ever seen. A key that is idle gets a fresh, unlocked primitive.
    """

    def __init__(self, factory: Callable[[], L]) -> None:
        self._factory = factory
        self._items: weakref.WeakValueDictionary[str, L] = weakref.WeakValueDictionary()

    def __getitem__(self, key: str) -> L:
        item = self._items.get(key)
        if item is None:
            item = self._factory()
            self._items[key] = item
        return item

    def __len__(self) -> int:
        return len(self._items)
