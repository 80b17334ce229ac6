"""KeyedLocks: one primitive per key, dropped once nobody references it."""

import asyncio
import gc

from mailhub.shared.utils.locks import KeyedLocks


async def test_same_lock_while_held() -> None:
    locks: KeyedLocks[asyncio.Lock] = KeyedLocks(asyncio.Lock)

    async with locks["acct-1"]:
        assert locks["acct-1"].locked()
        assert not locks["acct-2"].locked()


async def test_idle_keys_are_released() -> None:
    locks: KeyedLocks[asyncio.Lock] = KeyedLocks(asyncio.Lock)
    for n in range(100):
        async with locks[f"acct-{n}"]:
            pass

    gc.collect()
    assert len(locks) == 0


async def test_semaphore_factory_caps_per_key() -> None:
    semaphores: KeyedLocks[asyncio.Semaphore] = KeyedLocks(lambda: asyncio.Semaphore(2))
    held = semaphores["acct-1"]

    await held.acquire()
    await held.acquire()
    assert semaphores["acct-1"].locked()
    assert not semaphores["acct-2"].locked()
    held.release()
    held.release()
