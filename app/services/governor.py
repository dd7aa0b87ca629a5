from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, Hashable, Optional, TypeVar


logger = logging.getLogger("glowup-agent.governor")

T = TypeVar("T")

Producer = Callable[[], Awaitable[Any]]


class _DeadlineExceeded:
    def __repr__(self) -> str:
        return "DEADLINE_EXCEEDED"

    def __bool__(self) -> bool:
        return False


DEADLINE_EXCEEDED: Any = _DeadlineExceeded()

# Work tasks that lost their race keep running; hold a reference until they settle.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    stored_at: float
    ttl_s: float


class TTLCache:
    """Process-wide keyed cache with per-entry TTL.

    Reads are lazy: an expired entry is reported as a miss but left in place
    until it is superseded or `evict_expired()` runs. There is no lock and no
    single-flight coalescing, so concurrent misses on one key each run their
    own producer and the last write wins.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_fresh(entry, entry.ttl_s)

    def _is_fresh(self, entry: CacheEntry, ttl_s: float) -> bool:
        return self._clock() - entry.stored_at < ttl_s

    def lookup(self, key: Hashable, ttl_s: float) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry, ttl_s):
            return False, None
        return True, entry.value

    def get(self, key: Hashable, ttl_s: float, default: Any = None) -> Any:
        hit, value = self.lookup(key, ttl_s)
        return value if hit else default

    def set(self, key: Hashable, value: Any, ttl_s: float) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl_s=ttl_s)

    async def cached(self, key: Hashable, ttl_s: float, producer: Producer, *, store_none: bool = True) -> Any:
        hit, value = self.lookup(key, ttl_s)
        if hit:
            logger.debug("cache_hit key=%s", key)
            return value

        logger.debug("cache_miss key=%s", key)
        value = await producer()
        if value is not None or store_none:
            self.set(key, value, ttl_s)
        return value

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at >= entry.ttl_s]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


def _discard_late_result(task: asyncio.Task[Any]) -> None:
    _BACKGROUND_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("late_result_discarded outcome=error err=%s", exc)
    else:
        logger.debug("late_result_discarded outcome=ok")


async def with_deadline(work: Awaitable[T], timeout_s: Optional[float], fallback: Any = None) -> Any:
    """Race `work` against a timer and return whichever settles first.

    The work runs as its own task. When the timer wins, `fallback` is returned
    and the work task is left to run to completion in the background; its
    result or exception is discarded when it arrives. Raced operations must
    therefore be safe to finish unobserved.

    If the work settles first, its result is returned or its exception is
    raised.
    """

    task = asyncio.ensure_future(work)
    if timeout_s is None or timeout_s <= 0:
        return await task

    done, _ = await asyncio.wait({task}, timeout=timeout_s)
    if task in done:
        return task.result()

    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_discard_late_result)
    logger.info("deadline_exceeded timeout_s=%s", timeout_s)
    return fallback


def pending_background_tasks() -> int:
    return len(_BACKGROUND_TASKS)
