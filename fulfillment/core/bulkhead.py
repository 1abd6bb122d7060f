"""
Bulkhead - bounded concurrency per resource pool.

Calls beyond ``max_concurrent`` wait in line instead of exhausting database
connections.
"""
import asyncio
import threading
from typing import Any, Awaitable, Callable, TypeVar

from fulfillment.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Bulkhead:
    """Limits concurrent executions of a named operation"""

    def __init__(self, name: str, max_concurrent: int = 10):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.name = name
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._waiting = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_size(self) -> int:
        return self._waiting

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        if self._semaphore.locked():
            logger.debug(
                f"Bulkhead '{self.name}' at capacity, waiting",
                extra_data={"bulkhead": self.name, "queue_size": self._waiting + 1}
            )
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._active += 1
        try:
            return await func()
        finally:
            self._active -= 1
            self._semaphore.release()

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_concurrent": self.max_concurrent,
            "active_count": self._active,
            "queue_size": self._waiting,
            "utilization_percent": round(self._active / self.max_concurrent * 100, 2),
        }


class BulkheadRegistry:
    """Named bulkheads for one process"""

    def __init__(self, default_max_concurrent: int = 10):
        self.default_max_concurrent = default_max_concurrent
        self._bulkheads: dict[str, Bulkhead] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, max_concurrent: int | None = None) -> Bulkhead:
        if name not in self._bulkheads:
            with self._lock:
                if name not in self._bulkheads:
                    self._bulkheads[name] = Bulkhead(
                        name, max_concurrent or self.default_max_concurrent
                    )
        return self._bulkheads[name]

    def get(self, name: str) -> Bulkhead | None:
        return self._bulkheads.get(name)

    def all_stats(self) -> list[dict[str, Any]]:
        return [self._bulkheads[name].stats() for name in sorted(self._bulkheads)]
