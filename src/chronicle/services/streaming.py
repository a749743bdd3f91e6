from __future__ import annotations

import asyncio
from threading import Thread
from typing import AsyncIterator, Callable, Iterator, TypeVar

T = TypeVar("T")

_DONE = object()


async def iter_in_thread(factory: Callable[[], Iterator[T]]) -> AsyncIterator[T]:
    """Drive a blocking iterator on a worker thread and yield its items on the loop.

    Items are handed back through ``call_soon_threadsafe`` so the consumer
    sees them in production order. An exception raised by the iterator is
    re-raised from the ``async for``. If the consumer stops early the
    worker finishes its current item and its remaining output is dropped.
    """

    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[object]" = asyncio.Queue()

    def _emit(item: object) -> bool:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # Loop closed underneath us; nobody is listening any more.
            return False
        return True

    def _runner() -> None:
        try:
            for item in factory():
                if not _emit(item):
                    return
        except Exception as exc:  # re-raised on the loop side
            _emit(exc)
        finally:
            _emit(_DONE)

    Thread(target=_runner, daemon=True).start()
    while True:
        item = await queue.get()
        if item is _DONE:
            return
        if isinstance(item, Exception):
            raise item
        yield item  # type: ignore[misc]
