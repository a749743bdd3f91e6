from __future__ import annotations

"""Typewriter playback of streamed text into the document.

Characters arrive in bursts from the network and are drained one per tick
at a fixed cadence, so the visible typing speed never depends on how the
provider chunks its output.
"""

import asyncio
import logging
import os
from collections import deque
from typing import Callable, Deque, Optional

from ..observability.metrics import PLAYBACK_CHARACTERS

logger = logging.getLogger("chronicle.playback")

TYPEWRITER_INTERVAL_SECONDS = float(os.getenv("CHRONICLE_TYPEWRITER_INTERVAL_MS", "12")) / 1000.0


class PlaybackQueue:
    def __init__(self, insert: Callable[[str], None], interval: float = TYPEWRITER_INTERVAL_SECONDS) -> None:
        self._insert = insert
        self._interval = max(0.0, interval)
        self._pending: Deque[str] = deque()
        self._finished = False
        self._task: Optional[asyncio.Task[None]] = None
        self._drained = asyncio.Event()
        self.inserted_count = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def finished(self) -> bool:
        return self._finished

    def push(self, chunk: str) -> None:
        if self._finished:
            logger.debug("playback_push_after_finish", extra={"characters": len(chunk)})
            return
        self._pending.extend(chunk)

    def finish(self) -> None:
        self._finished = True
        if not self._pending and not self.is_running:
            self._complete()

    def start(self) -> None:
        if self.is_running:
            return
        if self._drained.is_set():
            # Restart after a stop or a completed drain begins a new session.
            self._drained = asyncio.Event()
            self._finished = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        dropped = len(self._pending)
        self._pending.clear()
        self._finished = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        if dropped:
            logger.debug("playback_dropped", extra={"characters": dropped})
        self._drained.set()

    def tick(self) -> bool:
        """Type at most one character; return False once playback is complete."""
        if self._pending:
            ch = self._pending.popleft()
            self._insert(ch)
            self.inserted_count += 1
            PLAYBACK_CHARACTERS.inc()
            return True
        if self._finished:
            self._complete()
            return False
        return True

    async def wait_drained(self) -> None:
        await self._drained.wait()

    def _complete(self) -> None:
        self._task = None
        self._drained.set()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self.tick():
                return
