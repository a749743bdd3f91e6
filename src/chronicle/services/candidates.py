from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, List, Optional

from ..domain.models import GenerationMode, SamplingParams, UserSettings
from ..errors import ServiceError
from ..observability.metrics import timed_candidate
from .completion_ai import CompletionService, build_prompt

logger = logging.getLogger("chronicle.candidates")

BASE_TEMPERATURE = float(os.getenv("CHRONICLE_BASE_TEMPERATURE", "0.7"))
TEMPERATURE_STEP = float(os.getenv("CHRONICLE_TEMPERATURE_STEP", "0.1"))

ChunkCallback = Callable[[str], None]


class CandidateFetchCoordinator:
    """Fetch every candidate for one generation.

    Candidate 0 is streamed so its text can be typed into the document while
    the rest are requested in parallel, each at a slightly higher
    temperature for variety. The result is always index-ordered, so
    ``candidates[0]`` is exactly what was streamed.
    """

    def __init__(
        self,
        service: CompletionService,
        base_temperature: float = BASE_TEMPERATURE,
        temperature_step: float = TEMPERATURE_STEP,
        model: Optional[str] = None,
    ) -> None:
        self.service = service
        self.base_temperature = base_temperature
        self.temperature_step = temperature_step
        self.model = model

    def sampling_for(self, index: int) -> SamplingParams:
        return SamplingParams(temperature=self.base_temperature + index * self.temperature_step, model=self.model)

    async def fetch(
        self,
        text: str,
        settings: UserSettings,
        mode: GenerationMode,
        on_chunk: ChunkCallback,
    ) -> List[str]:
        prompt = build_prompt(text, settings, mode)
        count = max(1, settings.variant_count)
        logger.debug("candidate_fetch_started", extra={"variant_count": count, "mode": mode.value})

        jobs: List[Awaitable[str]] = [self._stream_candidate(prompt, on_chunk)]
        jobs.extend(self._one_shot_candidate(prompt, i) for i in range(1, count))
        tasks = [asyncio.ensure_future(job) for job in jobs]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        failed = next((t for t in tasks if t in done and not t.cancelled() and t.exception() is not None), None)
        if failed is not None:
            for task in pending:
                task.cancel()
            # Collect siblings so their cancellations are not reported as unhandled.
            await asyncio.gather(*pending, return_exceptions=True)
            exc = failed.exception()
            logger.info("candidate_fetch_failed", extra={"index": tasks.index(failed), "err": str(exc)})
            raise exc  # type: ignore[misc]

        return [task.result() for task in tasks]

    async def _stream_candidate(self, prompt: str, on_chunk: ChunkCallback) -> str:
        parts: List[str] = []
        with timed_candidate("stream"):
            try:
                async for chunk in self.service.stream_completion(prompt, self.sampling_for(0)):
                    if not chunk:
                        continue
                    parts.append(chunk)
                    on_chunk(chunk)
            except ServiceError:
                raise
            except Exception as exc:
                raise ServiceError(str(exc) or "Failed to generate text") from exc
        return "".join(parts)

    async def _one_shot_candidate(self, prompt: str, index: int) -> str:
        with timed_candidate("once"):
            try:
                text = await self.service.complete_once(prompt, self.sampling_for(index))
            except ServiceError:
                raise
            except Exception as exc:
                raise ServiceError(str(exc) or "Failed to generate text") from exc
        return text or ""
