from __future__ import annotations

import asyncio
from functools import partial
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from src.chronicle.domain.models import SamplingParams, UserSettings
from src.chronicle.infrastructure.document import InMemoryDocument
from src.chronicle.services.candidates import CandidateFetchCoordinator
from src.chronicle.services.completion_ai import CompletionService
from src.chronicle.services.generation import GenerationOrchestrator
from src.chronicle.services.playback import PlaybackQueue

# Playback without a real cadence keeps tests fast; ordering is unaffected.
fast_queue = partial(PlaybackQueue, interval=0)


class ScriptedCompletionService(CompletionService):
    """Completion service double with scripted output, failures and gates.

    ``once`` results are handed out in call order; the coordinator starts
    one-shot requests in index order, so call ``n`` is candidate ``n``.
    """

    def __init__(
        self,
        chunks: Sequence[str] = (),
        once: Sequence[str] = (),
        *,
        stream_error: Optional[BaseException] = None,
        once_errors: Optional[Dict[int, BaseException]] = None,
        once_delays: Optional[Dict[int, float]] = None,
        stream_gate: Optional[asyncio.Event] = None,
        once_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.once = list(once)
        self.stream_error = stream_error
        self.once_errors = once_errors or {}
        self.once_delays = once_delays or {}
        self.stream_gate = stream_gate
        self.once_gate = once_gate
        self.calls: List[Tuple[str, SamplingParams]] = []
        self.prompts: List[str] = []
        self.finished_once: List[int] = []

    async def stream_completion(self, prompt: str, params: SamplingParams) -> AsyncIterator[str]:
        self.calls.append(("stream", params))
        self.prompts.append(prompt)
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        if self.stream_gate is not None:
            await self.stream_gate.wait()
        if self.stream_error is not None:
            raise self.stream_error

    async def complete_once(self, prompt: str, params: SamplingParams) -> str:
        index = sum(1 for kind, _ in self.calls if kind == "once") + 1
        self.calls.append(("once", params))
        self.prompts.append(prompt)
        if self.once_gate is not None:
            await self.once_gate.wait()
        await asyncio.sleep(self.once_delays.get(index, 0))
        if index in self.once_errors:
            raise self.once_errors[index]
        self.finished_once.append(index)
        return self.once[index - 1]


def make_orchestrator(
    service: CompletionService,
    text: str = "Once upon a time.",
    variant_count: int = 3,
    cursor: Optional[int] = None,
) -> Tuple[GenerationOrchestrator, InMemoryDocument]:
    document = InMemoryDocument(text, cursor=cursor)
    orchestrator = GenerationOrchestrator(
        document,
        CandidateFetchCoordinator(service),
        UserSettings(variant_count=variant_count),
        queue_factory=fast_queue,
    )
    return orchestrator, document
