from __future__ import annotations

"""Generation orchestrator.

Owns every piece of mutable generation state: the state machine, the
current playback queue and the in-flight generation token. The fetch
coordinator and the playback queue never touch the state machine; they
hand results back here, and each result is checked against the token that
was current when its generation started.
"""

import asyncio
import logging
import time
from typing import Callable, Literal, Optional, Set

from ..core.state_machine import GenerationStateMachine
from ..domain.generation_events import (
    Accept,
    Error,
    Generate,
    GenerationEvent,
    NextVariant,
    PrevVariant,
    Retry,
    Stop,
    Success,
)
from ..domain.models import GenerationMode, GenerationRange, GenerationState, UserSettings
from ..errors import EmptyInputError, ServiceError, StaleGenerationError
from ..infrastructure.document import Document
from ..infrastructure.events import publish_event
from ..observability.metrics import GENERATION_LATENCY, observe_transition
from .candidates import CandidateFetchCoordinator
from .playback import PlaybackQueue
from .range_tracker import RangeTracker
from .telemetry_sink import TelemetryEvent, record_event

logger = logging.getLogger("chronicle.generation")

Direction = Literal["next", "prev"]
ShortcutAction = Literal["generate", "line", "paragraph", "prev", "next"]
QueueFactory = Callable[[Callable[[str], None]], PlaybackQueue]

FALLBACK_ERROR_MESSAGE = "Failed to generate text"


class GenerationOrchestrator:
    def __init__(
        self,
        document: Document,
        coordinator: CandidateFetchCoordinator,
        settings: Optional[UserSettings] = None,
        machine: Optional[GenerationStateMachine] = None,
        queue_factory: Optional[QueueFactory] = None,
    ) -> None:
        self.document = document
        self.coordinator = coordinator
        self.settings = settings or UserSettings()
        self.machine = machine or GenerationStateMachine()
        self.ranges = RangeTracker(document)
        self._queue_factory: QueueFactory = queue_factory or PlaybackQueue
        self._queue: Optional[PlaybackQueue] = None
        self._token = 0
        self._active: Optional[int] = None
        self._last_mode = GenerationMode.CONTINUE
        self._started_at = 0.0
        self._task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[None]] = set()
        self.machine.subscribe(self._on_transition)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> GenerationState:
        return self.machine.state

    @property
    def is_generating(self) -> bool:
        return self.machine.matches(GenerationState.GENERATING)

    @property
    def is_reviewing(self) -> bool:
        return self.machine.matches(GenerationState.REVIEWING)

    @property
    def is_error(self) -> bool:
        return self.machine.matches(GenerationState.ERROR)

    @property
    def queue(self) -> Optional[PlaybackQueue]:
        return self._queue

    # ------------------------------------------------------------------
    # User intents
    # ------------------------------------------------------------------
    def generate(self, mode: GenerationMode = GenerationMode.CONTINUE) -> Optional[asyncio.Task[None]]:
        """Start a generation from the current cursor.

        Raises :class:`EmptyInputError` when the document has no text. Returns
        ``None`` when a generation is already running.
        """
        if self.is_generating:
            logger.debug("generate_ignored_while_generating")
            return None
        if not self.document.current_text().strip():
            raise EmptyInputError()
        if self.is_reviewing:
            self.machine.send(Accept())
        return self._begin(Generate(mode=mode), mode)

    def retry(self) -> Optional[asyncio.Task[None]]:
        if not self.is_error:
            return None
        if not self.document.current_text().strip():
            raise EmptyInputError()
        return self._begin(Retry(), self._last_mode)

    def stop(self) -> None:
        """Cancel the running generation, keeping whatever was already typed."""
        self._active = None
        if self._queue is not None:
            self._queue.stop()
        self.machine.send(Stop())

    def accept(self) -> bool:
        if not self.is_reviewing:
            return False
        return self.machine.send(Accept())

    def on_user_interaction(self) -> None:
        """Typing or clicking in the document commits the candidate under review."""
        if self.is_reviewing:
            self.machine.send(Accept())

    def cycle(self, direction: Direction) -> bool:
        if not self.is_reviewing:
            return False
        context = self.machine.context
        span = context.generation_range
        count = len(context.candidates)
        if count <= 1 or span is None:
            return False
        offset = 1 if direction == "next" else -1
        index = (context.selected_index + offset) % count
        self.ranges.swap(span, context.candidates[index])
        self.machine.send(NextVariant() if direction == "next" else PrevVariant())
        return True

    def next_variant(self) -> bool:
        return self.cycle("next")

    def prev_variant(self) -> bool:
        return self.cycle("prev")

    def handle_shortcut(self, action: ShortcutAction) -> None:
        if action == "generate":
            if self.is_generating:
                self.stop()
            else:
                self.generate(GenerationMode.CONTINUE)
        elif action == "line":
            self.generate(GenerationMode.LINE)
        elif action == "paragraph":
            self.generate(GenerationMode.PARAGRAPH)
        elif action in ("prev", "next"):
            self.cycle(action)
        else:
            raise ValueError(f"Unknown shortcut action: {action}")

    async def wait(self) -> None:
        """Wait for the current generation task, if any, to settle."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def aclose(self) -> None:
        if self.is_generating:
            self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------
    def _begin(self, event: GenerationEvent, mode: GenerationMode) -> asyncio.Task[None]:
        text = self.document.current_text()
        start = self.ranges.capture_start()

        self._token += 1
        token = self._token
        self._active = token
        self._last_mode = mode
        self._started_at = time.perf_counter()

        if self._queue is not None:
            self._queue.stop()
        queue = self._queue_factory(self.document.insert_character_at_cursor)
        self._queue = queue

        self.machine.send(event)
        queue.start()
        record_event(
            TelemetryEvent(
                name="generation_started",
                properties={"mode": mode.value, "start": start, "variant_count": self.settings.variant_count},
                generation=token,
            )
        )

        task = asyncio.get_running_loop().create_task(self._run(token, text, start, mode, queue))
        self._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _push(self, token: int, queue: PlaybackQueue, chunk: str) -> None:
        if self._active != token:
            return
        queue.push(chunk)

    def _ensure_current(self, token: int) -> None:
        if self._active != token:
            raise StaleGenerationError(token)

    async def _run(
        self,
        token: int,
        text: str,
        start: int,
        mode: GenerationMode,
        queue: PlaybackQueue,
    ) -> None:
        try:
            candidates = await self.coordinator.fetch(
                text,
                self.settings,
                mode,
                lambda chunk: self._push(token, queue, chunk),
            )
            self._ensure_current(token)
            queue.finish()
            await queue.wait_drained()
            self._ensure_current(token)
            span = self.ranges.close(start)
            if candidates and not self.ranges.holds(span, candidates[0]):
                logger.warning(
                    "generation_range_mismatch",
                    extra={"generation": token, "start": span.start, "end": span.end},
                )
            self._active = None
            self.machine.send(Success.of(candidates, span))
            self._finish(token, "success", span=span, candidates=len(candidates))
        except StaleGenerationError:
            logger.debug("generation_result_discarded", extra={"generation": token})
        except ServiceError as exc:
            self._fail(token, queue, exc.message or FALLBACK_ERROR_MESSAGE)
        except asyncio.CancelledError:
            if self._active == token:
                self._active = None
                queue.stop()
            raise
        except Exception as exc:
            logger.exception("generation_failed_unexpectedly", extra={"generation": token})
            self._fail(token, queue, str(exc) or FALLBACK_ERROR_MESSAGE)

    def _fail(self, token: int, queue: PlaybackQueue, message: str) -> None:
        if self._active != token:
            logger.debug("generation_error_discarded", extra={"generation": token, "err": message})
            return
        self._active = None
        queue.stop()
        self.machine.send(Error(message=message))
        self._finish(token, "error", error=message)

    def _finish(self, token: int, outcome: str, span: Optional[GenerationRange] = None, **properties) -> None:
        elapsed = time.perf_counter() - self._started_at
        GENERATION_LATENCY.labels(outcome=outcome).observe(elapsed)
        if span is not None:
            properties.update(start=span.start, end=span.end)
        properties["elapsed_s"] = round(elapsed, 3)
        record_event(TelemetryEvent(name=f"generation_{outcome}", properties=properties, generation=token))

    def _on_transition(self, previous: GenerationState, event: GenerationEvent, machine: GenerationStateMachine) -> None:
        observe_transition(event.type, machine.state.value)
        publish_event(
            "transition",
            {
                "generation": self._token,
                "event": event.type,
                "from": previous.value,
                "to": machine.state.value,
                "selected_index": machine.context.selected_index,
            },
        )
        if event.type == "STOP" and previous == GenerationState.GENERATING:
            GENERATION_LATENCY.labels(outcome="stopped").observe(time.perf_counter() - self._started_at)
