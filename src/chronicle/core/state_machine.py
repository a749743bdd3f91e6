from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from ..domain.generation_events import GenerationEvent
from ..domain.models import GenerationContext, GenerationState

logger = logging.getLogger("chronicle.machine")

IDLE = GenerationState.IDLE
GENERATING = GenerationState.GENERATING
REVIEWING = GenerationState.REVIEWING
ERROR = GenerationState.ERROR

DEFAULT_ERROR_MESSAGE = "An unexpected error occurred."

# Event type -> target state, per source state. Anything not listed is ignored.
GENERATION_TRANSITIONS: Dict[GenerationState, Dict[str, GenerationState]] = {
    IDLE: {
        "GENERATE": GENERATING,
    },
    GENERATING: {
        "STOP": IDLE,
        "SUCCESS": REVIEWING,
        "ERROR": ERROR,
    },
    REVIEWING: {
        "ACCEPT": IDLE,
        "GENERATE": GENERATING,
        "NEXT_VARIANT": REVIEWING,
        "PREV_VARIANT": REVIEWING,
        "STOP": IDLE,
    },
    ERROR: {
        "RETRY": GENERATING,
        "GENERATE": GENERATING,
        "STOP": IDLE,
    },
}

TransitionListener = Callable[[GenerationState, GenerationEvent, "GenerationStateMachine"], None]


def next_state(current: GenerationState, event_type: str) -> Optional[GenerationState]:
    return GENERATION_TRANSITIONS.get(current, {}).get(event_type)


def is_valid_transition(current: GenerationState, event_type: str) -> bool:
    return next_state(current, event_type) is not None


def _step_variant(context: GenerationContext, offset: int) -> GenerationContext:
    count = len(context.candidates)
    if not count:
        return context
    index = (context.selected_index + offset) % count
    text = context.candidates[index]
    span = context.generation_range.with_text(text) if context.generation_range else None
    return replace(context, selected_index=index, generation_range=span)


def _apply(context: GenerationContext, target: GenerationState, event: GenerationEvent) -> GenerationContext:
    if event.type == "SUCCESS":
        return GenerationContext(
            candidates=tuple(event.candidates),  # type: ignore[union-attr]
            selected_index=0,
            generation_range=event.range,  # type: ignore[union-attr]
        )
    if event.type == "ERROR":
        return GenerationContext(error=event.message or DEFAULT_ERROR_MESSAGE)  # type: ignore[union-attr]
    if event.type == "NEXT_VARIANT":
        return _step_variant(context, 1)
    if event.type == "PREV_VARIANT":
        return _step_variant(context, -1)
    # Entering idle drops the context; entering generating starts from a clean one.
    if target in (IDLE, GENERATING):
        return GenerationContext()
    return context


class GenerationStateMachine:
    """Authoritative lifecycle for one document's generations.

    The machine only records outcomes; it never performs I/O and never
    raises for an event that does not apply to the current state.
    """

    def __init__(self, initial: GenerationState = IDLE) -> None:
        self._state = initial
        self._context = GenerationContext()
        self._listeners: List[TransitionListener] = []

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def context(self) -> GenerationContext:
        return self._context

    def matches(self, state: GenerationState) -> bool:
        return self._state == state

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def send(self, event: GenerationEvent) -> bool:
        target = next_state(self._state, event.type)
        if target is None:
            logger.debug("transition_ignored", extra={"state": self._state.value, "event": event.type})
            return False
        previous = self._state
        self._context = _apply(self._context, target, event)
        self._state = target
        logger.debug(
            "transition",
            extra={"from_state": previous.value, "to_state": target.value, "event": event.type},
        )
        for listener in list(self._listeners):
            try:
                listener(previous, event, self)
            except Exception:
                logger.exception("transition_listener_failed", extra={"event": event.type})
        return True
