from __future__ import annotations

"""Prometheus metrics for the generation engine.

Transition counts, end-to-end generation latency, per-candidate latency and
typed characters. ``render_metrics`` returns the text exposition so hosts
can serve it however they like.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest

# Generations span network round trips plus typewriter playback (seconds)
_LATENCY_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)

GENERATION_TRANSITIONS = Counter(
    "chronicle_generation_transitions_total",
    "State machine transitions by event and resulting state",
    labelnames=("event", "state"),
)

GENERATION_LATENCY = Histogram(
    "chronicle_generation_latency_seconds",
    "Time from GENERATE to the generation's outcome",
    labelnames=("outcome",),
    buckets=_LATENCY_BUCKETS,
)

CANDIDATE_LATENCY = Histogram(
    "chronicle_candidate_latency_seconds",
    "Time to receive one complete candidate",
    labelnames=("kind",),
    buckets=_LATENCY_BUCKETS,
)

PLAYBACK_CHARACTERS = Counter(
    "chronicle_playback_characters_total",
    "Characters typed into the document by playback",
)


def observe_transition(event: str, state: str) -> None:
    try:
        GENERATION_TRANSITIONS.labels(event=event, state=state).inc()
    except Exception:
        # Metrics never block a transition
        pass


@contextmanager
def timed_candidate(kind: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        CANDIDATE_LATENCY.labels(kind=kind).observe(time.perf_counter() - start)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
