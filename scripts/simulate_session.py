"""
Headless co-writing session for Chronicle.

Runs one generation against an in-memory document, cycles through the
candidates, accepts the last one and prints the resulting document plus the
generation metrics:
- with a configured provider (GEMINI_API_KEY, OPENAI_API_KEY, ...) the real
  completion service is used
- with --offline a scripted service returns canned continuations

Run:
  python scripts/simulate_session.py --offline
  python scripts/simulate_session.py --mode line --variants 3
"""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import AsyncIterator, List

# Ensure repository root is on sys.path so 'src' package can be imported when
# executing this script from the scripts/ directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from src.chronicle.domain.models import GenerationMode, SamplingParams, UserSettings
from src.chronicle.errors import EmptyInputError
from src.chronicle.infrastructure.document import InMemoryDocument
from src.chronicle.observability.metrics import render_metrics
from src.chronicle.services.candidates import CandidateFetchCoordinator
from src.chronicle.services.completion_ai import CompletionService, LLMCompletionService
from src.chronicle.services.generation import GenerationOrchestrator

OPENING = "The lighthouse keeper had not seen a ship in eleven years."


class ScriptedCompletionService(CompletionService):
    """Deterministic stand-in used with --offline."""

    CONTINUATIONS: List[str] = [
        " Then, on a grey Tuesday, a sail appeared.",
        " He kept the lamp burning anyway, out of habit more than hope.",
        " The gulls were the only visitors, and they never stayed.",
        " Every night he logged the empty horizon in a careful hand.",
    ]

    def __init__(self) -> None:
        self._calls = 0

    async def stream_completion(self, prompt: str, params: SamplingParams) -> AsyncIterator[str]:
        for word in self.CONTINUATIONS[0].split(" ")[1:]:
            await asyncio.sleep(0.02)
            yield " " + word

    async def complete_once(self, prompt: str, params: SamplingParams) -> str:
        self._calls += 1
        await asyncio.sleep(0.05 * self._calls)
        return self.CONTINUATIONS[1 + (self._calls - 1) % (len(self.CONTINUATIONS) - 1)]


async def run(mode: GenerationMode, variants: int, offline: bool) -> None:
    document = InMemoryDocument(OPENING)
    service: CompletionService = ScriptedCompletionService() if offline else LLMCompletionService()
    orchestrator = GenerationOrchestrator(
        document,
        CandidateFetchCoordinator(service),
        UserSettings(variant_count=variants),
    )

    try:
        orchestrator.generate(mode)
    except EmptyInputError as exc:
        print(f"Cannot generate: {exc.message}")
        return
    await orchestrator.wait()

    if orchestrator.is_error:
        print(f"Generation failed: {orchestrator.machine.context.error}")
        return

    context = orchestrator.machine.context
    print(f"Received {len(context.candidates)} candidate(s)")
    for idx in range(len(context.candidates)):
        current = orchestrator.machine.context
        marker = "*" if idx == current.selected_index else " "
        print(f" {marker} [{idx}] {current.selected_candidate!r}")
        orchestrator.next_variant()
    orchestrator.accept()

    print("\nDocument:\n" + document.current_text())
    body, _ = render_metrics()
    lines = [line for line in body.decode("utf-8").splitlines() if line.startswith("chronicle_generation")]
    print("\nMetrics:\n" + "\n".join(lines))
    await orchestrator.aclose()


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--mode", choices=[m.value for m in GenerationMode], default=GenerationMode.CONTINUE.value)
    parser.add_argument("--variants", type=int, default=3)
    parser.add_argument("--offline", action="store_true", help="Use canned continuations instead of a provider")
    args = parser.parse_args()
    asyncio.run(run(GenerationMode(args.mode), args.variants, args.offline))


if __name__ == "__main__":
    main()
