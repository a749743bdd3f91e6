import asyncio

import pytest

from src.chronicle.domain.generation_events import Success
from src.chronicle.domain.models import GenerationContext, GenerationMode, GenerationRange, GenerationState
from src.chronicle.errors import EmptyInputError, ServiceError
from src.chronicle.services import telemetry_sink
from src.chronicle.services.candidates import CandidateFetchCoordinator

from tests.utils import ScriptedCompletionService, make_orchestrator


def _capture_success(orchestrator):
    seen = []

    def listener(prev, event, machine):
        if isinstance(event, Success):
            seen.append(event)

    orchestrator.machine.subscribe(listener)
    return seen


@pytest.mark.asyncio
async def test_line_generation_streams_first_candidate_into_document():
    service = ScriptedCompletionService(chunks=["The", " cat", " sat."], once=["A dog ran.", "It rained."])
    orchestrator, doc = make_orchestrator(service, text="Story: ", variant_count=3)
    successes = _capture_success(orchestrator)

    task = orchestrator.generate(GenerationMode.LINE)
    assert task is not None
    assert orchestrator.is_generating
    await orchestrator.wait()

    assert orchestrator.state == GenerationState.REVIEWING
    assert len(successes) == 1
    assert successes[0].candidates == ("The cat sat.", "A dog ran.", "It rained.")
    assert successes[0].range == GenerationRange(7, 19)
    ctx = orchestrator.machine.context
    assert ctx.selected_index == 0
    assert doc.current_text() == "Story: The cat sat."
    assert doc.text_between(ctx.generation_range.start, ctx.generation_range.end) == ctx.candidates[0]
    assert "Write exactly one sentence." in service.prompts[0]


@pytest.mark.asyncio
async def test_generation_inserts_at_cursor_not_document_end():
    service = ScriptedCompletionService(chunks=["middle "])
    orchestrator, doc = make_orchestrator(service, text="start end", variant_count=1, cursor=6)
    orchestrator.generate()
    await orchestrator.wait()
    assert doc.current_text() == "start middle end"
    assert orchestrator.machine.context.generation_range == GenerationRange(6, 13)


@pytest.mark.asyncio
async def test_cycling_swaps_document_text_and_round_trips():
    service = ScriptedCompletionService(chunks=["foo"], once=["barbaz"])
    orchestrator, doc = make_orchestrator(service, text="0123456789", variant_count=2)
    orchestrator.generate()
    await orchestrator.wait()
    assert orchestrator.machine.context.generation_range == GenerationRange(10, 13)

    assert orchestrator.next_variant() is True
    ctx = orchestrator.machine.context
    assert ctx.selected_index == 1
    assert ctx.generation_range == GenerationRange(10, 16)
    assert doc.text_between(10, 16) == "barbaz"

    assert orchestrator.next_variant() is True
    ctx = orchestrator.machine.context
    assert ctx.selected_index == 0
    assert ctx.generation_range == GenerationRange(10, 13)
    assert doc.current_text() == "0123456789foo"

    orchestrator.prev_variant()
    assert doc.current_text() == "0123456789barbaz"


@pytest.mark.asyncio
async def test_cycle_requires_more_than_one_candidate():
    service = ScriptedCompletionService(chunks=["only"])
    orchestrator, doc = make_orchestrator(service, text="x", variant_count=1)
    orchestrator.generate()
    await orchestrator.wait()
    assert orchestrator.next_variant() is False
    assert orchestrator.machine.context.selected_index == 0
    assert doc.current_text() == "xonly"


def test_cycle_outside_reviewing_is_ignored():
    orchestrator, doc = make_orchestrator(ScriptedCompletionService(), text="abc")
    assert orchestrator.cycle("next") is False
    assert orchestrator.state == GenerationState.IDLE
    assert doc.current_text() == "abc"


@pytest.mark.asyncio
async def test_service_error_moves_to_error_state():
    service = ScriptedCompletionService(
        chunks=["par", "tial"],
        once=["a", "b"],
        once_errors={1: ServiceError("rate limited")},
    )
    orchestrator, _ = make_orchestrator(service, variant_count=3)
    orchestrator.generate()
    await orchestrator.wait()
    assert orchestrator.state == GenerationState.ERROR
    assert orchestrator.machine.context.error == "rate limited"
    assert orchestrator.machine.context.candidates == ()
    assert orchestrator.queue.pending == 0


@pytest.mark.asyncio
async def test_unexpected_exception_uses_its_message():
    service = ScriptedCompletionService(chunks=["a"], stream_error=RuntimeError("socket closed"))
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    orchestrator.generate()
    await orchestrator.wait()
    assert orchestrator.is_error
    assert orchestrator.machine.context.error == "socket closed"


@pytest.mark.asyncio
async def test_retry_reuses_last_mode_and_recovers():
    service = ScriptedCompletionService(
        chunks=["ok."],
        once=["x", "y", "Second.", "Third."],
        once_errors={1: ServiceError("rate limited")},
    )
    orchestrator, doc = make_orchestrator(service, text="Begin. ", variant_count=3)
    orchestrator.generate(GenerationMode.PARAGRAPH)
    await orchestrator.wait()
    assert orchestrator.is_error
    text_after_error = doc.current_text()

    assert orchestrator.retry() is not None
    assert orchestrator.machine.context == GenerationContext()
    await orchestrator.wait()
    assert orchestrator.is_reviewing
    assert orchestrator.machine.context.candidates == ("ok.", "Second.", "Third.")
    assert all("Write exactly one complete paragraph." in p for p in service.prompts)
    span = orchestrator.machine.context.generation_range
    assert span.start == len(text_after_error)
    assert doc.text_between(span.start, span.end) == "ok."


def test_retry_outside_error_is_ignored():
    orchestrator, _ = make_orchestrator(ScriptedCompletionService(), text="abc")
    assert orchestrator.retry() is None
    assert orchestrator.state == GenerationState.IDLE


@pytest.mark.asyncio
async def test_stop_freezes_playback_and_discards_late_results():
    stream_gate = asyncio.Event()
    once_gate = asyncio.Event()
    service = ScriptedCompletionService(
        chunks=["Hel", "lo"],
        once=["late one", "late two"],
        stream_gate=stream_gate,
        once_gate=once_gate,
    )
    orchestrator, doc = make_orchestrator(service, text="Say: ", variant_count=3)
    transitions = []
    orchestrator.machine.subscribe(lambda prev, event, m: transitions.append(event.type))

    orchestrator.generate()
    await asyncio.sleep(0.05)
    orchestrator.stop()
    assert orchestrator.state == GenerationState.IDLE
    assert orchestrator.queue.pending == 0
    frozen = doc.current_text()
    # Whatever was typed before the stop stays in the document.
    assert frozen.startswith("Say: ")

    stream_gate.set()
    once_gate.set()
    await orchestrator.wait()
    await asyncio.sleep(0.02)

    assert orchestrator.state == GenerationState.IDLE
    assert orchestrator.machine.context == GenerationContext()
    assert doc.current_text() == frozen
    assert transitions == ["GENERATE", "STOP"]


@pytest.mark.asyncio
async def test_replaced_generation_results_are_discarded():
    gate = asyncio.Event()
    slow = ScriptedCompletionService(chunks=["old"], stream_gate=gate)
    orchestrator, doc = make_orchestrator(slow, text="Doc ", variant_count=1)
    orchestrator.generate()
    await asyncio.sleep(0.02)
    orchestrator.stop()

    orchestrator.coordinator = CandidateFetchCoordinator(ScriptedCompletionService(chunks=["new"]))
    orchestrator.generate()
    gate.set()
    await orchestrator.wait()
    await asyncio.sleep(0.02)

    assert orchestrator.is_reviewing
    assert orchestrator.machine.context.candidates == ("new",)
    span = orchestrator.machine.context.generation_range
    assert doc.text_between(span.start, span.end) == "new"


@pytest.mark.asyncio
async def test_generate_while_generating_is_ignored():
    gate = asyncio.Event()
    service = ScriptedCompletionService(chunks=["a"], stream_gate=gate)
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    orchestrator.generate()
    assert orchestrator.generate() is None
    gate.set()
    await orchestrator.wait()
    assert sum(1 for kind, _ in service.calls if kind == "stream") == 1


def test_generate_on_blank_document_raises():
    orchestrator, _ = make_orchestrator(ScriptedCompletionService(), text="   \n")
    with pytest.raises(EmptyInputError):
        orchestrator.generate()
    assert orchestrator.state == GenerationState.IDLE


@pytest.mark.asyncio
async def test_generate_from_reviewing_accepts_and_continues_after_selection():
    service = ScriptedCompletionService(chunks=[" one"], once=[" two!", " three", " four"])
    orchestrator, doc = make_orchestrator(service, text="Count:", variant_count=2)
    orchestrator.generate()
    await orchestrator.wait()
    orchestrator.next_variant()
    assert doc.current_text() == "Count: two!"

    transitions = []
    orchestrator.machine.subscribe(lambda prev, event, m: transitions.append(event.type))
    orchestrator.generate()
    await orchestrator.wait()
    assert transitions[:2] == ["ACCEPT", "GENERATE"]
    assert orchestrator.machine.context.generation_range.start == len("Count: two!")
    assert doc.current_text() == "Count: two! one"


@pytest.mark.asyncio
async def test_user_interaction_accepts_candidate():
    service = ScriptedCompletionService(chunks=["abc"])
    orchestrator, doc = make_orchestrator(service, text="x", variant_count=1)
    orchestrator.generate()
    await orchestrator.wait()
    orchestrator.on_user_interaction()
    assert orchestrator.state == GenerationState.IDLE
    assert doc.current_text() == "xabc"
    assert orchestrator.accept() is False


@pytest.mark.asyncio
async def test_generate_shortcut_toggles_stop():
    gate = asyncio.Event()
    service = ScriptedCompletionService(chunks=["a"], stream_gate=gate)
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    orchestrator.handle_shortcut("generate")
    assert orchestrator.is_generating
    orchestrator.handle_shortcut("generate")
    assert orchestrator.state == GenerationState.IDLE
    gate.set()
    await orchestrator.wait()
    assert orchestrator.state == GenerationState.IDLE


@pytest.mark.asyncio
async def test_mode_shortcuts_and_unknown_action():
    service = ScriptedCompletionService(chunks=["."])
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    orchestrator.handle_shortcut("paragraph")
    await orchestrator.wait()
    assert "Write exactly one complete paragraph." in service.prompts[-1]
    orchestrator.handle_shortcut("line")
    await orchestrator.wait()
    assert "Write exactly one sentence." in service.prompts[-1]
    with pytest.raises(ValueError):
        orchestrator.handle_shortcut("rewrite")


@pytest.mark.asyncio
async def test_generation_records_telemetry():
    service = ScriptedCompletionService(chunks=["hi"])
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    orchestrator.generate(GenerationMode.LINE)
    await orchestrator.wait()
    names = [event.name for event in telemetry_sink.recent_events()]
    assert names == ["generation_started", "generation_success"]
    started, finished = telemetry_sink.recent_events()
    assert started.properties["mode"] == "line"
    assert finished.generation == started.generation
    assert finished.properties["candidates"] == 1


@pytest.mark.asyncio
async def test_aclose_stops_running_generation():
    gate = asyncio.Event()
    service = ScriptedCompletionService(chunks=["a"], stream_gate=gate)
    orchestrator, _ = make_orchestrator(service, variant_count=1)
    task = orchestrator.generate()
    await orchestrator.aclose()
    assert orchestrator.state == GenerationState.IDLE
    assert task.done()
