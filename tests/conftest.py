import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _reset_shared_state(monkeypatch):
    """Keep module-level breaker, telemetry and publisher state from leaking between tests."""
    from src.chronicle.infrastructure import events
    from src.chronicle.services import completion_ai, telemetry_sink

    monkeypatch.delenv("REDIS_URL", raising=False)
    completion_ai.BREAKER.reset()
    events.reset_publisher()
    telemetry_sink.clear_events()
    yield
    events.reset_publisher()
