"""Service test fixtures — fake backend, fast settings, a started orchestrator.

Invariants:
    - Every test gets a fresh FakeBackend and orchestrator
    - Timings are milliseconds so debounce/poll paths run in real time quickly
    - The orchestrator fixture is closed after the test (all adapters cancelled)
"""

import pytest

from pocflow.config import Settings
from pocflow.services.orchestrator import SessionOrchestrator
from tests.services.fake_backend import FakeBackend


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings():
    return Settings(
        reload_debounce_ms=5,
        poll_interval_ms=5,
        poll_max_duration_ms=2_000,
        sse_reconnect_delay_ms=5,
        stale_failure_threshold=3,
    )


@pytest.fixture
async def orchestrator(backend, settings):
    orch = SessionOrchestrator("s1", backend, settings)
    await orch.start()
    yield orch
    await orch.close()
