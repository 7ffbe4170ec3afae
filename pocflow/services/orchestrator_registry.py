"""Orchestrator Registry — holds the one active session orchestrator per process.

Invariants:
    - At most one orchestrator is active at a time
    - activate() closes the previous orchestrator (all adapters cancelled)
      BEFORE the new one starts, so no stale delta crosses sessions
    - Activation is serialized by an asyncio.Lock

Design Decisions:
    - Single active session mirrors the UI: one conversation view is mounted at a time
    - Process-level registry held on app.state, like the per-session in-memory
      state dict of the routes (ADR: single-process, state loss acceptable)
"""

import asyncio
import logging
from collections.abc import Callable

from pocflow.config import Settings
from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.services.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)


class OrchestratorRegistry:
    """Switches the active session."""

    def __init__(
        self,
        backend: WorkflowBackend,
        settings: Settings,
        factory: Callable[..., SessionOrchestrator] = SessionOrchestrator,
    ):
        self.backend = backend
        self.settings = settings
        self._factory = factory
        self._current: SessionOrchestrator | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> SessionOrchestrator | None:
        return self._current

    def get(self, session_id: str) -> SessionOrchestrator | None:
        if self._current is not None and self._current.session_id == session_id:
            return self._current
        return None

    async def activate(self, session_id: str) -> SessionOrchestrator:
        """Return the orchestrator for session_id, switching sessions if needed."""
        async with self._lock:
            existing = self.get(session_id)
            if existing is not None:
                return existing
            previous, self._current = self._current, None
            if previous is not None:
                logger.info(
                    "Switching session %s -> %s", previous.session_id, session_id,
                    extra={"session_id": session_id},
                )
                await previous.close()
            orchestrator = self._factory(session_id, self.backend, self.settings)
            self._current = orchestrator
            outcome = await orchestrator.start()
            if not outcome.ok:
                logger.warning(
                    "Initial load failed for session %s: %s",
                    session_id, outcome.error.message,
                    extra={"session_id": session_id, "error_code": outcome.error.code},
                )
            return orchestrator

    async def close(self) -> None:
        async with self._lock:
            current, self._current = self._current, None
            if current is not None:
                await current.close()
