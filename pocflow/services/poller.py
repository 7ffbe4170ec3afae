"""Poller — advisory agent-status polling while a long-running wait is in progress.

Invariants:
    - Runs only while condition() holds; checked before every tick
    - First status request goes out immediately, then one every interval_s, no backoff
    - After max_duration_s without the condition clearing it emits exactly one
      PollTimeout and stops
    - A failed status request is logged and skipped; the next tick retries
    - Never writes the store: results go to on_result as PollResult events

Design Decisions:
    - Injectable sleep/clock so tests drive time deterministically
    - The condition is a callable over orchestrator state, not a snapshot copy:
      the poller stops on the first tick after the wait clears
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from pydantic import ValidationError

from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.core.deltas import PollTimeout
from pocflow.core.domain_types import SessionId
from pocflow.core.errors import PocFlowError
from pocflow.core.transport_events import PollResult, poll_result
from pocflow.schemas.backend import AgentStatusPayload

logger = logging.getLogger(__name__)


class Poller:
    """Fallback status poller for one session."""

    def __init__(
        self,
        backend: WorkflowBackend,
        session_id: SessionId,
        on_result: Callable[[PollResult], None],
        on_timeout: Callable[[PollTimeout], None],
        condition: Callable[[], bool],
        interval_s: float = 5.0,
        max_duration_s: float = 300.0,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.backend = backend
        self.session_id = session_id
        self._on_result = on_result
        self._on_timeout = on_timeout
        self._condition = condition
        self.interval_s = interval_s
        self.max_duration_s = max_duration_s
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.ticks = 0
        self.timeouts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, waiting_for: str) -> None:
        """Start polling unless already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(waiting_for))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self, waiting_for: str) -> None:
        started = self._clock()
        logger.info(
            "Polling started while waiting for %s", waiting_for,
            extra={"session_id": self.session_id, "reason": waiting_for},
        )
        while self._condition():
            waited = self._clock() - started
            if waited >= self.max_duration_s:
                self.timeouts += 1
                self._on_timeout(PollTimeout(
                    waiting_for=waiting_for, waited_ms=int(waited * 1000),
                ))
                return
            await self._tick()
            await self._sleep(self.interval_s)
        logger.info(
            "Polling stopped: %s no longer pending", waiting_for,
            extra={"session_id": self.session_id, "reason": waiting_for},
        )

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            raw = await self.backend.get_agent_status(self.session_id)
        except PocFlowError as e:
            logger.warning(
                "Status poll failed: %s", e.message,
                extra={"session_id": self.session_id, "error_code": e.code,
                       "attempt": self.ticks},
            )
            return
        try:
            payload = AgentStatusPayload.model_validate(raw)
        except ValidationError:
            payload = AgentStatusPayload(status="unknown")
        self._on_result(poll_result(payload.status, payload.agent_name))
