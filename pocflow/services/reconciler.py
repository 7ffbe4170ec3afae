"""Reconciliation Engine — the single writer that serializes every input into the store.

Invariants:
    - Exactly one consumer task applies deltas, strictly in dequeue order
    - At most one authoritative reload in flight; a trigger while one is pending
      (debouncing) is a no-op, a trigger while one is fetching schedules exactly
      one trailing reload
    - Push-triggered reloads wait reload_debounce_s so event bursts cost one fetch
    - Reload stamps are taken at issue time: a reload issued before "new
      conversation" is dropped by the store as stale
    - Reload failures never roll back applied state; N consecutive failures mark
      the view stale, the next success clears it
    - Advisory deltas go to the ActivityReporter, never to the store
    - agents_ready{phase: "complete"} is terminal: the question round closes at
      once, the reload only fills in the rest
    - After close() nothing is applied and no request is issued

Design Decisions:
    - asyncio.Queue + one task over locks: there is no concurrent writer to guard
      against, only producers that raced (ADR: single logical actor)
    - No backoff of its own: the next poll tick or push event is the retry
    - Listeners run inside the writer and may return one follow-up delta; it is
      applied before the next queued delta, so "check then set" rules (smart
      follow-ups) cannot fire twice
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable

from pocflow.core.deltas import (
    ActivityStatus, DeltaStamp, PollTimeout, SetArtifact, SetFlags,
    delta_name, is_advisory_delta,
)
from pocflow.core.domain_types import (
    PHASE_COMPLETE, AgentStatus, SessionId, ToastLevel,
)
from pocflow.core.errors import ErrorCategory, ErrorContext, PocFlowError
from pocflow.core.session_snapshot import PhaseFlags, Session
from pocflow.core.session_store import SessionStore
from pocflow.core.transport_events import (
    ArtifactReady, Connected, Heartbeat, PhaseAdvanced, PollResult,
    QuestionsReady, TransportEvent, UnknownEvent, event_name,
)
from pocflow.services.activity_reporter import ActivityReporter
from pocflow.services.initial_loader import InitialLoader

logger = logging.getLogger(__name__)

# Listener signature: sees each new snapshot, may return one follow-up delta
SnapshotListener = Callable[[Session], object | None]


class ReconciliationEngine:
    """Merges initial load, push events, poll results and action responses."""

    MAX_REACTION_ROUNDS = 8

    def __init__(
        self,
        store: SessionStore,
        loader: InitialLoader,
        reporter: ActivityReporter,
        debounce_s: float = 0.5,
        stale_threshold: int = 3,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.loader = loader
        self.reporter = reporter
        self.debounce_s = debounce_s
        self.stale_threshold = stale_threshold
        self._sleep = sleep
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: list[SnapshotListener] = []
        self._consumer: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None
        self._reload_task: asyncio.Task | None = None
        self._trailing = False
        self._closed = False
        self._last_agent_status: AgentStatus | None = None
        self.consecutive_failures = 0
        self.reloads_issued = 0
        self.last_reload_error: PocFlowError | None = None

    @property
    def session_id(self) -> SessionId:
        return self.store.session_id

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._consumer is None and not self._closed:
            self._consumer = asyncio.create_task(self._consume())

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def current_stamp(self) -> DeltaStamp:
        snapshot = self.store.get_snapshot()
        return DeltaStamp(session_id=snapshot.session_id, run=snapshot.run)

    # --- Delta intake -----------------------------------------------------------

    def submit(self, delta: object, stamp: DeltaStamp | None = None) -> None:
        """Enqueue without waiting."""
        if self._closed:
            logger.debug(
                "Engine closed, dropped %s", delta_name(delta),
                extra={"session_id": self.session_id, "delta_type": delta_name(delta)},
            )
            return
        self._queue.put_nowait((delta, stamp, None))

    async def apply(self, delta: object, stamp: DeltaStamp | None = None) -> Session:
        """Enqueue and wait for the snapshot that results from it."""
        if self._closed:
            return self.store.get_snapshot()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((delta, stamp, future))
        return await future

    def submit_event(self, event: TransportEvent) -> None:
        """Normalize a push/poll event into deltas and reload requests."""
        match event:
            case Connected() | Heartbeat() | UnknownEvent():
                logger.debug(
                    "Ignored %s", event_name(event),
                    extra={"session_id": self.session_id, "event_type": event_name(event)},
                )
            case PhaseAdvanced(phase=phase) if phase == PHASE_COMPLETE:
                # terminal payload: agent selection closes the question round
                self.submit(
                    SetFlags(PhaseFlags(all_questions_answered=True)), self.current_stamp(),
                )
                self.reporter.toast(
                    ToastLevel.SUCCESS, "Agent selection complete! Ready to generate POC.",
                )
                self.request_reload(event_name(event))
            case PhaseAdvanced() | QuestionsReady():
                self.request_reload(event_name(event))
            case ArtifactReady(artifact_id=artifact_id):
                self.submit(SetArtifact(artifact_id), self.current_stamp())
                self.request_reload(event_name(event))
            case PollResult(status=status):
                self.submit(ActivityStatus(status, event.agent_name, event.activity_label))
                changed = status != self._last_agent_status
                self._last_agent_status = status
                if changed or status != AgentStatus.RUNNING or self.consecutive_failures:
                    self.request_reload(f"poll:{status.value}")

    # --- Reloads ----------------------------------------------------------------

    def request_reload(self, reason: str) -> None:
        """Debounced, coalesced authoritative reload."""
        if self._closed:
            return
        if self._reload_in_flight():
            self._trailing = True
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            return
        self._debounce_task = asyncio.create_task(self._debounce_then_reload(reason))

    async def reload_now(self, reason: str = "manual") -> bool:
        """Reload bypassing the debounce. Returns True when the reload succeeded."""
        if self._closed:
            return False
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
            self._debounce_task = None
        if self._reload_in_flight():
            self._trailing = True
            task = self._reload_task
        else:
            task = self._start_reload(reason)
        await asyncio.wait({task})
        return not task.cancelled() and task.result()

    def _reload_in_flight(self) -> bool:
        return self._reload_task is not None and not self._reload_task.done()

    async def _debounce_then_reload(self, reason: str) -> None:
        await self._sleep(self.debounce_s)
        self._debounce_task = None
        if self._reload_in_flight():
            self._trailing = True
            return
        self._start_reload(reason)

    def _start_reload(self, reason: str) -> asyncio.Task:
        self._reload_task = asyncio.create_task(self._run_reload(reason))
        return self._reload_task

    async def _run_reload(self, reason: str) -> bool:
        while True:
            self._trailing = False
            ok = await self._reload_once(reason)
            if not self._trailing or self._closed:
                return ok
            reason = "trailing"

    async def _reload_once(self, reason: str) -> bool:
        stamp = self.current_stamp()
        self.reloads_issued += 1
        logger.debug(
            "Authoritative reload (%s)", reason,
            extra={"session_id": self.session_id, "reason": reason, "run": stamp.run},
        )
        try:
            reload = await self.loader.load(self.session_id)
        except PocFlowError as e:
            self._record_failure(e, reason)
            return False
        except Exception as e:
            logger.error(
                "Unexpected reload failure: %s", e,
                extra={"session_id": self.session_id, "reason": reason},
                exc_info=True,
            )
            self._record_failure(PocFlowError(
                "Unexpected reload failure", "INTERNAL_ERROR", ErrorCategory.INTERNAL,
                context=ErrorContext(session_id=self.session_id, operation="reload"),
            ), reason)
            return False
        self._record_success()
        await self.apply(reload, stamp)
        return True

    def _record_failure(self, error: PocFlowError, reason: str) -> None:
        self.consecutive_failures += 1
        self.last_reload_error = error
        logger.warning(
            "Reload failed (%s): %s", reason, error.message,
            extra={"session_id": self.session_id, "reason": reason,
                   "error_code": error.code, "attempt": self.consecutive_failures},
        )
        if self.consecutive_failures >= self.stale_threshold:
            self.reporter.set_stale(True, self.consecutive_failures)

    def _record_success(self) -> None:
        if self.consecutive_failures:
            logger.info(
                "Reload recovered after %d failures", self.consecutive_failures,
                extra={"session_id": self.session_id},
            )
        self.consecutive_failures = 0
        self.last_reload_error = None
        self.reporter.set_stale(False)

    # --- Consumer ---------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            delta, stamp, future = await self._queue.get()
            try:
                snapshot = self._process(delta, stamp)
            except Exception as e:
                logger.error(
                    "Failed to process %s: %s", delta_name(delta), e,
                    extra={"session_id": self.session_id, "delta_type": delta_name(delta)},
                    exc_info=True,
                )
                snapshot = self.store.get_snapshot()
            if future is not None and not future.done():
                future.set_result(snapshot)

    def _process(self, delta: object, stamp: DeltaStamp | None) -> Session:
        if is_advisory_delta(delta):
            self._route_advisory(delta)
            return self.store.get_snapshot()
        before = self.store.get_snapshot()
        after = self.store.apply_delta(delta, stamp)
        rounds = 0
        while after is not before and rounds < self.MAX_REACTION_ROUNDS:
            rounds += 1
            reactions = self._notify(after)
            before = after
            for reaction in reactions:
                after = self.store.apply_delta(reaction)
        return after

    def _notify(self, snapshot: Session) -> list[object]:
        reactions = []
        for listener in self._listeners:
            try:
                reaction = listener(snapshot)
            except Exception as e:
                logger.error(
                    "Snapshot listener failed: %s", e,
                    extra={"session_id": self.session_id}, exc_info=True,
                )
                continue
            if reaction is not None:
                reactions.append(reaction)
        return reactions

    def _route_advisory(self, delta: object) -> None:
        match delta:
            case ActivityStatus():
                self.reporter.on_activity(delta)
            case PollTimeout():
                self.reporter.on_poll_timeout(delta)

    # --- Shutdown ---------------------------------------------------------------

    async def close(self) -> None:
        """Cancel the consumer, the debounce timer and any in-flight reload."""
        if self._closed:
            return
        self._closed = True
        tasks = [
            t for t in (self._debounce_task, self._reload_task, self._consumer)
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.cancel()
        logger.info("Engine closed", extra={"session_id": self.session_id})
