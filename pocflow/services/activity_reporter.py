"""Activity Reporter — transient UI feedback derived from transport activity.

Invariants:
    - Never reads or writes the session store; fed only by advisory deltas and
      explicit calls from the orchestrator
    - Success/info toasts expire after toast_duration_ms; error toasts stay until dismissed
    - At most _MAX_TOASTS are held; the oldest is dropped first
    - A PollTimeout moves the UI to the manual-check state exactly once per wait
    - stale is raised by the engine after N consecutive reload failures and
      cleared by the next successful reload

Design Decisions:
    - Fan-out via one bounded asyncio.Queue per subscriber: the notification
      SSE endpoint drains its own queue, a slow client never blocks the engine
    - Notifications reuse the {"type", "data"} envelope of PocFlowError.to_sse_event()
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass

from pocflow.core.deltas import ActivityStatus, PollTimeout
from pocflow.core.domain_types import AgentStatus, ToastLevel
from pocflow.core.errors import ErrorContext, PocFlowError, WorkflowTimeoutError

logger = logging.getLogger(__name__)

_SUBSCRIBER_QUEUE_SIZE = 100
_MAX_TOASTS = 20


@dataclass(frozen=True)
class Toast:
    toast_id: int
    level: ToastLevel
    message: str
    expires_at: float | None

    def to_dict(self) -> dict:
        return {"id": self.toast_id, "level": self.level.value, "message": self.message}


class ActivityReporter:
    """Per-session feedback state plus notification fan-out."""

    def __init__(self, session_id: str, toast_duration_ms: int = 3_000, clock=time.monotonic):
        self.session_id = session_id
        self._toast_duration_s = toast_duration_ms / 1000
        self._clock = clock
        self._toast_ids = itertools.count(1)
        self._toasts: list[Toast] = []
        self._subscribers: set[asyncio.Queue] = set()
        self.activity_label = ""
        self.agent_status = AgentStatus.IDLE
        self.stale = False
        self.awaiting_manual_check = False

    # --- Advisory deltas --------------------------------------------------------

    def on_activity(self, delta: ActivityStatus) -> None:
        if (delta.status, delta.activity_label) == (self.agent_status, self.activity_label):
            return
        self.agent_status = delta.status
        self.activity_label = delta.activity_label
        self.publish("activity", {
            "status": delta.status.value,
            "agent_name": delta.agent_name,
            "activity_label": delta.activity_label,
        })

    def on_poll_timeout(self, delta: PollTimeout) -> None:
        if self.awaiting_manual_check:
            return
        self.awaiting_manual_check = True
        self.activity_label = ""
        error = WorkflowTimeoutError(
            delta.waited_ms, delta.waiting_for, ErrorContext(session_id=self.session_id),
        )
        error.context.user_message = (
            "This is taking longer than expected. Use 'Check for updates' to refresh."
        )
        logger.warning(
            error.message,
            extra={"session_id": self.session_id, "error_code": error.code},
        )
        self.publish_event(error.to_sse_event())
        self.toast(ToastLevel.INFO, error.context.user_message)

    def set_activity_label(self, label: str) -> None:
        if label != self.activity_label:
            self.activity_label = label
            self.publish("activity", {"activity_label": label})

    def clear_manual_check(self) -> None:
        self.awaiting_manual_check = False

    def set_stale(self, stale: bool, failures: int = 0) -> None:
        if stale == self.stale:
            return
        self.stale = stale
        if stale:
            logger.warning(
                "Session view is stale after %d failed reloads", failures,
                extra={"session_id": self.session_id, "attempt": failures},
            )
        self.publish("stale", {"stale": stale, "failures": failures})

    # --- Toasts -----------------------------------------------------------------

    def toast(self, level: ToastLevel, message: str) -> Toast:
        expires_at = None if level == ToastLevel.ERROR else self._clock() + self._toast_duration_s
        toast = Toast(next(self._toast_ids), level, message, expires_at)
        self._toasts.append(toast)
        del self._toasts[:-_MAX_TOASTS]
        self.publish("toast", toast.to_dict())
        return toast

    def report_error(self, error: PocFlowError) -> None:
        """Surface a dispatcher failure as a persistent toast."""
        self.toast(ToastLevel.ERROR, error.context.user_message or error.message)

    def dismiss(self, toast_id: int) -> bool:
        """Remove one toast. Returns False when it is unknown or already gone."""
        kept = [t for t in self._toasts if t.toast_id != toast_id]
        found = len(kept) != len(self._toasts)
        self._toasts = kept
        return found

    def active_toasts(self) -> list[Toast]:
        now = self._clock()
        self._toasts = [
            t for t in self._toasts if t.expires_at is None or t.expires_at > now
        ]
        return list(self._toasts)

    # --- Fan-out ----------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event_type: str, data: dict) -> None:
        self.publish_event({"type": event_type, "data": data})

    def publish_event(self, event: dict) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(
                    "Dropped %s notification for slow subscriber", event.get("type"),
                    extra={"session_id": self.session_id, "event_type": event.get("type")},
                )

    def view(self) -> dict:
        return {
            "activity_label": self.activity_label,
            "stale": self.stale,
            "awaiting_manual_check": self.awaiting_manual_check,
            "toasts": [t.to_dict() for t in self.active_toasts()],
        }
