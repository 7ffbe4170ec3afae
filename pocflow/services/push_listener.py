"""Push Listener — consumes the backend SSE stream and forwards typed events.

Invariants:
    - Every decoded frame becomes exactly one TransportEvent (unknown names → UnknownEvent)
    - Events only signal "something changed"; the engine decides what to reload
    - On disconnect or transport failure it reconnects by itself after the
      server-advertised retry: delay, else reconnect_delay_s
    - A reconnect's Connected event is forwarded like any other (the engine
      treats it as a no-op), so reconnecting cannot duplicate state
    - stop() cancels the subscription; nothing is forwarded afterwards

Design Decisions:
    - One SSEDecoder per connection, retry hint carried across connections
    - Catch-all around the stream: a listener crash would silently drop push
      updates for the rest of the session
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable

from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.core.domain_types import SessionId
from pocflow.core.errors import PocFlowError
from pocflow.core.sse_frames import SSEDecoder
from pocflow.core.transport_events import TransportEvent, event_name, parse_event

logger = logging.getLogger(__name__)


class PushListener:
    """SSE subscriber for one session."""

    def __init__(
        self,
        backend: WorkflowBackend,
        session_id: SessionId,
        on_event: Callable[[TransportEvent], None],
        reconnect_delay_s: float = 3.0,
        sleep=asyncio.sleep,
    ):
        self.backend = backend
        self.session_id = session_id
        self._on_event = on_event
        self.reconnect_delay_s = reconnect_delay_s
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._retry_ms: int | None = None
        self.connections = 0
        self.last_event_id: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def reconnect_delay(self) -> float:
        if self._retry_ms is not None:
            return self._retry_ms / 1000
        return self.reconnect_delay_s

    async def _run(self) -> None:
        while True:
            self.connections += 1
            try:
                await self._consume()
                logger.info(
                    "Event stream closed by server",
                    extra={"session_id": self.session_id, "attempt": self.connections},
                )
            except PocFlowError as e:
                logger.warning(
                    "Event stream failed: %s", e.message,
                    extra={"session_id": self.session_id, "error_code": e.code,
                           "attempt": self.connections},
                )
            except Exception as e:
                logger.error(
                    "Unexpected error in event stream: %s", e,
                    extra={"session_id": self.session_id, "attempt": self.connections},
                    exc_info=True,
                )
            await self._sleep(self.reconnect_delay)

    async def _consume(self) -> None:
        decoder = SSEDecoder(retry_ms=self._retry_ms)
        async for line in self.backend.stream_lines(self.session_id):
            frame = decoder.feed(line)
            self._retry_ms = decoder.retry_ms
            if frame is None:
                continue
            self.last_event_id = frame.event_id or self.last_event_id
            event = parse_event(frame.event, frame.data)
            logger.debug(
                "Received %s", event_name(event),
                extra={"session_id": self.session_id, "event_type": event_name(event)},
            )
            self._on_event(event)
