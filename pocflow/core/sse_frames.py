"""SSE Frames — incremental decoder and encoder for text/event-stream.

Invariants:
    - feed() is fed one line at a time (without the trailing newline) and
      returns a frame only on the blank line that terminates it
    - Multiple data: lines join with "\\n" (per the EventSource algorithm)
    - Comment lines (":" prefix) and unknown fields are ignored
    - retry: with a non-integer value is ignored
    - sse_line() output is always terminated by a blank line

Design Decisions:
    - Hand-rolled over a client library: the server side already formats frames
      by hand (sse_line), and the decoder is the exact inverse
    - Pure state machine, no IO: the push listener owns the socket
"""

import json
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SSEFrame:
    event: str | None
    data: str
    event_id: str | None = None


@dataclass
class SSEDecoder:
    """Line-oriented decoder. Tracks last event id and server retry hint."""
    last_event_id: str | None = None
    retry_ms: int | None = None
    _event: str | None = None
    _data: list[str] = field(default_factory=list)

    def feed(self, line: str) -> SSEFrame | None:
        line = line.rstrip("\r")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        match name:
            case "event":
                self._event = value
            case "data":
                self._data.append(value)
            case "id":
                self.last_event_id = value
            case "retry":
                if value.isdigit():
                    self.retry_ms = int(value)
        return None

    def _dispatch(self) -> SSEFrame | None:
        if not self._data:
            self._event = None
            return None
        frame = SSEFrame(
            event=self._event or None,
            data="\n".join(self._data),
            event_id=self.last_event_id,
        )
        self._event = None
        self._data = []
        return frame


def sse_line(event: dict) -> str:
    """Format event as SSE data line."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
