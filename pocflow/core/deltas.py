"""State Deltas — normalized units of change consumed by the reconciliation engine.

Invariants:
    - Every transport (initial load, push, poll, action response) is reduced to these types
    - Deltas are frozen: once enqueued they cannot be altered by their producer
    - Advisory deltas (ActivityStatus, PollTimeout) never mutate the session store
    - DeltaStamp binds a delta to the session id and workflow run it was issued for

Design Decisions:
    - Closed set of dataclasses over loosely-typed dicts: merge_delta dispatches
      with match-case and treats anything else as a StateConflictError
    - Stamps are assigned at request-issue time, not at arrival: a response from
      a request issued before "new conversation" is recognisably stale
"""

from dataclasses import dataclass

from pocflow.core.domain_types import AgentStatus, ArtifactId, SessionId, TemporaryId
from pocflow.core.session_snapshot import (
    Message, PhaseFlags, Progress, ServerEvidence, UploadedFile,
)


@dataclass(frozen=True)
class DeltaStamp:
    """Issue-time identity of a delta: which session and which workflow run."""
    session_id: SessionId
    run: int


# ─── Store deltas ────────────────────────────────────────────────

@dataclass(frozen=True)
class AppendMessages:
    """Append entries whose id is not already present."""
    messages: tuple[Message, ...]


@dataclass(frozen=True)
class RemoveTemporaryMessage:
    """Drop one optimistic entry after its request failed."""
    message_id: TemporaryId


@dataclass(frozen=True)
class AuthoritativeReload:
    """Full server view: replaces the local message list."""
    messages: tuple[Message, ...]
    evidence: ServerEvidence
    uploaded_files: tuple[UploadedFile, ...] = ()
    selected_contexts: tuple[str, ...] = ()
    engineering_task_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class SetFlags:
    """Raise flags (OR). False values are ignored, never clear a flag."""
    flags: PhaseFlags


@dataclass(frozen=True)
class SetProgress:
    progress: Progress


@dataclass(frozen=True)
class SetArtifact:
    artifact_id: ArtifactId


@dataclass(frozen=True)
class ClearArtifact:
    """Explicit removal, e.g. after the user deleted the current artifact."""
    artifact_id: ArtifactId


@dataclass(frozen=True)
class SetProblemStatement:
    text: str


@dataclass(frozen=True)
class SetSelections:
    selected_contexts: tuple[str, ...]
    engineering_task_types: tuple[str, ...]


@dataclass(frozen=True)
class AddUploadedFiles:
    """Insert files; an entry with a known key replaces the existing one."""
    files: tuple[UploadedFile, ...]


@dataclass(frozen=True)
class RemoveUploadedFiles:
    keys: frozenset[tuple[str, int]]


@dataclass(frozen=True)
class NewConversation:
    """Atomic reset of flags, messages, progress and artifact for a new run."""


# ─── Advisory deltas (never reach the store) ────────────────────

@dataclass(frozen=True)
class ActivityStatus:
    """Poll/stream status: UI feedback only."""
    status: AgentStatus
    agent_name: str | None
    activity_label: str


@dataclass(frozen=True)
class PollTimeout:
    waiting_for: str
    waited_ms: int


ADVISORY_DELTAS = (ActivityStatus, PollTimeout)


def delta_name(delta: object) -> str:
    return type(delta).__name__


def is_advisory_delta(delta: object) -> bool:
    return isinstance(delta, ADVISORY_DELTAS)
