"""Session Snapshot — immutable view of one analysis session.

Invariants:
    - Every dataclass here is frozen: a snapshot never changes after construction
    - messages keep insertion order (= conversation order)
    - uploaded_files are unique by (filename, size)
    - PhaseFlags only grow within one workflow run (enforced by merge_delta)
    - baseline is the server evidence visible when the current run started

Design Decisions:
    - Tuples instead of lists/sets: snapshots are safe to share across tasks
    - Computed properties over stored counters: no hidden state, derive_phase stays pure
    - ServerEvidence kept on the snapshot so "new conversation" can ignore
      server facts that predate it (ADR: client-scoped conversation reset)
"""

from dataclasses import dataclass, field

from pocflow.core.domain_types import (
    ArtifactId, ConfirmedId, MessageId, MessageRole, SessionId, TemporaryId,
)


@dataclass(frozen=True)
class Message:
    """One conversation entry."""
    message_id: MessageId
    role: MessageRole
    content: str
    timestamp: str

    @property
    def is_temporary(self) -> bool:
        return isinstance(self.message_id, TemporaryId)

    def to_dict(self) -> dict:
        return {
            "id": str(self.message_id),
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "temporary": self.is_temporary,
        }


@dataclass(frozen=True)
class UploadedFile:
    """Support file attached to the session. Identity is (filename, size)."""
    filename: str
    size: int
    file_id: str | None = None
    file_type: str | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.filename, self.size)

    @property
    def confirmed(self) -> bool:
        return self.file_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.file_id,
            "filename": self.filename,
            "size": self.size,
            "file_type": self.file_type,
            "confirmed": self.confirmed,
        }


@dataclass(frozen=True)
class PhaseFlags:
    """Monotonic workflow flags for one run."""
    problem_statement_saved: bool = False
    files_analyzed: bool = False
    all_questions_answered: bool = False
    smart_followups_generated: bool = False

    def union(self, other: "PhaseFlags") -> "PhaseFlags":
        """Boolean OR per flag: commutative, associative, idempotent."""
        return PhaseFlags(
            problem_statement_saved=(
                self.problem_statement_saved or other.problem_statement_saved
            ),
            files_analyzed=self.files_analyzed or other.files_analyzed,
            all_questions_answered=(
                self.all_questions_answered or other.all_questions_answered
            ),
            smart_followups_generated=(
                self.smart_followups_generated or other.smart_followups_generated
            ),
        )

    def to_dict(self) -> dict:
        return {
            "problem_statement_saved": self.problem_statement_saved,
            "files_analyzed": self.files_analyzed,
            "all_questions_answered": self.all_questions_answered,
            "smart_followups_generated": self.smart_followups_generated,
        }


@dataclass(frozen=True)
class Progress:
    """Answered/total counter. sequence orders competing writers."""
    answered: int
    total: int
    sequence: int = 0

    def to_dict(self) -> dict:
        return {"answered": self.answered, "total": self.total}


@dataclass(frozen=True)
class ServerEvidence:
    """Facts observed by one authoritative reload."""
    problem_statement: str | None = None
    analysis_count: int = 0
    status: str | None = None
    artifact_ids: tuple[ArtifactId, ...] = ()   # newest first
    message_ids: frozenset[str] = frozenset()
    selected_agent_count: int = 0


@dataclass(frozen=True)
class Session:
    """Authoritative client view of one analysis session."""
    session_id: SessionId
    messages: tuple[Message, ...] = ()
    flags: PhaseFlags = field(default_factory=PhaseFlags)
    progress: Progress | None = None
    generated_artifact_id: ArtifactId | None = None
    uploaded_files: tuple[UploadedFile, ...] = ()
    problem_statement: str | None = None
    selected_contexts: tuple[str, ...] = ()
    engineering_task_types: tuple[str, ...] = ()
    run: int = 0
    baseline: ServerEvidence = field(default_factory=ServerEvidence)
    evidence: ServerEvidence = field(default_factory=ServerEvidence)

    # --- Computed properties ---------------------------------------------------

    @property
    def message_ids(self) -> tuple[MessageId, ...]:
        return tuple(m.message_id for m in self.messages)

    @property
    def temporary_messages(self) -> tuple[Message, ...]:
        return tuple(m for m in self.messages if m.is_temporary)

    @property
    def has_temporary_messages(self) -> bool:
        return any(m.is_temporary for m in self.messages)

    @property
    def confirmed_user_count(self) -> int:
        """User messages the server has accepted."""
        return sum(
            1 for m in self.messages
            if m.role == MessageRole.USER
            and isinstance(m.message_id, ConfirmedId)
        )

    @property
    def confirmed_assistant_count(self) -> int:
        """Server-confirmed assistant messages (optimistic echoes excluded)."""
        return sum(
            1 for m in self.messages
            if m.role == MessageRole.ASSISTANT
            and isinstance(m.message_id, ConfirmedId)
        )

    @property
    def uploaded_file_keys(self) -> frozenset[tuple[str, int]]:
        return frozenset(f.key for f in self.uploaded_files)

    def to_dict(self) -> dict:
        """JSON-safe projection for the UI (no baseline/evidence internals)."""
        return {
            "session_id": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
            "flags": self.flags.to_dict(),
            "progress": self.progress.to_dict() if self.progress else None,
            "generated_artifact_id": self.generated_artifact_id,
            "uploaded_files": [f.to_dict() for f in self.uploaded_files],
            "problem_statement": self.problem_statement,
            "selected_contexts": list(self.selected_contexts),
            "engineering_task_types": list(self.engineering_task_types),
            "run": self.run,
        }
