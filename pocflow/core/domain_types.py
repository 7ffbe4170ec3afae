"""Domain Types — rich types that replace bare primitives across the orchestrator.

Invariants:
    - SessionId, ArtifactId wrap backend string ids: never pass bare str in workflow logic
    - Message ids are tagged: TemporaryId (local, "temp-" prefix) or ConfirmedId (server)
    - All valid states encoded as Enums: no raw string matching

Design Decisions:
    - NewType for opaque ids: zero runtime cost, full type-checker support
    - Frozen dataclasses for message ids: the Temporary/Confirmed distinction is
      structural, so replace-on-reload cannot depend on string conventions
    - str Enums: serialize to JSON without custom encoders (ADR: BFF responses are JSON)
"""

import itertools
import time
from dataclasses import dataclass
from enum import Enum
from typing import NewType, Union


# ─── Identity Types ──────────────────────────────────────────────

SessionId = NewType("SessionId", str)
ArtifactId = NewType("ArtifactId", str)

TEMP_ID_PREFIX = "temp-"

_temp_counter = itertools.count(1)


@dataclass(frozen=True)
class TemporaryId:
    """Placeholder id for an optimistic entry. Never sent to the backend."""
    value: str

    def __str__(self) -> str:
        return self.value

    @classmethod
    def new(cls) -> "TemporaryId":
        # ms timestamp + process counter: unique even for same-millisecond sends
        return cls(f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{next(_temp_counter)}")


@dataclass(frozen=True)
class ConfirmedId:
    """Server-assigned message id."""
    value: str

    def __str__(self) -> str:
        return self.value


MessageId = Union[TemporaryId, ConfirmedId]


def parse_message_id(raw: str) -> MessageId:
    """Tag a wire id. Ids carrying the reserved prefix are temporary."""
    if raw.startswith(TEMP_ID_PREFIX):
        return TemporaryId(raw)
    return ConfirmedId(raw)


# ─── Enums ───────────────────────────────────────────────────────

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class WorkflowPhase(str, Enum):
    """Derived workflow stage: computed by derive_phase, never stored."""
    COLLECTING_PROBLEM_STATEMENT = "collecting_problem_statement"
    SELECTING_CONTEXT = "selecting_context"
    ANALYZING = "analyzing"
    ANSWERING_QUESTIONS = "answering_questions"
    READY_FOR_ARTIFACT = "ready_for_artifact"
    ARTIFACT_GENERATED = "artifact_generated"


class WorkflowAction(str, Enum):
    """UI actions gated by the derived phase."""
    SAVE_PROBLEM_STATEMENT = "save_problem_statement"
    UPLOAD_FILES = "upload_files"
    START_ANALYSIS = "start_analysis"
    SEND_MESSAGE = "send_message"
    SKIP_QUESTIONS = "skip_questions"
    GENERATE_ARTIFACT = "generate_artifact"
    DOWNLOAD_ARTIFACT = "download_artifact"
    START_NEW_CONVERSATION = "start_new_conversation"
    CHECK_FOR_UPDATES = "check_for_updates"


class ArtifactFormat(str, Enum):
    """POC document flavours accepted by the generate endpoint."""
    BUSINESS = "business"
    DEVELOPER = "developer"
    BOTH = "both"


class AgentStatus(str, Enum):
    """Agent execution status reported by the status endpoint."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "AgentStatus":
        try:
            return cls((raw or "idle").lower())
        except ValueError:
            return cls.UNKNOWN


class ToastLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


# Phase name the backend sends with agents_ready once agent selection is done
PHASE_COMPLETE = "complete"

# Session status written by skip-questions
STATUS_QUESTIONS_COMPLETE = "questions_complete"

# Smart follow-ups are requested once, after this many user answers
FOLLOWUP_TRIGGER_ANSWERS = 7
