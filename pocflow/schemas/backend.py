"""Backend Schemas — Pydantic models for the analysis backend's JSON payloads.

Invariants:
    - Unknown keys are ignored (backend adds fields freely)
    - camelCase wire names accepted via aliases; Python attributes are snake_case
    - to_*() helpers produce core snapshot types: nothing outside schemas/ sees wire dicts
    - Missing optional payload parts default to "nothing observed", never to an error

Design Decisions:
    - AliasChoices for fields the backend spells two ways (fileName/filename,
      progress.asked/answered): one model instead of per-endpoint variants
    - Parsing failures surface as pydantic.ValidationError; adapters map them
      to StateConflictError (malformed input is dropped, not crashed on)
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from pocflow.core.domain_types import (
    ArtifactId, MessageRole, parse_message_id,
)
from pocflow.core.session_snapshot import Message, Progress, UploadedFile


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class BackendMessage(_WireModel):
    """Row of GET /api/sessions/{id}/messages."""
    id: str
    role: MessageRole
    content: str = ""
    timestamp: str = Field(
        "", validation_alias=AliasChoices("timestamp", "createdAt"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v

    def to_message(self) -> Message:
        return Message(
            message_id=parse_message_id(self.id),
            role=self.role,
            content=self.content,
            timestamp=self.timestamp,
        )


class BackendUploadedFile(_WireModel):
    id: str | None = None
    filename: str = Field(validation_alias=AliasChoices("fileName", "filename"))
    size: int = Field(0, validation_alias=AliasChoices("fileSize", "size"))
    file_type: str | None = Field(None, validation_alias=AliasChoices("fileType", "file_type"))

    def to_uploaded_file(self) -> UploadedFile:
        return UploadedFile(
            filename=self.filename, size=self.size,
            file_id=self.id, file_type=self.file_type,
        )


class BackendSession(_WireModel):
    """Body of GET /api/sessions/{id} (possibly wrapped in {"session": ...})."""
    id: str
    problem_statement: str | None = Field(None, alias="problemStatement")
    status: str | None = None
    uploaded_files: list[BackendUploadedFile] = Field(
        default_factory=list, alias="uploadedFiles",
    )
    analysis_results: list[dict] = Field(default_factory=list, alias="analysisResults")
    selected_contexts: list[str] = Field(default_factory=list, alias="selectedContexts")
    engineering_task_types: list[str] = Field(
        default_factory=list, alias="engineeringTaskTypes",
    )

    @field_validator(
        "uploaded_files", "analysis_results", "selected_contexts",
        "engineering_task_types", mode="before",
    )
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v

    @classmethod
    def from_payload(cls, payload: dict) -> "BackendSession":
        body = payload.get("session") if isinstance(payload.get("session"), dict) else payload
        return cls.model_validate(body)


class BackendArtifact(_WireModel):
    """Row of GET /api/sessions/{id}/pocs (newest first)."""
    id: str
    format: str | None = Field(None, validation_alias=AliasChoices("format", "pocFormat"))
    created_at: str | None = Field(None, alias="createdAt")
    title: str | None = None

    @property
    def artifact_id(self) -> ArtifactId:
        return ArtifactId(self.id)


class AgentStatusPayload(_WireModel):
    """Body of GET /api/agents/sessions/{id}/status."""
    status: str = "idle"
    agent_name: str | None = Field(None, alias="agentName")


class ProgressPayload(_WireModel):
    answered: int = Field(0, validation_alias=AliasChoices("answered", "asked"))
    total: int = 0

    def to_progress(self, sequence: int) -> Progress:
        return Progress(answered=self.answered, total=self.total, sequence=sequence)


class AskResponse(_WireModel):
    """Body of POST /api/sessions/{id}/ask."""
    success: bool = True
    next_question: str | None = Field(None, alias="nextQuestion")
    is_follow_up: bool = Field(False, alias="isFollowUp")
    is_complete: bool = Field(False, alias="isComplete")
    all_complete: bool = Field(False, alias="allComplete")
    progress: ProgressPayload | None = None
    next_phase: str | None = Field(None, alias="nextPhase")

    @property
    def completed(self) -> bool:
        return self.is_complete or self.all_complete


class AnalysisStartData(_WireModel):
    started: bool = True
    first_question: str | None = Field(None, alias="firstQuestion")
    total_questions: int | None = Field(None, alias="totalQuestions")


class AnalyzeResponse(_WireModel):
    """Body of POST /api/agents/sessions/{id}/analyze."""
    success: bool = True
    data: AnalysisStartData | None = None
    message: str | None = None


class FollowupsResponse(_WireModel):
    count: int = 0
    questions: list[str] = Field(default_factory=list)


class UploadResponse(_WireModel):
    success: bool = True
    files: list[BackendUploadedFile] = Field(default_factory=list)


class CommandResponse(_WireModel):
    """Generic {success, message} acknowledgement."""
    success: bool = True
    message: str | None = None


class ContextPackage(_WireModel):
    """Row of GET /api/contexts."""
    id: str
    filename: str | None = None
    title: str | None = None
    description: str | None = None
    size: int | None = None
