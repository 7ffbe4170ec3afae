"""Workflow Schemas — request bodies and response shapes for the BFF endpoints.

Invariants:
    - Text inputs are stripped here; emptiness is judged by the orchestrator
      so library callers and HTTP callers get the same InputValidationError
    - Enum fields use core domain types (ArtifactFormat)
    - WorkflowView mirrors SessionOrchestrator.view()

Design Decisions:
    - Separate from backend schemas: these are the contract with the UI,
      backend.py is the contract with the analysis backend (ADR: responsibility separation)
"""

from pydantic import BaseModel, Field, field_validator

from pocflow.core.domain_types import ArtifactFormat


class ProblemStatementInput(BaseModel):
    """Problem statement save: stripped, capped at 10k chars."""
    text: str = Field(max_length=10_000)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class AnalysisRequest(BaseModel):
    """Context packages and engineering task types picked before analysis."""
    selected_contexts: list[str] = Field(default_factory=list)
    engineering_task_types: list[str] = Field(default_factory=list)


class MessageInput(BaseModel):
    """One user answer in the question round."""
    text: str = Field(max_length=10_000)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class ArtifactRequest(BaseModel):
    format: ArtifactFormat = ArtifactFormat.BOTH


# --- Responses ----------------------------------------------------------------

class ActivityView(BaseModel):
    """Transient feedback shown beside the conversation."""
    activity_label: str = ""
    stale: bool = False
    awaiting_manual_check: bool = False
    toasts: list[dict] = []


class WorkflowView(BaseModel):
    """GET /workflow/{session_id}: snapshot plus everything derived from it."""
    session: dict
    phase: str
    available_actions: list[str]
    analysis_in_flight: bool = False
    generating_artifact: bool = False
    activity: ActivityView
