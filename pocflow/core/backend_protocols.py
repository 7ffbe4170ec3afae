"""Boundary Protocols — contracts between core/services and the analysis backend.

Invariants:
    - Core NEVER imports from shell: dependency arrows point inward only
    - All backend IO accessed through the WorkflowBackend Protocol
    - Implementations raise TransportError / ResourceNotFoundError, nothing else

Design Decisions:
    - Protocol over ABC: structural subtyping, tests pass a plain fake class
    - Raw JSON (dict/list) at the boundary: wire parsing happens in schemas/,
      so the fake backend in tests speaks the same shapes as the real one
    - stream_lines is an async generator of decoded text lines; SSE framing is
      the push listener's job (core/sse_frames.py)
"""

from collections.abc import AsyncIterator
from typing import Protocol

from pocflow.core.domain_types import ArtifactFormat, ArtifactId, SessionId


class WorkflowBackend(Protocol):
    """Contract for the analysis backend: implemented by infrastructure/backend_client.py."""

    # --- Reads (authoritative reload + status) ---
    async def get_session(self, session_id: SessionId) -> dict: ...
    async def list_messages(self, session_id: SessionId) -> list[dict]: ...
    async def list_artifacts(self, session_id: SessionId) -> list[dict]: ...
    async def list_selected_agents(self, session_id: SessionId) -> list[dict]: ...
    async def list_contexts(self) -> list[dict]: ...
    async def get_agent_status(self, session_id: SessionId) -> dict: ...

    # --- Workflow mutations ---
    async def save_problem_statement(self, session_id: SessionId, text: str) -> dict: ...
    async def upload_files(
        self, session_id: SessionId, files: list[tuple[str, bytes]],
    ) -> dict: ...
    async def start_analysis(
        self, session_id: SessionId,
        selected_contexts: list[str], engineering_task_types: list[str],
    ) -> dict: ...
    async def ask(self, session_id: SessionId, message: str) -> dict: ...
    async def generate_followups(self, session_id: SessionId) -> dict: ...
    async def skip_questions(self, session_id: SessionId) -> dict: ...

    # --- Artifacts ---
    async def generate_artifact(
        self, session_id: SessionId, artifact_format: ArtifactFormat,
    ) -> dict: ...
    async def download_artifact(self, artifact_id: ArtifactId) -> tuple[bytes, str | None]: ...
    async def delete_artifact(self, artifact_id: ArtifactId) -> dict: ...

    # --- Push stream ---
    def stream_lines(self, session_id: SessionId) -> AsyncIterator[str]: ...
