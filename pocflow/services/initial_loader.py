"""Initial Loader — fetches the full server view and reduces it to one AuthoritativeReload.

Invariants:
    - Session, messages, artifacts and selected agents are fetched concurrently;
      any failure fails the load
    - Individual malformed message/artifact rows are skipped, a malformed session
      body fails the load with StateConflictError
    - Output is a single AuthoritativeReload; the loader never touches the store

Design Decisions:
    - Same loader for mount and every later reload: there is exactly one
      definition of "what the server says" (ADR: authoritative reload always wins)
    - build_reload() is pure and separately testable from the IO in load()
"""

import asyncio
import logging

from pydantic import ValidationError

from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.core.deltas import AuthoritativeReload
from pocflow.core.domain_types import ArtifactId, ConfirmedId, SessionId
from pocflow.core.errors import ErrorContext, StateConflictError
from pocflow.core.session_snapshot import ServerEvidence
from pocflow.schemas.backend import BackendArtifact, BackendMessage, BackendSession

logger = logging.getLogger(__name__)


class InitialLoader:
    """Authoritative reload source for one backend."""

    def __init__(self, backend: WorkflowBackend):
        self.backend = backend

    async def load(self, session_id: SessionId) -> AuthoritativeReload:
        session_raw, messages_raw, artifacts_raw, agents_raw = await asyncio.gather(
            self.backend.get_session(session_id),
            self.backend.list_messages(session_id),
            self.backend.list_artifacts(session_id),
            self.backend.list_selected_agents(session_id),
        )
        return build_reload(session_id, session_raw, messages_raw, artifacts_raw, agents_raw)


def build_reload(
    session_id: SessionId,
    session_raw: dict,
    messages_raw: list[dict],
    artifacts_raw: list[dict],
    agents_raw: list[dict] | None = None,
) -> AuthoritativeReload:
    """Reduce raw backend payloads to a reload delta."""
    try:
        session = BackendSession.from_payload(session_raw)
    except (ValidationError, AttributeError) as e:
        raise StateConflictError(
            f"Malformed session payload: {e}", "AuthoritativeReload",
            ErrorContext(session_id=session_id, operation="reload"),
        ) from e

    messages = tuple(
        row.to_message() for row in parse_rows(BackendMessage, messages_raw, session_id)
    )
    artifacts = parse_rows(BackendArtifact, artifacts_raw, session_id)

    evidence = ServerEvidence(
        problem_statement=session.problem_statement,
        analysis_count=len(session.analysis_results),
        status=session.status,
        artifact_ids=tuple(ArtifactId(a.id) for a in artifacts),
        message_ids=frozenset(
            str(m.message_id) for m in messages if isinstance(m.message_id, ConfirmedId)
        ),
        selected_agent_count=sum(1 for a in agents_raw or [] if isinstance(a, dict)),
    )
    return AuthoritativeReload(
        messages=messages,
        evidence=evidence,
        uploaded_files=tuple(f.to_uploaded_file() for f in session.uploaded_files),
        selected_contexts=tuple(session.selected_contexts),
        engineering_task_types=tuple(session.engineering_task_types),
    )


def parse_rows(model, rows, session_id: str) -> list:
    parsed = []
    for row in rows or []:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(
                "Skipped malformed %s row: %s", model.__name__, e.errors()[:1],
                extra={"session_id": session_id, "delta_type": "AuthoritativeReload"},
            )
    return parsed
