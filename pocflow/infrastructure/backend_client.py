"""Backend Client — httpx wrapper implementing the WorkflowBackend protocol.

Invariants:
    - One method per backend endpoint; return values are raw JSON (dict / list)
    - Connection errors, timeouts, 5xx and undecodable bodies → TransportError
    - 404 → ResourceNotFoundError; any other 4xx → TransportError carrying the status
    - No retries here: the reconciliation engine retries on the next poll tick or event

Design Decisions:
    - Single shared httpx.AsyncClient per process (connection pooling), owned by
      the app lifespan and closed with aclose()
    - stream_lines uses client.stream() + aiter_lines() with no read timeout:
      the SSE connection is long-lived and heartbeats arrive every ~30 s
    - analyze and generate-poc get their own long read timeout: the backend runs
      the agents inside the request
    - Error mapping mirrors the resilient model client: classify once, raise a
      domain error, never leak httpx exceptions past the adapter
"""

import logging
import re
from collections.abc import AsyncIterator

import httpx

from pocflow.core.domain_types import ArtifactFormat, ArtifactId, SessionId
from pocflow.core.errors import ErrorContext, ResourceNotFoundError, TransportError

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r'filename="?([^";]+)"?')


class BackendClient:
    """Async HTTP client for the analysis backend."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        connect_timeout_seconds: float = 10.0,
        agent_timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            transport=transport,
        )
        self._agent_timeout = httpx.Timeout(agent_timeout_seconds, connect=connect_timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Reads ------------------------------------------------------------------

    async def get_session(self, session_id: SessionId) -> dict:
        return await self._json(
            "GET", f"/api/sessions/{session_id}", "get_session",
            session_id=session_id, resource=("Session", session_id),
        )

    async def list_messages(self, session_id: SessionId) -> list[dict]:
        body = await self._json(
            "GET", f"/api/sessions/{session_id}/messages", "list_messages",
            session_id=session_id,
        )
        if isinstance(body, dict):
            body = body.get("messages", [])
        return body if isinstance(body, list) else []

    async def list_artifacts(self, session_id: SessionId) -> list[dict]:
        body = await self._json(
            "GET", f"/api/sessions/{session_id}/pocs", "list_artifacts",
            session_id=session_id,
        )
        pocs = body.get("pocs", []) if isinstance(body, dict) else body
        return pocs if isinstance(pocs, list) else []

    async def list_selected_agents(self, session_id: SessionId) -> list[dict]:
        """Agents chosen for the session. Execution records are not selections."""
        body = await self._json(
            "GET", f"/api/sessions/{session_id}/agents", "list_selected_agents",
            session_id=session_id,
        )
        agents = body.get("agents", []) if isinstance(body, dict) else []
        return agents if isinstance(agents, list) else []

    async def list_contexts(self) -> list[dict]:
        body = await self._json("GET", "/api/contexts", "list_contexts")
        contexts = body.get("contexts", []) if isinstance(body, dict) else body
        return contexts if isinstance(contexts, list) else []

    async def get_agent_status(self, session_id: SessionId) -> dict:
        return await self._json(
            "GET", f"/api/agents/sessions/{session_id}/status", "get_agent_status",
            session_id=session_id,
        )

    # --- Workflow mutations -----------------------------------------------------

    async def save_problem_statement(self, session_id: SessionId, text: str) -> dict:
        return await self._json(
            "PATCH", f"/api/sessions/{session_id}/problem-statement",
            "save_problem_statement", session_id=session_id,
            json={"problemStatement": text},
        )

    async def upload_files(
        self, session_id: SessionId, files: list[tuple[str, bytes]],
    ) -> dict:
        return await self._json(
            "POST", f"/api/sessions/{session_id}/upload", "upload_files",
            session_id=session_id,
            files=[("files", (name, content)) for name, content in files],
        )

    async def start_analysis(
        self, session_id: SessionId,
        selected_contexts: list[str], engineering_task_types: list[str],
    ) -> dict:
        return await self._json(
            "POST", f"/api/agents/sessions/{session_id}/analyze", "start_analysis",
            session_id=session_id,
            timeout=self._agent_timeout,
            json={
                "selectedContexts": selected_contexts,
                "engineeringTaskTypes": engineering_task_types,
            },
        )

    async def ask(self, session_id: SessionId, message: str) -> dict:
        return await self._json(
            "POST", f"/api/sessions/{session_id}/ask", "ask",
            session_id=session_id, json={"message": message},
        )

    async def generate_followups(self, session_id: SessionId) -> dict:
        return await self._json(
            "POST", f"/api/sessions/{session_id}/generate-followups",
            "generate_followups", session_id=session_id,
        )

    async def skip_questions(self, session_id: SessionId) -> dict:
        return await self._json(
            "POST", f"/api/sessions/{session_id}/skip-questions", "skip_questions",
            session_id=session_id,
        )

    # --- Artifacts --------------------------------------------------------------

    async def generate_artifact(
        self, session_id: SessionId, artifact_format: ArtifactFormat,
    ) -> dict:
        return await self._json(
            "POST", f"/api/agents/sessions/{session_id}/generate-poc",
            "generate_artifact", session_id=session_id,
            timeout=self._agent_timeout,
            json={"pocFormat": artifact_format.value},
        )

    async def download_artifact(self, artifact_id: ArtifactId) -> tuple[bytes, str | None]:
        """Returns (content, filename from Content-Disposition or None)."""
        response = await self._send(
            "GET", f"/api/pocs/{artifact_id}/download", "download_artifact",
            resource=("Artifact", artifact_id),
        )
        match = _FILENAME_RE.search(response.headers.get("content-disposition", ""))
        return response.content, match.group(1) if match else None

    async def delete_artifact(self, artifact_id: ArtifactId) -> dict:
        return await self._json(
            "DELETE", f"/api/pocs/{artifact_id}", "delete_artifact",
            resource=("Artifact", artifact_id),
        )

    # --- Push stream ------------------------------------------------------------

    async def stream_lines(self, session_id: SessionId) -> AsyncIterator[str]:
        """Yield decoded SSE lines until the server closes the stream."""
        path = f"/api/sessions/{session_id}/events"
        try:
            async with self._client.stream(
                "GET", path,
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(None, connect=self._client.timeout.connect),
            ) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"HTTP {response.status_code}", "stream_events",
                        response.status_code, ErrorContext(session_id=session_id),
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as e:
            raise TransportError(
                str(e) or type(e).__name__, "stream_events",
                context=ErrorContext(session_id=session_id),
            ) from e

    # --- Internals --------------------------------------------------------------

    async def _json(
        self, method: str, path: str, operation: str,
        session_id: str | None = None,
        resource: tuple[str, str] | None = None,
        **kwargs,
    ):
        response = await self._send(
            method, path, operation, session_id=session_id,
            resource=resource, **kwargs,
        )
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                "invalid JSON body", operation, response.status_code,
                ErrorContext(session_id=session_id),
            ) from e

    async def _send(
        self, method: str, path: str, operation: str,
        session_id: str | None = None,
        resource: tuple[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        context = ErrorContext(session_id=session_id, operation=operation)
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(
                f"Backend timeout on {operation}",
                extra={"session_id": session_id, "operation": operation},
            )
            raise TransportError("timeout", operation, context=context) from e
        except httpx.HTTPError as e:
            logger.warning(
                f"Backend unreachable on {operation}: {e}",
                extra={"session_id": session_id, "operation": operation},
            )
            raise TransportError(
                str(e) or type(e).__name__, operation, context=context,
            ) from e

        if response.status_code == 404 and resource is not None:
            raise ResourceNotFoundError(resource[0], resource[1], context)
        if response.status_code >= 400:
            logger.warning(
                f"Backend {operation} returned HTTP {response.status_code}",
                extra={"session_id": session_id, "operation": operation},
            )
            raise TransportError(
                _error_message(response), operation, response.status_code, context,
            )
        return response


def _error_message(response: httpx.Response) -> str:
    """Best-effort message from a backend error body ({error, message})."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return f"HTTP {response.status_code}"
