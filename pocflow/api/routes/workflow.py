"""Workflow Routes — BFF endpoints exposing one session's orchestrator to the UI.

Invariants:
    - Every route activates the session first (switching sessions cancels the old one)
    - Dispatcher outcomes map to HTTP: ok → 200, error → the error's http_status
    - Response bodies carry the derived phase and available actions, so the UI
      never derives action availability from raw flags
    - GET /notifications streams reporter events as SSE until the client leaves
      or the orchestrator is replaced

Design Decisions:
    - Thin routes: no workflow logic here, only request parsing and outcome mapping
    - StreamingResponse + sse_line for notifications, same headers as the agent stream
    - Keepalive comment every 15 s so proxies do not drop idle streams
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from pocflow.core.errors import ErrorContext, ResourceNotFoundError
from pocflow.core.sse_frames import sse_line
from pocflow.schemas.workflow import (
    ActivityView, AnalysisRequest, ArtifactRequest, MessageInput,
    ProblemStatementInput, WorkflowView,
)
from pocflow.services.orchestrator import ActionOutcome, SessionOrchestrator
from pocflow.services.orchestrator_registry import OrchestratorRegistry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/workflow", tags=["workflow"])

# ADR: SSE headers prevent proxy/browser buffering of streamed events.
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

_KEEPALIVE_SECONDS = 15.0


def get_registry(request: Request) -> OrchestratorRegistry:
    return request.app.state.registry


async def get_orchestrator(
    session_id: str, registry: OrchestratorRegistry = Depends(get_registry),
) -> SessionOrchestrator:
    return await registry.activate(session_id)


def _respond(outcome: ActionOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.http_status, content=outcome.to_dict())


# --- Snapshot -----------------------------------------------------------------

@router.get("/{session_id}", response_model=WorkflowView)
async def get_workflow(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Snapshot + derived phase + available actions + activity."""
    return orchestrator.view()


@router.post("/{session_id}/refresh")
async def refresh(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Manual 'check for updates': immediate authoritative reload."""
    return _respond(await orchestrator.refresh())


@router.delete("/{session_id}/toasts/{toast_id}", response_model=ActivityView)
async def dismiss_toast(
    toast_id: int,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Error toasts stay until the user closes them."""
    if not orchestrator.reporter.dismiss(toast_id):
        raise ResourceNotFoundError(
            "Toast", str(toast_id), ErrorContext(session_id=orchestrator.session_id),
        )
    return orchestrator.reporter.view()


# --- Problem statement & context ------------------------------------------------

@router.post("/{session_id}/problem-statement")
async def save_problem_statement(
    body: ProblemStatementInput,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.save_problem_statement(body.text))


@router.get("/{session_id}/contexts")
async def list_contexts(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return _respond(await orchestrator.list_contexts())


@router.post("/{session_id}/uploads")
async def upload_files(
    files: list[UploadFile] = File(...),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    payload = [(f.filename or "upload", await f.read()) for f in files]
    return _respond(await orchestrator.upload_files(payload))


@router.post("/{session_id}/analysis")
async def start_analysis(
    body: AnalysisRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.start_analysis(
        body.selected_contexts, body.engineering_task_types,
    ))


# --- Conversation ---------------------------------------------------------------

@router.post("/{session_id}/messages")
async def send_message(
    body: MessageInput,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.send_message(body.text))


@router.post("/{session_id}/skip-questions")
async def skip_questions(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return _respond(await orchestrator.skip_questions())


@router.post("/{session_id}/new-conversation")
async def start_new_conversation(
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.start_new_conversation())


# --- Artifacts ------------------------------------------------------------------

@router.post("/{session_id}/artifacts")
async def generate_artifact(
    body: ArtifactRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.generate_artifact(body.format))


@router.get("/{session_id}/artifacts")
async def list_artifacts(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return _respond(await orchestrator.list_artifacts())


@router.get("/{session_id}/artifacts/{artifact_id}/download")
async def download_artifact(
    artifact_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.download_artifact(artifact_id)
    if not outcome.ok:
        return _respond(outcome)
    return Response(
        content=outcome.data["content"],
        media_type="text/markdown",
        headers={
            "Content-Disposition": f'attachment; filename="{outcome.data["filename"]}"',
        },
    )


@router.delete("/{session_id}/artifacts/{artifact_id}")
async def delete_artifact(
    artifact_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return _respond(await orchestrator.delete_artifact(artifact_id))


# --- Notifications --------------------------------------------------------------

@router.get("/{session_id}/notifications")
async def notifications(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """SSE stream of activity, toast, stale and snapshot notifications."""
    reporter = orchestrator.reporter
    queue = reporter.subscribe()

    async def event_generator():
        try:
            yield sse_line({"type": "state", "data": orchestrator.view()})
            while not orchestrator.closed:
                try:
                    event = await asyncio.wait_for(queue.get(), _KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield sse_line(event)
        except asyncio.CancelledError:
            logger.info(
                "Client disconnected from notifications",
                extra={"session_id": orchestrator.session_id},
            )
        finally:
            reporter.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
