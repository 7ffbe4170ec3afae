"""Session Orchestrator — wires store, engine, adapters and reporter for one session.

Invariants:
    - Dispatchers NEVER raise: every failure becomes an ActionOutcome with ok=False
    - Every dispatcher gates itself through check_action_allowed before any IO
    - Store writes go through the engine, stamped with the run current at issue time
    - Optimistic entries are undone by id only (RemoveTemporaryMessage / RemoveUploadedFiles)
    - "Analyzing" and "generating" are ephemeral orchestrator state, never store state
    - Smart follow-ups: SetFlags(smart_followups_generated) is applied before the
      request is issued, inside the single writer
    - A start request that times out without a response keeps its wait open:
      reload evidence or the poll timeout settles it

Design Decisions:
    - Facade over exposing the engine: the UI surface only sees snapshots, the
      derived phase and outcomes (ADR: derived state, never raw flags)
    - Analysis completion uses a per-analysis baseline of confirmed assistant
      messages, so a session that already had messages does not read as done
    - Poller condition reads orchestrator state directly; it stops on the first
      tick after analysis/generation finishes
"""

import asyncio
import contextlib
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from pocflow.config import Settings, get_settings
from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.core.deltas import (
    AddUploadedFiles, AppendMessages, ClearArtifact, NewConversation,
    RemoveTemporaryMessage, RemoveUploadedFiles, SetFlags, SetProblemStatement,
    SetProgress, SetSelections,
)
from pocflow.core.domain_types import (
    ArtifactFormat, ArtifactId, MessageRole, SessionId, TemporaryId,
    ToastLevel, WorkflowAction, WorkflowPhase,
)
from pocflow.core.errors import (
    ActionNotAllowedError, ErrorCategory, ErrorContext, ErrorSeverity,
    InputValidationError, PocFlowError, TransportError,
)
from pocflow.core.phase_machine import (
    analysis_completed, available_actions, check_action_allowed,
    derive_phase, should_trigger_followups,
)
from pocflow.core.session_snapshot import Message, PhaseFlags, Session, UploadedFile
from pocflow.core.session_store import SessionStore
from pocflow.schemas.backend import (
    AnalyzeResponse, AskResponse, BackendArtifact, CommandResponse,
    ContextPackage, FollowupsResponse, UploadResponse,
)
from pocflow.services.activity_reporter import ActivityReporter
from pocflow.services.initial_loader import InitialLoader, parse_rows
from pocflow.services.poller import Poller
from pocflow.services.push_listener import PushListener
from pocflow.services.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)

_NEXT_PHASE_TOASTS = {
    "architectural": "Generating architectural questions...",
    "agent_suggestion": "Analyzing your task and suggesting agents...",
}


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one dispatcher call."""
    action: str
    ok: bool
    data: Any = None
    error: PocFlowError | None = None
    phase: WorkflowPhase | None = None
    available_actions: frozenset[WorkflowAction] = field(default_factory=frozenset)

    @property
    def http_status(self) -> int:
        return 200 if self.ok else self.error.http_status

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "action": self.action,
            "data": self.data,
            "error": self.error.to_response()["error"] if self.error else None,
            "phase": self.phase.value if self.phase else None,
            "available_actions": sorted(a.value for a in self.available_actions),
        }


def default_artifact_filename() -> str:
    return f"POC-{datetime.now(timezone.utc).date().isoformat()}.md"


class SessionOrchestrator:
    """Client-side workflow controller for one analysis session."""

    def __init__(
        self,
        session_id: str,
        backend: WorkflowBackend,
        settings: Settings | None = None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        settings = settings or get_settings()
        self.session_id = SessionId(session_id)
        self.backend = backend
        self.settings = settings
        self.store = SessionStore(Session(session_id=self.session_id))
        self.reporter = ActivityReporter(
            self.session_id, settings.toast_duration_ms, clock=clock,
        )
        self.engine = ReconciliationEngine(
            self.store, InitialLoader(backend), self.reporter,
            debounce_s=settings.reload_debounce_seconds,
            stale_threshold=settings.stale_failure_threshold,
            sleep=sleep,
        )
        self.listener = PushListener(
            backend, self.session_id, self.engine.submit_event,
            reconnect_delay_s=settings.sse_reconnect_delay_seconds,
            sleep=sleep,
        )
        self.poller = Poller(
            backend, self.session_id,
            on_result=self.engine.submit_event,
            on_timeout=self.engine.submit,
            condition=self._waiting,
            interval_s=settings.poll_interval_seconds,
            max_duration_s=settings.poll_max_duration_seconds,
            sleep=sleep, clock=clock,
        )
        # === Ephemeral UI state (never in the store) ===
        self.analysis_in_flight = False
        self.generating_artifact = False
        self._assistant_baseline = 0
        self._artifact_before_generation: ArtifactId | None = None
        self._progress_sequence = itertools.count(1)
        self._background: set[asyncio.Task] = set()
        self._started = False
        self.closed = False
        self.engine.add_listener(self._on_snapshot)

    # === Lifecycle =============================================================

    async def start(self) -> ActionOutcome:
        """Start the engine and push listener, then run the initial load."""
        if not self._started:
            self._started = True
            self.engine.start()
            self.listener.start()
            logger.info("Orchestrator started", extra={"session_id": self.session_id})
        return await self._dispatch("load", lambda: self._reload_or_raise("initial_load"))

    async def close(self) -> None:
        """Cancel every adapter; nothing for this session runs afterwards."""
        if self.closed:
            return
        self.closed = True
        await self.poller.stop()
        await self.listener.stop()
        await self.engine.close()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Orchestrator closed", extra={"session_id": self.session_id})

    # === Reads =================================================================

    def get_snapshot(self) -> Session:
        return self.store.get_snapshot()

    def derive_phase(self) -> WorkflowPhase:
        return derive_phase(self.get_snapshot(), self.analysis_in_flight)

    def available_actions(self) -> frozenset[WorkflowAction]:
        return available_actions(self.derive_phase(), self.generating_artifact)

    def view(self) -> dict:
        phase = self.derive_phase()
        return {
            "session": self.get_snapshot().to_dict(),
            "phase": phase.value,
            "available_actions": sorted(
                a.value for a in available_actions(phase, self.generating_artifact)
            ),
            "analysis_in_flight": self.analysis_in_flight,
            "generating_artifact": self.generating_artifact,
            "activity": self.reporter.view(),
        }

    # === Dispatchers ===========================================================

    async def save_problem_statement(self, text: str) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.SAVE_PROBLEM_STATEMENT.value,
            lambda: self._save_problem_statement(text),
        )

    async def list_contexts(self) -> ActionOutcome:
        return await self._dispatch("list_contexts", self._list_contexts)

    async def upload_files(self, files: list[tuple[str, bytes]]) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.UPLOAD_FILES.value, lambda: self._upload_files(files),
        )

    async def start_analysis(
        self,
        selected_contexts: list[str] | None = None,
        engineering_task_types: list[str] | None = None,
    ) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.START_ANALYSIS.value,
            lambda: self._start_analysis(
                selected_contexts or [], engineering_task_types or [],
            ),
        )

    async def send_message(self, text: str) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.SEND_MESSAGE.value, lambda: self._send_message(text),
        )

    async def skip_questions(self) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.SKIP_QUESTIONS.value, self._skip_questions,
        )

    async def generate_artifact(
        self, artifact_format: ArtifactFormat | str = ArtifactFormat.BOTH,
    ) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.GENERATE_ARTIFACT.value,
            lambda: self._generate_artifact(artifact_format),
        )

    async def list_artifacts(self) -> ActionOutcome:
        return await self._dispatch("list_artifacts", self._list_artifacts)

    async def download_artifact(self, artifact_id: str | None = None) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.DOWNLOAD_ARTIFACT.value,
            lambda: self._download_artifact(artifact_id),
        )

    async def delete_artifact(self, artifact_id: str) -> ActionOutcome:
        return await self._dispatch(
            "delete_artifact", lambda: self._delete_artifact(artifact_id),
        )

    async def start_new_conversation(self) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.START_NEW_CONVERSATION.value, self._start_new_conversation,
        )

    async def refresh(self) -> ActionOutcome:
        return await self._dispatch(
            WorkflowAction.CHECK_FOR_UPDATES.value, self._refresh,
        )

    # === Dispatcher bodies =====================================================

    async def _save_problem_statement(self, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise InputValidationError(
                "Please enter a problem statement", "text", self._context("save_problem_statement"),
            )
        self._require(WorkflowAction.SAVE_PROBLEM_STATEMENT)
        stamp = self.engine.current_stamp()
        await self.backend.save_problem_statement(self.session_id, text)
        await self.engine.apply(SetProblemStatement(text), stamp)
        await self.engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True)), stamp)
        self.reporter.toast(ToastLevel.SUCCESS, "Problem statement saved")
        return {"problem_statement": text}

    async def _list_contexts(self) -> list[dict]:
        rows = parse_rows(ContextPackage, await self.backend.list_contexts(), self.session_id)
        return [row.model_dump() for row in rows]

    async def _upload_files(self, files: list[tuple[str, bytes]]) -> dict:
        if not files:
            raise InputValidationError(
                "Select at least one file to upload", "files", self._context("upload_files"),
            )
        self._require(WorkflowAction.UPLOAD_FILES)
        stamp = self.engine.current_stamp()
        pending = tuple(UploadedFile(filename=name, size=len(content)) for name, content in files)
        pending_keys = frozenset(f.key for f in pending)
        await self.engine.apply(AddUploadedFiles(pending), stamp)
        try:
            raw = await self.backend.upload_files(self.session_id, list(files))
        except PocFlowError:
            await self.engine.apply(RemoveUploadedFiles(pending_keys), stamp)
            raise

        confirmed = tuple(
            f.to_uploaded_file() for f in self._parse(UploadResponse, raw).files
        )
        if confirmed:
            leftover = pending_keys - {f.key for f in confirmed}
            if leftover:
                await self.engine.apply(RemoveUploadedFiles(frozenset(leftover)), stamp)
            await self.engine.apply(AddUploadedFiles(confirmed), stamp)
        else:
            self.engine.request_reload("upload_unconfirmed")
        self.reporter.toast(ToastLevel.SUCCESS, f"{len(files)} file(s) uploaded")
        return {"files": [f.to_dict() for f in confirmed]}

    async def _start_analysis(
        self, selected_contexts: list[str], engineering_task_types: list[str],
    ) -> dict:
        self._require(WorkflowAction.START_ANALYSIS)
        stamp = self.engine.current_stamp()
        self.analysis_in_flight = True
        self._assistant_baseline = self.get_snapshot().confirmed_assistant_count
        self.reporter.clear_manual_check()
        self.reporter.set_activity_label("Analyzing files...")
        await self.engine.apply(
            SetSelections(tuple(selected_contexts), tuple(engineering_task_types)), stamp,
        )
        self.poller.start("analysis")
        try:
            raw = await self.backend.start_analysis(
                self.session_id, selected_contexts, engineering_task_types,
            )
        except TransportError as e:
            if not _response_lost(e):
                self._finish_analysis()
                raise
            self._keep_waiting("analysis", e)
            return {"started": True, "first_question": None, "total_questions": None,
                    "awaiting_result": True}
        except PocFlowError:
            self._finish_analysis()
            raise

        data = self._parse(AnalyzeResponse, raw).data
        if data is not None and data.first_question:
            # the first question is already persisted: analysis is done
            await self.engine.apply(SetFlags(PhaseFlags(files_analyzed=True)), stamp)
        self.engine.request_reload("analysis_started")
        return {
            "started": True,
            "first_question": data.first_question if data else None,
            "total_questions": data.total_questions if data else None,
        }

    async def _send_message(self, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise InputValidationError(
                "Please enter a message", "text", self._context("send_message"),
            )
        self._require(WorkflowAction.SEND_MESSAGE)
        stamp = self.engine.current_stamp()
        sequence = next(self._progress_sequence)
        temp = Message(
            message_id=TemporaryId.new(), role=MessageRole.USER,
            content=text, timestamp=_now_iso(),
        )
        await self.engine.apply(AppendMessages((temp,)), stamp)
        try:
            raw = await self.backend.ask(self.session_id, text)
        except PocFlowError:
            await self.engine.apply(RemoveTemporaryMessage(temp.message_id), stamp)
            raise

        response = self._parse(AskResponse, raw)
        if response.progress is not None:
            await self.engine.apply(
                SetProgress(response.progress.to_progress(sequence)), stamp,
            )
        if response.completed:
            await self.engine.apply(SetFlags(PhaseFlags(all_questions_answered=True)), stamp)
            self.reporter.toast(ToastLevel.SUCCESS, "All questions answered! Ready to generate POC.")
        if response.next_question:
            await self.engine.apply(AppendMessages((Message(
                message_id=TemporaryId.new(), role=MessageRole.ASSISTANT,
                content=response.next_question, timestamp=_now_iso(),
            ),)), stamp)
            if response.is_follow_up:
                self.reporter.toast(
                    ToastLevel.INFO, "Follow-up question generated based on your answer",
                )
        if response.next_phase in _NEXT_PHASE_TOASTS:
            self.reporter.toast(ToastLevel.INFO, _NEXT_PHASE_TOASTS[response.next_phase])
        self.engine.request_reload("message_sent")
        return {
            "next_question": response.next_question,
            "is_complete": response.completed,
            "progress": response.progress.model_dump() if response.progress else None,
        }

    async def _skip_questions(self) -> dict:
        self._require(WorkflowAction.SKIP_QUESTIONS)
        stamp = self.engine.current_stamp()
        raw = await self.backend.skip_questions(self.session_id)
        await self.engine.apply(SetFlags(PhaseFlags(all_questions_answered=True)), stamp)
        self.reporter.toast(ToastLevel.SUCCESS, "Questions skipped. Ready to generate POC.")
        self.engine.request_reload("questions_skipped")
        return {"message": self._parse(CommandResponse, raw).message}

    async def _generate_artifact(self, artifact_format: ArtifactFormat | str) -> dict:
        try:
            artifact_format = ArtifactFormat(artifact_format)
        except ValueError as e:
            raise InputValidationError(
                f"Unknown POC format '{artifact_format}'", "format",
                self._context("generate_artifact"),
            ) from e
        self._require(WorkflowAction.GENERATE_ARTIFACT)
        self.generating_artifact = True
        self._artifact_before_generation = self.get_snapshot().generated_artifact_id
        self.reporter.clear_manual_check()
        self.reporter.set_activity_label("Generating POC...")
        self.poller.start("artifact")
        try:
            raw = await self.backend.generate_artifact(self.session_id, artifact_format)
        except TransportError as e:
            if not _response_lost(e):
                self._finish_generation()
                raise
            self._keep_waiting("artifact", e)
            return {"format": artifact_format.value, "message": None, "awaiting_result": True}
        except PocFlowError:
            self._finish_generation()
            raise
        message = self._parse(CommandResponse, raw).message or "POC generation started"
        self.reporter.toast(ToastLevel.INFO, message)
        return {"format": artifact_format.value, "message": message}

    async def _list_artifacts(self) -> list[dict]:
        rows = parse_rows(
            BackendArtifact, await self.backend.list_artifacts(self.session_id), self.session_id,
        )
        return [row.model_dump() for row in rows]

    async def _download_artifact(self, artifact_id: str | None) -> dict:
        if artifact_id is None:
            self._require(WorkflowAction.DOWNLOAD_ARTIFACT)
            artifact_id = self.get_snapshot().generated_artifact_id
        content, filename = await self.backend.download_artifact(ArtifactId(artifact_id))
        return {
            "artifact_id": artifact_id,
            "filename": filename or default_artifact_filename(),
            "content": content,
        }

    async def _delete_artifact(self, artifact_id: str) -> dict:
        if not artifact_id:
            raise InputValidationError(
                "artifact_id is required", "artifact_id", self._context("delete_artifact"),
            )
        stamp = self.engine.current_stamp()
        await self.backend.delete_artifact(ArtifactId(artifact_id))
        await self.engine.apply(ClearArtifact(ArtifactId(artifact_id)), stamp)
        self.reporter.toast(ToastLevel.SUCCESS, "POC deleted")
        self.engine.request_reload("artifact_deleted")
        return {"artifact_id": artifact_id}

    async def _start_new_conversation(self) -> dict:
        await self.poller.stop()
        self._finish_analysis()
        self._finish_generation()
        self.reporter.clear_manual_check()
        snapshot = await self.engine.apply(NewConversation())
        self.reporter.toast(ToastLevel.SUCCESS, "Started a new conversation")
        logger.info(
            "New conversation started", extra={"session_id": self.session_id, "run": snapshot.run},
        )
        return {"run": snapshot.run}

    async def _refresh(self) -> dict:
        self.reporter.clear_manual_check()
        await self._reload_or_raise("manual")
        if self._waiting() and not self.poller.running:
            self.poller.start("analysis" if self.analysis_in_flight else "artifact")
        return {"reloaded": True}

    async def _reload_or_raise(self, reason: str) -> dict:
        if not await self.engine.reload_now(reason):
            raise self.engine.last_reload_error or TransportError(
                "reload did not complete", "reload", context=self._context("reload"),
            )
        return {"run": self.get_snapshot().run}

    # === Snapshot reactions ====================================================

    def _on_snapshot(self, session: Session):
        """Runs inside the engine after every applied delta."""
        if self.analysis_in_flight and analysis_completed(session, self._assistant_baseline):
            self._finish_analysis()
            logger.info("Analysis completed", extra={"session_id": self.session_id})
            if not session.flags.files_analyzed:
                return SetFlags(PhaseFlags(files_analyzed=True))
        if (self.generating_artifact
                and session.generated_artifact_id is not None
                and session.generated_artifact_id != self._artifact_before_generation):
            self._finish_generation()
            self.reporter.toast(ToastLevel.SUCCESS, "POC generated successfully!")
        if should_trigger_followups(session, self.settings.followup_trigger_answers):
            logger.info(
                "Requesting smart follow-ups", extra={"session_id": self.session_id},
            )
            self._spawn(self._request_followups())
            return SetFlags(PhaseFlags(smart_followups_generated=True))
        self.reporter.publish("snapshot", {
            "phase": derive_phase(session, self.analysis_in_flight).value,
            "run": session.run,
            "message_count": len(session.messages),
        })
        return None

    async def _request_followups(self) -> None:
        try:
            raw = await self.backend.generate_followups(self.session_id)
        except PocFlowError as e:
            logger.warning(
                "Follow-up generation failed: %s", e.message,
                extra={"session_id": self.session_id, "error_code": e.code},
            )
            return
        try:
            count = FollowupsResponse.model_validate(raw).count
        except ValidationError:
            count = 0
        if count:
            self.reporter.toast(ToastLevel.INFO, f"{count} follow-up question(s) added")
        self.engine.request_reload("followups_generated")

    # === Helpers ===============================================================

    def _keep_waiting(self, waiting_for: str, error: TransportError) -> None:
        """The request may still be running server-side: reloads and the poller settle it."""
        logger.warning(
            "No response while starting %s, still waiting: %s", waiting_for, error.message,
            extra={"session_id": self.session_id, "error_code": error.code,
                   "reason": waiting_for},
        )
        self.reporter.toast(
            ToastLevel.INFO, "Still working on it. Results will appear here when ready.",
        )
        self.engine.request_reload(f"{waiting_for}_response_lost")

    def _waiting(self) -> bool:
        return self.analysis_in_flight or self.generating_artifact

    def _finish_analysis(self) -> None:
        self.analysis_in_flight = False
        self._stop_waiting()

    def _finish_generation(self) -> None:
        self.generating_artifact = False
        self._artifact_before_generation = None
        self._stop_waiting()

    def _stop_waiting(self) -> None:
        if not self._waiting():
            self.poller.cancel()
            self.reporter.set_activity_label("")

    def _require(self, action: WorkflowAction) -> None:
        phase = self.derive_phase()
        violation = check_action_allowed(action, phase, self.generating_artifact)
        if violation is None:
            return
        error = ActionNotAllowedError(
            action.value, phase.value, violation["message"], self._context(action.value),
        )
        error.code = violation["error_code"]
        raise error

    def _parse(self, model, raw):
        """Validate an action response; an unusable body reads as an empty one."""
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning(
                "Unexpected %s payload: %s", model.__name__, e.errors()[:1],
                extra={"session_id": self.session_id, "error_code": "STATE_CONFLICT"},
            )
            self.engine.request_reload("unexpected_payload")
            return model()

    def _context(self, operation: str) -> ErrorContext:
        return ErrorContext(session_id=self.session_id, operation=operation)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispatch(
        self, action: str, operation: Callable[[], Awaitable[Any]],
    ) -> ActionOutcome:
        try:
            data = await operation()
        except PocFlowError as e:
            e.context.session_id = e.context.session_id or self.session_id
            e.context.operation = e.context.operation or action
            log = logger.warning if e.http_status < 500 else logger.error
            log(
                f"{action} failed: {e.message}",
                extra={"session_id": self.session_id, "error_code": e.code, "operation": action},
            )
            if not isinstance(e, (InputValidationError, ActionNotAllowedError)):
                self.reporter.report_error(e)
            return self._outcome(action, ok=False, error=e)
        except Exception as e:
            logger.error(
                f"Unexpected error in {action}: {e}",
                extra={"session_id": self.session_id, "operation": action},
                exc_info=True,
            )
            error = PocFlowError(
                "An unexpected error occurred", "INTERNAL_ERROR",
                ErrorCategory.INTERNAL, ErrorSeverity.CRITICAL, self._context(action),
            )
            self.reporter.report_error(error)
            return self._outcome(action, ok=False, error=error)
        return self._outcome(action, ok=True, data=data)

    def _outcome(self, action: str, **kwargs) -> ActionOutcome:
        phase = self.derive_phase()
        return ActionOutcome(
            action=action, phase=phase,
            available_actions=available_actions(phase, self.generating_artifact),
            **kwargs,
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response_lost(error: TransportError) -> bool:
    """Timeout or dropped connection: no HTTP status came back."""
    return error.status_code is None
