"""Session Store — single-writer holder of the current Session snapshot.

Invariants:
    - merge_delta is PURE: returns a new Session, never mutates its input
    - Phase flags merge with OR; only NewConversation clears them (atomically, bumping run)
    - An AuthoritativeReload replaces the whole message list: temporary ids never survive it
    - Reload evidence counts only when it goes beyond the run baseline
    - Progress is last-writer-wins by sequence and never regresses once all questions are answered
    - Reloads set but never clear generated_artifact_id; only ClearArtifact does
    - apply_delta never raises: malformed or stale deltas are logged and dropped

Design Decisions:
    - Pure merge function + thin stateful holder (ADR: functional core, like enforce_* checks)
    - match-case dispatch over polymorphic delta methods: the delta union stays data-only
    - Stamp check in the holder, not in merge_delta: staleness is about identity,
      merging is about content
"""

import logging
from dataclasses import replace

from pocflow.core.domain_types import (
    STATUS_QUESTIONS_COMPLETE, ConfirmedId, MessageId, TemporaryId,
)
from pocflow.core.errors import ErrorContext, StateConflictError
from pocflow.core.deltas import (
    AddUploadedFiles, AppendMessages, AuthoritativeReload, ClearArtifact,
    DeltaStamp, NewConversation, RemoveTemporaryMessage, RemoveUploadedFiles,
    SetArtifact, SetFlags, SetProblemStatement, SetProgress, SetSelections,
    delta_name, is_advisory_delta,
)
from pocflow.core.session_snapshot import (
    Message, PhaseFlags, Progress, ServerEvidence, Session, UploadedFile,
)

logger = logging.getLogger(__name__)

# Session statuses that mean the question round is over
_ANSWERED_STATUSES = frozenset({STATUS_QUESTIONS_COMPLETE, "ready_for_poc"})


# === Public API ===============================================================

def merge_delta(session: Session, delta: object) -> Session:
    """Apply one store delta. Raises StateConflictError on malformed input."""
    match delta:
        case AppendMessages():
            return _append_messages(session, delta)
        case RemoveTemporaryMessage():
            return _remove_temporary(session, delta)
        case AuthoritativeReload():
            return _apply_reload(session, delta)
        case SetFlags():
            _require(delta, isinstance(delta.flags, PhaseFlags), "flags must be PhaseFlags")
            return replace(session, flags=session.flags.union(delta.flags))
        case SetProgress():
            return _apply_progress(session, delta)
        case SetArtifact():
            _require(delta, _is_text(delta.artifact_id), "artifact_id must be a non-empty str")
            return replace(session, generated_artifact_id=delta.artifact_id)
        case ClearArtifact():
            if session.generated_artifact_id != delta.artifact_id:
                return session
            return replace(session, generated_artifact_id=None)
        case SetProblemStatement():
            _require(delta, _is_text(delta.text), "text must be a non-empty str")
            return replace(session, problem_statement=delta.text)
        case SetSelections():
            return replace(
                session,
                selected_contexts=tuple(delta.selected_contexts),
                engineering_task_types=tuple(delta.engineering_task_types),
            )
        case AddUploadedFiles():
            return _add_files(session, delta.files, delta)
        case RemoveUploadedFiles():
            return replace(session, uploaded_files=tuple(
                f for f in session.uploaded_files if f.key not in delta.keys
            ))
        case NewConversation():
            return start_new_run(session)
    raise StateConflictError(
        f"Unknown delta shape: {delta_name(delta)}", delta_name(delta),
        ErrorContext(session_id=session.session_id),
    )


def start_new_run(session: Session) -> Session:
    """Reset workflow state for a fresh conversation on the same session.

    Problem statement text, selections and uploaded files survive; everything
    the server already knew becomes the baseline for the new run.
    """
    confirmed_ids = {
        str(m.message_id) for m in session.messages
        if isinstance(m.message_id, ConfirmedId)
    }
    artifact_ids = session.evidence.artifact_ids
    if (session.generated_artifact_id
            and session.generated_artifact_id not in artifact_ids):
        artifact_ids = (session.generated_artifact_id, *artifact_ids)
    baseline = replace(
        session.evidence,
        problem_statement=(
            session.evidence.problem_statement or session.problem_statement
        ),
        message_ids=session.evidence.message_ids | confirmed_ids,
        artifact_ids=artifact_ids,
    )
    return Session(
        session_id=session.session_id,
        uploaded_files=session.uploaded_files,
        problem_statement=session.problem_statement,
        selected_contexts=session.selected_contexts,
        engineering_task_types=session.engineering_task_types,
        run=session.run + 1,
        baseline=baseline,
        evidence=session.evidence,
    )


def flags_from_evidence(evidence: ServerEvidence, baseline: ServerEvidence) -> PhaseFlags:
    """Flags implied by server facts newer than the run baseline."""
    problem_saved = bool(
        evidence.problem_statement
        and evidence.problem_statement.strip()
        and evidence.problem_statement != baseline.problem_statement
    )
    new_artifact = _newest_new_artifact(evidence, baseline) is not None
    answered_status = (
        evidence.status in _ANSWERED_STATUSES
        and baseline.status not in _ANSWERED_STATUSES
    )
    agents_selected = evidence.selected_agent_count > baseline.selected_agent_count
    return PhaseFlags(
        problem_statement_saved=problem_saved,
        files_analyzed=evidence.analysis_count > baseline.analysis_count,
        all_questions_answered=answered_status or new_artifact or agents_selected,
    )


# === Stateful holder ==========================================================

class SessionStore:
    """Holds the current snapshot. Written only by the reconciliation engine."""

    def __init__(self, session: Session):
        self._snapshot = session

    @property
    def session_id(self):
        return self._snapshot.session_id

    def get_snapshot(self) -> Session:
        return self._snapshot

    def apply_delta(self, delta: object, stamp: DeltaStamp | None = None) -> Session:
        """Merge delta into the current snapshot. Never raises."""
        current = self._snapshot
        if is_advisory_delta(delta):
            return current
        if stamp is not None and not self._stamp_matches(stamp):
            logger.info(
                "Dropped stale %s (stamp session=%s run=%s, current run=%s)",
                delta_name(delta), stamp.session_id, stamp.run, current.run,
                extra={"session_id": current.session_id, "delta_type": delta_name(delta)},
            )
            return current
        try:
            self._snapshot = merge_delta(current, delta)
        except StateConflictError as e:
            logger.warning(
                "Dropped malformed delta: %s", e.message,
                extra={"session_id": current.session_id,
                       "delta_type": e.delta_type, "error_code": e.code},
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(
                "Dropped malformed %s: %s", delta_name(delta), e,
                extra={"session_id": current.session_id,
                       "delta_type": delta_name(delta),
                       "error_code": "STATE_CONFLICT"},
            )
        return self._snapshot

    def _stamp_matches(self, stamp: DeltaStamp) -> bool:
        return (
            stamp.session_id == self._snapshot.session_id
            and stamp.run == self._snapshot.run
        )


# === Merge helpers ============================================================

def _append_messages(session: Session, delta: AppendMessages) -> Session:
    _require(delta, all(isinstance(m, Message) for m in delta.messages),
             "messages must be Message instances")
    seen: set[MessageId] = set(session.message_ids)
    appended = list(session.messages)
    for msg in delta.messages:
        if msg.message_id in seen:
            continue
        seen.add(msg.message_id)
        appended.append(msg)
    return replace(session, messages=tuple(appended))


def _remove_temporary(session: Session, delta: RemoveTemporaryMessage) -> Session:
    _require(delta, isinstance(delta.message_id, TemporaryId),
             "only temporary ids can be removed")
    return replace(session, messages=tuple(
        m for m in session.messages if m.message_id != delta.message_id
    ))


def _apply_reload(session: Session, delta: AuthoritativeReload) -> Session:
    _require(delta, isinstance(delta.evidence, ServerEvidence),
             "evidence must be ServerEvidence")
    _require(delta, all(isinstance(m, Message) for m in delta.messages),
             "messages must be Message instances")
    baseline = session.baseline
    messages = tuple(
        m for m in delta.messages
        if not m.is_temporary and str(m.message_id) not in baseline.message_ids
    )
    flags = session.flags.union(flags_from_evidence(delta.evidence, baseline))
    artifact_id = (
        _newest_new_artifact(delta.evidence, baseline)
        or session.generated_artifact_id
    )
    merged = replace(
        session,
        messages=messages,
        flags=flags,
        generated_artifact_id=artifact_id,
        problem_statement=(
            delta.evidence.problem_statement or session.problem_statement
        ),
        evidence=delta.evidence,
    )
    merged = _merge_server_files(merged, delta.uploaded_files)
    if delta.selected_contexts or delta.engineering_task_types:
        merged = replace(
            merged,
            selected_contexts=delta.selected_contexts or merged.selected_contexts,
            engineering_task_types=(
                delta.engineering_task_types or merged.engineering_task_types
            ),
        )
    return merged


def _apply_progress(session: Session, delta: SetProgress) -> Session:
    new = delta.progress
    _require(delta, isinstance(new, Progress), "progress must be Progress")
    _require(delta, new.answered >= 0 and new.total >= 0, "progress must be non-negative")
    current = session.progress
    if current is not None and new.sequence <= current.sequence:
        return session
    if (current is not None and session.flags.all_questions_answered
            and new.answered < current.answered):
        return session
    return replace(session, progress=new)


def _add_files(session: Session, files: tuple[UploadedFile, ...], delta: object) -> Session:
    _require(delta, all(isinstance(f, UploadedFile) for f in files),
             "files must be UploadedFile instances")
    by_key = {f.key: f for f in session.uploaded_files}
    order = [f.key for f in session.uploaded_files]
    for f in files:
        if f.key not in by_key:
            order.append(f.key)
        by_key[f.key] = f
    return replace(session, uploaded_files=tuple(by_key[k] for k in order))


def _merge_server_files(session: Session, server_files: tuple[UploadedFile, ...]) -> Session:
    """Server list wins; local unconfirmed uploads still in flight are kept."""
    if not server_files:
        return session
    server_keys = {f.key for f in server_files}
    pending = tuple(
        f for f in session.uploaded_files
        if not f.confirmed and f.key not in server_keys
    )
    return replace(session, uploaded_files=tuple(server_files) + pending)


def _newest_new_artifact(evidence: ServerEvidence, baseline: ServerEvidence):
    for artifact_id in evidence.artifact_ids:
        if artifact_id not in baseline.artifact_ids:
            return artifact_id
    return None


def _is_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _require(delta: object, condition: bool, message: str) -> None:
    if not condition:
        raise StateConflictError(
            f"{delta_name(delta)}: {message}", delta_name(delta),
        )
