"""Phase State Machine — derives the workflow phase and the actions it enables.

Invariants:
    - All functions are PURE: no IO, no async, no side effects, no hidden counters
    - derive_phase rules evaluated top to bottom, first match wins
    - UI action availability comes only from available_actions(), never from raw flags
    - check_action_allowed returns error dict on violation, None on success

Design Decisions:
    - Pure functions over a stateful FSM object: a phase is a projection of the
      snapshot, so there is nothing to keep in sync (ADR: derived, never assigned)
    - Return dicts (not exceptions) from checks, like the enforce_* gates:
      dispatchers turn them into ActionNotAllowedError outcomes
    - "Analyzing" is ephemeral UI state passed in by the caller, not store state
"""

from pocflow.core.domain_types import (
    FOLLOWUP_TRIGGER_ANSWERS, WorkflowAction, WorkflowPhase,
)
from pocflow.core.session_snapshot import Session


_PHASE_ACTIONS: dict[WorkflowPhase, frozenset[WorkflowAction]] = {
    WorkflowPhase.COLLECTING_PROBLEM_STATEMENT: frozenset({
        WorkflowAction.SAVE_PROBLEM_STATEMENT,
        WorkflowAction.UPLOAD_FILES,
    }),
    WorkflowPhase.SELECTING_CONTEXT: frozenset({
        WorkflowAction.SAVE_PROBLEM_STATEMENT,
        WorkflowAction.UPLOAD_FILES,
        WorkflowAction.START_ANALYSIS,
    }),
    WorkflowPhase.ANALYZING: frozenset(),
    WorkflowPhase.ANSWERING_QUESTIONS: frozenset({
        WorkflowAction.SEND_MESSAGE,
        WorkflowAction.SKIP_QUESTIONS,
    }),
    WorkflowPhase.READY_FOR_ARTIFACT: frozenset({
        WorkflowAction.GENERATE_ARTIFACT,
    }),
    WorkflowPhase.ARTIFACT_GENERATED: frozenset({
        WorkflowAction.GENERATE_ARTIFACT,
        WorkflowAction.DOWNLOAD_ARTIFACT,
    }),
}

# Always available: a session can always be abandoned or re-checked
_ALWAYS = frozenset({
    WorkflowAction.START_NEW_CONVERSATION,
    WorkflowAction.CHECK_FOR_UPDATES,
})


def derive_phase(session: Session, analysis_in_flight: bool = False) -> WorkflowPhase:
    """Project the snapshot onto a workflow phase."""
    flags = session.flags
    if flags.all_questions_answered and session.generated_artifact_id is not None:
        return WorkflowPhase.ARTIFACT_GENERATED
    if flags.all_questions_answered:
        return WorkflowPhase.READY_FOR_ARTIFACT
    if flags.files_analyzed:
        return WorkflowPhase.ANSWERING_QUESTIONS
    if flags.problem_statement_saved:
        if analysis_in_flight:
            return WorkflowPhase.ANALYZING
        return WorkflowPhase.SELECTING_CONTEXT
    return WorkflowPhase.COLLECTING_PROBLEM_STATEMENT


def available_actions(
    phase: WorkflowPhase,
    generating_artifact: bool = False,
) -> frozenset[WorkflowAction]:
    """Actions the UI may offer in this phase."""
    actions = _PHASE_ACTIONS[phase]
    if generating_artifact:
        actions = actions - {WorkflowAction.GENERATE_ARTIFACT}
    return actions | _ALWAYS


def check_action_allowed(
    action: WorkflowAction,
    phase: WorkflowPhase,
    generating_artifact: bool = False,
) -> dict | None:
    """Gate an action. Returns error dict or None."""
    if action in available_actions(phase, generating_artifact):
        return None
    if action == WorkflowAction.GENERATE_ARTIFACT and generating_artifact:
        return _error("ARTIFACT_IN_PROGRESS", "A POC document is already being generated.")
    if action == WorkflowAction.START_ANALYSIS and phase == WorkflowPhase.COLLECTING_PROBLEM_STATEMENT:
        return _error("PROBLEM_STATEMENT_REQUIRED", "Please save your problem statement first.")
    return _error(
        "ACTION_NOT_ALLOWED",
        f"'{action.value}' is not available while {phase.value.replace('_', ' ')}.",
    )


def should_trigger_followups(
    session: Session, threshold: int = FOLLOWUP_TRIGGER_ANSWERS,
) -> bool:
    """Smart follow-ups fire once per run, as soon as the server holds `threshold` user answers.

    At-least rather than exactly: a failed reload can skip straight past the
    threshold, and the smart_followups_generated flag already bounds it to one.
    """
    return (
        session.confirmed_user_count >= threshold
        and session.flags.problem_statement_saved
        and not session.flags.all_questions_answered
        and not session.flags.smart_followups_generated
    )


def analysis_completed(session: Session, assistant_baseline: int) -> bool:
    """Analysis is done once the server shows assistant messages beyond the baseline.

    The baseline is the confirmed assistant count when analysis started, so
    sessions that already had messages do not read as instantly complete.
    """
    return (
        session.flags.files_analyzed
        or session.confirmed_assistant_count > assistant_baseline
    )


def _error(code: str, message: str) -> dict:
    return {"status": "error", "error_code": code, "message": message}
