"""Reconciliation engine tests — single writer, debounced reloads, staleness.

Tests cover:
    - Event bursts inside the debounce window cost one reload
    - A trigger during an in-flight reload schedules exactly one trailing reload
    - Reloads issued before "new conversation" are dropped as stale
    - N consecutive failures mark the view stale, the next success clears it
    - Failed reloads never roll back applied state
    - Push/poll events: artifact id, activity routing, reload on status change
    - agents_ready{phase: "complete"} closes the question round before the reload lands
    - Listener reactions are applied before the caller sees the snapshot
    - After close() nothing is applied and no request is issued
"""

import asyncio

import pytest

from pocflow.core.deltas import NewConversation, PollTimeout, SetFlags
from pocflow.core.domain_types import PHASE_COMPLETE, ArtifactId, SessionId, WorkflowPhase
from pocflow.core.phase_machine import derive_phase
from pocflow.core.session_snapshot import PhaseFlags, Session
from pocflow.core.session_store import SessionStore
from pocflow.core.transport_events import (
    ArtifactReady, Heartbeat, PhaseAdvanced, QuestionsReady, poll_result,
)
from pocflow.services.activity_reporter import ActivityReporter
from pocflow.services.initial_loader import InitialLoader
from pocflow.services.reconciler import ReconciliationEngine
from tests.services.fake_backend import wait_until


@pytest.fixture
async def engine(backend):
    eng = ReconciliationEngine(
        SessionStore(Session(session_id=SessionId("s1"))),
        InitialLoader(backend),
        ActivityReporter("s1"),
        debounce_s=0.01,
        stale_threshold=3,
    )
    eng.start()
    yield eng
    await eng.close()


# --- Debounce and coalescing ----------------------------------------------------

async def test_event_burst_costs_one_reload(engine, backend):
    engine.submit_event(QuestionsReady(8))
    engine.submit_event(QuestionsReady(8))
    engine.submit_event(PhaseAdvanced("complete"))
    await wait_until(lambda: engine.reloads_issued == 1)
    await asyncio.sleep(0.05)
    assert backend.count("get_session") == 1


async def test_heartbeat_does_not_reload(engine, backend):
    engine.submit_event(Heartbeat())
    await asyncio.sleep(0.05)
    assert backend.count("get_session") == 0


async def test_trigger_during_reload_schedules_one_trailing(engine, backend):
    backend.hold("get_session")
    engine.request_reload("first")
    await wait_until(lambda: backend.count("get_session") == 1)

    engine.request_reload("second")
    engine.request_reload("third")
    backend.release("get_session")

    await wait_until(lambda: backend.count("get_session") == 2)
    await asyncio.sleep(0.05)
    assert backend.count("get_session") == 2


async def test_reload_applies_server_view(engine, backend):
    backend.add_message("assistant", "What is your stack?")
    assert await engine.reload_now()
    snapshot = engine.store.get_snapshot()
    assert [m.content for m in snapshot.messages] == ["What is your stack?"]


async def test_reload_issued_before_new_conversation_is_dropped(engine, backend):
    backend.add_message("assistant", "Old question")
    backend.hold("get_session")
    pending = asyncio.create_task(engine.reload_now())
    await wait_until(lambda: backend.count("get_session") == 1)

    await engine.apply(NewConversation())
    backend.release("get_session")
    await pending

    snapshot = engine.store.get_snapshot()
    assert snapshot.run == 1
    assert snapshot.messages == ()


# --- Failures and staleness -----------------------------------------------------

async def test_consecutive_failures_mark_stale_then_recover(engine, backend):
    backend.fail("get_session", times=3)
    for attempt in range(1, 4):
        assert not await engine.reload_now()
        assert engine.consecutive_failures == attempt
        assert engine.reporter.stale is (attempt >= 3)

    assert await engine.reload_now()
    assert engine.consecutive_failures == 0
    assert engine.reporter.stale is False
    assert engine.last_reload_error is None


async def test_failed_reload_keeps_applied_state(engine, backend):
    await engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True)))
    backend.fail("list_messages")
    assert not await engine.reload_now()
    assert engine.store.get_snapshot().flags.problem_statement_saved
    assert engine.last_reload_error.code == "TRANSPORT_ERROR"


# --- Events ---------------------------------------------------------------------

async def test_artifact_ready_sets_id_and_survives_reload(engine):
    engine.submit_event(ArtifactReady(ArtifactId("poc-9")))
    await wait_until(lambda: engine.reloads_issued == 1)
    await asyncio.sleep(0.05)
    assert engine.store.get_snapshot().generated_artifact_id == "poc-9"


async def test_agents_ready_complete_closes_question_round(engine, backend):
    await engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True, files_analyzed=True)))
    assert derive_phase(engine.store.get_snapshot()) == WorkflowPhase.ANSWERING_QUESTIONS

    engine.submit_event(PhaseAdvanced(PHASE_COMPLETE))
    await wait_until(lambda: engine.reloads_issued == 1)
    await asyncio.sleep(0.05)

    snapshot = engine.store.get_snapshot()
    assert backend.session["status"] == "active"
    assert snapshot.flags.all_questions_answered
    assert derive_phase(snapshot) == WorkflowPhase.READY_FOR_ARTIFACT


async def test_agents_ready_other_phase_only_reloads(engine):
    await engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True, files_analyzed=True)))
    engine.submit_event(PhaseAdvanced("architectural"))
    await wait_until(lambda: engine.reloads_issued == 1)
    await asyncio.sleep(0.05)
    assert not engine.store.get_snapshot().flags.all_questions_answered


async def test_poll_result_routes_activity_and_reloads_on_change(engine):
    engine.submit_event(poll_result("running", "file_analysis"))
    await wait_until(lambda: engine.reporter.activity_label == "Analyzing files...")
    await wait_until(lambda: engine.reloads_issued == 1)

    engine.submit_event(poll_result("running", "file_analysis"))
    await asyncio.sleep(0.05)
    assert engine.reloads_issued == 1

    engine.submit_event(poll_result("completed", None))
    await wait_until(lambda: engine.reloads_issued == 2)
    assert engine.reporter.activity_label == ""


async def test_advisory_delta_never_reaches_store(engine):
    before = engine.store.get_snapshot()
    after = await engine.apply(PollTimeout("analysis", 300000))
    assert after is before
    assert engine.reporter.awaiting_manual_check


# --- Listeners ------------------------------------------------------------------

async def test_listener_reaction_applied_before_caller_resumes(engine):
    seen = []

    def react(snapshot):
        seen.append(snapshot.flags)
        if snapshot.flags.problem_statement_saved and not snapshot.flags.files_analyzed:
            return SetFlags(PhaseFlags(files_analyzed=True))
        return None

    engine.add_listener(react)
    snapshot = await engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True)))
    assert snapshot.flags.files_analyzed
    assert len(seen) == 2


async def test_failing_listener_does_not_stop_engine(engine):
    def boom(snapshot):
        raise RuntimeError("listener bug")

    engine.add_listener(boom)
    snapshot = await engine.apply(SetFlags(PhaseFlags(problem_statement_saved=True)))
    assert snapshot.flags.problem_statement_saved
    snapshot = await engine.apply(SetFlags(PhaseFlags(files_analyzed=True)))
    assert snapshot.flags.files_analyzed


# --- Shutdown -------------------------------------------------------------------

async def test_close_cancels_pending_debounce(engine, backend):
    engine.request_reload("burst")
    await engine.close()
    await asyncio.sleep(0.05)
    assert backend.count("get_session") == 0


async def test_nothing_applied_after_close(engine, backend):
    await engine.close()
    before = engine.store.get_snapshot()
    engine.submit(SetFlags(PhaseFlags(problem_statement_saved=True)))
    engine.request_reload("late")
    assert await engine.apply(SetFlags(PhaseFlags(files_analyzed=True))) is before
    assert await engine.reload_now() is False
    await asyncio.sleep(0.05)
    assert engine.store.get_snapshot() is before
    assert backend.count("get_session") == 0
