"""Initial loader tests — raw backend payloads reduced to one AuthoritativeReload.

Tests cover:
    - Evidence: problem statement, analysis count, status, artifacts, message ids
    - Selected agents counted (malformed rows ignored)
    - {"session": ...} wrapper accepted, null lists read as empty
    - Malformed rows skipped, malformed session body fails the load
    - Any fetch failure fails the whole load
"""

import pytest

from pocflow.core.domain_types import ConfirmedId, MessageRole
from pocflow.core.errors import StateConflictError, TransportError
from pocflow.services.initial_loader import InitialLoader, build_reload


def test_build_reload_collects_evidence():
    reload = build_reload(
        "s1",
        {"session": {
            "id": "s1", "problemStatement": "Migrate to cloud", "status": "active",
            "analysisResults": [{"id": "ar-1"}],
            "uploadedFiles": [{"id": "f1", "fileName": "arch.md", "fileSize": 5}],
            "selectedContexts": None,
        }},
        [{"id": 7, "role": "assistant", "content": "Q?", "createdAt": "2025-01-01"}],
        [{"id": "poc-2"}, {"id": "poc-1"}],
    )
    evidence = reload.evidence
    assert evidence.problem_statement == "Migrate to cloud"
    assert evidence.analysis_count == 1
    assert evidence.artifact_ids == ("poc-2", "poc-1")
    assert evidence.message_ids == frozenset({"7"})
    assert reload.messages[0].message_id == ConfirmedId("7")
    assert reload.messages[0].role == MessageRole.ASSISTANT
    assert reload.uploaded_files[0].key == ("arch.md", 5)
    assert reload.selected_contexts == ()


def test_selected_agents_counted_as_evidence():
    reload = build_reload(
        "s1", {"id": "s1"}, [], [], [{"name": "aws-architect"}, "garbage", {"name": "dba"}],
    )
    assert reload.evidence.selected_agent_count == 2
    assert build_reload("s1", {"id": "s1"}, [], []).evidence.selected_agent_count == 0


def test_malformed_rows_skipped():
    reload = build_reload(
        "s1", {"id": "s1"},
        [{"id": "m1", "role": "user"}, {"id": "m2", "role": "robot"}, {"role": "user"}],
        [{"title": "no id"}],
    )
    assert [str(m.message_id) for m in reload.messages] == ["m1"]
    assert reload.evidence.artifact_ids == ()


def test_malformed_session_fails_load():
    with pytest.raises(StateConflictError):
        build_reload("s1", {"problemStatement": "no id"}, [], [])


async def test_load_fetches_everything(backend):
    backend.session["problemStatement"] = "Migrate to cloud"
    backend.add_message("user", "hello")
    reload = await InitialLoader(backend).load("s1")
    assert reload.evidence.problem_statement == "Migrate to cloud"
    assert len(reload.messages) == 1
    assert sorted(backend.calls) == [
        "get_session", "list_artifacts", "list_messages", "list_selected_agents",
    ]


async def test_load_fails_when_any_fetch_fails(backend):
    backend.fail("list_artifacts")
    with pytest.raises(TransportError):
        await InitialLoader(backend).load("s1")
