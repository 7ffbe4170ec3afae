"""Transport event tests — wire frames onto the closed event union.

Tests cover:
    - Each known event name maps to its variant
    - Unnamed frames carry their name in the JSON "type" key
    - Unknown names and unusable payloads become UnknownEvent, never raise
    - Poll results: status parsing and activity labels
"""

import json

from pocflow.core.domain_types import AgentStatus
from pocflow.core.transport_events import (
    ArtifactReady, Connected, Heartbeat, PhaseAdvanced, PollResult,
    QuestionsReady, UnknownEvent, activity_label_for, event_name,
    parse_event, poll_result,
)


# --- Named frames ---------------------------------------------------------------

def test_connected_and_heartbeat():
    assert parse_event("connected", '{"message": "hello"}') == Connected("hello")
    assert parse_event("heartbeat", "") == Heartbeat()


def test_agents_ready_carries_phase():
    assert parse_event("agents_ready", '{"phase": "complete"}') == PhaseAdvanced("complete")


def test_agents_ready_without_phase_is_unknown():
    assert parse_event("agents_ready", "{}") == UnknownEvent("agents_ready")


def test_questions_ready_count_is_optional():
    assert parse_event("questions_ready", '{"questionCount": 8}') == QuestionsReady(8)
    assert parse_event("questions_ready", "not json") == QuestionsReady(None)


def test_poc_ready_requires_id():
    event = parse_event("poc_ready", '{"pocId": "poc-1", "format": "both"}')
    assert event == ArtifactReady("poc-1", "both")
    assert parse_event("poc_ready", '{"format": "both"}') == UnknownEvent("poc_ready")


def test_agent_status_frame_is_poll_result():
    event = parse_event("agent_status", '{"status": "running", "agentName": "file_analysis"}')
    assert event == PollResult(AgentStatus.RUNNING, "file_analysis", "Analyzing files...")


def test_unknown_name_is_noop_variant():
    assert parse_event("something_new", "{}") == UnknownEvent("something_new")


# --- Unnamed frames -------------------------------------------------------------

def test_unnamed_frame_uses_type_key():
    data = json.dumps({"type": "poc_ready", "data": {"pocId": "poc-7"}})
    assert parse_event(None, data) == ArtifactReady("poc-7")


def test_unnamed_frame_without_type_is_unknown():
    assert parse_event(None, '{"foo": 1}') == UnknownEvent("")
    assert parse_event("", "[1, 2]") == UnknownEvent("")


def test_dict_payload_accepted():
    assert parse_event("agents_ready", {"phase": "complete"}) == PhaseAdvanced("complete")


# --- Poll results ---------------------------------------------------------------

def test_poll_result_parses_status():
    assert poll_result("COMPLETED", None).status == AgentStatus.COMPLETED
    assert poll_result(None, None).status == AgentStatus.IDLE
    assert poll_result("exploded", None).status == AgentStatus.UNKNOWN


def test_activity_label_only_while_running():
    assert activity_label_for(AgentStatus.IDLE, "file_analysis") == ""
    assert activity_label_for(AgentStatus.RUNNING, None) == ""
    assert activity_label_for(AgentStatus.RUNNING, "poc_generation") == "Generating POC..."
    assert activity_label_for(AgentStatus.RUNNING, "custom") == "custom running..."


def test_event_name():
    assert event_name(Heartbeat()) == "Heartbeat"
    assert event_name(UnknownEvent("x")) == "unknown:x"
