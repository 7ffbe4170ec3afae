"""Transport Events — closed tagged union for everything the backend pushes or reports.

Invariants:
    - One variant per known wire event name; anything else becomes UnknownEvent (a no-op)
    - A known name with an unusable payload also becomes UnknownEvent: never an exception
    - Only terminal fields are trusted from payloads (phase name, artifact id);
      everything else only means "something changed, go reload"
    - All functions are pure

Design Decisions:
    - Frozen dataclasses + match-case over dict["type"] switches: the engine
      handles a closed set of shapes (ADR: no loosely-typed JSON past the boundary)
    - Unnamed SSE frames carry their name in the JSON "type" key (backend
      /events route): parse_event accepts both forms
"""

import json
from dataclasses import dataclass
from typing import Union

from pocflow.core.domain_types import AgentStatus, ArtifactId


# --- Variants -------------------------------------------------------------------

@dataclass(frozen=True)
class Connected:
    message: str = ""


@dataclass(frozen=True)
class Heartbeat:
    pass


@dataclass(frozen=True)
class PhaseAdvanced:
    phase: str


@dataclass(frozen=True)
class QuestionsReady:
    question_count: int | None = None


@dataclass(frozen=True)
class ArtifactReady:
    artifact_id: ArtifactId
    format: str | None = None


@dataclass(frozen=True)
class PollResult:
    status: AgentStatus
    agent_name: str | None = None
    activity_label: str = ""


@dataclass(frozen=True)
class UnknownEvent:
    name: str


TransportEvent = Union[
    Connected, Heartbeat, PhaseAdvanced, QuestionsReady,
    ArtifactReady, PollResult, UnknownEvent,
]


# Friendly activity labels per agent name (status endpoint + agent_status frames)
_ACTIVITY_LABELS: dict[str, str] = {
    "file_analysis": "Analyzing files...",
    "file-analysis-agent": "Analyzing files...",
    "quick_question": "Generating questions...",
    "poc_generation": "Generating POC...",
    "poc-generation-agent": "Generating POC...",
    "complete-flow-agent": "Running complete workflow...",
}


# --- Parsing --------------------------------------------------------------------

def activity_label_for(status: AgentStatus, agent_name: str | None) -> str:
    """Human label for a running agent; empty when nothing is running."""
    if status != AgentStatus.RUNNING or not agent_name:
        return ""
    return _ACTIVITY_LABELS.get(agent_name, f"{agent_name} running...")


def poll_result(raw_status: str | None, agent_name: str | None) -> PollResult:
    status = AgentStatus.parse(raw_status)
    return PollResult(
        status=status,
        agent_name=agent_name,
        activity_label=activity_label_for(status, agent_name),
    )


def parse_event(name: str | None, data: object) -> TransportEvent:
    """Map an SSE frame (event name + data) onto the union."""
    payload = _decode_payload(data)
    if not name:
        name = payload.get("type") if isinstance(payload.get("type"), str) else None
        # unnamed frames nest their body under "data"
        if isinstance(payload.get("data"), dict):
            payload = {**payload, **payload["data"]}
    if not name:
        return UnknownEvent(name="")

    match name:
        case "connected":
            return Connected(message=str(payload.get("message", "")))
        case "heartbeat":
            return Heartbeat()
        case "agents_ready":
            phase = payload.get("phase")
            if not isinstance(phase, str) or not phase:
                return UnknownEvent(name=name)
            return PhaseAdvanced(phase=phase)
        case "questions_ready":
            count = payload.get("questionCount")
            return QuestionsReady(question_count=count if isinstance(count, int) else None)
        case "poc_ready":
            poc_id = payload.get("pocId")
            if not isinstance(poc_id, str) or not poc_id:
                return UnknownEvent(name=name)
            fmt = payload.get("format")
            return ArtifactReady(
                artifact_id=ArtifactId(poc_id),
                format=fmt if isinstance(fmt, str) else None,
            )
        case "agent_status":
            agent_name = payload.get("agentName")
            return poll_result(
                payload.get("status") if isinstance(payload.get("status"), str) else None,
                agent_name if isinstance(agent_name, str) else None,
            )
    return UnknownEvent(name=name)


def event_name(event: TransportEvent) -> str:
    if isinstance(event, UnknownEvent):
        return f"unknown:{event.name}"
    return type(event).__name__


def _decode_payload(data: object) -> dict:
    if isinstance(data, dict):
        return data
    if isinstance(data, str) and data:
        try:
            decoded = json.loads(data)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}
