"""Fake Backend — in-memory WorkflowBackend for orchestrator and engine tests.

Invariants:
    - Speaks the same raw JSON shapes as the real analysis backend
    - Every call is recorded in `calls` (method name) for request counting
    - fail(method) queues an exception for the next call(s) of that method
    - hold(method) blocks calls of that method until release(method)
    - lose_response(method) lets the next call do its work, then raise a timeout
    - stream_lines replays one scripted connection per call, then blocks forever

Design Decisions:
    - Flat class, no inheritance: simple, explicit, easy to debug
    - Server-side effects (ask stores the answer and the next question) live
      here so reloads observe what a real backend would return
"""

import asyncio
import itertools

from pocflow.core.errors import ResourceNotFoundError, TransportError


class FakeBackend:
    """Scriptable stand-in for BackendClient."""

    def __init__(self, session_id: str = "s1"):
        self.session = {
            "id": session_id,
            "problemStatement": None,
            "status": "active",
            "uploadedFiles": [],
            "analysisResults": [],
            "selectedContexts": [],
            "engineeringTaskTypes": [],
        }
        self.messages: list[dict] = []
        self.artifacts: list[dict] = []
        self.selected_agents: list[dict] = []
        self.contexts = [
            {"id": "ctx-aws", "filename": "aws.md", "title": "AWS", "description": "Cloud"},
        ]
        self.agent_status = {"status": "idle", "agentName": None}
        self.ask_responses: list[dict] = []
        self.analyze_response: dict | None = None
        self.stream_script: list[list[str]] = []
        self.calls: list[str] = []
        self._failures: dict[str, list[Exception]] = {}
        self._holds: dict[str, asyncio.Event] = {}
        self._lost: set[str] = set()
        self._ids = itertools.count(1)

    # --- Scripting helpers -------------------------------------------------------

    def fail(self, method: str, error: Exception | None = None, times: int = 1) -> None:
        error = error or TransportError("connection refused", method)
        self._failures.setdefault(method, []).extend([error] * times)

    def hold(self, method: str) -> None:
        self._holds[method] = asyncio.Event()

    def release(self, method: str) -> None:
        self._holds.pop(method).set()

    def lose_response(self, method: str) -> None:
        """Next call of method does its server-side work, then times out."""
        self._lost.add(method)

    def _reply(self, method: str, response: dict) -> dict:
        if method in self._lost:
            self._lost.discard(method)
            raise TransportError("timeout", method)
        return response

    def count(self, method: str) -> int:
        return self.calls.count(method)

    def add_message(self, role: str, content: str) -> dict:
        row = {
            "id": f"msg-{next(self._ids)}",
            "role": role,
            "content": content,
            "timestamp": "2025-01-01T00:00:00Z",
        }
        self.messages.append(row)
        return row

    def add_artifact(self) -> dict:
        row = {"id": f"poc-{next(self._ids)}", "createdAt": "2025-01-01T00:00:00Z"}
        self.artifacts.insert(0, row)
        return row

    async def _enter(self, method: str) -> None:
        self.calls.append(method)
        gate = self._holds.get(method)
        if gate is not None:
            await gate.wait()
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # --- Reads -------------------------------------------------------------------

    async def get_session(self, session_id):
        await self._enter("get_session")
        return dict(self.session)

    async def list_messages(self, session_id):
        await self._enter("list_messages")
        return list(self.messages)

    async def list_artifacts(self, session_id):
        await self._enter("list_artifacts")
        return list(self.artifacts)

    async def list_selected_agents(self, session_id):
        await self._enter("list_selected_agents")
        return list(self.selected_agents)

    async def list_contexts(self):
        await self._enter("list_contexts")
        return list(self.contexts)

    async def get_agent_status(self, session_id):
        await self._enter("get_agent_status")
        return dict(self.agent_status)

    # --- Mutations ---------------------------------------------------------------

    async def save_problem_statement(self, session_id, text):
        await self._enter("save_problem_statement")
        self.session["problemStatement"] = text
        return {"success": True, "session": dict(self.session)}

    async def upload_files(self, session_id, files):
        await self._enter("upload_files")
        rows = [
            {"id": f"file-{next(self._ids)}", "fileName": name,
             "fileSize": len(content), "fileType": "text/plain"}
            for name, content in files
        ]
        self.session["uploadedFiles"] = [*self.session["uploadedFiles"], *rows]
        return {"success": True, "files": rows}

    async def start_analysis(self, session_id, selected_contexts, engineering_task_types):
        await self._enter("start_analysis")
        self.session["selectedContexts"] = list(selected_contexts)
        self.session["engineeringTaskTypes"] = list(engineering_task_types)
        if self.analyze_response is not None:
            return self._reply("start_analysis", self.analyze_response)
        self.session["analysisResults"] = [*self.session["analysisResults"], {"id": "ar-1"}]
        first = self.add_message("assistant", "What is your current stack?")
        return self._reply("start_analysis", {
            "success": True,
            "data": {"started": True, "firstQuestion": first["content"], "totalQuestions": 8},
        })

    async def ask(self, session_id, message):
        await self._enter("ask")
        self.add_message("user", message)
        if self.ask_responses:
            response = self.ask_responses.pop(0)
        else:
            answered = sum(1 for m in self.messages if m["role"] == "user")
            response = {
                "success": True,
                "nextQuestion": f"Question {answered + 1}?",
                "progress": {"answered": answered, "total": 10},
            }
        if response.get("nextQuestion"):
            self.add_message("assistant", response["nextQuestion"])
        return response

    async def generate_followups(self, session_id):
        await self._enter("generate_followups")
        self.add_message("assistant", "Follow-up: how many users?")
        return {"success": True, "count": 1, "questions": ["how many users?"]}

    async def skip_questions(self, session_id):
        await self._enter("skip_questions")
        self.session["status"] = "questions_complete"
        return {"success": True, "message": "Questions skipped"}

    # --- Artifacts ---------------------------------------------------------------

    async def generate_artifact(self, session_id, artifact_format):
        await self._enter("generate_artifact")
        return self._reply("generate_artifact", {"success": True, "message": "POC generation started"})

    async def download_artifact(self, artifact_id):
        await self._enter("download_artifact")
        if not any(a["id"] == artifact_id for a in self.artifacts):
            raise ResourceNotFoundError("Artifact", artifact_id)
        return b"# POC\n", f"poc-{artifact_id}.md"

    async def delete_artifact(self, artifact_id):
        await self._enter("delete_artifact")
        self.artifacts = [a for a in self.artifacts if a["id"] != artifact_id]
        return {"success": True}

    # --- Push stream -------------------------------------------------------------

    async def stream_lines(self, session_id):
        await self._enter("stream_lines")
        if self.stream_script:
            for line in self.stream_script.pop(0):
                yield line
            return
        await asyncio.Event().wait()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
