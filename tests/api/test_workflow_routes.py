"""Workflow route tests — the BFF surface over a fake analysis backend.

Tests cover:
    - Health and readiness checks
    - Snapshot view and session activation/switching
    - Outcome → HTTP mapping (200, 400, 404, 409)
    - Request validation handler shape
    - Upload (multipart), download (markdown attachment), delete
    - Error toasts dismissed by id
    - Unhandled failures: 500 envelope with the session id, no internals
"""

import pytest
from httpx import ASGITransport, AsyncClient

from pocflow.config import Settings
from pocflow.main import create_app
from tests.services.fake_backend import FakeBackend

BASE = "/api/v1/workflow"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
async def client(backend):
    app = create_app(_settings(), backend=backend)
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


def _settings() -> Settings:
    return Settings(
        reload_debounce_ms=5, poll_interval_ms=5,
        poll_max_duration_ms=2_000, sse_reconnect_delay_ms=5,
    )


async def _to_ready(client) -> None:
    await client.post(f"{BASE}/s1/problem-statement", json={"text": "Migrate to cloud"})
    await client.post(f"{BASE}/s1/analysis", json={"selected_contexts": ["ctx-aws"]})
    response = await client.post(f"{BASE}/s1/skip-questions")
    assert response.status_code == 200


# --- Health ---------------------------------------------------------------------

async def test_health(client):
    response = await client.get("/api/v1/health/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_ready_reports_active_session(client):
    body = (await client.get("/api/v1/health/ready")).json()
    assert body["checks"]["active_session"] is None
    await client.get(f"{BASE}/s1")
    body = (await client.get("/api/v1/health/ready")).json()
    assert body["checks"]["active_session"] == "s1"


# --- View and activation --------------------------------------------------------

async def test_get_view(client):
    response = await client.get(f"{BASE}/s1")
    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "collecting_problem_statement"
    assert "start_new_conversation" in body["available_actions"]
    assert body["activity"]["stale"] is False


async def test_switching_session_replaces_active(client):
    await client.get(f"{BASE}/s1")
    await client.get(f"{BASE}/s2")
    body = (await client.get("/api/v1/health/ready")).json()
    assert body["checks"]["active_session"] == "s2"


# --- Outcomes -------------------------------------------------------------------

async def test_save_problem_statement(client, backend):
    response = await client.post(
        f"{BASE}/s1/problem-statement", json={"text": "  Migrate to cloud  "},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["phase"] == "selecting_context"
    assert "start_analysis" in body["available_actions"]
    assert backend.session["problemStatement"] == "Migrate to cloud"


async def test_blank_problem_statement_is_400(client):
    response = await client.post(f"{BASE}/s1/problem-statement", json={"text": "   "})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_missing_body_field_uses_validation_handler(client):
    response = await client.post(f"{BASE}/s1/problem-statement", json={})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"][0]["field"].endswith("text")


async def test_message_before_analysis_is_409(client):
    response = await client.post(f"{BASE}/s1/messages", json={"text": "hello"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ACTION_NOT_ALLOWED"


async def test_unknown_artifact_format_is_400(client):
    response = await client.post(f"{BASE}/s1/artifacts", json={"format": "slides"})
    assert response.status_code == 400


async def test_new_conversation(client):
    await client.post(f"{BASE}/s1/problem-statement", json={"text": "Migrate to cloud"})
    response = await client.post(f"{BASE}/s1/new-conversation")
    assert response.status_code == 200
    assert response.json()["data"] == {"run": 1}
    assert response.json()["phase"] == "collecting_problem_statement"


# --- Files and artifacts --------------------------------------------------------

async def test_upload_multipart(client):
    response = await client.post(
        f"{BASE}/s1/uploads",
        files=[("files", ("arch.md", b"hello", "text/markdown"))],
    )
    assert response.status_code == 200
    assert response.json()["data"]["files"][0]["filename"] == "arch.md"


async def test_download_and_delete_artifact(client, backend):
    await _to_ready(client)
    artifact = backend.add_artifact()
    await client.post(f"{BASE}/s1/refresh")

    listed = (await client.get(f"{BASE}/s1/artifacts")).json()
    assert listed["data"][0]["id"] == artifact["id"]

    response = await client.get(f"{BASE}/s1/artifacts/{artifact['id']}/download")
    assert response.status_code == 200
    assert response.content == b"# POC\n"
    assert response.headers["content-type"].startswith("text/markdown")
    assert f'filename="poc-{artifact["id"]}.md"' in response.headers["content-disposition"]

    response = await client.delete(f"{BASE}/s1/artifacts/{artifact['id']}")
    assert response.status_code == 200
    assert response.json()["phase"] == "ready_for_artifact"


async def test_download_unknown_artifact_is_404(client):
    response = await client.get(f"{BASE}/s1/artifacts/poc-missing/download")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


# --- Toasts ---------------------------------------------------------------------

async def test_error_toast_dismissed_by_id(client, backend):
    backend.fail("save_problem_statement")
    response = await client.post(f"{BASE}/s1/problem-statement", json={"text": "Migrate"})
    assert response.status_code == 502

    toasts = (await client.get(f"{BASE}/s1")).json()["activity"]["toasts"]
    assert [t["level"] for t in toasts] == ["error"]

    response = await client.delete(f"{BASE}/s1/toasts/{toasts[0]['id']}")
    assert response.status_code == 200
    assert response.json()["toasts"] == []
    assert (await client.get(f"{BASE}/s1")).json()["activity"]["toasts"] == []

    response = await client.delete(f"{BASE}/s1/toasts/{toasts[0]['id']}")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


# --- Unexpected failures --------------------------------------------------------

async def test_unexpected_error_is_500_with_session_context(backend):
    app = create_app(_settings(), backend=backend)
    async with app.router.lifespan_context(app):
        async def broken_activate(session_id):
            raise RuntimeError("registry bug")

        app.state.registry.activate = broken_activate
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get(f"{BASE}/s1")

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "INTERNAL_ERROR"
    assert error["context"] == {"session_id": "s1"}
    assert "Check for updates" in error["message"]
    assert "registry bug" not in response.text
