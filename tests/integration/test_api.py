"""
HTTP-level tests for the FastAPI server.

The module-level registry, text-generation client and export functions are
swapped for fakes; background tasks run to completion inside each request.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bookgen.session_store import FileBlobStore, SessionRegistry
from bookgen.state import COMPLETED, DOWNLOADED, FAILED, GENERATING, MARKDOWN_READY, fail_session
from server import api
from tests.fakes import FakeLLM, ready_session, small_config

pytestmark = pytest.mark.integration


class SmallRegistry(SessionRegistry):
    """Every new session gets the small test shape."""

    def create_session(self, topic, model=None, author=None, config=None):
        return super().create_session(topic, model=model, author=author, config=small_config())


@pytest.fixture
def env(tmp_path, monkeypatch, config):
    registry = SmallRegistry(FileBlobStore(tmp_path))
    llm = FakeLLM(config)
    monkeypatch.setattr(api, "registry", registry)
    monkeypatch.setattr(api, "llm", llm)
    monkeypatch.setattr(api, "export_pdf", lambda markdown: b"%PDF-1.7 fake")
    monkeypatch.setattr(api, "export_docx", lambda markdown, title=None: b"PK fake docx")
    return SimpleNamespace(client=TestClient(api.app), registry=registry, llm=llm)


def add_ready_session(env):
    session = ready_session()
    env.registry.save(session)
    return session


class TestGenerate:
    def test_generate_runs_to_markdown_ready(self, env):
        response = env.client.post("/api/v1/generate", json={"topic": "Graph Theory Basics", "author": "Ada"})
        assert response.status_code == 202
        session_id = response.json()["session_id"]

        snapshot = env.client.get(f"/api/v1/sessions/{session_id}").json()
        assert snapshot["status"] == MARKDOWN_READY
        assert snapshot["generated_subtopics"] == snapshot["total_subtopics"] == 4
        assert snapshot["structure"]["title"] == "Graph Theory Basics"
        assert snapshot["budget_remaining"]["calls"] == 250 - snapshot["call_count"]

        listing = env.client.get("/api/v1/sessions").json()["sessions"]
        assert [s["session_id"] for s in listing] == [session_id]

        markdown = env.client.get(f"/api/v1/sessions/{session_id}/markdown").json()["markdown"]
        assert "**Authored by:** Ada" in markdown

    def test_topic_too_short(self, env):
        response = env.client.post("/api/v1/generate", json={"topic": " ab "})
        assert response.status_code == 400

    def test_admission_limit(self, env):
        for _ in range(api.MAX_CONCURRENT_SESSIONS):
            env.registry.create_session("Queued topic")
        response = env.client.post("/api/v1/generate", json={"topic": "Graph Theory Basics"})
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "60"

    def test_unknown_session(self, env):
        assert env.client.get("/api/v1/sessions/does-not-exist").status_code == 404


class TestSubtopicEditing:
    def test_content_edit_undo_cycle(self, env):
        session = add_ready_session(env)
        base = f"/api/v1/sessions/{session.id}"
        original = env.client.get(f"{base}/content", params={"unit": 0, "subtopic": 0}).json()
        assert original["versions_remaining"] == 0

        edited = env.client.post(
            f"{base}/edit-section",
            json={
                "unit_index": 0,
                "subtopic_index": 0,
                "selected_text": "A paragraph about the idea in section 1.1.",
                "action": "expand",
            },
        )
        assert edited.status_code == 200
        assert "A freshly rewritten passage." in edited.json()["markdown"]
        assert edited.json()["versions_remaining"] == 1

        markdown = env.client.get(f"{base}/markdown").json()["markdown"]
        assert "A freshly rewritten passage." in markdown

        undone = env.client.post(f"{base}/undo", json={"unit_index": 0, "subtopic_index": 0})
        assert undone.json()["markdown"] == original["markdown"]

        again = env.client.post(f"{base}/undo", json={"unit_index": 0, "subtopic_index": 0})
        assert again.status_code == 404

    def test_regenerate(self, env):
        session = add_ready_session(env)
        response = env.client.post(
            f"/api/v1/sessions/{session.id}/regenerate", json={"unit_index": 1, "subtopic_index": 1}
        )
        assert response.status_code == 200
        assert response.json()["versions_remaining"] == 1
        assert env.llm.calls == ["subtopic U2/S2"]

    @pytest.mark.parametrize(
        "body, status",
        [
            ({"unit_index": 0, "subtopic_index": 0, "selected_text": "short", "action": "expand"}, 400),
            ({"unit_index": 0, "subtopic_index": 0, "selected_text": "x" * 20, "action": "dance"}, 400),
            ({"unit_index": 0, "subtopic_index": 0, "selected_text": "not in the body at all", "action": "expand"}, 400),
            ({"unit_index": 5, "subtopic_index": 0, "selected_text": "x" * 20, "action": "expand"}, 400),
            ({"unit_index": -1, "subtopic_index": 0, "selected_text": "x" * 20, "action": "expand"}, 422),
        ],
    )
    def test_bad_edit_requests(self, env, body, status):
        session = add_ready_session(env)
        response = env.client.post(f"/api/v1/sessions/{session.id}/edit-section", json=body)
        assert response.status_code == status

    def test_edit_requires_markdown_ready(self, env):
        session = add_ready_session(env)
        session.status = GENERATING
        response = env.client.post(
            f"/api/v1/sessions/{session.id}/edit-section",
            json={
                "unit_index": 0,
                "subtopic_index": 0,
                "selected_text": "A paragraph about the idea in section 1.1.",
                "action": "rewrite",
            },
        )
        assert response.status_code == 409

    def test_markdown_unavailable_while_generating(self, env):
        session = add_ready_session(env)
        session.status = GENERATING
        assert env.client.get(f"/api/v1/sessions/{session.id}/markdown").status_code == 409


class TestExport:
    def test_approve_then_download_pdf(self, env):
        session = add_ready_session(env)
        base = f"/api/v1/sessions/{session.id}"

        assert env.client.get(f"{base}/download").status_code == 409

        approved = env.client.post(f"{base}/approve")
        assert approved.status_code == 202
        assert session.status == COMPLETED
        assert session.pdf_bytes == b"%PDF-1.7 fake"

        download = env.client.get(f"{base}/download", params={"format": "pdf"})
        assert download.status_code == 200
        assert download.content == b"%PDF-1.7 fake"
        assert download.headers["content-type"] == "application/pdf"
        assert 'filename="graph-theory-basics.pdf"' in download.headers["content-disposition"]
        assert session.status == DOWNLOADED

    def test_download_docx(self, env):
        session = add_ready_session(env)
        session.status = COMPLETED
        download = env.client.get(f"/api/v1/sessions/{session.id}/download", params={"format": "docx"})
        assert download.status_code == 200
        assert download.content == b"PK fake docx"

    def test_approve_requires_markdown_ready(self, env):
        session = add_ready_session(env)
        session.status = GENERATING
        assert env.client.post(f"/api/v1/sessions/{session.id}/approve").status_code == 409

    def test_export_failure_fails_session(self, env, monkeypatch):
        from bookgen.errors import ExportError

        def broken(markdown):
            raise ExportError("typst not found. Please install the typst CLI.")

        monkeypatch.setattr(api, "export_pdf", broken)
        session = add_ready_session(env)
        env.client.post(f"/api/v1/sessions/{session.id}/approve")
        assert session.status == FAILED
        assert session.error.startswith("Export failed: typst not found")


class TestResume:
    def test_failed_session_resumes(self, env):
        session = env.registry.create_session("Graph Theory Basics")
        fail_session(session, "Server restarted during generation")
        response = env.client.post(f"/api/v1/sessions/{session.id}/resume")
        assert response.status_code == 202
        assert session.status == MARKDOWN_READY

    def test_only_failed_sessions_resume(self, env):
        session = add_ready_session(env)
        assert env.client.post(f"/api/v1/sessions/{session.id}/resume").status_code == 409
