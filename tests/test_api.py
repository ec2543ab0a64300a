"""HTTP API tests.

All tests use an in-memory SQLite database via the FastAPI TestClient and a
scripted completion endpoint, so no external services are required.
"""

from __future__ import annotations

import json
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from branchchat.api.app import create_app
from branchchat.db.connection import get_connection
from branchchat.db.migrations import init_db
from tests.conftest import TEST_MODEL, FakeProvider, make_client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_sse(content: bytes) -> list[dict]:
    """Parse raw SSE response bytes into a list of event dicts."""
    events = []
    for line in content.decode().splitlines():
        line = line.strip()
        if line.startswith("data: "):
            events.append(json.loads(line[len("data: "):]))
    return events


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider(replies=[["Hi", " there"], ["Hello", " again"], ["Hey"]])


@pytest.fixture()
def client(tmp_path, monkeypatch, provider) -> Generator[TestClient, None, None]:
    """TestClient backed by an isolated in-memory DB and the fake provider."""
    monkeypatch.setattr("branchchat.config.settings.workspace_dir", tmp_path)
    monkeypatch.setattr("branchchat.config.settings.chat_model", TEST_MODEL)
    monkeypatch.setattr("branchchat.config.settings.title_model", TEST_MODEL)
    monkeypatch.setattr("branchchat.config.settings.auto_generate_title", True)
    monkeypatch.setattr("branchchat.config.settings.default_system_prompt_id", None)

    conn = get_connection(db_path=":memory:")  # type: ignore[arg-type]
    init_db(conn)
    app = create_app()

    with TestClient(app, raise_server_exceptions=True) as c:
        c.app.state.db = conn
        c.app.state.client = make_client(provider)
        yield c

    conn.close()


@pytest.fixture()
def conversation(client: TestClient) -> dict:
    resp = client.post("/conversations", json={"title": "Test Conv", "model": TEST_MODEL})
    assert resp.status_code == 201
    return resp.json()


def _send(client: TestClient, conv_id: str, content: str = "Hello") -> list[dict]:
    resp = client.post(f"/conversations/{conv_id}/messages", json={"content": content})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    return _parse_sse(resp.content)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestConversationLifecycle:
    def test_create_and_list(self, client: TestClient, conversation: dict) -> None:
        resp = client.get("/conversations")
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == [conversation["id"]]
        assert conversation["message_count"] == 0

    def test_create_with_unknown_model_is_422(self, client: TestClient) -> None:
        resp = client.post("/conversations", json={"model": "Nope: x"})
        assert resp.status_code == 422

    def test_get_missing_is_404(self, client: TestClient) -> None:
        assert client.get("/conversations/missing").status_code == 404

    def test_patch_archives_and_renames(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        resp = client.patch(f"/conversations/{cid}", json={"title": "Renamed", "is_archived": True})

        assert resp.status_code == 200
        assert resp.json()["title"] == "Renamed"
        assert client.get("/conversations").json() == []
        assert [c["id"] for c in client.get("/conversations?archived=true").json()] == [cid]

    def test_delete(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        assert client.delete(f"/conversations/{cid}").status_code == 204
        assert client.get(f"/conversations/{cid}").status_code == 404

    def test_delete_closes_cached_session(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        client.get(f"/conversations/{cid}")
        session = client.app.state.sessions[cid]

        client.delete(f"/conversations/{cid}")

        assert session.closed
        assert session.on_change is None
        assert cid not in client.app.state.sessions

    def test_idle_sessions_are_evicted_beyond_cache_size(
        self, client: TestClient, monkeypatch
    ) -> None:
        monkeypatch.setattr("branchchat.config.settings.session_cache_size", 1)
        ids = [client.post("/conversations", json={"model": TEST_MODEL}).json()["id"] for _ in range(2)]

        for cid in ids:
            client.get(f"/conversations/{cid}")

        assert list(client.app.state.sessions) == [ids[1]]
        assert client.get(f"/conversations/{ids[0]}").status_code == 200


# ---------------------------------------------------------------------------
# Streaming mutators
# ---------------------------------------------------------------------------

class TestSendMessage:
    def test_streams_tokens_and_persists_reply(
        self, client: TestClient, conversation: dict
    ) -> None:
        events = _send(client, conversation["id"])

        kinds = [e["event"] for e in events]
        assert kinds[0] == "start"
        assert "".join(e["text"] for e in events if e["event"] == "token") == "Hi there"
        assert kinds[-1] == "done"
        assert {"event": "title", "text": "Greeting Chat"} in events

        detail = client.get(f"/conversations/{conversation['id']}").json()
        assert [m["content"] for m in detail["messages"]] == ["Hello", "Hi there"]
        assert detail["title"] == "Greeting Chat"

    def test_empty_message_is_422(self, client: TestClient, conversation: dict) -> None:
        resp = client.post(f"/conversations/{conversation['id']}/messages", json={"content": " "})
        assert resp.status_code == 422

    def test_unknown_model_is_422_before_streaming(
        self, client: TestClient, conversation: dict, provider: FakeProvider
    ) -> None:
        cid = conversation["id"]
        client.app.state.sessions.clear()
        client.app.state.db.execute(
            "UPDATE conversations SET model = 'Nope: x' WHERE id = ?", (cid,)
        )

        resp = client.post(f"/conversations/{cid}/messages", json={"content": "Hello"})

        assert resp.status_code == 422
        assert provider.requests == []

    def test_provider_error_ends_stream_cleanly(self, client, conversation, provider) -> None:
        provider.replies = [httpx.Response(500)]

        events = _send(client, conversation["id"])

        end = next(e for e in events if e["event"] == "end")
        assert end["state"] == "errored"
        detail = client.get(f"/conversations/{conversation['id']}").json()
        assert detail["messages"][-1]["content"].startswith("Error: API Error: 500")


class TestBranching:
    def test_regenerate_then_switch_back(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        _send(client, cid)
        first = client.get(f"/conversations/{cid}").json()["messages"][-1]

        resp = client.post(f"/conversations/{cid}/messages/{first['id']}/regenerate")
        assert resp.status_code == 200

        detail = client.get(f"/conversations/{cid}").json()
        latest = detail["messages"][-1]
        assert latest["content"] == "Hello again"
        assert latest["branch"] == {
            "total": 2, "current_index": 1, "has_previous": True, "has_next": False,
            "hidden_messages": 1,
        }

        resp = client.post(
            f"/conversations/{cid}/messages/{latest['id']}/branch", json={"index": 0}
        )
        assert resp.status_code == 200
        assert resp.json()["flash"] == first["id"]
        assert resp.json()["messages"][-1]["content"] == "Hi there"

    def test_edit_creates_new_top_level_branch(
        self, client: TestClient, conversation: dict
    ) -> None:
        cid = conversation["id"]
        _send(client, cid)
        user = client.get(f"/conversations/{cid}").json()["messages"][0]

        resp = client.post(
            f"/conversations/{cid}/messages/{user['id']}/edit", json={"content": "Hi"}
        )
        assert resp.status_code == 200

        tree = client.get(f"/conversations/{cid}/tree").json()
        root = next(n for n in tree["nodes"] if n["id"] == tree["root_node_id"])
        assert len(root["child_ids"]) == 2
        assert tree["active_branches"][tree["root_node_id"]] == 1

        messages = client.get(f"/conversations/{cid}").json()["messages"]
        assert [m["content"] for m in messages] == ["Hi", "Hello again"]

    def test_switch_out_of_range_is_422(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        _send(client, cid)
        reply = client.get(f"/conversations/{cid}").json()["messages"][-1]

        resp = client.post(f"/conversations/{cid}/messages/{reply['id']}/branch", json={"index": 3})
        assert resp.status_code == 422

    def test_unknown_message_is_404(self, client: TestClient, conversation: dict) -> None:
        resp = client.post(f"/conversations/{conversation['id']}/messages/nope/regenerate")
        assert resp.status_code == 404

    def test_cancel_when_idle(self, client: TestClient, conversation: dict) -> None:
        resp = client.post(f"/conversations/{conversation['id']}/cancel")
        assert resp.json() == {"cancelled": False}


# ---------------------------------------------------------------------------
# Export / import and settings
# ---------------------------------------------------------------------------

class TestExportImport:
    def test_round_trip(self, client: TestClient, conversation: dict) -> None:
        cid = conversation["id"]
        _send(client, cid)
        exported = client.get("/conversations/export").json()

        client.delete(f"/conversations/{cid}")
        resp = client.post("/conversations/import", json=exported)

        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == [cid]
        messages = client.get(f"/conversations/{cid}").json()["messages"]
        assert [m["content"] for m in messages] == ["Hello", "Hi there"]

    def test_corrupt_import_is_422(self, client: TestClient) -> None:
        root = {"id": "r", "role": "root", "child_ids": ["ghost"]}
        payload = {"conversations": [["c1", {"id": "c1", "nodes": [["r", root]], "root_node_id": "r"}]]}

        resp = client.post("/conversations/import", json=payload)

        assert resp.status_code == 422
        assert client.get("/conversations/c1").status_code == 404


class TestSettings:
    def test_add_provider_extends_models(self, client: TestClient) -> None:
        resp = client.post(
            "/settings/providers",
            json={"name": "Local", "base_url": "http://localhost:11434/v1",
                  "api_key": "secret", "available_models": ["llama3"]},
        )
        assert resp.status_code == 201
        assert resp.json()["has_api_key"] is True
        assert "secret" not in resp.text

        models = client.get("/settings/models").json()
        assert "Local: llama3" in models

        assert client.delete("/settings/providers/Local").status_code == 204
        assert "Local: llama3" not in client.get("/settings/models").json()

    def test_prompt_is_applied_to_requests(
        self, client: TestClient, provider: FakeProvider
    ) -> None:
        prompt = client.post(
            "/settings/prompts", json={"title": "Terse", "content": "One sentence."}
        ).json()
        conv = client.post(
            "/conversations", json={"model": TEST_MODEL, "system_prompt_id": prompt["id"]}
        ).json()

        _send(client, conv["id"])

        assert provider.bodies[0]["messages"][0] == {"role": "system", "content": "One sentence."}
