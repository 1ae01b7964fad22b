"""End-to-end HTTP tests: app factory, agent runtime and stream delivery over SSE."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tether.app import create_app
from tether.client.assembler import parse_stream_line
from tether.config import AIConfig, AppConfig, AppSettings, StreamSettings
from tether.services import storage
from tether.tools import ToolRegistry


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        ai=AIConfig(base_url="http://localhost:9/v1", api_key="test-key", models=["gpt-4o-mini", "gpt-4o"]),
        app=AppSettings(data_dir=tmp_path),
        stream=StreamSettings(grace_period=0.05),
    )


def _chunks(text: str) -> list[dict]:
    chunks = []
    for line in text.splitlines():
        parsed = parse_stream_line(line)
        if isinstance(parsed, dict) and parsed.get("type") != "stream-done":
            chunks.append(parsed)
    return chunks


def _user(text: str) -> dict:
    return {"role": "user", "parts": [{"type": "text", "text": text}]}


@pytest.fixture()
def completion(make_completion):
    return make_completion({"text": "Hello!"}, {"text": "Hello again!"})


@pytest.fixture()
def client(tmp_path: Path, completion):
    app = create_app(_config(tmp_path), completion_service=completion, tools=ToolRegistry())
    with TestClient(app) as c:
        yield c


class TestNewChat:
    def test_streams_reply(self, client: TestClient, completion) -> None:
        resp = client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1", "model": "gpt-4o"})
        assert resp.status_code == 200
        assert resp.headers["x-run-id"].startswith("run_")
        chunks = _chunks(resp.text)
        assert [c["type"] for c in chunks] == [
            "start",
            "start-step",
            "text-start",
            "text-delta",
            "text-end",
            "finish-step",
            "finish",
        ]
        assert chunks[3]["delta"] == "Hello!"
        assert completion.models == ["gpt-4o"]

    def test_unknown_model_falls_back_to_default(self, client: TestClient, completion) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1", "model": "nope"})
        assert completion.models == ["gpt-4o-mini"]

    def test_history_persisted(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        detail = client.get("/api/chats/c1").json()
        assert detail["streamId"] is None
        assert [(m["index"], m["role"]) for m in detail["messages"]] == [(0, "user"), (1, "assistant")]
        assert detail["messages"][1]["parts"] == [{"type": "text", "text": "Hello!"}]

    def test_existing_chat_rejected(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        resp = client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        assert resp.status_code == 400


class TestFollowUp:
    def test_follow_up_streams_next_turn(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        resp = client.post("/api/chat", json={"message": _user("Again"), "followUp": {"chatId": "c1"}})
        assert resp.status_code == 200
        deltas = [c["delta"] for c in _chunks(resp.text) if c["type"] == "text-delta"]
        assert deltas == ["Hello again!"]
        detail = client.get("/api/chats/c1").json()
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant", "user", "assistant"]

    def test_unknown_chat(self, client: TestClient) -> None:
        resp = client.post("/api/chat", json={"message": _user("Hi"), "followUp": {"chatId": "ghost"}})
        assert resp.status_code == 404

    def test_interrupt_before_stream_sends_nothing(self, client: TestClient, completion) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        resp = client.post("/api/chat/c1/interrupt", json={"chatId": "c1", "timestamp": 10**15})
        assert resp.status_code == 200

        resp = client.post("/api/chat", json={"message": _user("Again"), "followUp": {"chatId": "c1"}})
        assert resp.status_code == 200
        assert _chunks(resp.text) == []
        assert len(completion.calls) == 1
        detail = client.get("/api/chats/c1").json()
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant", "user"]


class TestBadRequests:
    @pytest.mark.parametrize(
        "body",
        [
            {"message": _user("Hi")},
            {"message": _user("Hi"), "newChatId": "has spaces"},
            {"message": {"role": "system", "parts": []}, "newChatId": "c1"},
            {"newChatId": "c1"},
            {"message": _user("Hi"), "followUp": {"chatId": "c1", "streamStartIndex": -1}},
        ],
    )
    def test_rejected(self, client: TestClient, body: dict) -> None:
        assert client.post("/api/chat", json=body).status_code == 400

    def test_invalid_json(self, client: TestClient) -> None:
        resp = client.post("/api/chat", content=b"{nope", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_unexpected_error_is_500_with_message(self, client: TestClient) -> None:
        with patch.object(client.app.state.runtime, "start", side_effect=RuntimeError("runtime exploded")):
            resp = client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        assert resp.status_code == 500
        assert resp.text == "runtime exploded"


class TestReattach:
    def test_no_active_stream(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        assert client.get("/api/chat/c1").status_code == 404
        assert client.get("/api/chat/ghost").status_code == 404

    def test_invalid_params(self, client: TestClient) -> None:
        assert client.get("/api/chat/bad.id").status_code == 400
        assert client.get("/api/chat/c1?startIndex=-1").status_code == 400
        assert client.get("/api/chat/c1?startIndex=abc").status_code == 400
        assert client.get("/api/chat/c1?resumeBy=bytes").status_code == 400

    def test_replays_from_offset(self, client: TestClient) -> None:
        runtime = client.app.state.runtime
        with patch.object(runtime, "next_timestamp", return_value=1000):
            first = client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        full = _chunks(first.text)

        # Point the chat back at the retained stream as if the turn were still running
        storage.set_stream_id(client.app.state.db, "c1", "1000")
        resp = client.get("/api/chat/c1?startIndex=2")
        assert resp.status_code == 200
        assert _chunks(resp.text) == full[2:]

        resp = client.get("/api/chat/c1?startIndex=1&resumeBy=messages")
        assert _chunks(resp.text) == []


class TestInterrupt:
    def test_records_signal(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        resp = client.post("/api/chat/c1/interrupt", json={"chatId": "c1"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "interrupted"
        assert storage.get_interrupt(client.app.state.db, "c1") == resp.json()["timestamp"]

    def test_empty_body_allowed(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        assert client.post("/api/chat/c1/interrupt").status_code == 200

    def test_mismatched_chat_id(self, client: TestClient) -> None:
        client.post("/api/chat", json={"message": _user("Hi"), "newChatId": "c1"})
        assert client.post("/api/chat/c1/interrupt", json={"chatId": "c2"}).status_code == 400

    def test_unknown_chat(self, client: TestClient) -> None:
        assert client.post("/api/chat/ghost/interrupt", json={}).status_code == 404


class TestChatsApi:
    def test_missing_chat(self, client: TestClient) -> None:
        assert client.get("/api/chats/ghost").status_code == 404
        assert client.get("/api/chats/bad.id").status_code == 400

    def test_models(self, client: TestClient) -> None:
        assert client.get("/api/models").json() == {"default": "gpt-4o-mini", "models": ["gpt-4o-mini", "gpt-4o"]}
