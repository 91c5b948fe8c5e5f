from __future__ import annotations

import json
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from services.agents.text import adapters
from services.config import runtime_config
from services.gateway.app.main import create_app
from services.protocol.sse import SSEDecoder
from services.store.conversations import ConversationStore

SCENE_CHUNKS = [
    "Here is ",
    "SCENE_JSON_START",
    '[{"id":"a","type":"sphere","color":"#ff0000","position":[0,1,0]}]',
    "SCENE_JSON_END",
    " done.",
]


class ScriptedModel:
    name = "scripted"

    def __init__(self, chunks) -> None:
        self.chunks = list(chunks)
        self.prompts: list[list[dict[str, str]]] = []

    async def stream_completion(self, messages, options=None):
        self.prompts.append(messages)
        for chunk in self.chunks:
            yield chunk

    def capabilities(self, probe: bool = False) -> dict:
        return {"ready": True}


@pytest.fixture(autouse=True)
def _isolated_setup(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(runtime_config, "ENV_PATH", tmp_path / ".env")
    for key in ("SCENECHAT_LLM_PROVIDER", "SCENECHAT_WIRE_VARIANT", "SCENECHAT_OPENAI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)


def _client(tmp_path, model=None) -> tuple[TestClient, ConversationStore]:
    store = ConversationStore(db_path=str(tmp_path / "chat.db"))
    return TestClient(create_app(store=store, model=model)), store


def test_chat_streams_tokens_and_one_scene(tmp_path) -> None:
    model = ScriptedModel(SCENE_CHUNKS)
    c, store = _client(tmp_path, model)

    res = c.post("/v1/chat", json={"messages": [{"role": "user", "content": "a red ball"}]})

    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.headers["cache-control"] == "no-cache, no-transform"
    assert res.headers["x-accel-buffering"] == "no"

    messages = SSEDecoder("typed").feed(res.content)
    assert messages[0].type == "connected"
    assert "".join(m.content for m in messages if m.type == "token") == "".join(SCENE_CHUNKS)
    scenes = [m for m in messages if m.type == "scene_data"]
    assert len(scenes) == 1
    assert [obj.id for obj in scenes[0].objects] == ["a", "ground"]

    done = messages[-1]
    assert done.type == "done"
    rows = store.list_messages(done.conversation_id)
    assert [row["role"] for row in rows] == ["user", "assistant"]
    assert model.prompts[0][-1] == {"role": "user", "content": "a red ball"}


def test_chat_accepts_camel_case_fields_and_continues_a_conversation(tmp_path) -> None:
    model = ScriptedModel(["ok"])
    c, store = _client(tmp_path, model)
    conversation_id = store.create_conversation("existing")

    res = c.post(
        "/v1/chat",
        json={
            "messages": [
                {"role": "user", "content": "make a box"},
                {"role": "assistant", "content": "done"},
                {"role": "user", "content": "paint it red"},
            ],
            "newMessage": "paint it red",
            "chatId": conversation_id,
        },
    )

    assert res.status_code == 200
    done = SSEDecoder("typed").feed(res.content)[-1]
    assert done.conversation_id == conversation_id
    # the new message is not repeated from the history
    assert [row["content"] for row in model.prompts[0][1:]] == ["make a box", "done", "paint it red"]


def test_legacy_wire_variant(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SCENECHAT_WIRE_VARIANT", "legacy")
    c, _ = _client(tmp_path, ScriptedModel(SCENE_CHUNKS))

    res = c.post("/v1/chat", json={"messages": [{"role": "user", "content": "a red ball"}]})

    assert res.status_code == 200
    assert "event: json_update\n" in res.text
    assert "event: completion\n" in res.text
    messages = SSEDecoder("legacy").feed(res.content)
    assert [m.type for m in messages].count("scene_data") == 1
    assert messages[-1].type == "done"


def test_empty_messages_is_a_plain_400(tmp_path) -> None:
    c, _ = _client(tmp_path, ScriptedModel(["never"]))

    res = c.post("/v1/chat", json={"messages": []})

    assert res.status_code == 400
    assert res.headers["content-type"].startswith("application/json")
    assert "x-accel-buffering" not in res.headers
    assert res.json()["error"] == "messages_required"


def test_blank_new_message_is_rejected(tmp_path) -> None:
    c, _ = _client(tmp_path, ScriptedModel(["never"]))
    res = c.post("/v1/chat", json={"messages": [{"role": "user", "content": "   "}]})
    assert res.status_code == 400


def test_configuration_error_is_a_500_before_streaming(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SCENECHAT_LLM_PROVIDER", "telepathy")
    c, _ = _client(tmp_path)

    res = c.post("/v1/chat", json={"messages": []})

    assert res.status_code == 500
    assert res.json()["error"] == "configuration_error"
    assert "telepathy" in res.json()["message"]


def test_default_heuristic_provider_streams_end_to_end(tmp_path) -> None:
    c, _ = _client(tmp_path)

    res = c.post("/v1/chat", json={"messages": [{"role": "user", "content": "a red sphere on green ground"}]})

    assert res.status_code == 200
    messages = SSEDecoder("typed").feed(res.content)
    scenes = [m for m in messages if m.type == "scene_data"]
    assert len(scenes) == 1
    assert scenes[0].objects[0].type == "sphere"
    assert messages[-1].type == "done"


def test_chat_uses_the_provider_validated_from_the_env_file(tmp_path, monkeypatch) -> None:
    runtime_config.ENV_PATH.write_text(
        "SCENECHAT_LLM_PROVIDER=ollama\n"
        "SCENECHAT_OLLAMA_URL=http://ollama.test\n"
        "SCENECHAT_LLM_MODEL=qwen-test\n",
        encoding="utf-8",
    )
    for key in ("SCENECHAT_LLM_PROVIDER", "SCENECHAT_OLLAMA_URL", "SCENECHAT_LLM_MODEL"):
        # registered so teardown removes the value the gateway publishes
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)

    lines = [
        {"message": {"role": "assistant", "content": "Hi from ollama"}, "done": False},
        {"message": {"role": "assistant", "content": ""}, "done": True},
    ]
    body = "\n".join(json.dumps(row) for row in lines) + "\n"
    seen: list[httpx.Request] = []
    original_async_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=body)

    def factory(*args, **kwargs):  # noqa: ANN002, ANN003
        kwargs["transport"] = httpx.MockTransport(handler)
        return original_async_client(*args, **kwargs)

    monkeypatch.setattr(adapters.httpx, "AsyncClient", factory)
    c, _ = _client(tmp_path)

    res = c.post("/v1/chat", json={"messages": [{"role": "user", "content": "hello"}]})

    assert res.status_code == 200
    messages = SSEDecoder("typed").feed(res.content)
    assert "".join(m.content for m in messages if m.type == "token") == "Hi from ollama"
    assert messages[-1].type == "done"
    assert str(seen[0].url) == "http://ollama.test/api/chat"
    assert json.loads(seen[0].content)["model"] == "qwen-test"
    assert os.environ["SCENECHAT_LLM_PROVIDER"] == "ollama"
