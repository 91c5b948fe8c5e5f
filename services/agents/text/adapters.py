from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

import httpx

from services.scene.detector import END_MARKER, START_MARKER
from services.scene.fallback import generate_default_scene
from services.scene.objects import snapshot_to_payload

LLM_MODEL_ENV = "SCENECHAT_LLM_MODEL"
OLLAMA_URL_ENV = "SCENECHAT_OLLAMA_URL"
OPENAI_BASE_URL_ENV = "SCENECHAT_OPENAI_BASE_URL"
OPENAI_API_KEY_ENV = "SCENECHAT_OPENAI_API_KEY"

WORD_CHUNK_RE = re.compile(r"\S+\s*|\s+")


@dataclass
class AdapterError(RuntimeError):
    provider: str
    message: str

    def __str__(self) -> str:
        return self.message


class ChatModelClient(Protocol):
    name: str

    def stream_completion(
        self,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[Any]:
        ...

    def capabilities(self, probe: bool = False) -> dict[str, Any]:
        ...


def extract_chunk_text(chunk: Any) -> str:
    """Pull the text out of one upstream chunk.

    Providers hand out plain strings, lists of content parts whose first part
    carries ``text``, dicts with ``text``/``content``, or objects exposing a
    ``text`` attribute or method.
    """
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, list):
        if not chunk:
            return ""
        return extract_chunk_text(chunk[0])
    if isinstance(chunk, dict):
        if isinstance(chunk.get("text"), str):
            return chunk["text"]
        content = chunk.get("content")
        if isinstance(content, (str, list)):
            return extract_chunk_text(content)
        return ""
    text = getattr(chunk, "text", None)
    if callable(text):
        text = text()
    return text if isinstance(text, str) else ""


def _model(default: str = "") -> str:
    configured = os.getenv(LLM_MODEL_ENV, "").strip()
    return configured or default


def _last_user_content(messages: list[dict[str, str]]) -> str:
    for row in reversed(messages):
        if row.get("role") == "user":
            return str(row.get("content", ""))
    return ""


def _delta_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    return extract_chunk_text(delta.get("content"))


@dataclass
class HeuristicAdapter:
    """Offline provider that answers every prompt with a keyword-built scene."""

    name: str = "heuristic"
    chunk_delay_s: float = 0.0

    def reply_text(self, prompt: str) -> str:
        scene = snapshot_to_payload(generate_default_scene(prompt))
        return (
            "Here is a scene based on your request.\n"
            f"{START_MARKER}\n{json.dumps(scene, indent=2)}\n{END_MARKER}\n"
            "Tell me what to change next."
        )

    async def stream_completion(
        self,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        reply = self.reply_text(_last_user_content(messages))
        for piece in WORD_CHUNK_RE.findall(reply):
            await asyncio.sleep(self.chunk_delay_s)
            yield piece

    def capabilities(self, probe: bool = False) -> dict[str, Any]:
        return {"ready": True, "note": "Always available built-in fallback"}


@dataclass
class OllamaAdapter:
    timeout_s: float
    name: str = "ollama"

    def _url(self) -> str:
        return os.getenv(OLLAMA_URL_ENV, "http://127.0.0.1:11434").rstrip("/")

    def _model(self) -> str:
        return _model("qwen2.5:7b-instruct")

    async def stream_completion(
        self,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        model = self._model()
        if not model:
            raise AdapterError(provider=self.name, message=f"Missing {LLM_MODEL_ENV} for ollama provider")
        opts = options or {}
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "options": {"temperature": opts.get("temperature", 0.7)},
        }
        if opts.get("max_tokens"):
            payload["options"]["num_predict"] = int(opts["max_tokens"])
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                async with client.stream("POST", f"{self._url()}/api/chat", json=payload) as res:
                    res.raise_for_status()
                    async for line in res.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            row = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if row.get("error"):
                            raise AdapterError(provider=self.name, message=f"Ollama error: {row['error']}")
                        message = row.get("message")
                        text = extract_chunk_text(message.get("content")) if isinstance(message, dict) else ""
                        if text:
                            yield text
                        if row.get("done"):
                            break
        except AdapterError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise AdapterError(provider=self.name, message=f"Ollama request failed: {exc}") from exc

    def capabilities(self, probe: bool = False) -> dict[str, Any]:
        model = self._model()
        state = {
            "ready": bool(model),
            "base_url": self._url(),
            "model": model,
            "reachable": None,
            "model_available": None,
            "error": "",
        }
        if not probe:
            return state
        try:
            res = httpx.get(f"{self._url()}/api/tags", timeout=min(self.timeout_s, 5.0))
            res.raise_for_status()
            rows = res.json().get("models", [])
            available = isinstance(rows, list) and any(
                isinstance(row, dict) and str(row.get("name", "")).strip() == model for row in rows
            )
            state["reachable"] = True
            state["model_available"] = available
            state["ready"] = bool(model) and available
            state["error"] = "" if available else f"model '{model}' not found in ollama list"
        except Exception as exc:  # noqa: BLE001
            state["ready"] = False
            state["reachable"] = False
            state["model_available"] = False
            state["error"] = str(exc)
        return state


@dataclass
class OpenAICompatibleAdapter:
    timeout_s: float
    name: str = "openai-compatible"

    def _base_url(self) -> str:
        return os.getenv(OPENAI_BASE_URL_ENV, "http://127.0.0.1:8002/v1").rstrip("/")

    def _api_key(self) -> str:
        return os.getenv(OPENAI_API_KEY_ENV, "").strip()

    def _model(self) -> str:
        return _model("Qwen/Qwen2.5-7B-Instruct")

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"content-type": "application/json"}
        api_key = self._api_key()
        if api_key:
            headers["authorization"] = f"Bearer {api_key}"
        return headers

    async def stream_completion(
        self,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        model = self._model()
        if not model:
            raise AdapterError(provider=self.name, message=f"Missing {LLM_MODEL_ENV} for {self.name} provider")
        opts = options or {}
        payload: dict[str, Any] = {
            "model": model,
            "temperature": opts.get("temperature", 0.7),
            "stream": True,
            "messages": messages,
        }
        if opts.get("max_tokens"):
            payload["max_tokens"] = int(opts["max_tokens"])
        url = f"{self._base_url()}/chat/completions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as res:
                    res.raise_for_status()
                    async for line in res.aiter_lines():
                        row = line.strip()
                        if not row.startswith("data:"):
                            continue
                        data = row[len("data:") :].strip()
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(event, dict) and event.get("error"):
                            raise AdapterError(provider=self.name, message=f"Upstream error: {event['error']}")
                        text = _delta_text(event) if isinstance(event, dict) else ""
                        if text:
                            yield text
        except AdapterError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise AdapterError(provider=self.name, message=f"OpenAI-compatible request failed: {exc}") from exc

    def capabilities(self, probe: bool = False) -> dict[str, Any]:
        model = self._model()
        state = {
            "ready": bool(model),
            "base_url": self._base_url(),
            "model": model,
            "api_key_set": bool(self._api_key()),
            "reachable": None,
            "model_available": None,
            "error": "",
        }
        if not probe:
            return state
        try:
            res = httpx.get(f"{self._base_url()}/models", headers=self._headers(), timeout=min(self.timeout_s, 5.0))
            res.raise_for_status()
            rows = res.json().get("data", [])
            available = isinstance(rows, list) and any(
                isinstance(row, dict) and str(row.get("id", "")).strip() == model for row in rows
            )
            state["ready"] = bool(model) and available
            state["reachable"] = True
            state["model_available"] = available
            state["error"] = "" if available else f"model '{model}' not found in /models list"
        except Exception as exc:  # noqa: BLE001
            state["ready"] = False
            state["reachable"] = False
            state["model_available"] = False
            state["error"] = str(exc)
        return state


def build_adapters(timeout_s: float) -> dict[str, ChatModelClient]:
    return {
        "heuristic": HeuristicAdapter(),
        "ollama": OllamaAdapter(timeout_s=timeout_s),
        "openai-compatible": OpenAICompatibleAdapter(timeout_s=timeout_s),
    }


__all__ = [
    "AdapterError",
    "ChatModelClient",
    "HeuristicAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "build_adapters",
    "extract_chunk_text",
]
