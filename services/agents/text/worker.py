from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from services.agents.text.adapters import ChatModelClient, build_adapters
from services.scene.detector import END_MARKER, START_MARKER

LLM_PROVIDER_ENV = "SCENECHAT_LLM_PROVIDER"
LLM_MODEL_ENV = "SCENECHAT_LLM_MODEL"
LLM_TIMEOUT_ENV = "SCENECHAT_LLM_TIMEOUT_S"
LLM_TEMPERATURE_ENV = "SCENECHAT_LLM_TEMPERATURE"
LLM_MAX_TOKENS_ENV = "SCENECHAT_LLM_MAX_TOKENS"
LLM_SYSTEM_PROMPT_ENV = "SCENECHAT_LLM_SYSTEM_PROMPT"
HISTORY_MAX_CHARS_ENV = "SCENECHAT_HISTORY_MAX_CHARS"

VALID_PROVIDERS = ("heuristic", "ollama", "openai-compatible")
VALID_ROLES = {"user", "assistant"}


@dataclass
class LLMEngineError(RuntimeError):
    provider: str
    message: str

    def __str__(self) -> str:
        return self.message


def selected_provider() -> str:
    return os.getenv(LLM_PROVIDER_ENV, "heuristic").strip().lower() or "heuristic"


def timeout_s() -> float:
    raw = os.getenv(LLM_TIMEOUT_ENV, "60").strip()
    try:
        value = float(raw)
    except ValueError:
        return 60.0
    return min(max(value, 0.5), 300.0)


def _temperature() -> float:
    raw = os.getenv(LLM_TEMPERATURE_ENV, "0.7").strip()
    try:
        value = float(raw)
    except ValueError:
        return 0.7
    return min(max(value, 0.0), 2.0)


def _max_tokens() -> int:
    raw = os.getenv(LLM_MAX_TOKENS_ENV, "2048").strip()
    try:
        value = int(raw)
    except ValueError:
        return 2048
    return max(64, min(32_768, value))


def _history_max_chars() -> int:
    raw = os.getenv(HISTORY_MAX_CHARS_ENV, "16000").strip()
    try:
        value = int(raw)
    except ValueError:
        return 16_000
    return max(1_000, min(200_000, value))


def completion_options() -> dict[str, Any]:
    return {"temperature": _temperature(), "max_tokens": _max_tokens()}


def select_chat_model() -> ChatModelClient:
    provider = selected_provider()
    adapters = build_adapters(timeout_s=timeout_s())
    selected = adapters.get(provider)
    if selected is None:
        raise LLMEngineError(provider=provider, message=f"Unsupported LLM provider: {provider}")
    return selected


def system_prompt() -> str:
    configured = os.getenv(LLM_SYSTEM_PROMPT_ENV, "").strip()
    if configured:
        return configured
    return (
        "You are an assistant that builds 2D/3D scenes from a conversation. "
        "Answer briefly in plain text, then describe the complete current scene as a JSON array.\n"
        f"Always start the JSON with the line {START_MARKER} and end it with the line {END_MARKER}.\n"
        "Use this shape for each object:\n"
        f"{START_MARKER}\n"
        "[\n"
        "  {\n"
        '    "id": "unique-id",\n'
        '    "type": "box" | "sphere" | "square" | "circle",\n'
        '    "color": "#rrggbb",\n'
        '    "position": {"x": 0, "y": 0, "z": 0},\n'
        '    "rotation": {"x": 0, "y": 0, "z": 0},\n'
        '    "scale": {"x": 1, "y": 1, "z": 1}\n'
        "  }\n"
        "]\n"
        f"{END_MARKER}\n"
        "rotation and scale are optional. Set z to 0 for 2D objects. "
        "Always send every object of the scene, not only the changed ones."
    )


def _clean_history(history: list[dict[str, Any]]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for row in history:
        role = str(row.get("role", "")).strip().lower()
        content = str(row.get("content", ""))
        if role not in VALID_ROLES or not content.strip():
            continue
        rows.append({"role": role, "content": content})
    return rows


def trim_history(history: list[dict[str, str]], max_chars: int) -> list[dict[str, str]]:
    kept: list[dict[str, str]] = []
    used = 0
    for row in reversed(history):
        size = len(row["content"])
        if used + size > max_chars:
            break
        kept.append(row)
        used += size
    kept.reverse()
    while kept and kept[0]["role"] != "user":
        kept.pop(0)
    return kept


def build_prompt_messages(history: list[dict[str, Any]], new_message: str) -> list[dict[str, str]]:
    budget = max(0, _history_max_chars() - len(new_message))
    trimmed = trim_history(_clean_history(history), budget)
    return [
        {"role": "system", "content": system_prompt()},
        *trimmed,
        {"role": "user", "content": new_message},
    ]


def llm_capabilities(probe: bool = False) -> dict[str, Any]:
    selected = selected_provider()
    adapters = build_adapters(timeout_s=timeout_s())

    providers: dict[str, dict[str, Any]] = {}
    for provider in VALID_PROVIDERS:
        try:
            capabilities = adapters[provider].capabilities(probe=probe)
        except Exception as exc:  # noqa: BLE001
            capabilities = {"ready": False, "error": str(exc)}
        providers[provider] = capabilities

    selected_model = str(providers.get(selected, {}).get("model", "")).strip()
    return {
        "selected_provider": selected,
        "active_provider_ready": bool(providers.get(selected, {}).get("ready")),
        "timeout_s": timeout_s(),
        "model": selected_model or os.getenv(LLM_MODEL_ENV, "").strip(),
        "providers": providers,
    }


__all__ = [
    "LLMEngineError",
    "build_prompt_messages",
    "completion_options",
    "llm_capabilities",
    "select_chat_model",
    "selected_provider",
    "system_prompt",
    "timeout_s",
    "trim_history",
]
