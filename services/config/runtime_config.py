from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_PATH = PROJECT_ROOT / ".env"

SECRET_KEYS = {
    "SCENECHAT_OPENAI_API_KEY",
}

EDITABLE_KEYS = {
    "SCENECHAT_LLM_PROVIDER",
    "SCENECHAT_LLM_MODEL",
    "SCENECHAT_LLM_TIMEOUT_S",
    "SCENECHAT_LLM_TEMPERATURE",
    "SCENECHAT_LLM_MAX_TOKENS",
    "SCENECHAT_LLM_SYSTEM_PROMPT",
    "SCENECHAT_OLLAMA_URL",
    "SCENECHAT_OPENAI_BASE_URL",
    "SCENECHAT_OPENAI_API_KEY",
    "SCENECHAT_HISTORY_MAX_CHARS",
    "SCENECHAT_DETECTION_WINDOW_CHARS",
    "SCENECHAT_WIRE_VARIANT",
    "SCENECHAT_DB_PATH",
}

PROVIDER_DEFAULTS = {
    "SCENECHAT_OLLAMA_URL": "http://127.0.0.1:11434",
    "SCENECHAT_OPENAI_BASE_URL": "http://127.0.0.1:8002/v1",
}

VALID_LLM_PROVIDERS = {"heuristic", "ollama", "openai-compatible"}
VALID_WIRE_VARIANTS = {"typed", "legacy"}
LOCAL_HOSTS = {"127.0.0.1", "localhost", "0.0.0.0", "::1"}


@dataclass
class ConfigurationError(RuntimeError):
    errors: list[str]

    def __str__(self) -> str:
        return "; ".join(self.errors) or "invalid configuration"


def _api_key_required(base_url: str) -> bool:
    parsed = urlparse(base_url)
    host = (parsed.hostname or "").strip().lower()
    if not host:
        return False
    return host not in LOCAL_HOSTS


def parse_env(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def masked_state(values: dict[str, str]) -> dict[str, str]:
    masked: dict[str, str] = {}
    for key, value in values.items():
        if key in SECRET_KEYS and value:
            masked[key] = "********"
        else:
            masked[key] = value
    return masked


def current_values(env_path: Path | None = None) -> dict[str, str]:
    """Editable settings from the ``.env`` file overlaid with the process env."""
    values = {key: value for key, value in parse_env(env_path or ENV_PATH).items() if key in EDITABLE_KEYS}
    for key in EDITABLE_KEYS:
        if key in os.environ:
            values[key] = os.getenv(key, "")
    return values


def apply_setup_values(values: dict[str, str]) -> None:
    for key, value in values.items():
        if key in EDITABLE_KEYS:
            os.environ[key] = value


def apply_env_file(env_path: Path | None = None) -> None:
    apply_setup_values(current_values(env_path))


def validate_setup(values: dict[str, str]) -> dict[str, Any]:
    errors: list[str] = []
    warnings: list[str] = []

    provider = values.get("SCENECHAT_LLM_PROVIDER", "").strip().lower() or "heuristic"
    if provider not in VALID_LLM_PROVIDERS:
        errors.append(f"Unsupported LLM provider: {provider}")

    if provider == "ollama":
        url = values.get("SCENECHAT_OLLAMA_URL", PROVIDER_DEFAULTS["SCENECHAT_OLLAMA_URL"]).strip()
        if not url:
            errors.append("SCENECHAT_OLLAMA_URL is required for ollama provider")
    if provider == "openai-compatible":
        base_url = values.get("SCENECHAT_OPENAI_BASE_URL", PROVIDER_DEFAULTS["SCENECHAT_OPENAI_BASE_URL"]).strip()
        if not base_url:
            errors.append("SCENECHAT_OPENAI_BASE_URL is required for openai-compatible provider")
        elif _api_key_required(base_url) and not values.get("SCENECHAT_OPENAI_API_KEY", "").strip():
            errors.append("SCENECHAT_OPENAI_API_KEY is required for remote openai-compatible provider")
        if not values.get("SCENECHAT_LLM_MODEL", "").strip():
            warnings.append("SCENECHAT_LLM_MODEL is empty; the provider default model will be used")

    variant = values.get("SCENECHAT_WIRE_VARIANT", "").strip().lower() or "typed"
    if variant not in VALID_WIRE_VARIANTS:
        errors.append(f"Unsupported wire variant: {variant}")

    return {"ok": len(errors) == 0, "errors": errors, "warnings": warnings}


def require_valid_setup(values: dict[str, str] | None = None) -> None:
    result = validate_setup(current_values() if values is None else values)
    if not result["ok"]:
        raise ConfigurationError(errors=list(result["errors"]))


__all__ = [
    "ENV_PATH",
    "EDITABLE_KEYS",
    "ConfigurationError",
    "apply_env_file",
    "apply_setup_values",
    "current_values",
    "masked_state",
    "parse_env",
    "require_valid_setup",
    "validate_setup",
]
