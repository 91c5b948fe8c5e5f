from services.agents.text.adapters import (
    AdapterError,
    ChatModelClient,
    HeuristicAdapter,
    OllamaAdapter,
    OpenAICompatibleAdapter,
    build_adapters,
    extract_chunk_text,
)
from services.agents.text.worker import LLMEngineError, build_prompt_messages, select_chat_model

__all__ = [
    "AdapterError",
    "ChatModelClient",
    "HeuristicAdapter",
    "LLMEngineError",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "build_adapters",
    "build_prompt_messages",
    "extract_chunk_text",
    "select_chat_model",
]
