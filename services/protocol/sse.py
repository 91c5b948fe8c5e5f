"""Server-sent-events framing for chat streams.

Two wire variants exist and a deployment speaks exactly one of them:

``typed`` (default)
    ``data: {"type": "token", "content": "..."}`` for every message; the
    ``type`` field tells token, scene_data, connected, done and error apart.

``legacy``
    ``data: <text>`` for tokens and ``event: json_update`` + ``data: [...]``
    for scenes, as the first browser client expects.  Connected, done and
    error use ``event: connected|completion|error`` with a JSON body.

Segments are always terminated by a blank line.
"""

from __future__ import annotations

import abc
import codecs
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from services.protocol.schema_validation import STREAM_MESSAGE_SCHEMA, ProtocolValidator
from services.scene.normalizer import restore_snapshot
from services.scene.objects import SceneObject, snapshot_to_payload

logger = logging.getLogger("scenechat.protocol.sse")

WIRE_VARIANT_ENV = "SCENECHAT_WIRE_VARIANT"
VALID_WIRE_VARIANTS = {"typed", "legacy"}
DATA_PREFIX = "data: "
EVENT_PREFIX = "event: "
DELIMITER = "\n\n"

MESSAGE_TYPES = ("connected", "token", "scene_data", "done", "error")


@dataclass(frozen=True)
class StreamMessage:
    type: str
    content: str = ""
    objects: tuple[SceneObject, ...] = ()
    message: str = ""
    conversation_id: str | None = None
    message_id: str | None = None

    @classmethod
    def connected(cls) -> StreamMessage:
        return cls(type="connected")

    @classmethod
    def token(cls, text: str) -> StreamMessage:
        return cls(type="token", content=text)

    @classmethod
    def scene(cls, objects: tuple[SceneObject, ...]) -> StreamMessage:
        return cls(type="scene_data", objects=tuple(objects))

    @classmethod
    def done(cls, conversation_id: str | None = None, message_id: str | None = None) -> StreamMessage:
        return cls(type="done", conversation_id=conversation_id, message_id=message_id)

    @classmethod
    def error(cls, message: str) -> StreamMessage:
        return cls(type="error", message=message)

    @property
    def terminal(self) -> bool:
        return self.type in {"done", "error"}

    def to_payload(self) -> dict[str, Any]:
        if self.type == "token":
            return {"type": "token", "content": self.content}
        if self.type == "scene_data":
            return {"type": "scene_data", "objects": snapshot_to_payload(self.objects)}
        if self.type == "done":
            return {"type": "done", "conversation_id": self.conversation_id, "message_id": self.message_id}
        if self.type == "error":
            return {"type": "error", "message": self.message}
        return {"type": self.type}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StreamMessage | None:
        kind = payload.get("type")
        if kind == "token":
            return cls.token(str(payload.get("content", "")))
        if kind == "scene_data":
            return cls.scene(restore_snapshot(payload.get("objects")))
        if kind == "done":
            return cls.done(payload.get("conversation_id"), payload.get("message_id"))
        if kind == "error":
            return cls.error(str(payload.get("message", "")))
        if kind == "connected":
            return cls.connected()
        return None


class SSEEncoder(abc.ABC):
    """Validates each message against the stream schema, then frames it."""

    variant: str

    def __init__(self, validator: ProtocolValidator | None = None) -> None:
        self.validator = validator or ProtocolValidator()

    def encode(self, message: StreamMessage) -> bytes:
        payload = message.to_payload()
        self.validator.validate(schema_path=STREAM_MESSAGE_SCHEMA, payload=payload)
        return self._frame(message, payload).encode("utf-8")

    @abc.abstractmethod
    def _frame(self, message: StreamMessage, payload: dict[str, Any]) -> str: ...


class TypedSSEEncoder(SSEEncoder):
    variant = "typed"

    def _frame(self, message: StreamMessage, payload: dict[str, Any]) -> str:
        return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}{DELIMITER}"


class LegacySSEEncoder(SSEEncoder):
    variant = "legacy"

    def _frame(self, message: StreamMessage, payload: dict[str, Any]) -> str:
        if message.type == "token":
            lines = message.content.split("\n")
            return "\n".join(f"{DATA_PREFIX}{line}" for line in lines) + DELIMITER
        if message.type == "scene_data":
            body = json.dumps(payload["objects"], ensure_ascii=False)
            return f"{EVENT_PREFIX}json_update\n{DATA_PREFIX}{body}{DELIMITER}"
        if message.type == "done":
            body = json.dumps({"chatId": message.conversation_id, "messageId": message.message_id})
            return f"{EVENT_PREFIX}completion\n{DATA_PREFIX}{body}{DELIMITER}"
        if message.type == "error":
            body = json.dumps({"message": message.message}, ensure_ascii=False)
            return f"{EVENT_PREFIX}error\n{DATA_PREFIX}{body}{DELIMITER}"
        return f"{EVENT_PREFIX}{message.type}\n{DATA_PREFIX}{{}}{DELIMITER}"


def wire_variant() -> str:
    selected = os.getenv(WIRE_VARIANT_ENV, "typed").strip().lower()
    if selected not in VALID_WIRE_VARIANTS:
        return "typed"
    return selected


def build_encoder(variant: str | None = None, validator: ProtocolValidator | None = None) -> SSEEncoder:
    selected = variant or wire_variant()
    if selected == "legacy":
        return LegacySSEEncoder(validator=validator)
    return TypedSSEEncoder(validator=validator)


class SSEDecoder:
    """Client-side decoder; feed it arbitrarily split chunks of one stream."""

    def __init__(self, variant: str = "typed") -> None:
        if variant not in VALID_WIRE_VARIANTS:
            raise ValueError(f"unknown wire variant: {variant}")
        self.variant = variant
        self._buffer = ""
        self._bytes = codecs.getincrementaldecoder("utf-8")()

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str | bytes) -> list[StreamMessage]:
        text = self._bytes.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        segments = self._buffer.split(DELIMITER)
        self._buffer = segments.pop()
        messages: list[StreamMessage] = []
        for segment in segments:
            if not segment.strip():
                continue
            decoded = self._decode_segment(segment)
            if decoded is not None:
                messages.append(decoded)
        return messages

    def _decode_segment(self, segment: str) -> StreamMessage | None:
        event = ""
        data_lines: list[str] = []
        for line in segment.split("\n"):
            if line.startswith(EVENT_PREFIX):
                event = line[len(EVENT_PREFIX) :].strip()
            elif line.startswith(DATA_PREFIX):
                data_lines.append(line[len(DATA_PREFIX) :])
            elif line.startswith("data:"):
                data_lines.append(line[len("data:") :])
        data = "\n".join(data_lines)
        if self.variant == "typed":
            return self._decode_typed(data)
        return self._decode_legacy(event, data)

    def _decode_typed(self, data: str) -> StreamMessage | None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("SSE decoder: dropping non-JSON segment")
            return None
        if not isinstance(payload, dict):
            return None
        decoded = StreamMessage.from_payload(payload)
        if decoded is None:
            logger.warning("SSE decoder: unknown message type %r", payload.get("type"))
        return decoded

    def _decode_legacy(self, event: str, data: str) -> StreamMessage | None:
        if not event:
            return StreamMessage.token(data)
        try:
            body = json.loads(data) if data.strip() else {}
        except json.JSONDecodeError:
            logger.warning("SSE decoder: dropping malformed %s event", event)
            return None
        if event == "json_update":
            return StreamMessage.scene(restore_snapshot(body))
        if event == "completion":
            body = body if isinstance(body, dict) else {}
            return StreamMessage.done(body.get("chatId"), body.get("messageId"))
        if event == "error":
            message = body.get("message", "") if isinstance(body, dict) else str(body)
            return StreamMessage.error(str(message))
        if event == "connected":
            return StreamMessage.connected()
        logger.warning("SSE decoder: unknown event %r", event)
        return None


__all__ = [
    "MESSAGE_TYPES",
    "LegacySSEEncoder",
    "SSEDecoder",
    "SSEEncoder",
    "StreamMessage",
    "TypedSSEEncoder",
    "build_encoder",
    "wire_variant",
]
