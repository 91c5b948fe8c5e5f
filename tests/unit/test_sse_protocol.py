from __future__ import annotations

import json

import pytest

from services.protocol import (
    LegacySSEEncoder,
    ProtocolValidationError,
    SSEDecoder,
    SSEEncoder,
    StreamMessage,
    TypedSSEEncoder,
    build_encoder,
)
from services.scene.normalizer import normalize_many

SCENE = normalize_many([{"id": "a", "type": "sphere", "color": "#ff0000", "position": [0, 1, 0]}])


def test_typed_encoder_frames_one_json_object_per_message() -> None:
    frame = TypedSSEEncoder().encode(StreamMessage.token("Hello"))
    assert frame == b'data: {"type": "token", "content": "Hello"}\n\n'


def test_typed_scene_frame_carries_full_snapshot() -> None:
    frame = TypedSSEEncoder().encode(StreamMessage.scene(SCENE)).decode("utf-8")
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    payload = json.loads(frame[len("data: ") :])
    assert payload["type"] == "scene_data"
    assert [row["id"] for row in payload["objects"]] == ["a", "ground"]
    assert payload["objects"][0]["position"] == {"x": 0.0, "y": 1.0, "z": 0.0}


def test_legacy_encoder_prefixes_every_token_line() -> None:
    frame = LegacySSEEncoder().encode(StreamMessage.token("line one\nline two"))
    assert frame == b"data: line one\ndata: line two\n\n"


def test_legacy_encoder_named_events() -> None:
    encoder = LegacySSEEncoder()
    scene = encoder.encode(StreamMessage.scene(SCENE)).decode("utf-8")
    assert scene.startswith("event: json_update\ndata: [")
    done = encoder.encode(StreamMessage.done("c1", "m1")).decode("utf-8")
    assert done == 'event: completion\ndata: {"chatId": "c1", "messageId": "m1"}\n\n'
    error = encoder.encode(StreamMessage.error("boom")).decode("utf-8")
    assert error == 'event: error\ndata: {"message": "boom"}\n\n'


def test_encoder_refuses_messages_that_break_the_schema() -> None:
    with pytest.raises(ProtocolValidationError):
        TypedSSEEncoder().encode(StreamMessage.scene(()))


def test_build_encoder_follows_wire_variant_env(monkeypatch) -> None:
    monkeypatch.setenv("SCENECHAT_WIRE_VARIANT", "legacy")
    assert isinstance(build_encoder(), LegacySSEEncoder)
    monkeypatch.setenv("SCENECHAT_WIRE_VARIANT", "nonsense")
    assert isinstance(build_encoder(), TypedSSEEncoder)
    assert isinstance(build_encoder("legacy"), LegacySSEEncoder)


@pytest.mark.parametrize("variant", ["typed", "legacy"])
def test_decoder_reassembles_arbitrarily_split_streams(variant: str) -> None:
    encoder = build_encoder(variant)
    messages = [
        StreamMessage.connected(),
        StreamMessage.token("Here is "),
        StreamMessage.token("a ball 🎈"),
        StreamMessage.scene(SCENE),
        StreamMessage.done("c1", "m1"),
    ]
    wire = b"".join(encoder.encode(message) for message in messages)

    decoder = SSEDecoder(variant)
    received: list[StreamMessage] = []
    for start in range(0, len(wire), 7):
        received.extend(decoder.feed(wire[start : start + 7]))

    assert received == messages
    assert decoder.pending == ""


def test_decoder_keeps_partial_segment_until_delimiter() -> None:
    decoder = SSEDecoder("typed")
    assert decoder.feed('data: {"type": "token", "content": "hi"}') == []
    assert decoder.pending.startswith("data: ")
    assert decoder.feed("\n\n") == [StreamMessage.token("hi")]


def test_decoder_drops_malformed_segments() -> None:
    decoder = SSEDecoder("typed")
    assert decoder.feed("data: not-json\n\n") == []
    assert decoder.feed('data: {"type": "mystery"}\n\n') == []


def test_decoder_rejects_unknown_variant() -> None:
    with pytest.raises(ValueError):
        SSEDecoder("mixed")


@pytest.mark.parametrize("variant", ["typed", "legacy"])
def test_decoded_scene_matches_the_sent_snapshot(variant: str) -> None:
    snapshot = normalize_many([{"id": "terrain", "type": "plane"}, {"id": "s", "type": "sphere"}])
    assert [obj.id for obj in snapshot] == ["terrain", "s"]

    decoder = SSEDecoder(variant)
    received = decoder.feed(build_encoder(variant).encode(StreamMessage.scene(snapshot)))

    assert received == [StreamMessage.scene(snapshot)]


def test_encoder_base_needs_a_framing() -> None:
    with pytest.raises(TypeError):
        SSEEncoder()

    class BareEncoder(SSEEncoder):
        variant = "bare"

        def _frame(self, message: StreamMessage, payload: dict) -> str:
            return f"{payload['type']}\n\n"

    assert BareEncoder().encode(StreamMessage.connected()) == b"connected\n\n"
