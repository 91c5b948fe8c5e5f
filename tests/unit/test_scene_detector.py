from __future__ import annotations

import time

from services.scene.detector import (
    END_MARKER,
    START_MARKER,
    Extraction,
    MarkerStrategy,
    SceneJsonDetector,
    has_open_marker,
    has_pending_json,
    is_scene_payload,
)


def test_marker_block_is_extracted_and_consumed() -> None:
    buffer = f'Here is {START_MARKER}[{{"id":"a","type":"sphere"}}]{END_MARKER} done.'
    extraction = SceneJsonDetector().try_extract(buffer)
    assert extraction is not None
    assert extraction.tier == "marker"
    assert extraction.payload == [{"id": "a", "type": "sphere"}]
    assert buffer[extraction.consumed_up_to :] == " done."


def test_open_marker_defers_other_tiers() -> None:
    buffer = f'{START_MARKER}\n[{{"id":"a","type":"box"}}]'
    assert has_open_marker(buffer)
    assert SceneJsonDetector().try_extract(buffer) is None


def test_broken_marker_block_does_not_hide_a_later_one() -> None:
    buffer = f'{START_MARKER} not json {END_MARKER} {START_MARKER}[{{"id":"b"}}]{END_MARKER}'
    extraction = SceneJsonDetector().try_extract(buffer)
    assert extraction is not None
    assert extraction.payload == [{"id": "b"}]
    assert extraction.consumed_up_to == len(buffer)


def test_bracket_tier_collapses_newlines_and_clears_buffer() -> None:
    buffer = 'Sure:\n[{"id": "a",\n"type": "box"}]\nanything else?'
    extraction = SceneJsonDetector().try_extract(buffer)
    assert extraction is not None
    assert extraction.tier == "bracket"
    assert extraction.consumed_up_to == len(buffer)


def test_fence_tier_accepts_array_and_wrapped_scene() -> None:
    detector = SceneJsonDetector()
    array = detector.try_extract('```json\n[ {"id": "a"} ]\n```')
    assert array is not None
    assert array.tier == "fence"
    assert array.payload == [{"id": "a"}]

    wrapped = detector.try_extract('```\n{"scene": {"objects": [ {"id": "a"} ]}}\n```')
    assert wrapped is not None
    assert wrapped.tier == "fence"
    assert wrapped.payload == {"scene": {"objects": [{"id": "a"}]}}


def test_fragment_tier_repairs_trailing_commas_and_keeps_buffer() -> None:
    text = (
        'objects: [{"id": "a", "type": "box", "color": "#f00",}, '
        '{"id": "b", "type": "sphere", "color": "#00f",}]'
    )
    extraction = SceneJsonDetector().try_extract(text, text)
    assert extraction is not None
    assert extraction.tier == "fragment"
    assert [row["id"] for row in extraction.payload] == ["a", "b"]
    assert extraction.consumed_up_to == 0


def test_heuristic_tier_builds_green_ground_and_red_sphere() -> None:
    text = "I placed a red sphere floating above a green ground."
    extraction = SceneJsonDetector().try_extract(text, text)
    assert extraction is not None
    assert extraction.tier == "heuristic"
    assert [row["id"] for row in extraction.payload] == ["ground_1", "sphere_1"]
    assert extraction.consumed_up_to == 0


def test_prose_without_both_colors_is_not_a_scene() -> None:
    text = "A red sphere, nothing else."
    assert SceneJsonDetector().try_extract(text, text) is None


def test_heuristic_keywords_match_whole_words_only() -> None:
    text = "I covered the background with a soft green tint."
    assert SceneJsonDetector().try_extract(text, text) is None

    japanese = "赤い球と緑の地面"
    extraction = SceneJsonDetector().try_extract(japanese, japanese)
    assert extraction is not None
    assert extraction.tier == "heuristic"


def test_heuristic_waits_for_an_array_or_fence_that_may_still_close() -> None:
    detector = SceneJsonDetector()
    prose = "A red ball on green ground: "
    assert has_pending_json(prose + '[{"id": "c", "type": "box"')
    assert has_pending_json(prose + "```json\n")
    assert not has_pending_json(prose + "[1, 2]")
    assert detector.try_extract(prose + '[{"id": "c"', prose) is None
    assert detector.try_extract(prose + "```json\n", prose) is None

    closed = prose + '[{"id": "c", "type": "box"}]'
    extraction = detector.try_extract(closed, closed)
    assert extraction is not None
    assert extraction.tier == "bracket"


def test_fragment_tier_uses_the_newest_array() -> None:
    text = (
        'old: [{"id": "a", "type": "box", "color": "#f00"} and later '
        'new: [{"id": "b", "type": "sphere", "color": "#00f",}, {"id": "c", "type": "box", "color": "#0f0"},]'
    )
    extraction = SceneJsonDetector().try_extract("", text)
    assert extraction is not None
    assert extraction.tier == "fragment"
    assert [row["id"] for row in extraction.payload] == ["b", "c"]


def test_long_unterminated_array_streams_in_bounded_time() -> None:
    rows = ",".join(
        f'{{"id": "obj-{n}", "type": "box", "color": "#336699", "position": {{"x": {n}, "y": 0, "z": 1}}}}'
        for n in range(250)
    )
    text = "Here you go: [" + rows
    detector = SceneJsonDetector()
    buffer = ""
    started = time.perf_counter()
    for offset in range(0, len(text), 20):
        buffer = detector.bound(buffer + text[offset : offset + 20])
        assert detector.try_extract(buffer, buffer) is None
    elapsed = time.perf_counter() - started

    assert len(text) > 20_000
    assert elapsed < 5.0
    extraction = detector.try_extract(buffer + "]", buffer + "]")
    assert extraction is not None
    assert len(extraction.payload) == 250


def test_marker_only_mode_skips_non_marker_tiers() -> None:
    buffer = '[{"id": "a"}]'
    detector = SceneJsonDetector()
    assert detector.try_extract(buffer, marker_only=True) is None
    assert detector.try_extract(buffer) is not None


def test_validation_gate() -> None:
    assert is_scene_payload([{"id": "a"}])
    assert is_scene_payload({"scene": {"objects": [{"type": "box"}]}})
    assert not is_scene_payload([])
    assert not is_scene_payload([{"type": "box"}])
    assert not is_scene_payload([{"id": "a"}, 3])
    assert not is_scene_payload({"scene": {"objects": []}})
    assert not is_scene_payload("[]")


def test_final_sweep_finds_a_flat_array_in_the_transcript() -> None:
    transcript = 'Result: [1, 2] and [{"id": "a", "type": "box", "color": "#ff0000"}] end'
    extraction = SceneJsonDetector().final_sweep(transcript)
    assert extraction is not None
    assert extraction.tier == "final"
    assert extraction.payload[0]["id"] == "a"


def test_final_sweep_requires_scene_keys() -> None:
    assert SceneJsonDetector().final_sweep('[{"name": "a"}]') is None
    assert SceneJsonDetector().final_sweep("no brackets at all") is None


def test_bound_keeps_the_newest_text() -> None:
    detector = SceneJsonDetector(window_chars=10)
    assert detector.window_chars == 1024
    text = "a" * 1000 + "b" * 100
    assert detector.bound(text) == text[-1024:]


class ExplodingStrategy:
    name = "explode"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        raise RuntimeError("boom")


def test_raising_strategy_is_skipped() -> None:
    detector = SceneJsonDetector(strategies=[ExplodingStrategy(), MarkerStrategy()])
    buffer = f'{START_MARKER}[{{"id": "a"}}]{END_MARKER}'
    extraction = detector.try_extract(buffer)
    assert extraction is not None
    assert extraction.tier == "marker"
