"""Incremental detection of scene JSON inside a streaming model reply.

The model is asked to wrap its scene in ``SCENE_JSON_START``/``SCENE_JSON_END``
but frequently ignores the format.  Detection therefore runs an ordered
cascade of strategies over the growing detection buffer after every chunk:

1. ``marker``    - sentinel-delimited block, may fire many times per stream
2. ``bracket``   - first ``[{`` to last ``}]``
3. ``fence``     - fenced code block holding an array (or a wrapped scene)
4. ``fragment``  - trailing-comma repair of the newest array of objects
5. ``heuristic`` - fixed green-ground/red-sphere scene for prose-only replies,
                 skipped while an array or fence may still complete

Strategies are pure; the driver stops at the first success.  Every parse or
validation failure is logged and swallowed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

logger = logging.getLogger("scenechat.scene.detector")

START_MARKER = "SCENE_JSON_START"
END_MARKER = "SCENE_JSON_END"
DEFAULT_WINDOW_CHARS = 32_000

FENCE_ARRAY_RE = re.compile(r"```(?:json)?\s*(\[\s*\{[\s\S]*?\}\s*\])\s*```")
FENCE_SCENE_RE = re.compile(r"```(?:json)?\s*(\{\s*\"scene\"[\s\S]*?\})\s*```")
FRAGMENT_START_RE = re.compile(r"\[\s*\{\s*\"id\"\s*:\s*\"[^\"\n]+\"\s*,\s*\"type\"")
FRAGMENT_END_RE = re.compile(r"\}\s*,?\s*\]")
FRAGMENT_SCAN_CHARS = 8_192
FLAT_ARRAY_RE = re.compile(r"\[\s*\{[^\[\]]*\}\s*\]")
TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")
NEWLINES_RE = re.compile(r"[\r\n]+")
FENCE = "```"

FRAGMENT_REQUIRED_KEYS = ('"id"', '"type"', '"color"')
# CJK text has no word boundaries, so those keywords stay substring matches
HEURISTIC_GREEN_RE = re.compile(r"\bgreen\b|緑")
HEURISTIC_RED_RE = re.compile(r"\bred\b|赤")
HEURISTIC_SUBJECT_RE = re.compile(r"\b(?:spheres?|balls?|ground)\b|球|地面")


@dataclass(frozen=True)
class Extraction:
    payload: Any
    consumed_up_to: int
    tier: str


class ExtractionStrategy(Protocol):
    name: str

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        ...


def is_scene_payload(payload: Any) -> bool:
    if isinstance(payload, list):
        return bool(payload) and all(isinstance(row, dict) and "id" in row for row in payload)
    if isinstance(payload, dict):
        scene = payload.get("scene")
        if not isinstance(scene, dict):
            return False
        objects = scene.get("objects")
        return isinstance(objects, list) and bool(objects) and all(isinstance(row, dict) for row in objects)
    return False


def _parse_scene(text: str, tier: str) -> Any | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.debug("Detector tier %s: JSON parse failed: %s", tier, exc)
        return None
    if not is_scene_payload(payload):
        logger.debug("Detector tier %s: parsed value is not a scene object list", tier)
        return None
    return payload


def has_open_marker(buffer: str) -> bool:
    start = buffer.rfind(START_MARKER)
    if start < 0:
        return False
    return buffer.find(END_MARKER, start + len(START_MARKER)) < 0


def has_pending_json(buffer: str) -> bool:
    """True while an opened array or code fence in ``buffer`` may still close."""
    if buffer.count(FENCE) % 2 == 1:
        return True
    start = buffer.rfind("[{")
    if start < 0:
        return False
    return buffer.find("}]", start) < 0


@dataclass(frozen=True)
class MarkerStrategy:
    name: str = "marker"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        search_from = 0
        while True:
            start = buffer.find(START_MARKER, search_from)
            if start < 0:
                return None
            body_start = start + len(START_MARKER)
            end = buffer.find(END_MARKER, body_start)
            if end < 0:
                return None
            payload = _parse_scene(buffer[body_start:end].strip(), self.name)
            if payload is not None:
                return Extraction(payload=payload, consumed_up_to=end + len(END_MARKER), tier=self.name)
            # broken block: later blocks in the same buffer still count
            search_from = end + len(END_MARKER)


@dataclass(frozen=True)
class BracketStrategy:
    name: str = "bracket"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        start = buffer.find("[{")
        if start < 0:
            return None
        end = buffer.rfind("}]")
        if end <= start:
            return None
        candidate = NEWLINES_RE.sub(" ", buffer[start : end + 2]).strip()
        payload = _parse_scene(candidate, self.name)
        if payload is None:
            return None
        return Extraction(payload=payload, consumed_up_to=len(buffer), tier=self.name)


@dataclass(frozen=True)
class FenceStrategy:
    name: str = "fence"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        if "```" not in buffer:
            return None
        for pattern in (FENCE_ARRAY_RE, FENCE_SCENE_RE):
            match = pattern.search(buffer)
            if match is None:
                continue
            payload = _parse_scene(match.group(1).strip(), self.name)
            if payload is not None:
                return Extraction(payload=payload, consumed_up_to=len(buffer), tier=self.name)
        return None


@dataclass(frozen=True)
class FragmentStrategy:
    name: str = "fragment"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        if not all(key in transcript for key in FRAGMENT_REQUIRED_KEYS):
            return None
        start = None
        for start_match in FRAGMENT_START_RE.finditer(transcript):
            start = start_match.start()
        if start is None:
            return None
        # earlier arrays were already tried on the chunks that completed them
        window = transcript[start : start + FRAGMENT_SCAN_CHARS]
        end = FRAGMENT_END_RE.search(window)
        if end is None:
            return None
        repaired = TRAILING_COMMA_RE.sub(r"\1", window[: end.end()])
        payload = _parse_scene(repaired, self.name)
        if payload is None or len(payload) < 2:
            return None
        return Extraction(payload=payload, consumed_up_to=0, tier=self.name)


@dataclass(frozen=True)
class HeuristicStrategy:
    name: str = "heuristic"

    def attempt(self, buffer: str, transcript: str) -> Extraction | None:
        if has_pending_json(buffer):
            return None
        text = transcript.lower()
        if HEURISTIC_GREEN_RE.search(text) is None:
            return None
        if HEURISTIC_RED_RE.search(text) is None:
            return None
        if HEURISTIC_SUBJECT_RE.search(text) is None:
            return None
        logger.info("Detector: no JSON found, building green ground and red sphere from prose")
        payload = [
            {
                "id": "ground_1",
                "type": "box",
                "color": "#008000",
                "position": {"x": 0, "y": -1, "z": 0},
                "scale": {"x": 10, "y": 0.1, "z": 10},
            },
            {
                "id": "sphere_1",
                "type": "sphere",
                "color": "#ff0000",
                "position": {"x": 0, "y": 1, "z": 0},
                "scale": {"x": 1, "y": 1, "z": 1},
            },
        ]
        return Extraction(payload=payload, consumed_up_to=0, tier=self.name)


def default_strategies() -> tuple[ExtractionStrategy, ...]:
    return (
        MarkerStrategy(),
        BracketStrategy(),
        FenceStrategy(),
        FragmentStrategy(),
        HeuristicStrategy(),
    )


class SceneJsonDetector:
    def __init__(
        self,
        strategies: Sequence[ExtractionStrategy] | None = None,
        window_chars: int = DEFAULT_WINDOW_CHARS,
    ) -> None:
        self.strategies = tuple(strategies) if strategies is not None else default_strategies()
        self.window_chars = max(1024, int(window_chars))

    def bound(self, text: str) -> str:
        if len(text) <= self.window_chars:
            return text
        return text[-self.window_chars :]

    def try_extract(self, buffer: str, transcript: str = "", *, marker_only: bool = False) -> Extraction | None:
        """Run the cascade over ``buffer``; ``transcript`` feeds the prose tiers.

        With ``marker_only`` only the marker tier runs; the orchestrator uses
        it once a stream has produced its first scene.  The non-marker tiers
        also wait while a start marker is still waiting for its end marker.
        """
        transcript = self.bound(transcript or buffer)
        deferred = marker_only or has_open_marker(buffer)
        for strategy in self.strategies:
            if deferred and strategy.name != "marker":
                continue
            try:
                extraction = strategy.attempt(buffer, transcript)
            except Exception:  # noqa: BLE001
                logger.warning("Detector tier %s raised, skipping", strategy.name, exc_info=True)
                continue
            if extraction is not None:
                logger.info("Detector: scene extracted by tier %s", extraction.tier)
                return extraction
        return None

    def final_sweep(self, transcript: str) -> Extraction | None:
        """Last attempt over the full transcript once the stream has ended."""
        text = self.bound(transcript)
        if "[" not in text or "]" not in text:
            return None
        if not all(key.strip('"') in text for key in FRAGMENT_REQUIRED_KEYS):
            return None
        for match in FLAT_ARRAY_RE.finditer(text):
            payload = _parse_scene(match.group(0), "final")
            if payload is not None:
                return Extraction(payload=payload, consumed_up_to=len(transcript), tier="final")
        return None


__all__ = [
    "END_MARKER",
    "START_MARKER",
    "BracketStrategy",
    "Extraction",
    "ExtractionStrategy",
    "FenceStrategy",
    "FragmentStrategy",
    "HeuristicStrategy",
    "MarkerStrategy",
    "SceneJsonDetector",
    "default_strategies",
    "has_open_marker",
    "has_pending_json",
    "is_scene_payload",
]
