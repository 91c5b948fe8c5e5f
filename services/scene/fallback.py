from __future__ import annotations

import re

from services.scene.objects import (
    DEFAULT_COLOR,
    GROUND_COLOR,
    SECONDARY_COLOR,
    SceneObject,
    Vector3,
    ground_object,
)

COLOR_KEYWORDS: dict[str, str] = {
    "red": "#ff0000",
    "blue": "#0000ff",
    "green": "#00ff00",
    "yellow": "#ffff00",
    "purple": "#800080",
    "orange": "#ffa500",
    "black": "#000000",
    "white": "#ffffff",
    "pink": "#ffc0cb",
    "brown": "#a52a2a",
    "gray": "#808080",
    "grey": "#808080",
    "赤": "#ff0000",
    "青": "#0000ff",
    "緑": "#00ff00",
    "黄": "#ffff00",
    "紫": "#800080",
    "オレンジ": "#ffa500",
    "橙": "#ffa500",
    "黒": "#000000",
    "白": "#ffffff",
    "ピンク": "#ffc0cb",
    "茶": "#a52a2a",
    "灰": "#808080",
    "グレー": "#808080",
}

SHAPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sphere", ("sphere", "ball", "球")),
    ("square", ("square", "plane", "平面", "四角")),
    ("circle", ("circle", "円")),
)
PLURAL_KEYWORDS = ("multiple", "several", "many", "複数")
GROUND_KEYWORDS = ("ground", "floor", "地面", "床")

_COLOR_ALT = "|".join(re.escape(key) for key in sorted(COLOR_KEYWORDS, key=len, reverse=True))
_GROUND_ALT = "|".join(re.escape(key) for key in GROUND_KEYWORDS)
COLOR_RE = re.compile(_COLOR_ALT)
GROUND_RE = re.compile(_GROUND_ALT)
GROUND_WINDOW_CHARS = 12


def _ground_color(text: str) -> tuple[str, tuple[int, int] | None]:
    """Color word closest to a ground word, searched within a small window."""
    for ground in GROUND_RE.finditer(text):
        before = list(COLOR_RE.finditer(text, max(0, ground.start() - GROUND_WINDOW_CHARS), ground.start()))
        after = COLOR_RE.search(text, ground.end(), ground.end() + GROUND_WINDOW_CHARS)
        candidates = []
        if before:
            candidates.append((ground.start() - before[-1].end(), before[-1]))
        if after is not None:
            candidates.append((after.start() - ground.end(), after))
        if candidates:
            _, match = min(candidates, key=lambda row: row[0])
            return COLOR_KEYWORDS[match.group(0)], match.span()
    return GROUND_COLOR, None


def _object_color(text: str, reserved: tuple[int, int] | None) -> str:
    matches = list(COLOR_RE.finditer(text))
    if not matches:
        return DEFAULT_COLOR
    free = [m for m in matches if reserved is None or m.span() != reserved]
    chosen = free[-1] if free else matches[-1]
    return COLOR_KEYWORDS[chosen.group(0)]


def _object_type(text: str) -> str:
    for shape, keywords in SHAPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return shape
    return "box"


def generate_default_scene(transcript: str) -> tuple[SceneObject, ...]:
    """Build a small scene from keywords when no JSON could be recovered.

    Pure and deterministic: the same transcript always yields the same
    objects.  The result always holds one primary object and a ground box.
    """
    text = (transcript or "").lower()
    has_ground_word = any(keyword in text for keyword in GROUND_KEYWORDS)
    ground_color, reserved = _ground_color(text) if has_ground_word else (GROUND_COLOR, None)

    objects = [
        SceneObject(
            id="auto-box-1",
            type=_object_type(text),
            color=_object_color(text, reserved),
            position=Vector3(-1.0, 0.0, 0.0),
        )
    ]
    if any(keyword in text for keyword in PLURAL_KEYWORDS):
        objects.append(
            SceneObject(
                id="auto-sphere-1",
                type="sphere",
                color=SECONDARY_COLOR,
                position=Vector3(1.0, 0.0, 0.0),
            )
        )
    objects.append(ground_object(ground_color))
    return tuple(objects)


__all__ = ["COLOR_KEYWORDS", "GROUND_KEYWORDS", "generate_default_scene"]
