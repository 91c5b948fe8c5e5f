"""Normalization of loosely-typed model output into ``SceneObject`` snapshots.

Models describe vectors either as ``[x, y, z]`` or as ``{"x": .., "y": ..,
"z": ..}`` and wrap object lists either as a bare array or as
``{"scene": {"objects": [...]}}``.  Both unions are resolved here; nothing
downstream sees the raw shapes.  Every function in this module is total:
malformed input degrades to defaults instead of raising.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from services.scene.objects import (
    DEFAULT_COLOR,
    DEFAULT_OBJECT_TYPE,
    OBJECT_TYPES,
    SceneObject,
    Vector3,
    ground_object,
)

logger = logging.getLogger("scenechat.scene.normalizer")

GROUND_TYPE_MARKERS = ("plane", "ground")
GROUND_ID_MARKERS = ("ground", "floor")
AXES = ("x", "y", "z")


@dataclass(frozen=True)
class VectorInput:
    kind: str
    components: tuple[Any, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> VectorInput:
        if isinstance(raw, (list, tuple)):
            return cls(kind="sequence", components=tuple(raw[:3]))
        if isinstance(raw, dict):
            return cls(kind="mapping", components=tuple(raw.get(axis) for axis in AXES))
        return cls(kind="missing")

    @property
    def present(self) -> bool:
        return self.kind != "missing"

    def to_vector(self) -> Vector3:
        padded = list(self.components) + [None] * (3 - len(self.components))
        return Vector3(*(_number(value) for value in padded[:3]))


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def _object_id(raw: Any, index: int) -> str:
    if isinstance(raw, bool) or raw is None:
        return f"object-{index}"
    if isinstance(raw, (str, int, float)):
        text = str(raw).strip()
        if text:
            return text
    return f"object-{index}"


def _object_type(raw: Any) -> tuple[str, bool]:
    if not isinstance(raw, str):
        return DEFAULT_OBJECT_TYPE, False
    clean = raw.strip().lower()
    is_ground = any(marker in clean for marker in GROUND_TYPE_MARKERS)
    if clean in OBJECT_TYPES:
        return clean, is_ground
    return DEFAULT_OBJECT_TYPE, is_ground


def _color(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return DEFAULT_COLOR


def _optional_vector(raw: Any) -> Vector3 | None:
    parsed = VectorInput.parse(raw)
    if not parsed.present:
        return None
    return parsed.to_vector()


def _normalize(raw: Any, index: int) -> tuple[SceneObject, bool]:
    data = raw if isinstance(raw, dict) else {}
    object_id = _object_id(data.get("id"), index)
    object_type, ground_type = _object_type(data.get("type"))
    obj = SceneObject(
        id=object_id,
        type=object_type,
        color=_color(data.get("color")),
        position=VectorInput.parse(data.get("position")).to_vector(),
        rotation=_optional_vector(data.get("rotation")),
        scale=_optional_vector(data.get("scale")),
    )
    lowered_id = object_id.lower()
    ground_id = any(marker in lowered_id for marker in GROUND_ID_MARKERS)
    return obj, ground_type or ground_id


def normalize_object(raw: Any, index: int) -> SceneObject:
    obj, _ = _normalize(raw, index)
    return obj


def is_ground_like(obj: SceneObject) -> bool:
    lowered = obj.id.lower()
    return any(marker in lowered for marker in GROUND_ID_MARKERS)


def _raw_objects(raw: Any) -> list[Any] | None:
    if isinstance(raw, dict):
        scene = raw.get("scene")
        if isinstance(scene, dict) and isinstance(scene.get("objects"), list):
            return scene["objects"]
        return None
    if isinstance(raw, list):
        return raw
    return None


def normalize_many(raw: Any) -> tuple[SceneObject, ...]:
    rows = _raw_objects(raw)
    if rows is None:
        logger.info("Scene payload has unsupported shape %s, ignoring", type(raw).__name__)
        return ()

    objects: list[SceneObject] = []
    seen: set[str] = set()
    has_ground = False
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            logger.debug("Skipping non-object scene entry at index %d", index)
            continue
        obj, ground = _normalize(row, index)
        if obj.id in seen:
            obj = SceneObject(
                id=f"{obj.id}-{index}",
                type=obj.type,
                color=obj.color,
                position=obj.position,
                rotation=obj.rotation,
                scale=obj.scale,
            )
        seen.add(obj.id)
        has_ground = has_ground or ground
        objects.append(obj)

    if not objects:
        return ()
    if not has_ground:
        objects.append(ground_object())
    return tuple(objects)


def restore_snapshot(raw: Any) -> tuple[SceneObject, ...]:
    """Rebuild an already-normalized snapshot exactly as it was sent or stored.

    Unlike ``normalize_many`` this never appends a ground object: the
    snapshot got its ground (or deliberately went without one) when it was
    first normalized.
    """
    rows = _raw_objects(raw)
    if rows is None:
        return ()
    return tuple(normalize_object(row, index) for index, row in enumerate(rows) if isinstance(row, dict))


__all__ = ["VectorInput", "is_ground_like", "normalize_many", "normalize_object", "restore_snapshot"]
