from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple

OBJECT_TYPES = ("box", "sphere", "square", "circle")
DEFAULT_OBJECT_TYPE = "box"
DEFAULT_COLOR = "#2196f3"
SECONDARY_COLOR = "#f44336"
GROUND_ID = "ground"
GROUND_COLOR = "#4caf50"


class Vector3(NamedTuple):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class SceneObject:
    id: str
    type: str = DEFAULT_OBJECT_TYPE
    color: str = DEFAULT_COLOR
    position: Vector3 = Vector3()
    rotation: Vector3 | None = None
    scale: Vector3 | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "color": self.color,
            "position": self.position.to_dict(),
        }
        if self.rotation is not None:
            payload["rotation"] = self.rotation.to_dict()
        if self.scale is not None:
            payload["scale"] = self.scale.to_dict()
        return payload


Snapshot = tuple[SceneObject, ...]


def ground_object(color: str = GROUND_COLOR) -> SceneObject:
    return SceneObject(
        id=GROUND_ID,
        type="box",
        color=color,
        position=Vector3(0.0, -1.0, 0.0),
        scale=Vector3(10.0, 0.1, 10.0),
    )


def snapshot_to_payload(objects: tuple[SceneObject, ...] | list[SceneObject]) -> list[dict[str, Any]]:
    return [obj.to_dict() for obj in objects]


__all__ = [
    "DEFAULT_COLOR",
    "DEFAULT_OBJECT_TYPE",
    "GROUND_COLOR",
    "GROUND_ID",
    "OBJECT_TYPES",
    "SECONDARY_COLOR",
    "SceneObject",
    "Snapshot",
    "Vector3",
    "ground_object",
    "snapshot_to_payload",
]
