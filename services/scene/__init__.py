from services.scene.detector import (
    END_MARKER,
    START_MARKER,
    Extraction,
    SceneJsonDetector,
    default_strategies,
    is_scene_payload,
)
from services.scene.fallback import generate_default_scene
from services.scene.normalizer import VectorInput, is_ground_like, normalize_many, normalize_object, restore_snapshot
from services.scene.objects import (
    DEFAULT_COLOR,
    GROUND_COLOR,
    GROUND_ID,
    SceneObject,
    Snapshot,
    Vector3,
    ground_object,
    snapshot_to_payload,
)

__all__ = [
    "DEFAULT_COLOR",
    "END_MARKER",
    "GROUND_COLOR",
    "GROUND_ID",
    "START_MARKER",
    "Extraction",
    "SceneJsonDetector",
    "SceneObject",
    "Snapshot",
    "Vector3",
    "VectorInput",
    "default_strategies",
    "generate_default_scene",
    "ground_object",
    "is_ground_like",
    "is_scene_payload",
    "normalize_many",
    "normalize_object",
    "restore_snapshot",
    "snapshot_to_payload",
]
