from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

SCHEMA_ROOT = Path(__file__).resolve().parent / "schemas"
STREAM_MESSAGE_SCHEMA = "stream_message.schema.json"

# compiled validators shared by every encoder, keyed by resolved schema file
_COMPILED: dict[Path, Draft202012Validator] = {}


@dataclass
class ProtocolValidationError(Exception):
    schema_path: str
    issues: list[dict[str, str]]
    message_type: str = ""

    def __str__(self) -> str:
        subject = f"'{self.message_type}' message" if self.message_type else "payload"
        return f"{subject} breaks {self.schema_path}: {len(self.issues)} issue(s)"


def _compiled(path: Path) -> Draft202012Validator:
    validator = _COMPILED.get(path)
    if validator is None:
        schema = json.loads(path.read_text(encoding="utf-8"))
        Draft202012Validator.check_schema(schema)
        validator = _COMPILED[path] = Draft202012Validator(schema)
    return validator


def _issue(error: ValidationError) -> dict[str, str]:
    path = ".".join(str(part) for part in error.absolute_path) or "$"
    return {"path": path, "message": error.message}


class ProtocolValidator:
    """Checks outbound stream payloads against the bundled JSON schemas."""

    def __init__(self, schema_root: Path | None = None) -> None:
        self.schema_root = schema_root or SCHEMA_ROOT

    def validate(self, schema_path: str, payload: Any) -> None:
        validator = _compiled((self.schema_root / schema_path).resolve())
        errors = sorted(validator.iter_errors(payload), key=lambda e: [str(part) for part in e.absolute_path])
        if not errors:
            return
        message_type = payload.get("type", "") if isinstance(payload, dict) else ""
        raise ProtocolValidationError(
            schema_path=schema_path,
            issues=[_issue(err) for err in errors],
            message_type=str(message_type),
        )


__all__ = ["STREAM_MESSAGE_SCHEMA", "ProtocolValidationError", "ProtocolValidator"]
