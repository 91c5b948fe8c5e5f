from __future__ import annotations

import os
import subprocess
import tomllib
from functools import lru_cache
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
BUILD_REVISION_ENV = "SCENECHAT_BUILD_REVISION"


@lru_cache(maxsize=1)
def project_version() -> str:
    pyproject_path = PROJECT_ROOT / "pyproject.toml"
    try:
        payload = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    version = str(payload.get("project", {}).get("version", "")).strip()
    return version or "0.0.0"


@lru_cache(maxsize=1)
def project_revision() -> str:
    env_value = str(os.getenv(BUILD_REVISION_ENV, "")).strip()
    if env_value:
        return env_value
    try:
        revision = (
            subprocess.check_output(
                ["git", "rev-parse", "--short", "HEAD"],
                cwd=PROJECT_ROOT,
                stderr=subprocess.DEVNULL,
                text=True,
            )
            .strip()
        )
    except Exception:  # noqa: BLE001
        return "dev"
    return revision or "dev"


__all__ = ["project_revision", "project_version"]
