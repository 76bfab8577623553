from __future__ import annotations

import os
import re
import tomllib
from importlib import metadata
from pathlib import Path
from typing import cast


_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")

DIST_NAME = "parley-server"


def _is_valid_semver(v: str) -> bool:
    return _SEMVER_RE.match(v.strip()) is not None


def _read_pyproject_version() -> str | None:
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if not pyproject_path.exists():
        return None
    try:
        data = cast(dict[str, object], tomllib.loads(pyproject_path.read_text(encoding="utf-8")))
    except (OSError, tomllib.TOMLDecodeError):
        return None
    project_obj = data.get("project")
    if not isinstance(project_obj, dict):
        return None
    v = cast(dict[str, object], project_obj).get("version")
    return v.strip() if isinstance(v, str) and v.strip() else None


def _read_dist_version() -> str | None:
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return None


def get_app_version() -> str:
    env_v = os.getenv("PARLEY_VERSION")
    if env_v is not None and _is_valid_semver(env_v):
        return env_v.strip()

    for candidate in (_read_pyproject_version(), _read_dist_version()):
        if candidate is not None and _is_valid_semver(candidate):
            return candidate.strip()

    return "0.0.0"
