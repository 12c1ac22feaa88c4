from __future__ import annotations

import os
import re
import tomllib
from importlib import metadata
from pathlib import Path


_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")

_PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def _pyproject_version() -> str | None:
    if not _PYPROJECT.is_file():
        return None
    try:
        data = tomllib.loads(_PYPROJECT.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return None
    v = data.get("project", {}).get("version")
    return v.strip() if isinstance(v, str) else None


def _dist_version() -> str | None:
    try:
        return metadata.version("portraitist-server")
    except metadata.PackageNotFoundError:
        return None


def get_app_version() -> str:
    """Version reported in the ``X-App-Version`` header and the OpenAPI document.

    ``PORTRAITIST_VERSION`` wins when it is a plain ``X.Y.Z``; a source checkout
    reads ``pyproject.toml`` before falling back to the installed distribution.
    """
    for candidate in (os.getenv("PORTRAITIST_VERSION"), _pyproject_version(), _dist_version()):
        if candidate and _SEMVER_RE.match(candidate.strip()):
            return candidate.strip()
    return "0.0.0"
