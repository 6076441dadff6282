"""Learner progression engine: lessons, XP levels, streaks, achievements and sync."""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

__all__ = ["__version__"]

DISTRIBUTION_NAME = "learnprogress"


def _source_tree_version() -> str | None:
    """Read `[project].version` from the nearest pyproject.toml when running from a checkout."""
    for base in Path(__file__).resolve().parents:
        pyproject = base / "pyproject.toml"
        if not pyproject.is_file():
            continue
        try:
            project = tomllib.loads(pyproject.read_text(encoding="utf-8")).get("project", {})
        except tomllib.TOMLDecodeError:
            return None
        if project.get("name") != DISTRIBUTION_NAME:
            continue
        declared = project.get("version")
        return declared if isinstance(declared, str) else None
    return None


def _resolve_version() -> str:
    checkout_version = _source_tree_version()
    if checkout_version is not None:
        return checkout_version
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "0+unknown"


__version__ = _resolve_version()
