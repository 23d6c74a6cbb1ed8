"""Toolchain detection by marker files."""

from __future__ import annotations

import json
from pathlib import Path

# Order matters: a repo with both package.json and requirements.txt builds as node.
MARKERS: list[tuple[str, list[str]]] = [
    ("node", ["package.json"]),
    ("python", ["requirements.txt", "pyproject.toml", "setup.py"]),
    ("go", ["go.mod"]),
    ("rust", ["Cargo.toml"]),
]


def detect_project_type(repo_dir: Path) -> str:
    """Return "node", "python", "go", "rust" or "unknown"."""
    for project_type, files in MARKERS:
        if any((repo_dir / name).is_file() for name in files):
            return project_type
    return "unknown"


def has_npm_build_script(repo_dir: Path) -> bool:
    try:
        data = json.loads((repo_dir / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("build"))


def has_pyproject_build_system(repo_dir: Path) -> bool:
    path = repo_dir / "pyproject.toml"
    if not path.is_file():
        return False
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return False
    return any(line.strip() == "[build-system]" for line in text.splitlines())
