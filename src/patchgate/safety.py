"""Safety validation for proposed single-file patches.

Determines whether a diff may reach the sandbox or the remote repository:
- Target path (protected directories, forbidden components)
- Scope (exactly one file)
- Size (added/removed line limits)
- Credentials (secret-shaped literals on added lines)

The checks are conservative: false rejections are acceptable, false
acceptances are not.
"""

from __future__ import annotations

import posixpath
import re

from .config import SafetyConfig
from .types import SafetyResult

# key/token/password/secret assignment followed by a long opaque literal
CREDENTIAL_ASSIGNMENT = re.compile(
    r"""(?ix)
    (api[_-]?key|secret[_-]?key|client[_-]?secret|access[_-]?key|private[_-]?key
     |access[_-]?token|auth[_-]?token|token|passwd|password|secret)
    ["']?\s*[:=]\s*["']?
    [A-Za-z0-9_\-+/=.]{16,}
    """
)

KNOWN_SECRET_SHAPES = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----"),
]


def normalize_target_path(target_file: str) -> str:
    """Normalize a repository-relative path to "/a/b/c" form for matching."""
    path = (target_file or "").replace("\\", "/").strip()
    path = posixpath.normpath("/" + path.lstrip("/"))
    return path.lower()


def contains_credential(line: str) -> bool:
    if CREDENTIAL_ASSIGNMENT.search(line):
        return True
    return any(p.search(line) for p in KNOWN_SECRET_SHAPES)


def _header_path(line: str) -> str:
    path = line[4:].split("\t", 1)[0].strip()
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def check(target_file: str, diff: str, config: SafetyConfig | None = None) -> SafetyResult:
    """
    Validate a target path and unified diff.

    Args:
        target_file: Repository-relative path of the file being edited
        diff: Unified diff text
        config: Limits (defaults when omitted)

    Returns:
        SafetyResult with safe=False and a human-readable reason on rejection
    """
    config = config or SafetyConfig()

    raw_parts = (target_file or "").replace("\\", "/").split("/")
    if not target_file or not target_file.strip() or ".." in raw_parts:
        return SafetyResult(safe=False, reason="Invalid target path.")

    path = normalize_target_path(target_file)
    if any(fragment.lower() in path for fragment in config.protected_fragments):
        return SafetyResult(safe=False, reason="File inside protected directory.")
    forbidden = {c.lower() for c in config.forbidden_components}
    if any(part in forbidden for part in path.split("/")):
        return SafetyResult(safe=False, reason="File inside protected directory.")

    added = removed = files = 0
    lines = diff.split("\n")
    for idx, line in enumerate(lines):
        # File headers come in "--- " / "+++ " pairs; anything else is hunk content.
        if line.startswith("--- ") and idx + 1 < len(lines) and lines[idx + 1].startswith("+++ "):
            continue
        if line.startswith("+++ ") and idx > 0 and lines[idx - 1].startswith("--- "):
            files += 1
            if files > config.max_files:
                return SafetyResult(
                    safe=False, reason="Multi-file edits blocked.", added=added, removed=removed
                )
            header = _header_path(line)
            if header != "/dev/null" and normalize_target_path(header) != path:
                return SafetyResult(
                    safe=False,
                    reason="Diff targets a different file than requested.",
                )
            continue
        if line.startswith("+"):
            added += 1
            if contains_credential(line[1:]):
                return SafetyResult(safe=False, reason="Secrets detected.", added=added, removed=removed)
        elif line.startswith("-"):
            removed += 1

    if added > config.max_added_lines:
        return SafetyResult(safe=False, reason="Patch too large.", added=added, removed=removed)
    if removed > config.max_removed_lines:
        return SafetyResult(
            safe=False,
            reason="Patch removes too many lines.",
            added=added,
            removed=removed,
        )

    return SafetyResult(safe=True, added=added, removed=removed)
