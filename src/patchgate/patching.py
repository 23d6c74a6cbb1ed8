"""Pure whole-file application of a single-file unified diff.

Used when committing through a content-write API that accepts complete file
bodies. Either a complete new body is returned or PatchApplyError is raised;
a half-patched result is never produced.
"""

from __future__ import annotations

import re

from .errors import PatchApplyError

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NO_NEWLINE_MARKER = "\\ No newline at end of file"


def parse_hunk_header(line: str) -> tuple[int, int, int, int]:
    """Return (old_start, old_len, new_start, new_len) for a hunk header."""
    match = HUNK_HEADER.match(line)
    if not match:
        raise PatchApplyError(f"Malformed hunk header: {line[:80]!r}")
    old_start = int(match.group(1))
    old_len = int(match.group(2) if match.group(2) is not None else "1")
    new_start = int(match.group(3))
    new_len = int(match.group(4) if match.group(4) is not None else "1")
    return old_start, old_len, new_start, new_len


def _same_line(original: str, expected: str) -> bool:
    return original.rstrip("\r") == expected.rstrip("\r")


def apply(original: str, diff: str) -> str:
    """
    Apply a unified diff to a file body.

    Args:
        original: Current file text ("" for a new file)
        diff: Unified diff with one or more hunks

    Returns:
        The patched file text

    Raises:
        PatchApplyError: No hunk header, malformed header, overlapping hunks,
            or context/deletion lines that do not match the original
    """
    source = original.split("\n")
    patch = diff.replace("\r\n", "\n").split("\n")

    i = 0
    while i < len(patch) and not patch[i].startswith("@@"):
        i += 1
    if i >= len(patch):
        raise PatchApplyError("Invalid diff: no hunk header found")

    result: list[str] = []
    cursor = 0
    line_count = len(source) - 1 if source[-1] == "" else len(source)

    while i < len(patch):
        old_start, old_len, _new_start, _new_len = parse_hunk_header(patch[i])
        i += 1

        # A zero-length old range ("-N,0") inserts after line N.
        target = old_start if old_len == 0 else max(old_start - 1, 0)
        if target < cursor:
            raise PatchApplyError(f"Overlapping hunk at original line {old_start}")
        if target > line_count:
            raise PatchApplyError(f"Hunk starts past end of file (line {old_start})")
        result.extend(source[cursor:target])
        cursor = target

        while i < len(patch) and not patch[i].startswith("@@"):
            line = patch[i]
            i += 1
            if not line or line == NO_NEWLINE_MARKER:
                continue
            mark, text = line[0], line[1:]
            if mark == " ":
                if cursor >= len(source) or not _same_line(source[cursor], text):
                    raise PatchApplyError(f"Hunk context mismatch at original line {cursor + 1}")
                result.append(source[cursor])
                cursor += 1
            elif mark == "-":
                if cursor >= len(source) or not _same_line(source[cursor], text):
                    raise PatchApplyError(f"Hunk removal mismatch at original line {cursor + 1}")
                cursor += 1
            elif mark == "+":
                result.append(text)
            elif line.startswith(("diff ", "index ")):
                raise PatchApplyError("Diff touches more than one file")
            else:
                raise PatchApplyError(f"Unexpected line in hunk: {line[:80]!r}")

    result.extend(source[cursor:])
    return "\n".join(result)
