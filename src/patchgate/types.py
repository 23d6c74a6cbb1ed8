"""Core data types for PatchGate."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Union
from urllib.parse import urlparse

from .errors import InvalidRequest

JOB_STATUSES = ("queued", "running", "success", "failed")


@dataclass
class SandboxJob:
    """A unit of sandbox work and its audit trail."""

    id: str
    repository: str
    target_file: str
    diff: str
    status: str = "queued"
    logs: list[str] = field(default_factory=list)

    # Populated only on success.
    token: str | None = None
    diff_hash: str | None = None
    expires_at: float | None = None

    # Replay protection.
    consumed: bool = False
    consumed_at: float | None = None

    created_at: float = 0.0
    updated_at: float = 0.0

    def __post_init__(self) -> None:
        if self.status not in JOB_STATUSES:
            raise ValueError(
                f"Invalid status: {self.status}. Must be one of {JOB_STATUSES}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "failed")


@dataclass
class SandboxResult:
    """Outcome of one executor run."""

    success: bool
    logs: list[str]
    project_type: str = "unknown"
    duration_s: float = 0.0


@dataclass
class SafetyResult:
    """Verdict of the safety validator."""

    safe: bool
    reason: str | None = None
    added: int = 0
    removed: int = 0


@dataclass(frozen=True)
class PreviewClaims:
    """Verified Proof-of-Preview payload."""

    job_id: str
    repository: str
    target_file: str
    diff_hash: str
    issuer: str
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class RepoRef:
    """owner/name pair parsed from a repository locator."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class RemoteFile:
    """A file body read from the repository host."""

    path: str
    text: str
    sha: str


@dataclass(frozen=True)
class CreateFile:
    """Write request for a file that does not exist on the branch yet."""

    path: str
    content: str
    message: str
    branch: str


@dataclass(frozen=True)
class UpdateFile:
    """Write request replacing an existing blob (prior sha required)."""

    path: str
    content: str
    message: str
    branch: str
    sha: str


FileWrite = Union[CreateFile, UpdateFile]


@dataclass
class DeliveryResult:
    """Result of a successful pull-request delivery."""

    pr_url: str
    branch: str
    mode: str  # "new", "cumulative", "rebase"
    pr_number: int | None = None
    rollback: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": True,
            "prUrl": self.pr_url,
            "branch": self.branch,
            "mode": self.mode,
        }
        if self.pr_number is not None:
            out["prNumber"] = self.pr_number
        if self.rollback:
            out["rollback"] = self.rollback
        return out


_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")


def parse_repo_locator(locator: str) -> RepoRef:
    """
    Extract owner/repo from a repository locator.

    Accepts "owner/repo", "github.com/owner/repo" and full https URLs, with or
    without a trailing slash or ".git" suffix.
    """
    raw = (locator or "").strip().rstrip("/")
    if raw.endswith(".git"):
        raw = raw[: -len(".git")]

    parts = raw.split("/")
    if not raw.startswith("http") and "github.com" not in raw and len(parts) == 2:
        owner, name = parts
    else:
        if not raw.startswith("http"):
            raw = f"https://{raw}"
        segments = [s for s in urlparse(raw).path.split("/") if s]
        if len(segments) < 2:
            raise InvalidRequest(
                "Invalid repository locator. Expected 'owner/repo' or a repository URL."
            )
        owner, name = segments[0], segments[1]

    if not (_SEGMENT.match(owner or "") and _SEGMENT.match(name or "")) or {owner, name} & {".", ".."}:
        raise InvalidRequest(
            "Invalid repository locator. Expected 'owner/repo' or a repository URL."
        )
    return RepoRef(owner=owner, name=name)
