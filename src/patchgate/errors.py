"""Caller-facing error taxonomy.

Every failure that leaves the service carries a machine-readable ``reason``
and an HTTP-style ``status``.
"""

from __future__ import annotations

from typing import Any


class PatchGateError(Exception):
    """Base class for all caller-facing failures."""

    reason = "internal_error"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        status: int | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.reason,
            "message": self.message,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


# Validation


class InvalidRequest(PatchGateError):
    reason = "invalid_request"
    status = 400


class NoOpPatch(PatchGateError):
    reason = "noop_patch"
    status = 400


class UnsafePatch(PatchGateError):
    reason = "unsafe_patch"
    status = 422


# Security gate


class InvalidPreviewToken(PatchGateError):
    reason = "invalid_token"
    status = 401


class ContextMismatch(PatchGateError):
    reason = "context_mismatch"
    status = 403


class IntegrityViolation(PatchGateError):
    reason = "integrity_violation"
    status = 409


class JobNotFound(PatchGateError):
    reason = "job_not_found"
    status = 404


class ReplayDetected(PatchGateError):
    reason = "replay_detected"
    status = 409


# Patch engine


class PatchApplyError(PatchGateError):
    """Raised when a unified diff cannot be parsed or applied."""

    reason = "patch_apply_failed"
    status = 409


# Workflow conflicts


class BlockedByCI(PatchGateError):
    reason = "blocked_by_ci"
    status = 409


class RebaseConflict(PatchGateError):
    reason = "rebase_conflict"
    status = 409


class RetryLimitReached(PatchGateError):
    reason = "retry_limit_reached"
    status = 429


# Upstream provider


class ProviderError(PatchGateError):
    reason = "provider_error"
    status = 502


class RepositoryNotFound(ProviderError):
    reason = "repository_not_found"
    status = 404


class PermissionDenied(ProviderError):
    reason = "permission_denied"
    status = 403


class CredentialError(ProviderError):
    reason = "credential_error"
    status = 403


class GitHubAPIError(RuntimeError):
    """Raw error from the repository host API (not caller-facing)."""

    def __init__(self, status: int, message: str, *, rate_limited: bool = False):
        super().__init__(f"GitHub API error {status}: {message}")
        self.status = status
        self.message = message
        self.rate_limited = rate_limited


def provider_error_from(exc: GitHubAPIError, context: str = "") -> ProviderError:
    """
    Translate a repository host failure into the caller-facing taxonomy.

    Args:
        exc: Raw API error
        context: What was being attempted, e.g. "repository lookup"

    Returns:
        ProviderError subclass carrying a translated status
    """
    prefix = f"{context}: " if context else ""
    if exc.status == 429 or exc.rate_limited:
        return ProviderError(
            f"{prefix}rate limited by repository host",
            reason="rate_limited",
            status=429,
        )
    if exc.status == 404 and context == "repository lookup":
        return RepositoryNotFound(f"{prefix}repository not found or not accessible")
    if exc.status == 403:
        return PermissionDenied(f"{prefix}permission denied ({exc.message})")
    if exc.status == 401:
        return CredentialError(f"{prefix}credential rejected", status=401)
    if exc.status == 404:
        return ProviderError(f"{prefix}{exc.message}", status=404)
    if exc.status == 0:
        return ProviderError(f"{prefix}network error ({exc.message})")
    return ProviderError(f"{prefix}{exc.message}", details={"upstream_status": exc.status})
