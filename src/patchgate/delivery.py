"""Pull-request delivery engine.

Turns a sandbox-verified diff into a pull request. Two phases:

1. Entry gate (authorize): token, context, integrity and replay checks, ending
   with an atomic consume of the job. Nothing is written before all pass.
2. Workflow (deliver): open a new PR, append a commit to the existing PR for
   the same file (cumulative mode), or rebase that PR when the default branch
   has moved on (capped, with the attempt counter kept in the PR body).
"""

from __future__ import annotations

import re
import time
from typing import Callable

from . import patching, safety
from .config import GitHubConfig, SafetyConfig
from .credentials import CredentialProvider
from .errors import (
    BlockedByCI,
    ContextMismatch,
    GitHubAPIError,
    IntegrityViolation,
    JobNotFound,
    NoOpPatch,
    PatchApplyError,
    PatchGateError,
    PermissionDenied,
    RebaseConflict,
    ReplayDetected,
    RetryLimitReached,
    UnsafePatch,
    provider_error_from,
)
from .github import GitHubClient, RepositoryProvider
from .queue import SandboxQueue
from .telemetry import TelemetrySink
from .tokens import PreviewTokenService
from .types import (
    CreateFile,
    DeliveryResult,
    FileWrite,
    PreviewClaims,
    RemoteFile,
    RepoRef,
    UpdateFile,
    parse_repo_locator,
)

ClientFactory = Callable[[RepoRef, str], RepositoryProvider]

FAILING_CONCLUSIONS = {"failure", "cancelled", "timed_out"}
BLOCKING_MERGE_STATES = {"dirty", "blocked", "draft"}

REBASE_MARKER = re.compile(r"<!-- patchgate:rebase-attempts=(\d+) -->")
REBASE_VISIBLE = re.compile(r"Rebase attempts: \d+/\d+")


def ci_failure_comment(checks_url: str) -> str:
    return (
        "### Automated Edit Blocked: CI Failure\n"
        "PatchGate attempted to update this PR, but detected failing CI checks on the current HEAD.\n\n"
        "**Action Required:**\n"
        "- Please fix the failing checks linked below.\n"
        "- Once CI passes, re-trigger the edit.\n\n"
        f"[View Failing Checks]({checks_url})"
    )


def rebase_success_comment(branch: str) -> str:
    return (
        "### Stale PR Rebased\n"
        "The base branch had moved ahead, so PatchGate automatically rebased this PR "
        "onto the latest default branch.\n\n"
        "- Temporary branch created\n"
        "- Diff re-applied successfully\n"
        f"- Force-pushed to `{branch}`\n"
        "- Ready for review"
    )


def rebase_conflict_comment() -> str:
    return (
        "### Automated Rebase Failed\n"
        "PatchGate attempted to rebase this PR but the diff no longer applies to the default branch.\n"
        "Manual resolution required."
    )


def retry_limit_comment(count: int, limit: int) -> str:
    return (
        "### Retry Limit Exceeded\n"
        f"Automated rebase attempts: {count}/{limit} exceeded.\n"
        "Manual intervention required."
    )


def rebase_attempts(body: str | None) -> int:
    """Read the rebase counter embedded in a PR body (0 if absent)."""
    match = REBASE_MARKER.search(body or "")
    return int(match.group(1)) if match else 0


def rebase_footer(count: int, limit: int) -> str:
    return f"Rebase attempts: {count}/{limit}\n<!-- patchgate:rebase-attempts={count} -->"


def with_rebase_attempts(body: str | None, count: int, limit: int) -> str:
    """Return body with the rebase counter set to count."""
    body = body or ""
    if REBASE_MARKER.search(body):
        body = REBASE_MARKER.sub(f"<!-- patchgate:rebase-attempts={count} -->", body)
        return REBASE_VISIBLE.sub(f"Rebase attempts: {count}/{limit}", body)
    return f"{body.rstrip()}\n\n---\n{rebase_footer(count, limit)}".lstrip()


def safe_branch_component(target_file: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "-", target_file)


class PRDeliveryEngine:
    """
    Entry gate plus pull-request workflow.

    Features:
    - Fail-closed token verification bound to (job, repository, file, diff hash)
    - Replay protection via atomic consume
    - New PR / cumulative commit / automated rebase modes
    - CI gating with audit comments on the PR
    """

    def __init__(
        self,
        queue: SandboxQueue,
        tokens: PreviewTokenService,
        credentials: CredentialProvider,
        github_config: GitHubConfig | None = None,
        safety_config: SafetyConfig | None = None,
        client_factory: ClientFactory | None = None,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.tokens = tokens
        self.credentials = credentials
        self.config = github_config or GitHubConfig()
        self.safety_config = safety_config or SafetyConfig()
        self.client_factory = client_factory or self._default_client
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.clock = clock

    def _default_client(self, repo: RepoRef, token: str) -> RepositoryProvider:
        return GitHubClient(
            repo, token, api_url=self.config.api_url, timeout_seconds=self.config.timeout_seconds
        )

    # Entry gate

    def authorize(
        self, job_id: str, token: str, repository: str, target_file: str, diff: str
    ) -> PreviewClaims:
        """
        Run the entry gate and consume the job.

        Checks run in order and stop at the first failure: token validity,
        context match, diff hash, job existence, replay, atomic consume.

        Raises:
            InvalidPreviewToken, ContextMismatch, IntegrityViolation,
            JobNotFound, ReplayDetected
        """
        try:
            claims = self.tokens.verify(token)

            if (claims.job_id, claims.repository, claims.target_file) != (job_id, repository, target_file):
                raise ContextMismatch("Preview token was issued for a different job, repository or file.")

            diff_hash = self.tokens.hash(diff)
            if diff_hash != claims.diff_hash:
                raise IntegrityViolation("Diff does not match the previewed diff.")

            job = self.queue.get_job(job_id)
            if job is None:
                raise JobNotFound(f"Unknown job: {job_id}")
            if job.diff_hash != diff_hash:
                raise IntegrityViolation("Diff does not match the sandbox-verified diff.")

            if job.consumed:
                raise ReplayDetected("Preview token has already been used.")
            if not self.queue.consume(job_id):
                raise ReplayDetected("Preview token has already been used.")
        except PatchGateError as e:
            self.telemetry.log(job_id or "unknown", "gate_rejected", {"reason": e.reason})
            raise

        self.telemetry.log(job_id, "gate_passed", {"repository": repository, "target_file": target_file})
        return claims

    async def apply(
        self,
        job_id: str,
        token: str,
        repository: str,
        target_file: str,
        diff: str,
        summary: str | None = None,
    ) -> DeliveryResult:
        """Entry gate, write credential, then the delivery workflow."""
        self.authorize(job_id, token, repository, target_file, diff)
        try:
            repo = parse_repo_locator(repository)
            credential = await self.credentials.get_installation_token(repo.owner, repo.name)
            client = self.client_factory(repo, credential)
            result = await self.deliver(client, target_file, diff, summary, run_id=job_id)
        except PatchGateError as e:
            blocked = isinstance(e, (BlockedByCI, RetryLimitReached, RebaseConflict))
            event = "delivery_blocked" if blocked else "delivery_failed"
            self.telemetry.log(job_id, event, {"reason": e.reason, "status": e.status})
            raise
        return result

    # Workflow

    async def deliver(
        self,
        client: RepositoryProvider,
        target_file: str,
        diff: str,
        summary: str | None = None,
        run_id: str = "delivery",
    ) -> DeliveryResult:
        """
        Deliver a verified diff as a pull request.

        Args:
            client: Repository provider authenticated with a write credential
            target_file: Repository-relative file path
            diff: Verified unified diff
            summary: Optional human summary for the commit and PR body
            run_id: Telemetry run id (the job id)

        Returns:
            DeliveryResult with mode "new", "cumulative" or "rebase"
        """
        verdict = safety.check(target_file, diff, self.safety_config)
        if not verdict.safe:
            raise UnsafePatch(verdict.reason or "Unsafe patch.", details=verdict.reason)

        self.telemetry.log(
            run_id, "delivery_started", {"repository": client.repo.full_name, "target_file": target_file}
        )

        stage = "repository lookup"
        try:
            meta = await client.get_repo()
            self._check_write_permission(meta)
            default_branch = meta["default_branch"]

            stage = "reading default branch"
            head_sha = await client.get_branch_head(default_branch)

            stage = "listing pull requests"
            title = f"{self.config.pr_title_prefix}: {target_file}"
            existing = next((pr for pr in await client.list_open_pulls() if pr.get("title") == title), None)

            if existing is None:
                stage = "opening pull request"
                return await self._open_pull(
                    client, default_branch, head_sha, title, target_file, diff, summary, run_id
                )

            if existing["base"]["sha"] != head_sha:
                stage = "rebasing pull request"
                return await self._rebase(client, existing, head_sha, target_file, diff, summary, run_id)

            stage = "checking CI"
            await self._gate_ci(client, existing)

            stage = "updating pull request"
            return await self._append_commit(client, existing, target_file, diff, summary, run_id)
        except GitHubAPIError as e:
            raise provider_error_from(e, stage) from e

    def _check_write_permission(self, meta: dict) -> None:
        perms = meta.get("permissions")
        if isinstance(perms, dict) and not any(perms.get(k) for k in ("push", "maintain", "admin")):
            raise PermissionDenied("Credential does not have write access to this repository.")

    def _commit_message(self, summary: str | None) -> str:
        return f"feat: automated safe edit\n\n{summary}" if summary else "feat: automated safe edit"

    def _committer(self) -> dict[str, str]:
        return {"name": self.config.committer_name, "email": self.config.committer_email}

    def _patched_write(
        self,
        current: RemoteFile | None,
        target_file: str,
        diff: str,
        branch: str,
        summary: str | None,
    ) -> FileWrite:
        original = current.text if current else ""
        patched = patching.apply(original, diff)
        if patched == original:
            raise NoOpPatch(f"Patch produces no change to {target_file}.")
        message = self._commit_message(summary)
        if current is None:
            return CreateFile(path=target_file, content=patched, message=message, branch=branch)
        return UpdateFile(path=target_file, content=patched, message=message, branch=branch, sha=current.sha)

    async def _open_pull(
        self,
        client: RepositoryProvider,
        default_branch: str,
        head_sha: str,
        title: str,
        target_file: str,
        diff: str,
        summary: str | None,
        run_id: str,
    ) -> DeliveryResult:
        stamp = int(self.clock() * 1000)
        branch = f"{self.config.branch_prefix}-{safe_branch_component(target_file)}-{stamp}"

        # Patch against the head the branch is cut from, before creating anything.
        current = await client.get_file(target_file, head_sha)
        write = self._patched_write(current, target_file, diff, branch, summary)

        await client.create_branch(branch, head_sha)
        await client.put_file(write, self._committer())

        body = with_rebase_attempts(
            summary or "Sandbox-verified automated edit.", 0, self.config.max_rebase_attempts
        )
        pr = await client.create_pull(title, branch, default_branch, body)
        await client.add_labels(pr["number"], list(self.config.labels))

        self.telemetry.log(run_id, "pr_opened", {"pr_number": pr["number"], "branch": branch})
        return DeliveryResult(
            pr_url=pr["html_url"],
            branch=branch,
            mode="new",
            pr_number=pr["number"],
            rollback={"file": target_file, "sha": current.sha} if current else None,
        )

    async def _rebase(
        self,
        client: RepositoryProvider,
        pr: dict,
        head_sha: str,
        target_file: str,
        diff: str,
        summary: str | None,
        run_id: str,
    ) -> DeliveryResult:
        limit = self.config.max_rebase_attempts
        number = pr["number"]
        pr_branch = pr["head"]["ref"]
        attempts = rebase_attempts(pr.get("body"))

        if attempts >= limit:
            await client.comment(number, retry_limit_comment(attempts, limit))
            raise RetryLimitReached(
                f"Automated rebase attempts exhausted ({attempts}/{limit}); manual intervention required.",
                details={"pr_number": number, "attempts": attempts},
            )

        temp_branch = f"{self.config.branch_prefix}-rebase-{number}-{int(self.clock() * 1000)}"
        await client.create_branch(temp_branch, head_sha)
        try:
            current = await client.get_file(target_file, temp_branch)
            try:
                write = self._patched_write(current, target_file, diff, temp_branch, summary)
            except PatchApplyError as e:
                await client.comment(number, rebase_conflict_comment())
                raise RebaseConflict(
                    "Diff no longer applies to the default branch; manual resolution required.",
                    details={"pr_number": number, "error": e.message},
                ) from e
            commit_sha = await client.put_file(write, self._committer())
            await client.update_branch(pr_branch, commit_sha, force=True)
            await client.comment(number, rebase_success_comment(pr_branch))
        finally:
            try:
                await client.delete_branch(temp_branch)
            except GitHubAPIError as e:
                self.telemetry.log(
                    run_id, "branch_cleanup_failed", {"branch": temp_branch, "error": e.message}
                )

        await client.update_pull_body(number, with_rebase_attempts(pr.get("body"), attempts + 1, limit))

        self.telemetry.log(run_id, "pr_rebased", {"pr_number": number, "attempt": attempts + 1})
        return DeliveryResult(pr_url=pr["html_url"], branch=pr_branch, mode="rebase", pr_number=number)

    async def _gate_ci(self, client: RepositoryProvider, pr: dict) -> None:
        number = pr["number"]
        detail = await client.get_pull(number)
        checks_url = f"{pr['html_url']}/checks"

        reason = None
        state = detail.get("mergeable_state")
        if detail.get("draft"):
            reason = "pull request is a draft"
        elif state in BLOCKING_MERGE_STATES:
            reason = f"mergeable state is {state}"
        else:
            runs = await client.list_check_runs(pr["head"]["sha"])
            failing = [r.get("name", "?") for r in runs if r.get("conclusion") in FAILING_CONCLUSIONS]
            if failing:
                reason = f"failing checks: {', '.join(failing)}"

        if reason:
            await client.comment(number, ci_failure_comment(checks_url))
            raise BlockedByCI(
                f"Existing pull request is blocked ({reason}). Fix CI first, then re-trigger the edit.",
                details={"pr_number": number, "checks_url": checks_url},
            )

    async def _append_commit(
        self,
        client: RepositoryProvider,
        pr: dict,
        target_file: str,
        diff: str,
        summary: str | None,
        run_id: str,
    ) -> DeliveryResult:
        branch = pr["head"]["ref"]
        current = await client.get_file(target_file, branch)
        write = self._patched_write(current, target_file, diff, branch, summary)
        await client.put_file(write, self._committer())

        self.telemetry.log(run_id, "pr_updated", {"pr_number": pr["number"], "branch": branch})
        return DeliveryResult(pr_url=pr["html_url"], branch=branch, mode="cumulative", pr_number=pr["number"])
