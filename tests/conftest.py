"""Global pytest configuration and shared fakes for hermetic test runs."""

from __future__ import annotations

import copy
import hashlib
import os
import time
import uuid
from typing import Any

import pytest

from patchgate.errors import GitHubAPIError
from patchgate.types import CreateFile, RemoteFile, RepoRef, SandboxJob, SandboxResult, UpdateFile

PACKAGE_JSON = """{
  "name": "app",
  "version": "1.0.0",
  "scripts": {
    "test": "echo ok"
  }
}
"""

ADD_SCRIPT_DIFF = """--- a/package.json
+++ b/package.json
@@ -3,5 +3,6 @@
   "version": "1.0.0",
   "scripts": {
-    "test": "echo ok"
+    "test": "echo ok",
+    "lint": "echo lint"
   }
 }
"""

PATCHED_PACKAGE_JSON = """{
  "name": "app",
  "version": "1.0.0",
  "scripts": {
    "test": "echo ok",
    "lint": "echo lint"
  }
}
"""


def pytest_sessionstart(session):  # noqa: ARG001
    # Most environments won't have Docker available; allow explicit opt-in.
    os.environ.setdefault("SKIP_DOCKER_TESTS", "1")


def _blob_sha(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class FakeRepositoryHost:
    """In-memory repository host implementing the delivery engine's provider interface."""

    def __init__(self, owner: str = "acme", name: str = "app", files: dict[str, str] | None = None):
        self.repo = RepoRef(owner, name)
        self.meta: dict[str, Any] = {
            "full_name": self.repo.full_name,
            "default_branch": "main",
            "permissions": {"admin": False, "maintain": False, "push": True, "pull": True},
        }
        self.commits: dict[str, dict[str, str]] = {}
        self.branches: dict[str, str] = {}
        self.pulls: list[dict[str, Any]] = []
        self.comments: dict[int, list[str]] = {}
        self.labels: dict[int, list[str]] = {}
        self.check_runs: dict[str, list[dict[str, Any]]] = {}
        self.writes: list[dict[str, Any]] = []
        self.calls: list[str] = []
        self.branches["main"] = self._commit(dict(files or {}))

    # Test helpers

    def _commit(self, files: dict[str, str]) -> str:
        sha = uuid.uuid4().hex + uuid.uuid4().hex[:8]
        self.commits[sha] = files
        return sha

    def advance_default_branch(self, path: str, text: str) -> str:
        """Land a commit on main behind the engine's back."""
        files = dict(self.commits[self.branches["main"]])
        files[path] = text
        self.branches["main"] = self._commit(files)
        return self.branches["main"]

    def file_at(self, ref: str, path: str) -> str | None:
        return self.commits[self.branches.get(ref, ref)].get(path)

    def _sync_pulls(self, branch: str) -> None:
        # Pushing to a PR head re-syncs its recorded base.
        for p in self.pulls:
            if p["head"]["ref"] == branch:
                p["base"]["sha"] = self.branches[p["base"]["ref"]]

    def _refresh(self, pr: dict[str, Any]) -> dict[str, Any]:
        out = copy.deepcopy(pr)
        if pr["head"]["ref"] in self.branches:
            out["head"]["sha"] = self.branches[pr["head"]["ref"]]
        return out

    # Provider interface

    async def get_repo(self) -> dict[str, Any]:
        self.calls.append("get_repo")
        return copy.deepcopy(self.meta)

    async def get_branch_head(self, branch: str) -> str:
        self.calls.append(f"get_branch_head:{branch}")
        if branch not in self.branches:
            raise GitHubAPIError(404, "Not Found")
        return self.branches[branch]

    async def create_branch(self, branch: str, sha: str) -> None:
        self.calls.append(f"create_branch:{branch}")
        if branch in self.branches:
            raise GitHubAPIError(422, "Reference already exists")
        self.branches[branch] = sha

    async def update_branch(self, branch: str, sha: str, force: bool = True) -> None:
        self.calls.append(f"update_branch:{branch}:force={force}")
        if branch not in self.branches:
            raise GitHubAPIError(422, "Reference does not exist")
        self.branches[branch] = sha
        self._sync_pulls(branch)

    async def delete_branch(self, branch: str) -> None:
        self.calls.append(f"delete_branch:{branch}")
        self.branches.pop(branch, None)

    async def get_file(self, path: str, ref: str) -> RemoteFile | None:
        self.calls.append(f"get_file:{path}@{ref}")
        sha = self.branches.get(ref, ref)
        if sha not in self.commits:
            raise GitHubAPIError(404, "No commit found for the ref")
        text = self.commits[sha].get(path)
        if text is None:
            return None
        return RemoteFile(path=path, text=text, sha=_blob_sha(text))

    async def put_file(self, write, committer: dict[str, str] | None = None) -> str:
        self.calls.append(f"put_file:{write.path}@{write.branch}")
        if write.branch not in self.branches:
            raise GitHubAPIError(404, "Branch not found")
        files = dict(self.commits[self.branches[write.branch]])
        current = files.get(write.path)
        if isinstance(write, UpdateFile):
            if current is None or _blob_sha(current) != write.sha:
                raise GitHubAPIError(409, "sha does not match")
        elif isinstance(write, CreateFile):
            if current is not None:
                raise GitHubAPIError(422, "sha wasn't supplied")
        files[write.path] = write.content
        sha = self._commit(files)
        self.branches[write.branch] = sha
        self._sync_pulls(write.branch)
        self.writes.append(
            {"path": write.path, "branch": write.branch, "message": write.message, "committer": committer}
        )
        return sha

    async def list_open_pulls(self) -> list[dict[str, Any]]:
        self.calls.append("list_open_pulls")
        return [self._refresh(p) for p in self.pulls if p["state"] == "open"]

    async def get_pull(self, number: int) -> dict[str, Any]:
        self.calls.append(f"get_pull:{number}")
        for p in self.pulls:
            if p["number"] == number:
                return self._refresh(p)
        raise GitHubAPIError(404, "Not Found")

    async def create_pull(self, title: str, head: str, base: str, body: str) -> dict[str, Any]:
        self.calls.append(f"create_pull:{head}")
        number = len(self.pulls) + 1
        pr = {
            "number": number,
            "title": title,
            "body": body,
            "state": "open",
            "draft": False,
            "mergeable_state": "clean",
            "html_url": f"https://github.com/{self.repo.full_name}/pull/{number}",
            "head": {"ref": head, "sha": self.branches[head]},
            "base": {"ref": base, "sha": self.branches[base]},
        }
        self.pulls.append(pr)
        return copy.deepcopy(pr)

    async def update_pull_body(self, number: int, body: str) -> None:
        self.calls.append(f"update_pull_body:{number}")
        for p in self.pulls:
            if p["number"] == number:
                p["body"] = body

    async def add_labels(self, number: int, labels: list[str]) -> None:
        self.calls.append(f"add_labels:{number}")
        self.labels.setdefault(number, []).extend(labels)

    async def comment(self, number: int, body: str) -> None:
        self.calls.append(f"comment:{number}")
        self.comments.setdefault(number, []).append(body)

    async def list_check_runs(self, ref: str) -> list[dict[str, Any]]:
        self.calls.append(f"list_check_runs:{ref}")
        return list(self.check_runs.get(ref, []))


class ScriptedExecutor:
    """Executor stand-in: records jobs and returns a fixed outcome."""

    def __init__(self, success: bool = True, error: Exception | None = None):
        self.success = success
        self.error = error
        self.jobs: list[SandboxJob] = []

    def run(self, job: SandboxJob, log=None) -> SandboxResult:
        self.jobs.append(job)
        if log is not None:
            log("Applying patch: patch -p1 --batch --forward -i edit.patch")
        if self.error is not None:
            raise self.error
        return SandboxResult(success=self.success, logs=["scripted"], project_type="node", duration_s=0.01)


@pytest.fixture
def package_json() -> str:
    return PACKAGE_JSON


@pytest.fixture
def add_script_diff() -> str:
    return ADD_SCRIPT_DIFF


@pytest.fixture
def patched_package_json() -> str:
    return PATCHED_PACKAGE_JSON


@pytest.fixture
def fake_host() -> FakeRepositoryHost:
    return FakeRepositoryHost(files={"package.json": PACKAGE_JSON, "README.md": "# app\n"})


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def make_executor():
    return ScriptedExecutor


@pytest.fixture
def make_host():
    return FakeRepositoryHost


def mint_preview(queue, tokens, repository: str, target_file: str, diff: str) -> tuple[str, str]:
    """Drive a job to success the way the worker does; returns (job_id, token)."""
    job_id = queue.enqueue(repository, target_file, diff)
    queue.dequeue()
    diff_hash = tokens.hash(diff)
    token = tokens.sign(job_id, repository, target_file, diff_hash)
    queue.set_success(job_id, token, diff_hash, time.time() + tokens.ttl_seconds)
    return job_id, token


@pytest.fixture
def mint():
    return mint_preview
