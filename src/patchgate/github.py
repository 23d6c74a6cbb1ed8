"""Async GitHub REST client for the delivery engine.

Thin and non-retrying: every non-2xx response becomes a GitHubAPIError that
the delivery engine translates into the caller-facing taxonomy.
"""

from __future__ import annotations

import base64
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .errors import GitHubAPIError
from .types import CreateFile, FileWrite, RemoteFile, RepoRef, UpdateFile


class RepositoryProvider(Protocol):
    """Repository operations used by PRDeliveryEngine."""

    repo: RepoRef

    async def get_repo(self) -> dict[str, Any]: ...
    async def get_branch_head(self, branch: str) -> str: ...
    async def create_branch(self, branch: str, sha: str) -> None: ...
    async def update_branch(self, branch: str, sha: str, force: bool = True) -> None: ...
    async def delete_branch(self, branch: str) -> None: ...
    async def get_file(self, path: str, ref: str) -> RemoteFile | None: ...
    async def put_file(self, write: FileWrite, committer: dict[str, str] | None = None) -> str: ...
    async def list_open_pulls(self) -> list[dict[str, Any]]: ...
    async def get_pull(self, number: int) -> dict[str, Any]: ...
    async def create_pull(self, title: str, head: str, base: str, body: str) -> dict[str, Any]: ...
    async def update_pull_body(self, number: int, body: str) -> None: ...
    async def add_labels(self, number: int, labels: list[str]) -> None: ...
    async def comment(self, number: int, body: str) -> None: ...
    async def list_check_runs(self, ref: str) -> list[dict[str, Any]]: ...


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase


class GitHubClient:
    """
    Repository-scoped GitHub REST client.

    Features:
    - Installation-token auth
    - Contents API reads/writes (base64 bodies)
    - Rate-limit detection (429, or 403 with an exhausted quota header)
    """

    PAGE_SIZE = 100

    def __init__(
        self,
        repo: RepoRef,
        token: str,
        api_url: str = "https://api.github.com",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def _prefix(self) -> str:
        return f"/repos/{self.repo.owner}/{self.repo.name}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={
                    "Accept": "application/vnd.github+json",
                    "Authorization": f"Bearer {self.token}",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            ) as client:
                response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise GitHubAPIError(0, f"{type(e).__name__}: {e}") from e

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            rate_limited = response.status_code == 429 or (
                response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"
            )
            raise GitHubAPIError(response.status_code, _error_message(response), rate_limited=rate_limited)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get_repo(self) -> dict[str, Any]:
        return await self._request("GET", self._prefix)

    async def get_branch_head(self, branch: str) -> str:
        data = await self._request("GET", f"{self._prefix}/git/ref/heads/{quote(branch, safe='/')}")
        return str(data["object"]["sha"])

    async def create_branch(self, branch: str, sha: str) -> None:
        await self._request(
            "POST", f"{self._prefix}/git/refs", json={"ref": f"refs/heads/{branch}", "sha": sha}
        )

    async def update_branch(self, branch: str, sha: str, force: bool = True) -> None:
        await self._request(
            "PATCH",
            f"{self._prefix}/git/refs/heads/{quote(branch, safe='/')}",
            json={"sha": sha, "force": force},
        )

    async def delete_branch(self, branch: str) -> None:
        await self._request(
            "DELETE", f"{self._prefix}/git/refs/heads/{quote(branch, safe='/')}", allow_404=True
        )

    async def get_file(self, path: str, ref: str) -> RemoteFile | None:
        data = await self._request(
            "GET",
            f"{self._prefix}/contents/{quote(path.lstrip('/'), safe='/')}",
            params={"ref": ref},
            allow_404=True,
        )
        if data is None:
            return None
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise GitHubAPIError(422, f"{path} is not a file")
        # Files over 1 MB come back with encoding "none" and no content.
        if data.get("encoding") != "base64":
            raise GitHubAPIError(
                422, f"{path} content is not available inline (encoding={data.get('encoding')!r})"
            )
        try:
            text = base64.b64decode(data.get("content") or "").decode("utf-8")
        except ValueError as e:  # binascii.Error or UnicodeDecodeError
            raise GitHubAPIError(422, f"{path} is not a UTF-8 text file") from e
        return RemoteFile(path=data.get("path", path), text=text, sha=data["sha"])

    async def put_file(self, write: FileWrite, committer: dict[str, str] | None = None) -> str:
        """
        Commit a whole file body.

        Args:
            write: CreateFile for a new path, UpdateFile (with blob sha) otherwise
            committer: Optional {"name", "email"} identity

        Returns:
            Commit sha
        """
        body: dict[str, Any] = {
            "message": write.message,
            "content": base64.b64encode(write.content.encode("utf-8")).decode("ascii"),
            "branch": write.branch,
        }
        if isinstance(write, UpdateFile):
            body["sha"] = write.sha
        elif not isinstance(write, CreateFile):
            raise TypeError(f"Unsupported file write: {type(write).__name__}")
        if committer:
            body["committer"] = committer
        data = await self._request(
            "PUT", f"{self._prefix}/contents/{quote(write.path.lstrip('/'), safe='/')}", json=body
        )
        return str(data["commit"]["sha"])

    async def list_open_pulls(self) -> list[dict[str, Any]]:
        pulls: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._request(
                "GET",
                f"{self._prefix}/pulls",
                params={"state": "open", "per_page": self.PAGE_SIZE, "page": page},
            )
            pulls.extend(batch or [])
            if not batch or len(batch) < self.PAGE_SIZE:
                return pulls
            page += 1

    async def get_pull(self, number: int) -> dict[str, Any]:
        return await self._request("GET", f"{self._prefix}/pulls/{number}")

    async def create_pull(self, title: str, head: str, base: str, body: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self._prefix}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )

    async def update_pull_body(self, number: int, body: str) -> None:
        await self._request("PATCH", f"{self._prefix}/pulls/{number}", json={"body": body})

    async def add_labels(self, number: int, labels: list[str]) -> None:
        if labels:
            await self._request("POST", f"{self._prefix}/issues/{number}/labels", json={"labels": labels})

    async def comment(self, number: int, body: str) -> None:
        await self._request("POST", f"{self._prefix}/issues/{number}/comments", json={"body": body})

    async def list_check_runs(self, ref: str) -> list[dict[str, Any]]:
        runs: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"{self._prefix}/commits/{quote(ref, safe='')}/check-runs",
                params={"per_page": self.PAGE_SIZE, "page": page},
            )
            batch = (data or {}).get("check_runs", [])
            runs.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                return runs
            page += 1
