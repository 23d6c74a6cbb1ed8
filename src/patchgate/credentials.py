"""Installation credentials for the repository host.

The delivery engine only needs ``get_installation_token(owner, repo)``;
GitHubAppCredentials negotiates short-lived installation tokens and memoizes
them in an InstallationTokenCache.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Callable, Protocol

import httpx
import jwt

from .config import GitHubConfig
from .errors import CredentialError


class CredentialProvider(Protocol):
    async def get_installation_token(self, owner: str, repo: str) -> str: ...


def _to_epoch(expires_at: str | float | int) -> float:
    if isinstance(expires_at, (int, float)):
        return float(expires_at)
    # GitHub returns e.g. "2024-01-01T12:00:00Z".
    return datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()


class InstallationTokenCache:
    """
    Memoizes installation tokens per installation id.

    An entry is never handed out once ``now > expires_at - buffer``, so a
    token cannot expire in the middle of an operation.
    """

    def __init__(self, buffer_seconds: float = 300.0, clock: Callable[[], float] = time.time):
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self._entries: dict[int, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set(self, installation_id: int, token: str, expires_at: str | float | int) -> None:
        with self._lock:
            self._entries[installation_id] = (token, _to_epoch(expires_at))

    def get(self, installation_id: int) -> str | None:
        with self._lock:
            entry = self._entries.get(installation_id)
            if entry is None:
                return None
            token, expires_at = entry
            if self._clock() > expires_at - self.buffer_seconds:
                del self._entries[installation_id]
                return None
            return token

    def invalidate(self, installation_id: int) -> None:
        with self._lock:
            self._entries.pop(installation_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class StaticTokenProvider:
    """Serves one fixed token (development and tests)."""

    def __init__(self, token: str):
        if not token:
            raise CredentialError("Static token provider requires a token")
        self.token = token

    async def get_installation_token(self, owner: str, repo: str) -> str:  # noqa: ARG002
        return self.token


class UnconfiguredCredentials:
    """Placeholder used when no credentials are configured; every request fails."""

    async def get_installation_token(self, owner: str, repo: str) -> str:  # noqa: ARG002
        raise CredentialError(
            "No repository credentials configured (set GITHUB_APP_ID/GITHUB_APP_PRIVATE_KEY "
            "or PATCHGATE_GITHUB_TOKEN)"
        )


class GitHubAppCredentials:
    """
    GitHub App installation-token negotiation.

    Features:
    - RS256 app JWT (iat backdated 60s for clock skew, 10 minute expiry)
    - Installation lookup per repository
    - Cached installation tokens with pre-expiry refresh
    """

    def __init__(
        self,
        app_id: str,
        private_key: str,
        api_url: str = "https://api.github.com",
        cache: InstallationTokenCache | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not app_id or not private_key:
            raise CredentialError("GitHub App credentials are not configured")
        self.app_id = app_id
        self.private_key = private_key
        self.api_url = api_url.rstrip("/")
        self.cache = cache if cache is not None else InstallationTokenCache()
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def app_jwt(self, now: float | None = None) -> str:
        now_i = int(now if now is not None else time.time())
        payload = {"iat": now_i - 60, "exp": now_i + 10 * 60, "iss": self.app_id}
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.app_jwt()}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    async def resolve_installation_id(self, owner: str, repo: str) -> int:
        async with self._client() as client:
            try:
                res = await client.get(f"/repos/{owner}/{repo}/installation")
            except httpx.HTTPError as e:
                raise CredentialError(f"Installation lookup failed: {e}") from e
        if res.status_code == 404:
            raise CredentialError("App is not installed on this repository.", status=404)
        if res.status_code != 200:
            raise CredentialError(f"Installation lookup failed with status {res.status_code}")
        data: dict[str, Any] = res.json()
        return int(data["id"])

    async def get_installation_token(self, owner: str, repo: str) -> str:
        installation_id = await self.resolve_installation_id(owner, repo)

        cached = self.cache.get(installation_id)
        if cached:
            return cached

        async with self._client() as client:
            try:
                res = await client.post(f"/app/installations/{installation_id}/access_tokens")
            except httpx.HTTPError as e:
                raise CredentialError(f"Failed to negotiate installation token: {e}") from e
        if res.status_code not in (200, 201):
            raise CredentialError(
                f"Failed to negotiate installation token: status {res.status_code}"
            )
        data = res.json()
        self.cache.set(installation_id, data["token"], data["expires_at"])
        return str(data["token"])


def build_credential_provider(
    github_config: GitHubConfig, cache: InstallationTokenCache | None = None
) -> CredentialProvider:
    """Pick the credential provider for a GitHubConfig."""
    if github_config.app_id and github_config.private_key:
        if cache is None:
            cache = InstallationTokenCache(github_config.token_refresh_buffer_seconds)
        return GitHubAppCredentials(
            github_config.app_id,
            github_config.private_key,
            api_url=github_config.api_url,
            cache=cache,
            timeout_seconds=github_config.timeout_seconds,
        )
    if github_config.static_token:
        return StaticTokenProvider(github_config.static_token)
    return UnconfiguredCredentials()
