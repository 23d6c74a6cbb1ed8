"""PatchGate service: one owned instance wiring queue, worker and delivery.

The HTTP surface and the CLI both talk to this facade. Request bodies are
validated with pydantic before anything else happens.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from . import safety
from .config import PatchGateConfig
from .credentials import CredentialProvider, build_credential_provider
from .delivery import ClientFactory, PRDeliveryEngine
from .errors import InvalidRequest, JobNotFound, UnsafePatch
from .executor import SandboxExecutor
from .queue import SandboxQueue
from .telemetry import TelemetrySink, prune_telemetry_file
from .tokens import PreviewTokenService
from .types import parse_repo_locator
from .worker import SandboxWorker


class _Request(BaseModel):
    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore")

    @field_validator("*")
    @classmethod
    def reject_blank(cls, v: Any, info: ValidationInfo) -> Any:
        if info.field_name != "summary" and isinstance(v, str) and not v.strip():
            raise ValueError("must not be empty")
        return v


class PreviewRequest(_Request):
    """Body of an enqueue request."""

    repository: str = Field(validation_alias=AliasChoices("repository", "repoUrl"))
    target_file: str = Field(validation_alias=AliasChoices("targetFile", "target_file"))
    diff: str


class ApplyRequest(_Request):
    """Body of an apply (finalize) request."""

    job_id: str = Field(validation_alias=AliasChoices("jobId", "job_id"))
    token: str
    repository: str = Field(validation_alias=AliasChoices("repository", "repoUrl"))
    target_file: str = Field(validation_alias=AliasChoices("targetFile", "target_file"))
    diff: str
    summary: str | None = None


def _parse(model: type[_Request], payload: Any) -> Any:
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise InvalidRequest(
            f"Missing or invalid field(s): {', '.join(fields) or 'body'}.",
            details=fields,
        ) from e


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class PatchGateService:
    """
    Owned service instance (construct on startup, inject where needed).

    Features:
    - Enqueue with request validation and an up-front safety check
    - Status polling that exposes token fields only on success
    - Apply through the PR delivery engine's entry gate
    - Worker lifecycle (start/stop)
    """

    def __init__(
        self,
        config: PatchGateConfig | None = None,
        *,
        queue: SandboxQueue | None = None,
        executor: SandboxExecutor | None = None,
        credentials: CredentialProvider | None = None,
        client_factory: ClientFactory | None = None,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or PatchGateConfig()
        self.telemetry = telemetry or TelemetrySink(
            enabled=self.config.telemetry.enabled,
            path=Path(self.config.telemetry.log_path),
            include_diffs=self.config.telemetry.include_diffs,
        )
        self.queue = queue if queue is not None else SandboxQueue(self.telemetry)
        self.tokens = PreviewTokenService(self.config.tokens)
        self.executor = executor or SandboxExecutor(self.config.sandbox)
        self.worker = SandboxWorker(
            self.queue,
            self.executor,
            self.tokens,
            telemetry=self.telemetry,
            poll_interval_seconds=self.config.worker.poll_interval_seconds,
            clock=clock,
        )
        self.delivery = PRDeliveryEngine(
            self.queue,
            self.tokens,
            credentials if credentials is not None else build_credential_provider(self.config.github),
            github_config=self.config.github,
            safety_config=self.config.safety,
            client_factory=client_factory,
            telemetry=self.telemetry,
            clock=clock,
        )

    async def start(self) -> None:
        if self.telemetry.enabled:
            prune_telemetry_file(self.telemetry.path, self.config.telemetry.retention_days)
        if self.config.worker.enabled:
            self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop()

    def enqueue(self, payload: Any) -> dict[str, Any]:
        """
        Validate and queue a preview request.

        Returns:
            {"success", "jobId", "status": "queued", "message"}

        Raises:
            InvalidRequest: Missing/mistyped fields or a bad repository locator
            UnsafePatch: The safety validator rejected the diff
        """
        req = _parse(PreviewRequest, payload)
        parse_repo_locator(req.repository)

        verdict = safety.check(req.target_file, req.diff, self.config.safety)
        if not verdict.safe:
            raise UnsafePatch(verdict.reason or "Unsafe patch.", details=verdict.reason)

        job_id = self.queue.enqueue(req.repository, req.target_file, req.diff)
        return {
            "success": True,
            "jobId": job_id,
            "status": "queued",
            "message": "Sandbox verification started.",
        }

    def status(self, job_id: str) -> dict[str, Any]:
        """Status poll; token, expiresAt and diffHash appear only on success."""
        if not isinstance(job_id, str) or not job_id.strip():
            raise InvalidRequest("Missing job id.")
        job = self.queue.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job not found: {job_id}")

        out: dict[str, Any] = {
            "success": True,
            "jobId": job.id,
            "status": job.status,
            "logs": list(job.logs),
        }
        if job.status == "success":
            out["token"] = job.token
            out["expiresAt"] = _iso(job.expires_at)
            out["diffHash"] = job.diff_hash
        return out

    async def apply(self, payload: Any) -> dict[str, Any]:
        """Finalize a previewed edit into a pull request."""
        req = _parse(ApplyRequest, payload)
        result = await self.delivery.apply(
            req.job_id,
            req.token,
            req.repository,
            req.target_file,
            req.diff,
            summary=req.summary,
        )
        return result.to_dict()
