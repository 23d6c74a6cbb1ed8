"""In-memory sandbox job queue.

One SandboxQueue instance is owned by the service and injected into the
worker and the delivery engine. Mutations hold a lock: executor log callbacks
arrive from executor threads while the event loop serves status polls.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone

from .telemetry import TelemetrySink
from .types import JOB_STATUSES, SandboxJob


def _stamp(status: str, message: str) -> str:
    iso = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"[{iso}] [{status.upper()}] {message}"


class SandboxQueue:
    """FIFO of sandbox jobs plus the job map that backs status polling."""

    def __init__(self, telemetry: TelemetrySink | None = None):
        self.telemetry = telemetry or TelemetrySink.disabled()
        self._jobs: dict[str, SandboxJob] = {}
        self._order: deque[str] = deque()
        self._lock = threading.RLock()

    def enqueue(self, repository: str, target_file: str, diff: str) -> str:
        """Create a queued job and return its id."""
        now = time.time()
        job = SandboxJob(
            id=str(uuid.uuid4()),
            repository=repository,
            target_file=target_file,
            diff=diff,
            created_at=now,
            updated_at=now,
        )
        job.logs.append(_stamp("queued", "Job queued."))
        with self._lock:
            self._jobs[job.id] = job
            self._order.append(job.id)

        self.telemetry.log(
            job.id,
            "job_enqueued",
            {"repository": repository, "target_file": target_file, **self.telemetry.diff_fields(diff)},
        )
        return job.id

    def dequeue(self) -> SandboxJob | None:
        """
        Pop the next job that is still queued and mark it running.

        Ids whose job left the queued state in the meantime are skipped.
        """
        with self._lock:
            while self._order:
                job_id = self._order.popleft()
                job = self._jobs.get(job_id)
                if job is None or job.status != "queued":
                    continue
                job.status = "running"
                job.updated_at = time.time()
                job.logs.append(_stamp("running", "Job dequeued, starting execution..."))
                break
            else:
                return None

        self.telemetry.log(job.id, "job_dequeued", {"queued_s": round(job.updated_at - job.created_at, 3)})
        return job

    def set_status(self, job_id: str, status: str, log_line: str | None = None) -> None:
        """Move a job to queued/running/failed, appending a log line."""
        if status not in JOB_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        if status == "success":
            raise ValueError("Use set_success() to complete a job")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = status
            job.updated_at = time.time()
            if log_line:
                job.logs.append(_stamp(status, log_line))

    def append_log(self, job_id: str, line: str) -> None:
        """Append a timestamped log line without changing status."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.logs.append(_stamp(job.status, line))
            job.updated_at = time.time()

    def set_success(self, job_id: str, token: str, diff_hash: str, expires_at: float) -> None:
        """Complete a job; the security fields are set together with the status."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.token = token
            job.diff_hash = diff_hash
            job.expires_at = expires_at
            job.status = "success"
            job.updated_at = time.time()
            job.logs.append(_stamp("success", "Proof-of-Preview Token Minted."))

    def consume(self, job_id: str) -> bool:
        """
        Mark a job consumed.

        Returns:
            True only for the call that flipped the flag; False if the job is
            unknown or was already consumed
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.consumed:
                return False
            job.consumed = True
            job.consumed_at = time.time()
            job.updated_at = job.consumed_at
            return True

    def get_job(self, job_id: str) -> SandboxJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def pending(self) -> int:
        with self._lock:
            return sum(1 for jid in self._order if (j := self._jobs.get(jid)) and j.status == "queued")

    def __len__(self) -> int:
        return len(self._jobs)
