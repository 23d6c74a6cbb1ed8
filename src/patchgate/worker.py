"""Background sandbox worker.

A single polling loop: each tick dequeues at most one job and drives it to a
terminal state before the next tick, so sandbox runs never overlap.
"""

from __future__ import annotations

import asyncio
import time
from functools import partial
from typing import Callable

from .executor import SandboxExecutor
from .queue import SandboxQueue
from .redaction import redact_text
from .telemetry import TelemetrySink
from .tokens import PreviewTokenService
from .types import SandboxJob


class SandboxWorker:
    """Drains the queue, runs the executor and mints preview tokens."""

    def __init__(
        self,
        queue: SandboxQueue,
        executor: SandboxExecutor,
        tokens: PreviewTokenService,
        telemetry: TelemetrySink | None = None,
        poll_interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.executor = executor
        self.tokens = tokens
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock

        self._running = False
        self._stopped: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling loop on the running event loop (no-op if already running)."""
        if self.running:
            return
        self._running = True
        self._stopped = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Stop polling; an in-flight job is allowed to finish."""
        self._running = False
        if self._stopped is not None:
            self._stopped.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def _loop(self) -> None:
        interval = max(0.05, float(self.poll_interval_seconds))
        while self._running:
            await self.process_next()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def process_next(self) -> SandboxJob | None:
        """
        Run one tick.

        Returns:
            The job that was processed, or None if the queue was empty
        """
        job = self.queue.dequeue()
        if job is None:
            return None
        await self._process(job)
        return job

    async def _process(self, job: SandboxJob) -> None:
        try:
            loop = asyncio.get_running_loop()
            log = partial(self.queue.append_log, job.id)
            result = await loop.run_in_executor(None, partial(self.executor.run, job, log))

            if not result.success:
                self.queue.set_status(job.id, "failed", "Sandbox verification failed.")
                self.telemetry.log(
                    job.id,
                    "sandbox_failed",
                    {"project_type": result.project_type, "duration_s": result.duration_s},
                )
                return

            self.telemetry.log(
                job.id,
                "sandbox_passed",
                {"project_type": result.project_type, "duration_s": result.duration_s},
            )

            now = int(self.clock())
            diff_hash = self.tokens.hash(job.diff)
            token = self.tokens.sign(job.id, job.repository, job.target_file, diff_hash, issued_at=now)
            expires_at = now + self.tokens.ttl_seconds
            self.queue.set_success(job.id, token, diff_hash, expires_at)
            self.telemetry.log(job.id, "token_minted", {"diff_hash": diff_hash, "expires_at": expires_at})

        except Exception as e:  # noqa: BLE001
            # A single job never takes the loop down.
            message = redact_text(str(e) or type(e).__name__, max_len=200)
            self.queue.set_status(job.id, "failed", f"Worker error: {message}")
            self.telemetry.log(job.id, "job_failed", {"error": message})
