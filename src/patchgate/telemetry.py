"""Telemetry logging for PatchGate - writes directly to JSONL files."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from hashlib import sha256
from pathlib import Path
from typing import Any

from .redaction import redact_text

DEFAULT_TELEMETRY_PATH = ".patchgate/telemetry.jsonl"


@dataclass(frozen=True)
class TelemetrySink:
    """Thin wrapper around JSONL telemetry.

    Event schema:
      {"timestamp": <float>, "run_id": <str>, "type": <str>, "data": <object>}

    The run_id of queue, worker and delivery events is the job id.
    """

    enabled: bool
    path: Path
    include_diffs: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def disabled(cls) -> TelemetrySink:
        return cls(enabled=False, path=Path(DEFAULT_TELEMETRY_PATH))

    def log(self, run_id: str, event_type: str, data: dict[str, Any]) -> None:
        if not self.enabled:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        entry = {
            "timestamp": time.time(),
            "run_id": run_id,
            "type": event_type,
            "data": data,
        }

        with self._lock, open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def diff_fields(self, diff: str) -> dict[str, Any]:
        """Fields describing a diff; excerpt only when diffs are opted in."""
        data: dict[str, Any] = {"diff_len": len(diff or "")}
        if self.include_diffs:
            data["diff_sha256"] = sha256((diff or "").encode("utf-8", errors="replace")).hexdigest()
            data["diff_excerpt"] = redact_text(diff or "", max_len=2000)
        return data


def prune_telemetry_file(telemetry_path: Path, retention_days: int) -> None:
    """Delete telemetry file if it is older than retention_days (mtime-based)."""
    if retention_days <= 0:
        return
    try:
        if not telemetry_path.exists():
            return
        cutoff = time.time() - (retention_days * 86400)
        if telemetry_path.stat().st_mtime < cutoff:
            telemetry_path.unlink(missing_ok=True)
    except OSError:
        # Best-effort; telemetry never fails a job.
        return
