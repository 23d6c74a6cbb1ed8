from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

TERMINAL_EVENTS = ("token_minted", "sandbox_failed", "job_failed")
DELIVERY_OK = ("pr_opened", "pr_updated", "pr_rebased")
DELIVERY_FAIL = ("delivery_blocked", "delivery_failed")


@dataclass(frozen=True)
class StatusWindow:
    seconds: float


def _iter_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            try:
                events.append(json.loads(ln))
            except json.JSONDecodeError:
                continue
    return events


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    s = sorted(values)
    idx = int(round((pct / 100.0) * (len(s) - 1)))
    return float(s[max(0, min(len(s) - 1, idx))])


def _rate(ok_count: int, fail_count: int) -> float | None:
    denom = ok_count + fail_count
    return (ok_count / denom) if denom else None


def compute_status(telemetry_path: Path, *, window: StatusWindow | None = None) -> dict[str, Any]:
    """Compute ops metrics for the sandbox and delivery pipeline from telemetry.jsonl."""
    window = window or StatusWindow(seconds=3600.0)
    cutoff = time.time() - float(window.seconds)

    events = _iter_events(telemetry_path)
    recent = [e for e in events if float(e.get("timestamp", 0.0) or 0.0) >= cutoff]

    def count(*types: str) -> int:
        return sum(1 for e in recent if e.get("type") in types)

    # Sandbox latency: job_dequeued -> terminal event, matched by run_id (the job id).
    started: dict[str, float] = {}
    latencies: list[float] = []
    rejections: Counter[str] = Counter()
    for e in recent:
        rid = str(e.get("run_id") or "")
        ts = float(e.get("timestamp", 0.0) or 0.0)
        etype = e.get("type")
        if etype == "job_dequeued":
            started[rid] = ts
        elif etype in TERMINAL_EVENTS and rid in started:
            latencies.append(max(0.0, ts - started.pop(rid)))
        elif etype == "gate_rejected":
            rejections[str((e.get("data") or {}).get("reason", "unknown"))] += 1

    last_delivery = next(
        (e for e in reversed(events) if e.get("type") in DELIVERY_OK + DELIVERY_FAIL),
        None,
    )

    return {
        "window_seconds": window.seconds,
        "telemetry_path": str(telemetry_path),
        "jobs_per_hour": (count("job_enqueued") / (window.seconds / 3600.0)) if window.seconds else 0.0,
        "sandbox_pass_rate": _rate(count("sandbox_passed"), count("sandbox_failed", "job_failed")),
        "delivery_success_rate": _rate(count(*DELIVERY_OK), count(*DELIVERY_FAIL)),
        "gate_rejections": dict(rejections),
        "sandbox_latency_s_p50": _percentile(latencies, 50.0),
        "sandbox_latency_s_p95": _percentile(latencies, 95.0),
        "last_delivery": last_delivery,
    }
