"""Command-line interface for PatchGate.

Commands:
- patchgate serve: Run the HTTP service (worker included)
- patchgate sandbox <repo> <file> <diff>: One-shot sandbox verification
- patchgate check <file> <diff>: Run the safety validator
- patchgate hash <diff>: Print the diff hash bound into preview tokens
- patchgate doctor: Preflight checks for sandbox host tools
- patchgate status: Operational metrics from telemetry
"""

from __future__ import annotations

import json
import sys
import uuid
from pathlib import Path

import click
import uvicorn

from . import __version__, safety
from .api import create_app
from .config import PatchGateConfig, load_config
from .executor import SandboxExecutor
from .runner import SandboxRunner
from .service import PatchGateService
from .status import StatusWindow, compute_status
from .tokens import compute_diff_hash
from .types import SandboxJob

CONFIG_OPTION = click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")


def _load(config: str | None) -> PatchGateConfig:
    return load_config(".", config_path=config)


def _read_diff(diff_file: str) -> str:
    if diff_file == "-":
        return sys.stdin.read()
    return Path(diff_file).read_text(encoding="utf-8")


@click.group()
@click.version_option(version=__version__, prog_name="patchgate")
def cli() -> None:
    """PatchGate - sandbox-verified pull requests for proposed edits."""
    pass


@cli.command()
@CONFIG_OPTION
@click.option("--host", help="Bind address (default: server.host)")
@click.option("--port", type=int, help="Port (default: server.port)")
def serve(config: str | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the background sandbox worker.

    Example:
        patchgate serve --port 8080
    """
    pg_config = _load(config)
    app = create_app(PatchGateService(pg_config))
    uvicorn.run(app, host=host or pg_config.server.host, port=port or pg_config.server.port)


@cli.command()
@click.argument("repository")
@click.argument("target_file")
@click.argument("diff_file", type=click.Path(allow_dash=True))
@CONFIG_OPTION
def sandbox(repository: str, target_file: str, diff_file: str, config: str | None) -> None:
    """Clone, patch and build REPOSITORY once; exit code reflects the outcome.

    Example:
        patchgate sandbox acme/app package.json edit.diff
    """
    pg_config = _load(config)
    diff = _read_diff(diff_file)

    verdict = safety.check(target_file, diff, pg_config.safety)
    if not verdict.safe:
        click.echo(f"✗ Rejected by safety validator: {verdict.reason}")
        sys.exit(2)

    job = SandboxJob(id=str(uuid.uuid4()), repository=repository, target_file=target_file, diff=diff)
    result = SandboxExecutor(pg_config.sandbox).run(job, log=click.echo)

    click.echo()
    click.echo(f"Project type: {result.project_type}")
    click.echo(f"Duration: {result.duration_s:.2f}s")
    if result.success:
        click.echo("✓ Sandbox verification passed")
        click.echo(f"Diff hash: {compute_diff_hash(diff)}")
        sys.exit(0)
    click.echo("✗ Sandbox verification failed")
    sys.exit(1)


@cli.command()
@click.argument("target_file")
@click.argument("diff_file", type=click.Path(allow_dash=True))
@CONFIG_OPTION
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def check(target_file: str, diff_file: str, config: str | None, format: str) -> None:
    """Run the safety validator on a diff for TARGET_FILE."""
    pg_config = _load(config)
    verdict = safety.check(target_file, _read_diff(diff_file), pg_config.safety)

    if format == "json":
        click.echo(
            json.dumps(
                {
                    "safe": verdict.safe,
                    "reason": verdict.reason,
                    "added": verdict.added,
                    "removed": verdict.removed,
                },
                indent=2,
            )
        )
    elif verdict.safe:
        click.echo(f"✓ Safe (+{verdict.added} -{verdict.removed})")
    else:
        click.echo(f"✗ Unsafe: {verdict.reason}")
    sys.exit(0 if verdict.safe else 1)


@cli.command("hash")
@click.argument("diff_file", type=click.Path(allow_dash=True))
def hash_cmd(diff_file: str) -> None:
    """Print the SHA-256 diff hash bound into preview tokens."""
    click.echo(compute_diff_hash(_read_diff(diff_file)))


@cli.command()
@CONFIG_OPTION
def doctor(config: str | None) -> None:
    """Preflight checks: git, patch (and docker for docker isolation)."""
    pg_config = _load(config)
    res = SandboxRunner(Path.cwd(), pg_config.sandbox).doctor()

    click.echo(f"patchgate doctor: isolation={pg_config.sandbox.isolation}")
    for c in res["checks"]:
        mark = "✓" if c["ok"] else "✗"
        click.echo(f"  {mark} {c['tool']}" + (f" ({c['path']})" if c.get("path") else ""))

    if pg_config.tokens.secret == PatchGateConfig().tokens.secret:
        click.echo("  ! tokens.secret is the development default; set PATCHGATE_SECRET")
    if not (pg_config.github.app_id and pg_config.github.private_key) and not pg_config.github.static_token:
        click.echo("  ! no repository credentials configured; apply requests will fail")

    if res["ok"]:
        click.echo("✓ Doctor checks passed")
        sys.exit(0)
    click.echo(f"✗ Doctor checks failed: {res['error']}")
    sys.exit(1)


@cli.command()
@CONFIG_OPTION
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option(
    "--window-minutes",
    type=int,
    default=60,
    show_default=True,
    help="Metrics window (best-effort from telemetry).",
)
def status(config: str | None, format: str, window_minutes: int) -> None:
    """Show operational status/metrics from telemetry."""
    pg_config = _load(config)
    telemetry_path = Path(pg_config.telemetry.log_path)
    st = compute_status(telemetry_path, window=StatusWindow(seconds=max(1, window_minutes) * 60.0))

    if format == "json":
        click.echo(json.dumps(st, indent=2))
        return

    click.echo(f"Telemetry: {telemetry_path}")
    click.echo(f"Window: {window_minutes} minutes")
    click.echo(f"Jobs/hour: {st.get('jobs_per_hour'):.2f}")
    click.echo(f"Sandbox pass rate: {st.get('sandbox_pass_rate')}")
    click.echo(f"Delivery success rate: {st.get('delivery_success_rate')}")
    click.echo(f"Sandbox latency p50 (s): {st.get('sandbox_latency_s_p50')}")
    click.echo(f"Sandbox latency p95 (s): {st.get('sandbox_latency_s_p95')}")
    for reason, n in sorted(st.get("gate_rejections", {}).items()):
        click.echo(f"Gate rejections [{reason}]: {n}")

    last = st.get("last_delivery") or {}
    if last:
        click.echo()
        click.echo(f"Last delivery: job={last.get('run_id')} event={last.get('type')}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
