"""Sandbox executor: clone, patch, install, build.

Everything a run touches lives under one temporary job directory that is
removed when the run ends, whatever the outcome.
"""

from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

from .config import SandboxConfig
from .errors import InvalidRequest
from .redaction import redact_text
from .runner import SandboxRunner
from .toolchain import detect_project_type, has_npm_build_script, has_pyproject_build_system
from .types import SandboxJob, SandboxResult, parse_repo_locator

LogFn = Callable[[str], None]


class StepFailed(Exception):
    """A sandbox step exited non-zero or timed out."""


def detect_strip_level(diff_text: str) -> int:
    if "diff --git a/" in diff_text or diff_text.startswith("--- a/") or "\n--- a/" in diff_text:
        return 1
    return 0


def job_env(workdir: Path) -> dict[str, str]:
    """Environment that pins HOME, caches and toolchain homes inside the job directory."""
    home = workdir / "home"
    cache = workdir / "cache"
    return {
        "HOME": str(home),
        "XDG_CACHE_HOME": str(cache),
        "npm_config_cache": str(cache / "npm"),
        "PIP_CACHE_DIR": str(cache / "pip"),
        "PIP_DISABLE_PIP_VERSION_CHECK": "1",
        "GOPATH": str(workdir / "go"),
        "GOCACHE": str(cache / "go-build"),
        "GOMODCACHE": str(workdir / "go" / "pkg" / "mod"),
        "CARGO_HOME": str(workdir / "cargo"),
        "CARGO_TARGET_DIR": str(workdir / "target"),
    }


class SandboxExecutor:
    """Runs one job end to end and reports pass/fail with logs."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        runner_factory: Callable[[Path, SandboxConfig], SandboxRunner] | None = None,
    ):
        self.config = config or SandboxConfig()
        self.runner_factory = runner_factory or (lambda workdir, cfg: SandboxRunner(workdir, cfg))

    def run(self, job: SandboxJob, log: LogFn | None = None) -> SandboxResult:
        """
        Execute the sandbox pipeline for a job.

        Args:
            job: Job whose repository, target_file and diff are used
            log: Called with each log line as it is produced

        Returns:
            SandboxResult; success is False if any step failed
        """
        logs: list[str] = []

        def emit(line: str) -> None:
            logs.append(line)
            if log is not None:
                log(line)

        t0 = time.time()
        project_type = "unknown"
        workdir = Path(tempfile.mkdtemp(prefix=f"{self.config.tmp_prefix}{job.id[:8]}-"))
        emit(f"Created isolated workspace {workdir.name}.")
        try:
            runner = self.runner_factory(workdir, self.config)
            env = job_env(workdir)
            for key in ("HOME", "XDG_CACHE_HOME"):
                Path(env[key]).mkdir(parents=True, exist_ok=True)

            repo_dir = self._clone(runner, job, workdir, env, emit)
            self._apply_patch(runner, job, workdir, repo_dir, env, emit)

            project_type = detect_project_type(repo_dir)
            emit(f"Detected project type: {project_type}.")
            self._build(runner, project_type, workdir, repo_dir, env, emit)

            emit("Sandbox verification passed.")
            return SandboxResult(True, logs, project_type, round(time.time() - t0, 3))
        except StepFailed as e:
            emit(f"Sandbox verification failed: {e}")
            return SandboxResult(False, logs, project_type, round(time.time() - t0, 3))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            emit("Cleaned up workspace.")

    def _step(
        self,
        runner: SandboxRunner,
        label: str,
        argv: list[str],
        cwd: Path,
        env: dict[str, Any],
        emit: LogFn,
        isolate: bool = False,
    ) -> None:
        emit(f"{label}: {redact_text(' '.join(argv), max_len=300)}")
        out = runner.run(argv, cwd=cwd, env=env, isolate=isolate)
        output = "\n".join(s for s in (out.get("stdout", ""), out.get("stderr", "")) if s)
        if output.strip():
            emit(redact_text(output, max_len=2000))
        if out.get("timed_out"):
            raise StepFailed(f"{label} timed out after {self.config.timeout_seconds}s")
        if out["exit_code"] != 0:
            raise StepFailed(f"{label} exited with code {out['exit_code']}")

    def _clone(
        self, runner: SandboxRunner, job: SandboxJob, workdir: Path, env: dict[str, str], emit: LogFn
    ) -> Path:
        try:
            ref = parse_repo_locator(job.repository)
        except InvalidRequest as e:
            raise StepFailed(e.message) from e
        url = f"{self.config.clone_base_url.rstrip('/')}/{ref.owner}/{ref.name}.git"
        repo_dir = workdir / "repo"
        self._step(
            runner,
            "Cloning repository",
            ["git", "clone", "--depth", str(self.config.clone_depth), url, str(repo_dir)],
            workdir,
            env,
            emit,
        )
        return repo_dir

    def _apply_patch(
        self,
        runner: SandboxRunner,
        job: SandboxJob,
        workdir: Path,
        repo_dir: Path,
        env: dict[str, str],
        emit: LogFn,
    ) -> None:
        patch_path = workdir / "edit.patch"
        diff = job.diff if job.diff.endswith("\n") else job.diff + "\n"
        patch_path.write_text(diff, encoding="utf-8")
        strip = detect_strip_level(job.diff)
        self._step(
            runner,
            "Applying patch",
            ["patch", f"-p{strip}", "--batch", "--forward", "-i", str(patch_path)],
            repo_dir,
            env,
            emit,
        )

    def _build(
        self,
        runner: SandboxRunner,
        project_type: str,
        workdir: Path,
        repo_dir: Path,
        env: dict[str, str],
        emit: LogFn,
    ) -> None:
        def step(label: str, argv: list[str]) -> None:
            self._step(runner, label, argv, repo_dir, env, emit, isolate=True)

        if project_type == "node":
            step("Installing dependencies", ["npm", "install", "--ignore-scripts", "--no-audit", "--no-fund"])
            if has_npm_build_script(repo_dir):
                step("Building", ["npm", "run", "build"])
            else:
                emit("No build script declared; skipping build.")
        elif project_type == "python":
            venv = workdir / "venv"
            step("Creating virtualenv", ["python3", "-m", "venv", str(venv)])
            pip = str(venv / "bin" / "pip")
            python = str(venv / "bin" / "python")
            if (repo_dir / "requirements.txt").is_file():
                # Wheels only: no setup.py runs during install.
                step(
                    "Installing dependencies",
                    [pip, "install", "--only-binary=:all:", "-r", "requirements.txt"],
                )
            if (repo_dir / "setup.py").is_file():
                step("Building", [python, "setup.py", "build"])
            elif has_pyproject_build_system(repo_dir):
                step("Building", [pip, "wheel", "--no-deps", "-w", str(workdir / "dist"), "."])
            else:
                emit("No build step declared; skipping build.")
        elif project_type == "go":
            step("Downloading modules", ["go", "mod", "download"])
            step("Building", ["go", "build", "./..."])
        elif project_type == "rust":
            step("Fetching crates", ["cargo", "fetch"])
            step("Building", ["cargo", "build"])
        else:
            emit("Unknown toolchain; skipping install and build.")
