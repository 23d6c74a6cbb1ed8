import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any

from .config import SandboxConfig


class SandboxRunner:
    """
    Sandbox command runner.

    Key security properties:
    - Executes an argv list (no shell).
    - Allowlist is validated against parsed argv (command basename + args prefix).
    - Commands get a minimal environment; the caller's HOME, caches and
      credentials are never inherited.
    """

    def __init__(
        self,
        workdir: Path,
        config: SandboxConfig | None = None,
        fail_run: bool = False,
    ):
        self.workdir = Path(workdir)
        self.config = config or SandboxConfig()
        self.fail_run = fail_run

    def _check_argv_allowed(self, argv: list[str]) -> tuple[bool, str]:
        if not argv:
            return False, "Empty argv"

        for a in argv:
            if any(ch in a for ch in ["\n", "\r", "\x00"]):
                return False, "Newlines/NUL not allowed"

        if self.config.enforce_allowlist:
            if not self.config.allowed_argv:
                return False, "Allowlist enforcement enabled but allowlist is empty"

            # venv binaries are invoked by absolute path.
            normalized = [os.path.basename(argv[0]), *argv[1:]]
            if self.config.is_argv_allowed(normalized):
                return True, ""
            return False, "Command not in allowlist"

        return True, ""

    def _base_env(self, env: dict[str, str] | None) -> dict[str, str]:
        merged = {
            "PATH": os.environ.get("PATH", os.defpath),
            "LANG": "C.UTF-8",
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_CONFIG_NOSYSTEM": "1",
        }
        if env:
            merged.update(env)
        return merged

    def _result(
        self, argv: list[str], t0: float, exit_code: int, stdout: str, stderr: str, **extra: Any
    ) -> dict[str, Any]:
        out = {
            "argv": argv,
            "exit_code": exit_code,
            "stdout": stdout,
            "stderr": stderr,
            "duration_s": round(time.time() - t0, 3),
        }
        out.update(extra)
        return out

    def _docker_cmd(self, argv: list[str], cwd: Path, env: dict[str, str]) -> list[str]:
        cmd: list[str] = [
            "docker",
            "run",
            "--rm",
            "--init",
            "--network",
            self.config.network_mode,
            "--memory",
            self.config.memory,
            "--cpus",
            self.config.cpus,
            "--pids-limit",
            str(self.config.pids_limit),
            "--cap-drop=ALL",
            "--security-opt=no-new-privileges",
            "--tmpfs",
            "/tmp:rw,nosuid,nodev,size=256m",
        ]
        for k, v in env.items():
            if k == "PATH":
                continue
            cmd += ["-e", f"{k}={v}"]
        # The job directory is mounted at its host path so absolute venv paths resolve.
        cmd += ["-v", f"{self.workdir}:{self.workdir}:rw", "-w", str(cwd)]
        cmd += [self.config.image, *argv]
        return cmd

    def run(
        self,
        argv: list[str],
        cwd: Path | None = None,
        timeout_s: int | None = None,
        env: dict[str, str] | None = None,
        isolate: bool = False,
    ) -> dict[str, Any]:
        """
        Run one command inside the job directory.

        Args:
            argv: Command and arguments
            cwd: Working directory (defaults to the job directory)
            timeout_s: Wall-clock limit (defaults to sandbox.timeout_seconds)
            env: Extra environment variables
            isolate: Run inside a container when sandbox.isolation is "docker"

        Returns:
            Dict with argv, exit_code, stdout, stderr, duration_s (and
            timed_out / rejected flags when applicable)
        """
        t0 = time.time()
        cwd = Path(cwd) if cwd is not None else self.workdir
        timeout_s = timeout_s or self.config.timeout_seconds

        if self.fail_run or os.getenv("PATCHGATE_FAIL_SANDBOX_RUN") == "1":
            return self._result(argv, t0, 1, "", "Forced sandbox failure via PATCHGATE_FAIL_SANDBOX_RUN")

        ok, reason = self._check_argv_allowed(argv)
        if not ok:
            return self._result(
                argv,
                t0,
                126,
                "",
                f"Sandbox rejected command: {reason}",
                rejected=True,
                reject_reason=reason,
            )

        merged_env = self._base_env(env)
        cmd = argv
        if isolate and self.config.isolation == "docker":
            cmd = self._docker_cmd(argv, cwd, merged_env)

        try:
            p = subprocess.run(
                cmd,
                cwd=str(cwd),
                text=True,
                capture_output=True,
                timeout=timeout_s,
                shell=False,
                env=merged_env,
            )
        except subprocess.TimeoutExpired as e:
            return self._result(
                argv,
                t0,
                124,
                _as_text(e.stdout),
                f"Command timed out after {timeout_s}s",
                timed_out=True,
            )
        except FileNotFoundError:
            return self._result(argv, t0, 127, "", f"Command not found: {cmd[0]}")

        return self._result(argv, t0, p.returncode, p.stdout, p.stderr)

    def doctor(self) -> dict[str, Any]:
        """Preflight: required host tools present (docker only for docker isolation)."""
        checks: list[dict[str, Any]] = []
        required = ["git", "patch"]
        if self.config.isolation == "docker":
            required.append("docker")
        for tool in required:
            path = shutil.which(tool)
            checks.append({"tool": tool, "ok": path is not None, "path": path})

        if self.config.isolation == "docker" and shutil.which("docker"):
            img = subprocess.run(
                ["docker", "image", "inspect", self.config.image],
                text=True,
                capture_output=True,
            )
            checks.append({"tool": f"image:{self.config.image}", "ok": img.returncode == 0, "path": None})

        ok = all(c["ok"] for c in checks)
        return {"ok": ok, "error": None if ok else "missing_tools", "checks": checks}


def _as_text(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)
