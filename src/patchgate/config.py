"""Configuration schema for PatchGate.

Configuration is loaded from .patchgate.yml in the working directory.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

DEV_SECRET = "patchgate-dev-secret-do-not-use-in-production"


class TokenConfig(BaseModel):
    """Proof-of-Preview token signing configuration."""

    secret: str = DEV_SECRET
    issuer: str = "patchgate-sandbox-worker"
    ttl_seconds: int = 900
    algorithm: str = "HS256"

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        valid = {"HS256", "HS384", "HS512"}
        if v not in valid:
            raise ValueError(f"Invalid algorithm: {v}. Must be one of {valid}")
        return v


class SandboxConfig(BaseModel):
    """Sandbox executor configuration."""

    timeout_seconds: int = 600
    clone_depth: int = 1
    clone_base_url: str = "https://github.com"
    tmp_prefix: str = "patchgate-"
    isolation: str = "local"
    image: str = "patchgate-sandbox:latest"
    network_mode: str = "bridge"
    memory: str = "2g"
    cpus: str = "2.0"
    pids_limit: int = 256
    enforce_allowlist: bool = True

    # argv prefixes; extra args are permitted.
    allowed_argv: list[list[str]] = Field(
        default_factory=lambda: [
            ["git", "clone"],
            ["patch"],
            ["npm", "install"],
            ["npm", "run", "build"],
            ["python3", "-m", "venv"],
            ["python", "-m", "venv"],
            ["pip", "install"],
            ["pip", "wheel"],
            ["python", "setup.py", "build"],
            ["go", "mod", "download"],
            ["go", "build"],
            ["cargo", "fetch"],
            ["cargo", "build"],
        ]
    )

    @field_validator("isolation")
    @classmethod
    def validate_isolation(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"local", "docker"}:
            raise ValueError("isolation must be 'local' or 'docker'")
        return v

    def is_argv_allowed(self, argv: list[str]) -> bool:
        """Check if argv begins with any allowed prefix."""
        return any(argv[: len(p)] == p for p in self.allowed_argv if p)


class WorkerConfig(BaseModel):
    """Background worker configuration."""

    enabled: bool = True
    poll_interval_seconds: float = 2.0


class SafetyConfig(BaseModel):
    """Patch safety limits."""

    protected_fragments: list[str] = Field(
        default_factory=lambda: [
            "/config/",
            "/keys/",
            "/secrets/",
            "/auth/",
            "/deploy/",
            "/database/",
            "/terraform/",
        ]
    )
    forbidden_components: list[str] = Field(
        default_factory=lambda: [".git", ".env", ".ssh"]
    )
    max_added_lines: int = 200
    max_removed_lines: int = 50
    max_files: int = 1


class GitHubConfig(BaseModel):
    """Repository host and pull-request delivery configuration."""

    api_url: str = "https://api.github.com"
    timeout_seconds: int = 30
    branch_prefix: str = "patchgate/edit"
    pr_title_prefix: str = "PatchGate Safe Edit"
    labels: list[str] = Field(
        default_factory=lambda: ["patchgate", "automated-edit", "sandbox-verified"]
    )
    committer_name: str = "patchgate-bot"
    committer_email: str = "bot@patchgate.dev"
    max_rebase_attempts: int = 3
    app_id: str | None = None
    private_key: str | None = None
    static_token: str | None = None
    token_refresh_buffer_seconds: int = 300

    @field_validator("private_key")
    @classmethod
    def unfold_private_key(cls, v: str | None) -> str | None:
        # Keys passed through env vars usually carry literal "\n" sequences.
        if v is None:
            return v
        return v.replace("\\n", "\n")


class TelemetryConfig(BaseModel):
    """Telemetry and logging configuration."""

    enabled: bool = True
    log_path: str = ".patchgate/telemetry.jsonl"
    include_diffs: bool = False
    retention_days: int = 30


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


class PatchGateConfig(BaseModel):
    """Complete PatchGate configuration."""

    tokens: TokenConfig = Field(default_factory=TokenConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> PatchGateConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load_from_dir(cls, base_dir: Path | str) -> PatchGateConfig:
        """Load configuration from a directory's .patchgate.yml."""
        config_path = Path(base_dir) / ".patchgate.yml"

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # Token overrides
        if secret := os.getenv("PATCHGATE_SECRET"):
            self.tokens.secret = secret
        if ttl := os.getenv("PATCHGATE_TOKEN_TTL_SECONDS"):
            self.tokens.ttl_seconds = int(ttl)

        # Sandbox overrides
        if timeout := os.getenv("PATCHGATE_SANDBOX_TIMEOUT_SECONDS"):
            self.sandbox.timeout_seconds = int(timeout)
        if base := os.getenv("PATCHGATE_CLONE_BASE_URL"):
            self.sandbox.clone_base_url = base
        if isolation := os.getenv("PATCHGATE_SANDBOX_ISOLATION"):
            isolation = isolation.strip().lower()
            if isolation not in {"local", "docker"}:
                raise ValueError("PATCHGATE_SANDBOX_ISOLATION must be 'local' or 'docker'")
            self.sandbox.isolation = isolation
        if image := os.getenv("PATCHGATE_SANDBOX_IMAGE"):
            self.sandbox.image = image
        if os.getenv("PATCHGATE_SANDBOX_DISABLE_ALLOWLIST") == "1":
            self.sandbox.enforce_allowlist = False

        # Worker overrides
        if interval := os.getenv("PATCHGATE_POLL_INTERVAL_SECONDS"):
            self.worker.poll_interval_seconds = float(interval)
        if os.getenv("PATCHGATE_WORKER_DISABLED") == "1":
            self.worker.enabled = False

        # GitHub overrides
        if url := os.getenv("PATCHGATE_GITHUB_API_URL"):
            self.github.api_url = url
        if app_id := os.getenv("GITHUB_APP_ID"):
            self.github.app_id = app_id
        if key := os.getenv("GITHUB_APP_PRIVATE_KEY"):
            self.github.private_key = key.replace("\\n", "\n")
        if token := os.getenv("PATCHGATE_GITHUB_TOKEN"):
            self.github.static_token = token
        if v := os.getenv("PATCHGATE_MAX_REBASE_ATTEMPTS"):
            self.github.max_rebase_attempts = int(v)
        if labels := os.getenv("PATCHGATE_PR_LABELS"):
            self.github.labels = [lbl for lbl in re.split(r"[,\s]+", labels) if lbl]

        # Telemetry overrides
        if log_path := os.getenv("PATCHGATE_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path
        if os.getenv("PATCHGATE_TELEMETRY_DISABLED") == "1":
            self.telemetry.enabled = False

        # Server overrides
        if host := os.getenv("PATCHGATE_HOST"):
            self.server.host = host
        if port := os.getenv("PATCHGATE_PORT"):
            self.server.port = int(port)


def load_config(base_dir: Path | str = ".", config_path: Path | str | None = None) -> PatchGateConfig:
    """
    Load configuration.

    Args:
        base_dir: Directory searched for .patchgate.yml
        config_path: Explicit config file (takes precedence over base_dir)

    Returns:
        Loaded and validated configuration
    """
    if config_path:
        config = PatchGateConfig.load_from_file(config_path)
    else:
        config = PatchGateConfig.load_from_dir(base_dir)
    config.apply_env_overrides()
    return config

