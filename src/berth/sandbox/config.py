"""Sandbox configuration models."""

from __future__ import annotations

import enum
from pathlib import PurePosixPath

from pydantic import BaseModel, Field, field_validator


class SandboxMode(str, enum.Enum):
    """Which tool invocations run inside a sandbox container."""

    ALL = "all"
    SELECTED = "selected"
    NONE = "none"


class SandboxScope(str, enum.Enum):
    """Whether one container serves every session or each session gets its own."""

    SHARED = "shared"
    PER_SESSION = "per-session"


class WorkspaceAccess(str, enum.Enum):
    RO = "ro"
    RW = "rw"


class DockerRuntimeConfig(BaseModel):
    """How sandbox containers are created on the Docker runtime."""

    image: str = "berth-sandbox:latest"
    container_prefix: str = "berth-sbx-"
    workdir: str = "/workspace"
    read_only_root: bool = True
    tmpfs: list[str] = Field(default_factory=lambda: ["/tmp", "/var/tmp", "/run"])
    network: str = "none"
    cap_drop: list[str] = Field(default_factory=lambda: ["ALL"])

    # Canonical merged environment. Secrets live here (in memory only) so
    # exec-time dispatch can inject them; they never reach `docker create`.
    env: dict[str, str] = Field(default_factory=lambda: {"LANG": "C.UTF-8"})
    env_file: str | None = None

    # Extra variable names treated as secret on top of the built-in set.
    secret_env_vars: list[str] = Field(default_factory=list)

    binary: str = "docker"
    command_timeout: float = 60.0  # seconds, per runtime invocation
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("command_timeout")
    @classmethod
    def _validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"command_timeout must be positive, got {v!r}")
        return v


class SandboxBrowserConfig(BaseModel):
    enabled: bool = False
    image: str = "berth-sandbox-browser:latest"


class SandboxToolPolicy(BaseModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class SandboxPruneConfig(BaseModel):
    """Container pruning policy. A value of 0 disables that rule."""

    max_age_hours: float = 24 * 7
    idle_hours: float = 24
    max_containers: int = 0
    interval_seconds: int = 300

    @field_validator("max_age_hours", "idle_hours", "max_containers", "interval_seconds")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError(f"prune thresholds must be >= 0, got {v!r}")
        return v


class SandboxConfig(BaseModel):
    """Per-run sandbox configuration, threaded through every sandbox call."""

    mode: SandboxMode = SandboxMode.ALL
    scope: SandboxScope = SandboxScope.PER_SESSION
    workspace_access: WorkspaceAccess = WorkspaceAccess.RW
    workspace_root: str = "/tmp/berth/sandboxes"
    docker: DockerRuntimeConfig = Field(default_factory=DockerRuntimeConfig)
    browser: SandboxBrowserConfig = Field(default_factory=SandboxBrowserConfig)
    tools: SandboxToolPolicy = Field(default_factory=SandboxToolPolicy)
    prune: SandboxPruneConfig = Field(default_factory=SandboxPruneConfig)

    @field_validator("workspace_root")
    @classmethod
    def _validate_workspace_root(cls, v: str) -> str:
        if not PurePosixPath(v).is_absolute():
            raise ValueError(f"workspace_root must be an absolute path, got {v!r}")
        return v

    @property
    def enabled(self) -> bool:
        return self.mode != SandboxMode.NONE
