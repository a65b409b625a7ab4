"""Sandboxed tool execution in Docker containers.

- Per-session or shared containers, named from a configurable prefix
- Env-file merging into the declared container environment
- Secret scrubbing of everything placed on the ``docker create`` command line
- Exec-time environment injection through a private ``--env-file``
- Async Docker CLI driver with per-call deadlines

The reconciler lives in ``berth.sandbox.manager`` and is imported from
there directly (it depends on ``berth.models``, which depends on this
package's config).
"""

from .config import (
    DockerRuntimeConfig,
    SandboxBrowserConfig,
    SandboxConfig,
    SandboxMode,
    SandboxPruneConfig,
    SandboxScope,
    SandboxToolPolicy,
    WorkspaceAccess,
)
from .env_scrub import is_secret_env_key, merge_env_file, parse_env_file, sanitize_env_vars
from .errors import (
    ContainerCreationError,
    ContainerStartError,
    EnvFileReadError,
    RuntimeCommandError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
    SandboxConfigError,
    SandboxError,
)
from .runtime import CommandExecutor, CommandResult, DockerDriver, SubprocessExecutor

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "ContainerCreationError",
    "ContainerStartError",
    "DockerDriver",
    "DockerRuntimeConfig",
    "EnvFileReadError",
    "RuntimeCommandError",
    "RuntimeNotFoundError",
    "RuntimeTimeoutError",
    "SandboxBrowserConfig",
    "SandboxConfig",
    "SandboxConfigError",
    "SandboxError",
    "SandboxMode",
    "SandboxPruneConfig",
    "SandboxScope",
    "SandboxToolPolicy",
    "SubprocessExecutor",
    "WorkspaceAccess",
    "is_secret_env_key",
    "merge_env_file",
    "parse_env_file",
    "sanitize_env_vars",
]
