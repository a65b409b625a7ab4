"""Sandbox error taxonomy.

- Configuration errors (``SandboxConfigError``) are surfaced immediately and
  never retried; the caller has to fix the configuration.
- Runtime invocation errors (``RuntimeCommandError``) carry the failing
  subcommand and captured stderr. They are not retried automatically.
- ``RuntimeTimeoutError`` is the transient kind: callers may retry it with
  backoff, this package never does.
"""

from __future__ import annotations


class SandboxError(RuntimeError):
    """Base class for every sandbox failure."""


class SandboxConfigError(SandboxError):
    pass


class EnvFileReadError(SandboxConfigError):
    """The declared ``env_file`` could not be read or decoded."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to read sandbox env file {path}: {reason}")


class RuntimeCommandError(SandboxError):
    """A container-runtime subcommand exited non-zero."""

    def __init__(self, subcommand: str, exit_code: int, stderr: str, target: str = "") -> None:
        self.subcommand = subcommand
        self.exit_code = exit_code
        self.stderr = stderr
        self.target = target
        what = f"docker {subcommand}" + (f" {target}" if target else "")
        detail = stderr.strip() or "(no stderr)"
        super().__init__(f"{what} failed (exit {exit_code}): {detail}")


class ContainerCreationError(RuntimeCommandError):
    pass


class ContainerStartError(RuntimeCommandError):
    pass


class RuntimeNotFoundError(SandboxError):
    """The container-runtime binary is not installed or not on PATH."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(f"Container runtime binary not found: {binary}")


class RuntimeTimeoutError(SandboxError):
    """A runtime invocation exceeded its deadline and was killed."""

    def __init__(self, argv: list[str], timeout: float) -> None:
        self.argv = argv
        self.timeout = timeout
        super().__init__(f"{' '.join(argv[:2])} timed out after {timeout:g}s")
