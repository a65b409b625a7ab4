"""Docker CLI driver.

Every container operation goes through ``DockerDriver``, which builds the
argv for one ``docker`` subcommand and hands it to a ``CommandExecutor``.
The executor is the seam tests replace: ``SubprocessExecutor`` spawns real
processes, a fake records argv lists and returns canned results.

A non-zero exit is not an error at the executor layer. Callers interpret
exit codes per subcommand (``inspect`` exiting 1 just means "no such
container"). Only ``create`` and ``start`` raise on failure.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from berth.sandbox.errors import (
    ContainerCreationError,
    ContainerStartError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0
STOP_GRACE_SECONDS = 10

# RFC 3339 as printed by `docker inspect -f {{.Created}}`, nanosecond precision
_DOCKER_TIMESTAMP = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})$"
)


def parse_docker_timestamp(value: str) -> datetime | None:
    """Parse a Docker timestamp into an aware datetime, or None if malformed."""
    match = _DOCKER_TIMESTAMP.match(value.strip())
    if not match:
        return None
    frac = match["frac"]
    tz = "+00:00" if match["tz"] == "Z" else match["tz"]
    text = match["base"] + (f".{frac[:6].ljust(6, '0')}" if frac else "") + tz
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandExecutor(Protocol):
    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandResult: ...


class SubprocessExecutor:
    """Runs commands as asyncio child processes."""

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandResult:
        argv = list(argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise RuntimeNotFoundError(argv[0]) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=stdin), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Killed %s after %gs timeout", " ".join(argv[:2]), timeout)
            raise RuntimeTimeoutError(argv, timeout) from None

        return CommandResult(
            exit_code=proc.returncode or 0,
            stdout=(stdout_bytes or b"").decode(errors="replace"),
            stderr=(stderr_bytes or b"").decode(errors="replace"),
        )


class DockerDriver:
    """Thin async wrapper over the ``docker`` subcommands the sandbox uses."""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        binary: str = "docker",
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._executor = executor or SubprocessExecutor()
        self.binary = binary
        self.timeout = timeout

    async def run_command(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [self.binary, subcommand, *args]
        logger.debug("Running %s %s", self.binary, subcommand)
        return await self._executor.run(
            argv, timeout=timeout or self.timeout, stdin=stdin
        )

    # ── State queries ────────────────────────────────────────────────────

    async def running_state(self, name: str) -> bool | None:
        """One ``inspect`` call: True running, False stopped, None absent."""
        result = await self.run_command("inspect", ["-f", "{{.State.Running}}", name])
        if not result.ok:
            return None
        return result.stdout.strip() == "true"

    async def is_running(self, name: str) -> bool:
        """True only if ``inspect`` succeeds and reports ``true``."""
        return await self.running_state(name) is True

    async def exists(self, name: str) -> bool:
        return await self.running_state(name) is not None

    async def created_at(self, name: str) -> datetime | None:
        """Creation time reported by the runtime; None if absent or unparsable."""
        result = await self.run_command("inspect", ["-f", "{{.Created}}", name])
        if not result.ok:
            return None
        return parse_docker_timestamp(result.stdout)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def create(self, args: Sequence[str]) -> CommandResult:
        result = await self.run_command("create", args)
        if not result.ok:
            raise ContainerCreationError("create", result.exit_code, result.stderr)
        return result

    async def start(self, name: str) -> CommandResult:
        result = await self.run_command("start", [name])
        if not result.ok:
            raise ContainerStartError("start", result.exit_code, result.stderr, target=name)
        return result

    async def stop(self, name: str) -> CommandResult:
        # docker's own grace period plus headroom for the CLI round trip
        return await self.run_command(
            "stop",
            ["-t", str(STOP_GRACE_SECONDS), name],
            timeout=max(self.timeout, STOP_GRACE_SECONDS + 5),
        )

    async def remove(self, name: str) -> CommandResult:
        return await self.run_command("rm", ["-f", name])

    # ── Exec-time injection ──────────────────────────────────────────────

    async def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        workdir: str | None = None,
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` inside a running container.

        ``env`` (which may carry secrets) is written to a 0600 temp file and
        passed with ``--env-file`` so no value ever appears in the process
        table. The file is removed once the exec returns.
        """
        args = ["-i"]
        env_file_path: str | None = None
        if env:
            fd, env_file_path = tempfile.mkstemp(suffix=".env", prefix="berth-exec-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    for key, value in env.items():
                        f.write(f"{key}={value}\n")
                os.chmod(env_file_path, 0o600)
            except Exception:
                os.unlink(env_file_path)
                raise
            args.extend(["--env-file", env_file_path])
        if workdir:
            args.extend(["--workdir", workdir])
        args.append(name)
        args.extend(command)

        try:
            return await self.run_command("exec", args, stdin=stdin, timeout=timeout)
        finally:
            if env_file_path:
                try:
                    os.unlink(env_file_path)
                except OSError as exc:
                    logger.warning("Could not remove exec env file %s: %s", env_file_path, exc)
