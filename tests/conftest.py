"""Shared fixtures: an in-memory fake of the docker CLI.

``FakeDocker`` implements the ``CommandExecutor`` protocol. It records every
argv it is given and keeps a tiny container table so inspect/create/start/
stop/rm behave like a real daemon would for the subset berth uses.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import pytest_asyncio

from berth.registry import ContainerRegistry
from berth.sandbox.config import DockerRuntimeConfig, SandboxConfig, SandboxScope
from berth.sandbox.runtime import CommandResult, DockerDriver


FAKE_CREATED = "2026-01-02T03:04:05.123456789Z"


@dataclass
class FakeDocker:
    # name -> running?
    containers: dict[str, bool] = field(default_factory=dict)
    calls: list[list[str]] = field(default_factory=list)
    # subcommand -> (exit_code, stderr) forced failure
    failures: dict[str, tuple[int, str]] = field(default_factory=dict)
    # subcommand -> exception raised instead of running
    raises: dict[str, Exception] = field(default_factory=dict)
    # names whose rm fails while the container stays present
    stuck: set[str] = field(default_factory=set)
    stdin_payloads: list[bytes | None] = field(default_factory=list)
    # name -> `{{.Created}}` output; unset names report FAKE_CREATED
    created: dict[str, str] = field(default_factory=dict)

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        stdin: bytes | None = None,
    ) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.stdin_payloads.append(stdin)
        sub, args = argv[1], argv[2:]

        if sub in self.raises:
            raise self.raises[sub]
        if sub in self.failures:
            code, err = self.failures[sub]
            return CommandResult(code, "", err)

        if sub == "inspect":
            name = args[-1]
            if name not in self.containers:
                return CommandResult(1, "", f"Error: No such object: {name}\n")
            if "{{.Created}}" in args:
                return CommandResult(0, self.created.get(name, FAKE_CREATED) + "\n", "")
            return CommandResult(0, "true\n" if self.containers[name] else "false\n", "")
        if sub == "create":
            name = args[args.index("--name") + 1]
            if name in self.containers:
                return CommandResult(125, "", f"Conflict. The container name {name} is in use\n")
            self.containers[name] = False
            return CommandResult(0, "abc123\n", "")
        if sub == "start":
            name = args[-1]
            if name not in self.containers:
                return CommandResult(1, "", f"Error: No such container: {name}\n")
            self.containers[name] = True
            return CommandResult(0, f"{name}\n", "")
        if sub == "stop":
            name = args[-1]
            if name in self.containers:
                self.containers[name] = False
            return CommandResult(0, f"{name}\n", "")
        if sub == "rm":
            name = args[-1]
            if name in self.stuck:
                return CommandResult(1, "", "Error: device or resource busy\n")
            if self.containers.pop(name, None) is None:
                return CommandResult(1, "", f"Error: No such container: {name}\n")
            return CommandResult(0, f"{name}\n", "")
        return CommandResult(0, "", "")

    def subcommands(self) -> list[str]:
        return [c[1] for c in self.calls]

    def find(self, sub: str) -> list[str] | None:
        for call in self.calls:
            if call[1] == sub:
                return call
        return None


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def driver(fake_docker: FakeDocker) -> DockerDriver:
    return DockerDriver(fake_docker, timeout=5.0)


@pytest_asyncio.fixture
async def registry(tmp_path: Path):
    reg = ContainerRegistry(tmp_path / "state" / "containers.db")
    yield reg
    await reg.close()


@pytest.fixture
def sandbox_config(tmp_path: Path) -> SandboxConfig:
    return SandboxConfig(
        scope=SandboxScope.PER_SESSION,
        workspace_root=str(tmp_path / "sandboxes"),
        docker=DockerRuntimeConfig(
            image="test-image",
            container_prefix="prefix-",
            workdir="/app",
            read_only_root=False,
            tmpfs=[],
            network="none",
            cap_drop=[],
            env={"LANG": "C.UTF-8"},
        ),
    )
