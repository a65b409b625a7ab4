"""ContainerReconciler -- converges sandbox containers to the declared config.

``ensure_sandbox_container`` is the entry point tool dispatch calls before
running a sandboxed tool:

1. Derive the container name from the prefix and the scope (one fixed name
   for ``shared``, a session slug for ``per-session``).
2. Under a per-name lock, look the name up in the registry and ask the
   runtime whether it is running. Running means done: no create, no start.
3. Otherwise remove any stopped leftover, merge ``env_file`` into
   ``docker.env`` and scrub secrets from the copy that goes on the command
   line.
4. ``docker create`` then ``docker start``.
5. Record the container in the registry.

The registry alone is never trusted for liveness: a container can be
stopped or removed behind our back, so step 2 always asks the runtime.

The full (secret-inclusive) ``cfg.docker.env`` is left on the config for
dispatch, which injects it per exec via ``DockerDriver.exec``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING

from berth.models import ContainerStatus, RegistryEntry, RegistryOperation, utc_now
from berth.sandbox.config import SandboxScope, WorkspaceAccess
from berth.sandbox.env_scrub import merge_env_file, sanitize_env_vars
from berth.sandbox.errors import SandboxError

if TYPE_CHECKING:
    from berth.registry import ContainerRegistry
    from berth.sandbox.config import SandboxConfig
    from berth.sandbox.runtime import DockerDriver

logger = logging.getLogger(__name__)

SHARED_SCOPE_KEY = "shared"
AGENT_WORKSPACE_MOUNT = "/agent"
KEEPALIVE_COMMAND = ("sleep", "infinity")
MAX_CONTAINER_NAME = 63

LABEL_MANAGED = "berth.managed"
LABEL_SESSION = "berth.session"
LABEL_SCOPE = "berth.scope"

_UNSAFE_CHARS = re.compile(r"[^a-z0-9._-]+")


# ── Naming ───────────────────────────────────────────────────────────────────


def slugify_session_key(session_key: str) -> str:
    """Docker-safe, collision-resistant slug for a session key.

    The readable part is lowercased and truncated; the sha1 suffix keeps two
    keys that collapse to the same readable part apart.
    """
    trimmed = session_key.strip() or "session"
    digest = hashlib.sha1(trimmed.encode()).hexdigest()[:8]
    safe = _UNSAFE_CHARS.sub("-", trimmed.lower()).strip("-")[:32]
    return f"{safe or 'session'}-{digest}"


def resolve_container_name(cfg: SandboxConfig, session_key: str) -> str:
    if cfg.scope == SandboxScope.SHARED:
        suffix = SHARED_SCOPE_KEY
    else:
        suffix = slugify_session_key(session_key)
    return f"{cfg.docker.container_prefix}{suffix}"[:MAX_CONTAINER_NAME]


def resolve_session_workspace_dir(cfg: SandboxConfig, session_key: str) -> Path:
    """Host directory under ``workspace_root`` holding this identity's workspace."""
    if cfg.scope == SandboxScope.SHARED:
        return Path(cfg.workspace_root) / SHARED_SCOPE_KEY
    return Path(cfg.workspace_root) / slugify_session_key(session_key)


# ── Create args ──────────────────────────────────────────────────────────────


def build_create_args(
    name: str,
    cfg: SandboxConfig,
    workspace_dir: str | Path,
    agent_workspace_dir: str | Path | None,
    safe_env: list[str],
    session_key: str,
) -> list[str]:
    """Build the argument list for ``docker create`` (subcommand excluded)."""
    docker = cfg.docker
    mode = "ro" if cfg.workspace_access == WorkspaceAccess.RO else "rw"

    args = ["--name", name]

    labels = {
        LABEL_MANAGED: "true",
        LABEL_SESSION: session_key,
        LABEL_SCOPE: cfg.scope.value,
        **docker.labels,
    }
    for key, value in labels.items():
        args.extend(["--label", f"{key}={value}"])

    if docker.read_only_root:
        args.append("--read-only")
    if docker.workdir:
        args.extend(["--workdir", docker.workdir])

    for pair in safe_env:
        args.extend(["--env", pair])

    args.extend(["-v", f"{workspace_dir}:{docker.workdir}:{mode}"])
    if agent_workspace_dir and Path(agent_workspace_dir) != Path(workspace_dir):
        args.extend(["-v", f"{agent_workspace_dir}:{AGENT_WORKSPACE_MOUNT}:{mode}"])

    for path in docker.tmpfs:
        args.extend(["--tmpfs", path])

    if docker.network:
        args.extend(["--network", docker.network])

    for cap in docker.cap_drop:
        args.extend(["--cap-drop", cap])

    args.extend(["--security-opt", "no-new-privileges"])
    args.append(docker.image)
    args.extend(KEEPALIVE_COMMAND)
    return args


# ── Reconciler ───────────────────────────────────────────────────────────────


class ContainerReconciler:
    """Keeps exactly one running container per sandbox identity.

    A single instance should be shared by everything that dispatches
    sandboxed tool calls in a process; the per-name locks only serialize
    callers that go through the same instance.
    """

    def __init__(self, driver: DockerDriver, registry: ContainerRegistry) -> None:
        self._driver = driver
        self._registry = registry
        # Per-container locks so two callers for one identity never both create
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def driver(self) -> DockerDriver:
        return self._driver

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    def lock(self, name: str) -> asyncio.Lock:
        """Per-name lock held by anything that creates, stops or removes ``name``."""
        return self._locks[name]

    async def ensure_sandbox_container(
        self,
        session_key: str,
        workspace_dir: str | Path,
        agent_workspace_dir: str | Path | None,
        cfg: SandboxConfig,
    ) -> str:
        """Guarantee a running container for this identity and return its name.

        Mutates ``cfg.docker.env`` (merging ``env_file``) when a container
        has to be created.

        Raises:
            EnvFileReadError: ``env_file`` is declared but unreadable.
            ContainerCreationError: ``docker create`` exited non-zero.
            ContainerStartError: ``docker start`` exited non-zero.
            RuntimeTimeoutError: A runtime call exceeded its deadline.
            RuntimeNotFoundError: The docker binary is missing.
        """
        name = resolve_container_name(cfg, session_key)

        async with self._locks[name]:
            entry = await self._registry.get_entry(name)

            state = await self._driver.running_state(name)
            if state is True:
                await self._touch(entry, name, session_key, cfg)
                logger.debug("Sandbox container %s already running", name)
                return name

            if entry is not None:
                logger.info("Registered sandbox container %s is not running, recreating", name)

            # A stopped container keeps its old env and mounts; replace it.
            if state is False:
                logger.info("Removing stopped sandbox container %s", name)
                await self._driver.remove(name)

            await merge_env_file(cfg)
            safe_env = sanitize_env_vars(cfg.docker.env, cfg.docker.secret_env_vars)

            Path(workspace_dir).mkdir(parents=True, exist_ok=True)
            args = build_create_args(
                name, cfg, workspace_dir, agent_workspace_dir, safe_env, session_key
            )

            await self._driver.create(args)
            try:
                await self._driver.start(name)
            except Exception:
                # Do not leave a created-but-never-started container behind
                await self._discard(name)
                raise

            now = utc_now()
            await self._registry.update_registry(
                RegistryEntry(
                    name=name,
                    session_key=session_key,
                    scope=cfg.scope,
                    created_at=now,
                    image=cfg.docker.image,
                    last_used_at=now,
                ),
                RegistryOperation.UPSERT,
            )
            logger.info(
                "Created sandbox container %s (scope=%s, image=%s)",
                name,
                cfg.scope.value,
                cfg.docker.image,
            )
            return name

    async def _discard(self, name: str) -> None:
        """Best-effort ``rm -f`` after a failed start; never masks the start error."""
        try:
            result = await self._driver.remove(name)
        except SandboxError as exc:
            logger.warning("Failed to clean up %s after start failure: %s", name, exc)
            return
        if not result.ok:
            logger.warning(
                "Failed to clean up %s after start failure: %s", name, result.stderr.strip()
            )

    async def _touch(
        self,
        entry: RegistryEntry | None,
        name: str,
        session_key: str,
        cfg: SandboxConfig,
    ) -> None:
        now = utc_now()
        if entry is None:
            # Running but unknown to the registry (e.g. registry was reset).
            # Keep the real creation time so max_age_hours still applies.
            created_at = await self._driver.created_at(name) or now
            logger.info("Adopting running sandbox container %s into registry", name)
            entry = RegistryEntry(
                name=name,
                session_key=session_key,
                scope=cfg.scope,
                created_at=created_at,
                image=cfg.docker.image,
            )
        entry.last_used_at = now
        await self._registry.update_registry(entry, RegistryOperation.UPSERT)

    async def remove_sandbox_container(self, name: str) -> bool:
        """Stop and remove a container and drop it from the registry.

        Returns True if the container is gone afterwards.
        """
        async with self._locks[name]:
            removed = await remove_container(self._driver, name)
            if removed:
                entry = await self._registry.get_entry(name)
                if entry is not None:
                    await self._registry.update_registry(entry, RegistryOperation.REMOVE)
        return removed

    async def list_sandbox_containers(self) -> list[ContainerStatus]:
        snapshot = await self._registry.read_registry()
        statuses: list[ContainerStatus] = []
        for entry in snapshot.entries:
            running = await self._driver.is_running(entry.name)
            statuses.append(ContainerStatus(entry=entry, running=running))
        return statuses


async def remove_container(driver: DockerDriver, name: str) -> bool:
    """Stop then force-remove ``name``. True if no such container remains."""
    await driver.stop(name)
    result = await driver.remove(name)
    if result.ok:
        return True
    if not await driver.exists(name):
        # Already gone (removed externally between stop and rm)
        return True
    logger.warning("Failed to remove container %s: %s", name, result.stderr.strip())
    return False
