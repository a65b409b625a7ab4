"""Sandbox pruning — removes containers that outlived the prune policy.

``ContainerPruner.prune`` makes one pass over the registry and removes
every entry that is:

1. older than ``max_age_hours`` (by creation time),
2. idle longer than ``idle_hours`` (by last reuse, falling back to
   creation time), or
3. beyond ``max_containers`` (oldest first).

Removal is best-effort per entry: one container that refuses to go away is
reported and the pass continues with the rest.

``PruneLoop`` runs a pass every ``interval_seconds`` in the background.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from berth.models import RegistryEntry, RegistryOperation, utc_now
from berth.sandbox.errors import SandboxError
from berth.sandbox.manager import remove_container

if TYPE_CHECKING:
    from berth.sandbox.config import SandboxPruneConfig
    from berth.sandbox.manager import ContainerReconciler

logger = logging.getLogger(__name__)


@dataclass
class PruneReport:
    removed: list[RegistryEntry] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)  # name -> reason


def select_expired(
    entries: list[RegistryEntry],
    policy: SandboxPruneConfig,
    now: datetime,
) -> list[RegistryEntry]:
    """Return the entries that violate ``policy`` at ``now``, oldest first."""
    ordered = sorted(entries, key=lambda e: e.created_at)
    doomed: dict[str, RegistryEntry] = {}

    for entry in ordered:
        if policy.max_age_hours and now - entry.created_at > timedelta(hours=policy.max_age_hours):
            doomed[entry.name] = entry
            continue
        last_used = entry.last_used_at or entry.created_at
        if policy.idle_hours and now - last_used > timedelta(hours=policy.idle_hours):
            doomed[entry.name] = entry

    if policy.max_containers:
        survivors = [e for e in ordered if e.name not in doomed]
        excess = len(survivors) - policy.max_containers
        for entry in survivors[: max(excess, 0)]:
            doomed[entry.name] = entry

    return [e for e in ordered if e.name in doomed]


class ContainerPruner:
    """Removes expired containers through the reconciler's per-name locks.

    Sharing the locks means a prune and an ``ensure_sandbox_container`` for
    the same name never interleave: whichever runs second sees the other's
    result.
    """

    def __init__(self, reconciler: ContainerReconciler) -> None:
        self._reconciler = reconciler
        self._driver = reconciler.driver
        self._registry = reconciler.registry

    async def prune(
        self,
        policy: SandboxPruneConfig,
        now: datetime | None = None,
    ) -> PruneReport:
        """Run one prune pass. Never raises for a single entry's failure."""
        now = now or utc_now()
        snapshot = await self._registry.read_registry()
        report = PruneReport()

        for candidate in select_expired(snapshot.entries, policy, now):
            name = candidate.name
            async with self._reconciler.lock(name):
                # Reused, recreated or removed since the snapshot: leave it
                # for the next pass to judge.
                entry = await self._registry.get_entry(name)
                if entry != candidate:
                    logger.debug("Prune: %s changed since snapshot, skipping", name)
                    continue

                try:
                    removed = await remove_container(self._driver, name)
                except SandboxError as exc:
                    logger.warning("Prune: failed to remove %s: %s", name, exc)
                    report.failures[name] = str(exc)
                    continue

                if not removed:
                    report.failures[name] = "container still present after rm"
                    continue

                try:
                    await self._registry.update_registry(entry, RegistryOperation.REMOVE)
                except (sqlite3.Error, OSError) as exc:
                    logger.warning("Prune: removed %s but registry update failed: %s", name, exc)
                    report.failures[name] = f"registry update failed: {exc}"
                    continue

            report.removed.append(entry)
            logger.info("Pruned sandbox container %s", name)

        if report.removed or report.failures:
            logger.info(
                "Prune pass: removed %d, failed %d%s",
                len(report.removed),
                len(report.failures),
                f" ({', '.join(sorted(report.failures))})" if report.failures else "",
            )
        return report


class PruneLoop:
    """Periodic background prune task."""

    def __init__(self, pruner: ContainerPruner, policy: SandboxPruneConfig):
        self.pruner = pruner
        self.policy = policy
        self.interval = policy.interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="sandbox-prune")
        logger.info("Prune loop started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Prune loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.pruner.prune(self.policy)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Prune pass error")
