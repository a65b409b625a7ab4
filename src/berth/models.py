"""Core data models for berth."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from berth.sandbox.config import SandboxScope


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Registry ─────────────────────────────────────────────────────────────────


class RegistryOperation(str, enum.Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


class RegistryEntry(BaseModel):
    """A container this process created and still owns."""

    name: str = Field(description="Derived container name, unique per identity")
    session_key: str = Field(description="Session the container was created for")
    scope: SandboxScope
    created_at: datetime = Field(default_factory=utc_now)
    image: str | None = Field(default=None, description="Image the container was created from")
    last_used_at: datetime | None = Field(
        default=None, description="Last time a session reused this container"
    )


class RegistrySnapshot(BaseModel):
    entries: list[RegistryEntry] = Field(default_factory=list)

    def find(self, name: str) -> RegistryEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None


# ── Runtime views ────────────────────────────────────────────────────────────


class ContainerStatus(BaseModel):
    """Registry entry joined with the live runtime state."""

    entry: RegistryEntry
    running: bool
