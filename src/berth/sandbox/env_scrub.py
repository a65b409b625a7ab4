"""Environment merging and scrubbing for sandbox containers.

Two halves of one data flow:

1. ``merge_env_file`` folds the entries of ``docker.env_file`` into
   ``docker.env`` in place. This is the single place that mutates
   ``docker.env``; tool dispatch reads the merged map afterwards and injects
   it (secrets included) at exec time.
2. ``sanitize_env_vars`` returns the subset of that map which may appear on
   the ``docker create`` command line. Anything on a command line is visible
   in ``ps`` output and in ``docker inspect``, so secret-bearing keys are
   dropped here.

The secret set is data: add names to ``SECRET_ENV_VARS`` or patterns to
``SECRET_ENV_PATTERNS`` (or per deployment, ``docker.secret_env_vars`` in
config.yaml) rather than special-casing keys at call sites.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from berth.sandbox.errors import EnvFileReadError

if TYPE_CHECKING:
    from berth.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)


SECRET_ENV_VARS: frozenset[str] = frozenset(
    {
        # Model provider keys
        "ANTHROPIC_API_KEY",
        "ANTHROPIC_AUTH_TOKEN",
        "CLAUDE_CODE_OAUTH_TOKEN",
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "GROQ_API_KEY",
        "MISTRAL_API_KEY",
        "OPENROUTER_API_KEY",
        "XAI_API_KEY",
        "DEEPSEEK_API_KEY",
        # Cloud credentials
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AZURE_OPENAI_API_KEY",
        "GOOGLE_APPLICATION_CREDENTIALS",
        # Forge tokens
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "COPILOT_GITHUB_TOKEN",
        "GITLAB_TOKEN",
    }
)

# Catches dynamically named keys (e.g. a new provider's FOO_API_KEY).
SECRET_ENV_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"API_?KEY"),
    re.compile(r"(^|_)TOKEN$"),
    re.compile(r"SECRET"),
    re.compile(r"PASSWORD|PASSWD"),
    re.compile(r"PRIVATE_KEY"),
    re.compile(r"ACCESS_KEY"),
    re.compile(r"(^|_)CREDENTIALS?$"),
)

# Keep these even though they match a pattern.
SAFE_ENV_VARS: frozenset[str] = frozenset({"SSH_AUTH_SOCK"})


def is_secret_env_key(key: str, extra_secret_keys: Iterable[str] | None = None) -> bool:
    """Return True if ``key`` names a secret-bearing environment variable."""
    if key in SAFE_ENV_VARS:
        return False
    if key in SECRET_ENV_VARS:
        return True
    if extra_secret_keys and key in set(extra_secret_keys):
        return True
    key_upper = key.upper()
    return any(pattern.search(key_upper) for pattern in SECRET_ENV_PATTERNS)


def sanitize_env_vars(
    env: Mapping[str, str],
    extra_secret_keys: Iterable[str] | None = None,
) -> list[str]:
    """Return ``KEY=VALUE`` strings safe to expose on a command line.

    Args:
        env: The fully merged environment map. Never mutated.
        extra_secret_keys: Additional names to treat as secret.

    Returns:
        One ``KEY=VALUE`` string per non-secret key, in the input's
        insertion order.
    """
    extra = frozenset(extra_secret_keys or ())
    safe: list[str] = []
    dropped: list[str] = []
    for key, value in env.items():
        if is_secret_env_key(key, extra):
            dropped.append(key)
            continue
        safe.append(f"{key}={value}")

    if dropped:
        logger.debug(
            "Env scrub: withheld %d secret vars from create args: %s",
            len(dropped),
            ", ".join(sorted(dropped)),
        )
    return safe


def parse_env_file(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines.

    Blank lines, ``#`` comments, lines without ``=`` and lines with an empty
    key are skipped. The value is everything after the first ``=``, taken
    literally (no quoting or escape handling).
    """
    parsed: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        parsed[key] = value
    return parsed


async def merge_env_file(config: SandboxConfig) -> None:
    """Merge ``config.docker.env_file`` into ``config.docker.env`` in place.

    Keys already present in ``docker.env`` win; the file only fills gaps.

    Raises:
        EnvFileReadError: The declared file is missing, unreadable or not UTF-8.
    """
    env_file = config.docker.env_file
    if not env_file:
        return

    try:
        text = await asyncio.to_thread(Path(env_file).read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise EnvFileReadError(env_file, str(exc)) from exc

    env = config.docker.env
    added: list[str] = []
    for key, value in parse_env_file(text).items():
        if key in env:
            continue
        env[key] = value
        added.append(key)

    logger.debug(
        "Merged %d var(s) from env file %s: %s",
        len(added),
        env_file,
        ", ".join(added) or "(none)",
    )
