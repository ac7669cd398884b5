"""Agent naming: display names, branch names and rename sanitizing."""

from __future__ import annotations

import re

from orchestra.errors import InvalidNameError

NAMES = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf",
    "hotel", "india", "juliet", "kilo", "lima", "mike", "november",
    "oscar", "papa", "quebec", "romeo", "sierra", "tango", "uniform",
    "victor", "whiskey", "xray", "yankee", "zulu",
)

# Directory prefixes always recognised when scanning, besides the
# configured branch prefix.
WORKTREE_PREFIXES = ("agent-", "claude-")

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-{2,}")


def agent_name(agent_id: int) -> str:
    """Derive the display name for an id (1-based).

    Ids past the end of the word list wrap with a numeric suffix:
    27 -> ``alpha-2``, 53 -> ``alpha-3``.
    """
    if agent_id < 1:
        raise ValueError(f"agent ids start at 1, got {agent_id}")
    if agent_id <= len(NAMES):
        return NAMES[agent_id - 1]
    base = NAMES[(agent_id - 1) % len(NAMES)]
    return f"{base}-{(agent_id - 1) // len(NAMES) + 1}"


def branch_name(name: str, prefix: str = "agent") -> str:
    return f"{prefix}-{name}"


def sanitize_name(raw: str) -> str:
    """Lowercase and restrict to ``[a-z0-9-]``.

    Raises InvalidNameError when nothing usable is left, or when only
    digits are left (those would be read back as an agent id).
    """
    name = _INVALID_CHARS.sub("-", raw.strip().lower())
    name = _DASH_RUNS.sub("-", name).strip("-")
    if not name:
        raise InvalidNameError(f"Invalid agent name: {raw!r}")
    if name.isdigit():
        raise InvalidNameError(f"Agent name {raw!r} is all digits and would be taken for an id")
    return name


def is_agent_dir_name(dirname: str, prefix: str = "agent") -> bool:
    return dirname.startswith((f"{prefix}-", *WORKTREE_PREFIXES))
