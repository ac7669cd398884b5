"""Exception hierarchy for the orchestrator.

Corrupted or missing worktree metadata is deliberately absent from this
module: readers return ``None`` for it and callers rebuild from disk.
"""

from __future__ import annotations

from collections.abc import Sequence


class OrchestraError(Exception):
    """Base class for every error the CLI reports as a clean failure."""


# ── External processes ───────────────────────────────────────────────────────


class CommandError(OrchestraError):
    """An external command (git, tmux, docker, ...) exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"`{' '.join(self.argv)}` exited with {returncode}{detail}")


# ── Isolation backends ───────────────────────────────────────────────────────


class BackendUnavailableError(OrchestraError):
    """The requested isolation tier cannot be provided on this host."""


class TierPolicyError(OrchestraError):
    """The requested tier is weaker than the repository's declared minimum."""


class HandleNotFoundError(OrchestraError):
    """exec/stats against a backend handle this adapter does not know."""


class DefinitionError(OrchestraError):
    """An isolation definition is incomplete or unreadable."""


class DefinitionNotFoundError(DefinitionError):
    pass


class MissingKernelError(DefinitionError):
    pass


class MissingRootfsError(DefinitionError):
    pass


# ── Naming / validation ──────────────────────────────────────────────────────


class InvalidNameError(OrchestraError):
    pass


class NameCollisionError(OrchestraError):
    pass


class InvalidCountError(OrchestraError):
    pass


class AgentNotFoundError(OrchestraError):
    pass
