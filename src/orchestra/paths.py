"""Path translation boundary.

Core modules carry ``pathlib.Path`` objects around. Conversion to the
string form a particular consumer expects happens here and nowhere else.
"""

from __future__ import annotations

import enum
import os
import shlex
from collections.abc import Sequence
from pathlib import Path


class PathContext(str, enum.Enum):
    FILESYSTEM = "filesystem"   # absolute, ~ expanded, for os/pathlib calls
    SHELL = "shell"             # quoted for a POSIX shell command line
    DISPLAY = "display"         # home abbreviated to ~ for humans


def expand(path: str | os.PathLike[str], base: Path | None = None) -> Path:
    """Expand ``~`` and resolve relative paths against *base* (or cwd)."""
    p = Path(os.path.expanduser(os.fspath(path)))
    if not p.is_absolute():
        p = (base or Path.cwd()) / p
    return Path(os.path.normpath(p))


def to_context(path: str | os.PathLike[str], context: PathContext) -> str:
    """Render *path* for the given consumer."""
    absolute = expand(path)
    if context is PathContext.FILESYSTEM:
        return str(absolute)
    if context is PathContext.SHELL:
        return shlex.quote(str(absolute))
    home = Path.home()
    try:
        rel = absolute.relative_to(home)
    except ValueError:
        return str(absolute)
    return "~" if str(rel) == "." else f"~/{rel}"


def shell_join(args: Sequence[str | os.PathLike[str]]) -> str:
    """Render an argv as one POSIX shell command line.

    Path arguments go through ``to_context(..., SHELL)``; everything else
    is quoted as a plain word.
    """
    return " ".join(
        to_context(arg, PathContext.SHELL) if isinstance(arg, os.PathLike) else shlex.quote(arg)
        for arg in args
    )
