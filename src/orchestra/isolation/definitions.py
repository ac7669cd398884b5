"""Named isolation definitions.

A definition reference is ``repo:<name>``, ``user:<name>`` or a bare
``<name>`` (repo first, then user). Files live in ``.orchestra/isolation/``
of the repository or the user's home and may be YAML or JSON. A ``None``
reference means "use the repository's IsolationConfig as is".

The repository IsolationConfig is always merged in: its limits act as
defaults, its mounts and environment are added to the definition's.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from orchestra.config import METADATA_DIRNAME, IsolationConfig, MountConfig, user_dir
from orchestra.errors import DefinitionError, DefinitionNotFoundError

logger = logging.getLogger(__name__)

_EXTENSIONS = (".yaml", ".yml", ".json")
_SIZE = re.compile(r"^(\d+(?:\.\d+)?)([bkmgt]?)$", re.I)
_UNIT_MB = {"b": 1 / (1024 * 1024), "k": 1 / 1024, "m": 1, "g": 1024, "t": 1024 * 1024}


def size_to_mb(size: str) -> int:
    """``"4g"`` -> 4096. A bare number is taken as bytes, like docker does."""
    m = _SIZE.match(size.strip())
    if not m:
        raise ValueError(f"Invalid size: {size!r}")
    unit = (m.group(2) or "b").lower()
    return max(1, int(float(m.group(1)) * _UNIT_MB[unit]))


class ContainerDefinition(BaseModel):
    name: str = "default"
    image: str
    runtime: str | None = None
    memory: str = "4g"
    cpus: str = "2"
    pids: int = 100
    tmp_size: str = "100m"
    home_size: str = "500m"
    network: str = "none"
    user: str = "1000:1000"
    mounts: list[MountConfig] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    entrypoint: list[str] | None = None


class VMMount(BaseModel):
    tag: str
    host_path: str
    guest_path: str
    read_only: bool = True


class MicroVMDefinition(BaseModel):
    name: str = "default"
    kernel_path: str = "~/.orchestra/microvm/vmlinux"
    rootfs_path: str = "~/.orchestra/microvm/rootfs.ext4"
    memory_mb: int = Field(default=4096, ge=128)
    vcpus: int = Field(default=2, ge=1)
    mounts: list[VMMount] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)


class DefinitionLoader:
    """Resolves definition references for one repository."""

    def __init__(self, repo_path: Path, isolation: IsolationConfig | None = None) -> None:
        self.repo_path = Path(repo_path)
        self.isolation = isolation or IsolationConfig()

    def _search_dirs(self, ref: str) -> tuple[list[Path], str]:
        repo_dir = self.repo_path / METADATA_DIRNAME / "isolation"
        home_dir = user_dir() / "isolation"
        scope, _, name = ref.partition(":")
        if not name:
            return [repo_dir, home_dir], scope
        if scope == "repo":
            return [repo_dir], name
        if scope == "user":
            return [home_dir], name
        raise DefinitionError(f"Unknown definition scope {scope!r} in {ref!r}")

    def find(self, ref: str) -> Path:
        dirs, name = self._search_dirs(ref)
        for directory in dirs:
            for ext in _EXTENSIONS:
                candidate = directory / f"{name}{ext}"
                if candidate.is_file():
                    return candidate
        raise DefinitionNotFoundError(f"Isolation definition file not found: {ref}")

    def load_raw(self, ref: str | None) -> dict[str, Any]:
        if ref is None:
            return {}
        path = self.find(ref)
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise DefinitionError(f"Cannot parse isolation definition {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise DefinitionError(f"Isolation definition {path} must be a mapping")
        raw.setdefault("name", ref.partition(":")[2] or ref)
        return raw

    def container(self, ref: str | None = None) -> ContainerDefinition:
        iso = self.isolation
        raw = self.load_raw(ref)
        merged: dict[str, Any] = {
            "image": iso.image,
            "memory": iso.limits.memory,
            "cpus": iso.limits.cpus,
            "pids": iso.limits.pids,
            **raw,
        }
        merged["mounts"] = [m.model_dump() for m in iso.mounts] + list(raw.get("mounts") or [])
        merged["environment"] = {**iso.environment, **(raw.get("environment") or {})}
        try:
            return ContainerDefinition.model_validate(merged)
        except ValidationError as exc:
            raise DefinitionError(f"Invalid container definition {ref or 'default'}: {exc}") from exc

    def microvm(self, ref: str | None = None) -> MicroVMDefinition:
        iso = self.isolation
        raw = self.load_raw(ref)
        merged: dict[str, Any] = {"memory_mb": size_to_mb(iso.limits.memory)}
        try:
            merged["vcpus"] = max(1, int(float(iso.limits.cpus)))
        except ValueError:
            pass
        if iso.kernel_path:
            merged["kernel_path"] = iso.kernel_path
        if iso.rootfs_path:
            merged["rootfs_path"] = iso.rootfs_path
        merged.update(raw)
        merged["mounts"] = [
            {
                "tag": f"mount{i}",
                "host_path": m.source,
                "guest_path": m.target,
                "read_only": m.read_only,
            }
            for i, m in enumerate(iso.mounts)
        ] + list(raw.get("mounts") or [])
        merged["environment"] = {**iso.environment, **(raw.get("environment") or {})}
        try:
            return MicroVMDefinition.model_validate(merged)
        except ValidationError as exc:
            raise DefinitionError(f"Invalid microVM definition {ref or 'default'}: {exc}") from exc
