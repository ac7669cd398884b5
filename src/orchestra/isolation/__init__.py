"""Isolation backends.

One lifecycle contract (create / exec / stats / destroy) over three
backends:
- Unisolated: commands run on the host
- Container: hardened docker containers (optionally under gVisor)
- MicroVM: cloud-hypervisor VMs reached over vsock

Backends are selected by IsolationTier through an AdapterRegistry; the
IsolationManager owns the handles of live agents.
"""

from .base import DisplayInfo, IsolationAdapter
from .container import ContainerAdapter
from .definitions import ContainerDefinition, DefinitionLoader, MicroVMDefinition
from .manager import IsolationManager
from .microvm import MicroVMAdapter
from .registry import AdapterRegistry, TierResolution, build_default_registry
from .unisolated import UnisolatedAdapter

__all__ = [
    "AdapterRegistry",
    "ContainerAdapter",
    "ContainerDefinition",
    "DefinitionLoader",
    "DisplayInfo",
    "IsolationAdapter",
    "IsolationManager",
    "MicroVMAdapter",
    "MicroVMDefinition",
    "TierResolution",
    "UnisolatedAdapter",
    "build_default_registry",
]
