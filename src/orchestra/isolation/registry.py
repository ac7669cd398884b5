"""Adapter registry and tier selection policy.

Adapters are registered under the IsolationTier they serve. Selection both
enforces a repository's minimum tier and finds a fallback when the
requested tier cannot be provided. A fallback is never taken silently: the
caller must opt in, and the resolution says that it happened.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from orchestra.errors import BackendUnavailableError, TierPolicyError
from orchestra.isolation.base import IsolationAdapter
from orchestra.isolation.container import ContainerAdapter
from orchestra.isolation.definitions import DefinitionLoader
from orchestra.isolation.microvm import MicroVMAdapter
from orchestra.isolation.unisolated import UnisolatedAdapter
from orchestra.models import IsolationTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierResolution:
    requested: IsolationTier
    tier: IsolationTier
    fell_back: bool = False


class AdapterRegistry:
    def __init__(self) -> None:
        self._adapters: dict[IsolationTier, IsolationAdapter] = {}

    def register(self, adapter: IsolationAdapter) -> None:
        self._adapters[adapter.tier] = adapter

    def get(self, tier: IsolationTier) -> IsolationAdapter | None:
        return self._adapters.get(tier)

    def adapters(self) -> list[IsolationAdapter]:
        return [self._adapters[t] for t in self.tiers()]

    def tiers(self) -> list[IsolationTier]:
        return sorted(self._adapters, key=lambda t: t.rank)

    async def available_tiers(self) -> list[IsolationTier]:
        tiers = self.tiers()
        results = await asyncio.gather(*(self._adapters[t].is_available() for t in tiers))
        return [t for t, ok in zip(tiers, results) if ok]

    async def resolve_tier(
        self,
        requested: IsolationTier,
        minimum: IsolationTier = IsolationTier.NONE,
        allow_fallback: bool = False,
    ) -> TierResolution:
        """Decide which tier to actually use for *requested*.

        Raises:
            TierPolicyError: *requested* is below *minimum*.
            BackendUnavailableError: *requested* is unavailable and either no
                tier between *minimum* and *requested* is available, or one
                is but *allow_fallback* is False.
        """
        if not requested.at_least(minimum):
            raise TierPolicyError(
                f"Isolation tier {requested.value!r} is below the repository "
                f"minimum {minimum.value!r}"
            )

        adapter = self.get(requested)
        if adapter is not None and await adapter.is_available():
            return TierResolution(requested=requested, tier=requested)

        candidates = [
            t
            for t in await self.available_tiers()
            if t.at_least(minimum) and t.rank < requested.rank
        ]
        if not candidates:
            raise BackendUnavailableError(
                f"Isolation tier {requested.value!r} is unavailable and nothing at or "
                f"above the minimum {minimum.value!r} can replace it"
            )
        best = max(candidates, key=lambda t: t.rank)
        if not allow_fallback:
            raise BackendUnavailableError(
                f"Isolation tier {requested.value!r} is unavailable; the highest "
                f"available tier is {best.value!r} (confirm the fallback to use it)"
            )
        logger.warning(
            "Isolation tier %s unavailable, falling back to %s", requested.value, best.value
        )
        return TierResolution(requested=requested, tier=best, fell_back=True)


def build_default_registry(loader: DefinitionLoader, timeout: float = 60) -> AdapterRegistry:
    """Registry with every backend this package ships.

    The lightweight ``sandbox`` tier has no backend here and always reports
    unavailable.
    """
    registry = AdapterRegistry()
    registry.register(UnisolatedAdapter(timeout=timeout))
    registry.register(ContainerAdapter(loader, IsolationTier.CONTAINER))
    registry.register(ContainerAdapter(loader, IsolationTier.GVISOR, runtime="runsc"))
    registry.register(MicroVMAdapter(loader))
    return registry
