"""Signal sources used by the click fraud engine."""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from domain.fraud.entity import IpReputation


@runtime_checkable
class ClickVelocityCounter(Protocol):
    async def hit(self, key: str, window_seconds: int) -> int:
        """Record one click for ``key`` and return the count within the window."""
        ...


@runtime_checkable
class IpReputationLookup(Protocol):
    async def lookup(self, ip_address: str) -> Optional[IpReputation]: ...
