"""Company roster lookups used for routing and authorisation."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)


class Roster(Protocol):
    """Active membership of a company."""

    async def users_with_role(self, company_id: str, role: str) -> list[str]:
        """Return ids of active users holding ``role``."""

    async def is_active(self, company_id: str, user_id: str) -> bool:
        """Return ``True`` if the user is an active member of the company."""


class InMemoryRoster(Roster):
    """Roster held in memory, keyed by company then role."""

    def __init__(self, members: Optional[Dict[str, Dict[str, Iterable[str]]]] = None) -> None:
        self._roles: Dict[str, Dict[str, Set[str]]] = {}
        self._inactive: Set[Tuple[str, str]] = set()
        for company_id, roles in (members or {}).items():
            for role, users in roles.items():
                for user_id in users:
                    self.add(company_id, role, user_id)

    def add(self, company_id: str, role: str, user_id: str) -> None:
        self._roles.setdefault(company_id, {}).setdefault(role, set()).add(user_id)
        self._inactive.discard((company_id, user_id))

    def remove(self, company_id: str, role: str, user_id: str) -> None:
        self._roles.get(company_id, {}).get(role, set()).discard(user_id)

    def deactivate(self, company_id: str, user_id: str) -> None:
        """Keep the user's roles on record but treat them as inactive."""
        self._inactive.add((company_id, user_id))

    async def users_with_role(self, company_id: str, role: str) -> list[str]:
        users = self._roles.get(company_id, {}).get(role, set())
        return sorted(u for u in users if (company_id, u) not in self._inactive)

    async def is_active(self, company_id: str, user_id: str) -> bool:
        if (company_id, user_id) in self._inactive:
            return False
        return any(user_id in users for users in self._roles.get(company_id, {}).values())


class CachedRoster(Roster):
    """TTL cache in front of another roster.

    The escalation sweep asks the same role question for many rows; caching
    trades a bounded staleness window for fewer lookups.
    """

    def __init__(
        self,
        inner: Roster,
        ttl: float = 60.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl = ttl
        self._timer = timer
        self._roles: Dict[Tuple[str, str], Tuple[float, List[str]]] = {}
        self._active: Dict[Tuple[str, str], Tuple[float, bool]] = {}

    def invalidate(self) -> None:
        self._roles.clear()
        self._active.clear()

    async def users_with_role(self, company_id: str, role: str) -> list[str]:
        key = (company_id, role)
        cached = self._roles.get(key)
        now = self._timer()
        if cached is not None and now - cached[0] < self._ttl:
            return list(cached[1])
        users = await self._inner.users_with_role(company_id, role)
        self._roles[key] = (now, list(users))
        return list(users)

    async def is_active(self, company_id: str, user_id: str) -> bool:
        key = (company_id, user_id)
        cached = self._active.get(key)
        now = self._timer()
        if cached is not None and now - cached[0] < self._ttl:
            return cached[1]
        active = await self._inner.is_active(company_id, user_id)
        self._active[key] = (now, active)
        return active
