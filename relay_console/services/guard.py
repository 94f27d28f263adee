from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Set, Tuple

from ..clients.api import BusyError

EntityKey = Tuple[str, int]


class InFlightGuard:
    """At most one pending mutation per (resource, id); a second one is rejected."""

    def __init__(self) -> None:
        self._pending: Set[EntityKey] = set()

    def busy(self, resource: str, entity_id: int) -> bool:
        return (resource, int(entity_id)) in self._pending

    @asynccontextmanager
    async def hold(self, resource: str, entity_id: int) -> AsyncIterator[None]:
        key = (resource, int(entity_id))
        if key in self._pending:
            raise BusyError(f"Another change to {resource} #{int(entity_id)} is still in progress")
        self._pending.add(key)
        try:
            yield
        finally:
            self._pending.discard(key)
