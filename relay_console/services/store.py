"""
Entity Store - client-side cache of users, nodes and inbounds

Every collection follows not-loaded -> loading -> loaded -> stale -> loading.
Each fetch takes a sequence number from a per-collection counter; marking a
collection stale also advances the counter, so a fetch that was already in
flight can no longer land. Only the latest issued fetch is applied.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from ..models import ConfigArtifact, Inbound, Node, User

logger = logging.getLogger(__name__)

STATE_NOT_LOADED = "not-loaded"
STATE_LOADING = "loading"
STATE_LOADED = "loaded"
STATE_STALE = "stale"


class Collection:
    """Identity-keyed slot for one list fetched from the authority."""

    def __init__(self, key: str):
        self.key = key
        self.state = STATE_NOT_LOADED
        self.items: Dict[int, Any] = {}
        self.error: Optional[Exception] = None
        self.dropped = False
        self.loads = 0
        self._seq = 0

    def __repr__(self) -> str:
        return f"<Collection {self.key} state={self.state} items={len(self.items)} seq={self._seq}>"

    @property
    def latest_seq(self) -> int:
        return self._seq

    @property
    def ever_loaded(self) -> bool:
        return self.loads > 0

    def values(self) -> List[Any]:
        return list(self.items.values())

    def get(self, item_id: int) -> Optional[Any]:
        return self.items.get(int(item_id))

    def begin_fetch(self) -> int:
        self._seq += 1
        self.state = STATE_LOADING
        return self._seq

    def is_current(self, seq: int) -> bool:
        return not self.dropped and seq == self._seq

    def apply(self, seq: int, items: Iterable[Any]) -> bool:
        """Replace contents with a fetch result; False if the result is outdated."""
        if not self.is_current(seq):
            logger.debug("discarding outdated fetch collection=%s seq=%d latest=%d", self.key, seq, self._seq)
            return False
        self.items = {int(i.id): i for i in items}
        self.state = STATE_LOADED
        self.error = None
        self.loads += 1
        return True

    def fail(self, seq: int, exc: Exception) -> bool:
        if not self.is_current(seq):
            return False
        self.error = exc
        self.state = STATE_STALE if self.ever_loaded else STATE_NOT_LOADED
        return True

    def mark_stale(self) -> None:
        if self.dropped:
            return
        if self.state == STATE_NOT_LOADED and not self.ever_loaded:
            return
        # invalidate any fetch already in flight
        self._seq += 1
        self.state = STATE_STALE

    def upsert(self, item: Any) -> None:
        if not self.dropped:
            self.items[int(item.id)] = item

    def remove(self, item_id: int) -> None:
        self.items.pop(int(item_id), None)


@dataclass
class ConfigView:
    """A user's config artifact held only while its view is open."""

    user_id: int
    artifact: ConfigArtifact
    stale: bool = False
    fetched_at: float = field(default_factory=time.time)


class EntityStore:
    def __init__(self) -> None:
        self.users = Collection("users")
        self.nodes = Collection("nodes")
        self.node_online: Dict[int, bool] = {}
        self.configs: Dict[int, ConfigView] = {}
        self._inbounds: Dict[int, Collection] = {}
        # nodes deleted this session; their inbound collections never come back
        self._deleted_nodes: Set[int] = set()
        self.closed = False

    # ==================== Inbounds by node ====================

    def inbounds(self, node_id: int) -> Collection:
        node_id = int(node_id)
        coll = self._inbounds.get(node_id)
        if coll is None:
            coll = Collection(f"inbounds:{node_id}")
            if self.closed or node_id in self._deleted_nodes:
                coll.dropped = True
                return coll
            self._inbounds[node_id] = coll
        return coll

    def has_inbounds(self, node_id: int) -> bool:
        return int(node_id) in self._inbounds

    def inbound_collections(self) -> Dict[int, Collection]:
        return dict(self._inbounds)

    def drop_inbounds(self, node_id: int) -> None:
        """Forget a deleted node's inbound collection; late results for it are ignored."""
        node_id = int(node_id)
        self._deleted_nodes.add(node_id)
        coll = self._inbounds.pop(node_id, None)
        if coll is not None:
            coll.dropped = True

    def find_inbound(self, inbound_id: int) -> Optional[Inbound]:
        for coll in self._inbounds.values():
            found = coll.get(inbound_id)
            if found is not None:
                return found
        return None

    def inbound_ids_on_node(self, node_id: int) -> Optional[Set[int]]:
        coll = self._inbounds.get(int(node_id))
        if coll is None or not coll.ever_loaded:
            return None
        return set(coll.items)

    # ==================== Lookups ====================

    def user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def node(self, node_id: int) -> Optional[Node]:
        return self.nodes.get(node_id)

    def online(self, node_id: int) -> bool:
        return bool(self.node_online.get(int(node_id), False))

    # ==================== Config views ====================

    def mark_configs_stale(self, inbound_ids: Optional[Set[int]] = None) -> List[int]:
        """Flag open config views that may depend on the given inbounds.

        ``None`` flags every open view. A view whose user has no known
        attachment list is flagged too.
        """
        flagged: List[int] = []
        for user_id, view in self.configs.items():
            if inbound_ids is not None:
                user = self.users.get(user_id)
                attached = user.inbound_ids if user is not None else None
                if attached is not None and not (set(attached) & inbound_ids):
                    continue
            view.stale = True
            flagged.append(user_id)
        return flagged

    def close(self) -> None:
        self.closed = True
        for coll in [self.users, self.nodes, *self._inbounds.values()]:
            coll.dropped = True
        self.configs.clear()
