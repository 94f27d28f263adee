"""
Lifecycle Orchestrator - sequences every console operation

Contains:
- session operations (login / logout / whoami / change password / restore)
- collection loads with per-node liveness probing
- user / node / inbound mutations behind the per-entity in-flight guard
- cascade and invalidation rules, background re-fetch of stale collections
- per-user config views (always fetched, never reused across mutations)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar, Union

import httpx

from ..clients.api import (
    ApiClient,
    ApiError,
    AuthError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ..core.bg_tasks import BackgroundTasks
from ..core.session import Session, TokenStore
from ..core.settings import ConsoleSettings, load_settings
from ..models import (
    PROTOCOL_REALITY,
    DashboardData,
    Identity,
    Inbound,
    Node,
    RealityKeys,
    User,
    subscription_urls,
)
from .guard import InFlightGuard
from .notices import Notifier
from .protocols import (
    InboundDraft,
    build_node_payload,
    build_user_payload,
    validate_inbound_payload,
)
from .store import STATE_STALE, Collection, ConfigView, EntityStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

InboundInput = Union[InboundDraft, Dict[str, Any]]


class Console:
    """Operator-facing facade over the resource client and the entity store."""

    def __init__(
        self,
        client: ApiClient,
        *,
        settings: Optional[ConsoleSettings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.client = client
        self.session: Session = client.session
        self.settings = settings or ConsoleSettings()
        self.notices = notifier or Notifier()
        self.store = EntityStore()
        self.guard = InFlightGuard()
        self._tasks = BackgroundTasks()
        self._config_tokens: Dict[int, object] = {}
        self.session.on_teardown(self._on_session_teardown)

    @classmethod
    def open(
        cls,
        settings: Optional[ConsoleSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        persist: bool = True,
    ) -> "Console":
        """Build a console from settings; the session restores any persisted credential."""
        settings = settings or load_settings()
        session = Session(TokenStore(settings.state_dir) if persist else None)
        session.restore()
        client = ApiClient(
            settings.api_url,
            session,
            timeout=settings.timeout,
            verify_tls=settings.verify_tls,
            transport=transport,
        )
        return cls(client, settings=settings)

    async def __aenter__(self) -> "Console":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Tear down: pending fetches are cancelled and late results discarded."""
        self.store.close()
        self._config_tokens.clear()
        await self._tasks.cancel_all()
        await self.client.aclose()

    async def drain(self) -> None:
        """Wait for outstanding background re-fetches."""
        await self._tasks.drain()

    def _on_session_teardown(self, reason: str) -> None:
        # Cached data belongs to the old credential; late results land in the closed store.
        self.store.close()
        self.store = EntityStore()
        self._config_tokens.clear()

    # ==================== Operation runner ====================

    async def _run(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        success: str,
        guard: Optional[Tuple[str, int]] = None,
        after: Optional[Callable[[T], None]] = None,
        on_missing: Optional[Callable[[], None]] = None,
    ) -> T:
        """Run one mutation: guard, call, apply, then exactly one notice."""
        try:
            if guard is not None:
                async with self.guard.hold(*guard):
                    result = await call()
                    if after is not None:
                        after(result)
            else:
                result = await call()
                if after is not None:
                    after(result)
        except (NotFoundError, ConflictError) as e:
            if on_missing is not None:
                on_missing()
            self.notices.error(e.message)
            raise
        except ApiError as e:
            self.notices.error(e.message)
            raise
        self.notices.success(success)
        return result

    # ==================== Session ====================

    async def login(self, username: str, password: str) -> Identity:
        try:
            token, identity = await self.client.login(username, password)
        except ApiError as e:
            self.notices.error(e.message)
            raise
        self.store.close()
        self.store = EntityStore()
        self.session.establish(token, identity)
        self.notices.success(f"Signed in as {identity.username}")
        return identity

    async def logout(self) -> None:
        try:
            if self.session.authenticated:
                await self.client.logout()
        except ApiError as e:
            logger.info("logout call failed err=%s", e.message)
        finally:
            self.session.invalidate("logout")

    async def whoami(self) -> Identity:
        identity = await self.client.whoami()
        self.session.identity = identity
        return identity

    async def restore(self) -> Optional[Identity]:
        """Verify a persisted credential; None when there is none or it was rejected."""
        if not self.session.authenticated and not self.session.restore():
            return None
        try:
            return await self.whoami()
        except AuthError:
            return None

    async def change_password(self, old_password: str, new_password: str) -> None:
        async def call() -> None:
            if not new_password or len(new_password) < 6:
                raise ValidationError("New password must be at least 6 characters", field="new_password")
            await self.client.change_password(old_password, new_password)

        await self._run(call, success="Password changed")

    # ==================== Loading ====================

    async def _fetch(self, coll: Collection, loader: Callable[[], Awaitable[List[T]]]) -> List[T]:
        seq = coll.begin_fetch()
        try:
            items = await loader()
        except ApiError as e:
            coll.fail(seq, e)
            raise
        coll.apply(seq, items)
        return items

    async def load_users(self) -> List[User]:
        return await self._fetch(self.store.users, self.client.list_users)

    async def load_nodes(self, probe: bool = True) -> List[Node]:
        store = self.store
        nodes = await self._fetch(store.nodes, self.client.list_nodes)
        if probe:
            await self._probe_all(store, nodes)
        return nodes

    async def load_inbounds(self, node_id: int) -> List[Inbound]:
        node_id = int(node_id)
        return await self._fetch(self.store.inbounds(node_id), lambda: self.client.list_inbounds(node_id))

    async def node_online(self, node_id: int) -> bool:
        """Best-effort liveness; any failure reads as offline."""
        try:
            online = await self.client.get_node_status(node_id)
        except ApiError as e:
            logger.info("node status probe failed node_id=%d err=%s", int(node_id), e.message)
            online = False
        return online

    async def _probe_all(self, store: EntityStore, nodes: List[Node]) -> None:
        results = await asyncio.gather(*(self.node_online(n.id) for n in nodes))
        if store.closed:
            return
        for node, online in zip(nodes, results):
            if store.nodes.get(node.id) is not None:
                store.node_online[node.id] = online

    def users(self) -> List[User]:
        return self.store.users.values()

    def nodes(self) -> List[Node]:
        return self.store.nodes.values()

    def inbounds(self, node_id: int) -> List[Inbound]:
        if not self.store.has_inbounds(node_id):
            return []
        return self.store.inbounds(node_id).values()

    # ==================== Invalidation ====================

    def _schedule_refresh(
        self,
        coll: Collection,
        loader: Callable[[], Awaitable[List[Any]]],
        after: Optional[Callable[[List[Any]], Awaitable[None]]] = None,
    ) -> None:
        coll.mark_stale()
        if coll.state != STATE_STALE or self.store.closed:
            return
        self._tasks.spawn(self._refresh(coll, loader, after), label=f"refresh {coll.key}")

    async def _refresh(
        self,
        coll: Collection,
        loader: Callable[[], Awaitable[List[Any]]],
        after: Optional[Callable[[List[Any]], Awaitable[None]]],
    ) -> None:
        try:
            items = await self._fetch(coll, loader)
        except ApiError as e:
            logger.warning("background refresh failed collection=%s err=%s", coll.key, e.message)
            return
        if after is not None:
            await after(items)

    def _invalidate_users(self) -> None:
        self._schedule_refresh(self.store.users, self.client.list_users)

    def _invalidate_nodes(self) -> None:
        store = self.store

        async def probe(nodes: List[Node]) -> None:
            await self._probe_all(store, nodes)

        self._schedule_refresh(store.nodes, self.client.list_nodes, probe)

    def _invalidate_inbounds(self, node_id: Optional[int]) -> None:
        """Mark one node's inbound list stale, or every known one when the node is unknown."""
        if node_id is None:
            targets = list(self.store.inbound_collections())
        elif self.store.has_inbounds(node_id):
            targets = [int(node_id)]
        else:
            return
        for nid in targets:
            coll = self.store.inbounds(nid)
            self._schedule_refresh(coll, lambda nid=nid: self.client.list_inbounds(nid))

    def _stale_configs(self, inbound_ids: Optional[Set[int]]) -> None:
        flagged = self.store.mark_configs_stale(inbound_ids)
        if flagged:
            logger.debug("config views marked stale users=%s", flagged)

    def _stale_user_config(self, user_id: int) -> None:
        view = self.store.configs.get(int(user_id))
        if view is not None:
            view.stale = True

    # ==================== Users ====================

    async def open_user(self, user_id: int) -> User:
        """Re-read one user; this is where its attachment list gets refreshed."""
        user = await self.client.get_user(user_id)
        self.store.users.upsert(user)
        return user

    async def create_user(self, fields: Dict[str, Any]) -> User:
        async def call() -> User:
            return await self.client.create_user(build_user_payload(fields, creating=True))

        def after(user: User) -> None:
            self.store.users.upsert(user)
            self._invalidate_users()

        return await self._run(call, success="User created successfully", after=after)

    async def update_user(self, user_id: int, fields: Dict[str, Any]) -> User:
        user_id = int(user_id)

        async def call() -> User:
            return await self.client.update_user(user_id, build_user_payload(fields, creating=False))

        return await self._run(
            call,
            success="User updated successfully",
            guard=("user", user_id),
            after=self._after_user_change,
            on_missing=self._invalidate_users,
        )

    def _after_user_change(self, user: User) -> None:
        self.store.users.upsert(user)
        self._stale_user_config(user.id)
        self._invalidate_users()

    async def delete_user(self, user_id: int) -> None:
        user_id = int(user_id)

        def after(_: None) -> None:
            self.store.users.remove(user_id)
            self.close_config(user_id)
            self._invalidate_users()

        await self._run(
            lambda: self.client.delete_user(user_id),
            success="User deleted successfully",
            guard=("user", user_id),
            after=after,
            on_missing=self._invalidate_users,
        )

    async def set_user_enabled(self, user_id: int, enabled: bool) -> User:
        user_id = int(user_id)
        return await self._run(
            lambda: self.client.set_user_enabled(user_id, enabled),
            success="User enabled" if enabled else "User disabled",
            guard=("user", user_id),
            after=self._after_user_change,
            on_missing=self._invalidate_users,
        )

    async def enable_user(self, user_id: int) -> User:
        return await self.set_user_enabled(user_id, True)

    async def disable_user(self, user_id: int) -> User:
        return await self.set_user_enabled(user_id, False)

    async def reset_user_uuid(self, user_id: int) -> User:
        user_id = int(user_id)
        return await self._run(
            lambda: self.client.reset_user_uuid(user_id),
            success="UUID reset successfully",
            guard=("user", user_id),
            after=self._after_user_change,
            on_missing=self._invalidate_users,
        )

    async def reset_user_traffic(self, user_id: int) -> User:
        user_id = int(user_id)
        return await self._run(
            lambda: self.client.reset_user_traffic(user_id),
            success="Traffic reset successfully",
            guard=("user", user_id),
            after=self._after_user_change,
            on_missing=self._invalidate_users,
        )

    # ==================== Nodes ====================

    async def create_node(self, fields: Dict[str, Any]) -> Node:
        async def call() -> Node:
            return await self.client.create_node(build_node_payload(fields, creating=True))

        def after(node: Node) -> None:
            self.store.nodes.upsert(node)
            self._invalidate_nodes()

        return await self._run(call, success="Node created successfully", after=after)

    async def update_node(self, node_id: int, fields: Dict[str, Any]) -> Node:
        node_id = int(node_id)

        async def call() -> Node:
            return await self.client.update_node(node_id, build_node_payload(fields, creating=False))

        def after(node: Node) -> None:
            self.store.nodes.upsert(node)
            self._stale_configs(self.store.inbound_ids_on_node(node_id))
            self._invalidate_nodes()

        return await self._run(
            call,
            success="Node updated successfully",
            guard=("node", node_id),
            after=after,
            on_missing=self._invalidate_nodes,
        )

    def _forget_node(self, node_id: int) -> None:
        self._stale_configs(self.store.inbound_ids_on_node(node_id))
        self.store.nodes.remove(node_id)
        self.store.node_online.pop(node_id, None)
        # the authority cascades the delete to the node's inbounds
        self.store.drop_inbounds(node_id)
        self._invalidate_nodes()

    async def delete_node(self, node_id: int) -> None:
        node_id = int(node_id)
        await self._run(
            lambda: self.client.delete_node(node_id),
            success="Node deleted successfully",
            guard=("node", node_id),
            after=lambda _: self._forget_node(node_id),
            on_missing=lambda: self._forget_node(node_id),
        )

    async def sync_node(self, node_id: int) -> None:
        """Push the node's inbound set to its agent; records are not touched."""
        node_id = int(node_id)
        await self._run(
            lambda: self.client.sync_node(node_id),
            success="Node synced successfully",
            guard=("node", node_id),
            on_missing=self._invalidate_nodes,
        )

    # ==================== Inbounds ====================

    def _inbound_payload(self, inbound_id: Optional[int], data: InboundInput) -> Dict[str, Any]:
        if isinstance(data, InboundDraft):
            if inbound_id is not None and data.id != inbound_id:
                raise ValidationError("Draft does not belong to this inbound", field="id")
            return data.to_payload()

        payload = dict(data)
        if inbound_id is None:
            return validate_inbound_payload(payload, creating=True)

        known = self.store.find_inbound(inbound_id)
        if known is None:
            missing = [key for key in ("node_id", "protocol") if payload.get(key) in (None, "")]
            if missing:
                raise ValidationError(
                    f"Inbound #{inbound_id} is not loaded; a partial update needs {' and '.join(missing)}",
                    field=missing[0],
                )
        else:
            for key, current in (("node_id", known.node_id), ("protocol", known.protocol)):
                if key not in payload:
                    payload[key] = current
                elif str(payload[key]) != str(current):
                    raise ValidationError(f"{key} cannot be changed after the inbound is created", field=key)
        return validate_inbound_payload(payload, creating=False)

    def _after_inbound_change(self, inbound: Inbound) -> None:
        if self.store.has_inbounds(inbound.node_id):
            self.store.inbounds(inbound.node_id).upsert(inbound)
        self._stale_configs({inbound.id})
        self._invalidate_inbounds(inbound.node_id)

    async def create_inbound(self, data: InboundInput) -> Inbound:
        async def call() -> Inbound:
            return await self.client.create_inbound(self._inbound_payload(None, data))

        return await self._run(call, success="Inbound created successfully", after=self._after_inbound_change)

    async def update_inbound(self, inbound_id: int, data: InboundInput) -> Inbound:
        inbound_id = int(inbound_id)

        async def call() -> Inbound:
            return await self.client.update_inbound(inbound_id, self._inbound_payload(inbound_id, data))

        known = self.store.find_inbound(inbound_id)
        return await self._run(
            call,
            success="Inbound updated successfully",
            guard=("inbound", inbound_id),
            after=self._after_inbound_change,
            on_missing=lambda: self._invalidate_inbounds(known.node_id if known else None),
        )

    async def delete_inbound(self, inbound_id: int) -> None:
        inbound_id = int(inbound_id)
        known = self.store.find_inbound(inbound_id)
        node_id = known.node_id if known is not None else None

        def after(_: None) -> None:
            if node_id is not None and self.store.has_inbounds(node_id):
                self.store.inbounds(node_id).remove(inbound_id)
            self._stale_configs({inbound_id})
            self._invalidate_inbounds(node_id)

        await self._run(
            lambda: self.client.delete_inbound(inbound_id),
            success="Inbound deleted successfully",
            guard=("inbound", inbound_id),
            after=after,
            on_missing=lambda: self._invalidate_inbounds(node_id),
        )

    async def generate_keys(self, target: Union[InboundDraft, Inbound, int, None]) -> RealityKeys:
        """Fresh REALITY keypair + short id for an existing inbound.

        A draft that was never saved has no id yet; that fails locally and
        nothing is sent. A draft gets the new keys applied in place.
        """
        draft = target if isinstance(target, InboundDraft) else None

        async def call() -> RealityKeys:
            inbound_id, protocol = self._key_target(target)
            if protocol is not None and protocol != PROTOCOL_REALITY:
                raise ValidationError("Key generation is only available for REALITY inbounds", field="protocol")
            return await self.client.generate_inbound_keys(inbound_id)

        inbound_id: Optional[int] = None
        try:
            inbound_id, _ = self._key_target(target)
        except ValidationError as e:
            self.notices.error(e.message)
            raise

        known = self.store.find_inbound(inbound_id)

        def after(keys: RealityKeys) -> None:
            if draft is not None:
                draft.apply_keys(keys)
            self._stale_configs({inbound_id})
            self._invalidate_inbounds(known.node_id if known else None)

        return await self._run(
            call,
            success="REALITY keys generated",
            guard=("inbound", inbound_id),
            after=after,
            on_missing=lambda: self._invalidate_inbounds(known.node_id if known else None),
        )

    def _key_target(self, target: Union[InboundDraft, Inbound, int, None]) -> Tuple[int, Optional[str]]:
        if isinstance(target, InboundDraft):
            if target.id is None:
                raise ValidationError("Save the inbound first to generate keys", field="id")
            return int(target.id), target.protocol
        if isinstance(target, Inbound):
            return int(target.id), target.protocol
        if target is None:
            raise ValidationError("Save the inbound first to generate keys", field="id")
        known = self.store.find_inbound(int(target))
        return int(target), (known.protocol if known is not None else None)

    # ==================== Config views ====================

    async def open_config(self, user_id: int) -> Optional[ConfigView]:
        """Fetch a user's config artifact for viewing; never served from a previous fetch.

        Returns None when the view was closed (or the console torn down)
        before the fetch resolved.
        """
        user_id = int(user_id)
        token = object()
        self._config_tokens[user_id] = token
        store = self.store
        try:
            artifact = await self.client.get_user_config(user_id)
        except ApiError:
            if self._config_tokens.get(user_id) is token:
                self._config_tokens.pop(user_id, None)
            raise

        if store.closed or self._config_tokens.get(user_id) is not token:
            logger.debug("discarding config for closed view user_id=%d", user_id)
            return None

        user = store.users.get(user_id)
        if user is not None and self.settings.public_url:
            subs = subscription_urls(self.settings.public_url, user.uuid, self.settings.sub_password)
            artifact.subscription_url = subs["subscription_url"]
            artifact.raw_subscription_url = subs["raw_subscription_url"]

        view = ConfigView(user_id=user_id, artifact=artifact)
        store.configs[user_id] = view
        return view

    def close_config(self, user_id: int) -> None:
        user_id = int(user_id)
        self._config_tokens.pop(user_id, None)
        self.store.configs.pop(user_id, None)

    # ==================== Dashboard & stats ====================

    async def dashboard(self) -> DashboardData:
        return await self.client.get_dashboard()

    async def stats(self) -> Dict[str, Any]:
        return await self.client.get_stats()

    async def user_stats(self, user_id: int) -> Dict[str, Any]:
        return await self.client.get_user_stats(user_id)

    async def node_stats(self, node_id: int) -> Dict[str, Any]:
        return await self.client.get_node_stats(node_id)

    async def top_users(self) -> List[Dict[str, Any]]:
        return await self.client.get_top_users()
