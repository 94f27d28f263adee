"""
Resource Client - typed boundary to the remote authority

One coroutine per (resource, verb). Every call carries the session
credential; an authentication failure tears the session down instead of
retrying, every other failure is normalized to ApiError. No retries here:
retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import httpx

from ..core.settings import DEFAULT_TIMEOUT
from ..models import (
    ConfigArtifact,
    DashboardData,
    Identity,
    Inbound,
    Node,
    RealityKeys,
    User,
)
from ..utils.normalize import normalize_base_url

if TYPE_CHECKING:
    from ..core.session import Session

logger = logging.getLogger(__name__)

MAX_DETAIL_LEN = 240


# ==================== Errors ====================

class ApiError(Exception):
    """Base error for every failed call against the authority."""

    def __init__(self, message: str, status_code: int = 0, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class AuthError(ApiError):
    """Credential missing, expired or rejected. The session is already torn down."""


class ValidationError(ApiError):
    """A field violates the protocol schema or a uniqueness constraint."""

    def __init__(self, message: str, status_code: int = 0, detail: str = "", field: str = ""):
        super().__init__(message, status_code, detail)
        self.field = field


class NotFoundError(ApiError):
    """Target entity no longer exists."""


class ConflictError(ApiError):
    """Target entity changed or collides with another one."""


class TransportError(ApiError):
    """Network failure or timeout before a response arrived."""


class BusyError(ApiError):
    """Another mutation of the same entity is still in flight."""


# ==================== Response helpers ====================

_MESSAGE_FIELDS = ("message", "error", "detail")


def _parse_json_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def extract_error_message(response: httpx.Response) -> str:
    """Pick the human readable message out of whichever field the authority filled."""
    data = _parse_json_response(response)
    if isinstance(data, dict):
        for key in _MESSAGE_FIELDS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, (list, dict)) and value:
                # framework validation payloads, e.g. [{"loc": ..., "msg": ...}]
                if isinstance(value, list) and isinstance(value[0], dict) and value[0].get("msg"):
                    return str(value[0]["msg"])
                return str(value)
    text = response.text.strip()
    if text:
        if len(text) > MAX_DETAIL_LEN:
            text = text[:MAX_DETAIL_LEN] + "…"
        return text
    return f"HTTP {response.status_code}"


def error_for_response(response: httpx.Response) -> ApiError:
    msg = extract_error_message(response)
    code = response.status_code
    if code == 401:
        return AuthError(msg, status_code=code)
    if code in (400, 422):
        return ValidationError(msg, status_code=code)
    if code == 404:
        return NotFoundError(msg, status_code=code)
    if code == 409:
        return ConflictError(msg, status_code=code)
    return ApiError(msg, status_code=code)


def parse_inbound(data: Any) -> Inbound:
    """Inbound record from the wire; an unknown protocol is an authority error, not a crash."""
    try:
        return Inbound.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ApiError("Authority returned an unreadable inbound", detail=str(e)) from e


# ==================== Client ====================

class ApiClient:
    """Async client for the console's remote authority."""

    def __init__(
        self,
        base_url: str,
        session: "Session",
        *,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.session = session
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify_tls,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        token = self.session.token
        if not token:
            self.session.invalidate("not logged in")
            raise AuthError("Not logged in", status_code=401)
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, *, json: Any = None, auth: bool = True) -> Any:
        headers = self._auth_headers() if auth else {}
        try:
            r = await self._http.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {method} {path}", detail=str(e))
        except httpx.RequestError as e:
            raise TransportError(f"Connection failed: {e}", detail=str(e))

        if r.status_code >= 400:
            err = error_for_response(r)
            if isinstance(err, AuthError) and auth:
                logger.info("authority rejected credential path=%s", path)
                self.session.invalidate(err.message)
            raise err

        if r.status_code == 204 or not r.content:
            return None
        data = _parse_json_response(r)
        if isinstance(data, dict) and "success" in data:
            if data.get("success") is False:
                raise ApiError(extract_error_message(r), status_code=r.status_code)
            return data.get("data")
        return data

    # ==================== Session ====================

    async def login(self, username: str, password: str) -> Tuple[str, Identity]:
        data = await self._request(
            "POST", "/auth/login", json={"username": username, "password": password}, auth=False
        )
        if not isinstance(data, dict) or not data.get("token"):
            raise ApiError("Login response carried no token")
        identity = Identity.from_dict(data.get("admin") or data.get("user") or {})
        return str(data["token"]), identity

    async def logout(self) -> None:
        await self._request("POST", "/auth/logout")

    async def whoami(self) -> Identity:
        data = await self._request("GET", "/auth/me")
        return Identity.from_dict(data or {})

    async def change_password(self, old_password: str, new_password: str) -> None:
        await self._request(
            "POST",
            "/auth/change-password",
            json={"old_password": old_password, "new_password": new_password},
        )

    # ==================== Users ====================

    async def list_users(self) -> List[User]:
        data = await self._request("GET", "/users")
        return [User.from_dict(u) for u in (data or [])]

    async def get_user(self, user_id: int) -> User:
        return User.from_dict(await self._request("GET", f"/users/{int(user_id)}"))

    async def create_user(self, payload: Dict[str, Any]) -> User:
        return User.from_dict(await self._request("POST", "/users", json=payload))

    async def update_user(self, user_id: int, payload: Dict[str, Any]) -> User:
        return User.from_dict(await self._request("PUT", f"/users/{int(user_id)}", json=payload))

    async def delete_user(self, user_id: int) -> None:
        await self._request("DELETE", f"/users/{int(user_id)}")

    async def set_user_enabled(self, user_id: int, enabled: bool) -> User:
        return await self.update_user(user_id, {"enabled": bool(enabled)})

    async def reset_user_uuid(self, user_id: int) -> User:
        return User.from_dict(await self._request("POST", f"/users/{int(user_id)}/reset-uuid"))

    async def reset_user_traffic(self, user_id: int) -> User:
        return User.from_dict(await self._request("POST", f"/users/{int(user_id)}/reset-traffic"))

    async def get_user_config(self, user_id: int) -> ConfigArtifact:
        return ConfigArtifact.from_dict(await self._request("GET", f"/users/{int(user_id)}/config") or {})

    # ==================== Nodes ====================

    async def list_nodes(self) -> List[Node]:
        data = await self._request("GET", "/nodes")
        return [Node.from_dict(n) for n in (data or [])]

    async def get_node(self, node_id: int) -> Node:
        return Node.from_dict(await self._request("GET", f"/nodes/{int(node_id)}"))

    async def create_node(self, payload: Dict[str, Any]) -> Node:
        return Node.from_dict(await self._request("POST", "/nodes", json=payload))

    async def update_node(self, node_id: int, payload: Dict[str, Any]) -> Node:
        return Node.from_dict(await self._request("PUT", f"/nodes/{int(node_id)}", json=payload))

    async def delete_node(self, node_id: int) -> None:
        await self._request("DELETE", f"/nodes/{int(node_id)}")

    async def get_node_status(self, node_id: int) -> bool:
        data = await self._request("GET", f"/nodes/{int(node_id)}/status")
        return bool(isinstance(data, dict) and data.get("online"))

    async def sync_node(self, node_id: int) -> None:
        await self._request("POST", f"/nodes/{int(node_id)}/sync")

    # ==================== Inbounds ====================

    async def list_inbounds(self, node_id: int) -> List[Inbound]:
        data = await self._request("GET", f"/nodes/{int(node_id)}/inbounds")
        inbounds: List[Inbound] = []
        for raw in data or []:
            try:
                inbounds.append(parse_inbound(raw))
            except ApiError as e:
                logger.warning("skipping inbound node_id=%d err=%s", int(node_id), e.detail)
        return inbounds

    async def create_inbound(self, payload: Dict[str, Any]) -> Inbound:
        node_id = int(payload["node_id"])
        return parse_inbound(await self._request("POST", f"/nodes/{node_id}/inbounds", json=payload))

    async def update_inbound(self, inbound_id: int, payload: Dict[str, Any]) -> Inbound:
        return parse_inbound(await self._request("PUT", f"/inbounds/{int(inbound_id)}", json=payload))

    async def delete_inbound(self, inbound_id: int) -> None:
        await self._request("DELETE", f"/inbounds/{int(inbound_id)}")

    async def generate_inbound_keys(self, inbound_id: int) -> RealityKeys:
        data = await self._request("POST", f"/inbounds/{int(inbound_id)}/generate-keys")
        return RealityKeys.from_dict(data or {})

    # ==================== Dashboard & stats ====================

    async def get_dashboard(self) -> DashboardData:
        return DashboardData.from_dict(await self._request("GET", "/dashboard") or {})

    async def get_stats(self) -> Dict[str, Any]:
        return await self._request("GET", "/stats") or {}

    async def get_user_stats(self, user_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/stats/users/{int(user_id)}") or {}

    async def get_node_stats(self, node_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/stats/nodes/{int(node_id)}") or {}

    async def get_top_users(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/stats/top-users") or []
